"""Parameter parsing and design space expansion."""

from .expand import (
    DEFAULT_MAX_DESIGN_POINTS,
    DesignSpacePoint,
    ExpansionMode,
    design_space_size,
    expand_design_space,
    resolve_parameters,
)
from .sequence import (
    DEFAULT_MAX_SEQUENCE_LENGTH,
    classify_kind,
    format_parsed_value,
    format_scalar,
    parse_parameter_specs,
    parse_sequence,
)
from .spec import ParameterDefinition, ParameterSpec, ParameterType, definitions_by_name
from .values import KindHint, ParameterKind, ParsedValue, Scalar, Value, ValueKind, Vector

__all__ = [
    "DEFAULT_MAX_DESIGN_POINTS",
    "DEFAULT_MAX_SEQUENCE_LENGTH",
    "DesignSpacePoint",
    "ExpansionMode",
    "KindHint",
    "ParameterDefinition",
    "ParameterKind",
    "ParameterSpec",
    "ParameterType",
    "ParsedValue",
    "Scalar",
    "Value",
    "ValueKind",
    "Vector",
    "classify_kind",
    "definitions_by_name",
    "design_space_size",
    "expand_design_space",
    "format_parsed_value",
    "format_scalar",
    "parse_parameter_specs",
    "parse_sequence",
    "resolve_parameters",
]
