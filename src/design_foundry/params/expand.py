"""Design space expansion.

Turns parsed parameter sequences into concrete design points. The default
mode is the cartesian product over parameters with more than one value; the
first parameter is outermost and the last varies fastest, so row order is
stable for identical input. ``mode="zip"`` pairs values position by position
instead, with singletons broadcast to every point.
"""

from __future__ import annotations

import math
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from itertools import product
from typing import Literal

from design_foundry.errors import ExpansionError, ParseError

from .sequence import format_scalar, parse_sequence
from .spec import ParameterDefinition
from .values import ParsedValue, Scalar, Value, ValueKind

DEFAULT_MAX_DESIGN_POINTS = 1_000

ExpansionMode = Literal["product", "zip"]


@dataclass(frozen=True, slots=True)
class DesignSpacePoint:
    """One concrete assignment of every parameter to a single value.

    Attributes:
        index: Position of the point in expansion order.
        assignments: (name, value) pairs in parameter insertion order.
    """

    index: int
    assignments: tuple[tuple[str, Value], ...]

    @property
    def parameters(self) -> dict[str, Value]:
        return dict(self.assignments)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(name for name, _ in self.assignments)

    def canonical_pairs(self) -> list[list[object]]:
        """Name-sorted [name, value] pairs with vectors as lists."""
        return [
            [name, list(value) if isinstance(value, tuple) else value]
            for name, value in sorted(self.assignments, key=lambda pair: pair[0])
        ]

    @property
    def label(self) -> str:
        parts = []
        for name, value in self.assignments:
            if isinstance(value, tuple):
                text = "(" + ", ".join(format_scalar(item) for item in value) + ")"
            else:
                text = format_scalar(value)
            parts.append(f"{name}={text}")
        return ", ".join(parts)


def design_space_size(specs: Mapping[str, ParsedValue], mode: ExpansionMode = "product") -> int:
    """Number of points ``expand_design_space`` would produce.

    Raises:
        ExpansionError: If ``mode`` is "zip" and lengths are incompatible.
    """
    if mode == "zip":
        return _zip_length(specs)
    if mode != "product":
        raise ValueError(f"Unknown expansion mode: {mode}")
    return math.prod(len(values) for values in specs.values())


def expand_design_space(
    specs: Mapping[str, ParsedValue],
    *,
    max_points: int = DEFAULT_MAX_DESIGN_POINTS,
    mode: ExpansionMode = "product",
) -> list[DesignSpacePoint]:
    """Expand parsed parameters into design points.

    Args:
        specs: Parsed values keyed by parameter name, in display order.
        max_points: Safety ceiling on the number of points.
        mode: "product" for the cartesian product, "zip" for paired values.

    Returns:
        Design points indexed 0..n-1 in expansion order.

    Raises:
        ExpansionError: If the design space exceeds ``max_points`` or zip
            lengths disagree.
    """
    if max_points < 1:
        raise ValueError("max_points must be >= 1")

    size = design_space_size(specs, mode)
    if size > max_points:
        raise ExpansionError.too_large(size, max_points)

    names = list(specs)
    return [
        DesignSpacePoint(index=index, assignments=tuple(zip(names, combination, strict=True)))
        for index, combination in enumerate(_iter_combinations(specs, mode))
    ]


def _iter_combinations(specs: Mapping[str, ParsedValue], mode: ExpansionMode) -> Iterator[tuple[Value, ...]]:
    if mode == "zip":
        length = _zip_length(specs)
        columns = [values.items if len(values) > 1 else values.items * length for values in specs.values()]
        return zip(*columns, strict=True)
    # product() over a singleton holds that parameter constant
    return product(*(values.items for values in specs.values()))


def _zip_length(specs: Mapping[str, ParsedValue]) -> int:
    lengths = {name: len(values) for name, values in specs.items() if len(values) > 1}
    distinct = set(lengths.values())
    if len(distinct) > 1:
        detail = ", ".join(f"{name}={length}" for name, length in lengths.items())
        raise ExpansionError(f"Paired parameters must have equal lengths ({detail})")
    return distinct.pop() if distinct else 1


# =============================================================================
# Metadata resolution
# =============================================================================


def resolve_parameters(
    parsed: Mapping[str, ParsedValue],
    definitions: Mapping[str, ParameterDefinition],
) -> dict[str, ParsedValue]:
    """Coerce parsed values against designer metadata.

    Parameters without a definition pass through unchanged. Definitions with
    a default supply parameters the user left out; these are appended after
    the user's parameters in definition order.

    Raises:
        ParseError: Tagged with the parameter name when a value has the wrong
            shape or type, or falls outside the declared bounds.
    """
    resolved: dict[str, ParsedValue] = {}
    for name, value in parsed.items():
        definition = definitions.get(name)
        resolved[name] = value if definition is None else _coerce_value(value, definition)

    for name, definition in definitions.items():
        if name in resolved or definition.default is None:
            continue
        try:
            default = parse_sequence(definition.default, definition.kind_hint)
        except ParseError as exc:
            raise exc.for_parameter(name) from exc
        resolved[name] = _coerce_value(default, definition)
    return resolved


def _coerce_value(value: ParsedValue, definition: ParameterDefinition) -> ParsedValue:
    if definition.vector and value.kind != ValueKind.VECTORS:
        value = ParsedValue(ValueKind.VECTORS, (value.items,))
    elif not definition.vector and value.kind == ValueKind.VECTORS:
        raise ParseError("Expected scalar values, got vectors", parameter=definition.name)

    if value.kind == ValueKind.VECTORS:
        items: tuple[Value, ...] = tuple(
            tuple(_coerce_scalar(item, definition) for item in vector)  # type: ignore[union-attr]
            for vector in value.items
        )
    else:
        items = tuple(_coerce_scalar(item, definition) for item in value.items)  # type: ignore[arg-type]
    return ParsedValue(value.kind, items)


def _coerce_scalar(item: Scalar, definition: ParameterDefinition) -> Scalar:
    name = definition.name
    if definition.type == "character":
        return format_scalar(item) if not isinstance(item, str) else item

    if definition.type == "logical":
        if isinstance(item, bool):
            return item
        if isinstance(item, int) and item in (0, 1):
            return bool(item)
        raise ParseError(f"Expected a logical value, got {item!r}", parameter=name)

    if isinstance(item, (bool, str)):
        raise ParseError(f"Expected a number, got {item!r}", parameter=name)

    number: int | float
    if definition.type == "integer":
        if isinstance(item, float) and not item.is_integer():
            raise ParseError(f"Expected an integer, got {item!r}", parameter=name)
        number = int(item)
    else:
        number = float(item)

    if definition.minimum is not None and number < definition.minimum:
        raise ParseError(f"Value {item!r} is below the minimum {definition.minimum}", parameter=name)
    if definition.maximum is not None and number > definition.maximum:
        raise ParseError(f"Value {item!r} is above the maximum {definition.maximum}", parameter=name)
    return number
