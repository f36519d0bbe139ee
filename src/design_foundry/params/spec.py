"""Parameter specification models.

Pydantic models describing what the user typed (ParameterSpec) and what a
designer declares about its parameters (ParameterDefinition). Declared
metadata is applied at expansion time, not while parsing, so the parser stays
independent of any particular designer.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from design_foundry.errors import ParseError

from .sequence import DEFAULT_MAX_SEQUENCE_LENGTH, classify_kind, parse_sequence
from .values import KindHint, ParameterKind, ParsedValue


class _SpecBase(BaseModel):
    """Base model with strict validation - no extra fields allowed."""

    model_config = ConfigDict(extra="forbid", frozen=True)


ParameterType = Literal["integer", "numeric", "character", "logical"]


class ParameterSpec(_SpecBase):
    """One parameter as entered by the user."""

    name: str = Field(..., min_length=1)
    raw_text: str
    kind: ParameterKind

    @classmethod
    def from_text(cls, name: str, raw_text: str) -> ParameterSpec:
        """Build a spec, classifying the text.

        Raises:
            ParseError: If the text is malformed (tagged with ``name``).
        """
        try:
            kind = classify_kind(raw_text)
        except ParseError as exc:
            raise exc.for_parameter(name) from exc
        return cls(name=name, raw_text=raw_text, kind=kind)

    def parse(
        self,
        kind_hint: KindHint = KindHint.AUTO,
        *,
        max_length: int = DEFAULT_MAX_SEQUENCE_LENGTH,
    ) -> ParsedValue:
        return parse_sequence(self.raw_text, kind_hint, max_length=max_length)


class ParameterDefinition(_SpecBase):
    """Designer-declared metadata for one parameter.

    Attributes:
        name: Parameter name as the designer expects it.
        type: Scalar type every value is coerced to.
        vector: Whether the designer expects a vector per design.
        minimum: Inclusive lower bound for numeric values.
        maximum: Inclusive upper bound for numeric values.
        default: Raw text used when the user supplies no value.
        description: Free text shown by user interfaces.
    """

    name: str = Field(..., min_length=1)
    type: ParameterType = "numeric"
    vector: bool = False
    minimum: float | None = None
    maximum: float | None = None
    default: str | None = None
    description: str = ""

    @model_validator(mode="after")
    def _check_bounds(self) -> ParameterDefinition:
        if self.minimum is not None and self.maximum is not None and self.minimum > self.maximum:
            raise ValueError(f"minimum ({self.minimum}) exceeds maximum ({self.maximum})")
        if self.type in ("character", "logical") and (self.minimum is not None or self.maximum is not None):
            raise ValueError(f"bounds are only valid for numeric parameters, not {self.type}")
        return self

    @property
    def kind_hint(self) -> KindHint:
        return KindHint.VECTOR if self.vector else KindHint.SCALAR


def definitions_by_name(definitions: list[ParameterDefinition] | tuple[ParameterDefinition, ...]) -> dict[str, ParameterDefinition]:
    """Index definitions by name, rejecting duplicates."""
    indexed: dict[str, ParameterDefinition] = {}
    for definition in definitions:
        if definition.name in indexed:
            raise ValueError(f"Duplicate parameter definition: {definition.name}")
        indexed[definition.name] = definition
    return indexed

