"""Parsed parameter values.

A ParsedValue is the typed result of parsing one parameter's text: either a
flat sequence of scalars or a sequence of vectors (vectors may differ in
length). Both forms are immutable tuples so values hash and compare by
content.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from typing import Union

Scalar = Union[int, float, str, bool]
Vector = tuple[Scalar, ...]
Value = Union[Scalar, Vector]


class ValueKind(str, Enum):
    """Shape of a parsed value."""

    SCALARS = "scalars"
    VECTORS = "vectors"


class KindHint(str, Enum):
    """How the parser should read unparenthesized text.

    AUTO lets parentheses decide, SCALAR rejects vectors, VECTOR reads bare
    comma-separated text as a single vector.
    """

    AUTO = "auto"
    SCALAR = "scalar"
    VECTOR = "vector"


class ParameterKind(str, Enum):
    """Syntactic form of a parameter's raw text."""

    SCALAR = "scalar"
    LIST = "list"
    STEP_SEQUENCE = "step_sequence"
    VECTOR_SEQUENCE = "vector_sequence"


@dataclass(frozen=True, slots=True)
class ParsedValue:
    """Ordered, typed values for one parameter."""

    kind: ValueKind
    items: tuple[Value, ...]

    def __post_init__(self) -> None:
        if not self.items:
            raise ValueError("ParsedValue requires at least one item")
        if self.kind == ValueKind.VECTORS:
            if not all(isinstance(item, tuple) for item in self.items):
                raise ValueError("VECTORS values must contain only tuples")
        elif any(isinstance(item, tuple) for item in self.items):
            raise ValueError("SCALARS values must not contain tuples")

    @classmethod
    def scalars(cls, *items: Scalar) -> ParsedValue:
        return cls(ValueKind.SCALARS, tuple(items))

    @classmethod
    def vectors(cls, *items: Vector) -> ParsedValue:
        return cls(ValueKind.VECTORS, tuple(tuple(item) for item in items))

    @property
    def is_vector(self) -> bool:
        return self.kind == ValueKind.VECTORS

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> Iterator[Value]:
        return iter(self.items)

    def __getitem__(self, index: int) -> Value:
        return self.items[index]
