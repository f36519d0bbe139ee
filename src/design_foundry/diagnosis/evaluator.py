"""Designer evaluator capability.

The engine never models statistics itself. A designer evaluator is injected
and asked, per design point, to instantiate a design, simulate it and
diagnose the simulated rows.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

from design_foundry.errors import InstantiationError
from design_foundry.substrate import to_jsonable

Row = dict[str, Any]

# Column added to flattened tables to record the originating design point
POINT_COLUMN = "design_point"


@runtime_checkable
class DesignerEvaluator(Protocol):
    """Capability consumed by the diagnosis executor.

    Implementations used with a process pool must be picklable.
    """

    def instantiate(self, parameters: Mapping[str, Any]) -> Any:
        """Build a concrete design, raising InstantiationError if invalid."""
        ...

    def simulate(self, design: Any, n_simulations: int) -> Sequence[Mapping[str, Any]]:
        """Run ``n_simulations`` draws and return one row per draw."""
        ...

    def diagnose(self, rows: Sequence[Mapping[str, Any]], n_bootstrap: int) -> Sequence[Mapping[str, Any]]:
        """Summarize simulation rows into diagnosand rows."""
        ...


def normalize_rows(rows: Any, *, stage: str) -> list[Row]:
    """Convert evaluator output into JSON-ready rows.

    Raises:
        TypeError: If ``rows`` is not a sequence of mappings or holds values
            that cannot be represented as JSON.
    """
    if isinstance(rows, (str, bytes)) or not isinstance(rows, Sequence):
        raise TypeError(f"{stage} must return a sequence of rows, got {type(rows).__name__}")
    normalized: list[Row] = []
    for position, row in enumerate(rows):
        if not isinstance(row, Mapping):
            raise TypeError(f"{stage} row {position} is {type(row).__name__}, expected a mapping")
        if POINT_COLUMN in row:
            raise TypeError(f"{stage} row {position} uses the reserved column {POINT_COLUMN!r}")
        normalized.append({str(column): to_jsonable(value) for column, value in row.items()})
    return normalized


__all__ = ["POINT_COLUMN", "DesignerEvaluator", "InstantiationError", "Row", "normalize_rows"]
