"""Per-point and aggregated diagnosis results."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

import numpy as np

from design_foundry.params.values import Value

from .cache import CacheEntry, utc_timestamp
from .evaluator import POINT_COLUMN, Row
from .fingerprint import DiagnosisCacheKey

FailureStage = Literal["instantiate", "simulate", "diagnose"]


class PointStatus(str, Enum):
    """Outcome of evaluating one design point."""

    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class PointResult:
    """Result of evaluating a single design point.

    Attributes:
        index: Position of the point in expansion order.
        parameters: Parameter assignment that produced this result.
        status: Final status of the point.
        simulation_rows: Rows returned by the simulation stage.
        diagnosands_rows: Rows returned by the diagnosis stage.
        error: Error message if failed.
        stage: Stage that failed, if any.
        execution_time_sec: Wall time spent on this point.
    """

    index: int
    parameters: dict[str, Value]
    status: PointStatus
    simulation_rows: list[Row] = field(default_factory=list)
    diagnosands_rows: list[Row] = field(default_factory=list)
    error: str | None = None
    stage: FailureStage | None = None
    execution_time_sec: float | None = None

    @property
    def passed(self) -> bool:
        return self.status == PointStatus.COMPLETED

    def parameter_columns(self) -> dict[str, Any]:
        """Parameters as JSON-ready table columns (vectors become lists)."""
        return {name: list(value) if isinstance(value, tuple) else value for name, value in self.parameters.items()}

    def to_record(self) -> dict[str, Any]:
        """Serialize everything except the row tables."""
        return {
            "index": self.index,
            "parameters": [[name, value] for name, value in self.parameter_columns().items()],
            "status": self.status.value,
            "error": self.error,
            "stage": self.stage,
            "execution_time_sec": self.execution_time_sec,
        }

    @classmethod
    def from_record(
        cls,
        record: dict[str, Any],
        *,
        simulation_rows: list[Row] | None = None,
        diagnosands_rows: list[Row] | None = None,
    ) -> PointResult:
        parameters: dict[str, Value] = {
            name: tuple(value) if isinstance(value, list) else value for name, value in record["parameters"]
        }
        return cls(
            index=int(record["index"]),
            parameters=parameters,
            status=PointStatus(record["status"]),
            simulation_rows=simulation_rows or [],
            diagnosands_rows=diagnosands_rows or [],
            error=record.get("error"),
            stage=record.get("stage"),
            execution_time_sec=record.get("execution_time_sec"),
        )


@dataclass(slots=True)
class DiagnosisResult:
    """Aggregated result of a diagnosis run.

    ``points`` is always in expansion order, whatever order the workers
    finished in.

    Attributes:
        points: Per-point results in expansion order.
        cache_key: Key the run was looked up and stored under.
        from_cache: Whether the result was served from the cache.
        store_error: Message if persisting the result failed.
        total_time_sec: Wall time of the evaluation (0 for cache hits).
    """

    points: list[PointResult]
    cache_key: DiagnosisCacheKey | None = None
    from_cache: bool = False
    store_error: str | None = None
    total_time_sec: float = 0.0

    @property
    def n_completed(self) -> int:
        return sum(1 for p in self.points if p.status == PointStatus.COMPLETED)

    @property
    def n_failed(self) -> int:
        return sum(1 for p in self.points if p.status == PointStatus.FAILED)

    @property
    def all_passed(self) -> bool:
        return all(p.passed for p in self.points)

    def failures(self) -> list[PointResult]:
        return [p for p in self.points if not p.passed]

    def diagnosands_table(self) -> list[Row]:
        """Diagnosand rows of successful points, keyed by parameter assignment.

        Each row starts with the design point index and the parameter columns,
        followed by the diagnosand columns.
        """
        return [
            {POINT_COLUMN: p.index, **p.parameter_columns(), **row}
            for p in self.points
            if p.passed
            for row in p.diagnosands_rows
        ]

    def simulations_table(self) -> list[Row]:
        return [
            {POINT_COLUMN: p.index, **p.parameter_columns(), **row}
            for p in self.points
            for row in p.simulation_rows
        ]

    def diagnosand_values(self, column: str) -> np.ndarray:
        """Values of one diagnosand column across the diagnosands table.

        Missing or non-numeric cells are NaN.
        """
        values = []
        for row in self.diagnosands_table():
            value = row.get(column)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                values.append(np.nan)
            else:
                values.append(float(value))
        return np.asarray(values, dtype=np.float64)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "cache_key": self.cache_key.digest if self.cache_key else None,
            "from_cache": self.from_cache,
            "store_error": self.store_error,
            "total_time_sec": self.total_time_sec,
            "n_points": len(self.points),
            "n_completed": self.n_completed,
            "n_failed": self.n_failed,
            "points": [p.to_record() for p in self.points],
            "diagnosands": self.diagnosands_table(),
        }

    # -------------------------------------------------------------------------
    # Cache entry conversion
    # -------------------------------------------------------------------------

    def to_cache_entry(self, key: DiagnosisCacheKey) -> CacheEntry:
        return CacheEntry(
            key=key,
            simulation_rows=[{POINT_COLUMN: p.index, **row} for p in self.points for row in p.simulation_rows],
            diagnosands_rows=[{POINT_COLUMN: p.index, **row} for p in self.points for row in p.diagnosands_rows],
            points=[p.to_record() for p in self.points],
            created_at=utc_timestamp(),
        )

    @classmethod
    def from_cache_entry(cls, entry: CacheEntry) -> DiagnosisResult:
        simulation_rows = _group_by_point(entry.simulation_rows)
        diagnosands_rows = _group_by_point(entry.diagnosands_rows)
        points = [
            PointResult.from_record(
                record,
                simulation_rows=simulation_rows.get(int(record["index"])),
                diagnosands_rows=diagnosands_rows.get(int(record["index"])),
            )
            for record in entry.points
        ]
        points.sort(key=lambda p: p.index)
        return cls(points=points, cache_key=entry.key, from_cache=True)


def _group_by_point(rows: list[Row]) -> dict[int, list[Row]]:
    grouped: dict[int, list[Row]] = defaultdict(list)
    for row in rows:
        stripped = dict(row)
        index = int(stripped.pop(POINT_COLUMN))
        grouped[index].append(stripped)
    return grouped
