"""Cache keys, cache stores and parallel execution of design diagnoses."""

from .cache import (
    CacheEntry,
    CacheStats,
    DiagnosisStore,
    FilesystemDiagnosisCache,
    InMemoryDiagnosisCache,
)
from .evaluator import POINT_COLUMN, DesignerEvaluator, Row, normalize_rows
from .executor import BatchProgress, DiagnosisExecutor, PointTask, ProgressCallback, evaluate_point
from .fingerprint import (
    FINGERPRINT_SCHEME_VERSION,
    DiagnosisCacheKey,
    designer_source_bytes,
    fingerprint,
    fingerprint_payload,
)
from .inflight import InFlightRegistry
from .pool import (
    CancellationToken,
    PoolKind,
    ProcessPool,
    SerialPool,
    ThreadPool,
    WorkerPool,
    default_worker_count,
    make_pool,
)
from .result import DiagnosisResult, PointResult, PointStatus
from .spec import DEFAULT_CACHE_VERSION, SimulationConfig

__all__ = [
    "DEFAULT_CACHE_VERSION",
    "FINGERPRINT_SCHEME_VERSION",
    "POINT_COLUMN",
    "BatchProgress",
    "CacheEntry",
    "CacheStats",
    "CancellationToken",
    "DesignerEvaluator",
    "DiagnosisCacheKey",
    "DiagnosisExecutor",
    "DiagnosisResult",
    "DiagnosisStore",
    "FilesystemDiagnosisCache",
    "InFlightRegistry",
    "InMemoryDiagnosisCache",
    "PointResult",
    "PointStatus",
    "PointTask",
    "PoolKind",
    "ProcessPool",
    "ProgressCallback",
    "Row",
    "SerialPool",
    "SimulationConfig",
    "ThreadPool",
    "WorkerPool",
    "default_worker_count",
    "designer_source_bytes",
    "evaluate_point",
    "fingerprint",
    "fingerprint_payload",
    "make_pool",
    "normalize_rows",
]
