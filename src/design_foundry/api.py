"""Caller-facing API: parse, expand, look up or compute, store.

    >>> store = FilesystemDiagnosisCache(Path("diagnosis_cache"))
    >>> result = run_diagnoses(
    ...     designer_source_bytes(designer),
    ...     {"N": "10, 20, ..., 50", "effect_size": "0.2, 0.5"},
    ...     SimulationConfig(n_simulations=500, n_bootstrap_simulations=100),
    ...     evaluator=designer,
    ...     store=store,
    ... )
    >>> result.diagnosands_table()
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from design_foundry.diagnosis import (
    CancellationToken,
    DesignerEvaluator,
    DiagnosisCacheKey,
    DiagnosisExecutor,
    DiagnosisResult,
    DiagnosisStore,
    FilesystemDiagnosisCache,
    InFlightRegistry,
    ProgressCallback,
    SimulationConfig,
    designer_source_bytes,
    fingerprint,
    make_pool,
)
from design_foundry.errors import CacheStoreError
from design_foundry.params import (
    DesignSpacePoint,
    ExpansionMode,
    ParameterDefinition,
    definitions_by_name,
    expand_design_space,
    parse_parameter_specs,
    resolve_parameters,
)
from design_foundry.settings import ExplorerSettings

logger = logging.getLogger(__name__)


def prepare_design_space(
    parameter_specs_raw: Mapping[str, str],
    *,
    settings: ExplorerSettings | None = None,
    definitions: Sequence[ParameterDefinition] | None = None,
    mode: ExpansionMode = "product",
) -> list[DesignSpacePoint]:
    """Parse raw parameter text and expand it into design points.

    Raises:
        ParseError: If any parameter text is malformed or violates metadata.
        ExpansionError: If the design space is too large.
    """
    settings = settings or ExplorerSettings()
    indexed = definitions_by_name(list(definitions or ()))
    parsed = parse_parameter_specs(
        parameter_specs_raw,
        hints={name: definition.kind_hint for name, definition in indexed.items()},
        max_length=settings.max_sequence_length,
    )
    if indexed:
        parsed = resolve_parameters(parsed, indexed)
    return expand_design_space(parsed, max_points=settings.max_design_points, mode=mode)


def run_diagnoses(
    designer_source: bytes | str,
    parameter_specs_raw: Mapping[str, str],
    config: SimulationConfig,
    *,
    evaluator: DesignerEvaluator,
    store: DiagnosisStore,
    executor: DiagnosisExecutor | None = None,
    settings: ExplorerSettings | None = None,
    definitions: Sequence[ParameterDefinition] | None = None,
    mode: ExpansionMode = "product",
    cancel_token: CancellationToken | None = None,
    inflight: InFlightRegistry[DiagnosisResult] | None = None,
    progress_callback: ProgressCallback | None = None,
) -> DiagnosisResult:
    """Diagnose a designer across every point of a parameter space.

    Args:
        designer_source: Bytes (or text) identifying the designer's logic.
        parameter_specs_raw: Raw parameter text keyed by parameter name.
        config: Simulation configuration.
        evaluator: Designer evaluator capability.
        store: Cache store the result is looked up in and written to.
        executor: Executor to use on a cache miss (serial by default).
        settings: Explorer settings (limits).
        definitions: Designer-declared parameter metadata.
        mode: "product" or "zip" expansion.
        cancel_token: Optional token; cancelling abandons the run.
        inflight: Optional registry that coalesces concurrent identical runs.
        progress_callback: Optional callback for progress updates.

    Returns:
        DiagnosisResult. A failure to persist the result is reported on
        ``store_error`` and does not discard the result.

    Raises:
        ParseError: If any parameter text is malformed.
        ExpansionError: If the design space is too large.
        EvaluationCancelled: If ``cancel_token`` is cancelled.
        CacheIntegrityError: If a stored entry belongs to different inputs.
        LockAcquisitionError: If the per-key lock times out.
    """
    source = designer_source.encode("utf-8") if isinstance(designer_source, str) else designer_source
    points = prepare_design_space(parameter_specs_raw, settings=settings, definitions=definitions, mode=mode)
    key = fingerprint(source, points, config)
    logger.debug("Diagnosis of %d points keyed %s", len(points), key.short_key)

    entry = store.lookup(key)
    if entry is not None:
        return DiagnosisResult.from_cache_entry(entry)

    def compute() -> DiagnosisResult:
        return _compute_and_store(
            key,
            points,
            config,
            evaluator=evaluator,
            store=store,
            executor=executor or DiagnosisExecutor(),
            cancel_token=cancel_token,
            progress_callback=progress_callback,
        )

    if inflight is None:
        return compute()
    return inflight.run(key.digest, compute, cancel_token=cancel_token)


def _compute_and_store(
    key: DiagnosisCacheKey,
    points: list[DesignSpacePoint],
    config: SimulationConfig,
    *,
    evaluator: DesignerEvaluator,
    store: DiagnosisStore,
    executor: DiagnosisExecutor,
    cancel_token: CancellationToken | None,
    progress_callback: ProgressCallback | None,
) -> DiagnosisResult:
    with store.key_lock(key):
        # Another process may have finished while we waited for the lock
        entry = store.lookup(key)
        if entry is not None:
            return DiagnosisResult.from_cache_entry(entry)

        result = executor.evaluate(
            points,
            evaluator,
            config,
            cancel_token=cancel_token,
            progress_callback=progress_callback,
        )
        result.cache_key = key

        try:
            store.store(result.to_cache_entry(key))
        except CacheStoreError as e:
            logger.warning("Diagnosis result not cached: %s", e)
            result.store_error = str(e)
        return result


class DiagnosisService:
    """Long-lived owner of a cache store, executor and in-flight registry.

    A hosting process constructs one service at startup and passes it to
    whatever triggers recomputation; nothing here is global.
    """

    def __init__(
        self,
        store: DiagnosisStore,
        *,
        executor: DiagnosisExecutor | None = None,
        settings: ExplorerSettings | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or ExplorerSettings()
        self.executor = executor or DiagnosisExecutor(make_pool(self.settings.pool, self.settings.max_workers))
        self.inflight: InFlightRegistry[DiagnosisResult] = InFlightRegistry()

    @classmethod
    def from_settings(cls, settings: ExplorerSettings) -> DiagnosisService:
        """Build a service backed by the filesystem cache in ``settings.cache_dir``."""
        store = FilesystemDiagnosisCache(settings.cache_dir, lock_timeout=settings.lock_timeout_sec)
        return cls(store, settings=settings)

    def config(self, n_simulations: int, n_bootstrap_simulations: int = 0) -> SimulationConfig:
        """Simulation config stamped with the configured cache version."""
        return SimulationConfig(
            n_simulations=n_simulations,
            n_bootstrap_simulations=n_bootstrap_simulations,
            cache_version=self.settings.default_cache_version,
        )

    def run(
        self,
        designer: Any,
        parameter_specs_raw: Mapping[str, str],
        config: SimulationConfig,
        *,
        definitions: Sequence[ParameterDefinition] | None = None,
        mode: ExpansionMode = "product",
        cancel_token: CancellationToken | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> DiagnosisResult:
        """Run diagnoses for a designer that is also its own evaluator.

        Definitions default to the designer's ``parameter_definitions()`` when
        it provides one.
        """
        if definitions is None and hasattr(designer, "parameter_definitions"):
            definitions = designer.parameter_definitions()
        return run_diagnoses(
            designer_source_bytes(designer),
            parameter_specs_raw,
            config,
            evaluator=designer,
            store=self.store,
            executor=self.executor,
            settings=self.settings,
            definitions=definitions,
            mode=mode,
            cancel_token=cancel_token,
            inflight=self.inflight,
            progress_callback=progress_callback,
        )


__all__ = [
    "DiagnosisService",
    "prepare_design_space",
    "run_diagnoses",
]
