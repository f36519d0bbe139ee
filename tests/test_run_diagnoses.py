"""End-to-end tests for run_diagnoses, in-flight coalescing and DiagnosisService.

These tests verify:
1. A repeated run is served from the cache without touching the evaluator
2. Partial failures are cached alongside successful points
3. Parse and expansion errors surface before any evaluation
4. Store failures and cancellation leave the cache consistent
5. Concurrent identical runs share one computation
"""

from __future__ import annotations

import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from design_foundry import (
    DiagnosisService,
    ExplorerSettings,
    FilesystemDiagnosisCache,
    InMemoryDiagnosisCache,
    ParameterDefinition,
    PointStatus,
    SimulationConfig,
    prepare_design_space,
    run_diagnoses,
)
from design_foundry.designers import TwoArmTrialDesigner
from design_foundry.diagnosis import CancellationToken, DiagnosisExecutor, InFlightRegistry, ThreadPool, fingerprint
from design_foundry.errors import CacheStoreError, DesignFoundryError, EvaluationCancelled, ExpansionError, ParseError
from design_foundry.substrate import FileLock, LockAcquisitionError


@pytest.fixture(params=["memory", "filesystem"])
def store(request: pytest.FixtureRequest, tmp_path: Path):
    if request.param == "memory":
        return InMemoryDiagnosisCache()
    return FilesystemDiagnosisCache(tmp_path / "cache")


class TestCacheHits:
    def test_second_run_is_served_from_cache(self, store, counting_evaluator, small_config) -> None:
        first = run_diagnoses(b"X", {"N": "10, 20"}, small_config, evaluator=counting_evaluator, store=store)
        calls_after_first = counting_evaluator.total_calls
        second = run_diagnoses(b"X", {"N": "10, 20"}, small_config, evaluator=counting_evaluator, store=store)

        assert not first.from_cache
        assert second.from_cache
        assert calls_after_first == 6
        assert counting_evaluator.total_calls == calls_after_first
        assert second.cache_key == first.cache_key
        assert second.diagnosands_table() == first.diagnosands_table()
        assert second.simulations_table() == first.simulations_table()

    def test_hit_survives_new_cache_instance(self, tmp_path: Path, counting_evaluator, small_config) -> None:
        root = tmp_path / "cache"
        run_diagnoses(
            b"X", {"N": "10, 20"}, small_config, evaluator=counting_evaluator, store=FilesystemDiagnosisCache(root)
        )
        calls = counting_evaluator.total_calls

        result = run_diagnoses(
            b"X", {"N": "10, 20"}, small_config, evaluator=counting_evaluator, store=FilesystemDiagnosisCache(root)
        )
        assert result.from_cache
        assert counting_evaluator.total_calls == calls
        assert [p.parameters for p in result.points] == [{"N": 10}, {"N": 20}]

    def test_text_and_bytes_source_agree(self, store, counting_evaluator, small_config) -> None:
        run_diagnoses("X", {"N": "10"}, small_config, evaluator=counting_evaluator, store=store)
        result = run_diagnoses(b"X", {"N": "10"}, small_config, evaluator=counting_evaluator, store=store)
        assert result.from_cache

    def test_equivalent_text_hits_the_same_entry(self, store, counting_evaluator, small_config) -> None:
        run_diagnoses(b"X", {"N": "10, 20, 30"}, small_config, evaluator=counting_evaluator, store=store)
        result = run_diagnoses(b"X", {"N": "10, 20, ..., 30"}, small_config, evaluator=counting_evaluator, store=store)
        assert result.from_cache

    @pytest.mark.parametrize(
        ("source", "specs", "config_overrides"),
        [
            (b"Y", {"N": "10, 20"}, {}),
            (b"X", {"N": "10, 21"}, {}),
            (b"X", {"N": "20, 10"}, {}),
            (b"X", {"N": "10, 20"}, {"n_simulations": 11}),
            (b"X", {"N": "10, 20"}, {"n_bootstrap_simulations": 0}),
            (b"X", {"N": "10, 20"}, {"cache_version": "v2"}),
        ],
    )
    def test_any_input_change_recomputes(self, store, counting_evaluator, source, specs, config_overrides) -> None:
        base = SimulationConfig(n_simulations=10, n_bootstrap_simulations=10, cache_version="v1")
        run_diagnoses(b"X", {"N": "10, 20"}, base, evaluator=counting_evaluator, store=store)
        calls = counting_evaluator.total_calls

        changed = base.model_copy(update=config_overrides)
        result = run_diagnoses(source, specs, changed, evaluator=counting_evaluator, store=store)
        assert not result.from_cache
        assert counting_evaluator.total_calls > calls


class TestPartialFailure:
    def test_failed_points_are_reported_and_cached(self, store, counting_evaluator, small_config) -> None:
        first = run_diagnoses(b"X", {"N": "10, -5"}, small_config, evaluator=counting_evaluator, store=store)

        assert [p.status for p in first.points] == [PointStatus.COMPLETED, PointStatus.FAILED]
        assert first.points[1].stage == "instantiate"
        assert first.points[1].error == "N must be positive, got -5"
        assert len(first.diagnosands_table()) == 1

        calls = counting_evaluator.total_calls
        second = run_diagnoses(b"X", {"N": "10, -5"}, small_config, evaluator=counting_evaluator, store=store)
        assert second.from_cache
        assert counting_evaluator.total_calls == calls
        assert second.points[1].status == PointStatus.FAILED
        assert second.points[1].error == first.points[1].error
        assert second.points[1].stage == "instantiate"

    def test_simulation_failure_message_survives_cache(self, store, counting_evaluator, small_config) -> None:
        evaluator = counting_evaluator
        evaluator.fail_simulate_for = {20}
        run_diagnoses(b"X", {"N": "10, 20"}, small_config, evaluator=evaluator, store=store)
        cached = run_diagnoses(b"X", {"N": "10, 20"}, small_config, evaluator=evaluator, store=store)
        assert cached.from_cache
        assert cached.points[1].error == "RuntimeError: simulation diverged for N=20"
        assert cached.points[1].stage == "simulate"


class TestInputErrors:
    def test_parse_error_propagates_before_evaluation(self, store, counting_evaluator, small_config) -> None:
        with pytest.raises(ParseError) as excinfo:
            run_diagnoses(b"X", {"N": "10,,20"}, small_config, evaluator=counting_evaluator, store=store)
        assert excinfo.value.parameter == "N"
        assert counting_evaluator.total_calls == 0

    def test_expansion_error_propagates_before_evaluation(self, store, counting_evaluator, small_config) -> None:
        settings = ExplorerSettings(max_design_points=2)
        with pytest.raises(ExpansionError):
            run_diagnoses(
                b"X",
                {"N": "10, 20, 30"},
                small_config,
                evaluator=counting_evaluator,
                store=store,
                settings=settings,
            )
        assert counting_evaluator.total_calls == 0

    def test_out_of_range_number_is_a_parse_error(self, store, counting_evaluator, small_config) -> None:
        with pytest.raises(ParseError, match="out of range") as excinfo:
            run_diagnoses(b"X", {"N": "1e5000"}, small_config, evaluator=counting_evaluator, store=store)
        assert excinfo.value.parameter == "N"
        assert excinfo.value.text == "1e5000"
        assert counting_evaluator.total_calls == 0


class TestLockTimeout:
    def test_held_key_lock_times_out_with_lock_error(self, tmp_path: Path, counting_evaluator, small_config) -> None:
        store = FilesystemDiagnosisCache(tmp_path / "cache", lock_timeout=0.05)
        key = fingerprint(b"X", prepare_design_space({"N": "10, 20"}), small_config)

        with FileLock(tmp_path / "cache" / "locks" / f"{key.digest}.lock").exclusive():
            with pytest.raises(LockAcquisitionError) as excinfo:
                run_diagnoses(b"X", {"N": "10, 20"}, small_config, evaluator=counting_evaluator, store=store)

        assert isinstance(excinfo.value, DesignFoundryError)
        assert counting_evaluator.total_calls == 0

        result = run_diagnoses(b"X", {"N": "10, 20"}, small_config, evaluator=counting_evaluator, store=store)
        assert result.n_completed == 2


class TestStoreFailure:
    def test_store_failure_still_returns_result(self, counting_evaluator, small_config) -> None:
        store = InMemoryDiagnosisCache()
        with patch.object(store, "store", side_effect=CacheStoreError("disk full")):
            result = run_diagnoses(b"X", {"N": "10, 20"}, small_config, evaluator=counting_evaluator, store=store)

        assert result.store_error == "disk full"
        assert result.n_completed == 2
        assert len(store) == 0

        retry = run_diagnoses(b"X", {"N": "10, 20"}, small_config, evaluator=counting_evaluator, store=store)
        assert not retry.from_cache
        assert retry.store_error is None
        assert len(store) == 1


class TestCancellation:
    def test_cancelled_run_stores_nothing(self, counting_evaluator, small_config) -> None:
        store = InMemoryDiagnosisCache()
        token = CancellationToken()
        token.cancel()
        with pytest.raises(EvaluationCancelled):
            run_diagnoses(
                b"X",
                {"N": "10, 20"},
                small_config,
                evaluator=counting_evaluator,
                store=store,
                executor=DiagnosisExecutor(ThreadPool(max_workers=2)),
                cancel_token=token,
            )
        assert len(store) == 0
        assert counting_evaluator.total_calls == 0


class TestExpansionOptions:
    def test_zip_mode(self, store, counting_evaluator, small_config) -> None:
        result = run_diagnoses(
            b"X",
            {"N": "10, 20", "arm": "a, b"},
            small_config,
            evaluator=counting_evaluator,
            store=store,
            mode="zip",
        )
        assert [p.parameters for p in result.points] == [{"N": 10, "arm": "a"}, {"N": 20, "arm": "b"}]

    def test_zip_and_product_are_cached_separately(self, store, counting_evaluator, small_config) -> None:
        run_diagnoses(b"X", {"N": "10, 20", "arm": "a, b"}, small_config, evaluator=counting_evaluator, store=store)
        result = run_diagnoses(
            b"X", {"N": "10, 20", "arm": "a, b"}, small_config, evaluator=counting_evaluator, store=store, mode="zip"
        )
        assert not result.from_cache

    def test_definitions_supply_defaults_and_types(self, store, counting_evaluator, small_config) -> None:
        definitions = [
            ParameterDefinition(name="N", type="integer"),
            ParameterDefinition(name="sd", default="1"),
        ]
        result = run_diagnoses(
            b"X",
            {"N": "10"},
            small_config,
            evaluator=counting_evaluator,
            store=store,
            definitions=definitions,
        )
        assert result.points[0].parameters == {"N": 10, "sd": 1.0}


class TestInFlightRegistry:
    class _ObservedRegistry(InFlightRegistry):
        def __init__(self) -> None:
            super().__init__(poll_interval_sec=0.01)
            self.waiting = threading.Event()

        def _wait(self, future, cancel_token):
            self.waiting.set()
            return super()._wait(future, cancel_token)

    def test_single_caller_computes(self) -> None:
        registry: InFlightRegistry[int] = InFlightRegistry()
        assert registry.run("k", lambda: 42) == 42
        assert registry.in_flight() == []

    def test_concurrent_callers_share_one_computation(self) -> None:
        registry = self._ObservedRegistry()
        release = threading.Event()
        calls: list[str] = []
        results: dict[str, object] = {}

        def leader_compute() -> dict[str, int]:
            calls.append("leader")
            release.wait(timeout=5)
            return {"value": 1}

        def follower_compute() -> dict[str, int]:
            calls.append("follower")
            return {"value": 2}

        leader = threading.Thread(target=lambda: results.__setitem__("leader", registry.run("k", leader_compute)))
        leader.start()
        while registry.in_flight() != ["k"]:
            release.wait(timeout=0.001)
        follower = threading.Thread(
            target=lambda: results.__setitem__("follower", registry.run("k", follower_compute))
        )
        follower.start()
        assert registry.waiting.wait(timeout=5)
        release.set()
        leader.join(timeout=5)
        follower.join(timeout=5)

        assert calls == ["leader"]
        assert results["leader"] == results["follower"] == {"value": 1}
        assert results["leader"] is not results["follower"]
        assert registry.in_flight() == []

    def test_follower_takes_over_after_leader_cancellation(self) -> None:
        registry = self._ObservedRegistry()
        release = threading.Event()
        outcomes: dict[str, object] = {}

        def leader_compute() -> str:
            release.wait(timeout=5)
            raise EvaluationCancelled("leader cancelled")

        def run_leader() -> None:
            try:
                registry.run("k", leader_compute)
            except EvaluationCancelled as e:
                outcomes["leader"] = e

        leader = threading.Thread(target=run_leader)
        leader.start()
        while registry.in_flight() != ["k"]:
            release.wait(timeout=0.001)
        follower = threading.Thread(target=lambda: outcomes.__setitem__("follower", registry.run("k", lambda: "own")))
        follower.start()
        assert registry.waiting.wait(timeout=5)
        release.set()
        leader.join(timeout=5)
        follower.join(timeout=5)

        assert isinstance(outcomes["leader"], EvaluationCancelled)
        assert outcomes["follower"] == "own"

    def test_follower_can_cancel_its_own_wait(self) -> None:
        registry: InFlightRegistry[str] = InFlightRegistry(poll_interval_sec=0.01)
        release = threading.Event()
        leader = threading.Thread(target=lambda: registry.run("k", lambda: release.wait(timeout=5) and "done"))
        leader.start()
        try:
            while registry.in_flight() != ["k"]:
                release.wait(timeout=0.001)
            token = CancellationToken()
            token.cancel()
            with pytest.raises(EvaluationCancelled):
                registry.run("k", lambda: "never", cancel_token=token)
        finally:
            release.set()
            leader.join(timeout=5)

    def test_leader_exception_reaches_followers(self) -> None:
        registry = self._ObservedRegistry()
        release = threading.Event()
        errors: list[BaseException] = []

        def failing() -> None:
            release.wait(timeout=5)
            raise RuntimeError("boom")

        def call() -> None:
            try:
                registry.run("k", failing)
            except RuntimeError as e:
                errors.append(e)

        leader = threading.Thread(target=call)
        leader.start()
        while registry.in_flight() != ["k"]:
            release.wait(timeout=0.001)
        follower = threading.Thread(target=call)
        follower.start()
        assert registry.waiting.wait(timeout=5)
        release.set()
        leader.join(timeout=5)
        follower.join(timeout=5)

        assert len(errors) == 2
        assert all(str(e) == "boom" for e in errors)


class TestDiagnosisService:
    def test_run_with_reference_designer(self) -> None:
        service = DiagnosisService(InMemoryDiagnosisCache(), settings=ExplorerSettings(pool="serial"))
        config = service.config(50, 0)
        designer = TwoArmTrialDesigner()

        first = service.run(designer, {"N": "20, 40"}, config)
        second = service.run(TwoArmTrialDesigner(), {"N": "20, 40"}, config)

        assert first.n_completed == 2
        assert second.from_cache
        table = first.diagnosands_table()
        assert [row["N"] for row in table] == [20, 40]
        assert {row["effect_size"] for row in table} == {0.5}
        assert {row["alpha"] for row in table} == {0.05}
        assert all(row["n_sims"] == 50 for row in table)

    def test_designer_state_is_part_of_the_key(self) -> None:
        service = DiagnosisService(InMemoryDiagnosisCache(), settings=ExplorerSettings(pool="serial"))
        config = service.config(20, 0)
        service.run(TwoArmTrialDesigner(seed=1), {"N": "20"}, config)
        result = service.run(TwoArmTrialDesigner(seed=2), {"N": "20"}, config)
        assert not result.from_cache

    def test_invalid_points_fail_individually(self) -> None:
        service = DiagnosisService(InMemoryDiagnosisCache(), settings=ExplorerSettings(pool="serial"))
        result = service.run(TwoArmTrialDesigner(), {"N": "20, 2"}, service.config(20, 0))
        assert result.points[0].passed
        assert result.points[1].status == PointStatus.FAILED
        assert result.points[1].error == "N must be at least 4, got 2"

    def test_config_uses_default_cache_version(self) -> None:
        service = DiagnosisService(InMemoryDiagnosisCache(), settings=ExplorerSettings(default_cache_version="v7"))
        assert service.config(10).cache_version == "v7"

    def test_from_settings_uses_filesystem_cache(self, tmp_path: Path) -> None:
        service = DiagnosisService.from_settings(ExplorerSettings(cache_dir=tmp_path / "cache", pool="serial"))
        assert isinstance(service.store, FilesystemDiagnosisCache)
        service.run(TwoArmTrialDesigner(), {"N": "20"}, service.config(20, 0))
        assert service.store.stats().entries == 1
