# SPDX-License-Identifier: MIT
"""Pytest configuration and shared fixtures for test suite.

This module provides:
- Deterministic test environment setup
- Counting designer evaluators for cache and executor tests
"""
from __future__ import annotations

import os
import threading
from collections.abc import Mapping, Sequence
from typing import Any

import pytest

from design_foundry.diagnosis import SimulationConfig
from design_foundry.errors import InstantiationError


# ---------------------------------------------------------------------------
# Environment Setup
# ---------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest environment for determinism.

    Sets environment variables to ensure reproducible test execution.
    """
    deterministic_env = {
        "LC_ALL": "C",
        "LANG": "C",
        "TZ": "UTC",
        "PYTHONHASHSEED": "0",
    }
    for key, value in deterministic_env.items():
        os.environ.setdefault(key, value)


# ---------------------------------------------------------------------------
# Evaluators
# ---------------------------------------------------------------------------


class CountingEvaluator:
    """Deterministic evaluator that records how often each stage runs.

    Simulation rows are ``{"draw": i, "value": N * i}``; the diagnosands row
    reports the mean value. Instantiation fails for non-positive ``N``.
    """

    def __init__(self, fail_simulate_for: set[int] | None = None) -> None:
        self.fail_simulate_for = fail_simulate_for or set()
        self.instantiate_calls = 0
        self.simulate_calls = 0
        self.diagnose_calls = 0
        self._lock = threading.Lock()

    @property
    def total_calls(self) -> int:
        return self.instantiate_calls + self.simulate_calls + self.diagnose_calls

    def instantiate(self, parameters: Mapping[str, Any]) -> dict[str, Any]:
        with self._lock:
            self.instantiate_calls += 1
        n = parameters.get("N", 1)
        if n <= 0:
            raise InstantiationError(f"N must be positive, got {n}")
        return dict(parameters)

    def simulate(self, design: Mapping[str, Any], n_simulations: int) -> list[dict[str, Any]]:
        with self._lock:
            self.simulate_calls += 1
        n = design.get("N", 1)
        if n in self.fail_simulate_for:
            raise RuntimeError(f"simulation diverged for N={n}")
        return [{"draw": i, "value": n * i} for i in range(n_simulations)]

    def diagnose(self, rows: Sequence[Mapping[str, Any]], n_bootstrap: int) -> list[dict[str, Any]]:
        with self._lock:
            self.diagnose_calls += 1
        mean = sum(row["value"] for row in rows) / len(rows)
        return [{"diagnosand": "mean_value", "estimate": mean, "n_bootstrap": n_bootstrap}]


@pytest.fixture
def counting_evaluator() -> CountingEvaluator:
    return CountingEvaluator()


@pytest.fixture
def small_config() -> SimulationConfig:
    return SimulationConfig(n_simulations=10, n_bootstrap_simulations=10, cache_version="v1")
