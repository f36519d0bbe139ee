"""Two-arm randomized trial designer.

Reference designer used by the CLI and the tests. It is its own evaluator:
``instantiate`` validates parameters, ``simulate`` draws complete
randomizations of N units into two equal arms and estimates the difference in
means, and ``diagnose`` summarizes the draws into power, bias, RMSE and
coverage with bootstrap standard errors.

Every random draw is seeded from the design's parameters, so identical
parameters always produce identical rows.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from statistics import NormalDist
from typing import Any

import numpy as np

from design_foundry.errors import InstantiationError
from design_foundry.params.spec import ParameterDefinition
from design_foundry.substrate import canonical_json_dumps, sha256_bytes

MIN_SAMPLE_SIZE = 4

DIAGNOSANDS = ("bias", "rmse", "power", "coverage")


@dataclass(frozen=True, slots=True)
class TwoArmDesign:
    n: int
    effect_size: float
    sd: float
    alpha: float
    seed: int


@dataclass(frozen=True)
class TwoArmTrialDesigner:
    """Difference-in-means estimator for a two-arm trial.

    Attributes:
        seed: Base seed mixed into every per-design seed.
        estimator: Label written to the diagnosands rows.
    """

    seed: int = 20240101
    estimator: str = "difference_in_means"

    def parameter_definitions(self) -> list[ParameterDefinition]:
        return [
            ParameterDefinition(name="N", type="integer", default="100", description="Total sample size"),
            ParameterDefinition(name="effect_size", default="0.5", description="True average treatment effect"),
            ParameterDefinition(name="sd", minimum=0.0, default="1", description="Outcome standard deviation"),
            ParameterDefinition(name="alpha", minimum=0.0, maximum=1.0, default="0.05", description="Test size"),
        ]

    def instantiate(self, parameters: Mapping[str, Any]) -> TwoArmDesign:
        n = parameters.get("N", 100)
        effect_size = parameters.get("effect_size", 0.5)
        sd = parameters.get("sd", 1.0)
        alpha = parameters.get("alpha", 0.05)

        if isinstance(n, bool) or not isinstance(n, (int, float)) or not float(n).is_integer():
            raise InstantiationError(f"N must be an integer, got {n!r}")
        if n < MIN_SAMPLE_SIZE:
            raise InstantiationError(f"N must be at least {MIN_SAMPLE_SIZE}, got {n}")
        for name, value in (("effect_size", effect_size), ("sd", sd), ("alpha", alpha)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InstantiationError(f"{name} must be a number, got {value!r}")
        if sd <= 0:
            raise InstantiationError(f"sd must be positive, got {sd}")
        if not 0 < alpha < 1:
            raise InstantiationError(f"alpha must lie strictly between 0 and 1, got {alpha}")

        design = {"N": int(n), "effect_size": float(effect_size), "sd": float(sd), "alpha": float(alpha)}
        return TwoArmDesign(
            n=int(n),
            effect_size=float(effect_size),
            sd=float(sd),
            alpha=float(alpha),
            seed=_derive_seed(self.seed, design),
        )

    def simulate(self, design: TwoArmDesign, n_simulations: int) -> list[dict[str, Any]]:
        rng = np.random.default_rng(design.seed)
        n_treated = design.n // 2
        assignment = np.zeros(design.n, dtype=bool)
        assignment[:n_treated] = True
        treated = rng.permuted(np.tile(assignment, (n_simulations, 1)), axis=1)

        y0 = rng.normal(0.0, design.sd, size=(n_simulations, design.n))
        outcome = y0 + design.effect_size * treated

        n_control = design.n - n_treated
        mean_treated = np.where(treated, outcome, 0.0).sum(axis=1) / n_treated
        mean_control = np.where(treated, 0.0, outcome).sum(axis=1) / n_control
        var_treated = np.where(treated, (outcome - mean_treated[:, None]) ** 2, 0.0).sum(axis=1) / (n_treated - 1)
        var_control = np.where(treated, 0.0, (outcome - mean_control[:, None]) ** 2).sum(axis=1) / (n_control - 1)

        estimate = mean_treated - mean_control
        std_error = np.sqrt(var_treated / n_treated + var_control / n_control)
        z_critical = NormalDist().inv_cdf(1 - design.alpha / 2)
        p_value = np.array([math.erfc(abs(t) / math.sqrt(2)) for t in estimate / std_error])
        conf_low = estimate - z_critical * std_error
        conf_high = estimate + z_critical * std_error

        return [
            {
                "sim_ID": i + 1,
                "estimand": design.effect_size,
                "estimate": float(estimate[i]),
                "std_error": float(std_error[i]),
                "p_value": float(p_value[i]),
                "conf_low": float(conf_low[i]),
                "conf_high": float(conf_high[i]),
                "significant": bool(p_value[i] <= design.alpha),
                "covers": bool(conf_low[i] <= design.effect_size <= conf_high[i]),
            }
            for i in range(n_simulations)
        ]

    def diagnose(self, rows: Sequence[Mapping[str, Any]], n_bootstrap: int) -> list[dict[str, Any]]:
        if not rows:
            raise ValueError("No simulation rows to diagnose")
        columns = {
            "error": np.array([row["estimate"] - row["estimand"] for row in rows], dtype=np.float64),
            "significant": np.array([row["significant"] for row in rows], dtype=np.float64),
            "covers": np.array([row["covers"] for row in rows], dtype=np.float64),
        }
        diagnosands = _diagnosands(columns, np.arange(len(rows)))

        result: dict[str, Any] = {"estimator": self.estimator, "n_sims": len(rows)}
        result.update(diagnosands)

        if n_bootstrap > 0:
            rng = np.random.default_rng(_derive_seed(self.seed, {"rows": len(rows), "bootstrap": n_bootstrap}))
            draws = rng.integers(0, len(rows), size=(n_bootstrap, len(rows)))
            replicates = [_diagnosands(columns, indices) for indices in draws]
            for name in DIAGNOSANDS:
                values = np.array([replicate[name] for replicate in replicates])
                result[f"se({name})"] = float(values.std(ddof=1)) if n_bootstrap > 1 else None
        return [result]


def _diagnosands(columns: dict[str, np.ndarray], indices: np.ndarray) -> dict[str, float]:
    error = columns["error"][indices]
    return {
        "bias": float(error.mean()),
        "rmse": float(np.sqrt((error**2).mean())),
        "power": float(columns["significant"][indices].mean()),
        "coverage": float(columns["covers"][indices].mean()),
    }


def _derive_seed(base: int, values: dict[str, Any]) -> int:
    digest = sha256_bytes(canonical_json_dumps({"base": base, **values}).encode("utf-8"))
    return int(digest[:16], 16)
