"""Tests for the two-arm trial reference designer."""

from __future__ import annotations

import pytest

from design_foundry.designers import MIN_SAMPLE_SIZE, TwoArmTrialDesigner
from design_foundry.diagnosis import DesignerEvaluator, DiagnosisExecutor, ProcessPool, SerialPool, SimulationConfig
from design_foundry.errors import InstantiationError
from design_foundry.params import definitions_by_name, expand_design_space, parse_parameter_specs, resolve_parameters


def _params(**overrides: object) -> dict[str, object]:
    params: dict[str, object] = {"N": 40, "effect_size": 0.5, "sd": 1.0, "alpha": 0.05}
    params.update(overrides)
    return params


class TestInstantiate:
    def test_valid_design(self) -> None:
        design = TwoArmTrialDesigner().instantiate(_params())
        assert design.n == 40
        assert design.effect_size == 0.5

    def test_satisfies_evaluator_protocol(self) -> None:
        assert isinstance(TwoArmTrialDesigner(), DesignerEvaluator)

    def test_seed_depends_on_parameters(self) -> None:
        designer = TwoArmTrialDesigner()
        assert designer.instantiate(_params()).seed == designer.instantiate(_params()).seed
        assert designer.instantiate(_params()).seed != designer.instantiate(_params(N=42)).seed
        assert designer.instantiate(_params()).seed != TwoArmTrialDesigner(seed=7).instantiate(_params()).seed

    def test_integral_float_sample_size(self) -> None:
        assert TwoArmTrialDesigner().instantiate(_params(N=40.0)).n == 40

    @pytest.mark.parametrize(
        ("overrides", "message"),
        [
            ({"N": MIN_SAMPLE_SIZE - 1}, "at least"),
            ({"N": -5}, "at least"),
            ({"N": 10.5}, "integer"),
            ({"N": "ten"}, "integer"),
            ({"sd": 0.0}, "sd must be positive"),
            ({"alpha": 1.0}, "alpha"),
            ({"effect_size": "big"}, "effect_size must be a number"),
        ],
    )
    def test_invalid_parameters(self, overrides: dict[str, object], message: str) -> None:
        with pytest.raises(InstantiationError, match=message):
            TwoArmTrialDesigner().instantiate(_params(**overrides))


class TestSimulate:
    def test_one_row_per_draw(self) -> None:
        designer = TwoArmTrialDesigner()
        rows = designer.simulate(designer.instantiate(_params()), 25)
        assert [row["sim_ID"] for row in rows] == list(range(1, 26))
        assert set(rows[0]) == {
            "sim_ID",
            "estimand",
            "estimate",
            "std_error",
            "p_value",
            "conf_low",
            "conf_high",
            "significant",
            "covers",
        }

    def test_rows_are_plain_python_values(self) -> None:
        designer = TwoArmTrialDesigner()
        row = designer.simulate(designer.instantiate(_params()), 1)[0]
        assert type(row["estimate"]) is float
        assert type(row["significant"]) is bool

    def test_deterministic_for_equal_parameters(self) -> None:
        designer = TwoArmTrialDesigner()
        first = designer.simulate(designer.instantiate(_params()), 20)
        second = designer.simulate(designer.instantiate(_params()), 20)
        assert first == second

    def test_confidence_interval_brackets_estimate(self) -> None:
        designer = TwoArmTrialDesigner()
        for row in designer.simulate(designer.instantiate(_params(N=5)), 20):
            assert row["conf_low"] <= row["estimate"] <= row["conf_high"]
            assert 0.0 <= row["p_value"] <= 1.0


class TestDiagnose:
    def test_diagnosands_without_bootstrap(self) -> None:
        designer = TwoArmTrialDesigner()
        rows = designer.simulate(designer.instantiate(_params()), 50)
        (result,) = designer.diagnose(rows, 0)
        assert result["estimator"] == "difference_in_means"
        assert result["n_sims"] == 50
        assert {"bias", "rmse", "power", "coverage"} <= set(result)
        assert not any(column.startswith("se(") for column in result)

    def test_bootstrap_standard_errors(self) -> None:
        designer = TwoArmTrialDesigner()
        rows = designer.simulate(designer.instantiate(_params()), 50)
        (result,) = designer.diagnose(rows, 20)
        for name in ("bias", "rmse", "power", "coverage"):
            assert result[f"se({name})"] >= 0.0

    def test_single_bootstrap_gives_undefined_standard_errors(self) -> None:
        designer = TwoArmTrialDesigner()
        rows = designer.simulate(designer.instantiate(_params()), 10)
        (result,) = designer.diagnose(rows, 1)
        assert result["se(power)"] is None

    def test_large_effect_has_high_power(self) -> None:
        designer = TwoArmTrialDesigner()
        rows = designer.simulate(designer.instantiate(_params(N=100, effect_size=2.0)), 100)
        (result,) = designer.diagnose(rows, 0)
        assert result["power"] >= 0.95
        assert abs(result["bias"]) < 0.2

    def test_coverage_near_nominal(self) -> None:
        designer = TwoArmTrialDesigner()
        rows = designer.simulate(designer.instantiate(_params(N=200)), 400)
        (result,) = designer.diagnose(rows, 0)
        assert 0.88 <= result["coverage"] <= 0.99

    def test_empty_rows_rejected(self) -> None:
        with pytest.raises(ValueError):
            TwoArmTrialDesigner().diagnose([], 0)


class TestParameterDefinitions:
    def test_defaults_fill_unspecified_parameters(self) -> None:
        definitions = definitions_by_name(TwoArmTrialDesigner().parameter_definitions())
        resolved = resolve_parameters(parse_parameter_specs({"N": "20"}), definitions)
        assert {name: value.items for name, value in resolved.items()} == {
            "N": (20,),
            "effect_size": (0.5,),
            "sd": (1.0,),
            "alpha": (0.05,),
        }


@pytest.mark.slow
class TestProcessPool:
    def test_process_pool_matches_serial(self) -> None:
        points = expand_design_space(parse_parameter_specs({"N": "20, 40", "effect_size": "0.2, 0.8"}))
        config = SimulationConfig(n_simulations=30, n_bootstrap_simulations=5)
        designer = TwoArmTrialDesigner()

        serial = DiagnosisExecutor(SerialPool()).evaluate(points, designer, config)
        parallel = DiagnosisExecutor(ProcessPool(max_workers=2)).evaluate(points, designer, config)

        assert parallel.n_completed == 4
        assert parallel.diagnosands_table() == serial.diagnosands_table()
