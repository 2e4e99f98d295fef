from __future__ import annotations

import threading

import pandas as pd
import pytest

from services.analysis_common import AnalysisAssumptions, AnalysisCancelled, roof_max_pv_kw
from services.analysis_frontier import SweepSettings
from services.analysis_monte_carlo import MonteCarloConfig
from services.simulation_core import SystemConfiguration
from services.site_analysis import default_sizing, run_site_analysis, run_site_monte_carlo
from services.synthetic_profile import generate_synthetic_readings

SMALL_SWEEP = SweepSettings(
    solar_max_kw=400.0,
    solar_step_kw=200.0,
    battery_max_kwh=200.0,
    battery_step_kwh=200.0,
    include_hybrid_grid=False,
)


@pytest.fixture(scope="module")
def office_readings() -> pd.DataFrame:
    return generate_synthetic_readings("office", 300_000.0).readings


def test_default_sizing_and_setpoint(office_readings: pd.DataFrame) -> None:
    result = run_site_analysis(office_readings, include_frontier=False, idempotency_key="job-17")

    assert result.ok
    assert result.idempotency_key == "job-17"
    profile = result.profile.profile
    config = result.config
    assert config.pv_kw == float(round(profile.annual_consumption_kwh / 1150.0 * 1.2))
    assert config.battery_kw == float(round(profile.peak_demand_kw * 0.3))
    assert config.battery_kwh == config.battery_kw * 2
    assert config.demand_setpoint_kw == float(round(profile.peak_demand_kw * 0.9))
    assert result.roof_limited is False
    assert result.evaluation.dispatch.peak_after_kw <= result.evaluation.dispatch.peak_before_kw


def test_roof_limits_default_pv(office_readings: pd.DataFrame) -> None:
    assumptions = AnalysisAssumptions(roof_area_sq_ft=5_000.0)
    result = run_site_analysis(office_readings, assumptions, include_frontier=False)

    assert result.ok
    assert result.roof_limited is True
    assert result.config.pv_kw == float(round(roof_max_pv_kw(assumptions)))
    assert any("roof" in warning for warning in result.warnings)
    assert any("roof" in insight.lower() for insight in result.insights)


def test_forced_pv_above_roof_is_infeasible(office_readings: pd.DataFrame) -> None:
    result = run_site_analysis(
        office_readings,
        forced_sizing=SystemConfiguration(pv_kw=5_000.0),
        include_frontier=False,
    )

    assert result.status == "failed"
    assert result.failure.stage == "sizing"
    assert result.failure.kind == "infeasible_configuration"
    assert result.evaluation is None
    assert result.to_dict()["failure"]["kind"] == "infeasible_configuration"


def test_explicit_roof_limit_overrides_assumptions(office_readings: pd.DataFrame) -> None:
    result = run_site_analysis(
        office_readings,
        forced_sizing=SystemConfiguration(pv_kw=150.0),
        max_pv_from_roof_kw=100.0,
        include_frontier=False,
    )
    assert result.failure is not None and result.failure.kind == "infeasible_configuration"


def test_insufficient_history_fails_unless_allowed(office_readings: pd.DataFrame) -> None:
    short = office_readings[office_readings["timestamp"] < "2023-01-11"]

    refused = run_site_analysis(short, include_frontier=False)
    assert refused.status == "failed"
    assert refused.failure.stage == "profile"
    assert refused.failure.kind == "input_insufficiency"

    allowed = run_site_analysis(short, include_frontier=False, allow_insufficient_data=True)
    assert allowed.ok
    assert allowed.warnings
    assert len(allowed.to_dict()["interpolated_months"]) == 11


def test_invalid_readings_become_typed_failure() -> None:
    frame = pd.DataFrame({"timestamp": ["2025-01-01 00:00"], "kwh": [1.0], "kw": [1.0], "granularity": ["5min"]})
    result = run_site_analysis(frame, include_frontier=False)

    assert result.status == "failed"
    assert result.failure.kind == "invalid_input"


def test_cancellation_propagates(office_readings: pd.DataFrame) -> None:
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(AnalysisCancelled):
        run_site_analysis(office_readings, cancel_event=cancel)


def test_result_payload_shape(office_readings: pd.DataFrame) -> None:
    result = run_site_analysis(office_readings, sweep_settings=SMALL_SWEEP, idempotency_key="abc")
    payload = result.to_dict()

    assert set(payload) >= {
        "status",
        "idempotency_key",
        "assumptions_version",
        "profile",
        "sizing",
        "energy",
        "financials",
        "hourly_profile",
        "peak_week",
        "frontier",
        "warnings",
        "insights",
    }
    assert payload["idempotency_key"] == "abc"
    assert payload["assumptions_version"] == result.assumptions.version
    assert len(payload["hourly_profile"]) == 24
    assert payload["frontier"]["best_npv"] is not None
    assert payload["sizing"]["system_type"] == result.config.system_type


def test_default_sizing_helper_reports_roof_cap(office_readings: pd.DataFrame) -> None:
    result = run_site_analysis(office_readings, include_frontier=False)
    config, limited = default_sizing(result.profile, AnalysisAssumptions(), roof_limit_kw=50.0)

    assert config.pv_kw == 50.0
    assert limited is True


def test_monte_carlo_around_an_analysis(office_readings: pd.DataFrame) -> None:
    analysis = run_site_analysis(office_readings, include_frontier=False)
    outcome = run_site_monte_carlo(analysis, MonteCarloConfig(iterations=40, seed=5))

    assert outcome.iterations_used == 40
    assert outcome.horizon_years == analysis.assumptions.analysis_years
    assert 0.0 <= outcome.probability_npv_positive <= 1.0


def test_full_dispatch_monte_carlo(office_readings: pd.DataFrame) -> None:
    analysis = run_site_analysis(office_readings, include_frontier=False)
    outcome = run_site_monte_carlo(analysis, MonteCarloConfig(iterations=3, seed=5), full_dispatch=True)

    assert outcome.iterations_used == 3


def test_monte_carlo_requires_successful_analysis(office_readings: pd.DataFrame) -> None:
    failed = run_site_analysis(
        office_readings, forced_sizing=SystemConfiguration(pv_kw=5_000.0), include_frontier=False
    )
    with pytest.raises(ValueError, match="successful site analysis"):
        run_site_monte_carlo(failed)


def test_rate_class_mismatch_is_flagged() -> None:
    small_shop = generate_synthetic_readings("retail", 40_000.0).readings

    default_rate = run_site_analysis(small_shop, include_frontier=False)
    assert default_rate.profile.profile.peak_demand_kw < 65
    assert any("rate G" in warning for warning in default_rate.warnings)

    matching_rate = run_site_analysis(small_shop, AnalysisAssumptions(tariff_code="G"), include_frontier=False)
    assert not any("normally billed" in warning for warning in matching_rate.warnings)
