from __future__ import annotations

import numpy as np
import pytest

from services.analysis_common import AnalysisAssumptions
from services.profile_builder import HourlyProfile
from services.simulation_core import (
    SystemConfiguration,
    SystemModelingParams,
    build_production_profile,
    resolve_yield_strategy,
    simulate_dispatch,
    summarize_dispatch,
)


def _flat_profile(annual_kwh: float = 200_000.0) -> HourlyProfile:
    hourly = np.full(8760, annual_kwh / 8760)
    return HourlyProfile.from_arrays(hourly, hourly * 1.2)


def test_reference_site_production_and_self_consumption() -> None:
    """100 kW on a 200 MWh site at 1150 kWh/kWp."""

    profile = _flat_profile()
    assumptions = AnalysisAssumptions()
    strategy = resolve_yield_strategy(assumptions)
    production = build_production_profile(profile, 100.0, strategy, assumptions.modeling_params())
    result = simulate_dispatch(profile, SystemConfiguration(pv_kw=100.0), production)

    assert strategy.effective_yield_kwh_per_kwp == pytest.approx(1150.0)
    assert production.dc_kwh.sum() == pytest.approx(115_000.0)
    assert result.total_production_kwh == pytest.approx(115_000.0, rel=0.05)
    assert result.self_consumption_kwh <= result.total_production_kwh + 1e-6
    assert result.self_consumption_kwh <= result.total_consumption_kwh + 1e-6
    assert result.clipping_loss_kwh == pytest.approx(production.clipping_loss_kwh)
    assert abs(result.energy_balance_error_kwh()) < 1e-6


def test_yield_strategy_adjustments() -> None:
    bifacial = resolve_yield_strategy(AnalysisAssumptions(bifacial_enabled=True))
    assert bifacial.effective_yield_kwh_per_kwp == pytest.approx(1150.0 * 1.15)

    oriented = resolve_yield_strategy(AnalysisAssumptions(orientation_factor=0.3))
    assert oriented.orientation_factor == pytest.approx(0.6)

    satellite = resolve_yield_strategy(
        AnalysisAssumptions(yield_source="google", solar_yield_kwh_per_kwp=1200.0, orientation_factor=0.7)
    )
    assert satellite.effective_yield_kwh_per_kwp == pytest.approx(1200.0)
    assert satellite.apply_temperature_shape is False

    custom = resolve_yield_strategy(AnalysisAssumptions(solar_yield_kwh_per_kwp=1000.0))
    assert custom.source == "manual"
    assert custom.apply_temperature_shape is False


def test_clipping_and_snow_reduce_output() -> None:
    profile = _flat_profile()
    strategy = resolve_yield_strategy(AnalysisAssumptions())

    loose = build_production_profile(profile, 100.0, strategy, SystemModelingParams(inverter_load_ratio=1.0))
    tight = build_production_profile(profile, 100.0, strategy, SystemModelingParams(inverter_load_ratio=1.6))
    snowy = build_production_profile(profile, 100.0, strategy, SystemModelingParams(snow_loss_profile="flat_roof"))

    assert loose.clipping_loss_kwh == pytest.approx(0.0)
    assert tight.clipping_loss_kwh > 0
    assert tight.total_kwh < loose.total_kwh
    assert snowy.snow_loss_kwh > 0
    assert snowy.total_kwh < build_production_profile(profile, 100.0, strategy).total_kwh
    assert (tight.production_kwh <= 100.0 / 1.6 + 1e-9).all()


def test_zero_pv_produces_nothing() -> None:
    profile = _flat_profile()
    production = build_production_profile(profile, 0.0, resolve_yield_strategy(AnalysisAssumptions()))
    result = simulate_dispatch(profile, SystemConfiguration(pv_kw=0.0), production)

    assert result.total_production_kwh == 0.0
    assert result.grid_import_total_kwh == pytest.approx(result.total_consumption_kwh)
    assert result.self_sufficiency_pct == 0.0


def test_demand_setpoint_shaves_peaks() -> None:
    rng = np.random.default_rng(7)
    base = 20.0 + 5.0 * rng.random(8760)
    base[np.arange(8760) % 24 == 17] += 30.0
    profile = HourlyProfile.from_arrays(base, base)
    config = SystemConfiguration(pv_kw=0.0, battery_kwh=200.0, battery_kw=40.0, demand_setpoint_kw=35.0)

    result = simulate_dispatch(profile, config, np.zeros(8760))

    assert result.peak_after_kw < result.peak_before_kw
    assert sum(result.monthly_peaks_after_kw) < sum(result.monthly_peaks_before_kw)
    assert result.grid_charging_kwh > 0
    assert abs(result.energy_balance_error_kwh()) < 1e-6


def test_misaligned_production_rejected() -> None:
    with pytest.raises(ValueError, match="align"):
        simulate_dispatch(_flat_profile(), SystemConfiguration(pv_kw=10.0), np.zeros(10))


def test_negative_configuration_rejected() -> None:
    with pytest.raises(ValueError, match="battery_kw"):
        SystemConfiguration(pv_kw=10.0, battery_kw=-1.0)


def test_dispatch_summary_views() -> None:
    profile = _flat_profile()
    production = build_production_profile(profile, 80.0, resolve_yield_strategy(AnalysisAssumptions()))
    result = simulate_dispatch(profile, SystemConfiguration(80.0, 100.0, 50.0), production)
    summary = summarize_dispatch(result)

    assert len(summary.hourly_profile) == 24
    assert 0 < len(summary.peak_week) <= 80
    assert summary.peak_week["demand_before_kw"].max() == pytest.approx(result.peak_before_kw)
    assert list(result.to_frame().columns)[:3] == ["month", "hour", "consumption_kwh"]
