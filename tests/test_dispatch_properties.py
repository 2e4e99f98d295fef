"""Seeded property checks for the hourly dispatch."""
from __future__ import annotations

import numpy as np
import pytest

from services.analysis_common import AnalysisAssumptions, evaluate_scenario
from services.profile_builder import HourlyProfile
from services.simulation_core import (
    SystemConfiguration,
    SystemModelingParams,
    build_production_profile,
    resolve_yield_strategy,
    simulate_dispatch,
)

TOLERANCE_KWH = 1e-6


def _commercial_profile(seed: int = 11) -> HourlyProfile:
    rng = np.random.default_rng(seed)
    hours = np.arange(8760) % 24
    daytime = (hours >= 7) & (hours < 19)
    load = np.where(daytime, 60.0, 25.0) + 10.0 * rng.random(8760)
    return HourlyProfile.from_arrays(load, load * 1.1)


def _random_configs(count: int, seed: int = 3) -> list[SystemConfiguration]:
    rng = np.random.default_rng(seed)
    configs = [
        SystemConfiguration(pv_kw=0.0),
        SystemConfiguration(pv_kw=0.0, battery_kwh=150.0, battery_kw=60.0),
        SystemConfiguration(pv_kw=120.0),
    ]
    for _ in range(count):
        battery_kwh = float(rng.choice([0.0, rng.uniform(10.0, 400.0)]))
        setpoint = float(rng.uniform(40.0, 80.0)) if rng.random() < 0.5 else None
        configs.append(
            SystemConfiguration(
                pv_kw=float(rng.uniform(0.0, 300.0)),
                battery_kwh=battery_kwh,
                battery_kw=float(rng.uniform(5.0, 150.0)) if battery_kwh else 0.0,
                demand_setpoint_kw=setpoint,
            )
        )
    return configs


def _run(profile: HourlyProfile, config: SystemConfiguration):
    assumptions = AnalysisAssumptions()
    production = build_production_profile(profile, config.pv_kw, resolve_yield_strategy(assumptions))
    return simulate_dispatch(profile, config, production)


@pytest.mark.parametrize("config", _random_configs(8), ids=lambda c: f"{c.pv_kw:.0f}kW-{c.battery_kwh:.0f}kWh")
def test_energy_is_conserved(config: SystemConfiguration) -> None:
    result = _run(_commercial_profile(), config)
    assert abs(result.energy_balance_error_kwh()) < TOLERANCE_KWH * len(result.soc_kwh)


@pytest.mark.parametrize("config", _random_configs(8, seed=5), ids=lambda c: f"{c.pv_kw:.0f}kW-{c.battery_kwh:.0f}kWh")
def test_battery_limits_hold(config: SystemConfiguration) -> None:
    result = _run(_commercial_profile(), config)

    assert (result.soc_kwh >= -TOLERANCE_KWH).all()
    assert (result.soc_kwh <= config.battery_kwh + TOLERANCE_KWH).all()
    charge = result.charge_from_pv_kwh + result.charge_from_grid_kwh
    assert (charge <= config.battery_kw + TOLERANCE_KWH).all()
    assert (result.discharge_kwh <= config.battery_kw + TOLERANCE_KWH).all()
    assert (result.export_kwh >= -TOLERANCE_KWH).all()
    assert (result.grid_import_kwh >= -TOLERANCE_KWH).all()
    assert not ((charge > 0) & (result.discharge_kwh > 0)).any()


def test_production_is_monotone_in_pv_size() -> None:
    profile = _commercial_profile()
    strategy = resolve_yield_strategy(AnalysisAssumptions())
    totals = [build_production_profile(profile, pv, strategy).total_kwh for pv in (0, 50, 100, 200, 400)]
    assert totals == sorted(totals)
    assert totals[0] == 0.0


def test_self_consumption_is_monotone_in_battery_energy() -> None:
    profile = _commercial_profile()
    consumed = []
    for energy in (0.0, 50.0, 100.0, 200.0, 400.0):
        config = SystemConfiguration(pv_kw=250.0, battery_kwh=energy, battery_kw=100.0 if energy else 0.0)
        consumed.append(_run(profile, config).self_consumption_kwh)
    assert all(later >= earlier - TOLERANCE_KWH for earlier, later in zip(consumed, consumed[1:]))


def test_lossless_battery_books_no_losses() -> None:
    profile = _commercial_profile()
    config = SystemConfiguration(pv_kw=200.0, battery_kwh=100.0, battery_kw=50.0)
    production = build_production_profile(profile, 200.0, resolve_yield_strategy(AnalysisAssumptions()))
    result = simulate_dispatch(profile, config, production, params=SystemModelingParams(round_trip_efficiency=1.0))

    assert result.battery_losses_kwh == 0.0
    assert abs(result.energy_balance_error_kwh()) < 1e-6


def test_negative_inputs_are_clamped(caplog: pytest.LogCaptureFixture) -> None:
    load = np.full(8760, 10.0)
    load[100] = -5.0
    profile = HourlyProfile.from_arrays(load, load)
    with caplog.at_level("WARNING"):
        result = simulate_dispatch(profile, SystemConfiguration(pv_kw=0.0), np.zeros(8760))

    assert result.consumption_kwh[100] == 0.0
    assert "negative consumption" in caplog.text


def test_repeated_runs_are_bit_identical() -> None:
    profile = _commercial_profile()
    config = SystemConfiguration(pv_kw=180.0, battery_kwh=220.0, battery_kw=90.0, demand_setpoint_kw=65.0)
    assumptions = AnalysisAssumptions()

    first = evaluate_scenario(profile, config, assumptions)
    second = evaluate_scenario(profile, config, assumptions)

    np.testing.assert_array_equal(first.dispatch.soc_kwh, second.dispatch.soc_kwh)
    np.testing.assert_array_equal(first.dispatch.grid_import_kwh, second.dispatch.grid_import_kwh)
    assert first.breakdown.to_dict() == second.breakdown.to_dict()
