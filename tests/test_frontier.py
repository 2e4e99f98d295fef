from __future__ import annotations

from dataclasses import dataclass
import threading
from typing import Any, Dict, List, Optional

import numpy as np
import pytest

from services.analysis_common import AnalysisAssumptions, AnalysisCancelled, ScenarioCache
from services.analysis_frontier import (
    FRONTIER_COLUMNS,
    SweepSettings,
    build_frontier,
    default_sweep_settings,
)
from services.profile_builder import HourlyProfile
from services.simulation_core import SystemConfiguration


def _flat_profile() -> HourlyProfile:
    hourly = np.full(8760, 40.0)
    return HourlyProfile.from_arrays(hourly, hourly * 1.25)


@dataclass
class _FakeBreakdown:
    npv: float

    def to_dict(self) -> Dict[str, Any]:
        return {"npv": self.npv}


@dataclass
class _FakeEvaluation:
    config: SystemConfiguration
    npv: float
    capex: float

    @property
    def breakdown(self) -> _FakeBreakdown:
        return _FakeBreakdown(self.npv)

    def metrics(self, horizon_years: Optional[int] = None) -> Dict[str, Any]:
        config = self.config
        return {
            "pv_kw": config.pv_kw,
            "battery_kwh": config.battery_kwh,
            "battery_kw": config.battery_kw,
            "demand_setpoint_kw": config.demand_setpoint_kw,
            "system_type": config.system_type,
            "capex_gross": self.capex,
            "capex_net": self.capex * 0.7,
            "npv": self.npv,
            "irr": self.npv / self.capex if self.capex > 0 else None,
            "simple_payback_years": None,
            "lcoe_per_kwh": None,
            "self_sufficiency_pct": min(100.0, config.pv_kw / 5.0 + config.battery_kwh / 20.0),
            "annual_production_kwh": config.pv_kw * 1150.0,
            "self_consumption_kwh": 0.0,
            "export_kwh": 0.0,
            "peak_after_kw": 50.0,
            "annual_savings": 0.0,
            "co2_avoided_tonnes_per_year": 0.0,
        }


class _FakeScenarios:
    """Deterministic stand-in for the dispatch + financial model.

    NPV peaks at 250 kW of PV and every kWh of storage costs NPV.
    """

    def __init__(self, *, profitable: bool = True, fail_pv_kw: float | None = None) -> None:
        self.profitable = profitable
        self.fail_pv_kw = fail_pv_kw
        self.calls: List[SystemConfiguration] = []
        self._lock = threading.Lock()

    def __call__(self, profile, config, assumptions, *, pricing=None) -> _FakeEvaluation:
        with self._lock:
            self.calls.append(config)
        if self.fail_pv_kw is not None and config.pv_kw == self.fail_pv_kw:
            raise ValueError("synthetic failure")
        capex = config.pv_kw * 2000.0 + config.battery_kwh * 500.0
        if self.profitable:
            npv = 1000.0 * config.pv_kw - 2.0 * config.pv_kw ** 2 - 10.0 * config.battery_kwh
        else:
            npv = -capex
        return _FakeEvaluation(config, npv, capex)


SETTINGS = SweepSettings(
    solar_max_kw=500.0,
    solar_step_kw=50.0,
    battery_max_kwh=200.0,
    battery_step_kwh=100.0,
    include_hybrid_grid=False,
)


def _frontier(scenarios: _FakeScenarios, **kwargs: Any):
    options = dict(
        reference=SystemConfiguration(pv_kw=200.0),
        settings=SETTINGS,
        max_pv_kw=1000.0,
        scenario_fn=scenarios,
    )
    options.update(kwargs)
    return build_frontier(_flat_profile(), AnalysisAssumptions(), **options)


def test_pv_sweep_yields_eleven_points_priced_per_watt() -> None:
    frontier = build_frontier(
        _flat_profile(),
        AnalysisAssumptions(),
        reference=SystemConfiguration(pv_kw=200.0),
        settings=SETTINGS,
        max_pv_kw=1000.0,
        pricing=lambda capacity_kw: 2.00,
    )
    solar = frontier.points[frontier.points["sweep_category"] == "solar_only"]

    assert len(solar) == 11
    assert list(solar["pv_kw"]) == [float(kw) for kw in range(0, 501, 50)]
    for _, row in solar.iterrows():
        assert row["capex_gross"] == pytest.approx(row["pv_kw"] * 1000 * 2.00)
    assert list(frontier.points.columns) == list(FRONTIER_COLUMNS)


def test_selections_and_optimal_flag() -> None:
    frontier = _frontier(_FakeScenarios())
    points = frontier.points

    assert frontier.best_npv is not None and frontier.best_npv.row["pv_kw"] == 250.0
    assert frontier.best_irr is not None and frontier.best_irr.row["pv_kw"] == 100.0
    assert frontier.max_self_sufficiency is not None and frontier.max_self_sufficiency.row["pv_kw"] == 500.0
    assert frontier.best_irr_fell_back is False
    assert points["is_optimal"].sum() == 1
    assert points.loc[points["is_optimal"], "pv_kw"].iloc[0] == 250.0
    assert set(points["sweep_category"]) == {"solar_only", "battery_only", "hybrid_battery_sweep", "configured"}


def test_best_irr_skips_tiny_investments() -> None:
    frontier = _frontier(_FakeScenarios())
    fifty_kw = frontier.points[(frontier.points["pv_kw"] == 50.0) & (frontier.points["battery_kwh"] == 0)]

    assert fifty_kw["irr"].iloc[0] > frontier.best_irr.row["irr"]


def test_best_irr_falls_back_to_best_npv_without_profitable_points() -> None:
    frontier = _frontier(_FakeScenarios(profitable=False))

    assert frontier.best_irr_fell_back is True
    assert frontier.best_irr.row == frontier.best_npv.row
    assert frontier.to_dict()["best_irr_fell_back"] is True


def test_points_above_the_roof_are_excluded_before_simulation() -> None:
    scenarios = _FakeScenarios()
    frontier = _frontier(scenarios, max_pv_kw=300.0)

    excluded_pv = sorted({item["pv_kw"] for item in frontier.excluded})
    assert excluded_pv == [350.0, 400.0, 450.0, 500.0]
    assert all(item["reason"] == "exceeds_roof_capacity" for item in frontier.excluded)
    assert all(config.pv_kw <= 300.0 for config in scenarios.calls)
    assert frontier.points["pv_kw"].max() <= 300.0


def test_failed_points_are_recorded_and_logged(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level("WARNING"):
        frontier = _frontier(_FakeScenarios(fail_pv_kw=100.0))

    assert [row["pv_kw"] for row in frontier.failed] == [100.0]
    assert frontier.failed[0]["error"] == "synthetic failure"
    assert 100.0 not in set(frontier.points["pv_kw"])
    assert "failed" in caplog.text


def test_cancellation_raises() -> None:
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(AnalysisCancelled) as excinfo:
        _frontier(_FakeScenarios(), cancel_event=cancel)
    assert excinfo.value.kind == "cancelled"


def test_identical_configurations_are_evaluated_once_and_cached() -> None:
    cache = ScenarioCache()
    first = _FakeScenarios()
    _frontier(first, cache=cache)

    unique = set(first.calls)
    assert len(cache) == len(unique)

    second = _FakeScenarios()
    _frontier(second, cache=cache)
    # Only the three selections are re-evaluated for their full breakdowns.
    assert len(second.calls) == 3
    assert cache.hits == len(cache)


def test_point_ceiling_is_enforced() -> None:
    with pytest.raises(ValueError, match="exceeds the limit"):
        _frontier(_FakeScenarios(), settings=SweepSettings(solar_max_kw=500.0, solar_step_kw=50.0, max_points=5))

    batched = _frontier(
        _FakeScenarios(),
        settings=SweepSettings(
            solar_max_kw=500.0,
            solar_step_kw=50.0,
            include_hybrid_grid=False,
            max_points=5,
            on_exceed="batch",
        ),
        batch_size=4,
    )
    assert len(batched.points[batched.points["sweep_category"] == "solar_only"]) == 11


def test_unprofitable_hybrid_grid_points_are_dropped() -> None:
    settings = SweepSettings(
        solar_max_kw=500.0,
        solar_step_kw=100.0,
        battery_max_kwh=200.0,
        battery_step_kwh=100.0,
        hybrid_pv_step_kw=100.0,
        hybrid_battery_max_kwh=400.0,
        hybrid_battery_step_kwh=200.0,
    )
    frontier = _frontier(_FakeScenarios(), settings=settings)
    grid = frontier.points[frontier.points["sweep_category"] == "hybrid_grid"]

    assert not grid.empty
    assert (grid["npv"] > 0).all()


def test_thread_pool_matches_sequential() -> None:
    sequential = _frontier(_FakeScenarios())
    threaded = _frontier(_FakeScenarios(), concurrency="thread", max_workers=4, batch_size=5)

    assert sequential.points.equals(threaded.points)


def test_default_sweep_ranges_follow_site() -> None:
    sweep = default_sweep_settings(SystemConfiguration(pv_kw=200.0), max_pv_kw=1000.0, peak_demand_kw=150.0)

    assert sweep.solar_values[0] == 0.0
    assert sweep.solar_values[-1] <= 500.0
    assert sweep.battery_values[0] > 0
    assert sweep.hybrid_pv_values and sweep.hybrid_battery_values


def test_unknown_sweep_setting_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown sweep setting"):
        SweepSettings.from_dict({"solar_max": 100})


@pytest.mark.parametrize("name", ["solar_step_kw", "battery_step_kwh", "hybrid_pv_step_kw", "hybrid_battery_step_kwh"])
def test_zero_sweep_steps_rejected(name: str) -> None:
    with pytest.raises(ValueError, match=name):
        SweepSettings(**{name: 0.0})
