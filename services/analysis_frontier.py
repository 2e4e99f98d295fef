"""Sizing sweeps that map PV/battery size to NPV, IRR and self-sufficiency."""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from functools import partial
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from services.analysis_common import (
    AnalysisAssumptions,
    AnalysisCancelled,
    ScenarioCache,
    ScenarioEvaluation,
    evaluate_scenario,
    resolve_demand_setpoint,
    roof_max_pv_kw,
)
from services.financial_model import REPORTING_HORIZONS
from services.profile_builder import HourlyProfile
from services.simulation_core import SystemConfiguration
from utils.economics import _validate_positive_values
from utils.pricing import cost_per_watt
from utils.sweeps import generate_step_values, iter_batch_results, plan_batches, round_to_step

logger = logging.getLogger(__name__)

SWEEP_CATEGORIES: Tuple[str, ...] = (
    "solar_only",
    "battery_only",
    "hybrid_pv_sweep",
    "hybrid_battery_sweep",
    "hybrid_grid",
    "configured",
)

FRONTIER_COLUMNS: Tuple[str, ...] = (
    "sweep_category",
    "system_type",
    "pv_kw",
    "battery_kwh",
    "battery_kw",
    "demand_setpoint_kw",
    "status",
    "error",
    "capex_gross",
    "capex_net",
    "npv",
    "irr",
    "simple_payback_years",
    "lcoe_per_kwh",
    "self_sufficiency_pct",
    "annual_production_kwh",
    "self_consumption_kwh",
    "export_kwh",
    "peak_after_kw",
    "annual_savings",
    "co2_avoided_tonnes_per_year",
    "is_optimal",
)


@dataclass(frozen=True)
class SweepSettings:
    """Optional overrides for the sweep ranges.

    Any range left as ``None`` is derived from the reference configuration,
    the roof limit and the site's peak demand. ``battery_power_ratio`` is the
    rated kW per kWh used for battery sweep points. ``min_irr_capex_share``
    and ``min_irr_investment`` keep tiny systems from winning best IRR.
    """

    solar_max_kw: Optional[float] = None
    solar_step_kw: Optional[float] = None
    battery_max_kwh: Optional[float] = None
    battery_step_kwh: Optional[float] = None
    battery_power_ratio: float = 0.5
    include_hybrid_grid: bool = True
    hybrid_pv_step_kw: Optional[float] = None
    hybrid_battery_max_kwh: Optional[float] = None
    hybrid_battery_step_kwh: Optional[float] = None
    min_irr_capex_share: float = 0.25
    min_irr_investment: float = 50_000.0
    max_points: Optional[int] = None
    on_exceed: str = "raise"

    def __post_init__(self) -> None:
        for name in (
            "solar_max_kw",
            "solar_step_kw",
            "battery_max_kwh",
            "battery_step_kwh",
            "hybrid_pv_step_kw",
            "hybrid_battery_max_kwh",
            "hybrid_battery_step_kwh",
        ):
            value = getattr(self, name)
            if value is not None and (not np.isfinite(value) or value < 0):
                raise ValueError(f"{name} must be a non-negative number")
        for name in ("solar_step_kw", "battery_step_kwh", "hybrid_pv_step_kw", "hybrid_battery_step_kwh"):
            value = getattr(self, name)
            if value is not None:
                _validate_positive_values([value], name)
        if self.battery_power_ratio <= 0:
            raise ValueError("battery_power_ratio must be positive")
        if not 0 <= self.min_irr_capex_share <= 1:
            raise ValueError("min_irr_capex_share must be between 0 and 1")

    @classmethod
    def from_dict(cls, payload: Dict[str, Any] | None) -> "SweepSettings":
        payload = dict(payload or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ValueError(f"Unknown sweep setting keys: {', '.join(unknown)}")
        return cls(**payload)


@dataclass(frozen=True)
class ResolvedSweep:
    solar_values: Tuple[float, ...]
    battery_values: Tuple[float, ...]
    hybrid_pv_values: Tuple[float, ...]
    hybrid_battery_values: Tuple[float, ...]
    battery_power_ratio: float


def default_sweep_settings(
    reference: SystemConfiguration,
    max_pv_kw: float,
    peak_demand_kw: float,
    settings: SweepSettings | None = None,
) -> ResolvedSweep:
    """Derive concrete sweep values, filling gaps in ``settings`` from the site."""

    settings = settings or SweepSettings()

    solar_max = settings.solar_max_kw
    if solar_max is None:
        solar_max = min(max(reference.pv_kw * 1.5, max_pv_kw * 0.5), max_pv_kw)
    solar_step = settings.solar_step_kw or round_to_step(solar_max / 20.0, 5.0, 5.0)

    battery_max = settings.battery_max_kwh
    if battery_max is None:
        battery_max = max(reference.battery_kwh * 2.0, 500.0)
    battery_step = settings.battery_step_kwh or round_to_step(battery_max / 20.0, 10.0, 10.0)

    hybrid_pv: Tuple[float, ...] = ()
    hybrid_battery: Tuple[float, ...] = ()
    if settings.include_hybrid_grid:
        pv_step = settings.hybrid_pv_step_kw or round_to_step(solar_max / 5.0, 10.0, 10.0)
        hybrid_battery_max = settings.hybrid_battery_max_kwh
        if hybrid_battery_max is None:
            hybrid_battery_max = max(peak_demand_kw * 2.0, reference.battery_kwh * 2.0, 200.0)
        hybrid_battery_step = settings.hybrid_battery_step_kwh or round_to_step(
            hybrid_battery_max / 5.0, 20.0, 20.0
        )
        hybrid_pv = tuple(generate_step_values(pv_step, solar_max, pv_step))
        hybrid_battery = tuple(generate_step_values(hybrid_battery_step, hybrid_battery_max, hybrid_battery_step))

    return ResolvedSweep(
        solar_values=tuple(generate_step_values(0.0, solar_max, solar_step)),
        battery_values=tuple(generate_step_values(battery_step, battery_max, battery_step)),
        hybrid_pv_values=hybrid_pv,
        hybrid_battery_values=hybrid_battery,
        battery_power_ratio=settings.battery_power_ratio,
    )


@dataclass(frozen=True)
class FrontierTask:
    category: str
    config: SystemConfiguration


@dataclass
class FrontierSelection:
    row: Dict[str, Any]
    evaluation: ScenarioEvaluation

    def to_dict(self) -> Dict[str, Any]:
        return {**self.row, "financials": self.evaluation.breakdown.to_dict()}


@dataclass
class Frontier:
    points: pd.DataFrame
    best_npv: Optional[FrontierSelection] = None
    best_irr: Optional[FrontierSelection] = None
    max_self_sufficiency: Optional[FrontierSelection] = None
    best_irr_fell_back: bool = False
    excluded: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    horizon_years: int = 25

    def to_dict(self) -> Dict[str, Any]:
        return {
            "horizon_years": self.horizon_years,
            "points": _records(self.points),
            "best_npv": self.best_npv.to_dict() if self.best_npv else None,
            "best_irr": self.best_irr.to_dict() if self.best_irr else None,
            "max_self_sufficiency": (
                self.max_self_sufficiency.to_dict() if self.max_self_sufficiency else None
            ),
            "best_irr_fell_back": self.best_irr_fell_back,
            "excluded": list(self.excluded),
            "failed": list(self.failed),
        }


def _records(frame: pd.DataFrame) -> List[Dict[str, Any]]:
    if frame.empty:
        return []
    return frame.astype(object).where(frame.notna(), None).to_dict(orient="records")


def _battery_config(energy_kwh: float, pv_kw: float, ratio: float, setpoint: Optional[float]) -> SystemConfiguration:
    return SystemConfiguration(
        pv_kw=pv_kw,
        battery_kwh=energy_kwh,
        battery_kw=float(round(energy_kwh * ratio)),
        demand_setpoint_kw=setpoint,
    )


def _build_tasks(reference: SystemConfiguration, sweep: ResolvedSweep) -> List[FrontierTask]:
    setpoint = reference.demand_setpoint_kw
    ratio = sweep.battery_power_ratio
    tasks: List[FrontierTask] = []

    for pv_kw in sweep.solar_values:
        tasks.append(FrontierTask("solar_only", SystemConfiguration(pv_kw=pv_kw)))
    for energy in sweep.battery_values:
        tasks.append(FrontierTask("battery_only", _battery_config(energy, 0.0, ratio, setpoint)))
    if reference.battery_kwh > 0:
        for pv_kw in sweep.solar_values:
            if pv_kw <= 0:
                continue
            config = SystemConfiguration(pv_kw, reference.battery_kwh, reference.battery_kw, setpoint)
            tasks.append(FrontierTask("hybrid_pv_sweep", config))
    if reference.pv_kw > 0:
        for energy in sweep.battery_values:
            tasks.append(
                FrontierTask("hybrid_battery_sweep", _battery_config(energy, reference.pv_kw, ratio, setpoint))
            )
    for pv_kw in sweep.hybrid_pv_values:
        for energy in sweep.hybrid_battery_values:
            tasks.append(FrontierTask("hybrid_grid", _battery_config(energy, pv_kw, ratio, setpoint)))
    if not reference.is_empty:
        tasks.append(FrontierTask("configured", reference))
    return tasks


def _evaluate_config(
    config: SystemConfiguration,
    profile: HourlyProfile,
    assumptions: AnalysisAssumptions,
    pricing: Callable[[float], float],
    horizon_years: int,
    scenario_fn: Callable[..., ScenarioEvaluation] = evaluate_scenario,
) -> Dict[str, Any]:
    """Evaluate one sweep point; failures come back as rows instead of raising."""

    try:
        evaluation = scenario_fn(profile, config, assumptions, pricing=pricing)
    except Exception as exc:  # one bad point must not abort the sweep
        return {**config.to_dict(), "system_type": config.system_type, "status": "failed", "error": str(exc)}
    return {**evaluation.metrics(horizon_years), "status": "ok", "error": None}


def _check_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise AnalysisCancelled("Frontier sweep was cancelled.", stage="frontier")


def _select(
    frame: pd.DataFrame, column: str, mask: pd.Series | None = None
) -> Optional[int]:
    """Return the index of the highest ``column`` value, breaking ties by lower CAPEX."""

    candidates = frame if mask is None else frame[mask]
    candidates = candidates[candidates[column].notna()]
    if candidates.empty:
        return None
    ordered = candidates.sort_values(
        by=[column, "capex_gross"], ascending=[False, True], kind="mergesort"
    )
    return int(ordered.index[0])


def build_frontier(
    profile: HourlyProfile,
    assumptions: AnalysisAssumptions,
    *,
    reference: SystemConfiguration,
    settings: SweepSettings | None = None,
    max_pv_kw: float | None = None,
    horizon_years: int | None = None,
    pricing: Callable[[float], float] = cost_per_watt,
    concurrency: str | None = None,
    max_workers: int | None = None,
    batch_size: int | None = None,
    cancel_event: threading.Event | None = None,
    cache: ScenarioCache | None = None,
    scenario_fn: Callable[..., ScenarioEvaluation] = evaluate_scenario,
) -> Frontier:
    """Sweep system sizes around ``reference`` and pick the notable points.

    Parameters
    ----------
    reference
        The configured system. It is evaluated as its own ``configured``
        point and anchors the hybrid sweeps.
    max_pv_kw
        Roof capacity limit. Defaults to the estimate from the roof-area
        assumptions; points above it are excluded before simulation.
    horizon_years
        NPV/IRR horizon used for ranking. Defaults to
        ``assumptions.analysis_years``.
    concurrency, max_workers, batch_size
        Executor options for point evaluation. ``"process"`` requires a
        picklable ``pricing`` callable.
    cancel_event
        Checked between batches; when set, :class:`AnalysisCancelled` is raised.
    cache
        Optional memo shared across calls. Identical configurations inside one
        sweep are always evaluated once.
    scenario_fn
        Evaluates one configuration; defaults to the full dispatch and
        financial model. Must be picklable for process pools.
    """

    settings = settings or SweepSettings()
    horizon = int(horizon_years or assumptions.analysis_years)
    if horizon not in set(REPORTING_HORIZONS) | {assumptions.analysis_years}:
        raise ValueError(f"horizon_years must be one of {sorted(set(REPORTING_HORIZONS))}")
    roof_limit = float(max_pv_kw) if max_pv_kw is not None else roof_max_pv_kw(assumptions)
    peak_kw = profile.peak_demand_kw

    sweep = default_sweep_settings(reference, roof_limit, peak_kw, settings)
    excluded: List[Dict[str, Any]] = []
    tasks: List[FrontierTask] = []
    for task in _build_tasks(reference, sweep):
        config = resolve_demand_setpoint(task.config, peak_kw, assumptions)
        if config.pv_kw > roof_limit + 1e-9:
            excluded.append(
                {"sweep_category": task.category, **config.to_dict(), "reason": "exceeds_roof_capacity"}
            )
            continue
        tasks.append(FrontierTask(task.category, config))
    if excluded:
        logger.warning(
            "Excluded %d frontier points above the roof limit of %.1f kW.", len(excluded), roof_limit
        )

    cache = cache if cache is not None else ScenarioCache()
    rows_by_config: Dict[SystemConfiguration, Dict[str, Any]] = {}
    pending: List[SystemConfiguration] = []
    for task in tasks:
        if task.config in rows_by_config or task.config in pending:
            continue
        cached = cache.get(ScenarioCache.key(profile.fingerprint, task.config, assumptions, pricing))
        if cached is not None:
            rows_by_config[task.config] = cached
        else:
            pending.append(task.config)

    batches = plan_batches(
        pending,
        max_items=settings.max_points,
        on_exceed=settings.on_exceed,
        batch_size=batch_size,
        label="Frontier point",
    )
    evaluate_fn = partial(
        _evaluate_config,
        profile=profile,
        assumptions=assumptions,
        pricing=pricing,
        horizon_years=horizon,
        scenario_fn=scenario_fn,
    )
    _check_cancelled(cancel_event)
    batch_configs = iter(batches)
    for batch_rows in iter_batch_results(
        evaluate_fn, batches, concurrency=concurrency, max_workers=max_workers
    ):
        for config, row in zip(next(batch_configs), batch_rows):
            rows_by_config[config] = row
            if row["status"] == "ok":
                cache.put(ScenarioCache.key(profile.fingerprint, config, assumptions, pricing), row)
        _check_cancelled(cancel_event)

    rows: List[Dict[str, Any]] = []
    failed: List[Dict[str, Any]] = []
    hybrid_grid_dropped = 0
    for task in tasks:
        row = rows_by_config.get(task.config)
        if row is None:
            continue
        if task.category == "hybrid_grid" and row["status"] == "ok" and not (row["npv"] or 0) > 0:
            hybrid_grid_dropped += 1
            continue
        row = {**row, "sweep_category": task.category}
        if row["status"] == "failed":
            failed.append(row)
            logger.warning(
                "Frontier point %s (%.1f kW PV, %.1f kWh) failed: %s",
                task.category,
                task.config.pv_kw,
                task.config.battery_kwh,
                row["error"],
            )
            continue
        rows.append(row)

    frame = pd.DataFrame(rows, columns=[c for c in FRONTIER_COLUMNS if c != "is_optimal"])
    frame["is_optimal"] = False
    frontier = Frontier(points=frame, excluded=excluded, failed=failed, horizon_years=horizon)
    if frame.empty:
        return frontier

    non_empty = frame["system_type"] != "none"
    best_npv_idx = _select(frame, "npv", non_empty)
    if best_npv_idx is None:
        return frontier
    frame.loc[best_npv_idx, "is_optimal"] = True
    best_npv_capex = float(frame.loc[best_npv_idx, "capex_gross"])

    irr_mask = (
        non_empty
        & frame["irr"].notna()
        & (frame["npv"] > 0)
        & (frame["capex_gross"] >= best_npv_capex * settings.min_irr_capex_share)
        & (frame["capex_gross"] >= settings.min_irr_investment)
    )
    best_irr_idx = _select(frame, "irr", irr_mask)
    if best_irr_idx is None:
        logger.warning("No profitable point qualified for best IRR; using the best-NPV point.")
        best_irr_idx = best_npv_idx
        frontier.best_irr_fell_back = True
    best_ss_idx = _select(frame, "self_sufficiency_pct", non_empty)

    evaluations: Dict[int, ScenarioEvaluation] = {}

    def selection(idx: Optional[int]) -> Optional[FrontierSelection]:
        if idx is None:
            return None
        if idx not in evaluations:
            evaluations[idx] = scenario_fn(profile, _row_config(frame.loc[idx]), assumptions, pricing=pricing)
        return FrontierSelection(row=_records(frame.loc[[idx]])[0], evaluation=evaluations[idx])

    frontier.best_npv = selection(best_npv_idx)
    frontier.best_irr = selection(best_irr_idx)
    frontier.max_self_sufficiency = selection(best_ss_idx)
    if hybrid_grid_dropped:
        logger.debug("Dropped %d unprofitable hybrid grid points.", hybrid_grid_dropped)
    return frontier


def _row_config(row: pd.Series) -> SystemConfiguration:
    setpoint = row["demand_setpoint_kw"]
    return SystemConfiguration(
        pv_kw=float(row["pv_kw"]),
        battery_kwh=float(row["battery_kwh"]),
        battery_kw=float(row["battery_kw"]),
        demand_setpoint_kw=None if pd.isna(setpoint) else float(setpoint),
    )


__all__ = [
    "SWEEP_CATEGORIES",
    "FRONTIER_COLUMNS",
    "SweepSettings",
    "ResolvedSweep",
    "default_sweep_settings",
    "FrontierTask",
    "FrontierSelection",
    "Frontier",
    "build_frontier",
]
