"""Single entry point that turns meter readings into a sized, priced recommendation."""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import pandas as pd

from services.analysis_common import (
    AnalysisAssumptions,
    AnalysisCancelled,
    AnalysisError,
    AnalysisFailure,
    InfeasibleConfigurationError,
    ProfileBuildError,
    ScenarioCache,
    ScenarioEvaluation,
    evaluate_scenario,
    resolve_demand_setpoint,
    roof_max_pv_kw,
)
from services.analysis_frontier import Frontier, SweepSettings, build_frontier
from services.analysis_monte_carlo import (
    DispatchScenarioRunner,
    MonteCarloConfig,
    MonteCarloResult,
    SimplifiedScenarioRunner,
    SiteScenarioParams,
    run_monte_carlo,
)
from services.profile_builder import (
    DEFAULT_MIN_DAYS,
    DEFAULT_REFERENCE_YEAR,
    MeterReading,
    ProfileBuildResult,
    build_hourly_profile,
    profile_summary,
)
from services.simulation_core import (
    DispatchSummary,
    SystemConfiguration,
    resolve_yield_strategy,
    summarize_dispatch,
)
from utils.flags import build_flag_insights
from utils.pricing import cost_per_watt
from utils.tariffs import get_tariff, suggest_tariff_code

logger = logging.getLogger(__name__)

PV_OVERSIZE_FACTOR = 1.2
BATTERY_POWER_SHARE_OF_PEAK = 0.3
BATTERY_DURATION_HOURS = 2.0
CLIPPING_FLAG_SHARE = 0.01


@dataclass
class SiteAnalysisResult:
    """Outcome of :func:`run_site_analysis`.

    ``status`` is ``"ok"`` or ``"failed"``. A failed result carries
    ``failure`` and whatever was computed before the failing stage.
    """

    status: str
    assumptions: AnalysisAssumptions
    idempotency_key: Optional[str] = None
    failure: Optional[AnalysisFailure] = None
    profile: Optional[ProfileBuildResult] = None
    config: Optional[SystemConfiguration] = None
    evaluation: Optional[ScenarioEvaluation] = None
    dispatch_summary: Optional[DispatchSummary] = None
    frontier: Optional[Frontier] = None
    roof_max_pv_kw: Optional[float] = None
    roof_limited: bool = False
    warnings: List[str] = field(default_factory=list)
    insights: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "status": self.status,
            "idempotency_key": self.idempotency_key,
            "assumptions_version": self.assumptions.version,
            "assumptions": self.assumptions.to_dict(),
            "failure": self.failure.to_dict() if self.failure else None,
            "profile": profile_summary(self.profile) if self.profile else None,
            "sizing": None,
            "energy": None,
            "financials": None,
            "hourly_profile": [],
            "peak_week": [],
            "frontier": self.frontier.to_dict() if self.frontier else None,
            "roof_max_pv_kw": self.roof_max_pv_kw,
            "roof_limited": self.roof_limited,
            "interpolated_months": list(self.profile.profile.interpolated_months) if self.profile else [],
            "warnings": list(self.warnings),
            "insights": list(self.insights),
        }
        if self.config is not None:
            payload["sizing"] = {**self.config.to_dict(), "system_type": self.config.system_type}
        if self.evaluation is not None:
            dispatch = self.evaluation.dispatch
            payload["energy"] = {
                "consumption_kwh": dispatch.total_consumption_kwh,
                "production_kwh": dispatch.total_production_kwh,
                "self_consumption_kwh": dispatch.self_consumption_kwh,
                "export_kwh": dispatch.export_total_kwh,
                "grid_import_kwh": dispatch.grid_import_total_kwh,
                "grid_charging_kwh": dispatch.grid_charging_kwh,
                "battery_losses_kwh": dispatch.battery_losses_kwh,
                "clipping_loss_kwh": dispatch.clipping_loss_kwh,
                "self_sufficiency_pct": dispatch.self_sufficiency_pct,
                "peak_before_kw": dispatch.peak_before_kw,
                "peak_after_kw": dispatch.peak_after_kw,
                "monthly_peaks_before_kw": list(dispatch.monthly_peaks_before_kw),
                "monthly_peaks_after_kw": list(dispatch.monthly_peaks_after_kw),
            }
            payload["financials"] = self.evaluation.breakdown.to_dict()
        if self.dispatch_summary is not None:
            payload["hourly_profile"] = self.dispatch_summary.hourly_profile.to_dict(orient="records")
            payload["peak_week"] = self.dispatch_summary.peak_week.to_dict(orient="records")
        return payload


def default_sizing(
    result: ProfileBuildResult, assumptions: AnalysisAssumptions, roof_limit_kw: float
) -> tuple[SystemConfiguration, bool]:
    """Size PV to 120 % of annual load and a 2-hour battery at 30 % of peak.

    Returns the configuration and whether the roof capped the PV size.
    """

    profile = result.profile
    effective_yield = resolve_yield_strategy(assumptions).effective_yield_kwh_per_kwp
    if effective_yield <= 0:
        raise InfeasibleConfigurationError("Effective solar yield must be positive to size PV.")

    wanted_pv = float(round(profile.annual_consumption_kwh / effective_yield * PV_OVERSIZE_FACTOR))
    roof_pv = float(round(roof_limit_kw))
    battery_kw = float(round(profile.peak_demand_kw * BATTERY_POWER_SHARE_OF_PEAK))
    config = SystemConfiguration(
        pv_kw=min(wanted_pv, roof_pv),
        battery_kwh=battery_kw * BATTERY_DURATION_HOURS,
        battery_kw=battery_kw,
    )
    return config, wanted_pv > roof_pv


def _check_cancelled(cancel_event: threading.Event | None, stage: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise AnalysisCancelled("Site analysis was cancelled.", stage=stage)


def run_site_analysis(
    readings: Iterable[MeterReading] | pd.DataFrame,
    assumptions: AnalysisAssumptions | None = None,
    *,
    forced_sizing: SystemConfiguration | None = None,
    max_pv_from_roof_kw: float | None = None,
    include_frontier: bool = True,
    sweep_settings: SweepSettings | None = None,
    allow_insufficient_data: bool = False,
    idempotency_key: str | None = None,
    pricing: Callable[[float], float] = cost_per_watt,
    cancel_event: threading.Event | None = None,
    reference_year: int = DEFAULT_REFERENCE_YEAR,
    min_days: int = DEFAULT_MIN_DAYS,
    monthly_totals_kwh: Mapping[int, float] | None = None,
    concurrency: str | None = None,
    max_workers: int | None = None,
    cache: ScenarioCache | None = None,
) -> SiteAnalysisResult:
    """Build the profile, size the system, simulate it and price it.

    Typed failures come back as ``status="failed"`` results; only
    :class:`AnalysisCancelled` propagates. ``idempotency_key`` is echoed on
    the result untouched so callers can deduplicate jobs.
    """

    assumptions = assumptions or AnalysisAssumptions()
    result = SiteAnalysisResult(status="ok", assumptions=assumptions, idempotency_key=idempotency_key)

    try:
        _run_stages(
            result,
            readings,
            forced_sizing=forced_sizing,
            max_pv_from_roof_kw=max_pv_from_roof_kw,
            include_frontier=include_frontier,
            sweep_settings=sweep_settings,
            allow_insufficient_data=allow_insufficient_data,
            pricing=pricing,
            cancel_event=cancel_event,
            reference_year=reference_year,
            min_days=min_days,
            monthly_totals_kwh=monthly_totals_kwh,
            concurrency=concurrency,
            max_workers=max_workers,
            cache=cache,
        )
    except AnalysisCancelled:
        raise
    except AnalysisError as exc:
        logger.warning("Site analysis failed at %s (%s): %s", exc.stage, exc.kind, exc.message)
        result.status = "failed"
        result.failure = AnalysisFailure.from_error(exc)
    return result


def _run_stages(
    result: SiteAnalysisResult,
    readings: Iterable[MeterReading] | pd.DataFrame,
    *,
    forced_sizing: SystemConfiguration | None,
    max_pv_from_roof_kw: float | None,
    include_frontier: bool,
    sweep_settings: SweepSettings | None,
    allow_insufficient_data: bool,
    pricing: Callable[[float], float],
    cancel_event: threading.Event | None,
    reference_year: int,
    min_days: int,
    monthly_totals_kwh: Mapping[int, float] | None,
    concurrency: str | None,
    max_workers: int | None,
    cache: ScenarioCache | None,
) -> None:
    assumptions = result.assumptions

    _check_cancelled(cancel_event, "profile")
    try:
        built = build_hourly_profile(
            readings,
            reference_year=reference_year,
            min_days=min_days,
            monthly_totals_kwh=monthly_totals_kwh,
        )
    except ValueError as exc:
        raise ProfileBuildError(str(exc), kind="invalid_input") from exc
    result.profile = built
    result.warnings.extend(built.warnings)
    if built.coverage.insufficient and not allow_insufficient_data:
        raise ProfileBuildError(built.coverage.message)

    _check_cancelled(cancel_event, "sizing")
    suggested_tariff = suggest_tariff_code(built.profile.peak_demand_kw)
    if assumptions.tariff_energy is None and suggested_tariff != get_tariff(assumptions.tariff_code).code:
        result.warnings.append(
            f"A peak demand of {built.profile.peak_demand_kw:,.0f} kW is normally billed under rate"
            f" {suggested_tariff}; the analysis uses rate {assumptions.tariff_code}."
        )
    roof_limit = roof_max_pv_kw(assumptions) if max_pv_from_roof_kw is None else float(max_pv_from_roof_kw)
    result.roof_max_pv_kw = roof_limit
    peak_kw = built.profile.peak_demand_kw
    if forced_sizing is not None:
        if forced_sizing.pv_kw > roof_limit + 1e-9:
            raise InfeasibleConfigurationError(
                f"Requested PV of {forced_sizing.pv_kw:,.1f} kW exceeds the roof maximum of {roof_limit:,.1f} kW."
            )
        config = forced_sizing
    else:
        config, result.roof_limited = default_sizing(built, assumptions, roof_limit)
        if result.roof_limited:
            result.warnings.append(f"PV capacity limited to {config.pv_kw:,.0f} kW by the usable roof area.")
    config = resolve_demand_setpoint(config, peak_kw, assumptions)
    result.config = config

    _check_cancelled(cancel_event, "simulation")
    try:
        evaluation = evaluate_scenario(built.profile, config, assumptions, pricing=pricing)
    except ValueError as exc:
        raise AnalysisError(str(exc), stage="simulation", kind="invalid_input") from exc
    result.evaluation = evaluation
    result.dispatch_summary = summarize_dispatch(evaluation.dispatch)

    flag_totals = built.coverage.flag_totals()
    dispatch = evaluation.dispatch
    dc_total = dispatch.total_production_kwh + dispatch.clipping_loss_kwh
    flag_totals["clipping_loss"] = int(dc_total > 0 and dispatch.clipping_loss_kwh > dc_total * CLIPPING_FLAG_SHARE)
    flag_totals["roof_limited"] = int(result.roof_limited)
    result.insights = build_flag_insights(flag_totals)

    if include_frontier:
        _check_cancelled(cancel_event, "frontier")
        try:
            result.frontier = build_frontier(
                built.profile,
                assumptions,
                reference=config,
                settings=sweep_settings,
                max_pv_kw=roof_limit,
                pricing=pricing,
                concurrency=concurrency,
                max_workers=max_workers,
                cancel_event=cancel_event,
                cache=cache,
            )
        except ValueError as exc:
            raise AnalysisError(str(exc), stage="frontier", kind="invalid_input") from exc
        if result.frontier.best_irr_fell_back:
            result.warnings.append("No profitable configuration qualified for best IRR; showing the best-NPV system.")


def run_site_monte_carlo(
    analysis: SiteAnalysisResult,
    config: MonteCarloConfig | None = None,
    *,
    full_dispatch: bool = False,
    pricing: Callable[[float], float] = cost_per_watt,
    cancel_event: threading.Event | None = None,
) -> MonteCarloResult:
    """Run the Monte Carlo engine around a completed site analysis.

    The simplified runner uses the analysis's sizing, annual load and peak;
    ``full_dispatch`` re-simulates the hourly profile for every iteration.
    """

    if not analysis.ok or analysis.profile is None or analysis.config is None:
        raise ValueError("Monte Carlo requires a successful site analysis")

    profile = analysis.profile.profile
    if full_dispatch:
        runner: Callable[..., Any] = DispatchScenarioRunner(profile, analysis.config, pricing)
    else:
        site = SiteScenarioParams(
            pv_kw=analysis.config.pv_kw,
            annual_consumption_kwh=profile.annual_consumption_kwh,
            peak_demand_kw=profile.peak_demand_kw,
            battery_kwh=analysis.config.battery_kwh,
            battery_kw=analysis.config.battery_kw,
        )
        runner = SimplifiedScenarioRunner(site, pricing)
    return run_monte_carlo(analysis.assumptions, runner, config, cancel_event=cancel_event)


__all__ = [
    "SiteAnalysisResult",
    "default_sizing",
    "run_site_analysis",
    "run_site_monte_carlo",
]
