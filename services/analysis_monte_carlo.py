"""Monte Carlo analysis of financial outcomes under macro-economic uncertainty.

Each iteration perturbs tariff escalation, discount rate, specific yield,
bifacial gain, O&M cost and installed cost, then runs a scenario through the
shared financial model. All samples are drawn up front from one seeded
generator, so results do not depend on execution order or concurrency.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from functools import partial
import logging
import math
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from services.analysis_common import (
    AnalysisAssumptions,
    AnalysisCancelled,
    MonteCarloError,
    evaluate_scenario,
)
from services.financial_model import (
    AnnualEnergySummary,
    FinancialBreakdown,
    compute_financial_breakdown,
)
from services.profile_builder import HourlyProfile
from services.simulation_core import SystemConfiguration, resolve_yield_strategy
from utils.pricing import cost_per_watt
from utils.sweeps import _chunked, iter_batch_results

logger = logging.getLogger(__name__)

PERCENTILES: Tuple[Tuple[str, float], ...] = (("p10", 0.10), ("p50", 0.50), ("p90", 0.90))
NPV_HORIZONS: Tuple[int, ...] = (10, 20, 25)
DAYS_PER_YEAR = 365


@dataclass(frozen=True)
class MonteCarloRanges:
    """Uniform sampling bounds; rates are fractions, yield in kWh/kWp, costs in $."""

    tariff_escalation: Tuple[float, float] = (0.025, 0.035)
    discount_rate: Tuple[float, float] = (0.06, 0.08)
    solar_yield: Tuple[float, float] = (1075.0, 1225.0)
    bifacial_boost: Tuple[float, float] = (0.10, 0.20)
    om_per_kwc: Tuple[float, float] = (10.0, 20.0)
    solar_cost_per_w: Tuple[float, float] = (1.75, 2.35)

    def __post_init__(self) -> None:
        for f in fields(self):
            low, high = getattr(self, f.name)
            if not (math.isfinite(low) and math.isfinite(high)) or low > high:
                raise ValueError(f"{f.name} range must be finite with low <= high")
            if low < 0:
                raise ValueError(f"{f.name} range must be non-negative")
        if self.solar_cost_per_w[0] <= 0:
            raise ValueError("solar_cost_per_w range must be positive")

    @classmethod
    def from_dict(cls, payload: Dict[str, Any] | None) -> "MonteCarloRanges":
        payload = dict(payload or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ValueError(f"Unknown Monte Carlo range keys: {', '.join(unknown)}")
        return cls(**{key: (float(value[0]), float(value[1])) for key, value in payload.items()})


@dataclass(frozen=True)
class MonteCarloConfig:
    iterations: int = 500
    ranges: MonteCarloRanges = field(default_factory=MonteCarloRanges)
    seed: Optional[int] = None
    batch_size: int = 100
    concurrency: Optional[str] = None
    max_workers: Optional[int] = None

    def __post_init__(self) -> None:
        if self.iterations <= 0:
            raise ValueError("iterations must be positive")
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")


@dataclass(frozen=True)
class SiteScenarioParams:
    pv_kw: float
    annual_consumption_kwh: float
    peak_demand_kw: float
    battery_kwh: float = 0.0
    battery_kw: float = 0.0


@dataclass(frozen=True)
class SimplifiedScenarioRunner:
    """Annual energy model that skips the hourly dispatch.

    Self-consumption is a capped share of production and demand savings assume
    PV trims a small, fixed slice of each monthly peak. A battery shifts up to
    one full cycle of surplus per day into the load (after round-trip losses)
    and shaves each monthly peak down to the default demand setpoint, bounded
    by its rated power. The resulting energy summary goes through the same
    financial model as a full analysis.
    """

    site: SiteScenarioParams
    pricing: Callable[[float], float] = cost_per_watt

    def energy_summary(self, assumptions: AnalysisAssumptions) -> AnnualEnergySummary:
        site = self.site
        effective_yield = resolve_yield_strategy(assumptions).effective_yield_kwh_per_kwp
        production = site.pv_kw * effective_yield
        if production > 0:
            ratio = min(0.95, site.annual_consumption_kwh / (production * 1.1))
        else:
            ratio = 0.0
        direct = production * ratio
        surplus = production - direct
        reduction = min(site.pv_kw * 0.15, site.peak_demand_kw * 0.10)

        shifted = charged = 0.0
        if site.battery_kwh > 0 and site.battery_kw > 0:
            efficiency = assumptions.battery_round_trip_efficiency
            shifted = min(
                surplus * efficiency,
                site.battery_kwh * efficiency * DAYS_PER_YEAR,
                max(0.0, site.annual_consumption_kwh - direct),
            )
            charged = shifted / efficiency
            headroom = site.peak_demand_kw * (1.0 - assumptions.demand_shaving_fraction)
            reduction += min(site.battery_kw, headroom)

        return AnnualEnergySummary(
            consumption_kwh=site.annual_consumption_kwh,
            production_kwh=production,
            self_consumption_kwh=direct + shifted,
            export_kwh=surplus - charged,
            monthly_peaks_before_kw=(site.peak_demand_kw,) * 12,
            monthly_peaks_after_kw=(max(0.0, site.peak_demand_kw - reduction),) * 12,
        )

    def __call__(self, assumptions: AnalysisAssumptions) -> FinancialBreakdown:
        config = SystemConfiguration(
            pv_kw=self.site.pv_kw, battery_kwh=self.site.battery_kwh, battery_kw=self.site.battery_kw
        )
        return compute_financial_breakdown(self.energy_summary(assumptions), config, assumptions, self.pricing)


@dataclass(frozen=True)
class DispatchScenarioRunner:
    """Runs the full hourly dispatch for every iteration."""

    profile: HourlyProfile
    config: SystemConfiguration
    pricing: Callable[[float], float] = cost_per_watt

    def __call__(self, assumptions: AnalysisAssumptions) -> FinancialBreakdown:
        return evaluate_scenario(self.profile, self.config, assumptions, pricing=self.pricing).breakdown


@dataclass
class MonteCarloResult:
    samples: pd.DataFrame
    summaries: Dict[str, Dict[str, Optional[float]]]
    probability_npv_positive: float
    iterations_nominal: int
    iterations_used: int
    discarded: List[Dict[str, Any]]
    seed: Optional[int]
    ranges: MonteCarloRanges
    horizon_years: int = 25

    def to_dict(self) -> Dict[str, Any]:
        npv_column = f"npv_{self.horizon_years}"
        distribution: Dict[str, List[float]] = {}
        for column in (npv_column, f"irr_{self.horizon_years}", "payback_years"):
            if column in self.samples:
                distribution[column] = sorted(float(v) for v in self.samples[column].dropna())
        return {
            "summaries": self.summaries,
            "probability_npv_positive": self.probability_npv_positive,
            "iterations_nominal": self.iterations_nominal,
            "iterations_used": self.iterations_used,
            "discarded": list(self.discarded),
            "seed": self.seed,
            "ranges": {key: list(value) for key, value in asdict(self.ranges).items()},
            "horizon_years": self.horizon_years,
            "distribution": distribution,
        }


def sample_inputs(config: MonteCarloConfig) -> pd.DataFrame:
    """Draw every iteration's inputs at once, in a fixed variable order."""

    rng = np.random.default_rng(config.seed)
    n = config.iterations
    ranges = config.ranges
    samples = pd.DataFrame(
        {
            "tariff_escalation": rng.uniform(*ranges.tariff_escalation, size=n),
            "discount_rate": rng.uniform(*ranges.discount_rate, size=n),
            "solar_yield": np.round(rng.uniform(*ranges.solar_yield, size=n)),
            "bifacial_boost": rng.uniform(*ranges.bifacial_boost, size=n),
            "om_per_kwc": rng.uniform(*ranges.om_per_kwc, size=n),
            "solar_cost_per_w": rng.uniform(*ranges.solar_cost_per_w, size=n),
        }
    )
    samples["effective_yield"] = np.round(samples["solar_yield"] * (1.0 + samples["bifacial_boost"]))
    samples.insert(0, "iteration", np.arange(n))
    return samples


def assumptions_for_sample(base: AnalysisAssumptions, sample: Dict[str, float]) -> AnalysisAssumptions:
    """Map one sampled row onto the base assumptions.

    The bifacial gain is already folded into the sampled yield, so bifacial
    pricing and yield boosts are switched off to avoid counting it twice.
    """

    return base.with_overrides(
        inflation_rate=float(sample["tariff_escalation"]),
        discount_rate=float(sample["discount_rate"]),
        solar_yield_kwh_per_kwp=float(sample["effective_yield"]),
        om_solar_percent=float(sample["om_per_kwc"]) / (float(sample["solar_cost_per_w"]) * 1000.0),
        solar_cost_per_w=float(sample["solar_cost_per_w"]),
        bifacial_enabled=False,
        yield_source="manual",
    )


def _run_iteration(
    sample: Dict[str, float],
    base: AnalysisAssumptions,
    runner: Callable[[AnalysisAssumptions], FinancialBreakdown],
    horizon_years: int,
) -> Dict[str, Any]:
    iteration = int(sample["iteration"])
    try:
        breakdown = runner(assumptions_for_sample(base, sample))
    except Exception as exc:  # a failed draw is discarded, not fatal
        return {"iteration": iteration, "status": "failed", "error": f"{type(exc).__name__}: {exc}"}

    flows = breakdown.net_cash_flows()[: horizon_years + 1]
    payback = breakdown.simple_payback_years
    outcome: Dict[str, Any] = {"iteration": iteration, "status": "ok", "error": None}
    for years in sorted(set(NPV_HORIZONS) | {horizon_years}):
        outcome[f"npv_{years}"] = breakdown.npv.get(years, float("nan"))
        irr = breakdown.irr.get(years)
        outcome[f"irr_{years}"] = float("nan") if irr is None else irr
    outcome["payback_years"] = float(horizon_years) if payback is None else min(payback, float(horizon_years))
    outcome["capex_net"] = breakdown.capex_net
    outcome["lifetime_net_cash_flow"] = float(sum(flows))

    if not math.isfinite(outcome[f"npv_{horizon_years}"]) or not math.isfinite(outcome["capex_net"]):
        return {"iteration": iteration, "status": "failed", "error": "non-finite NPV or CAPEX"}
    return outcome


def _percentile(sorted_values: np.ndarray, p: float) -> float:
    index = min(int(math.floor(len(sorted_values) * p)), len(sorted_values) - 1)
    return float(sorted_values[index])


def summarize_distribution(values: pd.Series) -> Dict[str, Optional[float]]:
    """Return p10/p50/p90/mean over the defined values; all ``None`` when there are none."""

    clean = np.sort(values.dropna().to_numpy(dtype=float))
    if len(clean) == 0:
        return {name: None for name, _ in PERCENTILES} | {"mean": None}
    summary: Dict[str, Optional[float]] = {name: _percentile(clean, p) for name, p in PERCENTILES}
    summary["mean"] = float(clean.mean())
    return summary


def run_monte_carlo(
    base_assumptions: AnalysisAssumptions,
    runner: Callable[[AnalysisAssumptions], FinancialBreakdown],
    config: MonteCarloConfig | None = None,
    *,
    cancel_event: threading.Event | None = None,
) -> MonteCarloResult:
    """Run ``config.iterations`` perturbed scenarios and summarize the outcomes.

    Iterations that raise or produce non-finite results are discarded and
    logged; the result reports nominal and used counts. ``MonteCarloError``
    is raised when no iteration succeeds. ``cancel_event`` is checked between
    batches.
    """

    config = config or MonteCarloConfig()
    horizon = base_assumptions.analysis_years
    samples = sample_inputs(config)
    records = samples.to_dict(orient="records")
    evaluate_fn = partial(_run_iteration, base=base_assumptions, runner=runner, horizon_years=horizon)

    outcomes: List[Dict[str, Any]] = []
    batches = _chunked(records, config.batch_size)
    for batch_outcomes in iter_batch_results(
        evaluate_fn, batches, concurrency=config.concurrency, max_workers=config.max_workers
    ):
        outcomes.extend(batch_outcomes)
        if cancel_event is not None and cancel_event.is_set() and len(outcomes) < len(records):
            raise AnalysisCancelled("Monte Carlo run was cancelled.", stage="monte_carlo")

    discarded = [
        {"iteration": o["iteration"], "error": o["error"]} for o in outcomes if o["status"] != "ok"
    ]
    for item in discarded:
        logger.warning("Monte Carlo iteration %d discarded: %s", item["iteration"], item["error"])

    used = [o for o in outcomes if o["status"] == "ok"]
    if not used:
        raise MonteCarloError(f"All {config.iterations} Monte Carlo iterations failed.")
    if discarded:
        logger.warning(
            "Monte Carlo used %d of %d iterations (%d discarded).",
            len(used),
            config.iterations,
            len(discarded),
        )

    results = pd.DataFrame(used).drop(columns=["status", "error"])
    table = samples.merge(results, on="iteration", how="inner")

    metric_columns = [c for c in results.columns if c != "iteration"]
    summaries = {column: summarize_distribution(table[column]) for column in metric_columns}
    npv = table[f"npv_{horizon}"]
    probability = float((npv > 0).sum()) / len(table)

    return MonteCarloResult(
        samples=table,
        summaries=summaries,
        probability_npv_positive=probability,
        iterations_nominal=config.iterations,
        iterations_used=len(table),
        discarded=discarded,
        seed=config.seed,
        ranges=config.ranges,
        horizon_years=horizon,
    )


__all__ = [
    "MonteCarloRanges",
    "MonteCarloConfig",
    "SiteScenarioParams",
    "SimplifiedScenarioRunner",
    "DispatchScenarioRunner",
    "MonteCarloResult",
    "sample_inputs",
    "assumptions_for_sample",
    "summarize_distribution",
    "run_monte_carlo",
]
