"""CAPEX, incentives and multi-decade cash flows for a sized PV + battery system."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from services.simulation_core import SystemConfiguration
from utils.economics import (
    _discount_factor,
    compute_npv,
    discounted_lcoe,
    finite_or_none,
    simple_payback_years,
    solve_irr,
)
from utils.pricing import cost_per_watt

if TYPE_CHECKING:
    from services.analysis_common import AnalysisAssumptions
    from services.simulation_core import DispatchResult

MAX_HORIZON_YEARS = 30
REPORTING_HORIZONS: Tuple[int, ...] = (10, 20, 25, 30)
BATTERY_REPLACEMENT_INTERVAL_YEARS = 10

INCENTIVE_KINDS: Tuple[str, ...] = (
    "hq_solar_rebate",
    "hq_battery_rebate",
    "tax_shield",
    "federal_itc",
)


@dataclass(frozen=True)
class AnnualEnergySummary:
    """Year-1 energy quantities the financial model needs from a dispatch run."""

    consumption_kwh: float
    production_kwh: float
    self_consumption_kwh: float
    export_kwh: float
    grid_charging_kwh: float = 0.0
    monthly_peaks_before_kw: Tuple[float, ...] = (0.0,) * 12
    monthly_peaks_after_kw: Tuple[float, ...] = (0.0,) * 12

    @classmethod
    def from_dispatch(cls, result: "DispatchResult") -> "AnnualEnergySummary":
        return cls(
            consumption_kwh=result.total_consumption_kwh,
            production_kwh=result.total_production_kwh,
            self_consumption_kwh=result.self_consumption_kwh,
            export_kwh=result.export_total_kwh,
            grid_charging_kwh=result.grid_charging_kwh,
            monthly_peaks_before_kw=result.monthly_peaks_before_kw,
            monthly_peaks_after_kw=result.monthly_peaks_after_kw,
        )

    @property
    def capped_self_consumption_kwh(self) -> float:
        return min(self.self_consumption_kwh, self.production_kwh)

    @property
    def self_sufficiency_pct(self) -> float:
        if self.consumption_kwh <= 0:
            return 0.0
        return self.capped_self_consumption_kwh / self.consumption_kwh * 100.0


@dataclass(frozen=True)
class CapexBreakdown:
    solar: float
    battery: float
    solar_cost_per_w: float

    @property
    def gross(self) -> float:
        return self.solar + self.battery


@dataclass(frozen=True)
class IncentiveEvent:
    """A single incentive payment landing ``year_offset`` years after signing."""

    year_offset: int
    amount: float
    kind: str


@dataclass(frozen=True)
class YearOneSavings:
    energy: float
    demand: float
    export: float
    grid_charging_cost: float

    @property
    def total(self) -> float:
        return self.energy - self.grid_charging_cost + self.demand + self.export


@dataclass(frozen=True)
class CashFlowYear:
    year: int
    savings: float
    export_credit: float
    om_cost: float
    replacement_cost: float
    incentives: float
    upfront: float

    @property
    def net(self) -> float:
        return (
            self.savings + self.export_credit + self.incentives
            - self.om_cost - self.replacement_cost - self.upfront
        )


@dataclass(frozen=True)
class FinancialBreakdown:
    """Everything a report needs about one scenario's economics.

    ``irr`` values are fractions and ``None`` where no rate of return exists.
    ``simple_payback_years`` is fractional and ``None`` when the investment is
    never recovered within the modeled horizon.
    """

    capex: CapexBreakdown
    incentive_events: Tuple[IncentiveEvent, ...]
    year_one: YearOneSavings
    cash_flows: Tuple[CashFlowYear, ...]
    npv: Dict[int, float]
    irr: Dict[int, Optional[float]]
    simple_payback_years: Optional[float]
    lcoe_per_kwh: Optional[float]
    co2_avoided_tonnes_per_year: float
    annual_bill_before: float
    annual_bill_after: float
    energy: AnnualEnergySummary
    discount_rate: float = 0.08
    analysis_years: int = 25

    @property
    def capex_gross(self) -> float:
        return self.capex.gross

    @property
    def total_incentives(self) -> float:
        return sum(event.amount for event in self.incentive_events)

    @property
    def capex_net(self) -> float:
        return self.capex.gross - self.total_incentives

    def incentives_by_kind(self) -> Dict[str, float]:
        totals = {kind: 0.0 for kind in INCENTIVE_KINDS}
        for event in self.incentive_events:
            totals[event.kind] = totals.get(event.kind, 0.0) + event.amount
        return totals

    def net_cash_flows(self) -> List[float]:
        return [row.net for row in self.cash_flows]

    @property
    def npv_horizon(self) -> float:
        return self.npv.get(self.analysis_years, float("nan"))

    @property
    def irr_horizon(self) -> Optional[float]:
        return self.irr.get(self.analysis_years)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "capex_solar": self.capex.solar,
            "capex_battery": self.capex.battery,
            "capex_gross": self.capex_gross,
            "capex_net": self.capex_net,
            "solar_cost_per_w": self.capex.solar_cost_per_w,
            "incentives": self.incentives_by_kind(),
            "incentive_events": [asdict(event) for event in self.incentive_events],
            "year_one_savings": {**asdict(self.year_one), "total": self.year_one.total},
            "npv": {str(year): value for year, value in self.npv.items()},
            "irr": {str(year): finite_or_none(value) for year, value in self.irr.items()},
            "simple_payback_years": finite_or_none(self.simple_payback_years),
            "lcoe_per_kwh": finite_or_none(self.lcoe_per_kwh),
            "co2_avoided_tonnes_per_year": self.co2_avoided_tonnes_per_year,
            "annual_bill_before": self.annual_bill_before,
            "annual_bill_after": self.annual_bill_after,
            "self_sufficiency_pct": self.energy.self_sufficiency_pct,
            "cash_flows": cash_flow_table(self).to_dict(orient="records"),
        }


def compute_capex(
    config: SystemConfiguration,
    assumptions: "AnalysisAssumptions",
    pricing: Callable[[float], float] = cost_per_watt,
) -> CapexBreakdown:
    """Return solar and battery CAPEX for ``config``.

    An explicit ``solar_cost_per_w`` overrides the tiered pricing adapter. The
    bifacial premium is added per watt on top of either.
    """

    if assumptions.solar_cost_per_w is not None:
        cost_w = float(assumptions.solar_cost_per_w)
    else:
        cost_w = float(pricing(config.pv_kw))
    if assumptions.bifacial_enabled:
        cost_w += float(assumptions.bifacial_cost_premium)

    solar = config.pv_kw * 1000.0 * cost_w if config.pv_kw > 0 else 0.0
    battery = (
        config.battery_kwh * assumptions.battery_capacity_cost
        + config.battery_kw * assumptions.battery_power_cost
    )
    return CapexBreakdown(solar=solar, battery=battery, solar_cost_per_w=cost_w)


def build_incentive_events(
    capex: CapexBreakdown,
    config: SystemConfiguration,
    assumptions: "AnalysisAssumptions",
) -> List[IncentiveEvent]:
    """Return the incentive payments in chronological order.

    Utility rebates (solar first, battery from whatever cap remains) share a
    single cap as a fraction of gross CAPEX. The federal credit applies to the
    cost left after utility rebates, and the depreciation tax shield to the
    cost left after both.
    """

    gross = capex.gross
    if gross <= 0:
        return []

    cap = gross * assumptions.hq_rebate_cap_fraction
    eligible_kw = min(config.pv_kw, assumptions.hq_rebate_max_kw)
    hq_solar = min(eligible_kw * assumptions.hq_solar_rebate_per_kw, cap)

    hq_battery = 0.0
    if config.pv_kw > 0 and config.battery_kwh > 0:
        hq_battery = min(max(0.0, cap - hq_solar), capex.battery)

    federal = (gross - hq_solar - hq_battery) * assumptions.federal_itc_rate
    depreciable = max(0.0, gross - hq_solar - hq_battery - federal)
    tax_shield = depreciable * assumptions.tax_rate * assumptions.tax_shield_recovery_factor

    events: List[IncentiveEvent] = []
    if hq_solar > 0:
        events.append(IncentiveEvent(0, hq_solar, "hq_solar_rebate"))
    if hq_battery > 0:
        events.append(IncentiveEvent(0, hq_battery * 0.5, "hq_battery_rebate"))
        events.append(IncentiveEvent(1, hq_battery * 0.5, "hq_battery_rebate"))
    if tax_shield > 0:
        events.append(IncentiveEvent(1, tax_shield, "tax_shield"))
    if federal > 0:
        events.append(IncentiveEvent(2, federal, "federal_itc"))
    return events


def compute_year_one_savings(
    energy: AnnualEnergySummary, assumptions: "AnalysisAssumptions"
) -> YearOneSavings:
    energy_rate = assumptions.energy_rate
    demand_rate = assumptions.demand_rate
    demand_savings = sum(
        max(0.0, before - after) * demand_rate
        for before, after in zip(energy.monthly_peaks_before_kw, energy.monthly_peaks_after_kw)
    )
    return YearOneSavings(
        energy=energy.capped_self_consumption_kwh * energy_rate,
        demand=demand_savings,
        export=energy.export_kwh * _export_rate_for_year(1, assumptions),
        grid_charging_cost=energy.grid_charging_kwh * energy_rate,
    )


def _export_rate_for_year(year: int, assumptions: "AnalysisAssumptions") -> float:
    """Blend the retail and cost-of-supply rates over the months of ``year``.

    Exports inside the net-metering period are credited at the energy tariff;
    later exports earn the lower cost-of-supply rate.
    """

    start_month = (year - 1) * 12
    months_credited = min(12, max(0, assumptions.net_metering_months - start_month))
    share = months_credited / 12.0
    return share * assumptions.energy_rate + (1.0 - share) * assumptions.export_cost_of_supply_rate


def build_cash_flows(
    capex: CapexBreakdown,
    events: Sequence[IncentiveEvent],
    energy: AnnualEnergySummary,
    config: SystemConfiguration,
    assumptions: "AnalysisAssumptions",
    horizon_years: int = MAX_HORIZON_YEARS,
) -> List[CashFlowYear]:
    """Return year-by-year cash flows from signing (year 0) to ``horizon_years``."""

    energy_rate = assumptions.energy_rate
    demand_rate = assumptions.demand_rate
    net_energy_kwh = energy.capped_self_consumption_kwh - energy.grid_charging_kwh
    demand_reduction_kw = sum(
        max(0.0, before - after)
        for before, after in zip(energy.monthly_peaks_before_kw, energy.monthly_peaks_after_kw)
    )
    om_base = capex.solar * assumptions.om_solar_percent + capex.battery * assumptions.om_battery_percent

    incentives_by_year: Dict[int, float] = {}
    for event in events:
        incentives_by_year[event.year_offset] = incentives_by_year.get(event.year_offset, 0.0) + event.amount

    rows = [
        CashFlowYear(
            year=0,
            savings=0.0,
            export_credit=0.0,
            om_cost=0.0,
            replacement_cost=0.0,
            incentives=incentives_by_year.get(0, 0.0),
            upfront=capex.gross,
        )
    ]
    for year in range(1, horizon_years + 1):
        degradation = (1.0 - assumptions.degradation_rate) ** (year - 1)
        escalation = (1.0 + assumptions.inflation_rate) ** (year - 1)
        savings = (
            net_energy_kwh * energy_rate * degradation * escalation
            + demand_reduction_kw * demand_rate * escalation
        )
        export_credit = (
            energy.export_kwh * _export_rate_for_year(year, assumptions) * degradation * escalation
        )
        om_cost = om_base * (1.0 + assumptions.om_escalation) ** (year - 1)

        replacement = 0.0
        if config.battery_kwh > 0 and _is_replacement_year(year, assumptions):
            price_path = (1.0 + assumptions.inflation_rate - assumptions.battery_price_decline_rate) ** year
            replacement = capex.battery * assumptions.battery_replacement_cost_factor * price_path

        rows.append(
            CashFlowYear(
                year=year,
                savings=savings,
                export_credit=export_credit,
                om_cost=om_cost,
                replacement_cost=replacement,
                incentives=incentives_by_year.get(year, 0.0),
                upfront=0.0,
            )
        )
    return rows


def _is_replacement_year(year: int, assumptions: "AnalysisAssumptions") -> bool:
    first = assumptions.battery_replacement_year
    if first <= 0 or year < first:
        return False
    return (year - first) % BATTERY_REPLACEMENT_INTERVAL_YEARS == 0


def compute_financial_breakdown(
    energy: AnnualEnergySummary,
    config: SystemConfiguration,
    assumptions: "AnalysisAssumptions",
    pricing: Callable[[float], float] = cost_per_watt,
) -> FinancialBreakdown:
    """Run CAPEX, incentives, cash flows and headline metrics for one scenario."""

    capex = compute_capex(config, assumptions, pricing)
    bill_before = (
        energy.consumption_kwh * assumptions.energy_rate
        + sum(energy.monthly_peaks_before_kw) * assumptions.demand_rate
    )
    co2 = energy.capped_self_consumption_kwh * assumptions.grid_emission_factor_kg_per_kwh / 1000.0

    if capex.gross <= 0:
        zero_year = YearOneSavings(0.0, 0.0, 0.0, 0.0)
        horizons = sorted(set(REPORTING_HORIZONS) | {assumptions.analysis_years})
        return FinancialBreakdown(
            capex=capex,
            incentive_events=(),
            year_one=zero_year,
            cash_flows=(CashFlowYear(0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0),),
            npv={years: 0.0 for years in horizons},
            irr={years: None for years in horizons},
            simple_payback_years=None,
            lcoe_per_kwh=None,
            co2_avoided_tonnes_per_year=0.0,
            annual_bill_before=bill_before,
            annual_bill_after=bill_before,
            energy=energy,
            discount_rate=assumptions.discount_rate,
            analysis_years=assumptions.analysis_years,
        )

    events = build_incentive_events(capex, config, assumptions)
    year_one = compute_year_one_savings(energy, assumptions)
    rows = build_cash_flows(capex, events, energy, config, assumptions)
    flows = [row.net for row in rows]

    npv = {years: compute_npv(flows[: years + 1], assumptions.discount_rate) for years in REPORTING_HORIZONS}
    irr: Dict[int, Optional[float]] = {}
    for years in REPORTING_HORIZONS:
        irr[years] = None if year_one.total <= 0 else finite_or_none(solve_irr(flows[: years + 1]))
    if assumptions.analysis_years not in npv:
        npv[assumptions.analysis_years] = compute_npv(
            flows[: assumptions.analysis_years + 1], assumptions.discount_rate
        )
        irr[assumptions.analysis_years] = (
            None if year_one.total <= 0
            else finite_or_none(solve_irr(flows[: assumptions.analysis_years + 1]))
        )

    horizon = assumptions.analysis_years
    annual_costs = [row.om_cost + row.replacement_cost for row in rows[1: horizon + 1]]
    annual_production = [
        energy.production_kwh * (1.0 - assumptions.degradation_rate) ** (year - 1)
        for year in range(1, horizon + 1)
    ]
    lcoe = discounted_lcoe(
        capex.gross - sum(event.amount * _discount_factor(assumptions.discount_rate, event.year_offset) for event in events),
        annual_costs,
        annual_production,
        assumptions.discount_rate,
    )

    return FinancialBreakdown(
        capex=capex,
        incentive_events=tuple(events),
        year_one=year_one,
        cash_flows=tuple(rows),
        npv=npv,
        irr=irr,
        simple_payback_years=simple_payback_years(flows[: horizon + 1]),
        lcoe_per_kwh=lcoe,
        co2_avoided_tonnes_per_year=co2,
        annual_bill_before=bill_before,
        annual_bill_after=bill_before - year_one.total,
        energy=energy,
        discount_rate=assumptions.discount_rate,
        analysis_years=horizon,
    )


def cash_flow_table(breakdown: FinancialBreakdown) -> pd.DataFrame:
    """Render the cash flows with incentives split by kind and a cumulative column."""

    rows: List[Dict[str, float]] = []
    cumulative = 0.0
    for row in breakdown.cash_flows:
        record: Dict[str, float] = {
            "year": row.year,
            "upfront": -row.upfront,
            "savings": row.savings,
            "export_credit": row.export_credit,
            "om_cost": -row.om_cost,
            "replacement_cost": -row.replacement_cost,
        }
        for kind in INCENTIVE_KINDS:
            record[kind] = sum(
                event.amount
                for event in breakdown.incentive_events
                if event.kind == kind and event.year_offset == row.year
            )
        cumulative += row.net
        record["net"] = row.net
        record["cumulative"] = cumulative
        rows.append(record)
    return pd.DataFrame(rows)


__all__ = [
    "MAX_HORIZON_YEARS",
    "REPORTING_HORIZONS",
    "INCENTIVE_KINDS",
    "AnnualEnergySummary",
    "CapexBreakdown",
    "IncentiveEvent",
    "YearOneSavings",
    "CashFlowYear",
    "FinancialBreakdown",
    "compute_capex",
    "build_incentive_events",
    "compute_year_one_savings",
    "build_cash_flows",
    "compute_financial_breakdown",
    "cash_flow_table",
]
