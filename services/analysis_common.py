"""Shared assumptions, errors and single-scenario evaluation for the analysis services."""
from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
import math
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Tuple

from services.financial_model import AnnualEnergySummary, FinancialBreakdown, compute_financial_breakdown
from services.simulation_core import (
    SNOW_LOSS_PROFILES,
    YIELD_SOURCES,
    DispatchResult,
    SystemConfiguration,
    SystemModelingParams,
    build_production_profile,
    resolve_yield_strategy,
    simulate_dispatch,
)
from utils.economics import _ensure_fraction, _ensure_non_negative_finite, finite_or_none
from utils.pricing import cost_per_watt
from utils.tariffs import get_tariff

if TYPE_CHECKING:
    from services.profile_builder import HourlyProfile

ASSUMPTIONS_VERSION = "2025.1"

# m² per ft², panel area (m²) and rated kW per panel for the roof-capacity estimate.
SQ_FT_PER_SQ_M = 10.764
PANEL_AREA_SQ_M = 3.71
PANEL_RATED_KW = 0.660


class AnalysisError(Exception):
    """Typed analysis failure carrying the stage it happened in and its kind."""

    default_stage = "analysis"
    default_kind = "analysis_error"

    def __init__(self, message: str, *, stage: str | None = None, kind: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage or self.default_stage
        self.kind = kind or self.default_kind


class ProfileBuildError(AnalysisError):
    default_stage = "profile"
    default_kind = "input_insufficiency"


class InfeasibleConfigurationError(AnalysisError):
    default_stage = "sizing"
    default_kind = "infeasible_configuration"


class MonteCarloError(AnalysisError):
    default_stage = "monte_carlo"
    default_kind = "all_iterations_failed"


class AnalysisCancelled(AnalysisError):
    default_stage = "analysis"
    default_kind = "cancelled"


@dataclass(frozen=True)
class AnalysisFailure:
    stage: str
    kind: str
    message: str

    @classmethod
    def from_error(cls, error: AnalysisError) -> "AnalysisFailure":
        return cls(stage=error.stage, kind=error.kind, message=error.message)

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


@dataclass(frozen=True)
class AnalysisAssumptions:
    """Explicit economic and modeling assumptions for one analysis.

    Units:
    - Rates are fractions per year (``0.048`` = 4.8 %).
    - ``tariff_energy`` in $/kWh and ``tariff_power`` in $/kW/month; ``None``
      resolves both from the shared tariff table for ``tariff_code``.
    - ``solar_cost_per_w`` in $/W; ``None`` uses the tiered pricing adapter.
    - Battery costs in $/kWh and $/kW; O&M as a share of CAPEX.
    - ``roof_area_sq_ft`` with ``roof_utilization_ratio`` bounds PV capacity.
    """

    tariff_code: str = "M"
    tariff_energy: Optional[float] = None
    tariff_power: Optional[float] = None
    export_cost_of_supply_rate: float = 0.0454
    net_metering_months: int = 24
    inflation_rate: float = 0.048
    discount_rate: float = 0.08
    tax_rate: float = 0.265
    solar_cost_per_w: Optional[float] = None
    bifacial_enabled: bool = False
    bifacial_cost_premium: float = 0.10
    battery_capacity_cost: float = 550.0
    battery_power_cost: float = 800.0
    om_solar_percent: float = 0.01
    om_battery_percent: float = 0.005
    om_escalation: float = 0.025
    roof_area_sq_ft: float = 100_000.0
    roof_utilization_ratio: float = 0.80
    degradation_rate: float = 0.005
    battery_replacement_year: int = 10
    battery_replacement_cost_factor: float = 0.60
    battery_price_decline_rate: float = 0.05
    analysis_years: int = 25
    solar_yield_kwh_per_kwp: float = 1150.0
    yield_source: str = "default"
    orientation_factor: float = 1.0
    inverter_load_ratio: float = 1.45
    temperature_coefficient: float = -0.004
    snow_loss_profile: str = "none"
    battery_round_trip_efficiency: float = 0.90
    demand_shaving_fraction: float = 0.90
    hq_solar_rebate_per_kw: float = 1000.0
    hq_rebate_max_kw: float = 1000.0
    hq_rebate_cap_fraction: float = 0.40
    federal_itc_rate: float = 0.30
    tax_shield_recovery_factor: float = 0.90
    grid_emission_factor_kg_per_kwh: float = 0.002
    version: str = ASSUMPTIONS_VERSION

    def __post_init__(self) -> None:
        get_tariff(self.tariff_code)
        for name in ("tariff_energy", "tariff_power", "solar_cost_per_w"):
            value = getattr(self, name)
            if value is not None:
                _ensure_non_negative_finite(float(value), name)
        for name in (
            "inflation_rate",
            "discount_rate",
            "tax_rate",
            "om_solar_percent",
            "om_battery_percent",
            "om_escalation",
            "roof_utilization_ratio",
            "degradation_rate",
            "battery_replacement_cost_factor",
            "battery_price_decline_rate",
            "battery_round_trip_efficiency",
            "demand_shaving_fraction",
            "hq_rebate_cap_fraction",
            "federal_itc_rate",
            "tax_shield_recovery_factor",
        ):
            _ensure_fraction(float(getattr(self, name)), name)
        for name in (
            "export_cost_of_supply_rate",
            "bifacial_cost_premium",
            "battery_capacity_cost",
            "battery_power_cost",
            "roof_area_sq_ft",
            "solar_yield_kwh_per_kwp",
            "orientation_factor",
            "hq_solar_rebate_per_kw",
            "hq_rebate_max_kw",
            "grid_emission_factor_kg_per_kwh",
        ):
            _ensure_non_negative_finite(float(getattr(self, name)), name)
        if not 1 <= int(self.analysis_years) <= 30:
            raise ValueError("analysis_years must be between 1 and 30")
        if self.net_metering_months < 0:
            raise ValueError("net_metering_months must be non-negative")
        if self.yield_source not in YIELD_SOURCES:
            raise ValueError(f"yield_source must be one of {', '.join(YIELD_SOURCES)}")
        if self.snow_loss_profile not in SNOW_LOSS_PROFILES:
            raise ValueError(f"snow_loss_profile must be one of {', '.join(SNOW_LOSS_PROFILES)}")
        if self.battery_round_trip_efficiency <= 0:
            raise ValueError("battery_round_trip_efficiency must be positive")
        if not math.isfinite(self.inverter_load_ratio) or self.inverter_load_ratio <= 0:
            raise ValueError("inverter_load_ratio must be positive")

    @classmethod
    def from_dict(cls, payload: Dict[str, Any] | None) -> "AnalysisAssumptions":
        """Build assumptions from a partial mapping.

        Missing keys take the defaults above and every provided key is honored
        as given, including zero and ``False``. Unknown keys raise so a typo
        never silently falls back to a default.
        """

        payload = dict(payload or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ValueError(f"Unknown assumption keys: {', '.join(unknown)}")
        return cls(**payload)

    def with_overrides(self, **changes: Any) -> "AnalysisAssumptions":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def energy_rate(self) -> float:
        if self.tariff_energy is not None:
            return float(self.tariff_energy)
        return get_tariff(self.tariff_code).energy_rate

    @property
    def demand_rate(self) -> float:
        if self.tariff_power is not None:
            return float(self.tariff_power)
        return get_tariff(self.tariff_code).demand_rate

    def modeling_params(self) -> SystemModelingParams:
        return SystemModelingParams(
            inverter_load_ratio=self.inverter_load_ratio,
            temperature_coefficient=self.temperature_coefficient,
            snow_loss_profile=self.snow_loss_profile,
            round_trip_efficiency=self.battery_round_trip_efficiency,
        )


def roof_max_pv_kw(assumptions: AnalysisAssumptions) -> float:
    """Estimate PV capacity that fits on the usable roof area."""

    usable_sq_m = assumptions.roof_area_sq_ft / SQ_FT_PER_SQ_M * assumptions.roof_utilization_ratio
    return usable_sq_m / PANEL_AREA_SQ_M * PANEL_RATED_KW


def resolve_demand_setpoint(
    config: SystemConfiguration, peak_demand_kw: float, assumptions: AnalysisAssumptions
) -> SystemConfiguration:
    """Fill in the default demand setpoint for battery systems without one."""

    if config.demand_setpoint_kw is not None or config.battery_kwh <= 0 or config.battery_kw <= 0:
        return config
    setpoint = float(round(peak_demand_kw * assumptions.demand_shaving_fraction))
    return config.with_sizes(demand_setpoint_kw=setpoint)


@dataclass(frozen=True)
class ScenarioEvaluation:
    config: SystemConfiguration
    dispatch: DispatchResult
    breakdown: FinancialBreakdown

    def metrics(self, horizon_years: int | None = None) -> Dict[str, Any]:
        """Flatten headline metrics for tables; undefined values become ``None``."""

        breakdown = self.breakdown
        horizon = horizon_years or breakdown.analysis_years
        npv = breakdown.npv.get(horizon)
        irr = breakdown.irr.get(horizon)
        return {
            "pv_kw": float(self.config.pv_kw),
            "battery_kwh": float(self.config.battery_kwh),
            "battery_kw": float(self.config.battery_kw),
            "demand_setpoint_kw": self.config.demand_setpoint_kw,
            "system_type": self.config.system_type,
            "capex_gross": breakdown.capex_gross,
            "capex_net": breakdown.capex_net,
            "npv": finite_or_none(npv),
            "irr": finite_or_none(irr),
            "simple_payback_years": finite_or_none(breakdown.simple_payback_years),
            "lcoe_per_kwh": finite_or_none(breakdown.lcoe_per_kwh),
            "self_sufficiency_pct": self.dispatch.self_sufficiency_pct,
            "annual_production_kwh": self.dispatch.total_production_kwh,
            "self_consumption_kwh": self.dispatch.self_consumption_kwh,
            "export_kwh": self.dispatch.export_total_kwh,
            "peak_after_kw": self.dispatch.peak_after_kw,
            "annual_savings": breakdown.year_one.total,
            "co2_avoided_tonnes_per_year": breakdown.co2_avoided_tonnes_per_year,
        }


def evaluate_scenario(
    profile: "HourlyProfile",
    config: SystemConfiguration,
    assumptions: AnalysisAssumptions,
    *,
    pricing: Callable[[float], float] = cost_per_watt,
) -> ScenarioEvaluation:
    """Run production, dispatch and the financial model for one configuration."""

    strategy = resolve_yield_strategy(assumptions)
    params = assumptions.modeling_params()
    production = build_production_profile(profile, config.pv_kw, strategy, params)
    dispatch = simulate_dispatch(profile, config, production, params=params)
    breakdown = compute_financial_breakdown(
        AnnualEnergySummary.from_dispatch(dispatch), config, assumptions, pricing
    )
    return ScenarioEvaluation(config=config, dispatch=dispatch, breakdown=breakdown)


class ScenarioCache:
    """Memoize scenario metrics by (profile fingerprint, configuration, assumptions)."""

    def __init__(self) -> None:
        self._entries: Dict[Tuple[str, SystemConfiguration, AnalysisAssumptions, Any], Dict[str, Any]] = {}
        self.hits = 0

    @staticmethod
    def key(
        fingerprint: str,
        config: SystemConfiguration,
        assumptions: AnalysisAssumptions,
        pricing: Any = None,
    ) -> Tuple[str, SystemConfiguration, AnalysisAssumptions, Any]:
        return (fingerprint, config, assumptions, pricing)

    def get(self, key: Tuple[str, SystemConfiguration, AnalysisAssumptions, Any]) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is not None:
            self.hits += 1
            return dict(entry)
        return None

    def put(self, key: Tuple[str, SystemConfiguration, AnalysisAssumptions, Any], row: Dict[str, Any]) -> None:
        self._entries[key] = dict(row)

    def __len__(self) -> int:
        return len(self._entries)


__all__ = [
    "ASSUMPTIONS_VERSION",
    "AnalysisError",
    "ProfileBuildError",
    "InfeasibleConfigurationError",
    "MonteCarloError",
    "AnalysisCancelled",
    "AnalysisFailure",
    "AnalysisAssumptions",
    "roof_max_pv_kw",
    "resolve_demand_setpoint",
    "ScenarioEvaluation",
    "evaluate_scenario",
    "ScenarioCache",
]
