"""Hourly PV production and battery dispatch over a representative year."""
from __future__ import annotations

from dataclasses import dataclass, replace
import logging
import math
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

import numpy as np
import pandas as pd

from utils.economics import _ensure_fraction, _ensure_non_negative_finite

if TYPE_CHECKING:
    from services.profile_builder import HourlyProfile

logger = logging.getLogger(__name__)

BASELINE_YIELD_KWH_PER_KWP = 1150.0
BIFACIAL_YIELD_BOOST = 0.15
YIELD_SOURCES = ("default", "manual", "google")

# Mean monthly ambient temperature (°C) for southern Quebec.
QUEBEC_MONTHLY_TEMPS_C: Tuple[float, ...] = (
    -10.5, -9.2, -2.8, 5.7, 13.1, 18.2, 21.0, 19.8, 14.8, 8.2, 1.4, -7.0,
)

# Fraction of monthly output lost to snow cover, January first.
SNOW_LOSS_PROFILES: Dict[str, Tuple[float, ...]] = {
    "none": (0.0,) * 12,
    "flat_roof": (0.55, 0.45, 0.30, 0.05, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.10, 0.40),
    "tilted": (0.30, 0.25, 0.15, 0.02, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.05, 0.20),
    "ballasted_10deg": (0.18, 0.14, 0.10, 0.02, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.03, 0.13),
}


@dataclass(frozen=True)
class SystemConfiguration:
    """PV + battery sizing for one scenario.

    Units:
    - ``pv_kw``: DC nameplate capacity (kWp).
    - ``battery_kwh`` / ``battery_kw``: usable energy and rated power.
    - ``demand_setpoint_kw``: grid demand the battery tries to hold; ``None``
      runs the battery in pure self-consumption mode.
    """

    pv_kw: float
    battery_kwh: float = 0.0
    battery_kw: float = 0.0
    demand_setpoint_kw: Optional[float] = None

    def __post_init__(self) -> None:
        _ensure_non_negative_finite(float(self.pv_kw), "pv_kw")
        _ensure_non_negative_finite(float(self.battery_kwh), "battery_kwh")
        _ensure_non_negative_finite(float(self.battery_kw), "battery_kw")
        if self.demand_setpoint_kw is not None:
            _ensure_non_negative_finite(float(self.demand_setpoint_kw), "demand_setpoint_kw")

    @property
    def has_pv(self) -> bool:
        return self.pv_kw > 0

    @property
    def has_battery(self) -> bool:
        return self.battery_kwh > 0 and self.battery_kw > 0

    @property
    def is_empty(self) -> bool:
        return not self.has_pv and self.battery_kwh <= 0

    @property
    def system_type(self) -> str:
        if self.has_pv and self.battery_kwh > 0:
            return "hybrid"
        if self.has_pv:
            return "solar"
        if self.battery_kwh > 0:
            return "battery"
        return "none"

    def with_sizes(self, **changes: Any) -> "SystemConfiguration":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pv_kw": float(self.pv_kw),
            "battery_kwh": float(self.battery_kwh),
            "battery_kw": float(self.battery_kw),
            "demand_setpoint_kw": self.demand_setpoint_kw,
        }


@dataclass(frozen=True)
class SystemModelingParams:
    """Physical assumptions behind production and dispatch."""

    inverter_load_ratio: float = 1.45
    temperature_coefficient: float = -0.004  # fraction per °C above 25 °C cell temperature
    snow_loss_profile: str = "none"
    round_trip_efficiency: float = 0.90
    initial_soc_fraction: float = 0.5
    peak_lookahead_hours: int = 6
    shaving_reserve_fraction: float = 0.5
    grid_charge_start_hour: int = 22

    def __post_init__(self) -> None:
        if not math.isfinite(self.inverter_load_ratio) or self.inverter_load_ratio <= 0:
            raise ValueError("inverter_load_ratio must be positive")
        if self.snow_loss_profile not in SNOW_LOSS_PROFILES:
            raise ValueError(
                f"snow_loss_profile must be one of {', '.join(SNOW_LOSS_PROFILES)}"
            )
        if not 0 < self.round_trip_efficiency <= 1:
            raise ValueError("round_trip_efficiency must be in (0, 1]")
        _ensure_fraction(self.initial_soc_fraction, "initial_soc_fraction")
        _ensure_fraction(self.shaving_reserve_fraction, "shaving_reserve_fraction")
        if self.peak_lookahead_hours < 0:
            raise ValueError("peak_lookahead_hours must be non-negative")
        if not 0 <= self.grid_charge_start_hour <= 24:
            raise ValueError("grid_charge_start_hour must be between 0 and 24")


@dataclass(frozen=True)
class YieldStrategy:
    """Resolved specific yield and the adjustments that produced it."""

    base_yield_kwh_per_kwp: float
    source: str
    bifacial_boost: float
    orientation_factor: float
    effective_yield_kwh_per_kwp: float
    apply_temperature_shape: bool


def resolve_yield_strategy(assumptions: Any) -> YieldStrategy:
    """Derive the effective annual yield from the yield-related assumptions.

    A yield that differs from the built-in baseline is treated as a manual
    figure even when the source says ``"default"``. Bifacial modules add a
    flat 15 % boost, and the orientation factor (clamped to ``[0.6, 1.0]``) is
    ignored for satellite-derived yields, which already reflect orientation.
    Only the default yield gets the temperature-derived hourly reshaping;
    measured or modeled yields are taken as-is.
    """

    base = float(assumptions.solar_yield_kwh_per_kwp)
    source = str(assumptions.yield_source)
    if source not in YIELD_SOURCES:
        raise ValueError(f"yield_source must be one of {', '.join(YIELD_SOURCES)}")
    if source == "default" and not math.isclose(base, BASELINE_YIELD_KWH_PER_KWP):
        source = "manual"

    boost = 1.0 + BIFACIAL_YIELD_BOOST if assumptions.bifacial_enabled else 1.0
    if source == "google":
        orientation = 1.0
    else:
        orientation = min(1.0, max(0.6, float(assumptions.orientation_factor)))

    return YieldStrategy(
        base_yield_kwh_per_kwp=base,
        source=source,
        bifacial_boost=boost,
        orientation_factor=orientation,
        effective_yield_kwh_per_kwp=base * boost * orientation,
        apply_temperature_shape=source == "default",
    )


@dataclass(frozen=True)
class ProductionProfile:
    production_kwh: np.ndarray
    dc_kwh: np.ndarray
    clipping_loss_kwh: float
    snow_loss_kwh: float

    @property
    def total_kwh(self) -> float:
        return float(self.production_kwh.sum())


def _yield_shape(hours: np.ndarray, months: np.ndarray, temperature_coefficient: float | None) -> np.ndarray:
    bell = np.exp(-((hours - 13.0) ** 2) / 8.0)
    season = 1.0 + 0.4 * np.cos((months - 6) * 2.0 * np.pi / 12.0)
    daytime = (hours >= 5) & (hours <= 20)
    shape = np.where(daytime, bell * season, 0.0)
    if temperature_coefficient is not None:
        ambient = np.asarray(QUEBEC_MONTHLY_TEMPS_C)[months - 1]
        cell_temp = ambient + 25.0 * bell
        shape = shape * (1.0 + temperature_coefficient * (cell_temp - 25.0))
    return np.clip(shape, 0.0, None)


def build_production_profile(
    profile: "HourlyProfile",
    pv_kw: float,
    strategy: YieldStrategy,
    params: SystemModelingParams | None = None,
) -> ProductionProfile:
    """Return hourly AC production for ``pv_kw`` of PV on ``profile``'s calendar.

    The daylight shape is normalized over the year so DC output before snow
    and clipping equals ``pv_kw × effective yield``.
    """

    params = params or SystemModelingParams()
    _ensure_non_negative_finite(float(pv_kw), "pv_kw")
    hours = np.asarray(profile.hour, dtype=float)
    months = np.asarray(profile.month, dtype=int)
    zeros = np.zeros(len(hours))

    coefficient = params.temperature_coefficient if strategy.apply_temperature_shape else None
    shape = _yield_shape(hours, months, coefficient)
    total_shape = float(shape.sum())
    if pv_kw <= 0 or total_shape <= 0:
        return ProductionProfile(zeros, zeros.copy(), 0.0, 0.0)

    dc = pv_kw * strategy.effective_yield_kwh_per_kwp * shape / total_shape
    snow = np.asarray(SNOW_LOSS_PROFILES[params.snow_loss_profile])[months - 1]
    after_snow = dc * (1.0 - snow)
    ac_limit_kw = pv_kw / params.inverter_load_ratio
    production = np.minimum(after_snow, ac_limit_kw)

    return ProductionProfile(
        production_kwh=production,
        dc_kwh=dc,
        clipping_loss_kwh=float((after_snow - production).sum()),
        snow_loss_kwh=float((dc - after_snow).sum()),
    )


@dataclass
class DispatchResult:
    """Hour-by-hour energy flows for one (profile, configuration) pair.

    All per-hour arrays share the profile's slot order. Battery losses are
    booked on the charging leg, so ``battery_loss_kwh`` is the energy that
    entered the charger but never reached the cells.
    """

    config: SystemConfiguration
    month: np.ndarray
    hour: np.ndarray
    consumption_kwh: np.ndarray
    production_kwh: np.ndarray
    direct_use_kwh: np.ndarray
    charge_from_pv_kwh: np.ndarray
    charge_from_grid_kwh: np.ndarray
    discharge_kwh: np.ndarray
    battery_loss_kwh: np.ndarray
    grid_import_kwh: np.ndarray
    export_kwh: np.ndarray
    soc_kwh: np.ndarray
    demand_before_kw: np.ndarray
    demand_after_kw: np.ndarray
    initial_soc_kwh: float
    clipping_loss_kwh: float = 0.0
    demand_setpoint_kw: Optional[float] = None

    @property
    def total_consumption_kwh(self) -> float:
        return float(self.consumption_kwh.sum())

    @property
    def total_production_kwh(self) -> float:
        return float(self.production_kwh.sum())

    @property
    def self_consumption_kwh(self) -> float:
        return float(self.direct_use_kwh.sum() + self.discharge_kwh.sum())

    @property
    def export_total_kwh(self) -> float:
        return float(self.export_kwh.sum())

    @property
    def grid_import_total_kwh(self) -> float:
        return float(self.grid_import_kwh.sum())

    @property
    def grid_charging_kwh(self) -> float:
        return float(self.charge_from_grid_kwh.sum())

    @property
    def battery_losses_kwh(self) -> float:
        return float(self.battery_loss_kwh.sum())

    @property
    def final_soc_kwh(self) -> float:
        return float(self.soc_kwh[-1]) if len(self.soc_kwh) else self.initial_soc_kwh

    @property
    def peak_before_kw(self) -> float:
        return float(self.demand_before_kw.max()) if len(self.demand_before_kw) else 0.0

    @property
    def peak_after_kw(self) -> float:
        return float(self.demand_after_kw.max()) if len(self.demand_after_kw) else 0.0

    def _monthly_max(self, values: np.ndarray) -> Tuple[float, ...]:
        peaks = [0.0] * 12
        for month in range(1, 13):
            mask = self.month == month
            if mask.any():
                peaks[month - 1] = float(values[mask].max())
        return tuple(peaks)

    @property
    def monthly_peaks_before_kw(self) -> Tuple[float, ...]:
        return self._monthly_max(self.demand_before_kw)

    @property
    def monthly_peaks_after_kw(self) -> Tuple[float, ...]:
        return self._monthly_max(self.demand_after_kw)

    @property
    def self_sufficiency_pct(self) -> float:
        consumption = self.total_consumption_kwh
        if consumption <= 0:
            return 0.0
        covered = min(self.self_consumption_kwh, self.total_production_kwh)
        return covered / consumption * 100.0

    def energy_balance_error_kwh(self) -> float:
        """Return production + import − consumption − export − losses − ΔSoC (≈ 0)."""

        inflow = self.total_production_kwh + self.grid_import_total_kwh
        outflow = self.total_consumption_kwh + self.export_total_kwh + self.battery_losses_kwh
        return inflow - outflow - (self.final_soc_kwh - self.initial_soc_kwh)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "month": self.month,
                "hour": self.hour,
                "consumption_kwh": self.consumption_kwh,
                "production_kwh": self.production_kwh,
                "direct_use_kwh": self.direct_use_kwh,
                "charge_from_pv_kwh": self.charge_from_pv_kwh,
                "charge_from_grid_kwh": self.charge_from_grid_kwh,
                "discharge_kwh": self.discharge_kwh,
                "battery_loss_kwh": self.battery_loss_kwh,
                "grid_import_kwh": self.grid_import_kwh,
                "export_kwh": self.export_kwh,
                "soc_kwh": self.soc_kwh,
                "demand_before_kw": self.demand_before_kw,
                "demand_after_kw": self.demand_after_kw,
            }
        )


def _clamp_negative(values: np.ndarray, name: str) -> np.ndarray:
    negatives = int((values < 0).sum())
    if negatives:
        logger.warning("Clamped %d negative %s values to zero.", negatives, name)
        return np.clip(values, 0.0, None)
    return values


def _priority_peak_mask(demand: np.ndarray, setpoint: float) -> np.ndarray:
    """Flag each day's highest-demand hour when it exceeds ``setpoint``."""

    mask = np.zeros(len(demand), dtype=bool)
    for start in range(0, len(demand), 24):
        idx = start + int(np.argmax(demand[start:start + 24]))
        if demand[idx] > setpoint:
            mask[idx] = True
    return mask


def _higher_peak_ahead_mask(demand: np.ndarray, lookahead: int) -> np.ndarray:
    n = len(demand)
    future_max = np.full(n, -np.inf)
    for offset in range(1, lookahead + 1):
        if offset >= n:
            break
        shifted = np.full(n, -np.inf)
        shifted[:-offset] = demand[offset:]
        future_max = np.maximum(future_max, shifted)
    return future_max > demand


def simulate_dispatch(
    profile: "HourlyProfile",
    config: SystemConfiguration,
    production_kwh: np.ndarray | ProductionProfile,
    *,
    params: SystemModelingParams | None = None,
) -> DispatchResult:
    """Step the battery through every hour of ``profile``.

    Without a demand setpoint the battery soaks up PV surplus and serves
    deficits (self-consumption). With a setpoint, hours above it get priority:
    each day's peak hour may use the full state of charge, other over-setpoint
    hours hold back when a higher peak arrives within the lookahead window and
    otherwise spend at most half of it. Ordinary deficits then only draw the
    energy above a reserve, and late-evening hours top the battery up from the
    grid without pushing demand over the setpoint.
    """

    params = params or SystemModelingParams()
    clipping_loss = 0.0
    if isinstance(production_kwh, ProductionProfile):
        clipping_loss = production_kwh.clipping_loss_kwh
        production_kwh = production_kwh.production_kwh

    consumption = _clamp_negative(np.asarray(profile.consumption_kwh, dtype=float), "consumption")
    demand = _clamp_negative(np.asarray(profile.demand_kw, dtype=float), "demand")
    production = _clamp_negative(np.asarray(production_kwh, dtype=float), "production")
    hours = np.asarray(profile.hour, dtype=int)
    months = np.asarray(profile.month, dtype=int)
    n = len(consumption)
    if len(production) != n or len(demand) != n:
        raise ValueError("production_kwh must align with the hourly profile")

    eta = params.round_trip_efficiency
    capacity = float(config.battery_kwh)
    power = float(config.battery_kw)
    has_battery = config.has_battery
    setpoint = config.demand_setpoint_kw if has_battery else None
    soc = capacity * params.initial_soc_fraction if has_battery else 0.0
    initial_soc = soc
    reserve = capacity * params.shaving_reserve_fraction if setpoint is not None else 0.0

    if setpoint is not None:
        priority = _priority_peak_mask(demand, setpoint).tolist()
        higher_ahead = _higher_peak_ahead_mask(demand, params.peak_lookahead_hours).tolist()
    else:
        priority = higher_ahead = [False] * n

    direct_use = np.minimum(consumption, production)
    surplus = (production - direct_use).tolist()
    deficit = (consumption - direct_use).tolist()
    demand_list = demand.tolist()
    hour_list = hours.tolist()

    charge_pv = [0.0] * n
    charge_grid = [0.0] * n
    discharge = [0.0] * n
    soc_trace = [0.0] * n
    demand_after = list(demand_list)

    for i in range(n):
        if has_battery:
            peak = demand_list[i]
            headroom_in = max(0.0, capacity - soc) / eta
            if setpoint is not None and peak > setpoint and deficit[i] > 0 and soc > 0:
                if priority[i]:
                    available = soc
                elif higher_ahead[i]:
                    available = 0.0
                else:
                    available = soc * 0.5
                discharge[i] = min(peak - setpoint, power, available, deficit[i])
            elif surplus[i] > 0 and headroom_in > 0:
                charge_pv[i] = min(surplus[i], power, headroom_in)
            elif deficit[i] > 0 and soc > reserve:
                discharge[i] = min(deficit[i], power, soc - reserve)

            if (
                setpoint is not None
                and hour_list[i] >= params.grid_charge_start_hour
                and discharge[i] == 0.0
            ):
                room = min(power - charge_pv[i], max(0.0, capacity - soc) / eta - charge_pv[i])
                charge_grid[i] = max(0.0, min(room, setpoint - peak))

            soc += (charge_pv[i] + charge_grid[i]) * eta - discharge[i]
            soc = min(capacity, max(0.0, soc))
            if discharge[i] > 0:
                demand_after[i] = max(0.0, peak - discharge[i])
            elif charge_grid[i] > 0:
                demand_after[i] = peak + charge_grid[i]
        soc_trace[i] = soc

    charge_pv_arr = np.asarray(charge_pv)
    charge_grid_arr = np.asarray(charge_grid)
    discharge_arr = np.asarray(discharge)
    deficit_arr = np.asarray(deficit)

    return DispatchResult(
        config=config,
        month=months,
        hour=hours,
        consumption_kwh=consumption,
        production_kwh=production,
        direct_use_kwh=direct_use,
        charge_from_pv_kwh=charge_pv_arr,
        charge_from_grid_kwh=charge_grid_arr,
        discharge_kwh=discharge_arr,
        battery_loss_kwh=(charge_pv_arr + charge_grid_arr) * (1.0 - eta),
        grid_import_kwh=deficit_arr - discharge_arr + charge_grid_arr,
        export_kwh=np.asarray(surplus) - charge_pv_arr,
        soc_kwh=np.asarray(soc_trace),
        demand_before_kw=demand,
        demand_after_kw=np.asarray(demand_after),
        initial_soc_kwh=initial_soc,
        clipping_loss_kwh=clipping_loss,
        demand_setpoint_kw=setpoint,
    )


@dataclass(frozen=True)
class DispatchSummary:
    """Chart-ready views of a dispatch run."""

    hourly_profile: pd.DataFrame
    peak_week: pd.DataFrame


def summarize_dispatch(result: DispatchResult, window_hours: int = 40) -> DispatchSummary:
    """Return the average day and the window around the annual demand peak."""

    frame = result.to_frame()
    hourly = (
        frame.groupby("hour")
        .agg(
            consumption_before_kwh=("consumption_kwh", "mean"),
            consumption_after_kwh=("grid_import_kwh", "mean"),
            production_kwh=("production_kwh", "mean"),
            demand_before_kw=("demand_before_kw", "mean"),
            demand_after_kw=("demand_after_kw", "mean"),
        )
        .reset_index()
    )

    if frame.empty:
        return DispatchSummary(hourly_profile=hourly, peak_week=pd.DataFrame())

    peak_idx = int(np.argmax(result.demand_before_kw))
    start = max(0, peak_idx - window_hours)
    end = min(len(frame), peak_idx + window_hours)
    peak_week = frame.loc[start:end - 1, ["demand_before_kw", "demand_after_kw"]].copy()
    peak_week.insert(0, "slot", peak_week.index.astype(int))
    return DispatchSummary(hourly_profile=hourly, peak_week=peak_week.reset_index(drop=True))


__all__ = [
    "BASELINE_YIELD_KWH_PER_KWP",
    "QUEBEC_MONTHLY_TEMPS_C",
    "SNOW_LOSS_PROFILES",
    "SystemConfiguration",
    "SystemModelingParams",
    "YieldStrategy",
    "resolve_yield_strategy",
    "ProductionProfile",
    "build_production_profile",
    "DispatchResult",
    "simulate_dispatch",
    "DispatchSummary",
    "summarize_dispatch",
]
