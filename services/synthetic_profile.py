"""Synthetic hourly readings for sites without meter data.

Readings come from building archetypes: a monthly shape, a bell-shaped
operating-hours curve over a night base load, and a weekend reduction. They
feed :func:`services.profile_builder.build_hourly_profile` like real readings.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple

import numpy as np
import pandas as pd

from utils.tariffs import get_tariff

SYNTHETIC_REFERENCE_YEAR = 2023
DEFAULT_ANNUAL_CONSUMPTION_KWH = 200_000.0
BILL_ENERGY_SHARE = 0.7


@dataclass(frozen=True)
class BuildingArchetype:
    operating_start: int
    operating_end: int
    base_night: float  # share of peak load outside operating hours
    weekend_factor: float
    load_factor: float
    intensity_kwh_per_sq_ft: float
    monthly_factors: Tuple[float, ...]


ARCHETYPES: Dict[str, BuildingArchetype] = {
    "office": BuildingArchetype(
        7, 19, 0.30, 0.25, 0.45, 18,
        (1.0, 1.0, 1.0, 0.95, 0.9, 0.85, 0.8, 0.85, 0.95, 1.0, 1.05, 1.1),
    ),
    "warehouse": BuildingArchetype(
        6, 22, 0.60, 0.50, 0.65, 10,
        (0.95, 0.95, 1.0, 1.0, 1.0, 1.05, 1.1, 1.1, 1.0, 1.0, 0.95, 0.9),
    ),
    "cold_warehouse": BuildingArchetype(
        0, 24, 0.85, 0.95, 0.75, 30,
        (0.85, 0.85, 0.90, 0.95, 1.05, 1.15, 1.25, 1.25, 1.10, 0.95, 0.85, 0.85),
    ),
    "retail": BuildingArchetype(
        9, 21, 0.20, 0.85, 0.40, 22,
        (1.15, 1.0, 0.95, 0.9, 0.85, 0.8, 0.85, 0.9, 0.95, 1.0, 1.15, 1.4),
    ),
    "industrial": BuildingArchetype(
        0, 24, 0.80, 0.75, 0.70, 15,
        (1.0,) * 12,
    ),
    "light_industrial": BuildingArchetype(
        7, 20, 0.40, 0.30, 0.55, 14,
        (1.0, 1.0, 1.0, 0.97, 0.95, 0.92, 0.9, 0.92, 0.97, 1.0, 1.03, 1.05),
    ),
    "institutional": BuildingArchetype(
        7, 17, 0.25, 0.20, 0.40, 20,
        (1.1, 1.1, 1.0, 0.9, 0.7, 0.5, 0.4, 0.5, 1.0, 1.1, 1.1, 1.2),
    ),
}

SCHEDULE_OVERRIDES: Dict[str, Tuple[int, int]] = {
    "extended": (5, 23),
    "24/7": (0, 24),
}


@dataclass(frozen=True)
class SyntheticProfileResult:
    readings: pd.DataFrame
    building_type: str
    annual_consumption_kwh: float
    estimated_peak_kw: float
    load_factor: float


def _hourly_weights(hours: np.ndarray, start: int, end: int, base_night: float) -> np.ndarray:
    if start == 0 and end == 24:
        return np.full(len(hours), base_night + (1.0 - base_night) * 0.8)

    center = (start + end) / 2.0
    sigma = (end - start) / 4.0
    gauss = np.exp(-((hours - center) ** 2) / (2.0 * sigma ** 2))
    operating = (hours >= start) & (hours < end)
    return np.where(operating, base_night + (1.0 - base_night) * gauss, base_night)


def generate_synthetic_readings(
    building_type: str,
    annual_consumption_kwh: float,
    operating_schedule: str = "standard",
) -> SyntheticProfileResult:
    """Return one year of hourly readings summing to ``annual_consumption_kwh``."""

    archetype = ARCHETYPES.get(building_type)
    if archetype is None:
        raise ValueError(f"Unknown building type: {building_type}")
    if annual_consumption_kwh <= 0:
        raise ValueError("annual_consumption_kwh must be positive")
    if operating_schedule != "standard" and operating_schedule not in SCHEDULE_OVERRIDES:
        raise ValueError(f"Unknown operating schedule: {operating_schedule}")

    start, end = archetype.operating_start, archetype.operating_end
    if operating_schedule in SCHEDULE_OVERRIDES:
        start, end = SCHEDULE_OVERRIDES[operating_schedule]

    index = pd.date_range(
        start=f"{SYNTHETIC_REFERENCE_YEAR}-01-01",
        end=f"{SYNTHETIC_REFERENCE_YEAR}-12-31 23:00",
        freq="h",
    )
    hours = index.hour.to_numpy()
    monthly = np.asarray(archetype.monthly_factors)[index.month.to_numpy() - 1]
    weekend = np.where(index.dayofweek.to_numpy() >= 5, archetype.weekend_factor, 1.0)
    raw = monthly * weekend * _hourly_weights(hours, start, end, archetype.base_night)

    kwh = raw * (annual_consumption_kwh / raw.sum())
    peak_kw = annual_consumption_kwh / len(index) / archetype.load_factor
    readings = pd.DataFrame(
        {
            "timestamp": index,
            "kwh": kwh,
            "kw": np.minimum(kwh, peak_kw),
            "granularity": "hour",
        }
    )
    return SyntheticProfileResult(
        readings=readings,
        building_type=building_type,
        annual_consumption_kwh=float(annual_consumption_kwh),
        estimated_peak_kw=float(peak_kw),
        load_factor=archetype.load_factor,
    )


def estimate_annual_consumption(
    building_type: str,
    *,
    monthly_bill: float | None = None,
    tariff_code: str | None = None,
    building_sq_ft: float | None = None,
) -> float:
    """Estimate annual kWh from a monthly bill, else floor area, else a C&I default."""

    if monthly_bill is not None and monthly_bill > 0:
        rate = get_tariff(tariff_code).energy_rate
        return float(round(monthly_bill * BILL_ENERGY_SHARE / rate * 12))

    if building_sq_ft is not None and building_sq_ft > 0:
        archetype = ARCHETYPES.get(building_type)
        intensity = archetype.intensity_kwh_per_sq_ft if archetype else 18.0
        return float(round(building_sq_ft * intensity))

    return DEFAULT_ANNUAL_CONSUMPTION_KWH


__all__ = [
    "ARCHETYPES",
    "SCHEDULE_OVERRIDES",
    "BuildingArchetype",
    "SyntheticProfileResult",
    "generate_synthetic_readings",
    "estimate_annual_consumption",
]
