"""Turn raw meter readings into a representative hourly year."""
from __future__ import annotations

from dataclasses import dataclass, field
import calendar
import hashlib
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from services.analysis_common import ProfileBuildError

logger = logging.getLogger(__name__)

GRANULARITIES = ("hour", "15min")
DEFAULT_REFERENCE_YEAR = 2025
DEFAULT_MIN_DAYS = 30


@dataclass(frozen=True)
class MeterReading:
    """One interval reading; ``kwh`` is energy over the interval, ``kw`` its peak demand."""

    timestamp: pd.Timestamp | str
    kwh: Optional[float] = None
    kw: Optional[float] = None
    granularity: str = "hour"


@dataclass(frozen=True, eq=False)
class HourlyProfile:
    """Representative year of hourly consumption and demand.

    Arrays hold one value per hour of ``reference_year`` (8760 slots, 8784 in
    a leap year). ``interpolated_months`` lists the 1-based months that were
    synthesized from neighbouring months rather than measured.
    """

    hour: np.ndarray
    month: np.ndarray
    consumption_kwh: np.ndarray
    demand_kw: np.ndarray
    reference_year: int = DEFAULT_REFERENCE_YEAR
    interpolated_months: Tuple[int, ...] = ()
    fingerprint: str = ""

    def __post_init__(self) -> None:
        lengths = {len(self.hour), len(self.month), len(self.consumption_kwh), len(self.demand_kw)}
        if len(lengths) != 1:
            raise ValueError("HourlyProfile arrays must share one length")
        if not self.fingerprint:
            object.__setattr__(self, "fingerprint", _fingerprint(self))

    def __len__(self) -> int:
        return len(self.hour)

    @property
    def annual_consumption_kwh(self) -> float:
        return float(np.sum(self.consumption_kwh))

    @property
    def peak_demand_kw(self) -> float:
        return float(np.max(self.demand_kw)) if len(self.demand_kw) else 0.0

    def monthly_peaks_kw(self) -> Tuple[float, ...]:
        peaks = []
        for month in range(1, 13):
            mask = self.month == month
            peaks.append(float(self.demand_kw[mask].max()) if mask.any() else 0.0)
        return tuple(peaks)

    def monthly_consumption_kwh(self) -> Tuple[float, ...]:
        return tuple(float(self.consumption_kwh[self.month == month].sum()) for month in range(1, 13))

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "month": self.month,
                "hour": self.hour,
                "consumption_kwh": self.consumption_kwh,
                "demand_kw": self.demand_kw,
            }
        )

    @classmethod
    def from_arrays(
        cls,
        consumption_kwh: Sequence[float],
        demand_kw: Sequence[float],
        *,
        reference_year: int = DEFAULT_REFERENCE_YEAR,
        interpolated_months: Iterable[int] = (),
    ) -> "HourlyProfile":
        """Wrap full-year hourly arrays laid out on ``reference_year``'s calendar."""

        months, hours = calendar_slots(reference_year)
        consumption = np.asarray(consumption_kwh, dtype=float)
        demand = np.asarray(demand_kw, dtype=float)
        if len(consumption) != len(months):
            raise ValueError(
                f"Expected {len(months)} hourly values for {reference_year}, received {len(consumption)}"
            )
        return cls(
            hour=hours,
            month=months,
            consumption_kwh=consumption,
            demand_kw=demand,
            reference_year=reference_year,
            interpolated_months=tuple(sorted(int(m) for m in interpolated_months)),
        )


@dataclass(frozen=True)
class DataCoverage:
    real_days: int
    readings_used: int
    duplicate_hours_merged: int
    negative_values_clamped: int
    interpolated_months: Tuple[int, ...]
    insufficient: bool
    min_days: int = DEFAULT_MIN_DAYS
    message: str = ""

    def flag_totals(self) -> Dict[str, int]:
        return {
            "interpolated_months": len(self.interpolated_months),
            "insufficient_data": int(self.insufficient),
            "clamped_negative_readings": self.negative_values_clamped,
        }


@dataclass(frozen=True)
class ProfileBuildResult:
    profile: HourlyProfile
    coverage: DataCoverage
    warnings: Tuple[str, ...] = field(default_factory=tuple)


def _fingerprint(profile: HourlyProfile) -> str:
    digest = hashlib.sha1()
    digest.update(str(profile.reference_year).encode())
    for array in (profile.month, profile.hour, profile.consumption_kwh, profile.demand_kw):
        digest.update(np.ascontiguousarray(array, dtype=float).tobytes())
    return digest.hexdigest()


def calendar_slots(reference_year: int) -> Tuple[np.ndarray, np.ndarray]:
    """Return (month, hour) arrays for every hour of ``reference_year``."""

    index = pd.date_range(
        start=f"{reference_year}-01-01", end=f"{reference_year}-12-31 23:00", freq="h"
    )
    return index.month.to_numpy(dtype=int), index.hour.to_numpy(dtype=int)


def _readings_frame(readings: Iterable[MeterReading] | pd.DataFrame) -> pd.DataFrame:
    if isinstance(readings, pd.DataFrame):
        frame = readings.copy()
        for column in ("kwh", "kw"):
            if column not in frame.columns:
                frame[column] = np.nan
        if "granularity" not in frame.columns:
            frame["granularity"] = "hour"
    else:
        frame = pd.DataFrame(
            [
                {
                    "timestamp": reading.timestamp,
                    "kwh": reading.kwh,
                    "kw": reading.kw,
                    "granularity": reading.granularity,
                }
                for reading in readings
            ],
            columns=["timestamp", "kwh", "kw", "granularity"],
        )

    if "timestamp" not in frame.columns:
        raise ValueError("Meter readings require a 'timestamp' column")

    invalid = sorted(set(frame["granularity"].dropna()) - set(GRANULARITIES))
    if invalid:
        raise ValueError(f"Unsupported reading granularity: {', '.join(map(str, invalid))}")

    frame["timestamp"] = pd.to_datetime(frame["timestamp"], errors="coerce")
    dropped = int(frame["timestamp"].isna().sum())
    if dropped:
        logger.warning("Dropped %d meter readings with unparseable timestamps.", dropped)
        frame = frame.dropna(subset=["timestamp"])
    frame["kwh"] = pd.to_numeric(frame["kwh"], errors="coerce")
    frame["kw"] = pd.to_numeric(frame["kw"], errors="coerce")
    return frame.reset_index(drop=True)


def deduplicate_readings_by_hour(
    readings: Iterable[MeterReading] | pd.DataFrame,
) -> Tuple[pd.DataFrame, int, int]:
    """Collapse readings to one row per clock hour.

    An hourly reading wins the hour's energy when one exists; otherwise the
    sub-hourly energies are summed. Demand always takes the bucket maximum.
    Returns ``(frame, duplicate_hours_merged, negative_values_clamped)``
    where ``frame`` has columns ``timestamp, kwh, kw``.
    """

    frame = _readings_frame(readings)
    if frame.empty:
        return pd.DataFrame(columns=["timestamp", "kwh", "kw"]), 0, 0

    negatives = int((frame["kwh"] < 0).sum() + (frame["kw"] < 0).sum())
    if negatives:
        logger.warning("Clamped %d negative meter values to zero.", negatives)
        frame["kwh"] = frame["kwh"].clip(lower=0)
        frame["kw"] = frame["kw"].clip(lower=0)

    frame["bucket"] = frame["timestamp"].dt.floor("h")
    frame["is_hourly"] = frame["granularity"] == "hour"
    groups = frame.groupby("bucket", sort=True)

    summed_kwh = groups["kwh"].sum(min_count=1)
    hourly_kwh = frame[frame["is_hourly"]].groupby("bucket")["kwh"].first().reindex(summed_kwh.index)
    has_hourly = groups["is_hourly"].any()
    counts = groups.size()

    deduped = pd.DataFrame(
        {
            "timestamp": summed_kwh.index,
            "kwh": np.where(has_hourly.to_numpy(), hourly_kwh.to_numpy(), summed_kwh.to_numpy()),
            "kw": groups["kw"].max().to_numpy(),
        }
    )
    return deduped, int((counts > 1).sum()), negatives


def _neighbour_months(month: int, populated: Sequence[int]) -> Tuple[int, int]:
    """Return the nearest populated months before and after ``month``, wrapping the year."""

    previous = next(
        (m for m in ((month - step - 1) % 12 + 1 for step in range(1, 12)) if m in populated), month
    )
    following = next(
        (m for m in ((month + step - 1) % 12 + 1 for step in range(1, 12)) if m in populated), month
    )
    return previous, following


def build_hourly_profile(
    readings: Iterable[MeterReading] | pd.DataFrame,
    *,
    reference_year: int = DEFAULT_REFERENCE_YEAR,
    min_days: int = DEFAULT_MIN_DAYS,
    monthly_totals_kwh: Mapping[int, float] | None = None,
) -> ProfileBuildResult:
    """Build an 8760-hour profile from meter readings of any coverage.

    Parameters
    ----------
    readings
        ``MeterReading`` objects or a DataFrame with ``timestamp, kwh, kw``
        and optional ``granularity`` columns.
    reference_year
        Calendar the representative year is laid out on.
    min_days
        Distinct days of real readings below which the result is flagged as
        insufficient. The profile is still built; callers decide whether to
        proceed.
    monthly_totals_kwh
        Optional known consumption per month (1-12). Synthesized months are
        scaled to these totals when provided.

    Notes
    -----
    Each (month, hour-of-day) cell takes the mean energy and the maximum
    demand of its readings. Months with no readings are synthesized as the
    hour-by-hour average of the nearest populated months on either side.
    Missing cells inside populated months use the same neighbours.
    """

    deduped, duplicates, negatives = deduplicate_readings_by_hour(readings)
    usable = deduped.dropna(subset=["kwh", "kw"], how="all")
    if usable.empty:
        raise ProfileBuildError("No usable meter readings were provided.")

    usable = usable.assign(
        month=usable["timestamp"].dt.month,
        hour=usable["timestamp"].dt.hour,
        day=usable["timestamp"].dt.normalize(),
    )
    real_days = int(usable["day"].nunique())

    grouped = usable.groupby(["month", "hour"]).agg(kwh=("kwh", "mean"), kw=("kw", "max"))
    energy = np.full((12, 24), np.nan)
    demand = np.full((12, 24), np.nan)
    for (month, hour), row in grouped.iterrows():
        energy[int(month) - 1, int(hour)] = row["kwh"]
        demand[int(month) - 1, int(hour)] = row["kw"]

    # Hourly energy doubles as average demand where no kW channel was recorded.
    demand = np.where(np.isnan(demand) & ~np.isnan(energy), energy, demand)
    has_data = ~np.isnan(energy) | ~np.isnan(demand)
    populated = [m + 1 for m in range(12) if has_data[m].any()]
    missing_months = tuple(m for m in range(1, 13) if m not in populated)
    warnings: List[str] = []

    # Fill from measured months only so synthesized months never feed each other.
    measured_energy = energy.copy()
    measured_demand = demand.copy()
    for month in range(1, 13):
        previous, following = _neighbour_months(month, populated)
        for grid, source in ((energy, measured_energy), (demand, measured_demand)):
            row = grid[month - 1]
            gaps = np.isnan(row)
            if not gaps.any():
                continue
            neighbours = np.vstack([source[previous - 1], source[following - 1]])
            counts = (~np.isnan(neighbours)).sum(axis=0)
            totals = np.nansum(neighbours, axis=0)
            fill = np.divide(totals, counts, out=np.zeros(24), where=counts > 0)
            row[gaps] = fill[gaps]

    if monthly_totals_kwh:
        days_per_month = [calendar.monthrange(reference_year, m)[1] for m in range(1, 13)]
        for month in missing_months:
            target = monthly_totals_kwh.get(month)
            if target is None:
                continue
            current = energy[month - 1].sum() * days_per_month[month - 1]
            if current > 0:
                energy[month - 1] *= float(target) / current
            else:
                energy[month - 1] = float(target) / (24 * days_per_month[month - 1])

    if missing_months:
        names = ", ".join(calendar.month_abbr[m] for m in missing_months)
        warnings.append(f"No readings for {names}; values interpolated from neighbouring months.")
        logger.warning("Interpolated %d missing months: %s", len(missing_months), names)

    insufficient = real_days < min_days
    message = ""
    if insufficient:
        message = f"Only {real_days} days of readings available; at least {min_days} are recommended."
        warnings.append(message)

    months, hours = calendar_slots(reference_year)
    profile = HourlyProfile(
        hour=hours,
        month=months,
        consumption_kwh=energy[months - 1, hours],
        demand_kw=demand[months - 1, hours],
        reference_year=reference_year,
        interpolated_months=missing_months,
    )
    coverage = DataCoverage(
        real_days=real_days,
        readings_used=int(len(usable)),
        duplicate_hours_merged=duplicates,
        negative_values_clamped=negatives,
        interpolated_months=missing_months,
        insufficient=insufficient,
        min_days=min_days,
        message=message,
    )
    return ProfileBuildResult(profile=profile, coverage=coverage, warnings=tuple(warnings))


def profile_summary(result: ProfileBuildResult) -> Dict[str, Any]:
    profile = result.profile
    return {
        "reference_year": profile.reference_year,
        "hours": len(profile),
        "annual_consumption_kwh": profile.annual_consumption_kwh,
        "peak_demand_kw": profile.peak_demand_kw,
        "monthly_consumption_kwh": list(profile.monthly_consumption_kwh()),
        "monthly_peaks_kw": list(profile.monthly_peaks_kw()),
        "interpolated_months": list(profile.interpolated_months),
        "real_days": result.coverage.real_days,
        "insufficient": result.coverage.insufficient,
        "fingerprint": profile.fingerprint,
        "warnings": list(result.warnings),
    }


__all__ = [
    "MeterReading",
    "HourlyProfile",
    "DataCoverage",
    "ProfileBuildResult",
    "calendar_slots",
    "deduplicate_readings_by_hour",
    "build_hourly_profile",
    "profile_summary",
]
