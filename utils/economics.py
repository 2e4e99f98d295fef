"""Discounting, IRR and payback helpers shared by the financial model and sweeps."""
from __future__ import annotations

import math
from typing import Iterable, Sequence


def _discount_factor(discount_rate: float, year_index: int) -> float:
    """Return the discount factor for a given year index (year 0 is undiscounted)."""

    return 1.0 / ((1.0 + discount_rate) ** year_index)


def _ensure_non_negative_finite(value: float, name: str) -> None:
    """Raise ValueError when a numeric value is negative or non-finite."""

    if value is None or not math.isfinite(value):
        raise ValueError(f"{name} must be a finite number")
    if value < 0:
        raise ValueError(f"{name} must be non-negative")


def _ensure_fraction(value: float, name: str, *, upper: float = 1.0) -> None:
    """Raise ValueError unless ``value`` lies in ``[0, upper]``.

    Rates in this project are fractional (``0.065`` rather than ``6.5``); a value
    above ``upper`` almost always means a percentage slipped through.
    """

    _ensure_non_negative_finite(value, name)
    if value > upper:
        raise ValueError(f"{name} must be a fraction between 0 and {upper:g} (got {value})")


def _validate_positive_values(values: Iterable[float], name: str) -> list[float]:
    """Return ``values`` as floats after checking they are finite and strictly positive."""

    cleaned: list[float] = []
    for idx, value in enumerate(values):
        number = float(value)
        if not math.isfinite(number) or number <= 0:
            raise ValueError(f"{name}[{idx}] must be a positive finite number")
        cleaned.append(number)
    return cleaned


def compute_npv(cash_flows: Sequence[float], discount_rate: float) -> float:
    """Return the net present value of ``cash_flows`` where index 0 is year 0."""

    return sum(cf * _discount_factor(discount_rate, idx) for idx, cf in enumerate(cash_flows))


def solve_irr(cash_flows: Sequence[float], max_iterations: int = 200) -> float:
    """Return the IRR of ``cash_flows`` as a fraction, or NaN when undefined.

    Bisection keeps the search stable without ``numpy_financial``. Cash flows
    that never change sign have no IRR, and neither do series whose NPV keeps
    the same sign across the whole bracket.
    """

    if not any(cf < 0 for cf in cash_flows) or not any(cf > 0 for cf in cash_flows):
        return float("nan")

    low = -0.99
    high = 1.0
    npv_low = compute_npv(cash_flows, low)
    npv_high = compute_npv(cash_flows, high)

    while npv_low * npv_high > 0 and high < 1000:
        high *= 2.0
        npv_high = compute_npv(cash_flows, high)

    if npv_low * npv_high > 0:
        return float("nan")

    mid = (low + high) / 2.0
    for _ in range(max_iterations):
        mid = (low + high) / 2.0
        npv_mid = compute_npv(cash_flows, mid)
        if abs(npv_mid) < 1e-6:
            return mid
        if npv_low * npv_mid < 0:
            high = mid
        else:
            low = mid
            npv_low = npv_mid

    return mid if math.isfinite(mid) else float("nan")


def simple_payback_years(cash_flows: Sequence[float]) -> float | None:
    """Return the fractional year in which cumulative cash flow turns non-negative.

    The crossing is interpolated linearly inside the year it happens in.
    ``None`` means the investment is never recovered within the series.
    """

    if not cash_flows:
        return None
    cumulative = float(cash_flows[0])
    if cumulative >= 0:
        return 0.0
    for year in range(1, len(cash_flows)):
        flow = float(cash_flows[year])
        previous = cumulative
        cumulative += flow
        if cumulative >= 0:
            if flow <= 0:
                return float(year)
            return (year - 1) + (-previous / flow)
    return None


def discounted_lcoe(
    year_zero_cost: float,
    annual_costs: Sequence[float],
    annual_production_kwh: Sequence[float],
    discount_rate: float,
) -> float | None:
    """Return discounted lifetime cost divided by discounted lifetime production.

    ``annual_costs`` and ``annual_production_kwh`` start at year 1. ``None`` is
    returned when no energy is produced over the horizon.
    """

    if len(annual_costs) != len(annual_production_kwh):
        raise ValueError("annual_costs and annual_production_kwh must have the same length")

    discounted_costs = float(year_zero_cost)
    discounted_energy = 0.0
    for year, (cost, energy) in enumerate(zip(annual_costs, annual_production_kwh), start=1):
        factor = _discount_factor(discount_rate, year)
        discounted_costs += float(cost) * factor
        discounted_energy += float(energy) * factor

    if discounted_energy <= 0:
        return None
    return discounted_costs / discounted_energy


def finite_or_none(value: float | None) -> float | None:
    """Map NaN/inf to ``None`` so results serialize cleanly."""

    if value is None:
        return None
    number = float(value)
    return number if math.isfinite(number) else None


__all__ = [
    "_discount_factor",
    "_ensure_non_negative_finite",
    "_ensure_fraction",
    "_validate_positive_values",
    "compute_npv",
    "solve_irr",
    "simple_payback_years",
    "discounted_lcoe",
    "finite_or_none",
]
