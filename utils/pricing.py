"""Tiered installed-cost pricing for rooftop PV.

The core only needs a ``capacity_kw -> $/W`` callable. This module provides the
default tier table plus the site-visit adjustments (racking method, building
height and roof age) applied on top of it.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from typing import Callable, Dict, Tuple

PricingAdapter = Callable[[float], float]

# (minimum kW, $/W, label), largest systems first.
PRICING_TIERS: Tuple[Tuple[float, float, str], ...] = (
    (3000.0, 1.70, "Tier 1 (3 MW+)"),
    (1000.0, 1.85, "Tier 2 (1-3 MW)"),
    (500.0, 2.00, "Tier 3 (500 kW-1 MW)"),
    (100.0, 2.15, "Tier 4 (100-500 kW)"),
)
SMALL_SYSTEM_COST_PER_W = 2.30
SMALL_SYSTEM_LABEL = "Tier 5 (<100 kW)"

RACKING_COST_PER_KW: Dict[str, float] = {
    "ballast": 150.0,
    "anchored": 200.0,
    "ground_mount": 250.0,
    "carport": 400.0,
}


@dataclass(frozen=True)
class SiteVisitModifiers:
    """Adjustments collected during the site visit.

    ``racking_method`` adds a $/kW adder, while ``building_height_m`` and
    ``roof_age_years`` scale the tier price. ``None`` leaves the price as is.
    """

    racking_method: str | None = None
    building_height_m: float | None = None
    roof_age_years: float | None = None

    def __post_init__(self) -> None:
        if self.racking_method is not None and self.racking_method not in RACKING_COST_PER_KW:
            known = ", ".join(sorted(RACKING_COST_PER_KW))
            raise ValueError(f"racking_method must be one of {known}")
        for name in ("building_height_m", "roof_age_years"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} must be non-negative")


def _height_multiplier(height_m: float | None) -> float:
    if height_m is None or height_m <= 10:
        return 1.0
    if height_m <= 20:
        return 1.05
    if height_m <= 30:
        return 1.10
    return 1.15


def _roof_age_multiplier(age_years: float | None) -> float:
    if age_years is None or age_years <= 10:
        return 1.0
    if age_years <= 15:
        return 1.02
    if age_years <= 20:
        return 1.05
    return 1.08


def _tier_for(capacity_kw: float) -> Tuple[float, str]:
    for threshold, price, label in PRICING_TIERS:
        if capacity_kw >= threshold:
            return price, label
    return SMALL_SYSTEM_COST_PER_W, SMALL_SYSTEM_LABEL


def cost_per_watt(capacity_kw: float, modifiers: SiteVisitModifiers | None = None) -> float:
    """Return the installed PV cost in $/W for a system of ``capacity_kw``."""

    base_price, _ = _tier_for(float(capacity_kw))
    if modifiers is None:
        return base_price

    price = base_price * _height_multiplier(modifiers.building_height_m)
    price *= _roof_age_multiplier(modifiers.roof_age_years)
    if modifiers.racking_method is not None:
        price += RACKING_COST_PER_KW[modifiers.racking_method] / 1000.0
    return price


def pricing_tier_label(capacity_kw: float) -> str:
    _, label = _tier_for(float(capacity_kw))
    return label


def make_pricing_adapter(modifiers: SiteVisitModifiers | None = None) -> PricingAdapter:
    """Bind site-visit modifiers into a single-argument, picklable pricing callable."""

    return partial(cost_per_watt, modifiers=modifiers)


__all__ = [
    "PricingAdapter",
    "PRICING_TIERS",
    "RACKING_COST_PER_KW",
    "SiteVisitModifiers",
    "cost_per_watt",
    "pricing_tier_label",
    "make_pricing_adapter",
]
