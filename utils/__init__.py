"""Utility helpers shared across the analysis services and API."""

from utils.flags import FLAG_DEFINITIONS, build_flag_insights
from utils.pricing import cost_per_watt, pricing_tier_label
from utils.tariffs import get_tariff

__all__ = [
    "FLAG_DEFINITIONS",
    "build_flag_insights",
    "cost_per_watt",
    "pricing_tier_label",
    "get_tariff",
]
