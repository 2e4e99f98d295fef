"""Data-quality flag metadata and insight helpers."""

from __future__ import annotations

from typing import Dict, List

FLAG_DEFINITIONS: Dict[str, Dict[str, str]] = {
    "interpolated_months": {
        "label": "Interpolated months",
        "meaning": "Months with no meter data were synthesized from neighbouring months.",
        "knobs": "Upload a full year of readings or provide monthly bill totals.",
        "insight": (
            "Savings in synthesized months follow the neighbouring months' shape; confirm"
            " seasonal loads (heating, process shutdowns) before relying on the result."
        ),
    },
    "insufficient_data": {
        "label": "Insufficient data",
        "meaning": "Fewer days of real readings than the minimum needed for a reliable profile.",
        "knobs": "Collect more meter history or fall back to a synthetic profile.",
        "insight": (
            "The hourly profile rests on a short sample; treat sizing and savings as indicative"
            " until a longer history is available."
        ),
    },
    "clamped_negative_readings": {
        "label": "Negative readings clamped",
        "meaning": "Negative kWh or kW values were set to zero.",
        "knobs": "Check the meter export for net-metered or reversed channels.",
        "insight": (
            "Negative values usually indicate an existing generator on the meter; the profile"
            " may understate gross consumption."
        ),
    },
    "clipping_loss": {
        "label": "Inverter clipping",
        "meaning": "DC output above the inverter rating was lost.",
        "knobs": "Lower the inverter load ratio or accept the clipped energy.",
        "insight": (
            "Clipping is expected with a high DC/AC ratio; losses above a few percent suggest"
            " adding inverter capacity."
        ),
    },
    "roof_limited": {
        "label": "Roof limited",
        "meaning": "Requested PV capacity was reduced to fit the usable roof area.",
        "knobs": "Add roof sections, carports or ground mount to increase capacity.",
        "insight": (
            "The roof, not the load, caps the system; additional mounting area would raise"
            " self-sufficiency."
        ),
    },
}


SHORT_AND_INCOMPLETE_NOTE = (
    "Data is both short and incomplete; a synthetic profile may be a better baseline"
    " until more readings are collected."
)
CLEAN_DATA_NOTE = "No data-quality flags were raised for this analysis."


def build_flag_insights(flag_totals: Dict[str, int]) -> List[str]:
    """Turn raised flags into insight lines, in the order of ``FLAG_DEFINITIONS``.

    Unknown keys and zero counts are ignored. A clean analysis still gets one
    line so callers never render an empty list.
    """

    raised = {key: count for key, count in flag_totals.items() if count > 0 and key in FLAG_DEFINITIONS}
    lines = [
        f"{meta['label']} ({raised[key]:,}). {meta['insight']}"
        for key, meta in FLAG_DEFINITIONS.items()
        if key in raised
    ]
    if {"insufficient_data", "interpolated_months"} <= raised.keys():
        lines.append(SHORT_AND_INCOMPLETE_NOTE)
    return lines or [CLEAN_DATA_NOTE]


__all__ = ["FLAG_DEFINITIONS", "build_flag_insights"]
