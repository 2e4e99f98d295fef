"""Hydro-Québec rate lookup shared by dispatch setup, financial model and sweeps.

Rates are the simplified first-tier energy price ($/kWh) and the monthly power
premium ($/kW). Every stage resolves tariffs through :func:`get_tariff` so a
single table drives savings, bills and Monte Carlo runs.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict


@dataclass(frozen=True)
class TariffRates:
    code: str
    label: str
    energy_rate: float
    demand_rate: float


TARIFF_TABLE: Dict[str, TariffRates] = {
    "G": TariffRates("G", "Rate G (Small Power)", energy_rate=0.11933, demand_rate=21.261),
    "M": TariffRates("M", "Rate M (Medium Power)", energy_rate=0.06061, demand_rate=17.573),
    "L": TariffRates("L", "Rate L (Large Power)", energy_rate=0.03681, demand_rate=14.476),
    "G9": TariffRates("G9", "Rate G9", energy_rate=0.12148, demand_rate=5.098),
    "GD": TariffRates("GD", "Rate GD", energy_rate=0.0753, demand_rate=6.39),
}

DEFAULT_TARIFF_CODE = "M"


def get_tariff(code: str | None = None) -> TariffRates:
    """Return the rates for ``code`` (case-insensitive); ``None`` means the default rate."""

    key = DEFAULT_TARIFF_CODE if code is None else str(code).strip().upper()
    try:
        return TARIFF_TABLE[key]
    except KeyError as exc:
        known = ", ".join(sorted(TARIFF_TABLE))
        raise ValueError(f"Unknown tariff code {code!r}; expected one of {known}") from exc


def suggest_tariff_code(peak_demand_kw: float) -> str:
    """Return the rate class a site of this peak demand is normally billed under."""

    if peak_demand_kw < 65:
        return "G"
    if peak_demand_kw < 5000:
        return "M"
    return "L"


__all__ = ["TariffRates", "TARIFF_TABLE", "DEFAULT_TARIFF_CODE", "get_tariff", "suggest_tariff_code"]
