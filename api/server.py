from __future__ import annotations

from dataclasses import replace
import os
from threading import Lock
from typing import Any, Dict, List, Literal, Optional, Tuple

import pandas as pd
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, field_validator, model_validator

from services.analysis_common import AnalysisAssumptions, AnalysisError, AnalysisFailure
from services.analysis_frontier import SweepSettings
from services.analysis_monte_carlo import (
    MonteCarloConfig,
    MonteCarloRanges,
    SimplifiedScenarioRunner,
    SiteScenarioParams,
    run_monte_carlo,
)
from services.profile_builder import GRANULARITIES, build_hourly_profile, profile_summary
from services.simulation_core import SystemConfiguration
from services.site_analysis import SiteAnalysisResult, run_site_analysis, run_site_monte_carlo
from services.synthetic_profile import (
    ARCHETYPES,
    estimate_annual_consumption,
    generate_synthetic_readings,
)
from utils.flags import build_flag_insights
from utils.pricing import PricingAdapter, SiteVisitModifiers, make_pricing_adapter

DEFAULT_MAX_MONTE_CARLO_ITERATIONS = 5000
DEFAULT_MAX_FRONTIER_POINTS = 2000


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc


class MeterReadingPayload(BaseModel):
    timestamp: str
    kwh: Optional[float] = None
    kw: Optional[float] = None
    granularity: str = "hour"

    @field_validator("granularity")
    @classmethod
    def _validate_granularity(cls, value: str) -> str:
        if value not in GRANULARITIES:
            raise ValueError(f"granularity must be one of {GRANULARITIES}")
        return value


class SyntheticProfilePayload(BaseModel):
    """Archetype-based readings for sites without meter data."""

    building_type: str = "office"
    annual_consumption_kwh: Optional[float] = Field(default=None, gt=0)
    monthly_bill: Optional[float] = Field(default=None, ge=0)
    tariff_code: Optional[str] = None
    building_sq_ft: Optional[float] = Field(default=None, ge=0)
    operating_schedule: str = "standard"

    @field_validator("building_type")
    @classmethod
    def _validate_building_type(cls, value: str) -> str:
        if value not in ARCHETYPES:
            raise ValueError(f"building_type must be one of {sorted(ARCHETYPES)}")
        return value

    def build(self) -> pd.DataFrame:
        annual = self.annual_consumption_kwh or estimate_annual_consumption(
            self.building_type,
            monthly_bill=self.monthly_bill,
            tariff_code=self.tariff_code,
            building_sq_ft=self.building_sq_ft,
        )
        return generate_synthetic_readings(self.building_type, annual, self.operating_schedule).readings


class DataSource(BaseModel):
    readings: Optional[List[MeterReadingPayload]] = None
    synthetic: Optional[SyntheticProfilePayload] = None

    @model_validator(mode="after")
    def _exactly_one_source(self) -> "DataSource":
        if bool(self.readings) == (self.synthetic is not None):
            raise ValueError("Provide either meter readings or a synthetic profile request, not both.")
        return self

    def build(self) -> Tuple[pd.DataFrame, List[str]]:
        if self.synthetic is None:
            frame = pd.DataFrame([reading.model_dump() for reading in self.readings or []])
            return frame, []
        return self.synthetic.build(), [
            f"Using a synthetic '{self.synthetic.building_type}' profile instead of meter data."
        ]


class SizingPayload(BaseModel):
    pv_kw: float = Field(ge=0)
    battery_kwh: float = Field(default=0.0, ge=0)
    battery_kw: float = Field(default=0.0, ge=0)
    demand_setpoint_kw: Optional[float] = Field(default=None, ge=0)

    def build(self) -> SystemConfiguration:
        return SystemConfiguration(
            pv_kw=self.pv_kw,
            battery_kwh=self.battery_kwh,
            battery_kw=self.battery_kw,
            demand_setpoint_kw=self.demand_setpoint_kw,
        )


class SiteVisitPayload(BaseModel):
    racking_method: Optional[str] = None
    building_height_m: Optional[float] = Field(default=None, ge=0)
    roof_age_years: Optional[float] = Field(default=None, ge=0)

    def build(self) -> PricingAdapter:
        return make_pricing_adapter(SiteVisitModifiers(**self.model_dump()))


class AnalysisOptions(BaseModel):
    """Inputs shared by the analysis endpoints."""

    data: DataSource
    assumptions: Dict[str, Any] = Field(default_factory=dict)
    site_visit: Optional[SiteVisitPayload] = None
    max_pv_from_roof_kw: Optional[float] = Field(default=None, ge=0)
    allow_insufficient_data: bool = False
    reference_year: int = 2025
    min_days: int = Field(default=30, ge=1)

    def build_assumptions(self) -> AnalysisAssumptions:
        return _build(AnalysisAssumptions.from_dict, self.assumptions)

    def build_pricing(self) -> PricingAdapter:
        if self.site_visit is None:
            return make_pricing_adapter(None)
        return _build(lambda payload: payload.build(), self.site_visit)


class ProfileRequest(BaseModel):
    data: DataSource
    reference_year: int = 2025
    min_days: int = Field(default=30, ge=1)


class AnalyzeRequest(AnalysisOptions):
    forced_sizing: Optional[SizingPayload] = None
    include_frontier: bool = True
    sweep_settings: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None


class FrontierRequest(AnalysisOptions):
    reference: Optional[SizingPayload] = None
    sweep_settings: Dict[str, Any] = Field(default_factory=dict)


class SiteParamsPayload(BaseModel):
    pv_kw: float = Field(ge=0)
    annual_consumption_kwh: float = Field(ge=0)
    peak_demand_kw: float = Field(ge=0)
    battery_kwh: float = Field(default=0.0, ge=0)
    battery_kw: float = Field(default=0.0, ge=0)

    def build(self) -> SiteScenarioParams:
        return SiteScenarioParams(**self.model_dump())


class MonteCarloRequest(BaseModel):
    """Either explicit ``site`` parameters (simplified runner, ``assumptions``
    applied) or a nested ``analysis`` whose own assumptions are used."""

    iterations: int = Field(default=500, ge=1)
    seed: Optional[int] = None
    ranges: Dict[str, Tuple[float, float]] = Field(default_factory=dict)
    assumptions: Dict[str, Any] = Field(default_factory=dict)
    site: Optional[SiteParamsPayload] = None
    analysis: Optional[AnalyzeRequest] = None
    runner: Literal["simplified", "dispatch"] = "simplified"

    @model_validator(mode="after")
    def _require_site(self) -> "MonteCarloRequest":
        if self.site is None and self.analysis is None:
            raise ValueError("Provide either 'site' parameters or an 'analysis' request.")
        if self.runner == "dispatch" and self.analysis is None:
            raise ValueError("The dispatch runner needs an 'analysis' request with meter data.")
        return self

    def build_config(self) -> MonteCarloConfig:
        limit = _env_int("SOLARLAB_MAX_MONTE_CARLO_ITERATIONS", DEFAULT_MAX_MONTE_CARLO_ITERATIONS)
        if self.iterations > limit:
            raise HTTPException(
                status_code=422,
                detail=f"iterations must not exceed {limit} (SOLARLAB_MAX_MONTE_CARLO_ITERATIONS).",
            )
        ranges = _build(MonteCarloRanges.from_dict, self.ranges)
        return MonteCarloConfig(iterations=self.iterations, ranges=ranges, seed=self.seed)


class ResultStore:
    """In-memory analysis responses keyed by idempotency key."""

    def __init__(self) -> None:
        self._results: Dict[str, Dict[str, Any]] = {}
        self._lock = Lock()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._results.get(key)

    def put(self, key: str, response: Dict[str, Any]) -> None:
        with self._lock:
            self._results[key] = response

    def clear(self) -> None:
        with self._lock:
            self._results.clear()


def _build(factory: Any, payload: Any) -> Any:
    """Call ``factory(payload)`` and turn ``ValueError`` into an HTTP 422."""

    try:
        return factory(payload)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def _failure_detail(failure: AnalysisFailure) -> Dict[str, str]:
    return failure.to_dict()


def _sweep_settings(payload: Dict[str, Any]) -> SweepSettings:
    limit = _env_int("SOLARLAB_MAX_FRONTIER_POINTS", DEFAULT_MAX_FRONTIER_POINTS)
    settings = _build(SweepSettings.from_dict, payload)
    if settings.max_points is None or settings.max_points > limit:
        settings = replace(settings, max_points=limit)
    return settings


def _run_analysis(request: AnalysisOptions, **kwargs: Any) -> Tuple[SiteAnalysisResult, List[str]]:
    readings, data_warnings = _build(lambda data: data.build(), request.data)
    result = run_site_analysis(
        readings,
        request.build_assumptions(),
        max_pv_from_roof_kw=request.max_pv_from_roof_kw,
        allow_insufficient_data=request.allow_insufficient_data,
        reference_year=request.reference_year,
        min_days=request.min_days,
        pricing=request.build_pricing(),
        **kwargs,
    )
    if result.failure is not None:
        raise HTTPException(status_code=422, detail=_failure_detail(result.failure))
    return result, data_warnings


results = ResultStore()
app = FastAPI(
    title="SolarLab API",
    description="REST API for commercial solar and storage feasibility analyses.",
    version="0.1.0",
)


_default_cors_origins = [
    # Vite dev/preview servers
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:4173",
    "http://127.0.0.1:4173",
]
_allowed_origins_env = os.getenv("SOLARLAB_CORS_ORIGINS", "")
_allowed_origins = [
    origin.strip()
    for origin in _allowed_origins_env.split(",")
    if origin.strip()
] or _default_cors_origins

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health() -> Dict[str, str]:
    """Simple liveness probe for container orchestrators."""
    return {"status": "ok"}


@app.post("/profile")
def profile(request: ProfileRequest) -> Dict[str, Any]:
    """Build the representative hourly year and report its coverage."""

    readings, warnings = _build(lambda data: data.build(), request.data)
    try:
        built = build_hourly_profile(readings, reference_year=request.reference_year, min_days=request.min_days)
    except AnalysisError as exc:
        raise HTTPException(status_code=422, detail=_failure_detail(AnalysisFailure.from_error(exc))) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {
        "warnings": warnings,
        "profile": profile_summary(built),
        "insights": build_flag_insights(built.coverage.flag_totals()),
    }


@app.post("/analyze")
def analyze(request: AnalyzeRequest) -> Dict[str, Any]:
    """Size, simulate and price a site; repeated idempotency keys return the stored response."""

    if request.idempotency_key:
        stored = results.get(request.idempotency_key)
        if stored is not None:
            return stored

    forced = _build(lambda sizing: sizing.build(), request.forced_sizing) if request.forced_sizing else None
    result, warnings = _run_analysis(
        request,
        forced_sizing=forced,
        include_frontier=request.include_frontier,
        sweep_settings=_sweep_settings(request.sweep_settings),
        idempotency_key=request.idempotency_key,
    )
    response = {"warnings": warnings, **result.to_dict()}
    if request.idempotency_key:
        results.put(request.idempotency_key, response)
    return response


@app.post("/frontier")
def frontier(request: FrontierRequest) -> Dict[str, Any]:
    """Run the sizing sweep around the reference (or default-sized) system."""

    reference = _build(lambda sizing: sizing.build(), request.reference) if request.reference else None
    result, warnings = _run_analysis(
        request,
        forced_sizing=reference,
        include_frontier=True,
        sweep_settings=_sweep_settings(request.sweep_settings),
    )
    payload = result.to_dict()
    return {
        "warnings": warnings + result.warnings,
        "reference": payload["sizing"],
        "frontier": payload["frontier"],
    }


@app.post("/monte-carlo")
def monte_carlo(request: MonteCarloRequest) -> Dict[str, Any]:
    """Run the Monte Carlo engine for explicit site parameters or a full analysis."""

    config = request.build_config()
    warnings: List[str] = []
    try:
        if request.analysis is not None:
            analysis_request = request.analysis.model_copy(update={"include_frontier": False})
            forced = (
                _build(lambda sizing: sizing.build(), analysis_request.forced_sizing)
                if analysis_request.forced_sizing
                else None
            )
            analysis, warnings = _run_analysis(analysis_request, forced_sizing=forced, include_frontier=False)
            outcome = run_site_monte_carlo(
                analysis,
                config,
                full_dispatch=request.runner == "dispatch",
                pricing=analysis_request.build_pricing(),
            )
        else:
            site = request.site.build() if request.site else None
            assumptions = _build(AnalysisAssumptions.from_dict, request.assumptions)
            outcome = run_monte_carlo(assumptions, SimplifiedScenarioRunner(site), config)
    except AnalysisError as exc:
        raise HTTPException(status_code=422, detail=_failure_detail(AnalysisFailure.from_error(exc))) from exc
    return {"warnings": warnings, **outcome.to_dict()}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.server:app", host="0.0.0.0", port=8000, reload=False)
