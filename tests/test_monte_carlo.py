from __future__ import annotations

import math
import threading

import numpy as np
import pandas as pd
import pytest

from services.analysis_common import AnalysisAssumptions, AnalysisCancelled, MonteCarloError
from services.analysis_monte_carlo import (
    MonteCarloConfig,
    MonteCarloRanges,
    SimplifiedScenarioRunner,
    SiteScenarioParams,
    assumptions_for_sample,
    run_monte_carlo,
    sample_inputs,
    summarize_distribution,
)

SITE = SiteScenarioParams(pv_kw=300.0, annual_consumption_kwh=600_000.0, peak_demand_kw=180.0)


class _EveryNthFails:
    """Wraps a runner and raises on every ``n``-th call."""

    def __init__(self, runner, n: int) -> None:
        self.runner = runner
        self.n = n
        self.calls = 0

    def __call__(self, assumptions):
        self.calls += 1
        if self.calls % self.n == 0:
            raise RuntimeError(f"injected failure on call {self.calls}")
        return self.runner(assumptions)


def test_samples_respect_ranges_and_mapping() -> None:
    config = MonteCarloConfig(iterations=200, seed=42)
    samples = sample_inputs(config)
    ranges = config.ranges

    assert len(samples) == 200
    for name in ("tariff_escalation", "discount_rate", "bifacial_boost", "om_per_kwc", "solar_cost_per_w"):
        low, high = getattr(ranges, name)
        assert samples[name].between(low, high).all()
    assert (samples["solar_yield"] == samples["solar_yield"].round()).all()
    expected = (samples["solar_yield"] * (1 + samples["bifacial_boost"])).round()
    assert (samples["effective_yield"] == expected).all()

    row = samples.iloc[0].to_dict()
    mapped = assumptions_for_sample(AnalysisAssumptions(bifacial_enabled=True), row)
    assert mapped.inflation_rate == pytest.approx(row["tariff_escalation"])
    assert mapped.solar_yield_kwh_per_kwp == pytest.approx(row["effective_yield"])
    assert mapped.om_solar_percent == pytest.approx(row["om_per_kwc"] / (row["solar_cost_per_w"] * 1000))
    assert mapped.bifacial_enabled is False
    assert mapped.yield_source == "manual"


def test_simplified_runner_energy_model() -> None:
    runner = SimplifiedScenarioRunner(SITE)
    assumptions = AnalysisAssumptions(solar_yield_kwh_per_kwp=1200.0, yield_source="manual")
    energy = runner.energy_summary(assumptions)

    production = 300.0 * 1200.0
    ratio = min(0.95, 600_000.0 / (production * 1.1))
    assert energy.production_kwh == pytest.approx(production)
    assert energy.self_consumption_kwh == pytest.approx(production * ratio)
    assert energy.export_kwh == pytest.approx(production * (1 - ratio))
    reduction = min(300.0 * 0.15, 180.0 * 0.10)
    assert energy.monthly_peaks_after_kw == pytest.approx((180.0 - reduction,) * 12)


def test_simplified_runner_credits_the_battery() -> None:
    hybrid_site = SiteScenarioParams(
        pv_kw=300.0, annual_consumption_kwh=600_000.0, peak_demand_kw=180.0, battery_kwh=108.0, battery_kw=54.0
    )
    assumptions = AnalysisAssumptions()
    pv_only = SimplifiedScenarioRunner(SITE)
    hybrid = SimplifiedScenarioRunner(hybrid_site)

    pv_energy = pv_only.energy_summary(assumptions)
    hybrid_energy = hybrid.energy_summary(assumptions)
    assert hybrid_energy.self_consumption_kwh > pv_energy.self_consumption_kwh
    assert hybrid_energy.export_kwh < pv_energy.export_kwh
    assert hybrid_energy.self_consumption_kwh <= hybrid_energy.production_kwh + 1e-6
    # PV trims 18 kW and the battery shaves down to 90 % of the 180 kW peak.
    assert hybrid_energy.monthly_peaks_after_kw == pytest.approx((180.0 - 18.0 - 18.0,) * 12)

    pv_breakdown = pv_only(assumptions)
    hybrid_breakdown = hybrid(assumptions)
    assert hybrid_breakdown.capex_gross > pv_breakdown.capex_gross
    assert hybrid_breakdown.year_one.total > pv_breakdown.year_one.total
    assert hybrid_breakdown.year_one.demand > pv_breakdown.year_one.demand


def test_injected_failures_are_discarded_and_logged(caplog: pytest.LogCaptureFixture) -> None:
    runner = _EveryNthFails(SimplifiedScenarioRunner(SITE), 100)
    with caplog.at_level("WARNING"):
        result = run_monte_carlo(AnalysisAssumptions(), runner, MonteCarloConfig(iterations=500, seed=7))

    assert result.iterations_nominal == 500
    assert result.iterations_used == 495
    assert len(result.discarded) == 5
    assert all("injected failure" in item["error"] for item in result.discarded)
    assert "discarded" in caplog.text
    assert len(result.samples) == 495


def test_seeded_runs_are_reproducible() -> None:
    config = MonteCarloConfig(iterations=120, seed=2024, batch_size=25)
    first = run_monte_carlo(AnalysisAssumptions(), SimplifiedScenarioRunner(SITE), config)
    second = run_monte_carlo(AnalysisAssumptions(), SimplifiedScenarioRunner(SITE), config)

    pd.testing.assert_frame_equal(first.samples, second.samples)
    assert first.summaries == second.summaries
    assert first.probability_npv_positive == second.probability_npv_positive


def test_thread_pool_matches_sequential() -> None:
    sequential = run_monte_carlo(
        AnalysisAssumptions(), SimplifiedScenarioRunner(SITE), MonteCarloConfig(iterations=60, seed=9)
    )
    threaded = run_monte_carlo(
        AnalysisAssumptions(),
        SimplifiedScenarioRunner(SITE),
        MonteCarloConfig(iterations=60, seed=9, batch_size=20, concurrency="thread", max_workers=3),
    )
    pd.testing.assert_frame_equal(sequential.samples, threaded.samples)


def test_summaries_and_probability() -> None:
    result = run_monte_carlo(
        AnalysisAssumptions(), SimplifiedScenarioRunner(SITE), MonteCarloConfig(iterations=200, seed=1)
    )
    npv = result.summaries["npv_25"]

    assert npv["p10"] <= npv["p50"] <= npv["p90"]
    expected_probability = float((result.samples["npv_25"] > 0).mean())
    assert result.probability_npv_positive == pytest.approx(expected_probability)
    assert (result.samples["payback_years"] <= 25).all()
    payload = result.to_dict()
    assert payload["iterations_used"] == 200
    assert payload["ranges"]["discount_rate"] == [0.06, 0.08]
    assert payload["distribution"]["npv_25"] == sorted(payload["distribution"]["npv_25"])


def test_percentiles_use_floor_index() -> None:
    values = pd.Series(np.arange(10, dtype=float))
    summary = summarize_distribution(values)

    assert summary["p10"] == 1.0
    assert summary["p50"] == 5.0
    assert summary["p90"] == 9.0
    assert summary["mean"] == pytest.approx(4.5)
    assert summarize_distribution(pd.Series([math.nan]))["p50"] is None


def test_all_failures_raise() -> None:
    def broken(assumptions):
        raise RuntimeError("boom")

    with pytest.raises(MonteCarloError) as excinfo:
        run_monte_carlo(AnalysisAssumptions(), broken, MonteCarloConfig(iterations=20, seed=3))
    assert excinfo.value.kind == "all_iterations_failed"


def test_cancellation_between_batches() -> None:
    cancel = threading.Event()
    runner = SimplifiedScenarioRunner(SITE)

    def cancelling_runner(assumptions):
        cancel.set()
        return runner(assumptions)

    with pytest.raises(AnalysisCancelled):
        run_monte_carlo(
            AnalysisAssumptions(),
            cancelling_runner,
            MonteCarloConfig(iterations=50, seed=4, batch_size=10),
            cancel_event=cancel,
        )


def test_invalid_ranges_rejected() -> None:
    with pytest.raises(ValueError, match="discount_rate"):
        MonteCarloRanges(discount_rate=(0.08, 0.06))
    with pytest.raises(ValueError, match="Unknown Monte Carlo range"):
        MonteCarloRanges.from_dict({"interest": (0.0, 1.0)})
    with pytest.raises(ValueError):
        MonteCarloConfig(iterations=0)
