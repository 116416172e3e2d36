"""
Property-based tests for the variance engine and estimators.

These check invariants that must hold for any sample:

- variances are non-negative and intervals bracket the estimate
- the jackknife reproduces the linearization variance of a total
- group totals add up to the overall total
- a ratio or mean of catch rates lies within the observed rates
- the delta-method harvest variance is non-negative for any correlation
"""

import polars as pl
import pytest
from hypothesis import given
from hypothesis import strategies as st

from pycreel import (
    Estimate,
    EstimationConfig,
    build_design,
    combine_product,
    compute_grouped,
    compute_statistic,
    estimate_cpue,
)

values = st.floats(min_value=0.0, max_value=100.0, allow_nan=False, allow_infinity=False)
weights = st.floats(min_value=1.0, max_value=100.0, allow_nan=False, allow_infinity=False)
hours = st.floats(min_value=0.1, max_value=12.0, allow_nan=False, allow_infinity=False)


@st.composite
def stratified_samples(draw, min_per_stratum=2):
    """Two or three strata, each with at least ``min_per_stratum`` rows."""
    n_strata = draw(st.integers(min_value=2, max_value=3))
    rows = {"stratum": [], "y": [], "w": []}
    for h in range(n_strata):
        n_h = draw(st.integers(min_value=min_per_stratum, max_value=8))
        stratum_weight = draw(weights)
        rows["stratum"] += [f"s{h}"] * n_h
        rows["y"] += draw(st.lists(values, min_size=n_h, max_size=n_h))
        rows["w"] += [stratum_weight] * n_h
    return pl.DataFrame(rows)


@st.composite
def interview_samples(draw, min_size=3, max_size=20):
    n = draw(st.integers(min_value=min_size, max_value=max_size))
    return pl.DataFrame(
        {
            "site": draw(st.lists(st.sampled_from(["A", "B"]), min_size=n, max_size=n)),
            "catch_total": draw(st.lists(values, min_size=n, max_size=n)),
            "hours_fished": draw(st.lists(hours, min_size=n, max_size=n)),
            "w": draw(st.lists(weights, min_size=n, max_size=n)),
        }
    )


class TestVarianceProperties:
    @given(data=stratified_samples())
    def test_interval_brackets_estimate(self, data):
        design = build_design(data, strata_vars="stratum", weights="w")
        result = compute_statistic(design, "y")
        est = Estimate.build(result.estimate, result.variance, result.info.n, "total", 0.95)
        assert result.variance >= 0
        assert est.ci_low <= est.estimate <= est.ci_high

    @given(data=stratified_samples())
    def test_jackknife_matches_linearization(self, data):
        design = build_design(data, strata_vars="stratum", weights="w")
        linear = compute_statistic(design, "y").variance
        jackknife = compute_statistic(design, "y", method="jackknife").variance
        assert jackknife == pytest.approx(linear, rel=1e-6, abs=1e-6)

    @given(data=stratified_samples())
    def test_lonely_policies_agree_without_lonely_strata(self, data):
        design = build_design(data, strata_vars="stratum", weights="w")
        results = [
            compute_statistic(
                design, "y", config=EstimationConfig(lonely_psu=policy)
            ).variance
            for policy in ("na", "remove", "adjust")
        ]
        assert results[1] == pytest.approx(results[0])
        assert results[2] == pytest.approx(results[0])

    @given(data=interview_samples())
    def test_group_totals_add_up(self, data):
        design = build_design(data, weights="w")
        config = EstimationConfig(small_group_threshold=1)
        overall = compute_statistic(design, "catch_total", config=config)
        grouped = compute_grouped(design, "catch_total", by=["site"], config=config)
        total = sum(result.estimate for _, result in grouped)
        assert total == pytest.approx(overall.estimate, rel=1e-9, abs=1e-9)


class TestCpueProperties:
    @given(data=interview_samples())
    def test_ratio_of_means_within_observed_rates(self, data):
        design = build_design(data, weights="w")
        rates = data["catch_total"] / data["hours_fished"]
        est = estimate_cpue(design).single()
        assert rates.min() - 1e-9 <= est.estimate <= rates.max() + 1e-9
        assert est.se >= 0

    @given(data=interview_samples())
    def test_mean_of_ratios_within_observed_rates(self, data):
        design = build_design(data, weights="w")
        rates = data["catch_total"] / data["hours_fished"]
        est = estimate_cpue(design, "mean_of_ratios").single()
        assert rates.min() - 1e-9 <= est.estimate <= rates.max() + 1e-9


class TestHarvestProperties:
    @given(
        effort=st.floats(min_value=0.0, max_value=1e6),
        effort_se=st.floats(min_value=0.0, max_value=1e5),
        cpue=st.floats(min_value=0.0, max_value=20.0),
        cpue_se=st.floats(min_value=0.0, max_value=5.0),
        rho=st.floats(min_value=-1.0, max_value=1.0),
    )
    def test_variance_non_negative(self, effort, effort_se, cpue, cpue_se, rho):
        e = Estimate.build(effort, effort_se**2, 10, "test", 0.95)
        c = Estimate.build(cpue, cpue_se**2, 10, "test", 0.95)
        harvest = combine_product(e, c, correlation=rho)
        assert harvest.estimate == pytest.approx(effort * cpue)
        scale = max(1.0, (effort * cpue_se) ** 2, (cpue * effort_se) ** 2)
        assert harvest.diagnostics.var_total >= -1e-9 * scale
        assert harvest.se >= 0
