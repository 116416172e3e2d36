"""
Tests for variance formula verification.

This is a CRITICAL test module for statistical validity. Every creel
estimator reduces to a design-weighted total, mean or ratio, so the
formulas here carry all of pycreel.

Reference: Cochran, W. G. 1977. Sampling Techniques, 3rd ed. Wiley.

The tests verify:
1. Stratified total variance: V(Y) = sum_h (1 - f_h) * n_h * s2_yh
2. Single stratum variance with known hand-calculated values
3. Multi-stratum variance aggregation
4. Ratio and mean variance by linearization
5. Lonely PSU handling
6. Confidence intervals and CV
"""

import math

import numpy as np
import polars as pl
import pytest

from pycreel import (
    EstimationConfig,
    LonelyPSUWarning,
    build_design,
    compute_statistic,
)
from pycreel.estimation.variance import (
    calculate_confidence_interval,
    calculate_cv,
    calculate_ratio_variance,
    calculate_total_variance,
    psu_totals,
    replicate_variance,
    safe_float_sqrt,
)


def _psu_frame(values, strata=None, fpc=None):
    n = len(values)
    return pl.DataFrame(
        {
            "_psu": [str(i) for i in range(n)],
            "_stratum": strata or ["all"] * n,
            "_fpc": pl.Series(fpc or [None] * n, dtype=pl.Float64),
            "y": values,
        }
    )


# =============================================================================
# TestStratifiedVarianceFormula
# =============================================================================


class TestStratifiedVarianceFormula:
    """
    Verify V(Y) = sum_h (1 - f_h) * n_h * s2_yh on weighted PSU totals.
    """

    def test_single_stratum_formula_exact(self, single_stratum_design):
        """
        4 observations y = [0.8, 1.0, 0.6, 0.9], weight 1000.

        Hand calculation:
        - t = [800, 1000, 600, 900], mean 825
        - squared deviations: [625, 30625, 50625, 5625], sum 87,500
        - s2 = 87,500 / 3 = 29,166.67
        - V = 4 * 29,166.67 = 116,666.67
        - SE = 341.565
        """
        result = compute_statistic(single_stratum_design, "y", "total")

        assert result.estimate == pytest.approx(3300.0)
        assert result.variance == pytest.approx(116666.66666666667)
        assert result.se == pytest.approx(341.5650255)

    def test_two_strata_sum_correctly(self, two_stratum_design):
        """V = 120,000 (weekday) + 360,000 (weekend) = 480,000."""
        result = compute_statistic(two_stratum_design, "y", "total")

        assert result.estimate == pytest.approx(4500.0)
        assert result.variance == pytest.approx(480000.0)
        assert result.info.strata_variance == pytest.approx(
            {"weekday": 120000.0, "weekend": 360000.0}
        )
        assert result.info.n_strata == 2
        assert result.info.n_psu == 5

    def test_formula_scaling_with_weight(self, single_stratum_data):
        """Doubling the weights quadruples the variance."""
        doubled = single_stratum_data.with_columns(pl.col("weight") * 2)
        base = compute_statistic(build_design(single_stratum_data, weights="weight"), "y")
        scaled = compute_statistic(build_design(doubled, weights="weight"), "y")

        assert scaled.variance == pytest.approx(4 * base.variance)

    def test_homogeneous_values_zero_variance(self):
        data = pl.DataFrame({"y": [0.5, 0.5, 0.5, 0.5], "w": [100.0] * 4})
        result = compute_statistic(build_design(data, weights="w"), "y")

        assert result.variance == pytest.approx(0.0)
        assert result.se == pytest.approx(0.0)

    def test_finite_population_correction(self, single_stratum_data):
        """With N = 8 PSUs and n = 4 sampled, f = 0.5 halves the variance."""
        data = single_stratum_data.with_columns(pl.lit(8).alias("N"))
        design = build_design(data, weights="weight", fpc="N")
        result = compute_statistic(design, "y")

        assert result.variance == pytest.approx(0.5 * 116666.66666666667)

    def test_census_stratum_has_zero_variance(self, single_stratum_data):
        data = single_stratum_data.with_columns(pl.lit(4).alias("N"))
        result = compute_statistic(build_design(data, weights="weight", fpc="N"), "y")

        assert result.variance == pytest.approx(0.0)

    def test_clustered_observations_are_summed_to_psu(self):
        """
        Two PSUs of two observations each, weight 1.

        PSU totals are [3, 7]: s2 = 8, V = 2 * 8 = 16.
        """
        data = pl.DataFrame(
            {"day": ["a", "a", "b", "b"], "y": [1.0, 2.0, 3.0, 4.0], "w": [1.0] * 4}
        )
        design = build_design(data, weights="w", cluster_var="day")
        result = compute_statistic(design, "y")

        assert result.estimate == pytest.approx(10.0)
        assert result.variance == pytest.approx(16.0)


# =============================================================================
# TestRatioVariance
# =============================================================================


class TestRatioVariance:
    """
    Verify V(R) = (1/X^2) * sum_h n_h * (s2_y - 2R cov_yx + R^2 s2_x).
    """

    def test_exact_ratio_has_zero_variance(self):
        """catch {2, 4, 6} / hours {1, 2, 3}: every residual y - 2x is 0."""
        data = pl.DataFrame(
            {"c": [2.0, 4.0, 6.0], "h": [1.0, 2.0, 3.0], "w": [1.0, 1.0, 1.0]}
        )
        result = compute_statistic(build_design(data, weights="w"), "c", "ratio", "h")

        assert result.estimate == pytest.approx(2.0)
        assert result.variance == pytest.approx(0.0, abs=1e-12)

    def test_ratio_hand_calculation(self):
        """
        y = [1, 0, 3], x = [1, 2, 1], w = 1.

        - Y = 4, X = 4, R = 1
        - s2_y = 7/3, s2_x = 1/3, cov = -2/3
        - s2_y - 2R cov + R^2 s2_x = 7/3 + 4/3 + 1/3 = 4
        - V = 3 * 4 / 16 = 0.75
        """
        psu = _psu_frame([1.0, 0.0, 3.0]).with_columns(
            pl.Series("x", [1.0, 2.0, 1.0])
        )
        result = calculate_ratio_variance(psu, "y", "x")

        assert result["ratio"] == pytest.approx(1.0)
        assert result["variance"] == pytest.approx(0.75)
        assert result["zero_denominator"] is False

    def test_zero_denominator_reports_zero_with_nan_variance(self):
        psu = _psu_frame([1.0, 2.0]).with_columns(pl.Series("x", [0.0, 0.0]))
        result = calculate_ratio_variance(psu, "y", "x")

        assert result["ratio"] == 0.0
        assert math.isnan(result["variance"])
        assert result["zero_denominator"] is True

    def test_mean_is_ratio_to_weights(self, single_stratum_design):
        """
        Mean 0.825 with V = 116,666.67 / 4000^2 = 0.0072917.
        """
        result = compute_statistic(single_stratum_design, "y", "mean")

        assert result.estimate == pytest.approx(0.825)
        assert result.variance == pytest.approx(116666.66666666667 / 4000.0**2)


# =============================================================================
# TestSinglePsuPerStratum
# =============================================================================


class TestSinglePsuPerStratum:
    """
    A stratum with one PSU has no within-stratum variance estimate.

    Third stratum "holiday" adds one PSU with t = 500 to the two-stratum
    data. The grand mean of the six PSU totals is 5000 / 6.
    """

    @pytest.fixture
    def lonely_design(self, two_stratum_data):
        data = pl.concat(
            [
                two_stratum_data,
                pl.DataFrame({"day_type": ["holiday"], "y": [1.0], "weight": [500.0]}),
            ]
        )
        return build_design(data, strata_vars="day_type", weights="weight")

    def test_na_policy_gives_nan_and_warns(self, lonely_design):
        with pytest.warns(LonelyPSUWarning, match="holiday"):
            result = compute_statistic(lonely_design, "y")

        assert result.estimate == pytest.approx(5000.0)
        assert math.isnan(result.variance)
        assert math.isnan(result.se)
        assert result.info.lonely_strata == ["holiday"]

    def test_remove_policy_drops_stratum(self, lonely_design):
        config = EstimationConfig(lonely_psu="remove")
        result = compute_statistic(lonely_design, "y", config=config)

        assert result.variance == pytest.approx(480000.0)
        assert result.info.lonely_strata == ["holiday"]

    def test_adjust_policy_centres_at_grand_mean(self, lonely_design):
        """Adjust adds (500 - 833.33)^2 = 111,111.11."""
        config = EstimationConfig(lonely_psu="adjust")
        result = compute_statistic(lonely_design, "y", config=config)

        assert result.variance == pytest.approx(480000.0 + (500.0 - 5000.0 / 6) ** 2)

    def test_certainty_stratum_is_not_lonely(self):
        """A single PSU in a fully enumerated stratum contributes zero."""
        psu = _psu_frame([5.0, 1.0, 3.0], strata=["a", "b", "b"], fpc=[1.0, 10.0, 10.0])
        result = calculate_total_variance(psu, "y")

        assert result["lonely_strata"] == []
        assert result["variance"] == pytest.approx(0.8 * 2 * 2.0)


# =============================================================================
# TestVarianceNonNegativity
# =============================================================================


class TestVarianceNonNegativity:
    """
    Property test: Variance should always be >= 0.

    Uses pytest parametrize to test various random inputs.
    """

    @pytest.mark.parametrize("seed", range(10))
    def test_variance_non_negative_random_data(self, seed):
        rng = np.random.default_rng(seed)
        n = int(rng.integers(2, 20))
        data = pl.DataFrame(
            {
                "y": rng.uniform(0, 1, n),
                "x": rng.uniform(0.5, 4, n),
                "w": rng.uniform(500, 2000, n),
            }
        )
        design = build_design(data, weights="w")

        assert compute_statistic(design, "y", "total").variance >= 0
        assert compute_statistic(design, "y", "mean").variance >= 0
        assert compute_statistic(design, "y", "ratio", "x").variance >= 0

    def test_variance_non_negative_extreme_values(self):
        test_cases = [
            [0.001, 0.002, 0.001, 0.002],
            [999.0, 1000.0, 998.0, 1001.0],
            [0.0, 1.0, 0.0, 1.0],
            [0.5000001, 0.5000002, 0.5000001, 0.5000003],
        ]
        for values in test_cases:
            psu = _psu_frame(values)
            assert calculate_total_variance(psu, "y")["variance"] >= 0, values


# =============================================================================
# TestReplicateVarianceFormula
# =============================================================================


class TestReplicateVarianceFormula:
    def test_mean_centred(self):
        """scale 0.5, deviations from mean 2 are [-1, 0, 1]: V = 0.5 * 2 = 1."""
        v = replicate_variance(np.array([1.0, 2.0, 3.0]), 10.0, 0.5, np.ones(3))
        assert v == pytest.approx(1.0)

    def test_full_centred(self):
        """Centred at the full estimate 0: V = 1 + 4 + 9 = 14."""
        v = replicate_variance(
            np.array([1.0, 2.0, 3.0]), 0.0, 1.0, np.ones(3), center="full"
        )
        assert v == pytest.approx(14.0)

    def test_rscales_weight_each_replicate(self):
        v = replicate_variance(np.array([0.0, 2.0]), 1.0, 1.0, np.array([0.5, 2.0]))
        assert v == pytest.approx(0.5 * 1.0 + 2.0 * 1.0)

    def test_non_finite_replicates_are_dropped(self):
        v = replicate_variance(
            np.array([1.0, np.nan, 3.0]), 2.0, 1.0, np.array([1.0, 5.0, 1.0])
        )
        assert v == pytest.approx(2.0)

    def test_fewer_than_two_finite_is_nan(self):
        v = replicate_variance(np.array([1.0, np.nan]), 1.0, 1.0, np.ones(2))
        assert math.isnan(v)


# =============================================================================
# TestConfidenceIntervalAndCV
# =============================================================================


class TestConfidenceIntervalAndCV:
    def test_ci_95(self):
        low, high = calculate_confidence_interval(100.0, 10.0, 0.95)
        assert low == pytest.approx(100.0 - 1.959964 * 10.0, rel=1e-6)
        assert high == pytest.approx(100.0 + 1.959964 * 10.0, rel=1e-6)

    def test_ci_90_is_narrower(self):
        low90, high90 = calculate_confidence_interval(100.0, 10.0, 0.90)
        low95, high95 = calculate_confidence_interval(100.0, 10.0, 0.95)
        assert high90 - low90 < high95 - low95

    def test_nan_se_gives_nan_bounds(self):
        low, high = calculate_confidence_interval(5.0, float("nan"))
        assert math.isnan(low) and math.isnan(high)

    @pytest.mark.parametrize("level", [0.0, 1.0, 1.5, -0.1])
    def test_invalid_level_raises(self, level):
        with pytest.raises(ValueError):
            calculate_confidence_interval(1.0, 1.0, level)

    def test_cv_calculation_function(self):
        assert calculate_cv(200.0, 20.0) == pytest.approx(10.0)
        assert calculate_cv(-200.0, 20.0) == pytest.approx(10.0)
        assert calculate_cv(0.0, 5.0) == 0.0

    def test_safe_float_sqrt(self):
        assert safe_float_sqrt(4.0) == 2.0
        assert safe_float_sqrt(-1e-12) == 0.0
        assert math.isnan(safe_float_sqrt(float("nan")))


class TestPsuTotals:
    def test_sums_within_psu(self):
        data = pl.DataFrame(
            {
                "_psu": ["p1", "p1", "p2"],
                "_stratum": ["s", "s", "s"],
                "_fpc": pl.Series([None, None, None], dtype=pl.Float64),
                "v": [1.0, 2.0, 5.0],
            }
        )
        out = psu_totals(data, ["v"])
        assert out["_psu"].to_list() == ["p1", "p2"]
        assert out["v"].to_list() == [3.0, 5.0]
