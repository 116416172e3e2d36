"""Unit tests for the variance engine: domains, grouping and degenerate cases."""

import math
import warnings

import polars as pl
import pytest

from pycreel import (
    DataQualityWarning,
    EmptySampleError,
    EstimationConfig,
    InvalidParameterError,
    LonelyPSUWarning,
    MissingColumnError,
    SmallSampleWarning,
    UnsupportedMethodError,
    build_design,
    compute_grouped,
    compute_statistic,
)
from pycreel.estimation.engine import combine_domains, group_expr, group_levels


class TestDomainEstimation:
    """Domains zero the response outside the subpopulation and keep all PSUs."""

    def test_domain_total_keeps_full_design(self, single_stratum_design):
        """
        Domain {A, B}: values [800, 1000, 0, 0].

        s2 = var([800, 1000, 0, 0]) = 830,000 / 3, V = 4 * s2 = 1,106,666.67
        """
        result = compute_statistic(
            single_stratum_design, "y", domain=pl.col("obs_id").is_in(["A", "B"])
        )
        assert result.estimate == pytest.approx(1800.0)
        assert result.variance == pytest.approx(4 * 830000.0 / 3)
        assert result.info.n == 2
        assert result.info.n_psu == 4

    def test_filtering_differs_from_domain(self, single_stratum_design):
        filtered = single_stratum_design.filter(pl.col("obs_id").is_in(["A", "B"]))
        result = compute_statistic(filtered, "y")
        assert result.variance == pytest.approx(2 * 20000.0)

    def test_domain_mean(self, single_stratum_design):
        result = compute_statistic(
            single_stratum_design, "y", "mean", domain=pl.col("y") > 0.7
        )
        assert result.estimate == pytest.approx((0.8 + 1.0 + 0.9) / 3)


class TestRatioExclusions:
    def test_non_positive_effort_excluded(self):
        data = pl.DataFrame(
            {"c": [2.0, 4.0, 6.0, 9.0], "h": [1.0, 2.0, 3.0, 0.0], "w": [1.0] * 4}
        )
        design = build_design(data, weights="w")
        with pytest.warns(DataQualityWarning, match="zero or negative effort"):
            result = compute_statistic(design, "c", "ratio", "h")
        assert result.estimate == pytest.approx(2.0)
        assert result.info.n == 3

    def test_zero_denominator_is_finite(self):
        data = pl.DataFrame({"c": [2.0, 4.0], "h": [0.0, 0.0], "w": [1.0, 1.0]})
        design = build_design(data, weights="w")
        with pytest.warns(DataQualityWarning, match="denominator"):
            result = compute_statistic(design, "c", "ratio", "h")
        assert result.estimate == 0.0
        assert math.isnan(result.variance)
        assert result.info.zero_denominator is True

    def test_missing_response_excluded(self):
        data = pl.DataFrame({"y": [1.0, None, 3.0], "w": [1.0] * 3})
        design = build_design(data, weights="w")
        with pytest.warns(DataQualityWarning, match="missing 'y'"):
            result = compute_statistic(design, "y")
        assert result.estimate == pytest.approx(4.0)
        assert result.info.n == 2

    def test_ratio_requires_denominator(self, single_stratum_design):
        with pytest.raises(InvalidParameterError):
            compute_statistic(single_stratum_design, "y", "ratio")


class TestEngineErrors:
    def test_unknown_statistic(self, single_stratum_design):
        with pytest.raises(UnsupportedMethodError, match="median"):
            compute_statistic(single_stratum_design, "y", "median")

    def test_missing_response(self, single_stratum_design):
        with pytest.raises(MissingColumnError):
            compute_statistic(single_stratum_design, "catch")

    def test_empty_design(self, single_stratum_design):
        empty = single_stratum_design.filter(pl.col("y") > 10)
        with pytest.raises(EmptySampleError):
            compute_statistic(empty, "y")
        with pytest.raises(EmptySampleError):
            compute_grouped(empty, "y")

    def test_method_from_config(self, single_stratum_design):
        config = EstimationConfig(variance_method=" Jackknife ")
        result = compute_statistic(single_stratum_design, "y", config=config)
        assert result.info.method == "jackknife"

    def test_empty_domain(self, single_stratum_design):
        with pytest.raises(EmptySampleError, match="domain"):
            compute_statistic(single_stratum_design, "y", domain=pl.col("obs_id") == "Z")
        with pytest.raises(EmptySampleError, match="domain"):
            compute_statistic(
                single_stratum_design, "y", "ratio", "y", domain=pl.col("obs_id") == "Z"
            )

    def test_domain_of_zero_effort_rows_is_not_empty(self):
        """The rows exist; they are excluded as zero effort, not as an empty domain."""
        data = pl.DataFrame(
            {"g": ["a", "a", "a", "b"], "c": [1.0, 2.0, 3.0, 4.0], "h": [1.0, 1.0, 1.0, 0.0],
             "w": [1.0] * 4}
        )
        design = build_design(data, weights="w")
        with pytest.warns(DataQualityWarning, match="zero or negative effort"):
            result = compute_statistic(design, "c", "ratio", "h", domain=pl.col("g") == "b")
        assert result.estimate == 0.0
        assert math.isnan(result.variance)
        assert result.info.zero_denominator is True


class TestSmallSamples:
    def test_ungrouped_statistic_warns(self):
        data = pl.DataFrame({"y": [1.0, 2.0], "w": [1.0, 1.0]})
        design = build_design(data, weights="w")
        with pytest.warns(SmallSampleWarning, match="Only 2 observation"):
            result = compute_statistic(design, "y")
        assert result.estimate == pytest.approx(3.0)

    def test_counts_contributing_observations(self, single_stratum_design):
        with pytest.warns(SmallSampleWarning, match="Only 1 observation"):
            result = compute_statistic(single_stratum_design, "y", domain=pl.col("obs_id") == "B")
        assert result.estimate == pytest.approx(1000.0)

    def test_threshold_from_config(self, single_stratum_design):
        config = EstimationConfig(small_group_threshold=1)
        with warnings.catch_warnings():
            warnings.simplefilter("error", SmallSampleWarning)
            compute_statistic(
                single_stratum_design, "y", domain=pl.col("obs_id") == "B", config=config
            )


class TestDesignEffect:
    def test_equal_weight_total_has_unit_deff(self, single_stratum_design):
        """One stratum, equal weights: V = N^2 s2 / n exactly, so deff = 1."""
        result = compute_statistic(single_stratum_design, "y")
        assert result.info.deff == pytest.approx(1.0)

    def test_stratified_total(self, two_stratum_design):
        """
        V = 480,000. Weighted mean 0.75, weighted s2 = 215 / 6000 * 5/4,
        SRS variance = 6000^2 * s2 / 5 = 322,500.
        """
        result = compute_statistic(two_stratum_design, "y")
        assert result.info.deff == pytest.approx(480000.0 / 322500.0)

    def test_undefined_without_variance(self):
        data = pl.DataFrame({"s": ["a", "a", "b"], "y": [1.0, 2.0, 3.0], "w": [1.0] * 3})
        design = build_design(data, strata_vars="s", weights="w")
        with pytest.warns(LonelyPSUWarning):
            result = compute_statistic(design, "y")
        assert result.info.deff is None

    def test_ratio_deff_is_positive(self, interview_design):
        result = compute_statistic(interview_design, "catch_total", "ratio", "hours_fished")
        assert result.info.deff is not None
        assert result.info.deff > 0


class TestComputeGrouped:
    def test_groups_in_order_of_appearance(self, interview_design):
        results = compute_grouped(
            interview_design, "catch_total", "ratio", by=["location"], denominator="hours_fished"
        )
        assert [g for g, _ in results] == [{"location": "North"}, {"location": "South"}]
        north, south = (r for _, r in results)
        assert north.estimate == pytest.approx(2.0)
        assert south.estimate == pytest.approx(1.0)

    def test_group_totals_add_up(self, interview_design):
        overall = compute_statistic(interview_design, "catch_total")
        grouped = compute_grouped(interview_design, "catch_total", by=["location"])
        assert sum(r.estimate for _, r in grouped) == pytest.approx(overall.estimate)

    def test_small_groups_warn_once(self):
        data = pl.DataFrame(
            {"g": ["a", "a", "a", "b", "c"], "y": [1.0, 2.0, 3.0, 4.0, 5.0], "w": [1.0] * 5}
        )
        design = build_design(data, weights="w")
        with pytest.warns(SmallSampleWarning, match="2 group") as record:
            results = compute_grouped(design, "y", by=["g"])
        assert len([w for w in record if issubclass(w.category, SmallSampleWarning)]) == 1
        assert len(results) == 3

    def test_small_group_threshold_from_config(self, interview_design):
        config = EstimationConfig(small_group_threshold=1)
        with warnings.catch_warnings():
            warnings.simplefilter("error", SmallSampleWarning)
            compute_grouped(interview_design, "catch_total", by=["location"], config=config)

    def test_complete_groups_cross_product(self):
        data = pl.DataFrame(
            {
                "site": ["A", "A", "B", "B", "A", "B"],
                "mode": ["boat", "boat", "boat", "boat", "shore", "boat"],
                "y": [1.0, 2.0, 3.0, 4.0, 5.0, 6.0],
                "w": [1.0] * 6,
            }
        )
        design = build_design(data, weights="w")
        config = EstimationConfig(small_group_threshold=1)
        observed = compute_grouped(design, "y", by=["site", "mode"], config=config)
        with pytest.warns(SmallSampleWarning, match="site=B, mode=shore"):
            complete = compute_grouped(
                design, "y", by=["site", "mode"], config=config, complete_groups=True
            )
        assert len(observed) == 3
        assert len(complete) == 4
        missing = [r for g, r in complete if g == {"site": "B", "mode": "shore"}][0]
        assert missing.estimate == 0.0
        assert missing.info.n == 0

    def test_domain_without_observations(self, interview_design):
        with pytest.raises(EmptySampleError):
            compute_grouped(
                interview_design, "catch_total", by=["location"],
                domain=pl.col("hours_fished") > 100,
            )

    def test_grouping_column_missing(self, interview_design):
        with pytest.raises(MissingColumnError):
            compute_grouped(interview_design, "catch_total", by=["site"])

    def test_null_group_level(self):
        data = pl.DataFrame(
            {"g": ["a", None, "a", None], "y": [1.0, 2.0, 3.0, 4.0], "w": [1.0] * 4}
        )
        design = build_design(data, weights="w")
        config = EstimationConfig(small_group_threshold=1)
        results = dict(
            (g["g"], r.estimate) for g, r in compute_grouped(design, "y", by=["g"], config=config)
        )
        assert results == {"a": 4.0, None: 6.0}


class TestGroupHelpers:
    def test_group_levels(self):
        data = pl.DataFrame({"a": [2, 1, 2], "b": ["x", "y", "x"]})
        assert group_levels(data, []) == [{}]
        assert group_levels(data, ["a", "b"]) == [{"a": 2, "b": "x"}, {"a": 1, "b": "y"}]
        assert len(group_levels(data, ["a", "b"], complete_groups=True)) == 4

    def test_group_expr_and_combine(self):
        data = pl.DataFrame({"a": [1, 1, 2], "b": ["x", "y", "x"]})
        expr = combine_domains(None, group_expr({"a": 1}), pl.col("b") == "x")
        assert data.filter(expr).height == 1
        assert group_expr({}) is None
        assert combine_domains(None, None) is None

