"""Unit tests for estimate containers and the estimation configuration."""

import math

import polars as pl
import pytest
from pydantic import ValidationError

from pycreel import Estimate, EstimateSet, EstimationConfig, InvalidParameterError


def _estimate(value, se, **group):
    return Estimate.build(value, se**2, 5, "test", 0.95, group=group)


class TestEstimate:
    def test_build_derives_interval(self):
        est = Estimate.build(100.0, 25.0, 8, "test", 0.95)
        assert est.se == pytest.approx(5.0)
        assert est.ci_low == pytest.approx(100.0 - 1.959963984540054 * 5.0)
        assert est.ci_high == pytest.approx(100.0 + 1.959963984540054 * 5.0)
        assert est.variance == pytest.approx(25.0)
        assert est.cv == pytest.approx(5.0)

    def test_undefined_variance(self):
        est = Estimate.build(100.0, float("nan"), 1, "test", 0.95)
        assert math.isnan(est.se)
        assert math.isnan(est.ci_low) and math.isnan(est.ci_high)

    def test_negative_rounding_clamped(self):
        est = Estimate.build(1.0, -1e-18, 3, "test", 0.95)
        assert est.se == 0.0

    def test_cv_of_zero_estimate(self):
        assert Estimate.build(0.0, 4.0, 3, "test", 0.95).cv == 0.0

    def test_immutable(self):
        est = Estimate.build(1.0, 1.0, 3, "test", 0.95)
        with pytest.raises(AttributeError):
            est.estimate = 2.0


class TestEstimateSet:
    @pytest.fixture
    def grouped(self):
        return EstimateSet(
            ("site", "mode"),
            (
                _estimate(10.0, 1.0, site="A", mode="boat"),
                _estimate(20.0, 2.0, site="A", mode="shore"),
                _estimate(30.0, 3.0, site="B", mode="boat"),
            ),
        )

    def test_lookup_by_key(self, grouped):
        assert grouped["A", "shore"].estimate == 20.0
        assert grouped.keys() == [("A", "boat"), ("A", "shore"), ("B", "boat")]
        with pytest.raises(KeyError):
            grouped["B", "shore"]

    def test_bare_value_for_single_by(self):
        est_set = EstimateSet(("site",), (_estimate(1.0, 0.1, site="A"),))
        assert est_set["A"].estimate == 1.0

    def test_positional_lookup_when_ungrouped(self):
        est_set = EstimateSet((), (_estimate(7.0, 1.0),))
        assert est_set[0].estimate == 7.0
        assert est_set.single().estimate == 7.0

    def test_single_requires_one(self, grouped):
        with pytest.raises(InvalidParameterError, match="found 3"):
            grouped.single()

    def test_to_polars(self, grouped):
        table = grouped.to_polars()
        assert table.columns == [
            "site", "mode", "estimate", "se", "ci_low", "ci_high", "n", "method", "diagnostics"
        ]
        assert table["estimate"].to_list() == [10.0, 20.0, 30.0]
        assert table["se"].dtype == pl.Float64
        assert table.filter(pl.col("site") == "B")["mode"].to_list() == ["boat"]

    def test_iteration(self, grouped):
        assert len(grouped) == 3
        assert [e.group["mode"] for e in grouped] == ["boat", "shore", "boat"]


class TestEstimationConfig:
    def test_defaults(self):
        config = EstimationConfig()
        assert config.conf_level == 0.95
        assert config.variance_method == "linearization"
        assert config.lonely_psu == "na"
        assert config.small_group_threshold == 3

    def test_updated_ignores_none(self):
        config = EstimationConfig(lonely_psu="adjust")
        updated = config.updated(conf_level=0.9, variance_method=None)
        assert updated.conf_level == 0.9
        assert updated.variance_method == "linearization"
        assert updated.lonely_psu == "adjust"
        assert config.conf_level == 0.95

    @pytest.mark.parametrize(
        "options",
        [
            {"conf_level": 1.0},
            {"conf_level": 0.0},
            {"lonely_psu": "drop"},
            {"small_group_threshold": 0},
            {"n_replicates": 1},
            {"bootstrap": True},
        ],
    )
    def test_invalid_options(self, options):
        with pytest.raises(ValidationError):
            EstimationConfig(**options)

    def test_frozen(self):
        config = EstimationConfig()
        with pytest.raises(ValidationError):
            config.conf_level = 0.9
