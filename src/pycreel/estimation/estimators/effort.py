"""
Angler-effort estimation from counts.

Four count designs are supported, each a per-observation transform of the
raw counts into angler-hours followed by the same aggregation: counts are
collapsed to one effort value per PSU (the survey day unless the design
declares clusters) and group, and the variance engine then estimates the
total (or mean) of daily effort over the design.

Instantaneous
    Snapshot counts. Each count is expanded by
    ``total_minutes / interval_minutes`` intervals of
    ``interval_minutes / 60`` hours, and counts in a day are averaged.
Progressive (roving)
    Counts accumulated along a route on one or more passes.
    ``effort_day = Σ counts × period / (n_passes × route)`` in pass-hours
    of ``route_minutes / 60``. Without ``period_minutes`` the passes are
    taken to cover the period.
Aerial
    Flight counts corrected per observation for visibility (detection
    probability in (0, 1]) and a calibration factor (>= 1).
Bus-route
    Horvitz-Thompson expansion ``contribution_hours / inclusion_prob``.
"""

from __future__ import annotations

import logging
import warnings
from enum import Enum
from typing import Any, Optional, Union

import numpy as np
import polars as pl

from ...core.config import EstimationConfig
from ...core.design import Design
from ...core.exceptions import (
    DataQualityWarning,
    InvalidDesignError,
    InvalidParameterError,
    UnsupportedMethodError,
    require_columns,
)
from ..base import BaseEstimator
from ..constants import MINUTES_PER_HOUR, PSU_COL
from ..engine import StatisticResult, group_expr
from ..results import EffortDiagnostics, EstimateSet

logger = logging.getLogger(__name__)

EFFORT_COL = "effort_hours"
_OBS_EFFORT = "_effort_hours"
_EXPANSION = "_expansion"


class EffortKind(str, Enum):
    """Count designs supported by :func:`estimate_effort`."""

    INSTANTANEOUS = "instantaneous"
    PROGRESSIVE = "progressive"
    AERIAL = "aerial"
    BUSROUTE = "busroute"


class EffortEstimator(BaseEstimator):
    """Shared aggregation for all effort estimators.

    Config keys
    -----------
    count_col : str, default "count"
    day_col : str, default "date"
        Day identifier; the PSU unless the design declares clusters.
    by : list[str], optional
    statistic : {"total", "mean"}, default "total"
        Total effort over the design, or mean effort per PSU.
    """

    kind: EffortKind

    def __init__(
        self,
        design: Design,
        config: Optional[dict[str, Any]] = None,
        settings: Optional[EstimationConfig] = None,
    ):
        super().__init__(design, config, settings)
        self.statistic = self.config.get("statistic", "total")
        if self.statistic not in ("total", "mean"):
            raise UnsupportedMethodError(
                f"Effort statistic must be 'total' or 'mean', got '{self.statistic}'"
            )
        self._observations: Optional[pl.DataFrame] = None
        self._n_clamped = 0
        self._n_dropped = 0

    @property
    def count_col(self) -> str:
        return self.config.get("count_col", "count")

    @property
    def day_col(self) -> str:
        return self.config.get("day_col", "date")

    @property
    def response_col(self) -> str:
        return EFFORT_COL

    def get_required_columns(self) -> list[str]:
        return [self.count_col, self.day_col]

    def format_method(self) -> str:
        return f"effort:{self.kind.value}"

    def _column_or_constant(self, key: str, default: Any = None) -> Optional[pl.Expr]:
        """Resolve a config entry that may name a column or hold a constant."""
        value = self.config.get(key, default)
        if value is None:
            return None
        if isinstance(value, str):
            return pl.col(value).cast(pl.Float64)
        return pl.lit(float(value))

    def _day_group(self) -> list[str]:
        return list(dict.fromkeys([self.day_col, *self.by]))

    def prepare_design(self, design: Design) -> Design:
        self._observations = design.data
        if design.cluster_var is None:
            design = design.with_psu(self.day_col)
        return design.collapse(self.by, [self.day_aggregation().alias(EFFORT_COL)])

    def day_aggregation(self) -> pl.Expr:
        """Combine per-observation effort within one PSU x group cell."""
        return pl.col(_OBS_EFFORT).sum()

    def build_diagnostics(
        self, design: Design, group: dict[str, Any], result: StatisticResult
    ) -> EffortDiagnostics:
        obs = self._observations
        expr = group_expr(group)
        if expr is not None:
            obs = obs.filter(expr)
            design_rows = design.data.filter(expr)
        else:
            design_rows = design.data
        return EffortDiagnostics(
            kind=self.kind.value,
            n_observations=obs.height,
            n_psu=design_rows[PSU_COL].n_unique(),
            mean_expansion_factor=_mean_or_none(obs, _EXPANSION),
            mean_visibility=_mean_or_none(obs, "_visibility"),
            mean_calibration=_mean_or_none(obs, "_calibration"),
            n_clamped=self._n_clamped,
            n_dropped=self._n_dropped,
            variance_components=result.info.strata_variance,
            extra=self.extra_diagnostics(obs),
        )

    def extra_diagnostics(self, obs: pl.DataFrame) -> dict[str, Any]:
        return {}


def _mean_or_none(data: pl.DataFrame, column: str) -> Optional[float]:
    if column not in data.columns or data.height == 0:
        return None
    value = data[column].mean()
    return None if value is None else float(value)


class InstantaneousEffortEstimator(EffortEstimator):
    """Instantaneous (snapshot) count estimator.

    Config keys
    -----------
    interval_minutes_col : str, default "interval_minutes"
        Minutes represented by each count.
    total_minutes_col : str, default "total_minutes"
        Length of the fishing period. When absent from the data the
        interval minutes of the day's counts are summed instead.
    """

    kind = EffortKind.INSTANTANEOUS

    @property
    def interval_col(self) -> str:
        return self.config.get("interval_minutes_col", "interval_minutes")

    @property
    def total_col(self) -> str:
        return self.config.get("total_minutes_col", "total_minutes")

    def get_required_columns(self) -> list[str]:
        return [*super().get_required_columns(), self.interval_col]

    def calculate_values(self, data: pl.DataFrame) -> pl.DataFrame:
        if (data[self.interval_col] <= 0).any():
            raise InvalidDesignError(f"'{self.interval_col}' must be positive")
        if self.total_col in data.columns:
            total = pl.col(self.total_col).cast(pl.Float64)
        else:
            logger.info(
                "No '%s' column; summing '%s' per day as the period length",
                self.total_col, self.interval_col,
            )
            total = pl.col(self.interval_col).sum().over(self._day_group()).cast(pl.Float64)

        interval = pl.col(self.interval_col).cast(pl.Float64)
        return data.with_columns(
            (total / interval).alias(_EXPANSION)
        ).with_columns(
            (
                pl.col(self.count_col).cast(pl.Float64)
                * pl.col(_EXPANSION)
                * interval
                / MINUTES_PER_HOUR
            ).alias(_OBS_EFFORT)
        )

    def day_aggregation(self) -> pl.Expr:
        return pl.col(_OBS_EFFORT).mean()


class ProgressiveEffortEstimator(EffortEstimator):
    """Progressive (roving) count estimator.

    Config keys
    -----------
    route_minutes_col : str, default "route_minutes"
        Minutes needed to complete one pass of the route.
    pass_col : str, optional
        Pass identifier; ``"pass_id"`` or ``"circuit_id"`` are used when
        present. Without one each row is a pass.
    period_minutes : str or float, optional
        Length of the fishing day, as a column or a constant.
    """

    kind = EffortKind.PROGRESSIVE

    @property
    def route_col(self) -> str:
        return self.config.get("route_minutes_col", "route_minutes")

    def get_required_columns(self) -> list[str]:
        return [*super().get_required_columns(), self.route_col]

    def _pass_col(self, data: pl.DataFrame) -> Optional[str]:
        explicit = self.config.get("pass_col")
        if explicit is not None:
            require_columns([explicit], data.columns)
            return explicit
        for candidate in ("pass_id", "circuit_id"):
            if candidate in data.columns:
                return candidate
        return None

    def calculate_values(self, data: pl.DataFrame) -> pl.DataFrame:
        if (data[self.route_col] <= 0).any():
            raise InvalidDesignError(f"'{self.route_col}' must be positive")
        pass_col = self._pass_col(data)
        cell = self._day_group()
        n_passes = (
            pl.col(pass_col).n_unique().over(cell)
            if pass_col is not None
            else pl.len().over(cell)
        ).cast(pl.Float64)
        route = pl.col(self.route_col).cast(pl.Float64)
        period = self._column_or_constant("period_minutes")
        if period is None:
            period = n_passes * route

        return data.with_columns(
            n_passes.alias("_n_passes"),
            (period / (n_passes * route)).alias(_EXPANSION),
        ).with_columns(
            (
                pl.col(self.count_col).cast(pl.Float64)
                * pl.col(_EXPANSION)
                * route
                / MINUTES_PER_HOUR
            ).alias(_OBS_EFFORT)
        )

    def extra_diagnostics(self, obs: pl.DataFrame) -> dict[str, Any]:
        return {"mean_passes_per_day": _mean_or_none(obs, "_n_passes")}


class AerialEffortEstimator(EffortEstimator):
    """Aerial count estimator with visibility and calibration corrections.

    Config keys
    -----------
    visibility : str or float, default 1.0
        Detection probability, a column name or a constant in (0, 1].
    calibration : str or float, default 1.0
        Undercount correction, a column name or a constant >= 1.
    period_minutes : str or float, optional
        Converts instantaneous counts to angler-hours. Without it the
        estimate is in corrected anglers.
    """

    kind = EffortKind.AERIAL

    def get_required_columns(self) -> list[str]:
        cols = super().get_required_columns()
        for key in ("visibility", "calibration", "period_minutes"):
            value = self.config.get(key)
            if isinstance(value, str):
                cols.append(value)
        return cols

    def calculate_values(self, data: pl.DataFrame) -> pl.DataFrame:
        data = data.with_columns(
            self._column_or_constant("visibility", 1.0).alias("_visibility"),
            self._column_or_constant("calibration", 1.0).alias("_calibration"),
        )
        vis = data["_visibility"]
        if vis.null_count() or ((vis <= 0) | (vis > 1)).any():
            raise InvalidDesignError("Visibility corrections must lie in (0, 1]")
        cal = data["_calibration"]
        if cal.null_count() or (cal < 1).any():
            raise InvalidDesignError("Calibration factors must be >= 1")

        period = self._column_or_constant("period_minutes")
        hours = period / MINUTES_PER_HOUR if period is not None else pl.lit(1.0)
        return data.with_columns(
            (pl.col("_calibration") / pl.col("_visibility")).alias(_EXPANSION),
        ).with_columns(
            (pl.col(self.count_col).cast(pl.Float64) * pl.col(_EXPANSION) * hours).alias(
                _OBS_EFFORT
            )
        )


class BusRouteEffortEstimator(EffortEstimator):
    """Bus-route Horvitz-Thompson estimator.

    Config keys
    -----------
    inclusion_prob_col : str, default "inclusion_prob"
        Probability that the site/time was included on the route.
    contribution_col : str, optional
        Angler-hours observed at the stop. When absent, computed as
        ``count × route_minutes / 60``.
    route_minutes_col : str, default "route_minutes"
    """

    kind = EffortKind.BUSROUTE

    @property
    def prob_col(self) -> str:
        return self.config.get("inclusion_prob_col", "inclusion_prob")

    def get_required_columns(self) -> list[str]:
        cols = [self.day_col, self.prob_col]
        contribution = self.config.get("contribution_col")
        if contribution is not None:
            cols.append(contribution)
        else:
            cols += [self.count_col, self.config.get("route_minutes_col", "route_minutes")]
        return cols

    def format_method(self) -> str:
        return "effort:busroute_ht"

    def calculate_values(self, data: pl.DataFrame) -> pl.DataFrame:
        contribution = self.config.get("contribution_col")
        if contribution is not None:
            hours = pl.col(contribution).cast(pl.Float64)
        else:
            route = self.config.get("route_minutes_col", "route_minutes")
            hours = (
                pl.col(self.count_col).cast(pl.Float64)
                * pl.col(route).cast(pl.Float64)
                / MINUTES_PER_HOUR
            )
        data = data.with_columns(
            hours.alias("_contrib_hours"), pl.col(self.prob_col).cast(pl.Float64).alias("_pi")
        )

        missing = data["_contrib_hours"].is_null() | data["_pi"].is_null()
        missing = missing | data["_contrib_hours"].is_nan() | data["_pi"].is_nan()
        self._n_dropped = int(missing.sum())
        if self._n_dropped:
            warnings.warn(
                f"Dropped {self._n_dropped} bus-route row(s) missing contribution "
                "hours or inclusion probability",
                DataQualityWarning,
                stacklevel=4,
            )

        eps = float(np.finfo(np.float64).eps)
        pi = data["_pi"]
        out_of_range = ~missing & ((pi <= 0) | (pi > 1))
        self._n_clamped = int(out_of_range.sum())
        if self._n_clamped:
            warnings.warn(
                f"Clamped {self._n_clamped} inclusion probabilities outside (0, 1] "
                "to the nearest valid bound",
                DataQualityWarning,
                stacklevel=4,
            )

        return data.with_columns(
            pl.col("_pi").clip(lower_bound=eps, upper_bound=1.0).alias("_pi"),
            missing.alias("_missing"),
        ).with_columns(
            (1.0 / pl.col("_pi")).alias(_EXPANSION),
            pl.when(pl.col("_missing"))
            .then(0.0)
            .otherwise(pl.col("_contrib_hours") / pl.col("_pi"))
            .alias(_OBS_EFFORT),
        )

    def extra_diagnostics(self, obs: pl.DataFrame) -> dict[str, Any]:
        return {"mean_inclusion_prob": _mean_or_none(obs, "_pi")}


EFFORT_ESTIMATORS: dict[EffortKind, type[EffortEstimator]] = {
    EffortKind.INSTANTANEOUS: InstantaneousEffortEstimator,
    EffortKind.PROGRESSIVE: ProgressiveEffortEstimator,
    EffortKind.AERIAL: AerialEffortEstimator,
    EffortKind.BUSROUTE: BusRouteEffortEstimator,
}


def estimate_effort(
    design: Design,
    kind: Union[EffortKind, str],
    by: Optional[list[str]] = None,
    conf_level: Optional[float] = None,
    variance_method: Optional[str] = None,
    config: Optional[EstimationConfig] = None,
    **options: Any,
) -> EstimateSet:
    """
    Estimate angler effort (hours) from counts.

    Parameters
    ----------
    design : Design
        Design over the count observations, typically from
        :func:`~pycreel.core.design.design_from_days`.
    kind : EffortKind or str
        ``"instantaneous"``, ``"progressive"``, ``"aerial"`` or
        ``"busroute"``.
    by : list[str], optional
        Grouping columns.
    conf_level : float, optional
        Overrides ``config.conf_level``.
    variance_method : str, optional
        Overrides ``config.variance_method``.
    config : EstimationConfig, optional
    **options
        Estimator-specific options, see each estimator class.

    Returns
    -------
    EstimateSet
        One angler-hours estimate per group.

    Examples
    --------
    >>> est = estimate_effort(design, "instantaneous", by=["location"])
    >>> est.to_polars()
    """
    try:
        kind = EffortKind(kind)
    except ValueError:
        raise UnsupportedMethodError(
            f"Unknown effort estimator '{kind}'. "
            f"Valid kinds: {', '.join(k.value for k in EffortKind)}"
        ) from None
    if conf_level is not None and not 0.0 < conf_level < 1.0:
        raise InvalidParameterError(f"conf_level must lie strictly in (0, 1), got {conf_level}")

    estimator_config = {
        **options,
        "by": by,
        "conf_level": conf_level,
        "variance_method": variance_method,
    }
    estimator = EFFORT_ESTIMATORS[kind](design, estimator_config, config)
    return estimator.estimate()
