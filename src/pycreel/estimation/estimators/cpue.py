"""
Catch-per-unit-effort (CPUE) estimation from angler interviews.

Two estimators are provided:

Ratio-of-means (complete trips, access-point interviews)
    R = Σ w·catch / Σ w·hours, with the linearized ratio variance. This is
    unbiased when the chance of interviewing an angler does not depend on
    trip length.

Mean-of-ratios (incomplete trips, roving interviews)
    The design-weighted mean of per-interview rates catch_i / hours_i.
    Short incomplete trips produce unstable rates, so interviews below
    ``min_trip_hours`` can be truncated. Roving interviews intercept long
    trips more often; the length-bias correction of Pollock et al. (1997)
    reweights each interview by ``1 / total_trip_effort``.

Species aggregation sums catch over a set of species per interview before
either estimator runs.

Reference:
    Pollock, K. H., Hoenig, J. M., Jones, C. M., Robson, D. S. and
    Greene, C. J. 1997. Catch rate estimation for roving and access
    point surveys. North American Journal of Fisheries Management 17:
    11-19.
"""

from __future__ import annotations

import logging
import warnings
from enum import Enum
from typing import Any, Optional, Sequence, Union

import polars as pl
from pydantic import BaseModel, ConfigDict, Field

from ...core.config import EstimationConfig
from ...core.design import Design
from ...core.exceptions import (
    DataQualityWarning,
    EmptySampleError,
    InvalidParameterError,
    MissingColumnError,
    UnsupportedMethodError,
    require_columns,
)
from ..base import BaseEstimator
from ..constants import DESIGN_COLS, TRUNCATION_WARNING_RATE
from ..engine import StatisticResult, group_expr
from ..results import CpueDiagnostics, EstimateSet

logger = logging.getLogger(__name__)

SPECIES_GROUP_COL = "species_group"
_RATE = "_rate"
_RETAINED = "_retained"
_POSITIVE_EFFORT = "_positive_effort"
_BIAS_WEIGHT = "_bias_weight"
_TOTAL_EFFORT = "_total_effort"


class CpueMode(str, Enum):
    """CPUE estimators supported by :func:`estimate_cpue`."""

    RATIO_OF_MEANS = "ratio_of_means"
    MEAN_OF_RATIOS = "mean_of_ratios"


class SpeciesAggregation(BaseModel):
    """Outcome of :func:`aggregate_species`."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    group_name: str
    response: str
    species_included: list[str] = Field(default_factory=list)
    species_missing: list[str] = Field(default_factory=list)
    n_species: int
    n_interviews: int
    n_interviews_with_catch: int


class CpueEstimator(BaseEstimator):
    """Shared options for the CPUE estimators.

    Config keys
    -----------
    response : str, default "catch_total"
        Catch column.
    effort_col : str, default "hours_fished"
        Hours fished by the angler party at interview time.
    by : list[str], optional
    """

    mode: CpueMode

    def __init__(
        self,
        design: Design,
        config: Optional[dict[str, Any]] = None,
        settings: Optional[EstimationConfig] = None,
    ):
        super().__init__(design, config, settings)
        self.species_summary: Optional[SpeciesAggregation] = self.config.get("species_summary")

    @property
    def response(self) -> str:
        return self.config.get("response", "catch_total")

    @property
    def effort_col(self) -> str:
        return self.config.get("effort_col", "hours_fished")

    def get_required_columns(self) -> list[str]:
        return [self.response, self.effort_col]

    def format_method(self) -> str:
        return f"cpue:{self.mode.value}:{self.response}"

    def _group_rows(self, data: pl.DataFrame, group: dict[str, Any]) -> pl.DataFrame:
        expr = group_expr(group)
        return data if expr is None else data.filter(expr)

    def _species_fields(self) -> dict[str, Any]:
        if self.species_summary is None:
            return {}
        return {
            "species_included": self.species_summary.species_included,
            "species_missing": self.species_summary.species_missing,
        }


class RatioOfMeansCpue(CpueEstimator):
    """Ratio-of-means CPUE for complete-trip interviews."""

    mode = CpueMode.RATIO_OF_MEANS
    statistic = "ratio"

    @property
    def response_col(self) -> str:
        return self.response

    @property
    def denominator_col(self) -> Optional[str]:
        return self.effort_col

    def build_diagnostics(
        self, design: Design, group: dict[str, Any], result: StatisticResult
    ) -> CpueDiagnostics:
        rows = self._group_rows(design.data, group)
        hours = rows[self.effort_col].cast(pl.Float64)
        positive = rows.filter(hours > 0)
        return CpueDiagnostics(
            mode=self.mode.value,
            response=self.response,
            n_original=rows.height,
            n_used=result.info.n,
            n_zero_effort_excluded=rows.height - positive.height,
            mean_effort=_mean(positive[self.effort_col]),
            sd_effort=_std(positive[self.effort_col]),
            zero_denominator=result.info.zero_denominator,
            variance_components=result.info.strata_variance,
            **self._species_fields(),
        )


class MeanOfRatiosCpue(CpueEstimator):
    """Mean-of-ratios CPUE for incomplete-trip (roving) interviews.

    Config keys
    -----------
    min_trip_hours : float, optional
        Interviews with fewer hours are truncated. Disabled by default.
    length_bias : {"none", "pollock"}, default "none"
        Reweight interviews by ``1 / total_trip_effort``.
    total_trip_col : str, optional
        Planned or total trip duration; required for ``"pollock"``.
    """

    mode = CpueMode.MEAN_OF_RATIOS
    statistic = "mean"

    def __init__(
        self,
        design: Design,
        config: Optional[dict[str, Any]] = None,
        settings: Optional[EstimationConfig] = None,
    ):
        super().__init__(design, config, settings)
        self.min_trip_hours = self.config.get("min_trip_hours")
        if self.min_trip_hours is not None and not self.min_trip_hours > 0:
            raise InvalidParameterError(
                f"min_trip_hours must be positive, got {self.min_trip_hours}"
            )
        self.length_bias = (self.config.get("length_bias") or "none").lower()
        if self.length_bias not in ("none", "pollock"):
            raise UnsupportedMethodError(
                f"Unknown length-bias correction '{self.length_bias}'. "
                "Valid options: none, pollock"
            )
        self.total_trip_col = self.config.get("total_trip_col")
        if self.length_bias == "pollock" and self.total_trip_col is None:
            raise MissingColumnError(["total_trip_col"], [])
        self._n_truncated = 0

    @property
    def response_col(self) -> str:
        return _RATE

    def get_required_columns(self) -> list[str]:
        cols = super().get_required_columns()
        if self.length_bias == "pollock":
            cols.append(self.total_trip_col)
        return cols

    def format_method(self) -> str:
        return f"{super().format_method()}:{self.length_bias}"

    def domain(self) -> Optional[pl.Expr]:
        return pl.col(_RETAINED)

    def calculate_values(self, data: pl.DataFrame) -> pl.DataFrame:
        hours = pl.col(self.effort_col).cast(pl.Float64)
        data = data.with_columns(
            (hours.is_not_null() & hours.is_not_nan() & (hours > 0)).alias(_POSITIVE_EFFORT)
        )
        n_original = data.height
        n_zero = int((~data[_POSITIVE_EFFORT]).sum())
        if n_zero:
            warnings.warn(
                f"Excluded {n_zero} interview(s) with zero or negative effort in "
                f"'{self.effort_col}'; their catch rate is undefined",
                DataQualityWarning,
                stacklevel=4,
            )

        retained = pl.col(_POSITIVE_EFFORT)
        if self.min_trip_hours is not None:
            short = data[_POSITIVE_EFFORT] & (data[self.effort_col] < self.min_trip_hours)
            self._n_truncated = int(short.sum())
            retained = retained & (hours >= self.min_trip_hours)
            self._report_truncation(n_original)

        data = data.with_columns(
            retained.alias(_RETAINED),
            pl.when(pl.col(_POSITIVE_EFFORT))
            .then(pl.col(self.response).cast(pl.Float64) / hours)
            .otherwise(None)
            .alias(_RATE),
        )
        if self.length_bias == "pollock":
            data = self._length_bias_weights(data)
        if not data[_RETAINED].any():
            raise EmptySampleError(
                "No interviews remain after excluding zero-effort and truncated trips"
            )
        return data

    def _report_truncation(self, n_original: int) -> None:
        rate = self._n_truncated / n_original if n_original else 0.0
        if self._n_truncated == 0:
            return
        if self._n_truncated >= n_original:
            raise EmptySampleError(
                f"All {n_original} interviews are shorter than "
                f"min_trip_hours={self.min_trip_hours}"
            )
        msg = (
            f"Truncated {self._n_truncated} of {n_original} interviews "
            f"({rate:.1%}) shorter than {self.min_trip_hours} hours"
        )
        if rate >= TRUNCATION_WARNING_RATE:
            warnings.warn(msg, DataQualityWarning, stacklevel=5)
        else:
            logger.info(msg)

    def _length_bias_weights(self, data: pl.DataFrame) -> pl.DataFrame:
        total = pl.col(self.total_trip_col).cast(pl.Float64)
        hours = pl.col(self.effort_col).cast(pl.Float64)
        valid_total = total.is_not_null() & total.is_not_nan() & (total > 0)

        invalid = data.select((pl.col(_RETAINED) & ~valid_total).alias("x"))["x"]
        if invalid.any():
            warnings.warn(
                f"Excluded {int(invalid.sum())} interview(s) with missing or "
                f"non-positive '{self.total_trip_col}'",
                DataQualityWarning,
                stacklevel=5,
            )
        short = data.select((pl.col(_RETAINED) & valid_total & (total < hours)).alias("x"))["x"]
        if short.any():
            warnings.warn(
                f"{int(short.sum())} interview(s) report total trip effort below "
                "hours fished; using hours fished as the total",
                DataQualityWarning,
                stacklevel=5,
            )

        return data.with_columns(
            (pl.col(_RETAINED) & valid_total).alias(_RETAINED),
            pl.when(valid_total)
            .then(pl.max_horizontal(total, hours))
            .otherwise(None)
            .alias(_TOTAL_EFFORT),
        ).with_columns(
            pl.when(pl.col(_RETAINED))
            .then(1.0 / pl.col(_TOTAL_EFFORT))
            .otherwise(1.0)
            .alias(_BIAS_WEIGHT)
        )

    def prepare_design(self, design: Design) -> Design:
        if self.length_bias == "pollock":
            return design.reweight(design.data[_BIAS_WEIGHT].to_numpy())
        return design

    def build_diagnostics(
        self, design: Design, group: dict[str, Any], result: StatisticResult
    ) -> CpueDiagnostics:
        rows = self._group_rows(design.data, group)
        kept = rows.filter(pl.col(_RETAINED))
        positive = rows.filter(pl.col(_POSITIVE_EFFORT))
        if self.min_trip_hours is not None:
            n_truncated = positive.filter(
                pl.col(self.effort_col) < self.min_trip_hours
            ).height
        else:
            n_truncated = 0
        pollock = self.length_bias == "pollock"
        return CpueDiagnostics(
            mode=self.mode.value,
            response=self.response,
            n_original=rows.height,
            n_used=result.info.n,
            n_truncated=n_truncated,
            truncation_rate=n_truncated / rows.height if rows.height else 0.0,
            min_trip_hours=self.min_trip_hours,
            n_zero_effort_excluded=rows.height - positive.height,
            length_bias_correction=self.length_bias,
            correction_applied=pollock and kept.height > 0,
            mean_total_effort=_mean(kept[_TOTAL_EFFORT]) if pollock else None,
            mean_bias_weight=_mean(kept[_BIAS_WEIGHT]) if pollock else None,
            mean_effort=_mean(kept[self.effort_col]),
            sd_effort=_std(kept[self.effort_col]),
            mean_rate=_mean(kept[_RATE]),
            sd_rate=_std(kept[_RATE]),
            zero_denominator=result.info.zero_denominator,
            variance_components=result.info.strata_variance,
            **self._species_fields(),
        )


def _mean(series: pl.Series) -> Optional[float]:
    value = series.cast(pl.Float64).mean() if series.len() else None
    return None if value is None else float(value)


def _std(series: pl.Series) -> Optional[float]:
    value = series.cast(pl.Float64).std() if series.len() > 1 else None
    return None if value is None else float(value)


CPUE_ESTIMATORS: dict[CpueMode, type[CpueEstimator]] = {
    CpueMode.RATIO_OF_MEANS: RatioOfMeansCpue,
    CpueMode.MEAN_OF_RATIOS: MeanOfRatiosCpue,
}


def aggregate_species(
    design: Design,
    species: Sequence[str],
    species_col: str = "species",
    response: str = "catch_total",
    interview_col: Optional[str] = None,
    group_name: Optional[str] = None,
) -> tuple[Design, SpeciesAggregation]:
    """
    Sum catch over a set of species, one row per interview.

    Parameters
    ----------
    design : Design
        Design over interview (or interview x species) rows.
    species : list[str]
        Species to combine, e.g. ``["walleye", "sauger"]``.
    species_col : str, default "species"
    response : str, default "catch_total"
        Catch column to sum.
    interview_col : str, optional
        Interview identifier for long-format data with one row per
        species caught. Without it each row is an interview.
    group_name : str, optional
        Label written to the ``species_group`` column; defaults to the
        species joined with ``"+"``.

    Returns
    -------
    tuple[Design, SpeciesAggregation]
        Design with one row per interview, the summed catch in
        ``response`` and a ``species_group`` column, and a summary of
        which species were found.

    Raises
    ------
    EmptySampleError
        None of the requested species occur in the data.
    """
    species = [str(s) for s in dict.fromkeys(species)]
    if not species:
        raise InvalidParameterError("At least one species is required")
    require_columns([species_col, response, interview_col], design.data.columns)

    present = set(design.data[species_col].cast(pl.Utf8).drop_nulls().to_list())
    included = [s for s in species if s in present]
    missing = [s for s in species if s not in present]
    if not included:
        raise EmptySampleError(
            f"None of the requested species are present in '{species_col}': {', '.join(species)}"
        )
    if missing:
        warnings.warn(
            f"Requested species not found in the data: {', '.join(missing)}",
            DataQualityWarning,
            stacklevel=2,
        )

    label = group_name or "+".join(species)
    in_set = pl.col(species_col).cast(pl.Utf8).is_in(included)
    summed = (
        pl.when(in_set).then(pl.col(response).cast(pl.Float64)).otherwise(0.0).fill_null(0.0)
    )

    if interview_col is None:
        aggregated = design.with_columns(summed.alias(response))
    else:
        others = [
            c for c in design.data.columns
            if c not in (interview_col, response, species_col, *DESIGN_COLS)
        ]
        aggregated = design.collapse(
            [interview_col],
            [summed.sum().alias(response), *[pl.first(c) for c in others]],
            within_psu=False,
        )
    aggregated = aggregated.with_columns(pl.lit(label).alias(SPECIES_GROUP_COL))

    n_with_catch = int((aggregated.data[response] > 0).sum())
    summary = SpeciesAggregation(
        group_name=label,
        response=response,
        species_included=included,
        species_missing=missing,
        n_species=len(included),
        n_interviews=aggregated.n,
        n_interviews_with_catch=n_with_catch,
    )
    logger.debug(
        "Aggregated %d species into '%s' over %d interviews",
        len(included), label, aggregated.n,
    )
    return aggregated, summary


def estimate_cpue(
    design: Design,
    mode: Union[CpueMode, str] = CpueMode.RATIO_OF_MEANS,
    response: str = "catch_total",
    effort_col: str = "hours_fished",
    by: Optional[list[str]] = None,
    species: Optional[Sequence[str]] = None,
    species_col: str = "species",
    interview_col: Optional[str] = None,
    conf_level: Optional[float] = None,
    variance_method: Optional[str] = None,
    config: Optional[EstimationConfig] = None,
    **options: Any,
) -> EstimateSet:
    """
    Estimate catch per unit effort from interviews.

    Parameters
    ----------
    design : Design
        Design over interviews.
    mode : CpueMode or str, default "ratio_of_means"
        ``"ratio_of_means"`` for complete trips or ``"mean_of_ratios"``
        for incomplete (roving) trips.
    response : str, default "catch_total"
    effort_col : str, default "hours_fished"
    by : list[str], optional
        Grouping columns.
    species : list[str], optional
        Combine these species with :func:`aggregate_species` first. The
        output then carries a ``species_group`` column.
    conf_level, variance_method : optional
        Override ``config``.
    config : EstimationConfig, optional
    **options
        ``min_trip_hours``, ``length_bias`` and ``total_trip_col`` for
        mean-of-ratios.

    Returns
    -------
    EstimateSet
        One CPUE estimate per group.

    Examples
    --------
    >>> estimate_cpue(design, "mean_of_ratios", min_trip_hours=0.5)
    """
    try:
        mode = CpueMode(mode)
    except ValueError:
        raise UnsupportedMethodError(
            f"Unknown CPUE mode '{mode}'. "
            f"Valid modes: {', '.join(m.value for m in CpueMode)}"
        ) from None
    if conf_level is not None and not 0.0 < conf_level < 1.0:
        raise InvalidParameterError(f"conf_level must lie strictly in (0, 1), got {conf_level}")

    by = list(by or [])
    summary = None
    if species is not None:
        design, summary = aggregate_species(
            design, species, species_col=species_col, response=response,
            interview_col=interview_col,
        )
        by = [SPECIES_GROUP_COL, *[b for b in by if b != SPECIES_GROUP_COL]]

    estimator_config = {
        **options,
        "response": response,
        "effort_col": effort_col,
        "by": by,
        "conf_level": conf_level,
        "variance_method": variance_method,
        "species_summary": summary,
    }
    return CPUE_ESTIMATORS[mode](design, estimator_config, config).estimate()
