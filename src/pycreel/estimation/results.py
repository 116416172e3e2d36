"""
Result containers for creel estimates.

:class:`Estimate` is one point estimate with its uncertainty and the
diagnostics of the estimator that produced it. :class:`EstimateSet` is
the ordered collection returned by every estimator, one Estimate per
observed combination of the grouping variables.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Union

import polars as pl
from pydantic import BaseModel, ConfigDict, Field

from ..core.exceptions import InvalidParameterError
from .variance import calculate_confidence_interval, calculate_cv


class VarianceInfo(BaseModel):
    """How the variance of an estimate was obtained."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    method: str
    requested_method: str
    fallback_from: Optional[str] = None
    fallback_reason: Optional[str] = None
    n_replicates: Optional[int] = None
    n: int = 0
    n_strata: int = 0
    n_psu: int = 0
    lonely_strata: list[str] = Field(default_factory=list)
    strata_variance: dict[str, float] = Field(default_factory=dict)
    zero_denominator: bool = False
    deff: Optional[float] = None


class EffortDiagnostics(BaseModel):
    """Diagnostics common to all effort estimators."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: str
    n_observations: int
    n_psu: int
    mean_expansion_factor: Optional[float] = None
    mean_visibility: Optional[float] = None
    mean_calibration: Optional[float] = None
    n_clamped: int = 0
    n_dropped: int = 0
    variance_components: dict[str, float] = Field(default_factory=dict)
    extra: dict[str, Any] = Field(default_factory=dict)


class CpueDiagnostics(BaseModel):
    """Diagnostics of a catch-per-unit-effort estimate."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    mode: str
    response: str
    n_original: int
    n_used: int
    n_truncated: int = 0
    truncation_rate: float = 0.0
    min_trip_hours: Optional[float] = None
    n_zero_effort_excluded: int = 0
    length_bias_correction: str = "none"
    correction_applied: bool = False
    mean_total_effort: Optional[float] = None
    mean_bias_weight: Optional[float] = None
    mean_effort: Optional[float] = None
    sd_effort: Optional[float] = None
    mean_rate: Optional[float] = None
    sd_rate: Optional[float] = None
    species_included: list[str] = Field(default_factory=list)
    species_missing: list[str] = Field(default_factory=list)
    zero_denominator: bool = False
    variance_components: dict[str, float] = Field(default_factory=dict)
    extra: dict[str, Any] = Field(default_factory=dict)


class CatchDiagnostics(BaseModel):
    """Diagnostics of a weighted catch total."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    response: str
    n_observations: int
    n_psu: int
    variance_components: dict[str, float] = Field(default_factory=dict)


class HarvestDiagnostics(BaseModel):
    """Inputs and variance decomposition of a product estimate."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    effort_estimate: float
    effort_se: float
    cpue_estimate: float
    cpue_se: float
    correlation_used: Optional[float] = None
    var_effort: float
    var_cpue: float
    covariance: float = 0.0
    var_total: float


class VarianceDecomposition(BaseModel):
    """Between- and within-PSU variance components of a response.

    Components come from a one-way ANOVA of observations on PSUs nested
    in strata, so differences between strata do not count as
    between-PSU variance.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    response: str
    n_observations: int
    n_psu: int
    n_strata: int
    mean_psu_size: float
    ms_between: float
    ms_within: float
    components: dict[str, float]
    proportions: dict[str, float]
    icc: float
    deff: float
    optimal_psu_size: Optional[float] = None
    recommendation: Optional[str] = None


Diagnostics = Union[EffortDiagnostics, CpueDiagnostics, CatchDiagnostics, HarvestDiagnostics]


@dataclass(frozen=True)
class Estimate:
    """A point estimate with standard error and confidence interval.

    ``se`` is NaN when the variance is undefined (for example a stratum
    with a single PSU); the interval bounds are then NaN as well.
    """

    estimate: float
    se: float
    ci_low: float
    ci_high: float
    n: int
    method: str
    diagnostics: Optional[Diagnostics] = None
    variance_info: Optional[VarianceInfo] = None
    group: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        estimate: float,
        variance: float,
        n: int,
        method: str,
        conf_level: float,
        diagnostics: Optional[Diagnostics] = None,
        variance_info: Optional[VarianceInfo] = None,
        group: Optional[dict[str, Any]] = None,
    ) -> "Estimate":
        """Construct an Estimate from a variance, deriving se and the interval."""
        if variance is None or math.isnan(variance):
            se = float("nan")
        else:
            se = math.sqrt(max(variance, 0.0))
        ci_low, ci_high = calculate_confidence_interval(estimate, se, conf_level)
        return cls(
            estimate=float(estimate),
            se=se,
            ci_low=ci_low,
            ci_high=ci_high,
            n=int(n),
            method=method,
            diagnostics=diagnostics,
            variance_info=variance_info,
            group=dict(group or {}),
        )

    @property
    def variance(self) -> float:
        return self.se**2

    @property
    def cv(self) -> float:
        """Coefficient of variation in percent."""
        return calculate_cv(self.estimate, self.se)


@dataclass(frozen=True)
class EstimateSet:
    """Ordered estimates keyed by their grouping values.

    Parameters
    ----------
    by : tuple[str, ...]
        Grouping column names; empty for an ungrouped estimate.
    estimates : tuple[Estimate, ...]
        One Estimate per group, in order of first appearance.
    """

    by: tuple[str, ...]
    estimates: tuple[Estimate, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "by", tuple(self.by))
        object.__setattr__(self, "estimates", tuple(self.estimates))

    def __iter__(self) -> Iterator[Estimate]:
        return iter(self.estimates)

    def __len__(self) -> int:
        return len(self.estimates)

    def __getitem__(self, key: Union[int, tuple, Any]) -> Estimate:
        """Look up by position or by grouping key.

        A single grouping variable may be looked up by its bare value.
        """
        if isinstance(key, int) and not self.by:
            return self.estimates[key]
        if not isinstance(key, tuple):
            key = (key,)
        for est in self.estimates:
            if self.key_of(est) == key:
                return est
        raise KeyError(key)

    def key_of(self, estimate: Estimate) -> tuple:
        return tuple(estimate.group.get(b) for b in self.by)

    def keys(self) -> list[tuple]:
        return [self.key_of(est) for est in self.estimates]

    def single(self) -> Estimate:
        """Return the only estimate of an ungrouped set."""
        if len(self.estimates) != 1:
            raise InvalidParameterError(
                f"Expected a single estimate, found {len(self.estimates)}"
            )
        return self.estimates[0]

    def to_polars(self) -> pl.DataFrame:
        """Downstream table: grouping columns, estimate, se, CI, n, method, diagnostics."""
        columns: dict[str, Any] = {b: [e.group.get(b) for e in self.estimates] for b in self.by}
        columns.update(
            {
                "estimate": pl.Series([e.estimate for e in self.estimates], dtype=pl.Float64),
                "se": pl.Series([e.se for e in self.estimates], dtype=pl.Float64),
                "ci_low": pl.Series([e.ci_low for e in self.estimates], dtype=pl.Float64),
                "ci_high": pl.Series([e.ci_high for e in self.estimates], dtype=pl.Float64),
                "n": pl.Series([e.n for e in self.estimates], dtype=pl.Int64),
                "method": pl.Series([e.method for e in self.estimates], dtype=pl.Utf8),
                "diagnostics": pl.Series(
                    [e.diagnostics for e in self.estimates], dtype=pl.Object
                ),
            }
        )
        return pl.DataFrame(columns)
