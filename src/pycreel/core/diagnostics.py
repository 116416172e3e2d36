"""
Quality diagnostics for a survey design.

:func:`design_diagnostics` summarises the sample, strata, PSUs and
weights of a :class:`~pycreel.core.design.Design` and lists the issues
that are likely to make variance estimates unstable, with a
recommendation for each.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
import polars as pl
from pydantic import BaseModel, ConfigDict, Field

from ..estimation.constants import (
    ADEQUATE_SAMPLE_SIZE,
    EXTREME_WEIGHT_HIGH,
    EXTREME_WEIGHT_LOW,
    FPC_COL,
    PSU_COL,
    STRATUM_COL,
)
from .design import Design
from .exceptions import EmptySampleError

logger = logging.getLogger(__name__)

SMALL_STRATUM_SIZE = 5
SMALL_PSU_SIZE = 3
BALANCE_RATIO = 2.0


class StrataSummary(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    n_strata: int
    sizes: dict[str, int]
    psu_per_stratum: dict[str, int]
    min_size: int
    max_size: int
    mean_size: float
    balanced: bool
    singleton_strata: list[str] = Field(default_factory=list)
    small_strata: list[str] = Field(default_factory=list)
    lonely_psu_strata: list[str] = Field(default_factory=list)


class PsuSummary(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    n_psu: int
    mean_size: float
    min_size: int
    max_size: int
    singleton_psus: int
    small_psus: int


class WeightSummary(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    min_weight: float
    max_weight: float
    mean_weight: float
    median_weight: float
    cv_weights: float
    range_ratio: float
    n_extreme: int


class ReplicateSummary(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    method: str
    n_replicates: int
    scale: float
    n_distinct_rscales: int
    seed: Optional[int] = None


class DesignDiagnostics(BaseModel):
    """Result of :func:`design_diagnostics`.

    Attributes
    ----------
    n_observations : int
    adequate_sample : bool
        True when the design holds at least 30 observations.
    strata : StrataSummary
    psus : PsuSummary
    weights : WeightSummary
    has_fpc : bool
    replicates : ReplicateSummary, optional
    issues : list[str]
        One line per problem found, empty for a clean design.
    recommendations : list[str]
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    n_observations: int
    adequate_sample: bool
    strata: StrataSummary
    psus: PsuSummary
    weights: WeightSummary
    has_fpc: bool
    replicates: Optional[ReplicateSummary] = None
    issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues


def _strata_summary(design: Design) -> StrataSummary:
    counts = design.psu_counts()
    sizes = dict(zip(counts[STRATUM_COL].to_list(), counts["n_obs"].to_list()))
    psus = dict(zip(counts[STRATUM_COL].to_list(), counts["n_psu"].to_list()))
    n_obs = counts["n_obs"]
    return StrataSummary(
        n_strata=counts.height,
        sizes=sizes,
        psu_per_stratum=psus,
        min_size=int(n_obs.min()),
        max_size=int(n_obs.max()),
        mean_size=float(n_obs.mean()),
        balanced=n_obs.max() / n_obs.min() < BALANCE_RATIO,
        singleton_strata=[s for s, n in sizes.items() if n == 1],
        small_strata=[s for s, n in sizes.items() if n < SMALL_STRATUM_SIZE],
        lonely_psu_strata=[s for s, n in psus.items() if n == 1],
    )


def _psu_summary(design: Design) -> PsuSummary:
    sizes = design.data.group_by(PSU_COL).agg(pl.len().alias("size"))["size"]
    return PsuSummary(
        n_psu=sizes.len(),
        mean_size=float(sizes.mean()),
        min_size=int(sizes.min()),
        max_size=int(sizes.max()),
        singleton_psus=int((sizes == 1).sum()),
        small_psus=int((sizes < SMALL_PSU_SIZE).sum()),
    )


def _weight_summary(weights: np.ndarray) -> WeightSummary:
    mean = float(np.mean(weights))
    sd = float(np.std(weights, ddof=1)) if weights.size > 1 else 0.0
    extreme = (weights > EXTREME_WEIGHT_HIGH * mean) | (weights < EXTREME_WEIGHT_LOW * mean)
    low = float(np.min(weights))
    return WeightSummary(
        min_weight=low,
        max_weight=float(np.max(weights)),
        mean_weight=mean,
        median_weight=float(np.median(weights)),
        cv_weights=sd / mean if mean > 0 else float("nan"),
        range_ratio=float(np.max(weights)) / low if low > 0 else float("inf"),
        n_extreme=int(extreme.sum()),
    )


def design_diagnostics(design: Design) -> DesignDiagnostics:
    """
    Check a design for conditions that undermine variance estimation.

    Parameters
    ----------
    design : Design
        A non-empty design.

    Returns
    -------
    DesignDiagnostics
        Summaries plus ``issues`` and ``recommendations``.

    Examples
    --------
    >>> report = design_diagnostics(design)
    >>> for issue in report.issues:
    ...     print(issue)
    """
    if design.n == 0:
        raise EmptySampleError("Cannot diagnose an empty design")
    strata = _strata_summary(design)
    psus = _psu_summary(design)
    weights = _weight_summary(design.weights)
    has_fpc = design.data[FPC_COL].null_count() < design.n

    issues: list[str] = []
    recommendations: list[str] = []

    adequate = design.n >= ADEQUATE_SAMPLE_SIZE
    if not adequate:
        issues.append(f"Very small sample size (n = {design.n})")
        recommendations.append(
            "Interpret standard errors with caution; consider pooling sampling periods"
        )

    if strata.lonely_psu_strata:
        issues.append(
            f"{len(strata.lonely_psu_strata)} stratum/strata with a single PSU: "
            f"{', '.join(strata.lonely_psu_strata)}"
        )
        recommendations.append(
            "Collapse single-PSU strata with a neighbour or set lonely_psu to "
            "'adjust' or 'remove'"
        )
    elif strata.small_strata:
        issues.append(
            f"{len(strata.small_strata)} small strata (n < {SMALL_STRATUM_SIZE}) detected"
        )
        recommendations.append("Consider collapsing small strata")

    if not strata.balanced and strata.n_strata > 1:
        recommendations.append(
            "Strata sizes are unbalanced; check that sampling effort matches the allocation"
        )

    if psus.singleton_psus and design.cluster_var is not None:
        issues.append(f"{psus.singleton_psus} PSU(s) hold a single observation")

    if weights.n_extreme:
        issues.append(
            f"{weights.n_extreme} extreme weight(s) (> {EXTREME_WEIGHT_HIGH:g}x or "
            f"< {EXTREME_WEIGHT_LOW:g}x the mean weight)"
        )
        recommendations.append("Consider weight trimming or post-stratification")

    replicates = None
    if design.replicates is not None:
        rep = design.replicates
        replicates = ReplicateSummary(
            method=rep.method,
            n_replicates=rep.n_replicates,
            scale=rep.scale,
            n_distinct_rscales=int(np.unique(rep.rscales).size),
            seed=rep.seed,
        )

    logger.debug("Design diagnostics: %d issue(s)", len(issues))
    return DesignDiagnostics(
        n_observations=design.n,
        adequate_sample=adequate,
        strata=strata,
        psus=psus,
        weights=weights,
        has_fpc=has_fpc,
        replicates=replicates,
        issues=issues,
        recommendations=recommendations,
    )
