"""
Variance decomposition for sample allocation.

Splits the variability of a response into a between-PSU component
(survey days) and a within-PSU component (counts or interviews on the
same day) with a one-way ANOVA of PSUs nested in strata:

    MSW = Σ_j Σ_i (y_ij - ȳ_j)² / (n - J)
    MSB = Σ_j m_j (ȳ_j - ȳ_h(j))² / (J - H)

    σ²_within  = MSW
    σ²_between = max(0, (MSB - MSW) / m0)

Where:
- J = number of PSUs, H = number of strata, m_j = observations in PSU j
- ȳ_h(j) = observation mean of the stratum holding PSU j
- m0 = (n - Σ_h Σ_j m_j² / n_h) / (J - H), the effective PSU size

The intraclass correlation ρ = σ²_between / (σ²_between + σ²_within)
gives the Kish design effect of clustering, ``1 + (m̄ - 1) ρ``, and the
cost-optimal number of observations per PSU,
``sqrt(c_psu / c_obs × (1 - ρ) / ρ)``.

The ANOVA is unweighted; it describes the sampled units, not the
population.

Reference:
    Cochran, W. G. 1977. Sampling Techniques, 3rd ed. Wiley. Ch. 10.
"""

from __future__ import annotations

import logging
import math
import warnings

import polars as pl

from ..core.design import Design
from ..core.exceptions import (
    DataQualityWarning,
    InvalidDesignError,
    InvalidParameterError,
    require_columns,
)
from .constants import PSU_COL, STRATUM_COL
from .results import VarianceDecomposition

logger = logging.getLogger(__name__)


def decompose_variance(
    design: Design, response: str, cost_ratio: float = 1.0
) -> VarianceDecomposition:
    """
    Decompose the variance of ``response`` into between- and within-PSU parts.

    Parameters
    ----------
    design : Design
        A clustered design; at least one PSU must hold two observations.
    response : str
        Column to decompose. Rows with a missing value are dropped.
    cost_ratio : float
        Cost of adding a PSU relative to one more observation within a
        PSU, used for the optimal PSU size.

    Returns
    -------
    VarianceDecomposition

    Raises
    ------
    InvalidDesignError
        No PSU holds more than one observation, or no stratum holds
        more than one PSU.
    """
    if cost_ratio <= 0:
        raise InvalidParameterError(f"cost_ratio must be positive, got {cost_ratio}")
    require_columns([response], design.data.columns)

    data = design.data.select(
        PSU_COL, STRATUM_COL, pl.col(response).cast(pl.Float64).alias("_y")
    )
    valid = data.filter(pl.col("_y").is_not_null() & pl.col("_y").is_finite())
    if valid.height < data.height:
        warnings.warn(
            f"Excluded {data.height - valid.height} observation(s) with missing '{response}'",
            DataQualityWarning,
            stacklevel=2,
        )

    psus = valid.group_by(PSU_COL, maintain_order=True).agg(
        pl.first(STRATUM_COL),
        pl.len().alias("m_j"),
        pl.col("_y").mean().alias("ybar_j"),
        ((pl.col("_y") - pl.col("_y").mean()) ** 2).sum().alias("ss_j"),
    )
    psus = psus.with_columns(
        (
            (pl.col("m_j") * pl.col("ybar_j")).sum().over(STRATUM_COL)
            / pl.col("m_j").sum().over(STRATUM_COL)
        ).alias("ybar_h"),
        pl.col("m_j").sum().over(STRATUM_COL).alias("n_h"),
    )

    n = valid.height
    n_psu = psus.height
    n_strata = psus[STRATUM_COL].n_unique()
    df_within = n - n_psu
    df_between = n_psu - n_strata
    if df_within <= 0:
        raise InvalidDesignError(
            "Variance decomposition needs a PSU with at least 2 observations"
        )
    if df_between <= 0:
        raise InvalidDesignError(
            "Variance decomposition needs a stratum with at least 2 PSUs"
        )

    ms_within = float(psus["ss_j"].sum()) / df_within
    ms_between = float(
        psus.select(
            (pl.col("m_j") * (pl.col("ybar_j") - pl.col("ybar_h")) ** 2).sum()
        ).item()
    ) / df_between
    m0 = (n - float(psus.select((pl.col("m_j") ** 2 / pl.col("n_h")).sum()).item())) / df_between

    between = max(0.0, (ms_between - ms_within) / m0)
    within = ms_within
    total = between + within
    if total > 0:
        icc = between / total
        proportions = {"between_psu": between / total, "within_psu": within / total}
    else:
        icc = float("nan")
        proportions = {"between_psu": float("nan"), "within_psu": float("nan")}

    mean_psu_size = n / n_psu
    optimal = math.sqrt(cost_ratio * within / between) if between > 0 else None
    recommendation = None
    if optimal is not None:
        recommendation = (
            f"Sample about {optimal:.1f} observations per PSU "
            f"(currently {mean_psu_size:.1f})"
        )
    logger.debug(
        "Decomposed '%s': between=%.6g within=%.6g icc=%.4f", response, between, within, icc
    )

    return VarianceDecomposition(
        response=response,
        n_observations=n,
        n_psu=n_psu,
        n_strata=n_strata,
        mean_psu_size=mean_psu_size,
        ms_between=ms_between,
        ms_within=ms_within,
        components={"between_psu": between, "within_psu": within},
        proportions=proportions,
        icc=icc,
        deff=1.0 + (mean_psu_size - 1.0) * icc,
        optimal_psu_size=optimal,
        recommendation=recommendation,
    )
