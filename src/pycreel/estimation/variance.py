"""
Variance calculation functions for creel estimation.

This module provides the linearization (Taylor series) variance formulas
shared by every estimator, together with the replicate-variance formula
and confidence-interval helpers.

Stratified Total Variance (V(Y)):
---------------------------------

Observations are first summed to weighted PSU totals
``t_hj = Σ_i w_i y_i`` (days for count surveys). With-replacement
variance of the estimated total is then

    V(Y) = Σ_h (1 - f_h) × n_h × s²_yh

Where:
- n_h = number of sampled PSUs in stratum h
- s²_yh = sample variance of PSU totals within stratum h (ddof=1)
- f_h = n_h / N_h when the population PSU count N_h is known, else 0

Ratio Variance (V(R)):
----------------------

For ratios R = Y/X (CPUE, means, per-unit rates) the linearized variance
is computed stratum by stratum from the same PSU totals:

    V(R) = (1/X²) × Σ_h (1 - f_h) × n_h × (s²_yh - 2R × cov_yxh + R² × s²_xh)

which is the expansion of (1/X²) × [V(Y) + R² × V(X) - 2R × Cov(Y,X)].
A mean is the ratio with x = 1 (or the domain indicator).

Key implementation requirements:
- Include ALL PSUs (even with zero values) in variance calculations;
  domain estimates zero out values, never drop rows
- Use ddof=1 for sample variance calculation
- Single-PSU ("lonely") strata are handled by an explicit policy:
  ``"na"`` makes the variance undefined, ``"remove"`` drops the stratum
  and ``"adjust"`` centres the stratum at the grand mean of PSU totals

Replicate Variance:
-------------------

    V(θ) = scale × Σ_r rscale_r × (θ_r - c)²

where c is the mean of the replicate estimates (bootstrap, jackknife) or
the full-sample estimate (BRR).

Reference:
    Cochran, W. G. 1977. Sampling Techniques, 3rd ed. Wiley.
    Lumley, T. 2010. Complex Surveys: A Guide to Analysis Using R. Wiley.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence

import numpy as np
import polars as pl
from scipy.stats import norm

from .constants import DEFAULT_CONF_LEVEL, FPC_COL, PSU_COL, STRATUM_COL


def psu_totals(data: pl.DataFrame, value_cols: Sequence[str]) -> pl.DataFrame:
    """Sum per-observation values to one row per PSU.

    Parameters
    ----------
    data : pl.DataFrame
        Design data holding ``_psu``, ``_stratum``, ``_fpc`` and the
        already-weighted value columns.
    value_cols : list[str]
        Columns to sum.

    Returns
    -------
    pl.DataFrame
        One row per PSU with the stratum, the FPC and the summed values.
    """
    return data.group_by(PSU_COL, maintain_order=True).agg(
        pl.first(STRATUM_COL),
        pl.first(FPC_COL),
        *[pl.col(c).sum() for c in value_cols],
    )


def stratum_statistics(
    psu_data: pl.DataFrame, y_col: str, x_col: Optional[str] = None
) -> pl.DataFrame:
    """Per-stratum moments of PSU totals.

    Returns one row per stratum with ``n_h``, ``ybar_h``, ``s2_yh`` and
    the finite population factor ``fpc_h = 1 - n_h/N_h`` (1 when no FPC
    was declared). When ``x_col`` is given, ``xbar_h``, ``s2_xh`` and
    ``cov_yxh`` are added.
    """
    agg_exprs = [
        pl.len().alias("n_h"),
        pl.mean(y_col).alias("ybar_h"),
        pl.var(y_col, ddof=1).alias("s2_yh"),
        pl.first(FPC_COL).cast(pl.Float64).alias("N_h"),
    ]
    if x_col is not None:
        agg_exprs.extend(
            [
                pl.mean(x_col).alias("xbar_h"),
                pl.var(x_col, ddof=1).alias("s2_xh"),
                pl.cov(y_col, x_col, ddof=1).alias("cov_yxh"),
            ]
        )

    strata_stats = psu_data.group_by(STRATUM_COL, maintain_order=True).agg(agg_exprs)

    fill_cols = ["ybar_h", "s2_yh"]
    if x_col is not None:
        fill_cols += ["xbar_h", "s2_xh", "cov_yxh"]
    return strata_stats.with_columns(
        [pl.col(c).fill_null(0.0).fill_nan(0.0).cast(pl.Float64) for c in fill_cols]
    ).with_columns(
        pl.when(pl.col("N_h").is_not_null())
        .then(1.0 - pl.col("n_h") / pl.col("N_h"))
        .otherwise(1.0)
        .alias("fpc_h")
    )


def _lonely_mask() -> pl.Expr:
    # A single PSU in a fully enumerated stratum is a certainty unit, not lonely
    return (pl.col("n_h") == 1) & (pl.col("fpc_h") > 0)


def _lonely_term(lonely_psu: str, adjusted: pl.Expr) -> pl.Expr:
    if lonely_psu == "remove":
        return pl.lit(0.0)
    if lonely_psu == "adjust":
        return pl.col("fpc_h") * adjusted
    return pl.lit(float("nan"))


def calculate_total_variance(
    psu_data: pl.DataFrame, y_col: str, lonely_psu: str = "na"
) -> dict:
    """Stratified with-replacement variance of an estimated total.

    V(Y) = Σ_h (1 - f_h) × n_h × s²_yh

    Parameters
    ----------
    psu_data : pl.DataFrame
        Output of :func:`psu_totals`.
    y_col : str
        Column of weighted PSU totals.
    lonely_psu : {"na", "remove", "adjust"}
        Treatment of single-PSU strata.

    Returns
    -------
    dict
        ``total``, ``variance``, ``se``, ``lonely_strata`` (list of
        labels) and ``strata`` (per-stratum components as a DataFrame).
    """
    strata_stats = stratum_statistics(psu_data, y_col)
    grand_mean = psu_data[y_col].mean() if psu_data.height else 0.0

    strata_stats = strata_stats.with_columns(
        pl.when(_lonely_mask())
        .then(_lonely_term(lonely_psu, (pl.col("ybar_h") - grand_mean) ** 2))
        .when(pl.col("n_h") > 1)
        .then(pl.col("fpc_h") * pl.col("n_h") * pl.col("s2_yh"))
        .otherwise(0.0)
        .alias("v_y_h"),
        (pl.col("ybar_h") * pl.col("n_h")).alias("total_y_h"),
    )

    lonely = strata_stats.filter(_lonely_mask())[STRATUM_COL].to_list()
    total = float(strata_stats["total_y_h"].sum())
    variance = float(strata_stats["v_y_h"].sum())
    variance = _clamp(variance)

    return {
        "total": total,
        "variance": variance,
        "se": safe_float_sqrt(variance),
        "lonely_strata": lonely,
        "strata": strata_stats.select(
            STRATUM_COL, "n_h", "total_y_h", pl.col("v_y_h").alias("variance")
        ),
    }


def calculate_ratio_variance(
    psu_data: pl.DataFrame, y_col: str, x_col: str, lonely_psu: str = "na"
) -> dict:
    """Linearized variance of a ratio of totals R = Y/X.

    Uses the per-stratum formula:
        V(R) = (1/X²) × Σ_h (1 - f_h) × n_h × (s²_y - 2R × cov_yx + R² × s²_x)

    When X is zero the ratio is reported as 0.0 and its variance as NaN.

    Returns
    -------
    dict
        ``ratio``, ``total_y``, ``total_x``, ``variance``, ``se``,
        ``lonely_strata``, ``zero_denominator`` and ``strata``.
    """
    strata_stats = stratum_statistics(psu_data, y_col, x_col)
    strata_stats = strata_stats.with_columns(
        (pl.col("ybar_h") * pl.col("n_h")).alias("total_y_h"),
        (pl.col("xbar_h") * pl.col("n_h")).alias("total_x_h"),
    )
    total_y = float(strata_stats["total_y_h"].sum())
    total_x = float(strata_stats["total_x_h"].sum())
    lonely = strata_stats.filter(_lonely_mask())[STRATUM_COL].to_list()

    if total_x <= 0:
        return {
            "ratio": 0.0,
            "total_y": total_y,
            "total_x": total_x,
            "variance": float("nan"),
            "se": float("nan"),
            "lonely_strata": lonely,
            "zero_denominator": True,
            "strata": strata_stats.select(
                STRATUM_COL, "n_h", "total_y_h", "total_x_h",
                pl.lit(float("nan")).alias("variance"),
            ),
        }

    ratio = total_y / total_x
    y_mean = psu_data[y_col].mean()
    x_mean = psu_data[x_col].mean()
    adjusted = (
        (pl.col("ybar_h") - y_mean) - ratio * (pl.col("xbar_h") - x_mean)
    ) ** 2

    strata_stats = strata_stats.with_columns(
        pl.when(_lonely_mask())
        .then(_lonely_term(lonely_psu, adjusted))
        .when(pl.col("n_h") > 1)
        .then(
            pl.col("fpc_h")
            * pl.col("n_h")
            * (
                pl.col("s2_yh")
                - 2.0 * ratio * pl.col("cov_yxh")
                + ratio**2 * pl.col("s2_xh")
            )
        )
        .otherwise(0.0)
        .alias("v_ratio_h")
    ).with_columns((pl.col("v_ratio_h") / total_x**2).alias("variance"))

    variance = _clamp(float(strata_stats["variance"].sum()))
    return {
        "ratio": ratio,
        "total_y": total_y,
        "total_x": total_x,
        "variance": variance,
        "se": safe_float_sqrt(variance),
        "lonely_strata": lonely,
        "zero_denominator": False,
        "strata": strata_stats.select(
            STRATUM_COL, "n_h", "total_y_h", "total_x_h", "variance"
        ),
    }


def replicate_variance(
    replicate_estimates: np.ndarray,
    full_estimate: float,
    scale: float,
    rscales: np.ndarray,
    center: str = "mean",
) -> float:
    """Variance from replicate estimates.

    V = scale × Σ_r rscale_r × (θ_r - c)²

    Replicates whose estimate is not finite (e.g. a ratio whose
    denominator vanished in that replicate) are dropped together with
    their rscale.
    """
    estimates = np.asarray(replicate_estimates, dtype=np.float64)
    rscales = np.asarray(rscales, dtype=np.float64)
    keep = np.isfinite(estimates)
    if keep.sum() < 2:
        return float("nan")
    estimates = estimates[keep]
    rscales = rscales[keep]
    centre = full_estimate if center == "full" else estimates.mean()
    return float(scale * np.sum(rscales * (estimates - centre) ** 2))


def _clamp(variance: float) -> float:
    if math.isnan(variance):
        return variance
    return max(variance, 0.0)


# =============================================================================
# Utility functions
# =============================================================================


def safe_float_sqrt(value: float) -> float:
    """Square root that propagates NaN and maps negatives to 0."""
    if value is None or math.isnan(value):
        return float("nan")
    return math.sqrt(max(value, 0.0))


def calculate_confidence_interval(
    estimate: float, se: float, confidence: float = DEFAULT_CONF_LEVEL
) -> tuple[float, float]:
    """
    Calculate confidence interval using normal approximation.

    Parameters
    ----------
    estimate : float
        Point estimate
    se : float
        Standard error; NaN yields NaN bounds
    confidence : float
        Confidence level, strictly between 0 and 1

    Returns
    -------
    tuple[float, float]
        Lower and upper bounds of confidence interval
    """
    if not 0.0 < confidence < 1.0:
        raise ValueError(f"confidence must be strictly between 0 and 1, got {confidence}")
    if se is None or math.isnan(se):
        return float("nan"), float("nan")
    z = float(norm.ppf(1.0 - (1.0 - confidence) / 2.0))
    return estimate - z * se, estimate + z * se


def calculate_cv(estimate: float, se: float) -> float:
    """
    Calculate coefficient of variation as percentage.

    Parameters
    ----------
    estimate : float
        Point estimate
    se : float
        Standard error

    Returns
    -------
    float
        Coefficient of variation as percentage
    """
    if estimate != 0:
        return 100 * se / abs(estimate)
    return 0.0
