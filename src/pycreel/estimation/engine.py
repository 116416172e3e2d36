"""
Variance engine.

Every estimator in pycreel reduces to one of three design-weighted
statistics, a total, a mean or a ratio of totals, computed over a
:class:`~pycreel.core.design.Design`, optionally within a domain. This
module is the single place where those statistics and their variances
are computed, either by linearization (see :mod:`.variance`) or by
replication over the design's replicate weights.

Domains (groups, retained interviews) are handled by zeroing the
response outside the domain rather than dropping rows, so the variance
always reflects the full sampling design.
"""

from __future__ import annotations

import itertools
import logging
import warnings
from dataclasses import dataclass, replace
from typing import Any, NamedTuple, Optional, Sequence

import numpy as np
import polars as pl

from ..core.config import EstimationConfig
from ..core.design import Design, ReplicateSet
from ..core.exceptions import (
    DataQualityWarning,
    EmptySampleError,
    InvalidParameterError,
    LonelyPSUWarning,
    MethodFallbackWarning,
    SmallSampleWarning,
    UnsupportedMethodError,
    require_columns,
)
from .constants import (
    FPC_COL,
    JACKKNIFE,
    LINEARIZATION,
    PSU_COL,
    STATISTICS,
    STRATUM_COL,
    SURVEY_ALIAS,
    VARIANCE_METHODS,
)
from .replicates import jackknife_replicates
from .results import VarianceInfo
from .variance import (
    calculate_ratio_variance,
    calculate_total_variance,
    psu_totals,
    replicate_variance,
)

logger = logging.getLogger(__name__)


class StatisticResult(NamedTuple):
    """Point estimate, variance and how the variance was obtained."""

    estimate: float
    variance: float
    info: VarianceInfo

    @property
    def se(self) -> float:
        return float(np.sqrt(self.variance)) if np.isfinite(self.variance) else float("nan")


@dataclass(frozen=True)
class _MethodPlan:
    """Resolved variance method for one engine call."""

    method: str
    requested: str
    replicates: Optional[ReplicateSet] = None
    fallback_from: Optional[str] = None
    fallback_reason: Optional[str] = None


def resolve_method(design: Design, method: Optional[str], config: EstimationConfig) -> _MethodPlan:
    """Decide how the variance will be computed.

    Bootstrap and BRR need replicate weights of the same kind attached to
    the design; without them the engine falls back to linearization and
    reports the method as ``"survey"``. Jackknife replicates are built on
    demand.
    """
    requested = (method or config.variance_method).strip().lower()
    if requested not in VARIANCE_METHODS:
        raise UnsupportedMethodError(
            f"Unknown variance method '{requested}'. "
            f"Valid methods: {', '.join(VARIANCE_METHODS)}"
        )
    if requested in (LINEARIZATION, SURVEY_ALIAS):
        return _MethodPlan(method=requested, requested=requested)

    attached = design.replicates
    if attached is not None and attached.method == requested:
        return _MethodPlan(method=requested, requested=requested, replicates=attached)

    if requested == JACKKNIFE:
        logger.info("Building delete-one-PSU jackknife replicates on demand")
        return _MethodPlan(
            method=JACKKNIFE, requested=requested, replicates=jackknife_replicates(design)
        )

    reason = (
        f"no {requested} replicate weights attached to the design"
        if attached is None
        else f"design carries {attached.method} replicates, not {requested}"
    )
    warnings.warn(
        f"Variance method '{requested}' unavailable ({reason}); "
        "falling back to linearization",
        MethodFallbackWarning,
        stacklevel=3,
    )
    logger.info("Variance method fallback: %s -> survey (%s)", requested, reason)
    return _MethodPlan(
        method=SURVEY_ALIAS,
        requested=requested,
        fallback_from=requested,
        fallback_reason=reason,
    )


def domain_mask(data: pl.DataFrame, domain: Optional[pl.Expr]) -> np.ndarray:
    """Boolean membership of each row in ``domain`` (all rows when None)."""
    if domain is None:
        return np.ones(data.height, dtype=bool)
    return data.select(domain.fill_null(False).alias("_in")).to_series().to_numpy().astype(bool)


def _values(data: pl.DataFrame, column: str) -> np.ndarray:
    return data[column].cast(pl.Float64).to_numpy()


def compute_statistic(
    design: Design,
    response: str,
    statistic: str = "total",
    denominator: Optional[str] = None,
    method: Optional[str] = None,
    *,
    domain: Optional[pl.Expr] = None,
    config: Optional[EstimationConfig] = None,
) -> StatisticResult:
    """
    Compute a design-weighted statistic and its variance.

    Parameters
    ----------
    design : Design
        Sampling design over the observations.
    response : str
        Column of the response y.
    statistic : {"total", "mean", "ratio"}
        ``Σ w y``, ``Σ w y / Σ w`` or ``Σ w y / Σ w x``.
    denominator : str, optional
        Column of x, required for ``"ratio"``.
    method : str, optional
        Variance method; defaults to ``config.variance_method``.
    domain : pl.Expr, optional
        Boolean expression selecting the subpopulation. Rows outside it
        contribute zero but stay in the design.
    config : EstimationConfig, optional

    Returns
    -------
    StatisticResult
        ``(estimate, variance, info)``.

    Raises
    ------
    EmptySampleError
        The design holds no observations, or none fall in ``domain``.
    UnsupportedMethodError
        Unknown statistic or variance method.
    """
    config = config or EstimationConfig()
    plan = resolve_method(design, method, config)
    result = _compute(design, response, statistic, denominator, plan, domain, config)
    if result.info.n < config.small_group_threshold:
        warnings.warn(
            f"Only {result.info.n} observation(s) contribute to '{response}'; "
            f"fewer than {config.small_group_threshold}",
            SmallSampleWarning,
            stacklevel=2,
        )
    return result


def _validate_statistic(
    design: Design, response: str, statistic: str, denominator: Optional[str]
) -> None:
    if statistic not in STATISTICS:
        raise UnsupportedMethodError(
            f"Unknown statistic '{statistic}'. Valid statistics: {', '.join(STATISTICS)}"
        )
    if design.n == 0:
        raise EmptySampleError("The design holds no observations")
    if statistic == "ratio" and denominator is None:
        raise InvalidParameterError("A ratio requires a denominator column")
    require_columns([response, denominator], design.data.columns)


def _compute(
    design: Design,
    response: str,
    statistic: str,
    denominator: Optional[str],
    plan: _MethodPlan,
    domain: Optional[pl.Expr],
    config: EstimationConfig,
    allow_empty: bool = False,
) -> StatisticResult:
    _validate_statistic(design, response, statistic, denominator)
    data = design.data
    mask = domain_mask(data, domain)
    if not allow_empty and not mask.any():
        raise EmptySampleError("No observations fall in the requested domain")

    y = _values(data, response)
    missing_y = mask & ~np.isfinite(y)
    if missing_y.any():
        warnings.warn(
            f"Excluded {int(missing_y.sum())} observation(s) with missing '{response}'",
            DataQualityWarning,
            stacklevel=3,
        )
        mask &= ~missing_y

    if statistic == "ratio":
        x = _values(data, denominator)
        invalid = mask & ~(np.isfinite(x) & (x > 0))
        if invalid.any():
            warnings.warn(
                f"Excluded {int(invalid.sum())} observation(s) with missing, "
                f"zero or negative effort in '{denominator}'",
                DataQualityWarning,
                stacklevel=3,
            )
            mask &= ~invalid
    else:
        x = np.ones(design.n)

    w = design.weights
    y_dom = np.where(mask, y, 0.0)
    x_dom = np.where(mask, x, 0.0)
    n_used = int(mask.sum())

    psu_data = psu_totals(
        data.select(PSU_COL, STRATUM_COL, FPC_COL).with_columns(
            pl.Series("_y", w * y_dom), pl.Series("_x", w * x_dom)
        ),
        ["_y", "_x"],
    )

    if statistic == "total":
        lin = calculate_total_variance(psu_data, "_y", config.lonely_psu)
        estimate = lin["total"]
        zero_denominator = False
    else:
        lin = calculate_ratio_variance(psu_data, "_y", "_x", config.lonely_psu)
        estimate = lin["ratio"]
        zero_denominator = lin["zero_denominator"]
        if zero_denominator:
            warnings.warn(
                f"Estimated denominator for '{response}' is zero; "
                "reporting 0.0 with undefined standard error",
                DataQualityWarning,
                stacklevel=3,
            )

    info: dict[str, Any] = {
        "method": plan.method,
        "requested_method": plan.requested,
        "fallback_from": plan.fallback_from,
        "fallback_reason": plan.fallback_reason,
        "n": n_used,
        "n_strata": design.n_strata,
        "n_psu": psu_data.height,
        "zero_denominator": zero_denominator,
    }

    lonely = [str(s) for s in lin["lonely_strata"]]
    strata_variance = {
        str(s): float(v)
        for s, v in zip(lin["strata"][STRATUM_COL].to_list(), lin["strata"]["variance"].to_list())
    }
    if plan.replicates is None:
        variance = lin["variance"]
        info["strata_variance"] = strata_variance
    else:
        # Single-PSU strata never vary across replicates, so they add
        # nothing unless the policy says otherwise
        variance = _replicate_variance(
            plan.replicates, y_dom, x_dom, mask, statistic, estimate, zero_denominator
        )
        if lonely and config.lonely_psu == "na":
            variance = float("nan")
        elif lonely and config.lonely_psu == "adjust":
            variance += sum(strata_variance[s] for s in lonely)
        info["n_replicates"] = plan.replicates.n_replicates

    if lonely and config.lonely_psu == "na":
        warnings.warn(
            f"Stratum/strata with a single PSU ({', '.join(lonely)}); "
            "variance is undefined",
            LonelyPSUWarning,
            stacklevel=3,
        )
    elif lonely:
        logger.debug("Lonely PSU strata %s handled by '%s'", lonely, config.lonely_psu)
    info["lonely_strata"] = lonely
    info["deff"] = _design_effect(
        variance, design.weights, y, x, mask, statistic, estimate
    )

    return StatisticResult(float(estimate), float(variance), VarianceInfo(**info))


def _design_effect(
    variance: float,
    w: np.ndarray,
    y: np.ndarray,
    x: np.ndarray,
    mask: np.ndarray,
    statistic: str,
    estimate: float,
) -> Optional[float]:
    """Design variance over the variance of the same statistic under SRS.

    The SRS variance treats the contributing rows as a simple random
    sample of size n: ``N² s²_y / n`` for a total and ``s²_d / (n x̄²)``
    with residuals ``d = y - R x`` for means and ratios, where N, x̄ and
    s² are weighted estimates over the domain.
    """
    n = int(mask.sum())
    if n < 2 or not np.isfinite(variance):
        return None
    w_d = w[mask]
    if statistic == "total":
        v = y[mask]
        factor = w_d.sum() ** 2
    else:
        v = y[mask] - estimate * x[mask]
        factor = 1.0 / np.average(x[mask], weights=w_d) ** 2
    centred = v - np.average(v, weights=w_d)
    s2 = np.sum(w_d * centred**2) / w_d.sum() * n / (n - 1)
    srs_variance = factor * s2 / n
    if srs_variance <= 0:
        return None
    return float(variance / srs_variance)


def _replicate_variance(
    replicates: ReplicateSet,
    y: np.ndarray,
    x: np.ndarray,
    mask: np.ndarray,
    statistic: str,
    estimate: float,
    zero_denominator: bool,
) -> float:
    if zero_denominator:
        return float("nan")
    if replicates.n_replicates == 0:
        # Every stratum holds a single PSU
        return 0.0
    weights = replicates.weights * mask[:, None]
    totals_y = weights.T @ y
    if statistic == "total":
        thetas = totals_y
    else:
        totals_x = weights.T @ x
        with np.errstate(divide="ignore", invalid="ignore"):
            thetas = np.where(totals_x > 0, totals_y / totals_x, np.nan)
    return replicate_variance(
        thetas, estimate, replicates.scale, replicates.rscales, replicates.center
    )


def group_levels(
    data: pl.DataFrame, by: Sequence[str], complete_groups: bool = False
) -> list[dict[str, Any]]:
    """Grouping combinations in order of first appearance.

    Only observed combinations are returned unless ``complete_groups``
    asks for the full cross-product of observed levels.
    """
    if not by:
        return [{}]
    if complete_groups:
        levels = [data[b].unique(maintain_order=True).to_list() for b in by]
        return [dict(zip(by, combo)) for combo in itertools.product(*levels)]
    return data.select(list(by)).unique(maintain_order=True).to_dicts()


def group_expr(group: dict[str, Any]) -> Optional[pl.Expr]:
    """Boolean expression selecting one grouping combination."""
    expr = None
    for col, value in group.items():
        term = pl.col(col).is_null() if value is None else pl.col(col) == value
        expr = term if expr is None else expr & term
    return expr


def combine_domains(*domains: Optional[pl.Expr]) -> Optional[pl.Expr]:
    expr = None
    for d in domains:
        if d is not None:
            expr = d if expr is None else expr & d
    return expr


def compute_grouped(
    design: Design,
    response: str,
    statistic: str = "total",
    by: Optional[Sequence[str]] = None,
    denominator: Optional[str] = None,
    method: Optional[str] = None,
    *,
    domain: Optional[pl.Expr] = None,
    config: Optional[EstimationConfig] = None,
    complete_groups: bool = False,
) -> list[tuple[dict[str, Any], StatisticResult]]:
    """
    Compute a statistic within each group of ``by``.

    Groups are domains of the full design. Groups with fewer
    observations than ``config.small_group_threshold`` are computed but
    emit a :class:`SmallSampleWarning`. Combinations added by
    ``complete_groups`` that hold no observations report a zero total.

    Returns
    -------
    list of (group, StatisticResult)
        One entry per group, in order of first appearance.
    """
    config = config or EstimationConfig()
    by = list(by or [])
    if design.n == 0:
        raise EmptySampleError("The design holds no observations")
    require_columns(by, design.data.columns)

    plan = resolve_method(design, method, config)
    if plan.replicates is not None and plan.replicates is not design.replicates:
        design = replace(design, replicates=plan.replicates)

    scope = design.data if domain is None else design.data.filter(domain.fill_null(False))
    levels = group_levels(scope, by, complete_groups)
    if by and not levels:
        raise EmptySampleError("No observations fall in the requested domain")

    results = []
    small = []
    for group in levels:
        group_domain = combine_domains(domain, group_expr(group))
        n_group = int(domain_mask(design.data, group_domain).sum())
        if n_group < config.small_group_threshold:
            small.append((group, n_group))
        result = _compute(
            design, response, statistic, denominator, plan, group_domain, config,
            allow_empty=complete_groups,
        )
        results.append((group, result))

    if small:
        shown = "; ".join(
            f"{', '.join(f'{k}={v}' for k, v in g.items()) or 'all'} (n={n})"
            for g, n in small[:5]
        )
        warnings.warn(
            f"{len(small)} group(s) have fewer than {config.small_group_threshold} "
            f"observations: {shown}",
            SmallSampleWarning,
            stacklevel=2,
        )
    return results
