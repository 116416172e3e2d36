"""
Total harvest as the product of effort and catch rate.

H = E × C, with the delta-method variance

    Var(H) = E² × Var(C) + C² × Var(E) + 2 × E × C × Cov(E, C)

where Cov(E, C) = ρ × SE(E) × SE(C) for a caller-supplied correlation ρ,
and zero when the two estimates are treated as independent.
"""

from __future__ import annotations

import logging
import math
import warnings
from numbers import Real
from typing import Any, Optional, Sequence, Union

from ...core.config import EstimationConfig
from ...core.exceptions import (
    DataQualityWarning,
    EmptySampleError,
    InvalidParameterError,
    MissingColumnError,
    NotYetImplementedError,
    UnsupportedMethodError,
)
from ..results import Estimate, EstimateSet, HarvestDiagnostics

logger = logging.getLogger(__name__)

COMBINATION_METHODS = ("product", "separate_ratio")

Correlation = Union[None, float, str]


def _check_method(method: str) -> None:
    if method == "separate_ratio":
        raise NotYetImplementedError(
            "method='separate_ratio' is not yet implemented; use method='product'"
        )
    if method != "product":
        raise UnsupportedMethodError(
            f"Unknown combination method '{method}'. "
            f"Valid methods: {', '.join(COMBINATION_METHODS)}"
        )


def _check_correlation(correlation: Correlation) -> Optional[float]:
    """Validate ``correlation``; returns None for independence."""
    if correlation is None:
        return None
    if isinstance(correlation, str):
        if correlation.lower() == "auto":
            raise NotYetImplementedError(
                "correlation='auto' is not yet implemented; supply a numeric "
                "correlation in [-1, 1] or None for independence"
            )
        raise InvalidParameterError(
            f"correlation must be a number in [-1, 1], None or 'auto', got '{correlation}'"
        )
    if isinstance(correlation, bool) or not isinstance(correlation, Real):
        raise InvalidParameterError(
            f"correlation must be a number in [-1, 1], got {correlation!r}"
        )
    rho = float(correlation)
    if math.isnan(rho) or not -1.0 <= rho <= 1.0:
        raise InvalidParameterError(f"correlation must lie in [-1, 1], got {rho}")
    return None if rho == 0.0 else rho


def _resolve_conf_level(conf_level: Optional[float], config: Optional[EstimationConfig]) -> float:
    settings = config or EstimationConfig()
    if conf_level is None:
        return settings.conf_level
    if not 0.0 < conf_level < 1.0:
        raise InvalidParameterError(f"conf_level must lie strictly in (0, 1), got {conf_level}")
    return conf_level


def _min_n(*values: Optional[int]) -> int:
    present = [v for v in values if v is not None]
    return min(present) if present else 0


def _product(
    effort: Estimate,
    cpue: Estimate,
    rho: Optional[float],
    response: str,
    conf_level: float,
    group: dict[str, Any],
) -> Estimate:
    e, c = effort.estimate, cpue.estimate
    var_e, var_c = effort.se**2, cpue.se**2
    covariance = rho * effort.se * cpue.se if rho is not None else 0.0
    variance = e**2 * var_c + c**2 * var_e + 2.0 * e * c * covariance

    diagnostics = HarvestDiagnostics(
        effort_estimate=e,
        effort_se=effort.se,
        cpue_estimate=c,
        cpue_se=cpue.se,
        correlation_used=rho,
        var_effort=var_e,
        var_cpue=var_c,
        covariance=covariance,
        var_total=variance,
    )
    dependence = "correlated" if rho is not None else "independent"
    return Estimate.build(
        estimate=e * c,
        variance=variance,
        n=_min_n(effort.n, cpue.n),
        method=f"product:{response}:{dependence}",
        conf_level=conf_level,
        diagnostics=diagnostics,
        group=group,
    )


def combine_product(
    effort_estimate: Estimate,
    cpue_estimate: Estimate,
    correlation: Correlation = None,
    response: str = "catch",
    method: str = "product",
    conf_level: Optional[float] = None,
    config: Optional[EstimationConfig] = None,
) -> Estimate:
    """
    Combine one effort and one CPUE estimate into a harvest estimate.

    Parameters
    ----------
    effort_estimate : Estimate
        Angler-hours.
    cpue_estimate : Estimate
        Catch per angler-hour.
    correlation : float, None or "auto"
        Correlation between the two estimates, in [-1, 1]. None (or 0)
        treats them as independent. ``"auto"`` is not yet implemented.
    response : str, default "catch"
        Catch variable, used in the method tag.
    method : {"product"}
        ``"separate_ratio"`` is reserved and not yet implemented.
    conf_level : float, optional

    Returns
    -------
    Estimate
        ``estimate = E × C`` with delta-method standard error.

    Examples
    --------
    >>> h = combine_product(effort, cpue)
    >>> h.estimate, h.se
    """
    _check_method(method)
    rho = _check_correlation(correlation)
    level = _resolve_conf_level(conf_level, config)
    group = {**effort_estimate.group, **cpue_estimate.group}
    return _product(effort_estimate, cpue_estimate, rho, response, level, group)


def combine_product_sets(
    effort_set: EstimateSet,
    cpue_set: EstimateSet,
    by: Optional[Sequence[str]] = None,
    correlation: Correlation = None,
    response: str = "catch",
    method: str = "product",
    conf_level: Optional[float] = None,
    config: Optional[EstimationConfig] = None,
) -> EstimateSet:
    """
    Combine effort and CPUE estimate sets group by group.

    The sets are inner-joined on ``by``. Additional CPUE grouping
    columns (such as ``species_group``) are kept, so one effort estimate
    can pair with several CPUE estimates. Groups found in only one set
    are dropped with a warning.

    Raises
    ------
    EmptySampleError
        No group is present in both sets.
    InvalidParameterError
        ``by`` is omitted and either set holds more than one estimate.
    """
    _check_method(method)
    rho = _check_correlation(correlation)
    level = _resolve_conf_level(conf_level, config)

    if not by:
        if len(effort_set) != 1 or len(cpue_set) != 1:
            raise InvalidParameterError(
                "Without 'by', effort and CPUE must each hold exactly one estimate "
                f"(got {len(effort_set)} and {len(cpue_set)})"
            )
        effort, cpue = effort_set.single(), cpue_set.single()
        combined = _product(effort, cpue, rho, response, level, {**effort.group, **cpue.group})
        return EstimateSet(tuple(dict.fromkeys((*effort_set.by, *cpue_set.by))), (combined,))

    by = list(by)
    for est_set in (effort_set, cpue_set):
        absent = [b for b in by if b not in est_set.by]
        if absent:
            raise MissingColumnError(absent, est_set.by)

    effort_by_key: dict[tuple, Estimate] = {}
    for est in effort_set:
        key = tuple(est.group.get(b) for b in by)
        if key in effort_by_key:
            raise InvalidParameterError(
                f"Effort estimates are not unique on {by}: duplicate group {key}"
            )
        effort_by_key[key] = est

    cpue_keys = {tuple(est.group.get(b) for b in by) for est in cpue_set}
    combined = []
    for cpue in cpue_set:
        key = tuple(cpue.group.get(b) for b in by)
        effort = effort_by_key.get(key)
        if effort is not None:
            combined.append(
                _product(effort, cpue, rho, response, level, {**effort.group, **cpue.group})
            )

    effort_only = [k for k in effort_by_key if k not in cpue_keys]
    cpue_only = [k for k in dict.fromkeys(
        tuple(est.group.get(b) for b in by) for est in cpue_set
    ) if k not in effort_by_key]

    if not combined:
        raise EmptySampleError(
            f"No matching groups between effort and CPUE on {by}; "
            f"effort groups: {list(effort_by_key)}, CPUE groups: {sorted(cpue_keys, key=str)}"
        )
    if effort_only or cpue_only:
        warnings.warn(
            f"Dropped groups present in only one input on {by}: "
            f"effort only {effort_only}, CPUE only {cpue_only}",
            DataQualityWarning,
            stacklevel=2,
        )
    logger.debug("Combined %d group(s) on %s", len(combined), by)

    out_by = tuple(dict.fromkeys((*by, *cpue_set.by)))
    return EstimateSet(out_by, tuple(combined))
