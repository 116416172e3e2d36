"""
Weighted catch totals from interviews.
"""

from __future__ import annotations

from typing import Any, Optional

from ...core.config import EstimationConfig
from ...core.design import Design
from ...core.exceptions import InvalidParameterError
from ..base import BaseEstimator
from ..constants import PSU_COL
from ..engine import StatisticResult, group_expr
from ..results import CatchDiagnostics, EstimateSet


class CatchTotalEstimator(BaseEstimator):
    """Design-weighted total of a catch column (``statistic = total``).

    Config keys
    -----------
    response : str, default "catch_total"
    by : list[str], optional
    """

    statistic = "total"

    @property
    def response_col(self) -> str:
        return self.config.get("response", "catch_total")

    def get_required_columns(self) -> list[str]:
        return [self.response_col]

    def format_method(self) -> str:
        return f"catch_total:{self.response_col}"

    def build_diagnostics(
        self, design: Design, group: dict[str, Any], result: StatisticResult
    ) -> CatchDiagnostics:
        expr = group_expr(group)
        rows = design.data if expr is None else design.data.filter(expr)
        return CatchDiagnostics(
            response=self.response_col,
            n_observations=rows.height,
            n_psu=rows[PSU_COL].n_unique(),
            variance_components=result.info.strata_variance,
        )


def estimate_catch(
    design: Design,
    response: str = "catch_total",
    by: Optional[list[str]] = None,
    conf_level: Optional[float] = None,
    variance_method: Optional[str] = None,
    config: Optional[EstimationConfig] = None,
) -> EstimateSet:
    """
    Estimate total catch as the weighted sum of interview catches.

    Parameters
    ----------
    design : Design
        Design over interviews whose weights expand to the angler
        population.
    response : str, default "catch_total"
        e.g. ``"catch_kept"`` or ``"catch_released"``.
    by : list[str], optional

    Returns
    -------
    EstimateSet
    """
    if conf_level is not None and not 0.0 < conf_level < 1.0:
        raise InvalidParameterError(f"conf_level must lie strictly in (0, 1), got {conf_level}")
    estimator = CatchTotalEstimator(
        design,
        {
            "response": response,
            "by": by,
            "conf_level": conf_level,
            "variance_method": variance_method,
        },
        config,
    )
    return estimator.estimate()

