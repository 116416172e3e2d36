"""
Base estimator for creel estimation.

Estimators are built from a design and a plain ``config`` dict, the same
way for every estimator family:

1. ``get_required_columns`` lists the columns the estimator reads.
2. ``calculate_values`` applies per-observation transforms.
3. ``prepare_design`` collapses or reweights the design.
4. The variance engine computes the statistic per group.
5. ``build_diagnostics`` attaches family-specific diagnostics.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import polars as pl

from ..core.config import EstimationConfig
from ..core.design import Design
from ..core.exceptions import require_columns
from .engine import StatisticResult, compute_grouped
from .results import Diagnostics, Estimate, EstimateSet

logger = logging.getLogger(__name__)


class BaseEstimator(ABC):
    """Template for every estimator family.

    Parameters
    ----------
    design : Design
        Sampling design over the observations.
    config : dict
        Estimator options. Common keys are ``by`` (grouping columns),
        ``conf_level``, ``variance_method`` and ``complete_groups``.
    settings : EstimationConfig, optional
        Shared configuration; ``conf_level`` and ``variance_method`` in
        ``config`` override it.
    """

    statistic: str = "total"

    def __init__(
        self,
        design: Design,
        config: Optional[dict[str, Any]] = None,
        settings: Optional[EstimationConfig] = None,
    ):
        self.design = design
        self.config = dict(config or {})
        self.settings = (settings or EstimationConfig()).updated(
            conf_level=self.config.get("conf_level"),
            variance_method=self.config.get("variance_method"),
        )

    @property
    def by(self) -> list[str]:
        by = self.config.get("by")
        if by is None:
            return []
        if isinstance(by, str):
            return [by]
        return list(by)

    @property
    @abstractmethod
    def response_col(self) -> str:
        """Column the engine estimates from, after ``calculate_values``."""

    @property
    def denominator_col(self) -> Optional[str]:
        return None

    @abstractmethod
    def get_required_columns(self) -> list[str]:
        """Observation columns this estimator reads."""

    def calculate_values(self, data: pl.DataFrame) -> pl.DataFrame:
        """Per-observation transforms; identity by default."""
        return data

    def prepare_design(self, design: Design) -> Design:
        """Design-level preparation (collapse, reweight); identity by default."""
        return design

    def domain(self) -> Optional[pl.Expr]:
        """Rows eligible for estimation; all rows by default."""
        return None

    @abstractmethod
    def format_method(self) -> str:
        """Method tag reported on each estimate."""

    def build_diagnostics(
        self, design: Design, group: dict[str, Any], result: StatisticResult
    ) -> Optional[Diagnostics]:
        return None

    def estimate(self) -> EstimateSet:
        """Run the estimator and return one estimate per group."""
        require_columns([*self.get_required_columns(), *self.by], self.design.data.columns)
        design = self.design.with_columns(*self._transforms())
        design = self.prepare_design(design)

        logger.debug(
            "%s: %d rows, by=%s, method=%s",
            type(self).__name__, design.n, self.by, self.settings.variance_method,
        )
        grouped = compute_grouped(
            design,
            self.response_col,
            self.statistic,
            by=self.by,
            denominator=self.denominator_col,
            domain=self.domain(),
            config=self.settings,
            complete_groups=bool(self.config.get("complete_groups", False)),
        )

        method = self.format_method()
        estimates = [
            Estimate.build(
                estimate=result.estimate,
                variance=result.variance,
                n=result.info.n,
                method=method,
                conf_level=self.settings.conf_level,
                diagnostics=self.build_diagnostics(design, group, result),
                variance_info=result.info,
                group=group,
            )
            for group, result in grouped
        ]
        return EstimateSet(tuple(self.by), tuple(estimates))

    def _transforms(self) -> list[pl.Expr]:
        # calculate_values works on frames; express its new columns as
        # literals so the design keeps its own columns untouched
        before = self.design.data
        after = self.calculate_values(before)
        return [after[c] for c in after.columns if c not in before.columns or not after[c].equals(before[c])]
