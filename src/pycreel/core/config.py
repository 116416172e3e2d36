"""
Estimation configuration.

A single immutable :class:`EstimationConfig` is threaded through every
estimator call. There are no module-level defaults to mutate; callers
derive a modified configuration with :meth:`EstimationConfig.updated`.
"""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..estimation.constants import (
    DEFAULT_BOOTSTRAP_REPLICATES,
    DEFAULT_CONF_LEVEL,
    SMALL_GROUP_THRESHOLD,
)


class EstimationConfig(BaseModel):
    """Options shared by all estimators.

    Attributes
    ----------
    conf_level : float
        Confidence level for intervals, strictly between 0 and 1.
    variance_method : str
        ``"linearization"`` (alias ``"survey"``), ``"bootstrap"``,
        ``"jackknife"`` or ``"brr"``. Unknown names are rejected by the
        variance engine with ``UnsupportedMethodError``.
    lonely_psu : {"na", "remove", "adjust"}
        Treatment of strata holding a single PSU. ``"na"`` makes the
        variance undefined, ``"remove"`` drops the stratum's contribution
        and ``"adjust"`` centres it at the grand mean of PSU totals.
    small_group_threshold : int
        Groups with fewer observations than this emit a warning.
    n_replicates : int
        Bootstrap replicates generated on demand.
    seed : int, optional
        Seed for replicate generation.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    conf_level: float = Field(DEFAULT_CONF_LEVEL, gt=0.0, lt=1.0)
    variance_method: str = "linearization"
    lonely_psu: Literal["na", "remove", "adjust"] = "na"
    small_group_threshold: int = Field(SMALL_GROUP_THRESHOLD, ge=1)
    n_replicates: int = Field(DEFAULT_BOOTSTRAP_REPLICATES, ge=2)
    seed: Optional[int] = None

    @field_validator("variance_method")
    @classmethod
    def _normalise_method(cls, value: str) -> str:
        return value.strip().lower()

    def updated(self, **overrides: Any) -> "EstimationConfig":
        """Return a validated copy with non-None overrides applied."""
        values = self.model_dump()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return EstimationConfig(**values)
