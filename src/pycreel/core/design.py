"""
Survey design model for creel estimation.

A :class:`Design` couples an observation table with the probability
structure it was sampled under: stratification keys, primary sampling
units (PSUs), per-observation weights, an optional finite population
correction and an optional set of replicate weights. Designs are
immutable. Every transformation (filter, reweight, collapse to PSU,
post-stratification, attaching replicates) returns a new Design and
leaves the original untouched.

The design columns are stored alongside the observations under reserved
names (see :mod:`pycreel.estimation.constants`):

- ``_weight``: analysis weight, the inverse inclusion probability
- ``_stratum``: stratum label built from the stratification keys
- ``_psu``: PSU label, nested within the stratum
- ``_fpc``: population number of PSUs in the stratum, or null

Replicate weights are held as an ``n x R`` numpy array whose rows stay
aligned with the observation rows through every transformation.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field, replace
from typing import Iterable, Mapping, Optional, Sequence, Union

import numpy as np
import polars as pl

from ..estimation.constants import (
    BRR,
    DESIGN_COLS,
    FPC_COL,
    PROBABILITY_TOLERANCE,
    PSU_COL,
    REPLICATE_METHODS,
    ROW_COL,
    STRATUM_COL,
    WEIGHT_COL,
)
from .exceptions import (
    DataQualityWarning,
    EmptySampleError,
    InvalidDesignError,
    UnsupportedMethodError,
    require_columns,
)

logger = logging.getLogger(__name__)

SINGLE_STRATUM = "all"


def _readonly(array: np.ndarray) -> np.ndarray:
    array = np.array(array, dtype=np.float64, copy=True)
    array.setflags(write=False)
    return array


def _as_tuple(columns: Union[str, Sequence[str], None]) -> tuple[str, ...]:
    if columns is None:
        return ()
    if isinstance(columns, str):
        return (columns,)
    return tuple(columns)


@dataclass(frozen=True, eq=False)
class ReplicateSet:
    """Replicate weights attached to a design.

    Attributes
    ----------
    weights : np.ndarray
        ``n x R`` matrix of replicate weights, one row per observation.
    method : str
        ``"bootstrap"``, ``"jackknife"`` or ``"brr"``.
    scale : float
        Overall multiplier of the replicate variance.
    rscales : np.ndarray
        Per-replicate multipliers, length ``R``.
    center : str
        ``"mean"`` centres replicate deviations at the replicate mean,
        ``"full"`` at the full-sample estimate.
    seed : int, optional
        Seed the replicates were generated from, if any.
    """

    weights: np.ndarray
    method: str
    scale: float
    rscales: np.ndarray
    center: str = "mean"
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "weights", _readonly(self.weights))
        object.__setattr__(self, "rscales", _readonly(self.rscales))

    @property
    def n_replicates(self) -> int:
        return self.weights.shape[1]

    def take(self, rows: np.ndarray) -> "ReplicateSet":
        """Select replicate rows by observation index."""
        return replace(self, weights=self.weights[np.asarray(rows, dtype=np.int64)])

    def rescale(self, factor: np.ndarray) -> "ReplicateSet":
        """Multiply every replicate weight of row i by ``factor[i]``."""
        return replace(self, weights=self.weights * np.asarray(factor)[:, None])


@dataclass(frozen=True, eq=False)
class Design:
    """An observation table with its sampling design.

    Use :func:`build_design` (or :func:`design_from_days`) to construct
    one; the constructor performs no validation.
    """

    data: pl.DataFrame
    strata_vars: tuple[str, ...] = ()
    cluster_var: Optional[str] = None
    fpc_var: Optional[str] = None
    replicates: Optional[ReplicateSet] = field(default=None)

    @property
    def n(self) -> int:
        """Number of observations."""
        return self.data.height

    @property
    def columns(self) -> list[str]:
        """Observation columns, excluding the reserved design columns."""
        return [c for c in self.data.columns if c not in DESIGN_COLS]

    @property
    def weights(self) -> np.ndarray:
        return self.data[WEIGHT_COL].to_numpy()

    @property
    def n_strata(self) -> int:
        return self.data[STRATUM_COL].n_unique()

    @property
    def n_psu(self) -> int:
        return self.data[PSU_COL].n_unique()

    @property
    def is_stratified(self) -> bool:
        return len(self.strata_vars) > 0

    def psu_counts(self) -> pl.DataFrame:
        """Number of sampled PSUs per stratum."""
        return (
            self.data.group_by(STRATUM_COL, maintain_order=True)
            .agg(pl.col(PSU_COL).n_unique().alias("n_psu"), pl.len().alias("n_obs"))
        )

    def filter(self, predicate: pl.Expr) -> "Design":
        """Keep observations matching ``predicate``.

        This removes rows. For subpopulation estimates that keep the
        full design structure, pass a ``domain`` to the variance engine
        instead.
        """
        rows = (
            self.data.with_row_index(ROW_COL)
            .filter(predicate)[ROW_COL]
            .to_numpy()
        )
        return self._take(rows)

    def _take(self, rows: np.ndarray) -> "Design":
        data = self.data[rows.tolist()] if len(rows) else self.data.clear()
        replicates = self.replicates.take(rows) if self.replicates is not None else None
        return replace(self, data=data, replicates=replicates)

    def with_columns(self, *exprs: pl.Expr, **named: pl.Expr) -> "Design":
        """Add or replace observation columns; design columns are protected."""
        data = self.data.with_columns(*exprs, **named)
        changed = [
            c for c in DESIGN_COLS
            if c in data.columns and not data[c].equals(self.data[c])
        ]
        if changed:
            raise InvalidDesignError(
                f"Design columns cannot be overwritten: {', '.join(changed)}"
            )
        return replace(self, data=data)

    def reweight(self, factor: Union[np.ndarray, Sequence[float]]) -> "Design":
        """Multiply base and replicate weights of row i by ``factor[i]``."""
        factor = np.asarray(factor, dtype=np.float64)
        if factor.shape != (self.n,):
            raise InvalidDesignError(
                f"Reweighting factor has length {factor.size}, design has {self.n} rows"
            )
        if not np.all(np.isfinite(factor)) or np.any(factor < 0):
            raise InvalidDesignError("Reweighting factors must be finite and >= 0")
        data = self.data.with_columns(pl.Series(WEIGHT_COL, self.weights * factor))
        replicates = (
            self.replicates.rescale(factor) if self.replicates is not None else None
        )
        return replace(self, data=data, replicates=replicates)

    def with_psu(self, column: str) -> "Design":
        """Use ``column`` as the PSU identifier, nested within strata."""
        require_columns([column], self.data.columns)
        if self.data[column].null_count():
            raise InvalidDesignError(f"PSU column '{column}' contains missing values")
        data = self.data.with_columns(
            pl.concat_str(
                [pl.col(STRATUM_COL), pl.col(column).cast(pl.Utf8)], separator="|"
            ).alias(PSU_COL)
        )
        return replace(self, data=data, cluster_var=column)

    def collapse(
        self, keys: Sequence[str], aggs: Iterable[pl.Expr], within_psu: bool = True
    ) -> "Design":
        """Aggregate observations to one row per PSU x ``keys`` cell.

        Design columns (and the stratification, cluster and FPC columns)
        take the value of the first row in each cell, as do replicate
        weights. Weights are assumed constant within a cell. With
        ``within_psu=False`` cells are defined by ``keys`` alone, which
        must then nest within PSUs.
        """
        aggs = list(aggs)
        produced = {e.meta.output_name() for e in aggs}
        keys = [k for k in dict.fromkeys(keys) if k != PSU_COL]
        carry = [
            c for c in dict.fromkeys(
                (*self.strata_vars, self.cluster_var, self.fpc_var)
            )
            if c is not None and c not in keys and c not in produced
        ]
        cell = [PSU_COL, *keys] if within_psu else keys
        if not within_psu:
            carry.append(PSU_COL)
        grouped = (
            self.data.with_row_index(ROW_COL)
            .group_by(cell, maintain_order=True)
            .agg(
                *aggs,
                *[pl.first(c) for c in carry],
                pl.first(WEIGHT_COL),
                pl.first(STRATUM_COL),
                pl.first(FPC_COL),
                pl.first(ROW_COL),
            )
        )
        rows = grouped[ROW_COL].to_numpy()
        replicates = self.replicates.take(rows) if self.replicates is not None else None
        return replace(self, data=grouped.drop(ROW_COL), replicates=replicates)


def _stratum_expr(strata_vars: tuple[str, ...]) -> pl.Expr:
    if not strata_vars:
        return pl.lit(SINGLE_STRATUM).alias(STRATUM_COL)
    return pl.concat_str(
        [pl.col(v).cast(pl.Utf8) for v in strata_vars], separator="|"
    ).alias(STRATUM_COL)


def _weights_from_probabilities(probs: pl.Series) -> pl.Series:
    p = probs.cast(pl.Float64)
    if p.null_count() or p.is_nan().any():
        raise InvalidDesignError(f"Inclusion probabilities in '{probs.name}' contain missing values")
    if (p == 0).all():
        raise InvalidDesignError(
            f"All inclusion probabilities in '{probs.name}' are zero; "
            "no observation could have been sampled"
        )
    if (p <= 0).any():
        n_bad = int((p <= 0).sum())
        raise InvalidDesignError(
            f"{n_bad} inclusion probabilities in '{probs.name}' are <= 0"
        )
    if (p > 1.0 + PROBABILITY_TOLERANCE).any():
        raise InvalidDesignError(
            f"Inclusion probabilities in '{probs.name}' exceed 1 "
            f"(max {p.max():.6g})"
        )
    n_over = int((p > 1.0).sum())
    if n_over:
        warnings.warn(
            f"{n_over} inclusion probabilities slightly above 1 were clamped to 1",
            DataQualityWarning,
            stacklevel=3,
        )
        p = p.clip(upper_bound=1.0)
    return (1.0 / p).alias(WEIGHT_COL)


def _validate_weights(weights: pl.Series) -> pl.Series:
    w = weights.cast(pl.Float64)
    if w.null_count() or w.is_nan().any():
        raise InvalidDesignError(f"Weights in '{weights.name}' contain missing values")
    if w.is_infinite().any():
        raise InvalidDesignError(f"Weights in '{weights.name}' must be finite")
    if (w <= 0).any():
        raise InvalidDesignError(
            f"Weights in '{weights.name}' must be positive "
            f"({int((w <= 0).sum())} non-positive)"
        )
    return w.alias(WEIGHT_COL)


def _fpc_series(data: pl.DataFrame, fpc: str) -> pl.Series:
    """Validate population PSU counts: one value per stratum, >= sampled PSUs."""
    values = data[fpc].cast(pl.Float64)
    if values.null_count() or (values <= 0).any():
        raise InvalidDesignError(f"FPC column '{fpc}' must be positive and non-missing")
    check = data.with_columns(values.alias(FPC_COL)).group_by(STRATUM_COL).agg(
        pl.col(FPC_COL).n_unique().alias("n_values"),
        pl.col(FPC_COL).first().alias("N_h"),
        pl.col(PSU_COL).n_unique().alias("n_h"),
    )
    if (check["n_values"] > 1).any():
        raise InvalidDesignError(f"FPC column '{fpc}' varies within a stratum")
    if (check["N_h"] < check["n_h"]).any():
        raise InvalidDesignError(
            f"FPC column '{fpc}' is smaller than the number of sampled PSUs"
        )
    return values.alias(FPC_COL)


def build_design(
    observations: pl.DataFrame,
    strata_vars: Union[str, Sequence[str], None] = None,
    weights: Optional[str] = None,
    inclusion_probs: Optional[str] = None,
    cluster_var: Optional[str] = None,
    fpc: Optional[str] = None,
) -> Design:
    """
    Build a sampling design over an observation table.

    Parameters
    ----------
    observations : pl.DataFrame
        One row per count or interview.
    strata_vars : str or list of str, optional
        Stratification keys. Their combination defines the stratum.
    weights : str, optional
        Column of analysis weights. Mutually exclusive with
        ``inclusion_probs``.
    inclusion_probs : str, optional
        Column of inclusion probabilities; weights are their inverse.
    cluster_var : str, optional
        PSU identifier. Each observation is its own PSU when omitted.
    fpc : str, optional
        Column holding the population number of PSUs per stratum.

    Returns
    -------
    Design

    Raises
    ------
    MissingColumnError
        A referenced column does not exist.
    InvalidDesignError
        Weights or probabilities are missing, non-positive, or (for
        probabilities) exceed 1 beyond rounding tolerance.
    EmptySampleError
        The observation table has no rows.
    """
    if not isinstance(observations, pl.DataFrame):
        raise InvalidDesignError(
            f"Observations must be a polars DataFrame, got {type(observations).__name__}"
        )
    if observations.height == 0:
        raise EmptySampleError("Cannot build a design from an empty observation table")
    if (weights is None) == (inclusion_probs is None):
        raise InvalidDesignError("Specify exactly one of 'weights' or 'inclusion_probs'")

    strata = _as_tuple(strata_vars)
    require_columns(
        [*strata, weights, inclusion_probs, cluster_var, fpc], observations.columns
    )
    reserved = [c for c in DESIGN_COLS if c in observations.columns]
    if reserved:
        raise InvalidDesignError(f"Reserved column names in observations: {reserved}")
    for var in strata:
        if observations[var].null_count():
            raise InvalidDesignError(f"Stratification variable '{var}' has missing values")

    if weights is not None:
        w = _validate_weights(observations[weights])
    else:
        w = _weights_from_probabilities(observations[inclusion_probs])

    data = observations.with_columns(w, _stratum_expr(strata))
    if cluster_var is not None:
        if data[cluster_var].null_count():
            raise InvalidDesignError(f"Cluster variable '{cluster_var}' has missing values")
        psu = pl.concat_str(
            [pl.col(STRATUM_COL), pl.col(cluster_var).cast(pl.Utf8)], separator="|"
        )
    else:
        psu = pl.int_range(pl.len()).cast(pl.Utf8)
    data = data.with_columns(psu.alias(PSU_COL))

    if fpc is not None:
        data = data.with_columns(_fpc_series(data, fpc))
    else:
        data = data.with_columns(pl.lit(None, dtype=pl.Float64).alias(FPC_COL))

    design = Design(data=data, strata_vars=strata, cluster_var=cluster_var, fpc_var=fpc)
    logger.debug(
        "Built design: %d observations, %d strata, %d PSUs",
        design.n, design.n_strata, design.n_psu,
    )
    return design


def attach_replicates(
    design: Design,
    weights_matrix: np.ndarray,
    method: str,
    scale: float,
    rscales: Optional[Sequence[float]] = None,
    seed: Optional[int] = None,
) -> Design:
    """
    Attach a replicate-weight matrix to a design.

    Parameters
    ----------
    design : Design
    weights_matrix : array-like
        ``n x R`` replicate weights, rows aligned with the design's rows.
    method : str
        ``"bootstrap"``, ``"jackknife"`` or ``"brr"``.
    scale : float
        Variance multiplier, e.g. ``1/R`` for bootstrap.
    rscales : sequence of float, optional
        Per-replicate multipliers; all ones when omitted.

    Returns
    -------
    Design
        A new design carrying the replicates.
    """
    method = str(method).lower()
    if method not in REPLICATE_METHODS:
        raise UnsupportedMethodError(
            f"Unknown replicate method '{method}'. "
            f"Valid methods: {', '.join(REPLICATE_METHODS)}"
        )
    matrix = np.asarray(weights_matrix, dtype=np.float64)
    if matrix.ndim != 2:
        raise InvalidDesignError("Replicate weights must be a 2-D matrix")
    if matrix.shape[0] != design.n:
        raise InvalidDesignError(
            f"Replicate weights have {matrix.shape[0]} rows; design has {design.n} observations"
        )
    if matrix.shape[1] < 2:
        raise InvalidDesignError("At least two replicates are required")
    if not np.all(np.isfinite(matrix)) or np.any(matrix < 0):
        raise InvalidDesignError("Replicate weights must be finite and >= 0")
    if not np.isfinite(scale) or scale <= 0:
        raise InvalidDesignError(f"Replicate scale must be positive, got {scale}")

    if rscales is None:
        rscales = np.ones(matrix.shape[1])
    rscales = np.asarray(rscales, dtype=np.float64)
    if rscales.shape != (matrix.shape[1],):
        raise InvalidDesignError("rscales must have one entry per replicate")

    replicates = ReplicateSet(
        weights=matrix,
        method=method,
        scale=float(scale),
        rscales=rscales,
        center="full" if method == BRR else "mean",
        seed=seed,
    )
    return replace(design, replicates=replicates)


def post_stratify(
    design: Design,
    post_strata: str,
    population_totals: Union[Mapping[object, float], pl.DataFrame],
) -> Design:
    """
    Calibrate weights so they sum to known totals within post-strata.

    Parameters
    ----------
    design : Design
    post_strata : str
        Column defining the post-strata.
    population_totals : mapping or pl.DataFrame
        Known total per post-stratum level. A DataFrame must hold the
        ``post_strata`` column and a ``total`` column.

    Returns
    -------
    Design
        New design with adjusted base and replicate weights.
    """
    require_columns([post_strata], design.data.columns)
    if isinstance(population_totals, pl.DataFrame):
        require_columns([post_strata, "total"], population_totals.columns)
        totals = dict(
            zip(population_totals[post_strata].to_list(), population_totals["total"].to_list())
        )
    else:
        totals = dict(population_totals)

    levels = design.data[post_strata].to_list()
    unknown = sorted({str(v) for v in levels if v not in totals})
    if unknown:
        raise InvalidDesignError(
            f"No population total for post-strata level(s): {', '.join(unknown)}"
        )
    if any(t is None or t <= 0 for t in totals.values()):
        raise InvalidDesignError("Population totals must be positive")

    level_arr = np.array(levels, dtype=object)
    base = design.weights
    factor = np.ones(design.n)
    rep_weights = design.replicates.weights.copy() if design.replicates is not None else None
    for level in set(levels):
        mask = level_arr == level
        total = float(totals[level])
        factor[mask] = total / base[mask].sum()
        if rep_weights is not None:
            sums = rep_weights[mask].sum(axis=0)
            with np.errstate(divide="ignore", invalid="ignore"):
                rep_factor = np.where(sums > 0, total / sums, 0.0)
            rep_weights[mask] = rep_weights[mask] * rep_factor

    logger.debug("Post-stratified on '%s' across %d levels", post_strata, len(set(levels)))
    data = design.data.with_columns(pl.Series(WEIGHT_COL, base * factor))
    replicates = (
        replace(design.replicates, weights=rep_weights)
        if design.replicates is not None
        else None
    )
    return replace(design, data=data, replicates=replicates)


def day_design_from_calendar(
    calendar: pl.DataFrame,
    day_col: str = "date",
    strata_vars: Union[str, Sequence[str], None] = ("day_type",),
    target_col: str = "target_sample",
    actual_col: str = "actual_sample",
) -> Design:
    """
    Build a day-level design from a sampling calendar.

    Only sampled days (``actual_col > 0``) are kept. Each sampled day is
    weighted by ``sum(target) / sum(actual)`` within its stratum, and
    days are the PSUs. Stratification variables absent from the
    calendar are dropped with a warning.

    Returns
    -------
    Design
        One row per sampled day.
    """
    require_columns([day_col, target_col, actual_col], calendar.columns)
    cal = calendar.filter(pl.col(actual_col) > 0)
    if cal.height == 0:
        raise EmptySampleError(f"No sampled days found ({actual_col} > 0)")
    if cal[day_col].n_unique() != cal.height:
        raise InvalidDesignError(f"Calendar has duplicate rows for '{day_col}'")

    strata = _as_tuple(strata_vars)
    absent = [v for v in strata if v not in cal.columns]
    if absent:
        warnings.warn(
            f"Stratification variable(s) not in calendar, ignored: {', '.join(absent)}",
            DataQualityWarning,
            stacklevel=2,
        )
        strata = tuple(v for v in strata if v in cal.columns)

    sums = [
        pl.col(target_col).sum().alias("_target"),
        pl.col(actual_col).sum().alias("_actual"),
    ]
    if strata:
        totals = cal.group_by(list(strata)).agg(sums)
        cal = cal.join(totals, on=list(strata), how="left")
    else:
        cal = cal.with_columns(sums)
    cal = cal.with_columns(
        (pl.col("_target") / pl.max_horizontal(pl.col("_actual"), pl.lit(1))).alias(
            "_day_weight"
        )
    ).drop("_target", "_actual")

    design = build_design(
        cal, strata_vars=strata or None, weights="_day_weight", cluster_var=day_col
    )
    return replace(design, data=design.data.drop("_day_weight"))


def design_from_days(
    observations: pl.DataFrame,
    day_design: Design,
    day_col: str = "date",
) -> Design:
    """
    Align count observations with a day-level design.

    Each observation inherits the weight, stratum, FPC and replicate
    weights of its day, and days become the PSUs. Stratification columns
    are taken from the day design.

    Raises
    ------
    InvalidDesignError
        An observation's day is not in the day design.
    """
    require_columns([day_col], observations.columns)
    require_columns([day_col], day_design.data.columns)
    if observations.height == 0:
        raise EmptySampleError("No observations to align with the day design")
    if day_design.data[day_col].n_unique() != day_design.n:
        raise InvalidDesignError(f"Day design has duplicate rows for '{day_col}'")

    day_side = [day_col, *day_design.strata_vars]
    if day_design.fpc_var is not None:
        day_side.append(day_design.fpc_var)
    day_side = list(dict.fromkeys(day_side))
    days = day_design.data.select(
        *day_side, WEIGHT_COL, STRATUM_COL, PSU_COL, FPC_COL
    ).with_row_index(ROW_COL)

    obs = observations.drop(
        [c for c in (*day_side[1:], *DESIGN_COLS) if c in observations.columns]
    ).with_row_index("_obs_order")
    obs = obs.with_columns(pl.col(day_col).cast(days[day_col].dtype))
    joined = obs.join(days, on=day_col, how="left").sort("_obs_order")

    unmatched = joined.filter(pl.col(WEIGHT_COL).is_null())[day_col].unique().to_list()
    if unmatched:
        shown = ", ".join(str(d) for d in unmatched[:5])
        raise InvalidDesignError(
            f"{len(unmatched)} observed day(s) not in the day design: {shown}"
        )

    rows = joined[ROW_COL].to_numpy()
    replicates = (
        day_design.replicates.take(rows) if day_design.replicates is not None else None
    )
    return Design(
        data=joined.drop(ROW_COL, "_obs_order"),
        strata_vars=day_design.strata_vars,
        cluster_var=day_col,
        fpc_var=day_design.fpc_var,
        replicates=replicates,
    )
