"""
Replicate-weight generation.

Three resampling schemes are supported, each returning a
:class:`~pycreel.core.design.ReplicateSet` aligned row-for-row with the
design:

Bootstrap
    ``R`` independent with-replacement resamples of the PSUs within each
    stratum. A row's replicate weight is its base weight times the number
    of times its PSU was drawn. ``scale = 1/R``; deviations are centred at
    the replicate mean. In an unclustered, unstratified design the PSUs
    are the observations themselves.

Jackknife (delete-one-PSU)
    One replicate per PSU. The deleted PSU is zeroed and the remaining
    PSUs in its stratum are scaled by ``n_h/(n_h - 1)``. The scaling
    follows Lumley (2010): a single stratum uses the JK1 convention
    ``scale = (n - 1)/n``; a stratified design uses JKn with ``scale = 1``
    and ``rscales = (n_h - 1)/n_h``. For an estimated total this
    reproduces the linearization variance exactly. Single-PSU strata get
    no replicate of their own.

Balanced repeated replication (BRR)
    Half-samples defined by the columns of a Sylvester Hadamard matrix.
    Every stratum must hold exactly two PSUs. The selected PSU's weight
    is doubled and the other is zeroed. ``scale = 1/R``; deviations are
    centred at the full-sample estimate (Wolter 2007).

References:
    Lumley, T. 2010. Complex Surveys: A Guide to Analysis Using R. Wiley.
    Wolter, K. M. 2007. Introduction to Variance Estimation, 2nd ed.
    Springer.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import NamedTuple, Optional

import numpy as np
from scipy.linalg import hadamard

from ..core.design import Design, ReplicateSet
from ..core.exceptions import InvalidDesignError, InvalidParameterError, UnsupportedMethodError
from .constants import (
    BOOTSTRAP,
    BOOTSTRAP_CHUNK_SIZE,
    BRR,
    DEFAULT_BOOTSTRAP_REPLICATES,
    JACKKNIFE,
    PARALLEL_CHUNK_THRESHOLD,
    PSU_COL,
    REPLICATE_METHODS,
    STRATUM_COL,
)

logger = logging.getLogger(__name__)


class PsuLayout(NamedTuple):
    """Mapping between observation rows, PSUs and strata."""

    row_psu: np.ndarray  # PSU position of each row
    psu_stratum: np.ndarray  # stratum position of each PSU
    strata: list[np.ndarray]  # PSU positions belonging to each stratum
    labels: list[str]  # stratum labels


def psu_layout(design: Design) -> PsuLayout:
    """Index the PSUs and strata of a design in order of first appearance."""
    psus = design.data.select(PSU_COL, STRATUM_COL).unique(
        subset=[PSU_COL], keep="first", maintain_order=True
    )
    psu_pos = {p: i for i, p in enumerate(psus[PSU_COL].to_list())}
    row_psu = np.fromiter(
        (psu_pos[p] for p in design.data[PSU_COL].to_list()),
        dtype=np.int64,
        count=design.n,
    )
    labels = list(dict.fromkeys(psus[STRATUM_COL].to_list()))
    stratum_pos = {s: i for i, s in enumerate(labels)}
    psu_stratum = np.array(
        [stratum_pos[s] for s in psus[STRATUM_COL].to_list()], dtype=np.int64
    )
    strata = [np.flatnonzero(psu_stratum == h) for h in range(len(labels))]
    return PsuLayout(row_psu, psu_stratum, strata, labels)


def _bootstrap_chunk(
    seed: np.random.SeedSequence, n_reps: int, n_psu: int, strata: list[np.ndarray]
) -> np.ndarray:
    """PSU draw multiplicities for one chunk of replicates, shape (n_psu, n_reps)."""
    rng = np.random.default_rng(seed)
    counts = np.zeros((n_psu, n_reps), dtype=np.float64)
    for members in strata:
        n_h = members.size
        counts[members] = rng.multinomial(n_h, np.full(n_h, 1.0 / n_h), size=n_reps).T
    return counts


def bootstrap_replicates(
    design: Design, replicates: int = DEFAULT_BOOTSTRAP_REPLICATES, seed: Optional[int] = None
) -> ReplicateSet:
    """Generate with-replacement bootstrap replicate weights.

    Replicates are drawn in chunks of ``BOOTSTRAP_CHUNK_SIZE``, each from
    its own child of ``SeedSequence(seed)``, so the result for a given
    seed does not depend on whether chunks run on the thread pool.
    """
    if replicates < 2:
        raise InvalidParameterError(f"Bootstrap needs at least 2 replicates, got {replicates}")
    layout = psu_layout(design)
    n_psu = layout.psu_stratum.size

    sizes = [BOOTSTRAP_CHUNK_SIZE] * (replicates // BOOTSTRAP_CHUNK_SIZE)
    if replicates % BOOTSTRAP_CHUNK_SIZE:
        sizes.append(replicates % BOOTSTRAP_CHUNK_SIZE)
    children = np.random.SeedSequence(seed).spawn(len(sizes))

    def run(args: tuple[np.random.SeedSequence, int]) -> np.ndarray:
        child, size = args
        return _bootstrap_chunk(child, size, n_psu, layout.strata)

    jobs = list(zip(children, sizes))
    if len(jobs) >= PARALLEL_CHUNK_THRESHOLD:
        with ThreadPoolExecutor() as pool:
            chunks = list(pool.map(run, jobs))
    else:
        chunks = [run(job) for job in jobs]

    multiplicity = np.hstack(chunks)
    weights = design.weights[:, None] * multiplicity[layout.row_psu]
    logger.debug(
        "Generated %d bootstrap replicates over %d PSUs in %d chunk(s)",
        replicates, n_psu, len(jobs),
    )
    return ReplicateSet(
        weights=weights,
        method=BOOTSTRAP,
        scale=1.0 / replicates,
        rscales=np.ones(replicates),
        center="mean",
        seed=seed,
    )


def jackknife_replicates(design: Design) -> ReplicateSet:
    """Generate delete-one-PSU jackknife replicate weights.

    PSUs of single-PSU strata cannot be deleted; those strata keep their
    base weights in every replicate and the variance engine applies the
    lonely-PSU policy to them.
    """
    layout = psu_layout(design)
    sizes = np.array([members.size for members in layout.strata])
    lonely = [layout.labels[h] for h in np.flatnonzero(sizes < 2)]
    if lonely:
        logger.debug("Jackknife leaves single-PSU strata %s unreplicated", lonely)

    deletable = np.flatnonzero(sizes[layout.psu_stratum] >= 2)
    n_reps = deletable.size
    row_stratum = layout.psu_stratum[layout.row_psu]
    weights = np.repeat(design.weights[:, None], n_reps, axis=1)
    rscales = np.empty(n_reps)
    for r, psu in enumerate(deletable):
        h = layout.psu_stratum[psu]
        n_h = sizes[h]
        weights[row_stratum == h, r] *= n_h / (n_h - 1.0)
        weights[layout.row_psu == psu, r] = 0.0
        rscales[r] = (n_h - 1.0) / n_h

    if len(layout.strata) == 1 and n_reps:
        scale = (n_reps - 1.0) / n_reps
        rscales = np.ones(n_reps)
    else:
        scale = 1.0

    return ReplicateSet(
        weights=weights, method=JACKKNIFE, scale=scale, rscales=rscales, center="mean"
    )


def brr_replicates(design: Design) -> ReplicateSet:
    """Generate balanced half-sample replicate weights."""
    layout = psu_layout(design)
    bad = [
        f"{layout.labels[h]} ({members.size})"
        for h, members in enumerate(layout.strata)
        if members.size != 2
    ]
    if bad:
        raise InvalidDesignError(
            "BRR requires exactly 2 PSUs per stratum; "
            f"strata with PSU counts: {', '.join(bad)}"
        )

    n_strata = len(layout.strata)
    order = max(2, 2 ** math.ceil(math.log2(n_strata)))
    matrix = hadamard(order)
    columns = matrix[:, 1 : n_strata + 1] if order > n_strata else matrix[:, :n_strata]

    # selected[p, r]: PSU p is in half-sample r
    selected = np.zeros((layout.psu_stratum.size, order), dtype=bool)
    for h, (first, second) in enumerate(layout.strata):
        selected[first] = columns[:, h] > 0
        selected[second] = columns[:, h] < 0

    factor = np.where(selected, 2.0, 0.0)
    weights = design.weights[:, None] * factor[layout.row_psu]
    return ReplicateSet(
        weights=weights,
        method=BRR,
        scale=1.0 / order,
        rscales=np.ones(order),
        center="full",
    )


def make_replicates(
    design: Design,
    method: str,
    replicates: Optional[int] = None,
    seed: Optional[int] = None,
) -> ReplicateSet:
    """
    Generate replicate weights for a design.

    Parameters
    ----------
    design : Design
    method : {"bootstrap", "jackknife", "brr"}
    replicates : int, optional
        Number of bootstrap replicates (default 500). Ignored for the
        jackknife (one replicate per PSU) and BRR (Hadamard order).
    seed : int, optional
        Bootstrap seed. Results are identical for identical seeds.

    Returns
    -------
    ReplicateSet
        Use :func:`pycreel.core.design.attach_replicates` or
        ``dataclasses.replace(design, replicates=...)`` to attach it.
    """
    method = str(method).lower()
    if method not in REPLICATE_METHODS:
        raise UnsupportedMethodError(
            f"Unknown replicate method '{method}'. "
            f"Valid methods: {', '.join(REPLICATE_METHODS)}"
        )
    if design.n == 0:
        raise InvalidDesignError("Cannot generate replicates for an empty design")
    if method == BOOTSTRAP:
        return bootstrap_replicates(
            design, replicates or DEFAULT_BOOTSTRAP_REPLICATES, seed=seed
        )
    if method == JACKKNIFE:
        return jackknife_replicates(design)
    return brr_replicates(design)


def with_replicates(
    design: Design,
    method: str,
    replicates: Optional[int] = None,
    seed: Optional[int] = None,
) -> Design:
    """Return ``design`` with freshly generated replicate weights attached."""
    return replace(design, replicates=make_replicates(design, method, replicates, seed))

