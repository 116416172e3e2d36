"""
pycreel: design-based estimation for recreational creel surveys.

Estimates angler effort, catch per unit effort and total harvest from
probability-sample count and interview data, with standard errors from
Taylor linearization or replicate weights.

Typical workflow
----------------
>>> design = build_design(interviews, strata_vars=["day_type"],
...                       weights="weight", cluster_var="date")
>>> effort = estimate_effort(count_design, "instantaneous", by=["location"])
>>> cpue = estimate_cpue(design, by=["location"])
>>> harvest = combine_product_sets(effort, cpue, by=["location"])
>>> harvest.to_polars()
"""

import logging

from .core.config import EstimationConfig
from .core.design import (
    Design,
    ReplicateSet,
    attach_replicates,
    build_design,
    day_design_from_calendar,
    design_from_days,
    post_stratify,
)
from .core.diagnostics import DesignDiagnostics, design_diagnostics
from .core.exceptions import (
    CreelError,
    CreelWarning,
    DataQualityWarning,
    EmptySampleError,
    InvalidDesignError,
    InvalidParameterError,
    LonelyPSUWarning,
    MethodFallbackWarning,
    MissingColumnError,
    NotYetImplementedError,
    SmallSampleWarning,
    UnsupportedMethodError,
)
from .estimation.decomposition import decompose_variance
from .estimation.engine import compute_grouped, compute_statistic
from .estimation.estimators import (
    CpueMode,
    EffortKind,
    SpeciesAggregation,
    aggregate_species,
    combine_product,
    combine_product_sets,
    estimate_catch,
    estimate_cpue,
    estimate_effort,
)
from .estimation.replicates import make_replicates, with_replicates
from .estimation.results import Estimate, EstimateSet, VarianceDecomposition, VarianceInfo

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    # Design
    "Design",
    "ReplicateSet",
    "build_design",
    "attach_replicates",
    "post_stratify",
    "day_design_from_calendar",
    "design_from_days",
    "design_diagnostics",
    "DesignDiagnostics",
    # Variance engine
    "make_replicates",
    "with_replicates",
    "compute_statistic",
    "compute_grouped",
    "decompose_variance",
    # Estimators
    "estimate_effort",
    "EffortKind",
    "estimate_cpue",
    "CpueMode",
    "aggregate_species",
    "SpeciesAggregation",
    "estimate_catch",
    "combine_product",
    "combine_product_sets",
    # Results and configuration
    "Estimate",
    "EstimateSet",
    "VarianceInfo",
    "VarianceDecomposition",
    "EstimationConfig",
    # Errors and warnings
    "CreelError",
    "InvalidDesignError",
    "MissingColumnError",
    "EmptySampleError",
    "UnsupportedMethodError",
    "NotYetImplementedError",
    "InvalidParameterError",
    "CreelWarning",
    "LonelyPSUWarning",
    "SmallSampleWarning",
    "DataQualityWarning",
    "MethodFallbackWarning",
]
