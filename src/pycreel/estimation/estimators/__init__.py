"""
Creel estimators.

- effort: instantaneous, progressive, aerial and bus-route angler effort
- cpue: ratio-of-means and mean-of-ratios catch per unit effort
- catch: weighted catch totals
- harvest: effort x CPUE with delta-method variance
"""

from .catch import CatchTotalEstimator, estimate_catch
from .cpue import (
    CPUE_ESTIMATORS,
    CpueMode,
    MeanOfRatiosCpue,
    RatioOfMeansCpue,
    SpeciesAggregation,
    aggregate_species,
    estimate_cpue,
)
from .effort import (
    EFFORT_ESTIMATORS,
    AerialEffortEstimator,
    BusRouteEffortEstimator,
    EffortKind,
    InstantaneousEffortEstimator,
    ProgressiveEffortEstimator,
    estimate_effort,
)
from .harvest import combine_product, combine_product_sets

__all__ = [
    "AerialEffortEstimator",
    "BusRouteEffortEstimator",
    "CPUE_ESTIMATORS",
    "CatchTotalEstimator",
    "CpueMode",
    "EFFORT_ESTIMATORS",
    "EffortKind",
    "InstantaneousEffortEstimator",
    "MeanOfRatiosCpue",
    "ProgressiveEffortEstimator",
    "RatioOfMeansCpue",
    "SpeciesAggregation",
    "aggregate_species",
    "combine_product",
    "combine_product_sets",
    "estimate_catch",
    "estimate_cpue",
    "estimate_effort",
]
