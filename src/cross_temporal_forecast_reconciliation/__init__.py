"""
Cross-Temporal Forecast Reconciliation.

Projects independently produced base forecasts onto the subspace that
satisfies cross-sectional (plants -> zones -> total) and temporal (hourly ->
daily) aggregation relations at once, using GLS weightings estimated from
in-sample residuals, with optional fixed values and non-negativity.
"""

__version__ = "0.1.0"

from . import evaluation, hierarchy, reconciliation, utils
from .exceptions import (
    DimensionMismatchError,
    InfeasibleConstraintsError,
    InvalidHierarchyError,
    NonConvergenceWarning,
    ReconciliationError,
    SingularCovarianceError,
)
from .hierarchy import HierarchyDescriptor, TemporalHierarchyDescriptor
from .reconciliation import (
    CompositionStrategy,
    CovarianceStrategy,
    CrossTemporalReconciler,
    NonNegativityStrategy,
    ReconciledForecast,
    ReconciliationConfig,
    SolverSettings,
)

__all__ = [
    "evaluation",
    "hierarchy",
    "reconciliation",
    "utils",
    "HierarchyDescriptor",
    "TemporalHierarchyDescriptor",
    "CrossTemporalReconciler",
    "ReconciledForecast",
    "ReconciliationConfig",
    "SolverSettings",
    "CovarianceStrategy",
    "CompositionStrategy",
    "NonNegativityStrategy",
    "ReconciliationError",
    "InvalidHierarchyError",
    "DimensionMismatchError",
    "SingularCovarianceError",
    "InfeasibleConstraintsError",
    "NonConvergenceWarning",
]
