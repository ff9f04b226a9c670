"""Covariance estimation, GLS projection, composition and non-negativity."""

from .composition import CompositionDiagnostics, CrossTemporalComposer, IterationInfo
from .constraints import (
    ConstraintSet,
    Dimension,
    build_constraints,
    cross_sectional_bottom_up,
    cross_temporal_bottom_up,
    temporal_bottom_up,
)
from .covariance import CovarianceEstimate, CovarianceStrategy, estimate_covariance, get_estimator
from .nonnegative import NonNegativeProjector, SolverDiagnostics, clip_and_rebuild
from .projection import GLSProjector, reconcile
from .reconciler import CrossTemporalReconciler, ReconciledForecast
from .settings import (
    Axis,
    ChangeNorm,
    CompositionStrategy,
    IterativeSettings,
    NonNegativityStrategy,
    ReconciliationConfig,
    SolverSettings,
)

__all__ = [
    "CompositionDiagnostics",
    "CrossTemporalComposer",
    "IterationInfo",
    "ConstraintSet",
    "Dimension",
    "build_constraints",
    "cross_sectional_bottom_up",
    "cross_temporal_bottom_up",
    "temporal_bottom_up",
    "CovarianceEstimate",
    "CovarianceStrategy",
    "estimate_covariance",
    "get_estimator",
    "NonNegativeProjector",
    "SolverDiagnostics",
    "clip_and_rebuild",
    "GLSProjector",
    "reconcile",
    "CrossTemporalReconciler",
    "ReconciledForecast",
    "Axis",
    "ChangeNorm",
    "CompositionStrategy",
    "IterativeSettings",
    "NonNegativityStrategy",
    "ReconciliationConfig",
    "SolverSettings",
]
