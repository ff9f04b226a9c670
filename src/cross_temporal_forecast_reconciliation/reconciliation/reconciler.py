"""
High-level reconciliation facade.

``CrossTemporalReconciler`` ties the pieces together for one hierarchy
configuration: it estimates the weighting matrix, projects (or composes, for
cross-temporal problems) and optionally enforces non-negativity. Two
accessors are offered: :meth:`reconcile` returns only the reconciled matrix,
:meth:`reconcile_with_diagnostics` returns a :class:`ReconciledForecast`.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Union

import numpy as np
import pandas as pd

from ..hierarchy.cross_sectional import HierarchyDescriptor
from ..hierarchy.temporal import TemporalHierarchyDescriptor
from ..utils.cache import FactorizationCache, fingerprint
from ..utils.logging_utils import PerformanceLogger, StructuredLogger, log_function_call
from ..utils.type_validation import as_float_array
from .composition import CompositionDiagnostics, CrossTemporalComposer, IterationInfo
from .constraints import ConstraintSet, Dimension, build_constraints
from .covariance import CovarianceEstimate, estimate_covariance
from .nonnegative import NonNegativeProjector, SolverDiagnostics
from .projection import cached_projector
from .settings import NonNegativityStrategy, ReconciliationConfig

Forecasts = Union[np.ndarray, pd.DataFrame, pd.Series]


@dataclass
class ReconciledForecast:
    """
    Reconciled forecasts together with how they were obtained.

    Attributes:
        values: Reconciled forecasts with the shape, ordering and labels of the input.
        coherence_residual: Maximum absolute violation of the constraints.
        dimension: Axes the constraints covered.
        covariance: Weighting matrix estimate, including any fallback used.
        composition: Cross-temporal composition diagnostics.
        solver: Non-negativity projection diagnostics.
    """

    values: Forecasts
    coherence_residual: float
    dimension: Dimension
    covariance: CovarianceEstimate
    composition: Optional[CompositionDiagnostics] = None
    solver: Optional[SolverDiagnostics] = None

    @property
    def converged(self) -> bool:
        """False when an iterative heuristic or the QP solver exhausted its budget."""
        if self.composition is not None and not self.composition.converged:
            return False
        return self.solver is None or self.solver.converged

    @property
    def covariance_fallback(self) -> Optional[str]:
        """Strategy used instead of the requested one, if any."""
        return self.covariance.strategy.value if self.covariance.fallback_used else None


class CrossTemporalReconciler:
    """
    Reconciles forecasts for a fixed cross-sectional and/or temporal hierarchy.

    Example:
        >>> hierarchy = HierarchyDescriptor.build([[1, 1]])
        >>> CrossTemporalReconciler(hierarchy).reconcile(np.array([10.0, 4.0, 7.0]))
        array([10.5 ,  3.75,  6.75])
    """

    def __init__(
        self,
        hierarchy: Optional[HierarchyDescriptor] = None,
        temporal: Optional[TemporalHierarchyDescriptor] = None,
        config: Optional[ReconciliationConfig] = None,
        cache: Optional[FactorizationCache] = None,
        observer: Optional[Callable[[IterationInfo], None]] = None
    ) -> None:
        """
        Args:
            hierarchy: Cross-sectional hierarchy, if reconciling across series.
            temporal: Temporal hierarchy, if reconciling across time scales.
            config: Strategies and solver settings; defaults are used if omitted.
            cache: Cache shared with other reconcilers for covariance estimates
                and factorisations.
            observer: Per-iteration callback of the iterative heuristic.

        Raises:
            ValueError: If neither hierarchy is given.
        """
        self.config = config or ReconciliationConfig()
        self.constraints: ConstraintSet = build_constraints(hierarchy, temporal)
        self.hierarchy = hierarchy
        self.temporal = temporal
        self.cache = cache if cache is not None else FactorizationCache(maxsize=256)
        self.logger = logging.getLogger(__name__)
        self.structured_logger = StructuredLogger(__name__, {"dimension": self.constraints.dimension.value})
        self.perf_logger = PerformanceLogger(self.logger)

        self.composer: Optional[CrossTemporalComposer] = None
        if self.constraints.dimension is Dimension.CROSS_TEMPORAL:
            self.composer = CrossTemporalComposer(
                self.constraints,
                strategy=self.config.composition,
                iterative=self.config.iterative,
                bottom_up_axis=self.config.bottom_up_axis,
                max_workers=self.config.max_workers,
                cache=self.cache,
                observer=observer
            )
        self.nonnegative = NonNegativeProjector(self.constraints, self.config.nonnegative, self.config.solver)

    def estimate_covariance(self, residuals: Optional[Forecasts] = None) -> CovarianceEstimate:
        """Weighting matrix for the configured strategy, cached by residual content."""
        residual_array = None if residuals is None else as_float_array(residuals, "residuals")
        key = (
            "covariance",
            self.constraints.fingerprint,
            self.config.covariance.value,
            self.config.regularization,
            fingerprint(residual_array)
        )
        return self.cache.get_or_compute(
            key,
            lambda: estimate_covariance(
                self.constraints, self.config.covariance, residual_array, self.config.regularization
            )
        )

    @log_function_call()
    def reconcile_with_diagnostics(
        self,
        forecasts: Forecasts,
        residuals: Optional[Forecasts] = None,
        fixed: Optional[Iterable] = None
    ) -> ReconciledForecast:
        """
        Reconcile base forecasts and report diagnostics.

        Args:
            forecasts: Base forecasts in the layout of the hierarchy (see
                :meth:`ConstraintSet.stack`). DataFrame/Series labels are kept.
            residuals: In-sample residuals in the same layout, with historical
                points instead of forecast steps.
            fixed: Entries held at their base value: ``(row, column)`` pairs, or
                positions for 1-D temporal forecasts.

        Returns:
            ReconciledForecast.

        Raises:
            DimensionMismatchError: If forecasts or residuals disagree with the hierarchy.
            InfeasibleConstraintsError: If the fixed values contradict the constraints.
            SingularCovarianceError: If no usable weighting matrix can be formed.
        """
        base = as_float_array(forecasts, "forecasts")
        Y = self.constraints.stack(base, "forecasts")
        fixed_pairs = self.constraints.map_fixed(fixed, base.shape)

        estimate = self.estimate_covariance(residuals)
        self.perf_logger.log_array_stats(estimate.matrix, f"{estimate.strategy.value} weighting matrix")
        weights_key = (estimate.strategy.value, self.config.regularization, fingerprint(
            None if residuals is None else as_float_array(residuals, "residuals")
        ))

        composition = None
        if self.composer is not None:
            result, composition = self.composer.compose(Y, estimate.matrix, fixed_pairs, weights_key)
        else:
            key = ("gls", self.constraints.fingerprint, weights_key)
            with self.perf_logger.timer(f"{self.constraints.dimension.value} projection"):
                projector = cached_projector(self.cache, key, self.constraints.U, estimate.matrix)
                result = projector.project(Y, fixed_pairs)

        solver = None
        if self.config.nonnegative is not NonNegativityStrategy.NONE:
            result, solver = self.nonnegative.project(result, estimate.matrix, fixed_pairs)

        residual = self.constraints.coherence_residual(result)
        self.structured_logger.info(
            "Reconciliation completed",
            {
                "covariance": estimate.strategy.value,
                "composition": self.config.composition.value if composition else None,
                "nonnegative": self.config.nonnegative.value,
                "coherence_residual": f"{residual:.3e}"
            }
        )

        return ReconciledForecast(
            values=self._restore_layout(result, forecasts, base.shape),
            coherence_residual=residual,
            dimension=self.constraints.dimension,
            covariance=estimate,
            composition=composition,
            solver=solver
        )

    def reconcile(
        self,
        forecasts: Forecasts,
        residuals: Optional[Forecasts] = None,
        fixed: Optional[Iterable] = None
    ) -> Forecasts:
        """Reconcile base forecasts and return only the reconciled values."""
        return self.reconcile_with_diagnostics(forecasts, residuals, fixed).values

    def _restore_layout(self, stacked: np.ndarray, original: Forecasts, shape) -> Forecasts:
        values = self.constraints.unstack(stacked, shape)
        if isinstance(original, pd.DataFrame):
            return pd.DataFrame(values, index=original.index, columns=original.columns)
        if isinstance(original, pd.Series):
            return pd.Series(values, index=original.index, name=original.name)
        return values
