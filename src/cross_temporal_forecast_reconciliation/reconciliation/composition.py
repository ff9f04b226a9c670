"""
Cross-temporal composition strategies.

All strategies work on the stacked cross-temporal form ``Y`` of shape
``(n*kt, N)`` (row ``i*kt + p`` is series ``i`` at cycle position ``p``,
column ``c`` is cycle ``c``) with a cross-temporal weighting matrix ``W``.
Single-axis sub-problems use the matching diagonal blocks of ``W``:

- temporal, series ``i``: rows ``i*kt .. i*kt + kt - 1``;
- cross-sectional, position ``p``: rows ``p, kt + p, 2*kt + p, ...``.

The two-step heuristics apply one *averaged* projection along the second
axis to every unit of the first axis, which keeps the first axis coherent.
Cycles holding fixed entries are projected with the full cross-temporal
constraints instead, so fixed values never cost coherence.
"""

import logging
import warnings
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Hashable, List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy import sparse

from ..exceptions import NonConvergenceWarning
from ..utils.cache import FactorizationCache, fingerprint
from ..utils.logging_utils import PerformanceLogger
from .constraints import ConstraintSet, Dimension
from .projection import COHERENCE_TOLERANCE, GLSProjector, cached_projector
from .settings import Axis, ChangeNorm, CompositionStrategy, IterativeSettings

logger = logging.getLogger(__name__)

Matrix = Union[np.ndarray, sparse.csr_matrix]
FixedPairs = FrozenSet[Tuple[int, int]]

# Stacked sizes above which the simultaneous path is reported as expensive
LARGE_PROBLEM_ROWS = 5000


@dataclass(frozen=True)
class IterationInfo:
    """Progress report of one iteration of the iterative heuristic."""

    iteration: int
    change: float
    coherence_residual: float


@dataclass
class CompositionDiagnostics:
    """
    Outcome of a cross-temporal composition.

    Attributes:
        strategy: Strategy used.
        converged: False only when the iterative heuristic hit its cap.
        iterations: Iterations run by the iterative heuristic.
        final_change: Last measured change between iterates.
        coherence_residual: Maximum absolute violation of the cross-temporal constraints.
        history: Per-iteration reports of the iterative heuristic.
        unhonored_fixed: Fixed entries the strategy could not keep at their base value.
    """

    strategy: CompositionStrategy
    converged: bool = True
    iterations: int = 0
    final_change: Optional[float] = None
    coherence_residual: float = 0.0
    history: List[IterationInfo] = field(default_factory=list)
    unhonored_fixed: List[Tuple[int, int]] = field(default_factory=list)


def _block(W: Matrix, rows: np.ndarray) -> Matrix:
    if sparse.issparse(W):
        return sparse.csr_matrix(W)[rows][:, rows]
    return W[np.ix_(rows, rows)]


def change_norm(delta: np.ndarray, norm: ChangeNorm) -> float:
    """Size of the change between two iterates."""
    if norm is ChangeNorm.INF:
        return float(np.max(np.abs(delta))) if delta.size else 0.0
    if norm is ChangeNorm.L1:
        return float(np.sum(np.abs(delta)))
    return float(np.sqrt(np.sum(np.square(delta))))


class CrossTemporalComposer:
    """
    Reconciles stacked cross-temporal forecasts with one composition strategy.

    Per-series and per-position sub-problems are independent and run on a
    thread pool when ``max_workers`` is greater than one.
    """

    def __init__(
        self,
        constraints: ConstraintSet,
        strategy: Union[str, CompositionStrategy] = CompositionStrategy.SIMULTANEOUS,
        iterative: Optional[IterativeSettings] = None,
        bottom_up_axis: Union[str, Axis] = Axis.CROSS_SECTIONAL,
        max_workers: Optional[int] = None,
        cache: Optional[FactorizationCache] = None,
        observer: Optional[Callable[[IterationInfo], None]] = None
    ) -> None:
        """
        Args:
            constraints: Cross-temporal constraint set.
            strategy: Composition strategy.
            iterative: Settings of the iterative heuristic.
            bottom_up_axis: Axis reconciled before summation in the bottom-up strategy.
            max_workers: Worker threads for independent sub-problems.
            cache: Shared projector cache; a private one is used if omitted.
            observer: Called with an :class:`IterationInfo` after every iteration
                of the iterative heuristic.
        """
        if constraints.dimension is not Dimension.CROSS_TEMPORAL:
            raise ValueError(
                f"Composition needs cross-temporal constraints, got {constraints.dimension.value}"
            )
        self.constraints = constraints
        self.hierarchy = constraints.hierarchy
        self.temporal = constraints.temporal
        self.strategy = CompositionStrategy(strategy)
        self.iterative = iterative or IterativeSettings()
        self.bottom_up_axis = Axis(bottom_up_axis)
        self.max_workers = max_workers
        self.cache = cache if cache is not None else FactorizationCache(maxsize=256)
        self.observer = observer
        self.logger = logging.getLogger(__name__)
        self.perf_logger = PerformanceLogger(self.logger)

        self.n = self.hierarchy.n
        self.kt = self.temporal.kt
        self._cs_key = fingerprint(self.hierarchy.C)
        self._te_key = self.temporal.fingerprint

    # -- layout helpers -------------------------------------------------

    def series_rows(self, i: int) -> np.ndarray:
        return i * self.kt + np.arange(self.kt)

    def position_rows(self, p: int) -> np.ndarray:
        return np.arange(self.n) * self.kt + p

    def _fixed_for_series(self, fixed: FixedPairs, i: int) -> FixedPairs:
        return frozenset((r - i * self.kt, c) for r, c in fixed if r // self.kt == i)

    def _fixed_for_position(self, fixed: FixedPairs, p: int) -> FixedPairs:
        return frozenset((r // self.kt, c) for r, c in fixed if r % self.kt == p)

    def _map(self, func: Callable, items: Sequence) -> List:
        items = list(items)
        if not self.max_workers or self.max_workers == 1 or len(items) <= 1:
            return [func(item) for item in items]

        results: List = [None] * len(items)
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {executor.submit(func, item): idx for idx, item in enumerate(items)}
            for future in as_completed(futures):
                results[futures[future]] = future.result()
        return results

    def _temporal_projector(self, W: Matrix) -> GLSProjector:
        return cached_projector(self.cache, ("temporal", self._te_key, fingerprint(W)), self.temporal.Z, W)

    def _cross_sectional_projector(self, W: Matrix) -> GLSProjector:
        return cached_projector(self.cache, ("cross_sectional", self._cs_key, fingerprint(W)), self.hierarchy.U, W)

    def _order_weights(self, W: Matrix) -> Dict[int, Matrix]:
        """Cross-sectional weighting of each temporal order, averaged over its positions."""
        weights = {}
        for k in self.temporal.orders:
            positions = self.temporal.order_positions(k)
            weights[k] = sum(_block(W, self.position_rows(p)) for p in positions) / len(positions)
        return weights

    def _order_of_position(self) -> Dict[int, int]:
        return {int(p): k for k in self.temporal.orders for p in self.temporal.order_positions(k)}

    # -- single-axis steps ----------------------------------------------

    def temporal_step(self, Y: np.ndarray, W: Matrix, fixed: FixedPairs) -> np.ndarray:
        """Project every series onto its temporal constraints with its own weights."""
        def project(i: int) -> np.ndarray:
            rows = self.series_rows(i)
            return self._temporal_projector(_block(W, rows)).project(Y[rows], self._fixed_for_series(fixed, i))

        result = np.empty_like(Y)
        for i, block in enumerate(self._map(project, range(self.n))):
            result[self.series_rows(i)] = block
        return result

    def cross_sectional_step(
        self,
        Y: np.ndarray,
        W: Matrix,
        fixed: FixedPairs,
        weights_by_position: Optional[Dict[int, Matrix]] = None
    ) -> np.ndarray:
        """Project every cycle position onto the cross-sectional constraints."""
        def project(p: int) -> np.ndarray:
            rows = self.position_rows(p)
            W_p = weights_by_position[p] if weights_by_position else _block(W, rows)
            return self._cross_sectional_projector(W_p).project(Y[rows], self._fixed_for_position(fixed, p))

        result = np.empty_like(Y)
        for p, block in enumerate(self._map(project, range(self.kt))):
            result[self.position_rows(p)] = block
        return result

    # -- strategies -----------------------------------------------------

    def simultaneous(self, Y: np.ndarray, W: Matrix, fixed: FixedPairs, weights_key: Hashable = None) -> np.ndarray:
        """One projection with the full cross-temporal constraint and weighting matrices."""
        n_rows = self.constraints.n_rows
        if n_rows > LARGE_PROBLEM_ROWS:
            self.logger.warning(
                f"Simultaneous reconciliation over {n_rows} stacked rows; "
                f"this is the most resource-intensive composition"
            )
        key = ("simultaneous", self.constraints.fingerprint, weights_key or fingerprint(W))
        with self.perf_logger.timer("simultaneous projection"):
            projector = cached_projector(self.cache, key, self.constraints.U, W)
            return projector.project(Y, fixed)

    def _project_fixed_columns(
        self,
        result: np.ndarray,
        Y1: np.ndarray,
        W: Matrix,
        fixed: FixedPairs,
        weights_key: Hashable = None
    ) -> np.ndarray:
        """
        Re-project the cycles holding fixed entries onto both axes at once.

        The averaged second step cannot keep fixed entries without breaking the
        first axis, so every affected column of the first-step result ``Y1`` is
        projected with the full cross-temporal constraints instead.
        """
        columns = sorted({col for _, col in fixed})
        position = {col: j for j, col in enumerate(columns)}
        key = ("simultaneous", self.constraints.fingerprint, weights_key or fingerprint(W))
        projector = cached_projector(self.cache, key, self.constraints.U, W)

        result = result.copy()
        result[:, columns] = projector.project(
            Y1[:, columns], frozenset((row, position[col]) for row, col in fixed)
        )
        return result

    def temporal_then_cross(
        self,
        Y: np.ndarray,
        W: Matrix,
        fixed: FixedPairs,
        weights_key: Hashable = None
    ) -> np.ndarray:
        """
        Temporal projection per series, then one cross-sectional projection for all positions.

        The second step applies the average of the per-order cross-sectional
        projection matrices. Cycles with fixed entries are finished by
        :meth:`_project_fixed_columns`.
        """
        Y1 = self.temporal_step(Y, W, fixed)
        M_bar = sum(
            self._cross_sectional_projector(W_k).projection_matrix() for W_k in self._order_weights(W).values()
        ) / len(self.temporal.orders)
        result = (M_bar @ Y1.reshape(self.n, self.kt * Y1.shape[1])).reshape(Y1.shape)
        if fixed:
            result = self._project_fixed_columns(result, Y1, W, fixed, weights_key)
        return result

    def cross_then_temporal(
        self,
        Y: np.ndarray,
        W: Matrix,
        fixed: FixedPairs,
        weights_key: Hashable = None
    ) -> np.ndarray:
        """
        Cross-sectional projection per temporal order, then one temporal projection for all series.

        The second step applies the average of the per-series temporal
        projection matrices. Cycles with fixed entries are finished by
        :meth:`_project_fixed_columns`.
        """
        order_weights = self._order_weights(W)
        order_of = self._order_of_position()
        Y1 = self.cross_sectional_step(
            Y, W, fixed, {p: order_weights[order_of[p]] for p in range(self.kt)}
        )

        P_bar = sum(
            self._temporal_projector(_block(W, self.series_rows(i))).projection_matrix() for i in range(self.n)
        ) / self.n
        result = (P_bar @ Y1.reshape(self.n, self.kt, Y1.shape[1])).reshape(Y1.shape)
        if fixed:
            result = self._project_fixed_columns(result, Y1, W, fixed, weights_key)
        return result

    def iterate(
        self,
        Y: np.ndarray,
        W: Matrix,
        fixed: FixedPairs,
        diagnostics: CompositionDiagnostics
    ) -> np.ndarray:
        """
        Alternate single-axis projections until the change between iterations is small.

        When the iteration cap is reached the most coherent iterate is returned,
        ``diagnostics.converged`` is set to False and a ``NonConvergenceWarning``
        is emitted.
        """
        settings = self.iterative
        steps = [self.temporal_step, self.cross_sectional_step]
        if settings.start is Axis.CROSS_SECTIONAL:
            steps.reverse()

        current = Y
        best, best_residual = Y, np.inf
        for iteration in range(1, settings.max_iterations + 1):
            previous = current
            for step in steps:
                current = step(current, W, fixed)

            change = change_norm(current - previous, settings.norm)
            residual = self.constraints.coherence_residual(current)
            if residual < best_residual:
                best, best_residual = current, residual

            info = IterationInfo(iteration=iteration, change=change, coherence_residual=residual)
            diagnostics.history.append(info)
            self.perf_logger.count("iterations")
            diagnostics.iterations = iteration
            diagnostics.final_change = change
            if self.observer is not None:
                self.observer(info)

            if change < settings.tolerance:
                self.logger.debug(f"Iterative reconciliation converged after {iteration} iterations")
                return current

        diagnostics.converged = False
        message = (
            f"Iterative reconciliation did not converge in {settings.max_iterations} iterations "
            f"(last change {diagnostics.final_change:.3e}, tolerance {settings.tolerance:.1e})"
        )
        self.logger.warning(message)
        warnings.warn(message, NonConvergenceWarning, stacklevel=3)
        return best

    def bottom_up(self, Y: np.ndarray, W: Matrix, fixed: FixedPairs) -> np.ndarray:
        """
        Reconcile the highest-frequency bottom values along one axis, then sum.

        With the cross-sectional axis every highest-frequency position is
        reconciled cross-sectionally; with the temporal axis every bottom
        series is reconciled temporally. All other values are derived with
        ``S_cs (x) S_te``.
        """
        n_a, n_b, m = self.hierarchy.n_a, self.hierarchy.n_b, self.temporal.m
        high_frequency = self.temporal.highest_frequency_positions()
        bottom = np.empty((n_b, m, Y.shape[1]))

        if self.bottom_up_axis is Axis.CROSS_SECTIONAL:
            def project(p: int) -> np.ndarray:
                rows = self.position_rows(p)
                return self._cross_sectional_projector(_block(W, rows)).project(
                    Y[rows], self._fixed_for_position(fixed, p)
                )[n_a:]

            for j, values in enumerate(self._map(project, high_frequency)):
                bottom[:, j, :] = values
        else:
            def project(i: int) -> np.ndarray:
                rows = self.series_rows(i)
                return self._temporal_projector(_block(W, rows)).project(
                    Y[rows], self._fixed_for_series(fixed, i)
                )[self.temporal.k_star:]

            for j, values in enumerate(self._map(project, range(n_a, self.n))):
                bottom[j] = values

        return np.asarray(self.constraints.S @ bottom.reshape(n_b * m, Y.shape[1]))

    # -- entry point ----------------------------------------------------

    def compose(
        self,
        Y: np.ndarray,
        W: Matrix,
        fixed: Optional[FixedPairs] = None,
        weights_key: Hashable = None
    ) -> Tuple[np.ndarray, CompositionDiagnostics]:
        """
        Reconcile stacked cross-temporal forecasts.

        Args:
            Y: Stacked base forecasts ``(n*kt, N)``.
            W: Cross-temporal weighting matrix.
            fixed: Stacked ``(row, column)`` pairs held at their base value.
            weights_key: Cache key identifying ``W`` (hashed if omitted).

        Returns:
            Tuple of (reconciled stacked forecasts, diagnostics).
        """
        fixed = frozenset(fixed or ())
        diagnostics = CompositionDiagnostics(strategy=self.strategy)
        self.logger.info(
            f"Cross-temporal reconciliation ({self.strategy.value}) of {self.n} series x "
            f"{self.kt} temporal values x {Y.shape[1]} cycles"
        )

        if self.strategy is CompositionStrategy.SIMULTANEOUS:
            result = self.simultaneous(Y, W, fixed, weights_key)
        elif self.strategy is CompositionStrategy.TEMPORAL_THEN_CROSS:
            result = self.temporal_then_cross(Y, W, fixed, weights_key)
        elif self.strategy is CompositionStrategy.CROSS_THEN_TEMPORAL:
            result = self.cross_then_temporal(Y, W, fixed, weights_key)
        elif self.strategy is CompositionStrategy.ITERATIVE:
            result = self.iterate(Y, W, fixed, diagnostics)
        else:
            result = self.bottom_up(Y, W, fixed)

        result = np.array(result, dtype=float)
        scale = max(1.0, float(np.max(np.abs(Y)))) if Y.size else 1.0
        for row, col in sorted(fixed):
            if abs(result[row, col] - Y[row, col]) <= COHERENCE_TOLERANCE * scale:
                result[row, col] = Y[row, col]
            else:
                diagnostics.unhonored_fixed.append((row, col))
        if diagnostics.unhonored_fixed:
            self.logger.warning(
                f"{self.strategy.value} derived {len(diagnostics.unhonored_fixed)} fixed entries by summation; "
                f"first stacked indices {diagnostics.unhonored_fixed[:10]}"
            )

        diagnostics.coherence_residual = self.constraints.coherence_residual(result)
        if diagnostics.converged and diagnostics.coherence_residual > COHERENCE_TOLERANCE * scale:
            self.logger.warning(
                f"{self.strategy.value} result is not fully coherent "
                f"(max violation {diagnostics.coherence_residual:.3e}) with the chosen weighting"
            )
        return result, diagnostics
