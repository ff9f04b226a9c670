"""
Non-negativity projection of reconciled forecasts.

Neither structural nor covariance-based reconciliation guarantees
non-negative values on its own. Two projectors are available:

- exact: the quadratic program ``min ||L^{-1}(z - y)||^2`` subject to
  ``U z = 0`` and ``z >= 0`` (``W = L L'``), solved with OSQP through cvxpy;
- heuristic: negative highest-frequency bottom values are set to zero and
  every aggregate is rebuilt by bottom-up summation.

A failed or inaccurate QP solve is reported through :class:`SolverDiagnostics`
and a ``NonConvergenceWarning``; the heuristic result is returned when no QP
solution is available.
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple, Union

import cvxpy as cp
import numpy as np
from scipy import linalg, sparse

from ..exceptions import NonConvergenceWarning, SingularCovarianceError
from ..utils.logging_utils import PerformanceLogger
from .constraints import ConstraintSet
from .settings import NonNegativityStrategy, SolverSettings

logger = logging.getLogger(__name__)

Matrix = Union[np.ndarray, sparse.spmatrix]


@dataclass(frozen=True)
class SolverDiagnostics:
    """
    Report of a non-negativity projection.

    Attributes:
        strategy: Projector used.
        status: Solver status, ``"skipped"`` when the input was already
            non-negative, or ``"heuristic"`` for clip-and-rebuild.
        converged: Whether the result is the solver's optimum.
        iterations: Solver iterations, when reported.
        tolerance: Achieved tolerance, the larger of the coherence violation
            and the largest negative value.
        objective: Weighted squared distance to the input, when solved.
        fallback: Whether the heuristic result replaced a failed QP solve.
        negatives: Values still below zero after solver round-off was zeroed.
    """

    strategy: NonNegativityStrategy
    status: str
    converged: bool
    iterations: Optional[int] = None
    tolerance: float = 0.0
    objective: Optional[float] = None
    fallback: bool = False
    negatives: int = 0


def clip_and_rebuild(constraints: ConstraintSet, Y: np.ndarray) -> np.ndarray:
    """Zero the negative bottom values of stacked ``Y`` and rebuild every row by summation."""
    bottom = np.maximum(np.asarray(Y, dtype=float)[constraints.bottom_rows], 0.0)
    return np.asarray(constraints.S @ bottom)


def _achieved_tolerance(constraints: ConstraintSet, Y: np.ndarray) -> float:
    negativity = max(0.0, -float(np.min(Y))) if Y.size else 0.0
    return max(constraints.coherence_residual(Y), negativity)


def _inverse_cholesky(W: Matrix) -> Matrix:
    """``L^{-1}`` with ``W = L L'``; diagonal weights stay sparse."""
    if sparse.issparse(W):
        if W.nnz == np.count_nonzero(W.diagonal()):
            return sparse.diags(1.0 / np.sqrt(W.diagonal()), format="csc")
        W = W.toarray()
    W = np.asarray(W, dtype=float)
    if not np.any(W - np.diag(np.diag(W))):
        return sparse.diags(1.0 / np.sqrt(np.diag(W)), format="csc")
    try:
        L = linalg.cholesky(W, lower=True)
    except linalg.LinAlgError as e:
        raise SingularCovarianceError(f"Weighting matrix is not positive definite: {e}") from e
    return linalg.solve_triangular(L, np.eye(W.shape[0]), lower=True)


class NonNegativeProjector:
    """Applies the configured non-negativity strategy to stacked forecasts."""

    def __init__(
        self,
        constraints: ConstraintSet,
        strategy: Union[str, NonNegativityStrategy] = NonNegativityStrategy.HEURISTIC,
        settings: Optional[SolverSettings] = None
    ) -> None:
        self.constraints = constraints
        self.strategy = NonNegativityStrategy(strategy)
        self.settings = settings or SolverSettings()
        self.logger = logging.getLogger(__name__)
        self.perf_logger = PerformanceLogger(self.logger)

    def project(
        self,
        Y: np.ndarray,
        W: Optional[Matrix] = None,
        fixed: Optional[Iterable[Tuple[int, int]]] = None
    ) -> Tuple[np.ndarray, Optional[SolverDiagnostics]]:
        """
        Make stacked, coherent forecasts non-negative.

        Args:
            Y: Stacked forecasts ``(n_rows, N)``.
            W: Weighting matrix for the exact projector (identity if omitted).
            fixed: Stacked ``(row, column)`` pairs pinned by the exact projector.

        Returns:
            Tuple of (projected forecasts, diagnostics or None for strategy ``none``).
        """
        Y = np.asarray(Y, dtype=float)
        if self.strategy is NonNegativityStrategy.NONE:
            return Y, None

        if Y.size and np.min(Y) >= 0:
            return Y.copy(), SolverDiagnostics(
                strategy=self.strategy,
                status="skipped",
                converged=True,
                iterations=0,
                tolerance=_achieved_tolerance(self.constraints, Y)
            )

        if self.strategy is NonNegativityStrategy.HEURISTIC:
            return self.heuristic(Y, fixed)
        return self.exact(Y, W, fixed)

    def heuristic(
        self,
        Y: np.ndarray,
        fixed: Optional[Iterable[Tuple[int, int]]] = None
    ) -> Tuple[np.ndarray, SolverDiagnostics]:
        """Clip-and-rebuild projection; fixed values are not preserved when they change."""
        result = clip_and_rebuild(self.constraints, Y)
        changed = [pair for pair in (fixed or ()) if result[pair] != Y[pair]]
        if changed:
            self.logger.warning(
                f"Clip-and-rebuild changed {len(changed)} fixed entries; first stacked indices {sorted(changed)[:10]}"
            )
        return result, SolverDiagnostics(
            strategy=NonNegativityStrategy.HEURISTIC,
            status="heuristic",
            converged=True,
            tolerance=_achieved_tolerance(self.constraints, result)
        )

    def exact(
        self,
        Y: np.ndarray,
        W: Optional[Matrix] = None,
        fixed: Optional[Iterable[Tuple[int, int]]] = None
    ) -> Tuple[np.ndarray, SolverDiagnostics]:
        """
        Solve the non-negative GLS projection as a quadratic program.

        Values are scaled by their largest magnitude before solving so the
        solver tolerance is relative.
        """
        n_rows = self.constraints.n_rows
        if W is None:
            W = sparse.identity(n_rows, format="csc")
        L_inv = _inverse_cholesky(W)

        scale = max(1.0, float(np.max(np.abs(Y))))
        target = Y / scale

        Z = cp.Variable(Y.shape)
        U = self.constraints.U
        constraints = [U @ Z == 0, Z >= 0]
        if fixed:
            mask = np.zeros(Y.shape)
            for row, col in fixed:
                mask[row, col] = 1.0
            constraints.append(cp.multiply(mask, Z) == mask * target)

        problem = cp.Problem(cp.Minimize(cp.sum_squares(L_inv @ (Z - target))), constraints)

        status = "solver_error"
        try:
            with self.perf_logger.timer("non-negative QP"):
                problem.solve(
                    solver=cp.OSQP,
                    max_iter=self.settings.max_iterations,
                    eps_abs=self.settings.tolerance,
                    eps_rel=self.settings.tolerance,
                    polishing=self.settings.polish
                )
            status = problem.status
        except cp.SolverError as e:
            self.logger.warning(f"Non-negative QP solver failed: {e}")

        iterations = None
        if problem.solver_stats is not None:
            iterations = problem.solver_stats.num_iters
        self.logger.info(f"Non-negative QP status: {status} ({iterations} iterations)")

        if Z.value is None or status not in (cp.OPTIMAL, cp.OPTIMAL_INACCURATE):
            result, _ = self.heuristic(Y, fixed)
            message = f"Non-negative QP did not return a solution (status {status}); using clip-and-rebuild"
            self.logger.warning(message)
            warnings.warn(message, NonConvergenceWarning, stacklevel=2)
            return result, SolverDiagnostics(
                strategy=NonNegativityStrategy.EXACT,
                status=status,
                converged=False,
                iterations=iterations,
                tolerance=_achieved_tolerance(self.constraints, result),
                fallback=True
            )

        result = np.asarray(Z.value, dtype=float) * scale
        for row, col in (fixed or ()):
            result[row, col] = Y[row, col]

        # solver round-off within tolerance of the bound
        result[(result < 0) & (result >= -self.settings.tolerance * scale)] = 0.0
        negatives = int(np.count_nonzero(result < 0))
        if negatives:
            self.logger.warning(
                f"Non-negative QP left {negatives} values below zero (minimum {float(np.min(result)):.3e})"
            )

        converged = status == cp.OPTIMAL
        if not converged:
            message = f"Non-negative QP stopped with status {status} after {iterations} iterations"
            self.logger.warning(message)
            warnings.warn(message, NonConvergenceWarning, stacklevel=2)

        return result, SolverDiagnostics(
            strategy=NonNegativityStrategy.EXACT,
            status=status,
            converged=converged,
            iterations=iterations,
            tolerance=_achieved_tolerance(self.constraints, result),
            negatives=negatives,
            objective=float(problem.value) * scale ** 2 if problem.value is not None else None
        )
