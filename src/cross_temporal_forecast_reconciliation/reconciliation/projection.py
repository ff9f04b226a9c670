"""
GLS projection onto the coherent subspace.

For stacked base forecasts ``Y`` (one independent problem per column), a
zero-constraint matrix ``U`` and a weighting matrix ``W``:

    Y* = Y - W U' (U W U')^{-1} U Y

``U W U'`` is factorised once (Cholesky, or a QR-based least-squares solve
when it is rank deficient) and reused for every column and every call.
The same routine serves cross-sectional, temporal and cross-temporal
problems; only ``U``, ``W`` and the stacking of ``Y`` differ.

Components held fixed at their base value are handled by restricting the
optimisation to the free coordinates under the Schur-complement metric
``W_ff - W_fv W_vv^{-1} W_vf``, with the fixed values moved to the right-hand
side of the constraints.
"""

import logging
from collections import defaultdict
from typing import Dict, FrozenSet, Hashable, Iterable, List, Optional, Tuple, Union

import numpy as np
from scipy import linalg, sparse
from scipy.sparse import linalg as sparse_linalg

from ..exceptions import DimensionMismatchError, InfeasibleConstraintsError, SingularCovarianceError
from ..utils.cache import FactorizationCache
from ..utils.type_validation import as_float_array, validate_array_structure, validate_fixed_pairs

logger = logging.getLogger(__name__)

Matrix = Union[np.ndarray, sparse.spmatrix]

# Relative tolerance on U @ Y* used to accept a projection as coherent
COHERENCE_TOLERANCE = 1e-6


def _dense(matrix: Matrix) -> np.ndarray:
    return matrix.toarray() if sparse.issparse(matrix) else np.asarray(matrix)


def _scale(values: np.ndarray) -> float:
    return max(1.0, float(np.max(np.abs(values)))) if values.size else 1.0


class _Solver:
    """Solves ``A x = b`` for a symmetric positive semi-definite ``A``."""

    def __init__(self, A: Matrix) -> None:
        self.method = "cholesky"
        self._A = A
        if sparse.issparse(A):
            try:
                self._lu = sparse_linalg.splu(sparse.csc_matrix(A))
                self.method = "sparse_lu"
                return
            except RuntimeError as e:
                logger.warning(f"Sparse factorisation failed ({e}); using dense least squares")
                self._A = A.toarray()
                self.method = "lstsq"
                return
        try:
            self._factor = linalg.cho_factor(A, lower=True, check_finite=False)
        except linalg.LinAlgError:
            logger.warning("U W U' is not positive definite; using QR-based least squares")
            self.method = "lstsq"

    def solve(self, b: np.ndarray) -> np.ndarray:
        if self.method == "cholesky":
            return linalg.cho_solve(self._factor, b, check_finite=False)
        if self.method == "sparse_lu":
            return self._lu.solve(b)
        return linalg.lstsq(self._A, b, lapack_driver="gelsy", check_finite=False)[0]


class GLSProjector:
    """
    Reusable GLS projection for one constraint matrix and one weighting matrix.

    The factorisation of ``U W U'`` is computed at construction; instances are
    read-only afterwards and can be shared between threads.
    """

    def __init__(self, U: Matrix, W: Matrix) -> None:
        """
        Factorise the projection system.

        Args:
            U: Zero-constraint matrix (constraints x rows), dense or sparse.
            W: Symmetric positive-definite weighting matrix (rows x rows).

        Raises:
            DimensionMismatchError: If ``U`` and ``W`` disagree in size.
            SingularCovarianceError: If ``W`` has non-finite or non-positive
                diagonal entries.
        """
        self.logger = logging.getLogger(__name__)

        n_rows = U.shape[1]
        if W.shape != (n_rows, n_rows):
            raise DimensionMismatchError(
                f"Weighting matrix has shape {W.shape}, expected ({n_rows}, {n_rows}) to match U {U.shape}"
            )

        diagonal = W.diagonal() if sparse.issparse(W) else np.diag(W)
        bad = np.flatnonzero(~np.isfinite(diagonal) | (diagonal <= 0))
        if bad.size:
            raise SingularCovarianceError(
                f"Weighting matrix has non-positive or non-finite diagonal entries at rows {bad[:10].tolist()}"
            )
        if not sparse.issparse(W) and not np.all(np.isfinite(W)):
            rows = np.unique(np.argwhere(~np.isfinite(W))[:, 0])
            raise SingularCovarianceError(f"Weighting matrix has non-finite entries in rows {rows[:10].tolist()}")

        self.U = U
        self.W = W
        self.n_rows = n_rows
        self.n_constraints = U.shape[0]

        if sparse.issparse(U) or sparse.issparse(W):
            U_s, W_s = sparse.csr_matrix(U), sparse.csr_matrix(W)
            self._UW = (U_s @ W_s).tocsr()
            A = (self._UW @ U_s.T).tocsc()
        else:
            self._UW = U @ W
            A = self._UW @ U.T
            A = (A + A.T) / 2

        self._solver = _Solver(A)
        self.logger.debug(
            f"Factorised {self.n_constraints}x{self.n_constraints} projection system ({self._solver.method})"
        )

    @property
    def method(self) -> str:
        """Factorisation used for ``U W U'``."""
        return self._solver.method

    def _correction(self, Y: np.ndarray) -> np.ndarray:
        residual = np.asarray(self.U @ Y)
        lam = self._solver.solve(residual)
        return np.asarray(self._UW.T @ lam)

    def _check_coherent(self, Y: np.ndarray) -> None:
        violation = float(np.max(np.abs(np.asarray(self.U @ Y)))) if Y.size else 0.0
        if violation > COHERENCE_TOLERANCE * _scale(Y):
            raise SingularCovarianceError(
                f"Projection is not coherent (max |U y*| = {violation:.3e}); "
                f"the weighting matrix is numerically singular"
            )

    def project(self, Y, fixed: Optional[Iterable[Tuple[int, int]]] = None) -> np.ndarray:
        """
        Project stacked forecasts onto the coherent subspace.

        Args:
            Y: Stacked base forecasts, ``(n_rows,)`` or ``(n_rows, N)``.
            fixed: ``(row, column)`` pairs held at their base value.

        Returns:
            Coherent forecasts of the same shape. ``Y`` is not modified.

        Raises:
            InfeasibleConstraintsError: If the fixed values contradict the constraints.
            SingularCovarianceError: If the projection cannot be made coherent.
        """
        Y = as_float_array(Y, "forecasts")
        vector = Y.ndim == 1
        if vector:
            Y = Y.reshape(-1, 1)
        validate_array_structure(Y, "forecasts", expected_shape=(self.n_rows, None))

        fixed_pairs = validate_fixed_pairs(fixed or (), Y.shape)
        if not fixed_pairs:
            result = Y - self._correction(Y)
        else:
            result = self._project_fixed(Y, fixed_pairs)

        self._check_coherent(result)
        return result.ravel() if vector else result

    def projection_matrix(self) -> np.ndarray:
        """Dense ``P = I - W U' (U W U')^{-1} U`` so that ``Y* = P @ Y``."""
        return np.eye(self.n_rows) - self._correction(np.eye(self.n_rows))

    def _project_fixed(self, Y: np.ndarray, fixed_pairs: FrozenSet[Tuple[int, int]]) -> np.ndarray:
        """Project columns grouped by their pattern of fixed rows."""
        patterns: Dict[Tuple[int, ...], List[int]] = defaultdict(list)
        by_column: Dict[int, List[int]] = defaultdict(list)
        for row, col in fixed_pairs:
            by_column[col].append(row)
        for col in range(Y.shape[1]):
            patterns[tuple(sorted(by_column.get(col, ())))].append(col)

        result = np.empty_like(Y)
        for rows, cols in patterns.items():
            if rows:
                result[:, cols] = self._project_pattern(Y[:, cols], np.asarray(rows), cols)
            else:
                result[:, cols] = Y[:, cols] - self._correction(Y[:, cols])
        return result

    def _project_pattern(self, Y: np.ndarray, fixed_rows: np.ndarray, columns: List[int]) -> np.ndarray:
        U = _dense(self.U)
        W = _dense(self.W)
        free = np.setdiff1d(np.arange(self.n_rows), fixed_rows)

        result = Y.copy()
        if free.size == 0:
            violation = np.abs(U @ Y)
            self._raise_if_infeasible(violation, U, fixed_rows, columns, _scale(Y))
            return result

        U_f, U_v = U[:, free], U[:, fixed_rows]
        target = -U @ Y

        active = np.any(U_f != 0, axis=1)
        self._raise_if_infeasible(np.abs(target[~active]), U[~active], fixed_rows, columns, _scale(Y),
                                  row_ids=np.flatnonzero(~active))

        U_f = U_f[active]
        target = target[active]
        if U_f.shape[0] == 0:
            return result

        # Schur complement of W_vv: the metric of the free coordinates given the fixed ones
        W_ff = W[np.ix_(free, free)]
        W_fv = W[np.ix_(free, fixed_rows)]
        W_vv = W[np.ix_(fixed_rows, fixed_rows)]
        if np.any(W_fv):
            try:
                M = W_ff - W_fv @ linalg.cho_solve(linalg.cho_factor(W_vv, lower=True), W_fv.T)
            except linalg.LinAlgError as e:
                raise SingularCovarianceError(
                    f"Weighting block of fixed rows {fixed_rows[:10].tolist()} is not positive definite"
                ) from e
        else:
            M = W_ff

        # restricting to free columns can leave dependent constraint rows
        UM = U_f @ M
        lam = linalg.lstsq(UM @ U_f.T, target, lapack_driver="gelsy")[0]
        delta = UM.T @ lam

        violation = np.abs(U_f @ delta - target)
        self._raise_if_infeasible(violation, U[active], fixed_rows, columns, _scale(Y),
                                  row_ids=np.flatnonzero(active))

        result[free] = Y[free] + delta
        return result

    @staticmethod
    def _raise_if_infeasible(
        violation: np.ndarray,
        U_rows: np.ndarray,
        fixed_rows: np.ndarray,
        columns: List[int],
        scale: float,
        row_ids: Optional[np.ndarray] = None
    ) -> None:
        if violation.size == 0:
            return
        bad = np.flatnonzero(np.max(violation, axis=1) > COHERENCE_TOLERANCE * scale)
        if not bad.size:
            return
        constraint_rows = bad if row_ids is None else row_ids[bad]
        involved = [int(r) for r in fixed_rows if np.any(U_rows[bad][:, r] != 0)]
        raise InfeasibleConstraintsError(
            f"Fixed values at rows {involved or fixed_rows[:10].tolist()} (columns {columns[:10]}) "
            f"violate constraint rows {constraint_rows[:10].tolist()}"
        )


def reconcile(y, U: Matrix, W: Matrix, fixed: Optional[Iterable] = None) -> np.ndarray:
    """
    One-off GLS reconciliation of stacked forecasts.

    Args:
        y: Stacked base forecasts, a vector or one problem per column.
        U: Zero-constraint matrix.
        W: Weighting matrix.
        fixed: ``(row, column)`` pairs, or positions for a vector ``y``.

    Returns:
        Coherent forecasts of the same shape as ``y``.

    Example:
        >>> reconcile([10, 4, 7], [[1, -1, -1]], np.diag([2.0, 1.0, 1.0]))
        array([10.5 ,  3.75,  6.75])
    """
    y = as_float_array(y, "forecasts")
    U = U if sparse.issparse(U) else as_float_array(U, "U")
    W = W if sparse.issparse(W) else as_float_array(W, "W")
    if fixed is not None and y.ndim == 1:
        fixed = [(p if isinstance(p, (tuple, list)) else (p, 0)) for p in fixed]
    return GLSProjector(U, W).project(y, fixed)


def cached_projector(
    cache: Optional[FactorizationCache],
    key: Hashable,
    U: Matrix,
    W: Matrix
) -> GLSProjector:
    """Projector for ``(U, W)``, shared through ``cache`` when one is given."""
    if cache is None:
        return GLSProjector(U, W)
    return cache.get_or_compute(key, lambda: GLSProjector(U, W))
