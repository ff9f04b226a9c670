"""
Constraint sets for cross-sectional, temporal and cross-temporal reconciliation.

Every reconciliation problem is solved in a common "stacked" form: a matrix
whose rows are the constrained components and whose columns are independent
problems sharing the same constraint and weighting matrices.

- Cross-sectional: rows are the ``n`` series, columns are forecast steps.
- Temporal: rows are the ``kt`` values of one cycle, columns are cycles.
- Cross-temporal: row ``i*kt + p`` holds series ``i`` at cycle position ``p``
  and columns are cycles. The constraint matrix

      U_ct = [U_cs (x) J ; I_n (x) Z],   J = [0 | I_m]

  imposes the cross-sectional relations on the highest-frequency values and
  the temporal relations on every series, which together make every node at
  every order coherent. It has full row rank.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Sequence, Tuple, Union

import numpy as np
from scipy import sparse

from ..exceptions import DimensionMismatchError
from ..hierarchy.cross_sectional import SPARSE_THRESHOLD, HierarchyDescriptor
from ..hierarchy.temporal import TemporalHierarchyDescriptor
from ..utils.cache import fingerprint
from ..utils.type_validation import as_float_array, validate_array_structure, validate_fixed_pairs

logger = logging.getLogger(__name__)

Matrix = Union[np.ndarray, sparse.csr_matrix]


class Dimension(Enum):
    """Axes a constraint set covers."""

    CROSS_SECTIONAL = "cross_sectional"
    TEMPORAL = "temporal"
    CROSS_TEMPORAL = "cross_temporal"


@dataclass(frozen=True)
class ConstraintSet:
    """
    Combined constraint system for one reconciliation problem.

    Attributes:
        U: Zero-constraint matrix; stacked values ``Y`` are coherent iff ``U @ Y = 0``.
        S: Summing matrix mapping the free bottom values to every row.
        dimension: Axes covered by the constraints.
        bottom_rows: Rows of the stacked form holding the free bottom values,
            in the column order of ``S``.
        structural_weights: Row sums of ``S``.
        groups: Rows grouped by series and temporal order, each group in
            chronological order. Cross-sectional sets use one group per row.
        hierarchy: Cross-sectional descriptor, if any.
        temporal: Temporal descriptor, if any.
        fingerprint: Content hash identifying the constraint structure.
    """

    U: Matrix
    S: Matrix
    dimension: Dimension
    bottom_rows: np.ndarray
    structural_weights: np.ndarray
    groups: Tuple[np.ndarray, ...]
    hierarchy: Optional[HierarchyDescriptor]
    temporal: Optional[TemporalHierarchyDescriptor]
    fingerprint: str

    @property
    def n_rows(self) -> int:
        return self.S.shape[0]

    @property
    def n_constraints(self) -> int:
        return self.U.shape[0]

    @property
    def is_sparse(self) -> bool:
        return sparse.issparse(self.U)

    def stack(self, values, param_name: str = "forecasts", allow_nan: bool = False) -> np.ndarray:
        """
        Convert user-layout values to the stacked form.

        Args:
            values: Cross-sectional ``(n,)`` or ``(n, N)``; temporal ``(N*kt,)``;
                cross-temporal ``(n, N*kt)``. DataFrames are accepted.
            param_name: Name used in error messages.
            allow_nan: Whether NaN entries are accepted (residual gaps).

        Returns:
            Array of shape ``(n_rows, N)``.

        Raises:
            DimensionMismatchError: If the shape disagrees with the hierarchy.
        """
        arr = as_float_array(values, param_name)

        if self.dimension is Dimension.CROSS_SECTIONAL:
            if arr.ndim == 1:
                arr = arr.reshape(-1, 1)
            validate_array_structure(arr, param_name, expected_shape=(self.n_rows, None), allow_nan=allow_nan)
            return arr

        if self.dimension is Dimension.TEMPORAL:
            if arr.ndim != 1:
                raise DimensionMismatchError(
                    f"Parameter '{param_name}' must be a 1-D temporal vector, got shape {arr.shape}"
                )
            validate_array_structure(arr, param_name, allow_nan=allow_nan)
            return self.temporal.to_cycles(arr, param_name)

        validate_array_structure(
            arr, param_name, expected_shape=(self.hierarchy.n, None), allow_nan=allow_nan
        )
        cycles = self.temporal.to_cycles(arr, param_name)
        return cycles.reshape(self.n_rows, cycles.shape[-1])

    def unstack(self, stacked: np.ndarray, shape: Sequence[int]) -> np.ndarray:
        """Inverse of :meth:`stack` for a user-layout ``shape``."""
        if self.dimension is Dimension.CROSS_SECTIONAL:
            return stacked.reshape(shape)
        if self.dimension is Dimension.TEMPORAL:
            return self.temporal.from_cycles(stacked).reshape(shape)
        cycles = stacked.reshape(self.hierarchy.n, self.temporal.kt, stacked.shape[1])
        return self.temporal.from_cycles(cycles).reshape(shape)

    def map_fixed(self, fixed: Optional[Iterable], shape: Sequence[int]) -> frozenset:
        """
        Translate fixed user-layout indices to (row, column) pairs of the stacked form.

        Args:
            fixed: ``(row, column)`` pairs for 2-D inputs, or plain positions for
                1-D inputs.
            shape: Shape of the user-layout forecasts.

        Returns:
            Frozen set of stacked ``(row, column)`` pairs.
        """
        if not fixed:
            return frozenset()

        if len(shape) == 1:
            pairs = [(p if isinstance(p, (tuple, list)) else (p, 0)) for p in fixed]
            user_pairs = validate_fixed_pairs(pairs, (shape[0], 1))
            width = 1
        else:
            user_pairs = validate_fixed_pairs(fixed, tuple(shape))
            width = shape[1]

        size = int(np.prod(shape))
        positions = np.arange(size, dtype=float).reshape(shape)
        stacked_positions = self.stack(positions, "fixed").astype(np.int64)
        n_cols = stacked_positions.shape[1]

        location = np.empty(size, dtype=np.int64)
        location[stacked_positions.ravel()] = np.arange(size)

        mapped = set()
        for row, col in user_pairs:
            stacked_row, stacked_col = divmod(int(location[row * width + col]), n_cols)
            mapped.add((stacked_row, stacked_col))
        return frozenset(mapped)

    def bottom_up(self, stacked: np.ndarray) -> np.ndarray:
        """Rebuild every row from the bottom rows of a stacked matrix."""
        return np.asarray(self.S @ stacked[self.bottom_rows])

    def coherence_residual(self, stacked: np.ndarray) -> float:
        """Maximum absolute violation of ``U @ Y = 0``."""
        residual = np.asarray(self.U @ stacked)
        return float(np.max(np.abs(residual))) if residual.size else 0.0


def cross_sectional_constraints(hierarchy: HierarchyDescriptor) -> ConstraintSet:
    """Constraint set of a cross-sectional hierarchy."""
    return ConstraintSet(
        U=hierarchy.U,
        S=hierarchy.S,
        dimension=Dimension.CROSS_SECTIONAL,
        bottom_rows=np.arange(hierarchy.n_a, hierarchy.n),
        structural_weights=hierarchy.structural_weights,
        groups=tuple(np.array([i]) for i in range(hierarchy.n)),
        hierarchy=hierarchy,
        temporal=None,
        fingerprint=fingerprint(hierarchy.C)
    )


def temporal_constraints(temporal: TemporalHierarchyDescriptor) -> ConstraintSet:
    """Constraint set of a temporal hierarchy (one series)."""
    return ConstraintSet(
        U=temporal.Z,
        S=temporal.S,
        dimension=Dimension.TEMPORAL,
        bottom_rows=temporal.highest_frequency_positions(),
        structural_weights=temporal.structural_weights,
        groups=tuple(temporal.order_blocks()),
        hierarchy=None,
        temporal=temporal,
        fingerprint=temporal.fingerprint
    )


def cross_temporal_constraints(
    hierarchy: HierarchyDescriptor,
    temporal: TemporalHierarchyDescriptor
) -> ConstraintSet:
    """
    Full-rank cross-temporal constraint set.

    Sparse matrices are used when the hierarchy is sparse or the stacked
    dimension ``n*kt`` exceeds the sparse threshold.
    """
    n, kt, k_star, m = hierarchy.n, temporal.kt, temporal.k_star, temporal.m
    use_sparse = hierarchy.is_sparse or n * kt > SPARSE_THRESHOLD

    J = np.hstack([np.zeros((m, k_star)), np.eye(m)])
    if use_sparse:
        U = sparse.vstack([
            sparse.kron(sparse.csr_matrix(hierarchy.U), sparse.csr_matrix(J)),
            sparse.kron(sparse.identity(n, format="csr"), sparse.csr_matrix(temporal.Z))
        ], format="csr")
        S = sparse.kron(sparse.csr_matrix(hierarchy.S), sparse.csr_matrix(temporal.S), format="csr")
    else:
        U = np.vstack([np.kron(hierarchy.U, J), np.kron(np.eye(n), temporal.Z)])
        S = np.kron(hierarchy.S, temporal.S)

    bottom_rows = np.concatenate([
        i * kt + temporal.highest_frequency_positions() for i in range(hierarchy.n_a, n)
    ])
    groups = tuple(i * kt + block for i in range(n) for block in temporal.order_blocks())

    logger.debug(
        f"Built cross-temporal constraints: {U.shape[0]} constraints over {n * kt} rows"
        f" ({'sparse' if use_sparse else 'dense'})"
    )

    return ConstraintSet(
        U=U,
        S=S,
        dimension=Dimension.CROSS_TEMPORAL,
        bottom_rows=bottom_rows,
        structural_weights=np.kron(hierarchy.structural_weights, temporal.structural_weights),
        groups=groups,
        hierarchy=hierarchy,
        temporal=temporal,
        fingerprint=fingerprint(hierarchy.C, np.asarray(temporal.orders, dtype=float), np.asarray([m], dtype=float))
    )


def build_constraints(
    hierarchy: Optional[HierarchyDescriptor] = None,
    temporal: Optional[TemporalHierarchyDescriptor] = None
) -> ConstraintSet:
    """Constraint set for whichever descriptors are given."""
    if hierarchy is not None and temporal is not None:
        return cross_temporal_constraints(hierarchy, temporal)
    if hierarchy is not None:
        return cross_sectional_constraints(hierarchy)
    if temporal is not None:
        return temporal_constraints(temporal)
    raise ValueError("At least one of 'hierarchy' or 'temporal' must be given")


def cross_sectional_bottom_up(hierarchy: HierarchyDescriptor, bottom) -> np.ndarray:
    """Aggregate bottom series ``(n_b, ...)`` to every node with ``S``."""
    return hierarchy.bottom_up(as_float_array(bottom, "bottom"))


def temporal_bottom_up(temporal: TemporalHierarchyDescriptor, high_frequency) -> np.ndarray:
    """Aggregate highest-frequency values to every temporal order."""
    return temporal.bottom_up(as_float_array(high_frequency, "high_frequency"))


def cross_temporal_bottom_up(
    hierarchy: HierarchyDescriptor,
    temporal: TemporalHierarchyDescriptor,
    bottom
) -> np.ndarray:
    """
    Aggregate highest-frequency bottom series across both axes.

    Args:
        hierarchy: Cross-sectional descriptor.
        temporal: Temporal descriptor.
        bottom: Matrix ``(n_b, N*m)`` of chronological highest-frequency values.

    Returns:
        Coherent cross-temporal matrix ``(n, N*kt)``.
    """
    bottom = as_float_array(bottom, "bottom")
    validate_array_structure(bottom, "bottom", expected_shape=(hierarchy.n_b, None))
    return temporal.bottom_up(hierarchy.bottom_up(bottom))
