"""
Cross-sectional hierarchy descriptor.

A cross-sectional hierarchy is described by its aggregation matrix ``C``
(n_a x n_b) mapping bottom-level series (e.g. plants) to every aggregate
(zones, total). Forecast vectors are ordered aggregates first, then bottoms:

    S = [C; I_{n_b}],   U = [I_{n_a} | -C],   y coherent  <=>  U @ y = 0.

Large hierarchies are stored as ``scipy.sparse`` CSR matrices; callers see the
same interface either way.
"""

import logging
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy import sparse

from ..exceptions import DimensionMismatchError, InvalidHierarchyError
from ..utils.cache import fingerprint
from ..utils.type_validation import as_float_array

SPARSE_THRESHOLD = 2000

Matrix = Union[np.ndarray, sparse.csr_matrix]


def _freeze(arr: np.ndarray) -> np.ndarray:
    arr.setflags(write=False)
    return arr


class HierarchyDescriptor:
    """
    Immutable description of a cross-sectional aggregation structure.

    Attributes:
        n_a (int): Number of aggregate series.
        n_b (int): Number of bottom-level series.
        n (int): Total number of series.
        labels (List[str]): Series labels in row order (aggregates, then bottoms).
        is_sparse (bool): Whether matrices are held in sparse form.
    """

    def __init__(
        self,
        aggregation_matrix: Union[np.ndarray, sparse.spmatrix, Sequence[Sequence[float]]],
        labels: Optional[Sequence[str]] = None,
        sparse_threshold: int = SPARSE_THRESHOLD
    ) -> None:
        """
        Validate the aggregation matrix and derive ``S`` and ``U``.

        Args:
            aggregation_matrix: Binary matrix ``C`` with one row per aggregate
                and one column per bottom series.
            labels: Optional series labels, aggregates first.
            sparse_threshold: Hierarchies with more than this many series are
                stored in sparse form.

        Raises:
            InvalidHierarchyError: If ``C`` has zero rows/columns, duplicate rows
                or entries other than 0 and 1.
        """
        self.logger = logging.getLogger(__name__)

        C = as_float_array(aggregation_matrix, "aggregation_matrix")
        if C.ndim != 2 or C.size == 0:
            raise InvalidHierarchyError(
                f"Aggregation matrix must be a non-empty 2-D matrix, got shape {C.shape}"
            )
        self._validate_aggregation_matrix(C)

        self.n_a, self.n_b = C.shape
        self.n = self.n_a + self.n_b
        self.is_sparse = self.n > sparse_threshold

        if labels is not None:
            labels = [str(label) for label in labels]
            if len(labels) != self.n:
                raise DimensionMismatchError(
                    f"Expected {self.n} labels ({self.n_a} aggregates + {self.n_b} bottoms), got {len(labels)}"
                )
        self.labels: Optional[List[str]] = labels

        if self.is_sparse:
            self._C = sparse.csr_matrix(C)
            self._S = sparse.vstack([self._C, sparse.identity(self.n_b, format="csr")], format="csr")
            self._U = sparse.hstack([sparse.identity(self.n_a, format="csr"), -self._C], format="csr")
        else:
            self._C = _freeze(C)
            self._S = _freeze(np.vstack([C, np.eye(self.n_b)]))
            self._U = _freeze(np.hstack([np.eye(self.n_a), -C]))

        self._structural_weights = _freeze(np.asarray(self._S.sum(axis=1), dtype=float).ravel())
        self._fingerprint = fingerprint(self._C)

        self.logger.debug(
            f"Built hierarchy with {self.n_a} aggregates and {self.n_b} bottom series"
            f" ({'sparse' if self.is_sparse else 'dense'})"
        )

    @staticmethod
    def _validate_aggregation_matrix(C: np.ndarray) -> None:
        """Check the structural invariants of ``C``."""
        if not np.all(np.isfinite(C)):
            row = int(np.argwhere(~np.isfinite(C))[0, 0])
            raise InvalidHierarchyError(f"Aggregation matrix row {row} contains non-finite entries")

        non_binary = ~np.isin(C, (0.0, 1.0))
        if non_binary.any():
            row, col = (int(i) for i in np.argwhere(non_binary)[0])
            raise InvalidHierarchyError(
                f"Aggregation matrix entry ({row}, {col}) is {C[row, col]}, expected 0 or 1"
            )

        zero_rows = np.flatnonzero(C.sum(axis=1) == 0)
        if zero_rows.size:
            raise InvalidHierarchyError(
                f"Aggregate rows {zero_rows.tolist()} do not aggregate any bottom series"
            )

        zero_cols = np.flatnonzero(C.sum(axis=0) == 0)
        if zero_cols.size:
            raise InvalidHierarchyError(
                f"Bottom series {zero_cols.tolist()} do not contribute to any aggregate"
            )

        seen: Dict[bytes, int] = {}
        for i, row in enumerate(C):
            key = row.tobytes()
            if key in seen:
                raise InvalidHierarchyError(
                    f"Aggregate rows {seen[key]} and {i} are duplicates"
                )
            seen[key] = i

    @classmethod
    def build(cls, aggregation_matrix, labels: Optional[Sequence[str]] = None, **kwargs) -> "HierarchyDescriptor":
        """Build a descriptor from the aggregation matrix ``C``."""
        return cls(aggregation_matrix, labels=labels, **kwargs)

    @classmethod
    def from_summing_matrix(cls, summing_matrix, labels: Optional[Sequence[str]] = None, **kwargs) -> "HierarchyDescriptor":
        """
        Build a descriptor from a full summing matrix ``S = [C; I]``.

        Raises:
            InvalidHierarchyError: If the last ``n_b`` rows are not the identity.
        """
        S = as_float_array(summing_matrix, "summing_matrix")
        if S.ndim != 2 or S.shape[0] <= S.shape[1]:
            raise InvalidHierarchyError(
                f"Summing matrix must have more rows than columns, got shape {S.shape}"
            )

        n_b = S.shape[1]
        n_a = S.shape[0] - n_b
        bottom_block = S[n_a:]
        mismatched = np.flatnonzero(np.any(bottom_block != np.eye(n_b), axis=1))
        if mismatched.size:
            raise InvalidHierarchyError(
                f"Bottom block of the summing matrix is not the identity at rows "
                f"{(mismatched + n_a).tolist()}"
            )

        return cls(S[:n_a], labels=labels, **kwargs)

    @classmethod
    def from_levels(
        cls,
        frame: pd.DataFrame,
        levels: Sequence[str],
        bottom_col: str = "id",
        include_total: bool = True,
        **kwargs
    ) -> "HierarchyDescriptor":
        """
        Build a descriptor from a table of hierarchy labels.

        Args:
            frame: One row per bottom series, with the bottom identifier and
                one column per aggregation level.
            levels: Level columns ordered from the top of the hierarchy down,
                e.g. ``["zone"]`` for plants aggregating into zones.
            bottom_col: Column holding the bottom-level series identifier.
            include_total: Whether to add a grand-total row first.

        Returns:
            Descriptor whose labels are ``"Total"``, ``"<level>/<value>"`` for
            every aggregate and the bottom identifiers.

        Example:
            >>> plants = pd.DataFrame({"id": ["p1", "p2", "p3"], "zone": ["N", "N", "S"]})
            >>> HierarchyDescriptor.from_levels(plants, ["zone"]).labels
            ['Total', 'zone/N', 'zone/S', 'p1', 'p2', 'p3']
        """
        missing = [col for col in [bottom_col, *levels] if col not in frame.columns]
        if missing:
            raise InvalidHierarchyError(f"Hierarchy frame is missing columns: {missing}")

        bottom_ids = frame[bottom_col].astype(str).tolist()
        duplicated = frame[bottom_col][frame[bottom_col].duplicated()].astype(str).tolist()
        if duplicated:
            raise InvalidHierarchyError(f"Bottom series {duplicated} appear more than once")

        rows = []
        labels = []
        if include_total:
            rows.append(np.ones(len(bottom_ids)))
            labels.append("Total")

        for level in levels:
            values = frame[level].astype(str)
            for value in sorted(values.unique()):
                rows.append((values == value).to_numpy(dtype=float))
                labels.append(f"{level}/{value}")

        if not rows:
            raise InvalidHierarchyError("Hierarchy needs at least one aggregation level")

        return cls(np.vstack(rows), labels=labels + bottom_ids, **kwargs)

    @property
    def C(self) -> Matrix:
        """Aggregation matrix (n_a x n_b)."""
        return self._C

    @property
    def S(self) -> Matrix:
        """Summing matrix (n x n_b)."""
        return self._S

    @property
    def U(self) -> Matrix:
        """Zero-constraint matrix (n_a x n)."""
        return self._U

    @property
    def structural_weights(self) -> np.ndarray:
        """Number of bottom series aggregated by each row of ``S``."""
        return self._structural_weights

    @property
    def bottom_labels(self) -> Optional[List[str]]:
        return self.labels[self.n_a:] if self.labels is not None else None

    @property
    def fingerprint(self) -> str:
        return self._fingerprint

    def bottom_up(self, bottom: np.ndarray) -> np.ndarray:
        """
        Aggregate bottom-level values to every level of the hierarchy.

        Args:
            bottom: Array with ``n_b`` rows (any number of columns) or a
                vector of length ``n_b``.

        Returns:
            Coherent array with ``n`` rows.
        """
        bottom = np.asarray(bottom, dtype=float)
        if bottom.shape[0] != self.n_b:
            raise DimensionMismatchError(
                f"Bottom-up input has {bottom.shape[0]} rows, expected n_b={self.n_b}"
            )
        return np.asarray(self._S @ bottom)

    def coherence_residual(self, values: np.ndarray) -> float:
        """Maximum absolute violation of ``U @ y = 0``."""
        values = np.asarray(values, dtype=float)
        if values.shape[0] != self.n:
            raise DimensionMismatchError(
                f"Forecast has {values.shape[0]} rows, expected n={self.n}"
            )
        residual = np.asarray(self._U @ values)
        return float(np.max(np.abs(residual))) if residual.size else 0.0

    def __repr__(self) -> str:
        return f"HierarchyDescriptor(n_a={self.n_a}, n_b={self.n_b}, sparse={self.is_sparse})"
