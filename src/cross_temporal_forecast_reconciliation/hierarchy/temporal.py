"""
Temporal hierarchy descriptor.

A temporal hierarchy aggregates a single series observed at the highest
frequency (e.g. hourly, ``m = 24`` values per cycle) into coarser intervals of
``k`` consecutive values for every order ``k`` in ``K`` (e.g. 2h, 4h, 12h,
daily). Within one cycle the temporal vector holds, from the lowest to the
highest frequency, ``m/k`` values for each order:

    x = [x_m ; ... ; x_k ; ... ; x_1],   kt = sum_{k in K} m/k

    S_te = [R; I_m],   Z = [I_{k*} | -R],   x coherent  <=>  Z @ x = 0.

Forecast vectors covering ``h`` cycles use the "layout" form: one block per
order (lowest frequency first), each block holding its ``h*m/k`` values in
chronological order.
"""

import logging
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from ..exceptions import DimensionMismatchError, InvalidHierarchyError
from ..utils.cache import fingerprint
from ..utils.type_validation import validate_positive_int


def divisors(m: int) -> List[int]:
    """All divisors of ``m`` in descending order."""
    return [k for k in range(m, 0, -1) if m % k == 0]


class TemporalHierarchyDescriptor:
    """
    Immutable description of a temporal aggregation structure.

    Attributes:
        m (int): Number of highest-frequency values per cycle.
        h (int): Forecast horizon in cycles (lowest-frequency steps).
        orders (Tuple[int, ...]): Aggregation orders, descending, from ``m`` to 1.
        k_star (int): Number of aggregated (non highest-frequency) values per cycle.
        kt (int): Total number of values per cycle.
    """

    def __init__(self, m: int, h: int = 1, orders: Optional[Iterable[int]] = None) -> None:
        """
        Build the temporal aggregation and constraint matrices.

        Args:
            m: Maximum seasonal frequency (values of order 1 per cycle).
            h: Forecast horizon at the lowest frequency.
            orders: Subset of the divisors of ``m`` to keep. Defaults to all
                divisors. ``m`` and ``1`` are always included.

        Raises:
            InvalidHierarchyError: If ``m`` or ``h`` are invalid, or an order does
                not divide ``m``.
        """
        self.logger = logging.getLogger(__name__)

        try:
            self.m = validate_positive_int(m, "m", min_val=2)
            self.h = validate_positive_int(h, "h", min_val=1)
        except ValueError as e:
            raise InvalidHierarchyError(str(e)) from e

        if orders is None:
            selected = divisors(self.m)
        else:
            selected = set()
            for k in orders:
                if isinstance(k, bool) or not isinstance(k, (int, np.integer)) or k < 1:
                    raise InvalidHierarchyError(f"Temporal order {k!r} is not a positive integer")
                if self.m % int(k) != 0:
                    raise InvalidHierarchyError(f"Temporal order {k} does not divide m={self.m}")
                selected.add(int(k))
            if self.m not in selected or 1 not in selected:
                self.logger.debug(f"Adding orders m={self.m} and 1 to the requested orders {sorted(selected)}")
            selected = sorted(selected | {self.m, 1}, reverse=True)

        self.orders: Tuple[int, ...] = tuple(selected)
        self.k_star = sum(self.m // k for k in self.orders if k != 1)
        self.kt = self.k_star + self.m

        offsets = np.cumsum([0] + [self.m // k for k in self.orders])
        self._offsets: Dict[int, int] = {k: int(offsets[i]) for i, k in enumerate(self.orders)}

        rows = [np.kron(np.eye(self.m // k), np.ones((1, k))) for k in self.orders if k != 1]
        R = np.vstack(rows)
        self._R = R
        self._S = np.vstack([R, np.eye(self.m)])
        self._Z = np.hstack([np.eye(self.k_star), -R])
        for arr in (self._R, self._S, self._Z):
            arr.setflags(write=False)

        self._fingerprint = fingerprint(np.asarray(self.orders, dtype=float), np.asarray([self.m], dtype=float))

    @classmethod
    def build(cls, m: int, h: int = 1, orders: Optional[Iterable[int]] = None) -> "TemporalHierarchyDescriptor":
        """Build a descriptor for ``m``, ``h`` and an optional subset of orders."""
        return cls(m, h=h, orders=orders)

    def with_horizon(self, h: int) -> "TemporalHierarchyDescriptor":
        """Return a descriptor with the same orders and a different horizon."""
        return TemporalHierarchyDescriptor(self.m, h=h, orders=self.orders)

    @property
    def R(self) -> np.ndarray:
        """Temporal aggregation matrix (k* x m)."""
        return self._R

    @property
    def S(self) -> np.ndarray:
        """Temporal summing matrix (kt x m)."""
        return self._S

    @property
    def Z(self) -> np.ndarray:
        """Temporal zero-constraint matrix (k* x kt)."""
        return self._Z

    @property
    def horizons(self) -> Dict[int, int]:
        """Forecast horizon of each order: ``h*m/k`` values."""
        return {k: self.h * self.m // k for k in self.orders}

    @property
    def layout_length(self) -> int:
        """Length of a forecast vector covering ``h`` cycles."""
        return self.h * self.kt

    @property
    def structural_weights(self) -> np.ndarray:
        """Row sums of ``S_te``: each value of order ``k`` aggregates ``k`` values."""
        return np.asarray(self._S.sum(axis=1), dtype=float)

    @property
    def fingerprint(self) -> str:
        return self._fingerprint

    def order_positions(self, k: int) -> np.ndarray:
        """Positions of order ``k`` inside one cycle vector, in chronological order."""
        if k not in self._offsets:
            raise KeyError(f"Order {k} is not part of this hierarchy {self.orders}")
        start = self._offsets[k]
        return np.arange(start, start + self.m // k)

    def order_blocks(self) -> List[np.ndarray]:
        """Cycle positions of every order, lowest frequency first."""
        return [self.order_positions(k) for k in self.orders]

    def highest_frequency_positions(self) -> np.ndarray:
        """Positions of the order-1 values inside one cycle vector."""
        return np.arange(self.k_star, self.kt)

    def block_slices(self, n_cycles: Optional[int] = None) -> Dict[int, slice]:
        """Slice of each order block inside a layout vector of ``n_cycles`` cycles."""
        n_cycles = self.h if n_cycles is None else n_cycles
        slices = {}
        start = 0
        for k in self.orders:
            length = n_cycles * self.m // k
            slices[k] = slice(start, start + length)
            start += length
        return slices

    def n_cycles(self, length: int, param_name: str = "forecasts") -> int:
        """Number of cycles in a layout vector of the given length."""
        if length == 0 or length % self.kt != 0:
            raise DimensionMismatchError(
                f"Parameter '{param_name}' has temporal length {length}, "
                f"which is not a positive multiple of kt={self.kt} (orders {self.orders})"
            )
        return length // self.kt

    def to_cycles(self, values: np.ndarray, param_name: str = "forecasts") -> np.ndarray:
        """
        Rearrange layout-form values into one column per cycle.

        Args:
            values: Array whose last axis is in layout form (``N*kt`` values).
            param_name: Name used in error messages.

        Returns:
            Array of shape ``(..., kt, N)``.
        """
        values = np.asarray(values, dtype=float)
        n_cycles = self.n_cycles(values.shape[-1], param_name)
        lead = values.shape[:-1]

        pieces = []
        for k, block in self.block_slices(n_cycles).items():
            pieces.append(values[..., block].reshape(*lead, n_cycles, self.m // k))
        cycles = np.concatenate(pieces, axis=-1)
        return np.swapaxes(cycles, -1, -2)

    def from_cycles(self, cycles: np.ndarray) -> np.ndarray:
        """Inverse of :meth:`to_cycles`."""
        cycles = np.asarray(cycles, dtype=float)
        if cycles.shape[-2] != self.kt:
            raise DimensionMismatchError(
                f"Cycle matrix has {cycles.shape[-2]} rows, expected kt={self.kt}"
            )
        by_cycle = np.swapaxes(cycles, -1, -2)
        lead = by_cycle.shape[:-2]
        n_cycles = by_cycle.shape[-2]

        pieces = []
        for k in self.orders:
            block = by_cycle[..., self.order_positions(k)]
            pieces.append(block.reshape(*lead, n_cycles * (self.m // k)))
        return np.concatenate(pieces, axis=-1)

    def bottom_up(self, high_frequency: np.ndarray) -> np.ndarray:
        """
        Aggregate highest-frequency values to every order.

        Args:
            high_frequency: Array whose last axis holds ``N*m`` chronological
                order-1 values.

        Returns:
            Coherent array in layout form (last axis ``N*kt``).
        """
        high_frequency = np.asarray(high_frequency, dtype=float)
        length = high_frequency.shape[-1]
        if length == 0 or length % self.m != 0:
            raise DimensionMismatchError(
                f"Highest-frequency input has length {length}, not a positive multiple of m={self.m}"
            )
        n_cycles = length // self.m
        lead = high_frequency.shape[:-1]
        per_cycle = np.swapaxes(high_frequency.reshape(*lead, n_cycles, self.m), -1, -2)
        return self.from_cycles(self._S @ per_cycle)

    def highest_frequency(self, values: np.ndarray) -> np.ndarray:
        """Extract the chronological order-1 values from layout-form values."""
        values = np.asarray(values, dtype=float)
        n_cycles = self.n_cycles(values.shape[-1])
        return values[..., self.block_slices(n_cycles)[1]]

    def coherence_residual(self, values: np.ndarray) -> float:
        """Maximum absolute violation of the temporal constraints."""
        cycles = self.to_cycles(values)
        residual = self._Z @ cycles
        return float(np.max(np.abs(residual))) if residual.size else 0.0

    def __repr__(self) -> str:
        return f"TemporalHierarchyDescriptor(m={self.m}, h={self.h}, orders={self.orders})"
