"""Runtime validation utilities for forecast and residual inputs.

This module provides the checks applied at the engine boundary: numeric
ranges for configuration values, array shape checks for forecast and
residual matrices, and conversion of pandas/NumPy inputs to float arrays.
"""

import logging
from typing import Any, Iterable, Optional, Tuple, Union

import numpy as np
import pandas as pd
from scipy import sparse

from ..exceptions import DimensionMismatchError

logger = logging.getLogger(__name__)


def validate_numeric_range(
    value: Union[int, float],
    param_name: str,
    min_val: Optional[Union[int, float]] = None,
    max_val: Optional[Union[int, float]] = None,
    min_inclusive: bool = True,
    max_inclusive: bool = True
) -> None:
    """
    Validate that a numeric value is within the specified range.

    Args:
        value: Numeric value to validate.
        param_name: Parameter name for error messages.
        min_val: Minimum allowed value (optional).
        max_val: Maximum allowed value (optional).
        min_inclusive: Whether minimum is inclusive.
        max_inclusive: Whether maximum is inclusive.

    Raises:
        ValueError: If value is not numeric or is outside the valid range.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float, np.integer, np.floating)):
        raise ValueError(f"Parameter '{param_name}' must be numeric, got {type(value).__name__}")

    if min_val is not None:
        if min_inclusive and value < min_val:
            raise ValueError(f"Parameter '{param_name}' must be >= {min_val}, got {value}")
        elif not min_inclusive and value <= min_val:
            raise ValueError(f"Parameter '{param_name}' must be > {min_val}, got {value}")

    if max_val is not None:
        if max_inclusive and value > max_val:
            raise ValueError(f"Parameter '{param_name}' must be <= {max_val}, got {value}")
        elif not max_inclusive and value >= max_val:
            raise ValueError(f"Parameter '{param_name}' must be < {max_val}, got {value}")


def validate_positive_int(value: Any, param_name: str, min_val: int = 1) -> int:
    """Validate an integer parameter and return it as a plain ``int``."""
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
        raise ValueError(f"Parameter '{param_name}' must be an integer, got {type(value).__name__}")
    validate_numeric_range(int(value), param_name, min_val=min_val)
    return int(value)


def validate_array_structure(
    arr: np.ndarray,
    param_name: str,
    expected_shape: Optional[Tuple[Optional[int], ...]] = None,
    min_dims: Optional[int] = None,
    max_dims: Optional[int] = None,
    allow_nan: bool = False
) -> None:
    """
    Validate NumPy array structure.

    ``None`` entries in ``expected_shape`` match any length along that axis.

    Args:
        arr: Array to validate.
        param_name: Parameter name for error messages.
        expected_shape: Expected shape, with ``None`` as a wildcard.
        min_dims: Minimum number of dimensions.
        max_dims: Maximum number of dimensions.
        allow_nan: Whether NaN entries are accepted (residuals may carry gaps).

    Raises:
        ValueError: If the array is empty, has the wrong rank or invalid values.
        DimensionMismatchError: If the array shape disagrees with ``expected_shape``.
    """
    if arr.size == 0:
        raise ValueError(f"Parameter '{param_name}' cannot be an empty array")

    if min_dims is not None and arr.ndim < min_dims:
        raise ValueError(
            f"Parameter '{param_name}' must have at least {min_dims} dimensions, got {arr.ndim}"
        )

    if max_dims is not None and arr.ndim > max_dims:
        raise ValueError(
            f"Parameter '{param_name}' must have at most {max_dims} dimensions, got {arr.ndim}"
        )

    if expected_shape is not None:
        if arr.ndim != len(expected_shape):
            raise DimensionMismatchError(
                f"Parameter '{param_name}' must have {len(expected_shape)} dimensions, "
                f"got shape {arr.shape}"
            )
        for axis, (actual, expected) in enumerate(zip(arr.shape, expected_shape)):
            if expected is not None and actual != expected:
                raise DimensionMismatchError(
                    f"Parameter '{param_name}' has size {actual} along axis {axis}, "
                    f"expected {expected} (shape {arr.shape})"
                )

    if np.any(np.isinf(arr)):
        raise ValueError(f"Parameter '{param_name}' contains infinite values")

    if not allow_nan and np.any(np.isnan(arr)):
        rows = np.unique(np.argwhere(np.isnan(arr))[:, 0])
        raise ValueError(f"Parameter '{param_name}' contains NaN values in rows {rows.tolist()}")


def as_float_array(data: Union[np.ndarray, pd.DataFrame, pd.Series, Iterable], param_name: str) -> np.ndarray:
    """
    Convert forecasts or residuals to a float NumPy array.

    Args:
        data: NumPy array, pandas object or nested sequence.
        param_name: Parameter name for error messages.

    Returns:
        A new float64 array (the input is never modified in place).
    """
    if isinstance(data, (pd.DataFrame, pd.Series)):
        values = data.to_numpy(dtype=float, copy=True)
    elif sparse.issparse(data):
        values = data.toarray().astype(float)
    else:
        try:
            values = np.array(data, dtype=float, copy=True)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Parameter '{param_name}' must be numeric: {e}") from e
    return values


def validate_fixed_pairs(
    fixed: Iterable[Tuple[int, int]],
    shape: Tuple[int, int],
    param_name: str = "fixed"
) -> frozenset:
    """
    Validate (row, column) index pairs against a matrix shape.

    Raises:
        DimensionMismatchError: If a pair falls outside ``shape``.
    """
    pairs = set()
    for pair in fixed:
        try:
            row, col = (int(p) for p in pair)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Parameter '{param_name}' entries must be (row, column) pairs, got {pair!r}") from e
        if not (0 <= row < shape[0] and 0 <= col < shape[1]):
            raise DimensionMismatchError(
                f"Parameter '{param_name}' index ({row}, {col}) is outside the forecast shape {shape}"
            )
        pairs.add((row, col))
    return frozenset(pairs)
