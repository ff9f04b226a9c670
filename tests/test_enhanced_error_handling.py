"""Tests for enhanced error handling, validation and logging utilities."""

import logging
import threading

import pytest
import numpy as np
import pandas as pd
from scipy import sparse

from cross_temporal_forecast_reconciliation.exceptions import (
    DimensionMismatchError, InfeasibleConstraintsError, InvalidHierarchyError,
    NonConvergenceWarning, ReconciliationError, SingularCovarianceError
)
from cross_temporal_forecast_reconciliation.utils.cache import FactorizationCache, fingerprint
from cross_temporal_forecast_reconciliation.utils.logging_utils import (
    PerformanceLogger, StructuredLogger, log_function_call
)
from cross_temporal_forecast_reconciliation.utils.type_validation import (
    as_float_array, validate_array_structure, validate_fixed_pairs,
    validate_numeric_range, validate_positive_int
)


class TestExceptionHierarchy:
    """Test the exception classes."""

    @pytest.mark.parametrize("error", [
        InvalidHierarchyError, DimensionMismatchError, SingularCovarianceError, InfeasibleConstraintsError
    ])
    def test_fatal_errors_are_value_errors(self, error):
        """Test that fatal errors can be caught as ValueError."""
        assert issubclass(error, ReconciliationError)
        assert issubclass(error, ValueError)

    def test_non_convergence_is_a_warning(self):
        """Test that non-convergence is not an exception."""
        assert issubclass(NonConvergenceWarning, UserWarning)
        assert not issubclass(NonConvergenceWarning, ReconciliationError)


class TestTypeValidation:
    """Test validation helpers."""

    def test_numeric_range(self):
        """Test numeric bounds and their error messages."""
        validate_numeric_range(0.5, "alpha", min_val=0.0, max_val=1.0)
        with pytest.raises(ValueError, match="'alpha' must be <= 1.0"):
            validate_numeric_range(1.5, "alpha", min_val=0.0, max_val=1.0)
        with pytest.raises(ValueError, match="must be numeric"):
            validate_numeric_range("high", "alpha")

    def test_positive_int(self):
        """Test integer validation."""
        assert validate_positive_int(np.int64(3), "count") == 3
        with pytest.raises(ValueError, match="must be an integer"):
            validate_positive_int(True, "count")
        with pytest.raises(ValueError, match="must be >= 1"):
            validate_positive_int(0, "count")

    def test_array_structure_wildcard(self):
        """Test that None matches any length."""
        validate_array_structure(np.ones((3, 5)), "forecasts", expected_shape=(3, None))
        with pytest.raises(DimensionMismatchError, match="size 4 along axis 0, expected 3"):
            validate_array_structure(np.ones((4, 5)), "forecasts", expected_shape=(3, None))

    def test_array_structure_values(self):
        """Test rejection of empty, infinite and NaN arrays."""
        with pytest.raises(ValueError, match="cannot be an empty array"):
            validate_array_structure(np.array([]), "forecasts")
        with pytest.raises(ValueError, match="infinite"):
            validate_array_structure(np.array([1.0, np.inf]), "forecasts")
        with pytest.raises(ValueError, match=r"NaN values in rows \[1\]"):
            validate_array_structure(np.array([[1.0], [np.nan]]), "forecasts")
        validate_array_structure(np.array([[1.0], [np.nan]]), "residuals", allow_nan=True)

    def test_as_float_array_copies(self):
        """Test conversion without aliasing the input."""
        frame = pd.DataFrame({"a": [1, 2]})
        values = as_float_array(frame, "forecasts")
        values[0, 0] = 10.0
        assert frame.iloc[0, 0] == 1
        assert as_float_array(sparse.identity(2), "W").dtype == np.float64
        with pytest.raises(ValueError, match="must be numeric"):
            as_float_array([["a", "b"]], "forecasts")

    def test_fixed_pairs(self):
        """Test validation of fixed index pairs."""
        assert validate_fixed_pairs([(0, 1), [1, 0]], (2, 2)) == frozenset({(0, 1), (1, 0)})
        with pytest.raises(DimensionMismatchError, match=r"\(2, 0\) is outside"):
            validate_fixed_pairs([(2, 0)], (2, 2))
        with pytest.raises(ValueError, match="pairs"):
            validate_fixed_pairs([3], (2, 2))


class TestFactorizationCache:
    """Test the shared cache."""

    def test_lru_eviction(self):
        """Test that the least recently used entry is evicted."""
        cache = FactorizationCache(maxsize=2)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.get("a")
        cache.put("c", 3)

        assert cache.get("b") is None
        assert cache.get("a") == 1
        assert len(cache) == 2

    def test_get_or_compute(self):
        """Test that the factory runs once per key."""
        cache = FactorizationCache()
        calls = []
        for _ in range(3):
            cache.get_or_compute("key", lambda: calls.append(1) or "value")
        assert len(calls) == 1
        assert cache.hits == 2
        assert cache.misses == 1

    def test_clear(self):
        """Test that clearing resets entries and counters."""
        cache = FactorizationCache()
        cache.get_or_compute("key", lambda: 1)
        cache.clear()
        assert len(cache) == 0
        assert cache.hits == 0 and cache.misses == 0

    def test_invalid_size(self):
        """Test that the cache needs room for one entry."""
        with pytest.raises(ValueError, match="maxsize"):
            FactorizationCache(maxsize=0)

    def test_concurrent_access(self):
        """Test that concurrent writers leave the cache consistent."""
        cache = FactorizationCache(maxsize=8)

        def worker(offset):
            for i in range(100):
                cache.get_or_compute((offset + i) % 10, lambda: i)

        threads = [threading.Thread(target=worker, args=(k,)) for k in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert len(cache) == 8

    def test_fingerprint(self):
        """Test content hashing of dense, sparse and missing arrays."""
        dense = np.eye(3)
        assert fingerprint(dense) == fingerprint(dense.copy())
        assert fingerprint(dense) != fingerprint(2 * dense)
        assert fingerprint(sparse.identity(3)) == fingerprint(sparse.identity(3, format="csc"))
        assert fingerprint(None) == fingerprint(None)


class TestLoggingUtils:
    """Test logging helpers."""

    def test_structured_logger(self, caplog):
        """Test that structured fields are appended to the message."""
        logger = StructuredLogger("reconcile.structured", {"dimension": "temporal"})
        with caplog.at_level(logging.INFO, logger="reconcile.structured"):
            logger.info("done", {"iterations": 3})
        assert "done | dimension=temporal | iterations=3" in caplog.text

    def test_performance_timer(self):
        """Test that timings are recorded per operation."""
        perf = PerformanceLogger(logging.getLogger("reconcile.perf"))
        with perf.timer("projection"):
            pass
        with perf.timer("projection"):
            pass
        perf.count("cache_miss")

        summary = perf.get_performance_summary()
        assert summary["total_operations"] == 1
        assert summary["operation_statistics"]["projection"]["count"] == 2
        assert summary["event_counts"] == {"cache_miss": 1}

    def test_performance_timer_logs_failure(self, caplog):
        """Test that failing operations are logged and re-raised."""
        perf = PerformanceLogger(logging.getLogger("reconcile.perf"))
        with pytest.raises(RuntimeError):
            with perf.timer("factorisation"):
                raise RuntimeError("broken")
        assert "Failed operation: factorisation" in caplog.text
        assert "factorisation" not in perf.timers

    def test_log_function_call(self, caplog):
        """Test that decorated calls log start and completion."""
        @log_function_call(level="INFO", log_result=True)
        def double(x):
            return 2 * x

        with caplog.at_level(logging.INFO):
            assert double(4) == 8
        assert "Calling" in caplog.text
        assert "with result: 8" in caplog.text

    def test_log_function_call_error(self, caplog):
        """Test that exceptions propagate through the decorator."""
        @log_function_call()
        def fail():
            raise DimensionMismatchError("bad shape")

        with pytest.raises(DimensionMismatchError, match="bad shape"):
            fail()
        assert "Failed" in caplog.text
