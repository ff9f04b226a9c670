"""Logging utilities for the reconciliation engine.

This module provides structured key=value logging, timing of the expensive
linear-algebra steps (factorisations, simultaneous solves, QP projections),
and a decorator for logging public entry points.
"""

import json
import logging
import time
import traceback
from contextlib import contextmanager
from functools import wraps
from typing import Any, Callable, Dict, Optional

import numpy as np
from scipy import sparse


class StructuredLogger:
    """Logger that appends ``key=value`` fields to every message."""

    def __init__(self, name: str, extra_fields: Optional[Dict[str, Any]] = None):
        """
        Args:
            name: Logger name.
            extra_fields: Fields included in all messages of this logger.
        """
        self.logger = logging.getLogger(name)
        self.extra_fields = dict(extra_fields or {})

    def _format_message(self, message: str, extra: Optional[Dict[str, Any]] = None) -> str:
        fields = {**self.extra_fields, **(extra or {})}
        if not fields:
            return message
        return " | ".join([message] + [f"{k}={v}" for k, v in fields.items()])

    def log(self, level: int, message: str, extra: Optional[Dict[str, Any]] = None) -> None:
        if self.logger.isEnabledFor(level):
            self.logger.log(level, self._format_message(message, extra))

    def debug(self, message: str, extra: Optional[Dict[str, Any]] = None) -> None:
        self.log(logging.DEBUG, message, extra)

    def info(self, message: str, extra: Optional[Dict[str, Any]] = None) -> None:
        self.log(logging.INFO, message, extra)

    def warning(self, message: str, extra: Optional[Dict[str, Any]] = None) -> None:
        self.log(logging.WARNING, message, extra)

    def error(self, message: str, extra: Optional[Dict[str, Any]] = None) -> None:
        self.log(logging.ERROR, message, extra)


class PerformanceLogger:
    """Timing and counting of reconciliation operations."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.timers: Dict[str, float] = {}
        self.counters: Dict[str, int] = {}
        self.metrics: Dict[str, list] = {}

    @contextmanager
    def timer(self, operation: str, log_level: str = 'DEBUG'):
        """
        Time the enclosed block.

        Only successful runs are recorded; failures are logged with their
        duration and re-raised.

        Args:
            operation: Name of the operation being timed.
            log_level: Logging level for the timing result.
        """
        level = getattr(logging, log_level.upper())
        self.logger.log(level, f"Starting operation: {operation}")
        start_time = time.perf_counter()
        try:
            yield
        except Exception as e:
            self.logger.error(
                f"Failed operation: {operation} after {time.perf_counter() - start_time:.4f} seconds - {e}"
            )
            raise

        duration = time.perf_counter() - start_time
        self.timers[operation] = duration
        self.metrics.setdefault(operation, []).append(duration)
        self.logger.log(level, f"Completed operation: {operation} in {duration:.4f} seconds")

    def count(self, event: str) -> None:
        self.counters[event] = self.counters.get(event, 0) + 1

    def log_array_stats(self, data: Any, name: str) -> None:
        """Log shape, density and range of a dense or sparse matrix at DEBUG level."""
        if not self.logger.isEnabledFor(logging.DEBUG):
            return

        if sparse.issparse(data):
            stats = {
                'shape': list(data.shape),
                'format': data.format,
                'nnz': int(data.nnz),
                'density': float(data.nnz) / max(1, data.shape[0] * data.shape[1]),
            }
        else:
            arr = np.asarray(data, dtype=float)
            stats = {
                'shape': list(arr.shape),
                'memory_usage_mb': arr.nbytes / 1024 / 1024,
                'nan_count': int(np.isnan(arr).sum()),
            }
            if arr.size and not np.all(np.isnan(arr)):
                stats['min'] = float(np.nanmin(arr))
                stats['max'] = float(np.nanmax(arr))

        self.logger.debug(f"Matrix statistics for {name}: {json.dumps(stats)}")

    def get_performance_summary(self) -> Dict[str, Any]:
        """Totals per operation plus event counts."""
        summary = {
            'total_operations': len(self.timers),
            'total_time': sum(self.timers.values()),
            'slowest_operation': max(self.timers.items(), key=lambda x: x[1]) if self.timers else None,
            'event_counts': dict(self.counters)
        }
        if self.metrics:
            summary['operation_statistics'] = {
                op: {
                    'count': len(times),
                    'total_time': sum(times),
                    'avg_time': float(np.mean(times)),
                    'max_time': max(times),
                }
                for op, times in self.metrics.items()
            }
        return summary

    def log_performance_summary(self) -> None:
        self.logger.info(f"Performance Summary:\n{json.dumps(self.get_performance_summary(), indent=2)}")


def log_function_call(
    logger: Optional[logging.Logger] = None,
    log_args: bool = False,
    log_result: bool = False,
    log_timing: bool = True,
    level: str = 'DEBUG'
):
    """
    Decorator to log function calls with optional argument and result logging.

    Args:
        logger: Logger instance. If None, uses function's module logger.
        log_args: Whether to log function arguments.
        log_result: Whether to log function result.
        log_timing: Whether to log execution time.
        level: Logging level for the messages.

    Returns:
        Decorated function.
    """
    log_level = getattr(logging, level.upper())

    def decorator(func: Callable) -> Callable:
        func_name = f"{func.__module__}.{func.__qualname__}"

        @wraps(func)
        def wrapper(*args, **kwargs):
            func_logger = logger or logging.getLogger(func.__module__)

            message = f"Calling {func_name}"
            if log_args:
                arguments = [repr(arg) for arg in args] + [f"{k}={v!r}" for k, v in kwargs.items()]
                message += f" with args: ({', '.join(arguments)})"
            func_logger.log(log_level, message)

            start_time = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                func_logger.error(f"Failed {func_name} after {time.perf_counter() - start_time:.4f} seconds: {e}")
                func_logger.debug(f"Full traceback for {func_name}:\n{traceback.format_exc()}")
                raise

            message = f"Completed {func_name}"
            if log_timing:
                message += f" in {time.perf_counter() - start_time:.4f} seconds"
            if log_result:
                message += f" with result: {result!r}"
            func_logger.log(log_level, message)
            return result

        return wrapper
    return decorator
