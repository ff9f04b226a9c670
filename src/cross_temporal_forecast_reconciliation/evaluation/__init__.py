"""Coherence metrics for reconciled forecasts."""

from .metrics import CoherenceMetrics, compute_coherence_metrics

__all__ = [
    "CoherenceMetrics",
    "compute_coherence_metrics",
]
