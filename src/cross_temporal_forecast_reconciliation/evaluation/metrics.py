"""
Coherence metrics for reconciled forecasts.

Accuracy scoring is left to callers; these metrics only measure how far a
forecast matrix is from satisfying the aggregation relations and whether it
respects non-negativity.
"""

import logging
from typing import Dict, Optional

import numpy as np

from ..hierarchy.cross_sectional import HierarchyDescriptor
from ..hierarchy.temporal import TemporalHierarchyDescriptor
from ..utils.type_validation import as_float_array

logger = logging.getLogger(__name__)


class CoherenceMetrics:
    """Metrics for evaluating hierarchical coherence."""

    @staticmethod
    def coherence_error(values, hierarchy: HierarchyDescriptor) -> float:
        """
        Calculate relative cross-sectional coherence error.

        Args:
            values: Forecasts with ``n`` rows (aggregates first).
            hierarchy: Cross-sectional hierarchy.

        Returns:
            Mean relative gap between the aggregates and the sums of their
            bottom series (0 = perfect coherence).
        """
        values = as_float_array(values, "values")
        if values.ndim == 1:
            values = values.reshape(-1, 1)
        expected = np.asarray(hierarchy.C @ values[hierarchy.n_a:])
        actual = values[:hierarchy.n_a]
        relative_error = np.abs(expected - actual) / (np.abs(actual) + 1e-8)
        return float(np.mean(relative_error))

    @staticmethod
    def coherence_score(values, hierarchy: HierarchyDescriptor) -> float:
        """Coherence score between 0 and 1 (1 = perfectly coherent)."""
        return max(0.0, min(1.0, 1.0 - CoherenceMetrics.coherence_error(values, hierarchy)))

    @staticmethod
    def cross_sectional_incoherence(values, hierarchy: HierarchyDescriptor) -> float:
        """Maximum absolute violation of the cross-sectional relations over all columns."""
        return hierarchy.coherence_residual(as_float_array(values, "values"))

    @staticmethod
    def temporal_incoherence(values, temporal: TemporalHierarchyDescriptor) -> float:
        """Maximum absolute violation of the temporal relations over all rows."""
        return temporal.coherence_residual(as_float_array(values, "values"))

    @staticmethod
    def negativity(values) -> float:
        """Magnitude of the most negative value (0 when non-negative)."""
        values = as_float_array(values, "values")
        return max(0.0, -float(np.min(values))) if values.size else 0.0


def compute_coherence_metrics(
    values,
    hierarchy: Optional[HierarchyDescriptor] = None,
    temporal: Optional[TemporalHierarchyDescriptor] = None
) -> Dict[str, float]:
    """
    Compute every applicable coherence metric.

    Args:
        values: Forecasts in the layout of the given hierarchies.
        hierarchy: Cross-sectional hierarchy, if any.
        temporal: Temporal hierarchy, if any.

    Returns:
        Dictionary of metric name to value.
    """
    if hierarchy is None and temporal is None:
        raise ValueError("At least one of 'hierarchy' or 'temporal' must be given")

    metrics = {"negativity": CoherenceMetrics.negativity(values)}

    if hierarchy is not None:
        metrics["cross_sectional_max_violation"] = CoherenceMetrics.cross_sectional_incoherence(values, hierarchy)
        metrics["relative_coherence_error"] = CoherenceMetrics.coherence_error(values, hierarchy)
        metrics["coherence_score"] = CoherenceMetrics.coherence_score(values, hierarchy)

    if temporal is not None:
        metrics["temporal_max_violation"] = CoherenceMetrics.temporal_incoherence(values, temporal)

    logger.debug(f"Coherence metrics: {metrics}")
    return metrics
