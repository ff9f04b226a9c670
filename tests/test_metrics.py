"""Tests for coherence metrics."""

import pytest
import numpy as np

from cross_temporal_forecast_reconciliation.evaluation import CoherenceMetrics, compute_coherence_metrics


class TestCoherenceMetrics:
    """Test cases for CoherenceMetrics."""

    def test_coherent_values(self, plant_hierarchy):
        """Test the metrics of coherent forecasts."""
        values = plant_hierarchy.bottom_up(np.array([1.0, 2.0, 3.0, 4.0]))
        assert CoherenceMetrics.coherence_error(values, plant_hierarchy) == pytest.approx(0.0)
        assert CoherenceMetrics.coherence_score(values, plant_hierarchy) == pytest.approx(1.0)
        assert CoherenceMetrics.cross_sectional_incoherence(values, plant_hierarchy) == 0.0

    def test_incoherent_total(self, simple_hierarchy):
        """Test the relative error of a total that misses its children by 10%."""
        values = np.array([10.0, 4.0, 7.0])
        assert CoherenceMetrics.coherence_error(values, simple_hierarchy) == pytest.approx(0.1)
        assert CoherenceMetrics.coherence_score(values, simple_hierarchy) == pytest.approx(0.9)
        assert CoherenceMetrics.cross_sectional_incoherence(values, simple_hierarchy) == pytest.approx(1.0)

    def test_score_is_bounded(self, simple_hierarchy):
        """Test that large errors give a score of zero."""
        values = np.array([1.0, 40.0, 70.0])
        assert CoherenceMetrics.coherence_score(values, simple_hierarchy) == 0.0

    def test_temporal_incoherence(self, temporal_hierarchy):
        """Test the largest temporal violation."""
        values = temporal_hierarchy.bottom_up(np.arange(1, 9, dtype=float))
        values[0] += 2.5
        assert CoherenceMetrics.temporal_incoherence(values, temporal_hierarchy) == pytest.approx(2.5)

    def test_negativity(self):
        """Test the magnitude of the most negative value."""
        assert CoherenceMetrics.negativity(np.array([1.0, -0.5, -2.0])) == 2.0
        assert CoherenceMetrics.negativity(np.array([1.0, 0.0])) == 0.0


class TestComputeCoherenceMetrics:
    """Test cases for compute_coherence_metrics."""

    def test_cross_temporal_keys(self, plant_hierarchy, temporal_hierarchy, ct_forecasts):
        """Test that both axes are reported for cross-temporal forecasts."""
        metrics = compute_coherence_metrics(ct_forecasts, plant_hierarchy, temporal_hierarchy)
        assert set(metrics) == {
            "negativity", "cross_sectional_max_violation", "relative_coherence_error",
            "coherence_score", "temporal_max_violation"
        }
        assert metrics["cross_sectional_max_violation"] > 0
        assert metrics["temporal_max_violation"] > 0

    def test_temporal_only(self, temporal_hierarchy):
        """Test that only temporal metrics are reported without a hierarchy."""
        metrics = compute_coherence_metrics(np.ones(14), temporal=temporal_hierarchy)
        assert set(metrics) == {"negativity", "temporal_max_violation"}

    def test_requires_a_hierarchy(self):
        """Test that at least one hierarchy is needed."""
        with pytest.raises(ValueError, match="At least one"):
            compute_coherence_metrics(np.ones(3))
