"""Tests for the GLS projection engine."""

import pytest
import numpy as np
from scipy import sparse

from cross_temporal_forecast_reconciliation.exceptions import (
    DimensionMismatchError, InfeasibleConstraintsError, SingularCovarianceError
)
from cross_temporal_forecast_reconciliation.reconciliation import GLSProjector, estimate_covariance, reconcile
from cross_temporal_forecast_reconciliation.reconciliation.projection import cached_projector
from cross_temporal_forecast_reconciliation.utils.cache import FactorizationCache


@pytest.fixture
def total_constraint() -> np.ndarray:
    """Total = child 1 + child 2."""
    return np.array([[1.0, -1.0, -1.0]])


class TestReconcile:
    """Test cases for one-off reconciliation."""

    def test_worked_example(self, total_constraint):
        """Test the weighted split of an incoherent total."""
        result = reconcile([10, 4, 7], total_constraint, np.diag([2.0, 1.0, 1.0]))
        np.testing.assert_allclose(result, [10.5, 3.75, 6.75])

    def test_identity_weights(self, total_constraint):
        """Test the orthogonal projection."""
        result = reconcile([10, 4, 7], total_constraint, np.eye(3))
        np.testing.assert_allclose(result, [31 / 3, 11 / 3, 20 / 3])

    def test_input_not_modified(self, total_constraint):
        """Test that the base forecasts are left untouched."""
        y = np.array([10.0, 4.0, 7.0])
        reconcile(y, total_constraint, np.eye(3))
        np.testing.assert_array_equal(y, [10.0, 4.0, 7.0])

    def test_coherent_input_unchanged(self, plant_hierarchy, cs_constraints, cs_residuals):
        """Test that projecting coherent forecasts is the identity."""
        W = estimate_covariance(cs_constraints, "shrinkage", cs_residuals).matrix
        coherent = plant_hierarchy.bottom_up(np.array([[3.0, 1.0], [2.0, 5.0], [4.0, 4.0], [1.0, 0.5]]))
        np.testing.assert_allclose(reconcile(coherent, plant_hierarchy.U, W), coherent, atol=1e-10)

    def test_idempotent(self, plant_hierarchy, cs_constraints, cs_residuals):
        """Test that reconciling twice equals reconciling once."""
        W = estimate_covariance(cs_constraints, "sample", cs_residuals).matrix
        y = np.array([12.0, 5.0, 6.0, 2.0, 2.5, 3.0, 4.0])
        once = reconcile(y, plant_hierarchy.U, W)
        twice = reconcile(once, plant_hierarchy.U, W)
        np.testing.assert_allclose(twice, once, atol=1e-10)
        assert plant_hierarchy.coherence_residual(once) < 1e-10

    def test_matches_summing_matrix_form(self, ct_constraints, ct_forecasts):
        """Test that the zero-constraint form equals S (S'S)^-1 S' y for identity weights."""
        Y = ct_constraints.stack(ct_forecasts)
        S = ct_constraints.S
        expected = S @ np.linalg.solve(S.T @ S, S.T @ Y)
        result = reconcile(Y, ct_constraints.U, np.eye(ct_constraints.n_rows))
        np.testing.assert_allclose(result, expected, atol=1e-8)


class TestFixedValues:
    """Test cases for immutable forecasts."""

    def test_fixed_total(self, total_constraint):
        """Test that the children absorb the adjustment when the total is fixed."""
        result = reconcile([10, 4, 7], total_constraint, np.diag([2.0, 1.0, 1.0]), fixed=[0])
        assert result[0] == 10.0
        np.testing.assert_allclose(result[1:], [3.5, 6.5])

    def test_fixed_child(self, total_constraint):
        """Test that the free values are adjusted in proportion to their weights."""
        result = reconcile([10, 4, 7], total_constraint, np.diag([2.0, 1.0, 1.0]), fixed=[1])
        assert result[1] == 4.0
        np.testing.assert_allclose(result[[0, 2]], [32 / 3, 20 / 3])

    def test_fixed_values_bit_for_bit(self, plant_hierarchy, cs_constraints, cs_residuals):
        """Test that fixed entries come back unchanged in every column."""
        W = estimate_covariance(cs_constraints, "shrinkage", cs_residuals).matrix
        rng = np.random.default_rng(11)
        Y = rng.uniform(1, 10, (7, 3))
        fixed = [(0, 0), (3, 0), (1, 2)]

        result = GLSProjector(plant_hierarchy.U, W).project(Y, fixed)

        for row, col in fixed:
            assert result[row, col] == Y[row, col]
        assert plant_hierarchy.coherence_residual(result) < 1e-8

    def test_all_fixed_and_coherent(self, total_constraint):
        """Test that fully fixed coherent forecasts pass through."""
        result = reconcile([10, 4, 6], total_constraint, np.eye(3), fixed=[0, 1, 2])
        np.testing.assert_array_equal(result, [10, 4, 6])

    def test_all_fixed_and_incoherent(self, total_constraint):
        """Test that fully fixed incoherent forecasts are infeasible."""
        with pytest.raises(InfeasibleConstraintsError, match="violate constraint rows"):
            reconcile([10, 4, 7], total_constraint, np.eye(3), fixed=[0, 1, 2])

    def test_contradicting_aggregates(self, plant_hierarchy):
        """Test that Total != North + South with all three fixed is infeasible."""
        y = np.array([10.0, 4.0, 7.0, 1.0, 1.0, 1.0, 1.0])
        with pytest.raises(InfeasibleConstraintsError) as exc_info:
            reconcile(y, plant_hierarchy.U, np.eye(7), fixed=[0, 1, 2])
        assert "Fixed values at rows" in str(exc_info.value)

    def test_fixed_out_of_range(self, total_constraint):
        """Test that fixed positions must exist."""
        with pytest.raises(DimensionMismatchError):
            reconcile([10, 4, 7], total_constraint, np.eye(3), fixed=[5])


class TestGLSProjector:
    """Test cases for the reusable projector."""

    def test_zero_weight_rejected(self, total_constraint):
        """Test that a non-positive diagonal is rejected."""
        with pytest.raises(SingularCovarianceError, match=r"rows \[1\]"):
            GLSProjector(total_constraint, np.diag([1.0, 0.0, 1.0]))

    def test_non_finite_weight_rejected(self, total_constraint):
        """Test that NaN weights are rejected."""
        W = np.eye(3)
        W[0, 2] = W[2, 0] = np.nan
        with pytest.raises(SingularCovarianceError, match="non-finite"):
            GLSProjector(total_constraint, W)

    def test_shape_mismatch(self, total_constraint):
        """Test that U and W must agree."""
        with pytest.raises(DimensionMismatchError, match="expected \\(3, 3\\)"):
            GLSProjector(total_constraint, np.eye(4))

    def test_forecast_shape_mismatch(self, total_constraint):
        """Test that the forecasts must have one row per column of U."""
        with pytest.raises(DimensionMismatchError):
            GLSProjector(total_constraint, np.eye(3)).project(np.ones(4))

    def test_cholesky_used_for_full_rank(self, plant_hierarchy):
        """Test that full-rank systems are factorised with Cholesky."""
        assert GLSProjector(plant_hierarchy.U, np.eye(7)).method == "cholesky"

    def test_projection_matrix(self, plant_hierarchy):
        """Test that the explicit projection matrix reproduces project()."""
        W = np.diag(plant_hierarchy.structural_weights)
        projector = GLSProjector(plant_hierarchy.U, W)
        P = projector.projection_matrix()
        y = np.array([12.0, 5.0, 6.0, 2.0, 2.5, 3.0, 4.0])

        np.testing.assert_allclose(P @ y, projector.project(y))
        np.testing.assert_allclose(P @ P, P, atol=1e-12)

    def test_sparse_matches_dense(self, plant_hierarchy):
        """Test that sparse inputs give the dense result."""
        W = np.diag(plant_hierarchy.structural_weights)
        y = np.array([12.0, 5.0, 6.0, 2.0, 2.5, 3.0, 4.0])
        dense = GLSProjector(plant_hierarchy.U, W)
        sparse_projector = GLSProjector(sparse.csr_matrix(plant_hierarchy.U), sparse.csr_matrix(W))

        assert sparse_projector.method == "sparse_lu"
        np.testing.assert_allclose(sparse_projector.project(y), dense.project(y))

    def test_cached_projector_reused(self, plant_hierarchy):
        """Test that equal keys share one factorisation."""
        cache = FactorizationCache(maxsize=4)
        first = cached_projector(cache, "key", plant_hierarchy.U, np.eye(7))
        second = cached_projector(cache, "key", plant_hierarchy.U, np.eye(7))
        assert first is second
        assert cache.hits == 1
