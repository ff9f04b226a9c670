"""Tests for cross-sectional and temporal hierarchy descriptors."""

import pytest
import numpy as np
import pandas as pd
from scipy import sparse

from cross_temporal_forecast_reconciliation.exceptions import DimensionMismatchError, InvalidHierarchyError
from cross_temporal_forecast_reconciliation.hierarchy import (
    HierarchyDescriptor, TemporalHierarchyDescriptor, divisors
)


class TestHierarchyDescriptor:
    """Test cases for HierarchyDescriptor."""

    def test_build_derives_matrices(self, plant_hierarchy, aggregation_matrix):
        """Test that S and U follow the aggregates-then-bottoms ordering."""
        assert plant_hierarchy.n_a == 3
        assert plant_hierarchy.n_b == 4
        assert plant_hierarchy.n == 7
        np.testing.assert_array_equal(plant_hierarchy.S[:3], aggregation_matrix)
        np.testing.assert_array_equal(plant_hierarchy.S[3:], np.eye(4))
        np.testing.assert_array_equal(plant_hierarchy.U[:, :3], np.eye(3))
        np.testing.assert_array_equal(plant_hierarchy.U[:, 3:], -aggregation_matrix)
        np.testing.assert_array_equal(plant_hierarchy.U @ plant_hierarchy.S, np.zeros((3, 4)))

    def test_structural_weights(self, plant_hierarchy):
        """Test that structural weights count aggregated bottom series."""
        np.testing.assert_array_equal(plant_hierarchy.structural_weights, [4, 2, 2, 1, 1, 1, 1])

    def test_matrices_are_read_only(self, plant_hierarchy):
        """Test that the descriptor cannot be mutated."""
        with pytest.raises(ValueError):
            plant_hierarchy.C[0, 0] = 5.0

    def test_input_is_copied(self, aggregation_matrix):
        """Test that later changes to the input do not leak into the descriptor."""
        hierarchy = HierarchyDescriptor.build(aggregation_matrix)
        aggregation_matrix[0, 0] = 0.0
        assert hierarchy.C[0, 0] == 1.0

    def test_zero_row_rejected(self):
        """Test that an aggregate without children is rejected."""
        with pytest.raises(InvalidHierarchyError, match=r"Aggregate rows \[1\]"):
            HierarchyDescriptor.build([[1, 1], [0, 0]])

    def test_zero_column_rejected(self):
        """Test that a bottom series outside every aggregate is rejected."""
        with pytest.raises(InvalidHierarchyError, match=r"Bottom series \[2\]"):
            HierarchyDescriptor.build([[1, 1, 0]])

    def test_duplicate_rows_rejected(self):
        """Test that duplicate aggregates are rejected."""
        with pytest.raises(InvalidHierarchyError, match="rows 0 and 2 are duplicates"):
            HierarchyDescriptor.build([[1, 1, 1], [1, 0, 0], [1, 1, 1]])

    def test_non_binary_rejected(self):
        """Test that weights other than 0 and 1 are rejected."""
        with pytest.raises(InvalidHierarchyError, match=r"entry \(0, 1\)"):
            HierarchyDescriptor.build([[1, 2]])

    def test_empty_rejected(self):
        """Test that an empty aggregation matrix is rejected."""
        with pytest.raises(InvalidHierarchyError):
            HierarchyDescriptor.build(np.zeros((0, 3)))

    def test_label_count_mismatch(self, aggregation_matrix):
        """Test that labels must cover every series."""
        with pytest.raises(DimensionMismatchError, match="Expected 7 labels"):
            HierarchyDescriptor.build(aggregation_matrix, labels=["a", "b"])

    def test_from_summing_matrix(self, plant_hierarchy):
        """Test building from a full summing matrix."""
        hierarchy = HierarchyDescriptor.from_summing_matrix(plant_hierarchy.S)
        np.testing.assert_array_equal(hierarchy.C, plant_hierarchy.C)

    def test_from_summing_matrix_bad_bottom_block(self):
        """Test that a bottom block other than the identity is rejected."""
        S = np.array([[1, 1], [1, 0], [1, 1]], dtype=float)
        with pytest.raises(InvalidHierarchyError, match=r"not the identity at rows \[2\]"):
            HierarchyDescriptor.from_summing_matrix(S)

    def test_from_levels(self):
        """Test building from a labelled frame."""
        plants = pd.DataFrame({"id": ["p1", "p2", "p3"], "zone": ["N", "N", "S"]})
        hierarchy = HierarchyDescriptor.from_levels(plants, ["zone"])

        assert hierarchy.labels == ["Total", "zone/N", "zone/S", "p1", "p2", "p3"]
        assert hierarchy.bottom_labels == ["p1", "p2", "p3"]
        np.testing.assert_array_equal(hierarchy.C, [[1, 1, 1], [1, 1, 0], [0, 0, 1]])

    def test_from_levels_missing_column(self):
        """Test that missing level columns are reported."""
        plants = pd.DataFrame({"id": ["p1", "p2"]})
        with pytest.raises(InvalidHierarchyError, match="missing columns"):
            HierarchyDescriptor.from_levels(plants, ["zone"])

    def test_from_levels_duplicate_ids(self):
        """Test that duplicated bottom identifiers are rejected."""
        plants = pd.DataFrame({"id": ["p1", "p1"], "zone": ["N", "S"]})
        with pytest.raises(InvalidHierarchyError, match="more than once"):
            HierarchyDescriptor.from_levels(plants, ["zone"])

    def test_bottom_up(self, plant_hierarchy):
        """Test bottom-up aggregation."""
        result = plant_hierarchy.bottom_up(np.array([1.0, 2.0, 3.0, 4.0]))
        np.testing.assert_array_equal(result, [10, 3, 7, 1, 2, 3, 4])
        assert plant_hierarchy.coherence_residual(result) == 0.0

    def test_bottom_up_wrong_rows(self, plant_hierarchy):
        """Test that bottom-up checks the number of bottom series."""
        with pytest.raises(DimensionMismatchError, match="expected n_b=4"):
            plant_hierarchy.bottom_up(np.ones(3))

    def test_sparse_representation(self, aggregation_matrix):
        """Test that large hierarchies switch to sparse matrices transparently."""
        hierarchy = HierarchyDescriptor.build(aggregation_matrix, sparse_threshold=3)
        dense = HierarchyDescriptor.build(aggregation_matrix)

        assert hierarchy.is_sparse
        assert sparse.issparse(hierarchy.U)
        np.testing.assert_array_equal(hierarchy.U.toarray(), dense.U)
        np.testing.assert_array_equal(hierarchy.structural_weights, dense.structural_weights)
        values = hierarchy.bottom_up(np.ones((4, 2)))
        np.testing.assert_array_equal(values, dense.bottom_up(np.ones((4, 2))))

    def test_fingerprint_depends_on_structure(self, aggregation_matrix):
        """Test that equal structures share a fingerprint."""
        first = HierarchyDescriptor.build(aggregation_matrix)
        second = HierarchyDescriptor.build(aggregation_matrix.copy())
        other = HierarchyDescriptor.build([[1, 1]])
        assert first.fingerprint == second.fingerprint
        assert first.fingerprint != other.fingerprint


class TestTemporalHierarchyDescriptor:
    """Test cases for TemporalHierarchyDescriptor."""

    def test_divisors(self):
        """Test divisor enumeration."""
        assert divisors(24) == [24, 12, 8, 6, 4, 3, 2, 1]

    def test_default_orders(self, temporal_hierarchy):
        """Test that all divisors are used by default."""
        assert temporal_hierarchy.orders == (4, 2, 1)
        assert temporal_hierarchy.k_star == 3
        assert temporal_hierarchy.kt == 7
        assert temporal_hierarchy.horizons == {4: 2, 2: 4, 1: 8}
        assert temporal_hierarchy.layout_length == 14

    def test_matrices(self, temporal_hierarchy):
        """Test the aggregation and constraint matrices."""
        expected_R = np.array([
            [1, 1, 1, 1],
            [1, 1, 0, 0],
            [0, 0, 1, 1],
        ])
        np.testing.assert_array_equal(temporal_hierarchy.R, expected_R)
        np.testing.assert_array_equal(temporal_hierarchy.Z, np.hstack([np.eye(3), -expected_R]))
        np.testing.assert_array_equal(temporal_hierarchy.Z @ temporal_hierarchy.S, np.zeros((3, 4)))
        np.testing.assert_array_equal(temporal_hierarchy.structural_weights, [4, 2, 2, 1, 1, 1, 1])

    def test_subset_of_orders(self):
        """Test that any subset of divisors is accepted."""
        temporal = TemporalHierarchyDescriptor.build(24, orders=[24, 12, 1])
        assert temporal.orders == (24, 12, 1)
        assert temporal.kt == 1 + 2 + 24
        assert temporal.Z.shape == (3, 27)

    def test_missing_extreme_orders_are_added(self):
        """Test that m and 1 are always part of the orders."""
        temporal = TemporalHierarchyDescriptor.build(4, orders=[2])
        assert temporal.orders == (4, 2, 1)

    def test_order_not_dividing_m(self):
        """Test that orders must divide m."""
        with pytest.raises(InvalidHierarchyError, match="Temporal order 3 does not divide m=4"):
            TemporalHierarchyDescriptor.build(4, orders=[3])

    def test_invalid_order_type(self):
        """Test that orders must be positive integers."""
        with pytest.raises(InvalidHierarchyError, match="not a positive integer"):
            TemporalHierarchyDescriptor.build(4, orders=[2.5])

    def test_invalid_m_and_h(self):
        """Test validation of m and h."""
        with pytest.raises(InvalidHierarchyError, match="'m'"):
            TemporalHierarchyDescriptor.build(1)
        with pytest.raises(InvalidHierarchyError, match="'h'"):
            TemporalHierarchyDescriptor.build(4, h=0)

    def test_to_cycles(self, temporal_hierarchy):
        """Test conversion from the layout to one column per cycle."""
        cycles = temporal_hierarchy.to_cycles(np.arange(14))
        np.testing.assert_array_equal(cycles[:, 0], [0, 2, 3, 6, 7, 8, 9])
        np.testing.assert_array_equal(cycles[:, 1], [1, 4, 5, 10, 11, 12, 13])

    def test_from_cycles_inverts_to_cycles(self, temporal_hierarchy):
        """Test that from_cycles restores the layout, also with leading axes."""
        values = np.arange(28, dtype=float).reshape(2, 14)
        restored = temporal_hierarchy.from_cycles(temporal_hierarchy.to_cycles(values))
        np.testing.assert_array_equal(restored, values)

    def test_to_cycles_wrong_length(self, temporal_hierarchy):
        """Test that layout lengths must be multiples of kt."""
        with pytest.raises(DimensionMismatchError, match="kt=7"):
            temporal_hierarchy.to_cycles(np.arange(10))

    def test_bottom_up(self, temporal_hierarchy):
        """Test temporal bottom-up aggregation."""
        result = temporal_hierarchy.bottom_up(np.arange(1, 9, dtype=float))
        np.testing.assert_array_equal(result, [10, 26, 3, 7, 11, 15, 1, 2, 3, 4, 5, 6, 7, 8])
        assert temporal_hierarchy.coherence_residual(result) == 0.0

    def test_highest_frequency(self, temporal_hierarchy):
        """Test extraction of the order-1 block."""
        values = temporal_hierarchy.bottom_up(np.arange(1, 9, dtype=float))
        np.testing.assert_array_equal(temporal_hierarchy.highest_frequency(values), np.arange(1, 9))

    def test_block_slices(self, temporal_hierarchy):
        """Test the position of every order block in the layout."""
        slices = temporal_hierarchy.block_slices()
        assert slices == {4: slice(0, 2), 2: slice(2, 6), 1: slice(6, 14)}

    def test_with_horizon(self, temporal_hierarchy):
        """Test that the horizon can be changed without changing the orders."""
        longer = temporal_hierarchy.with_horizon(5)
        assert longer.orders == temporal_hierarchy.orders
        assert longer.layout_length == 35
