"""Pytest configuration and fixtures for testing."""

import pytest
import numpy as np
from pathlib import Path
import tempfile
import shutil

# Add src to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from cross_temporal_forecast_reconciliation.hierarchy import HierarchyDescriptor, TemporalHierarchyDescriptor
from cross_temporal_forecast_reconciliation.reconciliation import build_constraints


@pytest.fixture
def aggregation_matrix() -> np.ndarray:
    """Total and two zones over four plants (North = p1 + p2, South = p3 + p4)."""
    return np.array([
        [1, 1, 1, 1],
        [1, 1, 0, 0],
        [0, 0, 1, 1],
    ], dtype=float)


@pytest.fixture
def plant_hierarchy(aggregation_matrix) -> HierarchyDescriptor:
    """Small plant/zone hierarchy with labels."""
    labels = ["Total", "zone/North", "zone/South", "p1", "p2", "p3", "p4"]
    return HierarchyDescriptor.build(aggregation_matrix, labels=labels)


@pytest.fixture
def simple_hierarchy() -> HierarchyDescriptor:
    """One total and two children."""
    return HierarchyDescriptor.build([[1, 1]])


@pytest.fixture
def temporal_hierarchy() -> TemporalHierarchyDescriptor:
    """Four values per cycle aggregated to orders {4, 2, 1}, two cycles ahead."""
    return TemporalHierarchyDescriptor.build(4, h=2)


@pytest.fixture
def cs_constraints(plant_hierarchy):
    return build_constraints(plant_hierarchy)


@pytest.fixture
def te_constraints(temporal_hierarchy):
    return build_constraints(temporal=temporal_hierarchy)


@pytest.fixture
def ct_constraints(plant_hierarchy, temporal_hierarchy):
    return build_constraints(plant_hierarchy, temporal_hierarchy)


@pytest.fixture
def cs_residuals() -> np.ndarray:
    """In-sample residuals for the plant hierarchy, 200 observations."""
    rng = np.random.default_rng(42)
    bottom = rng.normal(0, 1, (4, 200))
    aggregate_noise = rng.normal(0, 0.5, (3, 200))
    C = np.array([[1, 1, 1, 1], [1, 1, 0, 0], [0, 0, 1, 1]], dtype=float)
    return np.vstack([C @ bottom + aggregate_noise, bottom])


@pytest.fixture
def ct_residuals(plant_hierarchy, temporal_hierarchy) -> np.ndarray:
    """Cross-temporal residuals: 7 series x 60 cycles in the temporal layout."""
    rng = np.random.default_rng(7)
    n_cycles = 60
    return rng.normal(0, 1, (plant_hierarchy.n, n_cycles * temporal_hierarchy.kt))


@pytest.fixture
def ct_forecasts(plant_hierarchy, temporal_hierarchy) -> np.ndarray:
    """Incoherent cross-temporal base forecasts (7 series x 2 cycles)."""
    rng = np.random.default_rng(3)
    hourly = rng.uniform(5, 15, (plant_hierarchy.n_b, temporal_hierarchy.h * temporal_hierarchy.m))
    coherent = temporal_hierarchy.bottom_up(plant_hierarchy.bottom_up(hourly))
    return coherent + rng.normal(0, 2, coherent.shape)


@pytest.fixture
def temp_directory():
    """Provide a temporary directory for testing."""
    temp_dir = tempfile.mkdtemp()
    yield Path(temp_dir)
    shutil.rmtree(temp_dir)
