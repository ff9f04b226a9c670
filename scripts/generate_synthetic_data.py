#!/usr/bin/env python3
"""
Generate a synthetic plant/zone hourly generation example for reconciliation.

Plants produce a solar-like daily profile with noise. Base forecasts for every
node and every temporal order are the aggregated truth plus independent
errors, so they are not coherent; in-sample residuals are drawn from the same
error model.
"""

import sys
from pathlib import Path

import numpy as np
import pandas as pd

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from cross_temporal_forecast_reconciliation.hierarchy import HierarchyDescriptor, TemporalHierarchyDescriptor
from cross_temporal_forecast_reconciliation.reconciliation import cross_temporal_bottom_up

np.random.seed(42)

# Configuration
ZONES = {
    "North": ["N1", "N2", "N3"],
    "South": ["S1", "S2"],
}
M = 24
ORDERS = [24, 12, 6, 4, 2, 1]
HORIZON_DAYS = 2
HISTORY_DAYS = 60
ERROR_STD = 0.08  # relative to the aggregated level


def plant_profile(n_days: int, capacity: float) -> np.ndarray:
    """Hourly output of one plant: a clipped sine over daylight hours with cloud noise."""
    hours = np.arange(n_days * M) % M
    daylight = np.clip(np.sin(np.pi * (hours - 6) / 12), 0, None)
    clouds = np.clip(np.random.normal(0.85, 0.15, n_days * M), 0.2, 1.0)
    return capacity * daylight * clouds


def column_names(temporal: TemporalHierarchyDescriptor, n_cycles: int) -> list:
    """Layout column names ``k<order>_<index>``."""
    names = []
    for k, block in temporal.block_slices(n_cycles).items():
        names.extend(f"k{k}_{t}" for t in range(block.stop - block.start))
    return names


def noisy(truth: np.ndarray) -> np.ndarray:
    """Add errors whose scale grows with the aggregation level of each value."""
    scale = ERROR_STD * (np.abs(truth) + 1.0)
    return truth + np.random.normal(0.0, 1.0, truth.shape) * scale


def main():
    """Main function to generate all synthetic data files."""
    data_dir = Path(__file__).parent.parent / "data" / "synthetic"
    data_dir.mkdir(parents=True, exist_ok=True)

    plants = pd.DataFrame(
        [(plant, zone) for zone, ids in ZONES.items() for plant in ids],
        columns=["id", "zone"]
    )
    hierarchy = HierarchyDescriptor.from_levels(plants, ["zone"])
    temporal = TemporalHierarchyDescriptor.build(M, h=HORIZON_DAYS, orders=ORDERS)

    capacities = np.random.uniform(20, 80, len(plants))
    total_days = HISTORY_DAYS + HORIZON_DAYS
    hourly = np.vstack([plant_profile(total_days, c) for c in capacities])

    history = cross_temporal_bottom_up(hierarchy, temporal, hourly[:, :HISTORY_DAYS * M])
    future = cross_temporal_bottom_up(hierarchy, temporal, hourly[:, HISTORY_DAYS * M:])

    forecasts = noisy(future)
    residuals = history - noisy(history)

    forecasts_df = pd.DataFrame(forecasts, index=hierarchy.labels, columns=column_names(temporal, HORIZON_DAYS))
    residuals_df = pd.DataFrame(residuals, index=hierarchy.labels, columns=column_names(temporal, HISTORY_DAYS))
    actuals_df = pd.DataFrame(future, index=hierarchy.labels, columns=forecasts_df.columns)

    plants.to_csv(data_dir / "hierarchy.csv", index=False)
    forecasts_df.to_csv(data_dir / "base_forecasts.csv")
    residuals_df.to_csv(data_dir / "residuals.csv")
    actuals_df.to_csv(data_dir / "actuals.csv")

    print(f"\nSaved files to {data_dir}:")
    print(f"  hierarchy.csv: {plants.shape}")
    print(f"  base_forecasts.csv: {forecasts_df.shape}")
    print(f"  residuals.csv: {residuals_df.shape}")
    print(f"  actuals.csv: {actuals_df.shape}")

    print(f"\nIncoherence of the base forecasts:")
    print(f"  Cross-sectional: {hierarchy.coherence_residual(forecasts):.3f}")
    print(f"  Temporal: {temporal.coherence_residual(forecasts):.3f}")
    print(f"  Negative values: {(forecasts < 0).sum()}")


if __name__ == "__main__":
    main()
