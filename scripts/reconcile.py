#!/usr/bin/env python3
"""
Reconciliation script for cross-temporal forecasts.

Reads base forecasts (and optionally in-sample residuals) from CSV files whose
rows are series labels and whose columns follow the temporal layout, reconciles
them with the configured strategies and writes the reconciled matrix plus a
JSON diagnostics report.
"""

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from cross_temporal_forecast_reconciliation.evaluation import compute_coherence_metrics
from cross_temporal_forecast_reconciliation.hierarchy import HierarchyDescriptor, TemporalHierarchyDescriptor
from cross_temporal_forecast_reconciliation.reconciliation import CrossTemporalReconciler, ReconciliationConfig
from cross_temporal_forecast_reconciliation.utils.config import configure_logging, load_config


def parse_arguments() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Reconcile cross-sectional and temporal base forecasts",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument(
        "--config",
        type=str,
        default="configs/default.yaml",
        help="Path to configuration file"
    )

    parser.add_argument(
        "--forecasts",
        type=str,
        required=True,
        help="CSV of base forecasts (first column holds the series labels)"
    )

    parser.add_argument(
        "--residuals",
        type=str,
        default=None,
        help="CSV of in-sample residuals in the same layout"
    )

    parser.add_argument(
        "--hierarchy",
        type=str,
        default=None,
        help="CSV with one row per bottom series: id column plus level columns"
    )

    parser.add_argument(
        "--levels",
        type=str,
        nargs="+",
        default=None,
        help="Level columns of the hierarchy CSV, from the top down"
    )

    parser.add_argument(
        "--fixed",
        type=str,
        nargs="*",
        default=None,
        help="Entries held at their base value, as LABEL:COLUMN"
    )

    parser.add_argument(
        "--output",
        type=str,
        default="outputs/reconciled.csv",
        help="Path of the reconciled forecasts CSV"
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level"
    )

    return parser.parse_args()


def build_hierarchy(
    config: Dict[str, Any],
    hierarchy_path: Optional[str],
    levels: Optional[List[str]]
) -> Optional[HierarchyDescriptor]:
    """Build the cross-sectional hierarchy from a labels CSV or the configuration."""
    threshold = config["hierarchy"]["sparse_threshold"]
    if hierarchy_path:
        frame = pd.read_csv(hierarchy_path)
        levels = levels or [col for col in frame.columns if col != "id"]
        return HierarchyDescriptor.from_levels(frame, levels, sparse_threshold=threshold)
    matrix = config["hierarchy"].get("aggregation_matrix")
    if matrix is None:
        return None
    return HierarchyDescriptor.build(matrix, sparse_threshold=threshold)


def parse_fixed(entries: Optional[List[str]], forecasts: pd.DataFrame) -> List[Tuple[int, int]]:
    """Translate ``LABEL:COLUMN`` entries to (row, column) positions."""
    pairs = []
    for entry in entries or []:
        label, _, column = entry.rpartition(":")
        if label not in forecasts.index or column not in forecasts.columns:
            raise ValueError(f"Fixed entry '{entry}' does not match a forecast label and column")
        pairs.append((forecasts.index.get_loc(label), forecasts.columns.get_loc(column)))
    return pairs


def main() -> None:
    """Main reconciliation function."""
    args = parse_arguments()
    try:
        config = load_config(args.config)
        configure_logging(config, level=args.log_level)
        logger = logging.getLogger(__name__)
        logger.info("Starting reconciliation")

        hierarchy = build_hierarchy(config, args.hierarchy, args.levels)
        temporal = None
        if config.get("temporal"):
            temporal = TemporalHierarchyDescriptor.build(
                config["temporal"]["m"],
                h=config["temporal"]["h"],
                orders=config["temporal"]["orders"]
            )

        forecasts = pd.read_csv(args.forecasts, index_col=0)
        residuals = pd.read_csv(args.residuals, index_col=0) if args.residuals else None
        if hierarchy is not None and hierarchy.labels is not None:
            forecasts = forecasts.loc[hierarchy.labels]
            if residuals is not None:
                residuals = residuals.loc[hierarchy.labels]
        if hierarchy is None:
            # temporal-only: a single series in one row
            forecasts = forecasts.iloc[0]
            residuals = residuals.iloc[0] if residuals is not None else None

        reconciler = CrossTemporalReconciler(
            hierarchy=hierarchy,
            temporal=temporal,
            config=ReconciliationConfig.from_dict(config)
        )
        fixed = parse_fixed(args.fixed, forecasts) if isinstance(forecasts, pd.DataFrame) else None
        result = reconciler.reconcile_with_diagnostics(forecasts, residuals, fixed)

        output_path = Path(args.output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        result.values.to_csv(output_path)
        logger.info(f"Reconciled forecasts saved to: {output_path}")

        diagnostics = {
            "dimension": result.dimension.value,
            "coherence_residual": result.coherence_residual,
            "converged": result.converged,
            "covariance": {
                "requested": result.covariance.requested.value,
                "used": result.covariance.strategy.value,
                "fallback_reason": result.covariance.fallback_reason,
                "shrinkage": result.covariance.shrinkage,
            },
            "metrics": compute_coherence_metrics(result.values, hierarchy, temporal),
        }
        if result.composition is not None:
            diagnostics["composition"] = {
                "strategy": result.composition.strategy.value,
                "converged": result.composition.converged,
                "iterations": result.composition.iterations,
                "coherence_residual": result.composition.coherence_residual,
            }
        if result.solver is not None:
            diagnostics["solver"] = {
                key: (value.value if hasattr(value, "value") else value)
                for key, value in asdict(result.solver).items()
            }

        diagnostics_path = output_path.with_suffix(".json")
        with open(diagnostics_path, 'w') as f:
            json.dump(diagnostics, f, indent=2, default=str)
        logger.info(f"Diagnostics saved to: {diagnostics_path}")
        reconciler.perf_logger.log_performance_summary()

    except Exception as e:
        logger = logging.getLogger(__name__)
        logger.error(f"Reconciliation failed: {e}")
        if args.log_level == "DEBUG":
            logger.exception("Full traceback:")
        sys.exit(1)


if __name__ == "__main__":
    main()
