"""Typed reconciliation settings with documented defaults."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

from ..utils.config import load_config
from ..utils.type_validation import validate_numeric_range, validate_positive_int
from .covariance import CovarianceStrategy


class CompositionStrategy(Enum):
    """How cross-sectional and temporal constraints are combined."""

    SIMULTANEOUS = "simultaneous"
    TEMPORAL_THEN_CROSS = "temporal_then_cross"
    CROSS_THEN_TEMPORAL = "cross_then_temporal"
    ITERATIVE = "iterative"
    BOTTOM_UP = "bottom_up"


class NonNegativityStrategy(Enum):
    """Post-processing applied to enforce non-negative forecasts."""

    NONE = "none"
    EXACT = "exact"
    HEURISTIC = "heuristic"


class Axis(Enum):
    """Single reconciliation axis of a cross-temporal problem."""

    TEMPORAL = "temporal"
    CROSS_SECTIONAL = "cross_sectional"


class ChangeNorm(Enum):
    """Norm of the change between iterates of the iterative heuristic."""

    INF = "inf"
    L1 = "l1"
    L2 = "l2"


@dataclass(frozen=True)
class SolverSettings:
    """
    Settings of the quadratic-programming solver used for exact non-negativity.

    Attributes:
        max_iterations: Iteration budget of the solver.
        tolerance: Absolute and relative convergence tolerance.
        polish: Whether to run the solver's solution-polishing pass.
    """

    max_iterations: int = 10000
    tolerance: float = 1e-6
    polish: bool = True

    def __post_init__(self) -> None:
        validate_positive_int(self.max_iterations, "max_iterations")
        validate_numeric_range(self.tolerance, "tolerance", min_val=0.0, min_inclusive=False)


@dataclass(frozen=True)
class IterativeSettings:
    """
    Settings of the iterative cross-temporal heuristic.

    Attributes:
        max_iterations: Iteration cap; reaching it is reported, not raised.
        tolerance: Stop once the change between iterates is below this value.
        norm: Norm used to measure the change.
        start: Axis reconciled first in every iteration.
    """

    max_iterations: int = 100
    tolerance: float = 1e-5
    norm: ChangeNorm = ChangeNorm.INF
    start: Axis = Axis.TEMPORAL

    def __post_init__(self) -> None:
        validate_positive_int(self.max_iterations, "max_iterations")
        validate_numeric_range(self.tolerance, "tolerance", min_val=0.0)
        object.__setattr__(self, "norm", ChangeNorm(self.norm))
        object.__setattr__(self, "start", Axis(self.start))


@dataclass(frozen=True)
class ReconciliationConfig:
    """
    Complete configuration of a reconciliation call.

    Attributes:
        covariance: Weighting strategy.
        composition: Cross-temporal composition strategy.
        nonnegative: Non-negativity post-processing.
        regularization: Ridge added to the diagonal of estimated covariances.
        max_workers: Threads for independent per-series/per-order projections
            (``None`` or 1 runs sequentially).
        solver: Exact non-negativity solver settings.
        iterative: Iterative heuristic settings.
        bottom_up_axis: Axis reconciled before summation in the bottom-up strategy.
    """

    covariance: CovarianceStrategy = CovarianceStrategy.STRUCTURAL
    composition: CompositionStrategy = CompositionStrategy.SIMULTANEOUS
    nonnegative: NonNegativityStrategy = NonNegativityStrategy.NONE
    regularization: float = 0.0
    max_workers: Optional[int] = None
    solver: SolverSettings = field(default_factory=SolverSettings)
    iterative: IterativeSettings = field(default_factory=IterativeSettings)
    bottom_up_axis: Axis = Axis.CROSS_SECTIONAL

    def __post_init__(self) -> None:
        object.__setattr__(self, "covariance", CovarianceStrategy(self.covariance))
        object.__setattr__(self, "composition", CompositionStrategy(self.composition))
        object.__setattr__(self, "nonnegative", NonNegativityStrategy(self.nonnegative))
        object.__setattr__(self, "bottom_up_axis", Axis(self.bottom_up_axis))
        validate_numeric_range(self.regularization, "regularization", min_val=0.0, max_val=1.0)
        if self.max_workers is not None:
            validate_positive_int(self.max_workers, "max_workers")

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "ReconciliationConfig":
        """
        Build a configuration from a mapping.

        Accepts either a full configuration (with a ``reconciliation`` section,
        as returned by :func:`load_config`) or the section itself.
        """
        section = config.get("reconciliation", config) or {}
        known = {
            "covariance", "composition", "nonnegative", "regularization",
            "max_workers", "bottom_up_axis"
        }
        kwargs = {key: value for key, value in section.items() if key in known}
        if section.get("solver"):
            kwargs["solver"] = SolverSettings(**section["solver"])
        if section.get("iterative"):
            kwargs["iterative"] = IterativeSettings(**section["iterative"])
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "ReconciliationConfig":
        """Load and validate a YAML configuration file."""
        return cls.from_dict(load_config(path))
