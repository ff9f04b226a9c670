"""
Covariance estimation strategies for GLS reconciliation.

Each strategy turns in-sample residuals (in the same layout as the forecasts)
into a symmetric positive-definite weighting matrix ``W``. Estimates that are
singular, or based on too few complete observations, fall back along the chain
``requested -> variance -> structural`` and record the fallback.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Type, Union

import numpy as np
from scipy import linalg, sparse
from sklearn.covariance import EmpiricalCovariance

from ..exceptions import DimensionMismatchError
from ..utils.type_validation import validate_numeric_range
from .constraints import ConstraintSet, Dimension

logger = logging.getLogger(__name__)

Matrix = Union[np.ndarray, sparse.csr_matrix]

# Upper bound on the absolute lag-1 correlation used by the AR(1) weighting
MAX_AUTOCORRELATION = 0.99


class CovarianceStrategy(Enum):
    """Available weighting strategies."""

    IDENTITY = "identity"
    STRUCTURAL = "structural"
    VARIANCE = "variance"
    POOLED_VARIANCE = "pooled_variance"
    SAMPLE = "sample"
    SHRINKAGE = "shrinkage"
    AUTOCORRELATION = "autocorrelation"


@dataclass(frozen=True)
class CovarianceEstimate:
    """
    Weighting matrix and how it was obtained.

    Attributes:
        matrix: Symmetric positive-definite ``W`` (dense, or sparse diagonal).
        strategy: Strategy that produced ``matrix``.
        requested: Strategy originally requested.
        fallback_reason: Why the requested strategy was abandoned, if it was.
        shrinkage: Shrinkage intensity, for the shrinkage strategy.
        regularization: Ridge added to the diagonal.
        n_observations: Residual observations used.
    """

    matrix: Matrix
    strategy: CovarianceStrategy
    requested: CovarianceStrategy
    fallback_reason: Optional[str] = None
    shrinkage: Optional[float] = None
    regularization: float = 0.0
    n_observations: int = 0

    @property
    def fallback_used(self) -> bool:
        return self.strategy is not self.requested

    @property
    def is_diagonal(self) -> bool:
        if sparse.issparse(self.matrix):
            return self.matrix.nnz == np.count_nonzero(self.matrix.diagonal())
        return np.count_nonzero(self.matrix - np.diag(np.diag(self.matrix))) == 0


class EstimationFailure(Exception):
    """Raised by an estimator whose raw estimate cannot be used."""


class CovarianceEstimator(ABC):
    """Base class of the weighting strategies."""

    strategy: CovarianceStrategy
    requires_residuals: bool = True

    def __init__(self) -> None:
        self.logger = logging.getLogger(__name__)

    @abstractmethod
    def _estimate(self, constraints: ConstraintSet, residuals: Optional[np.ndarray]) -> Matrix:
        """Return the raw weighting matrix for stacked residuals."""

    def estimate(
        self,
        constraints: ConstraintSet,
        residuals: Optional[np.ndarray] = None,
        regularization: float = 0.0
    ) -> CovarianceEstimate:
        """
        Estimate ``W`` without any fallback.

        Args:
            constraints: Constraint set defining the row layout.
            residuals: Residuals already in stacked form ``(n_rows, T)``.
            regularization: Ridge added to the diagonal of full estimates.

        Raises:
            EstimationFailure: If the raw estimate is not usable.
        """
        matrix = self._estimate(constraints, residuals)
        if regularization > 0:
            if sparse.issparse(matrix):
                matrix = (matrix + regularization * sparse.identity(matrix.shape[0], format="csr")).tocsr()
            else:
                matrix = matrix + regularization * np.eye(matrix.shape[0])
        return CovarianceEstimate(
            matrix=matrix,
            strategy=self.strategy,
            requested=self.strategy,
            regularization=regularization,
            n_observations=0 if residuals is None else residuals.shape[1]
        )


def _diagonal(values: np.ndarray, constraints: ConstraintSet) -> Matrix:
    if constraints.is_sparse:
        return sparse.diags(values, format="csr")
    return np.diag(values)


def _complete_columns(residuals: np.ndarray) -> np.ndarray:
    """Drop observations with any missing row."""
    return residuals[:, ~np.isnan(residuals).any(axis=0)]


def _check_variances(variances: np.ndarray) -> np.ndarray:
    bad = np.flatnonzero(~np.isfinite(variances) | (variances <= 0))
    if bad.size:
        raise EstimationFailure(f"rows {bad[:10].tolist()} have zero or undefined residual variance")
    return variances


def _check_positive_definite(matrix: np.ndarray) -> np.ndarray:
    try:
        linalg.cholesky(matrix, lower=True)
    except linalg.LinAlgError as e:
        raise EstimationFailure(f"estimate is not positive definite ({e})") from e
    return matrix


class IdentityEstimator(CovarianceEstimator):
    """Ordinary least squares: ``W = I``."""

    strategy = CovarianceStrategy.IDENTITY
    requires_residuals = False

    def _estimate(self, constraints, residuals):
        return _diagonal(np.ones(constraints.n_rows), constraints)


class StructuralEstimator(CovarianceEstimator):
    """Diagonal of the number of bottom values aggregated by each row."""

    strategy = CovarianceStrategy.STRUCTURAL
    requires_residuals = False

    def _estimate(self, constraints, residuals):
        return _diagonal(np.asarray(constraints.structural_weights, dtype=float), constraints)


class VarianceEstimator(CovarianceEstimator):
    """Diagonal of per-row mean squared residuals (missing values ignored)."""

    strategy = CovarianceStrategy.VARIANCE

    def _estimate(self, constraints, residuals):
        counts = np.sum(~np.isnan(residuals), axis=1)
        if np.any(counts == 0):
            rows = np.flatnonzero(counts == 0)
            raise EstimationFailure(f"rows {rows[:10].tolist()} have no residual observations")
        variances = np.nanmean(np.square(residuals), axis=1)
        return _diagonal(_check_variances(variances), constraints)


class PooledVarianceEstimator(CovarianceEstimator):
    """One variance per series and temporal order, shared by the whole order block."""

    strategy = CovarianceStrategy.POOLED_VARIANCE

    def _estimate(self, constraints, residuals):
        variances = np.empty(constraints.n_rows)
        squared = np.square(residuals)
        for group in constraints.groups:
            block = squared[group]
            if np.all(np.isnan(block)):
                raise EstimationFailure(f"order block starting at row {int(group[0])} has no residuals")
            variances[group] = np.nanmean(block)
        return _diagonal(_check_variances(variances), constraints)


class SampleEstimator(CovarianceEstimator):
    """Full empirical covariance of the residual rows."""

    strategy = CovarianceStrategy.SAMPLE

    def _sample(self, constraints: ConstraintSet, residuals: np.ndarray) -> np.ndarray:
        complete = _complete_columns(residuals)
        if complete.shape[1] < constraints.n_rows:
            raise EstimationFailure(
                f"{complete.shape[1]} complete observations for {constraints.n_rows} dimensions"
            )
        return EmpiricalCovariance(assume_centered=True).fit(complete.T).covariance_

    def _estimate(self, constraints, residuals):
        return _check_positive_definite(self._sample(constraints, residuals))


class ShrinkageEstimator(SampleEstimator):
    """
    Schäfer-Strimmer shrinkage of the sample covariance towards its diagonal.

    ``W = lambda * diag(S) + (1 - lambda) * S`` with the intensity estimated
    analytically from the standardised residuals and clipped to ``[0, 1]``.
    With few observations relative to the dimension the intensity tends to 1.
    """

    strategy = CovarianceStrategy.SHRINKAGE

    def __init__(self) -> None:
        super().__init__()
        self.last_intensity: Optional[float] = None

    @staticmethod
    def intensity(residuals: np.ndarray) -> float:
        """Shrinkage intensity for complete residuals of shape ``(n_rows, T)``."""
        x = residuals.T
        T = x.shape[0]
        if T < 2:
            return 1.0
        covm = x.T @ x / T
        xs = x / np.sqrt(np.diag(covm))
        corm = xs.T @ xs / T
        np.fill_diagonal(corm, 0)
        d = np.sum(np.square(corm))
        if d == 0:
            return 1.0
        xs2 = np.square(xs)
        v = (xs2.T @ xs2 - np.square(xs.T @ xs) / T) / (T * (T - 1))
        np.fill_diagonal(v, 0)
        return float(np.clip(np.sum(v) / d, 0.0, 1.0))

    def _estimate(self, constraints, residuals):
        complete = _complete_columns(residuals)
        if complete.shape[1] < 2:
            raise EstimationFailure(f"{complete.shape[1]} complete observations, at least 2 are needed")
        sample = EmpiricalCovariance(assume_centered=True).fit(complete.T).covariance_
        _check_variances(np.diag(sample))

        lamb = self.intensity(complete)
        self.last_intensity = lamb
        self.logger.debug(f"Shrinkage intensity {lamb:.4f} from {complete.shape[1]} observations")
        return _check_positive_definite(lamb * np.diag(np.diag(sample)) + (1 - lamb) * sample)

    def estimate(self, constraints, residuals=None, regularization=0.0):
        estimate = super().estimate(constraints, residuals, regularization)
        return CovarianceEstimate(
            matrix=estimate.matrix,
            strategy=estimate.strategy,
            requested=estimate.requested,
            shrinkage=self.last_intensity,
            regularization=estimate.regularization,
            n_observations=estimate.n_observations
        )


class AutocorrelationEstimator(CovarianceEstimator):
    """
    Block-diagonal AR(1) weighting over the ordered values of each temporal order.

    For every series and order the block is ``D R D``, where ``D`` holds the
    per-row residual standard deviations and ``R[i, j] = rho ** |i - j|`` with
    ``rho`` the lag-1 correlation between consecutive values of the block.
    No covariance is estimated across series or orders.
    """

    strategy = CovarianceStrategy.AUTOCORRELATION

    @staticmethod
    def lag_one_correlation(block: np.ndarray) -> float:
        """Lag-1 correlation between consecutive rows of a ``(L, T)`` block."""
        if block.shape[0] < 2:
            return 0.0
        lead, lag = block[:-1].ravel(), block[1:].ravel()
        mask = ~(np.isnan(lead) | np.isnan(lag))
        denom = np.sqrt(np.sum(lead[mask] ** 2) * np.sum(lag[mask] ** 2))
        if denom == 0:
            return 0.0
        rho = np.sum(lead[mask] * lag[mask]) / denom
        return float(np.clip(rho, -MAX_AUTOCORRELATION, MAX_AUTOCORRELATION))

    def _estimate(self, constraints, residuals):
        if constraints.dimension is Dimension.CROSS_SECTIONAL:
            raise ValueError("The autocorrelation strategy requires a temporal hierarchy")

        std = np.sqrt(_check_variances(np.nanmean(np.square(residuals), axis=1)))
        blocks = []
        for group in constraints.groups:
            rho = self.lag_one_correlation(residuals[group])
            lags = np.arange(len(group))
            correlation = rho ** np.abs(lags[:, None] - lags[None, :])
            blocks.append(std[group][:, None] * correlation * std[group][None, :])

        # groups partition the rows in order, so the block diagonal is aligned
        if constraints.is_sparse:
            return sparse.block_diag(blocks, format="csr")
        return linalg.block_diag(*blocks)


ESTIMATORS: Dict[CovarianceStrategy, Type[CovarianceEstimator]] = {
    CovarianceStrategy.IDENTITY: IdentityEstimator,
    CovarianceStrategy.STRUCTURAL: StructuralEstimator,
    CovarianceStrategy.VARIANCE: VarianceEstimator,
    CovarianceStrategy.POOLED_VARIANCE: PooledVarianceEstimator,
    CovarianceStrategy.SAMPLE: SampleEstimator,
    CovarianceStrategy.SHRINKAGE: ShrinkageEstimator,
    CovarianceStrategy.AUTOCORRELATION: AutocorrelationEstimator,
}

FALLBACK_CHAIN = (CovarianceStrategy.VARIANCE, CovarianceStrategy.STRUCTURAL)


def get_estimator(strategy: Union[str, CovarianceStrategy]) -> CovarianceEstimator:
    """Instantiate the estimator of a strategy given by enum or name."""
    return ESTIMATORS[CovarianceStrategy(strategy)]()


def estimate_covariance(
    constraints: ConstraintSet,
    strategy: Union[str, CovarianceStrategy] = CovarianceStrategy.STRUCTURAL,
    residuals=None,
    regularization: float = 0.0
) -> CovarianceEstimate:
    """
    Estimate the weighting matrix, falling back when the estimate is unusable.

    Args:
        constraints: Constraint set defining the row layout.
        strategy: Requested strategy.
        residuals: In-sample residuals in the forecast layout (or ``None`` for
            strategies that do not use them).
        regularization: Ridge added to the diagonal, in ``[0, 1]``.

    Returns:
        CovarianceEstimate, tagged with any fallback used.

    Raises:
        ValueError: If residuals are required but missing.
        DimensionMismatchError: If the residual layout disagrees with the hierarchy.
    """
    strategy = CovarianceStrategy(strategy)
    validate_numeric_range(regularization, "regularization", min_val=0.0, max_val=1.0)
    estimator = get_estimator(strategy)

    stacked = None
    if residuals is not None:
        try:
            stacked = constraints.stack(residuals, "residuals", allow_nan=True)
        except DimensionMismatchError as e:
            raise DimensionMismatchError(
                f"Residuals do not match the {constraints.dimension.value} layout "
                f"with {constraints.n_rows} stacked rows: {e}"
            ) from e
    elif estimator.requires_residuals:
        raise ValueError(f"Covariance strategy '{strategy.value}' requires in-sample residuals")

    chain = [strategy] + [s for s in FALLBACK_CHAIN if s is not strategy and estimator.requires_residuals]
    reasons = []
    for candidate in chain:
        try:
            estimate = get_estimator(candidate).estimate(constraints, stacked, regularization)
        except EstimationFailure as e:
            reasons.append(f"{candidate.value}: {e}")
            logger.warning(f"Covariance strategy '{candidate.value}' failed ({e}); falling back")
            continue

        if candidate is strategy:
            return estimate
        reason = "; ".join(reasons)
        logger.warning(f"Using '{candidate.value}' weights instead of '{strategy.value}': {reason}")
        return CovarianceEstimate(
            matrix=estimate.matrix,
            strategy=candidate,
            requested=strategy,
            fallback_reason=reason,
            regularization=regularization,
            n_observations=estimate.n_observations
        )

    # structural weights never fail, so the chain always returns
    raise AssertionError("Covariance fallback chain exhausted")
