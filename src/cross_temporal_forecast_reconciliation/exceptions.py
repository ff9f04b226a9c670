"""Exception hierarchy for the reconciliation engine.

Structural and dimension problems are raised immediately at the boundary.
Numerical non-convergence is not an exception: it is reported through
diagnostics and a ``NonConvergenceWarning``.
"""


class ReconciliationError(ValueError):
    """Base exception for fatal reconciliation errors."""


class InvalidHierarchyError(ReconciliationError):
    """Raised when an aggregation or temporal structure is malformed."""


class DimensionMismatchError(ReconciliationError):
    """Raised when a forecast or residual shape disagrees with the hierarchy."""


class SingularCovarianceError(ReconciliationError):
    """Raised when a weighting matrix cannot be used even after fallback."""


class InfeasibleConstraintsError(ReconciliationError):
    """Raised when fixed values contradict the coherence relations."""


class NonConvergenceWarning(UserWarning):
    """Emitted when an iterative solver exhausts its budget."""
