"""
Positioning error types.

Invalid configuration is reported with ValueError at the mutator or
constructor; the types below cover runtime conditions.
"""


class PositioningError(Exception):
    """Base class for positioning errors."""


class LockedError(PositioningError):
    """Raised when an estimator is mutated while an estimation is running."""

    def __init__(self, message: str = "estimator is locked while estimating"):
        super().__init__(message)


class NotReadyError(PositioningError):
    """Raised when estimate() is called without enough input data."""

    def __init__(self, message: str = "estimator is not ready"):
        super().__init__(message)


class NumericalError(PositioningError):
    """Raised when a lateration system is singular or fails to converge."""


class RobustEstimatorError(PositioningError):
    """Raised when sample consensus never finds a valid model."""


class FingerprintEstimationError(PositioningError):
    """Raised when no nearest fingerprint set yields a solvable system."""
