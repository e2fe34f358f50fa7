"""
Measurement and Estimation Result Schemas.

Measurements are the uniform (reference position, distance, uncertainty,
quality) tuples consumed by the lateration solver and the sample
consensus engine. Results carry the estimated position, its optional
covariance and the consensus inlier bookkeeping.
"""

from dataclasses import dataclass
from typing import Optional, Tuple
import numpy as np


@dataclass(frozen=True)
class Measurement:
    """
    Distance measurement to a located reference.

    Attributes:
        position: Reference position (x, y) or (x, y, z) in meters
        distance_m: Measured or RSSI-derived distance (m)
        distance_std_m: Distance standard deviation (m)
        quality_score: Confidence weight, higher is better (PROSAC ordering)
    """

    position: Tuple[float, ...]
    distance_m: float
    distance_std_m: float
    quality_score: float = 1.0

    def __post_init__(self):
        """Validate measurement."""
        if self.distance_m < 0:
            raise ValueError(f"Distance cannot be negative: {self.distance_m}")

        if self.distance_std_m <= 0:
            raise ValueError(f"Distance std must be positive: {self.distance_std_m}")

    @property
    def num_dimensions(self) -> int:
        return len(self.position)


@dataclass
class InliersData:
    """
    Inlier bookkeeping of the best consensus model.

    Attributes:
        inlier_mask: Boolean array, one entry per measurement
        best_score: Score of the best model (higher is better)
        num_iterations: Consensus iterations executed
        residuals: Residual of every measurement against the best model
    """

    inlier_mask: np.ndarray
    best_score: float
    num_iterations: int
    residuals: Optional[np.ndarray] = None

    @property
    def num_inliers(self) -> int:
        return int(np.count_nonzero(self.inlier_mask))

    @property
    def inlier_ratio(self) -> float:
        if len(self.inlier_mask) == 0:
            return 0.0
        return self.num_inliers / len(self.inlier_mask)


@dataclass
class EstimationResult:
    """
    Position estimate produced by a robust estimator.

    Attributes:
        position: Estimated position, numpy array of 2 or 3 coordinates
        covariance: Position covariance (dim x dim), if kept
        inliers_data: Consensus inlier data, if available
        method: Name of the robust method that produced the estimate
    """

    position: np.ndarray
    covariance: Optional[np.ndarray] = None
    inliers_data: Optional[InliersData] = None
    method: Optional[str] = None

    @property
    def num_dimensions(self) -> int:
        return len(self.position)

    @property
    def position_std(self) -> Optional[Tuple[float, ...]]:
        """Per-axis standard deviations from the covariance diagonal."""
        if self.covariance is None:
            return None
        return tuple(float(np.sqrt(max(v, 0.0))) for v in np.diag(self.covariance))

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'position': [float(c) for c in self.position],
            'covariance': None if self.covariance is None else self.covariance.tolist(),
            'num_inliers': None if self.inliers_data is None else self.inliers_data.num_inliers,
            'num_iterations': (
                None if self.inliers_data is None else self.inliers_data.num_iterations
            ),
            'method': self.method,
        }
