"""
Weighted k-Nearest Neighbours Position Solver.

Positions a device at the weighted average of the positions of its
nearest located fingerprints:

    x = sum(w_i * p_i) / sum(w_i),    w_i = 1 / (d_i + epsilon)

where d_i is the signal distance of fingerprint i to the query, as
returned by FingerprintNearestFinder.find_nearest. epsilon keeps the
weight finite when a fingerprint matches the query exactly.

Usage:
    nearest = FingerprintNearestFinder(catalog).find_nearest(query, k=3)
    solver = WeightedKNearestNeighboursSolver.from_nearest(2, nearest)
    position = solver.solve()
"""

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from radiopos_core.proto.fingerprint import LocatedFingerprint
from radiopos_core.localization.errors import LockedError, NotReadyError
from radiopos_core.localization.robust_position_estimator import EstimatorState
from radiopos_core.metrics import get_metrics

logger = logging.getLogger(__name__)

DEFAULT_EPSILON = 1e-7


class WeightedKNearestNeighboursSolver:
    """
    Weighted average of nearest fingerprint positions.

    Mutators raise LockedError while solve() runs. The listener, if any,
    gets on_solve_start(solver) and on_solve_end(solver).
    """

    def __init__(
        self,
        num_dimensions: int,
        fingerprints: Optional[Sequence[LocatedFingerprint]] = None,
        distances: Optional[Sequence[float]] = None,
        epsilon: float = DEFAULT_EPSILON,
        listener=None,
    ):
        """
        Initialize solver.

        Args:
            num_dimensions: 2 or 3
            fingerprints: Nearest located fingerprints
            distances: Signal distance of each fingerprint to the query
            epsilon: Added to distances before inverting them (> 0)
            listener: Object with on_solve_start / on_solve_end callbacks

        Raises:
            ValueError: on invalid dimensions, inputs or epsilon
        """
        if num_dimensions not in (2, 3):
            raise ValueError(f"num_dimensions must be 2 or 3: {num_dimensions}")
        self.num_dimensions = num_dimensions
        self.metrics = get_metrics()

        self._state = EstimatorState.NOT_READY
        self._fingerprints: Optional[List[LocatedFingerprint]] = None
        self._distances: Optional[np.ndarray] = None
        self._epsilon = DEFAULT_EPSILON
        self._listener = listener
        self._estimated_position: Optional[np.ndarray] = None

        self.set_epsilon(epsilon)
        if fingerprints is not None or distances is not None:
            self.set_fingerprints_and_distances(fingerprints, distances)

    @classmethod
    def from_nearest(
        cls,
        num_dimensions: int,
        nearest: Sequence[Tuple[LocatedFingerprint, float]],
        **kwargs,
    ) -> 'WeightedKNearestNeighboursSolver':
        """Build a solver from FingerprintNearestFinder.find_nearest output."""
        fingerprints = [entry for entry, _ in nearest]
        distances = [distance for _, distance in nearest]
        return cls(num_dimensions, fingerprints, distances, **kwargs)

    @property
    def state(self) -> EstimatorState:
        return self._state

    @property
    def is_locked(self) -> bool:
        return self._state == EstimatorState.ESTIMATING

    @property
    def is_ready(self) -> bool:
        return self._fingerprints is not None

    def _check_unlocked(self):
        if self.is_locked:
            raise LockedError()

    def _update_state(self):
        if self._state != EstimatorState.ESTIMATING:
            self._state = EstimatorState.READY if self.is_ready else EstimatorState.NOT_READY

    @property
    def fingerprints(self) -> Optional[List[LocatedFingerprint]]:
        return self._fingerprints

    @property
    def distances(self) -> Optional[np.ndarray]:
        return self._distances

    def set_fingerprints_and_distances(
        self,
        fingerprints: Sequence[LocatedFingerprint],
        distances: Sequence[float],
    ):
        """
        Set nearest fingerprints and their signal distances.

        Raises:
            LockedError: while solving
            ValueError: if either is None or empty, lengths differ, a
                distance is negative or a position has another dimension
        """
        self._check_unlocked()
        if fingerprints is None or distances is None:
            raise ValueError("Fingerprints and distances are required")
        if len(fingerprints) == 0:
            raise ValueError("At least one fingerprint is required")
        if len(fingerprints) != len(distances):
            raise ValueError(
                f"Got {len(fingerprints)} fingerprints but {len(distances)} distances"
            )

        distances = np.asarray(distances, dtype=float)
        if np.any(distances < 0):
            raise ValueError("Distances cannot be negative")
        for entry in fingerprints:
            if len(entry.position) != self.num_dimensions:
                raise ValueError(
                    f"Fingerprint position {entry.position} is not {self.num_dimensions}D"
                )

        self._fingerprints = list(fingerprints)
        self._distances = distances
        self._update_state()

    @property
    def epsilon(self) -> float:
        return self._epsilon

    def set_epsilon(self, epsilon: float):
        self._check_unlocked()
        if epsilon <= 0:
            raise ValueError(f"epsilon must be positive: {epsilon}")
        self._epsilon = float(epsilon)

    @property
    def listener(self):
        return self._listener

    def set_listener(self, listener):
        self._check_unlocked()
        self._listener = listener

    @property
    def estimated_position(self) -> Optional[np.ndarray]:
        return self._estimated_position

    def solve(self) -> np.ndarray:
        """
        Compute the weighted average position.

        Raises:
            LockedError: if already solving
            NotReadyError: if fingerprints and distances are not set
        """
        self._check_unlocked()
        if not self.is_ready:
            raise NotReadyError()

        self._state = EstimatorState.ESTIMATING
        try:
            self._notify('on_solve_start')

            positions = np.array([entry.position for entry in self._fingerprints])
            weights = 1.0 / (self._distances + self._epsilon)
            position = weights @ positions / np.sum(weights)

            self._estimated_position = position
            self.metrics.increment('weighted_knn_solves')
            logger.debug(
                "Weighted k-NN position from %d fingerprints: %s",
                len(self._fingerprints), position,
            )

            self._notify('on_solve_end')
            return position
        finally:
            self._state = EstimatorState.NOT_READY
            self._update_state()

    def _notify(self, callback: str):
        if self._listener is None:
            return
        handler = getattr(self._listener, callback, None)
        if handler is not None:
            handler(self)
