"""
Robust Position Estimator.

Wraps measurement building and the sample consensus engine behind an
explicit state machine:

    NOT_READY --(sources + fingerprint [+ quality scores])--> READY
    READY --estimate()--> ESTIMATING --(return or raise)--> READY

While ESTIMATING every mutator raises LockedError, including mutators
called from listener callbacks. The lock is always released when
estimate() returns or raises.

Usage:
    estimator = create_estimator(
        2, RobustMethod.RANSAC,
        sources=sources, fingerprint=fingerprint,
        config=RobustEstimatorConfig(threshold=0.5, seed=7),
    )
    position = estimator.estimate()
    print(position, estimator.inliers_data.num_inliers)
"""

import dataclasses
import logging
from enum import Enum
from typing import List, Optional, Protocol, Sequence

import numpy as np

from radiopos_core.proto.fingerprint import Fingerprint
from radiopos_core.proto.measurement import EstimationResult, InliersData, Measurement
from radiopos_core.proto.radio_source import LocatedRadioSource
from radiopos_core.localization.consensus_engine import (
    DEFAULT_METHOD,
    RobustEstimatorConfig,
    SampleConsensusEngine,
)
from radiopos_core.localization.consensus_policies import RobustMethod
from radiopos_core.localization.errors import (
    LockedError,
    NotReadyError,
    PositioningError,
)
from radiopos_core.localization.lateration_solver import (
    LaterationSolver,
    unpack_measurements,
)
from radiopos_core.localization.measurement_builder import build_measurements
from radiopos_core.metrics import get_metrics

logger = logging.getLogger(__name__)


class EstimatorState(Enum):
    """Lifecycle state of an estimator."""

    NOT_READY = "not_ready"
    READY = "ready"
    ESTIMATING = "estimating"


class PositionEstimatorListener(Protocol):
    """Callbacks invoked synchronously during estimate()."""

    def on_estimate_start(self, estimator) -> None:
        ...

    def on_estimate_end(self, estimator) -> None:
        ...

    def on_estimate_next_iteration(self, estimator, iteration: int) -> None:
        ...

    def on_estimate_progress_change(self, estimator, progress: float) -> None:
        ...


def _validate_dimensions(num_dimensions: int):
    if num_dimensions not in (2, 3):
        raise ValueError(f"num_dimensions must be 2 or 3: {num_dimensions}")


class RobustPositionEstimator:
    """
    Robust 2D/3D position estimator over located radio sources.

    Readings of the fingerprint are turned into measurements against the
    sources they refer to, then a robust method rejects outlying
    measurements before the final solve.
    """

    def __init__(
        self,
        num_dimensions: int,
        method: RobustMethod = DEFAULT_METHOD,
        config: Optional[RobustEstimatorConfig] = None,
        sources: Optional[Sequence[LocatedRadioSource]] = None,
        fingerprint: Optional[Fingerprint] = None,
        listener: Optional[PositionEstimatorListener] = None,
        source_quality_scores: Optional[Sequence[float]] = None,
        reading_quality_scores: Optional[Sequence[float]] = None,
    ):
        """
        Initialize estimator.

        Args:
            num_dimensions: 2 or 3
            method: Robust method
            config: Estimator configuration (uses defaults if None)
            sources: Located radio sources
            fingerprint: Readings taken at the position to estimate
            listener: Estimation callbacks
            source_quality_scores: Score per source (PROSAC, PROMedS)
            reading_quality_scores: Score per fingerprint reading (PROSAC, PROMedS)

        Raises:
            ValueError: on invalid dimensions or inputs
        """
        _validate_dimensions(num_dimensions)
        self.num_dimensions = num_dimensions
        self.metrics = get_metrics()
        self.solver = LaterationSolver()

        self._state = EstimatorState.NOT_READY
        self._method = method
        self._config = config or RobustEstimatorConfig()
        self._config.subset_size_for(num_dimensions)
        self._rng = np.random.default_rng(self._config.seed)

        self._sources: Optional[List[LocatedRadioSource]] = None
        self._fingerprint: Optional[Fingerprint] = None
        self._listener = listener
        self._source_quality_scores: Optional[np.ndarray] = None
        self._reading_quality_scores: Optional[np.ndarray] = None

        self._measurements: Optional[List[Measurement]] = None
        self._result: Optional[EstimationResult] = None

        if sources is not None:
            self.set_sources(sources)
        if fingerprint is not None:
            self.set_fingerprint(fingerprint)
        if source_quality_scores is not None:
            self.set_source_quality_scores(source_quality_scores)
        if reading_quality_scores is not None:
            self.set_reading_quality_scores(reading_quality_scores)
        self._update_state()

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> EstimatorState:
        return self._state

    @property
    def is_locked(self) -> bool:
        return self._state == EstimatorState.ESTIMATING

    @property
    def min_required_sources(self) -> int:
        return self.num_dimensions + 1

    @property
    def is_ready(self) -> bool:
        """True if estimate() has everything it needs."""
        min_required = self.min_required_sources
        if self._sources is None or len(self._sources) < min_required:
            return False
        if self._fingerprint is None or len(self._fingerprint) < min_required:
            return False

        if self._method.uses_quality_scores:
            if self._source_quality_scores is None or self._reading_quality_scores is None:
                return False
            if len(self._source_quality_scores) != len(self._sources):
                return False
            if len(self._reading_quality_scores) != len(self._fingerprint):
                return False
        return True

    def _update_state(self):
        if self._state != EstimatorState.ESTIMATING:
            self._state = EstimatorState.READY if self.is_ready else EstimatorState.NOT_READY

    def _check_unlocked(self):
        if self.is_locked:
            raise LockedError()

    # =========================================================================
    # Mutators
    # =========================================================================

    @property
    def method(self) -> RobustMethod:
        return self._method

    def set_method(self, method: RobustMethod):
        self._check_unlocked()
        if not isinstance(method, RobustMethod):
            raise ValueError(f"Unknown robust method: {method}")
        self._method = method
        self._update_state()

    @property
    def config(self) -> RobustEstimatorConfig:
        return self._config

    def set_config(self, config: RobustEstimatorConfig):
        """Replace configuration; the random generator is reseeded."""
        self._check_unlocked()
        if config is None:
            raise ValueError("Config cannot be None")
        config.subset_size_for(self.num_dimensions)
        self._config = config
        self._rng = np.random.default_rng(config.seed)

    @property
    def sources(self) -> Optional[List[LocatedRadioSource]]:
        return self._sources

    def set_sources(self, sources: Sequence[LocatedRadioSource]):
        """
        Set located radio sources.

        Raises:
            LockedError: while estimating
            ValueError: if fewer than dim + 1 sources or of another dimension
        """
        self._check_unlocked()
        if sources is None or len(sources) < self.min_required_sources:
            raise ValueError(
                f"At least {self.min_required_sources} sources are required"
            )
        for source in sources:
            if source.num_dimensions != self.num_dimensions:
                raise ValueError(
                    f"Source {source.source_id} is {source.num_dimensions}D, "
                    f"estimator is {self.num_dimensions}D"
                )
        self._sources = list(sources)
        self._update_state()

    @property
    def fingerprint(self) -> Optional[Fingerprint]:
        return self._fingerprint

    def set_fingerprint(self, fingerprint: Fingerprint):
        self._check_unlocked()
        if fingerprint is None:
            raise ValueError("Fingerprint cannot be None")
        if len(fingerprint) < self.min_required_sources:
            raise ValueError(
                f"Fingerprint needs at least {self.min_required_sources} readings"
            )
        self._fingerprint = fingerprint
        self._update_state()

    @property
    def listener(self) -> Optional[PositionEstimatorListener]:
        return self._listener

    def set_listener(self, listener: Optional[PositionEstimatorListener]):
        self._check_unlocked()
        self._listener = listener

    @property
    def source_quality_scores(self) -> Optional[np.ndarray]:
        return self._source_quality_scores

    def set_source_quality_scores(self, scores: Sequence[float]):
        """
        Set quality score per source, same order as the sources.

        Raises:
            LockedError: while estimating
            ValueError: if too short or not matching the sources
        """
        self._check_unlocked()
        scores = self._validate_scores(scores)
        if self._sources is not None and len(scores) != len(self._sources):
            raise ValueError(
                f"Expected {len(self._sources)} source quality scores, got {len(scores)}"
            )
        self._source_quality_scores = scores
        self._update_state()

    @property
    def reading_quality_scores(self) -> Optional[np.ndarray]:
        return self._reading_quality_scores

    def set_reading_quality_scores(self, scores: Sequence[float]):
        """Set quality score per fingerprint reading, in reading order."""
        self._check_unlocked()
        scores = self._validate_scores(scores)
        if self._fingerprint is not None and len(scores) != len(self._fingerprint):
            raise ValueError(
                f"Expected {len(self._fingerprint)} reading quality scores, got {len(scores)}"
            )
        self._reading_quality_scores = scores
        self._update_state()

    def set_quality_scores(
        self,
        source_quality_scores: Sequence[float],
        reading_quality_scores: Sequence[float],
    ):
        self.set_source_quality_scores(source_quality_scores)
        self.set_reading_quality_scores(reading_quality_scores)

    def _validate_scores(self, scores: Sequence[float]) -> np.ndarray:
        if scores is None or len(scores) < self.min_required_sources:
            raise ValueError(
                f"At least {self.min_required_sources} quality scores are required"
            )
        return np.asarray(scores, dtype=float)

    def set_initial_position(self, position: Optional[Sequence[float]]):
        """Seed for the nonlinear solver when the linear solver is disabled."""
        self._check_unlocked()
        if position is not None:
            position = tuple(float(c) for c in position)
            if len(position) != self.num_dimensions:
                raise ValueError(
                    f"Initial position must have {self.num_dimensions} coordinates"
                )
        self._config = dataclasses.replace(self._config, initial_position=position)

    # =========================================================================
    # Results
    # =========================================================================

    @property
    def result(self) -> Optional[EstimationResult]:
        return self._result

    @property
    def covariance(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.covariance

    @property
    def inliers_data(self) -> Optional[InliersData]:
        return None if self._result is None else self._result.inliers_data

    @property
    def positions(self) -> Optional[np.ndarray]:
        """Reference positions of the measurements of the last estimate()."""
        if not self._measurements:
            return None
        return unpack_measurements(self._measurements)[0]

    @property
    def distances(self) -> Optional[np.ndarray]:
        if not self._measurements:
            return None
        return unpack_measurements(self._measurements)[1]

    @property
    def distance_std_devs(self) -> Optional[np.ndarray]:
        if not self._measurements:
            return None
        return unpack_measurements(self._measurements)[2]

    # =========================================================================
    # Estimation
    # =========================================================================

    def estimate(self) -> np.ndarray:
        """
        Estimate position.

        Returns:
            Estimated position (numpy array of num_dimensions coordinates)

        Raises:
            LockedError: if already estimating
            NotReadyError: if inputs are missing or too few measurements result
            RobustEstimatorError: if no consensus model is found
        """
        self._check_unlocked()
        if not self.is_ready:
            raise NotReadyError()

        config = self._config
        measurements = build_measurements(
            self._sources,
            self._fingerprint,
            source_quality_scores=self._source_quality_scores,
            reading_quality_scores=self._reading_quality_scores,
            use_position_covariance=config.radio_source_position_covariance_used,
            fallback_distance_std=config.fallback_distance_std,
        )
        if len(measurements) < config.subset_size_for(self.num_dimensions):
            raise NotReadyError(f"Only {len(measurements)} usable measurements")

        self._state = EstimatorState.ESTIMATING
        self._measurements = measurements
        self.metrics.increment('estimate_attempts')
        try:
            engine = SampleConsensusEngine(
                self._method,
                config,
                listener=self._listener,
                rng=self._rng,
                owner=self,
                solver=self.solver,
            )
            self._result = engine.estimate(self._measurements)
            self.metrics.increment('estimate_success')
            return self._result.position

        except PositioningError as e:
            self.metrics.increment('estimate_failures')
            logger.debug("Estimation failed: %s", e)
            raise
        finally:
            self._state = EstimatorState.NOT_READY
            self._update_state()


def create_estimator(
    num_dimensions: int,
    method: RobustMethod = DEFAULT_METHOD,
    **kwargs,
) -> RobustPositionEstimator:
    """
    Create a robust position estimator.

    Args:
        num_dimensions: 2 or 3
        method: Robust method (PROMedS by default)
        **kwargs: Any RobustPositionEstimator keyword argument
    """
    return RobustPositionEstimator(num_dimensions, method=method, **kwargs)
