"""
Sample Consensus Engine.

One engine runs every robust method; the method only selects the sampling
and scoring policies (see consensus_policies).

Algorithm:
1. required_iterations starts at max_iterations
2. Until the iteration bound is reached:
   a. draw a subset of preliminary_subset_size measurements
   b. solve a preliminary position from the subset (degenerate subsets are
      counted and skipped)
   c. score the residuals of all measurements; keep the best model, an
      earlier model wins ties
   d. tighten the bound from the inlier ratio (adaptive methods)
3. Fail if no model was found or it has fewer inliers than dim + 1
4. Optionally re-solve from all inliers with the nonlinear solver

Reference: Fischler & Bolles (1981) RANSAC, Rousseeuw (1984) LMedS,
Torr & Zisserman (2000) MSAC, Chum & Matas (2005) PROSAC.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Tuple

import numpy as np

from radiopos_core.proto.measurement import EstimationResult, InliersData, Measurement
from radiopos_core.localization.consensus_policies import (
    DEFAULT_STOP_THRESHOLD,
    RobustMethod,
    policies_for,
    required_iterations,
)
from radiopos_core.localization.errors import (
    NotReadyError,
    NumericalError,
    RobustEstimatorError,
)
from radiopos_core.localization.lateration_solver import (
    LaterationSolver,
    LaterationSolverConfig,
    range_residuals,
    unpack_measurements,
)
from radiopos_core.localization.measurement_builder import FALLBACK_DISTANCE_STD
from radiopos_core.metrics import get_metrics

logger = logging.getLogger(__name__)

DEFAULT_METHOD = RobustMethod.PROMEDS
DEFAULT_CONFIDENCE = 0.99
DEFAULT_MAX_ITERATIONS = 5000
DEFAULT_PROGRESS_DELTA = 0.05


@dataclass(frozen=True)
class RobustEstimatorConfig:
    """
    Configuration for robust position estimation.

    Frozen: change it through the estimator's set_config (or
    dataclasses.replace) so changes are validated and locked.

    Attributes:
        threshold: Inlier residual threshold in meters (RANSAC, MSAC, PROSAC);
            None uses DEFAULT_THRESHOLD
        stop_threshold: Median squared residual that ends LMedS/PROMedS early
        confidence: Probability of drawing at least one all-inlier subset
        max_iterations: Upper bound on consensus iterations
        progress_delta: Minimum progress change between progress callbacks
        preliminary_subset_size: Measurements per subset; None means dim + 1
        result_refined: Re-solve from all inliers of the best model
        covariance_kept: Keep the position covariance of the refined result
        linear_solver_used: Use the closed-form solver for preliminary solutions
        homogeneous_linear_solver_used: Use the homogeneous linear formulation
        preliminary_solution_refined: Refine preliminary solutions nonlinearly
        initial_position: Nonlinear seed when the linear solver is disabled
        radio_source_position_covariance_used: Add source position
            uncertainty to measurement standard deviations
        fallback_distance_std: Std used when no uncertainty is known (m)
        seed: Random generator seed for reproducible sampling
    """

    threshold: Optional[float] = None
    stop_threshold: float = DEFAULT_STOP_THRESHOLD
    confidence: float = DEFAULT_CONFIDENCE
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    progress_delta: float = DEFAULT_PROGRESS_DELTA
    preliminary_subset_size: Optional[int] = None
    result_refined: bool = True
    covariance_kept: bool = True
    linear_solver_used: bool = True
    homogeneous_linear_solver_used: bool = False
    preliminary_solution_refined: bool = True
    initial_position: Optional[Tuple[float, ...]] = None
    radio_source_position_covariance_used: bool = False
    fallback_distance_std: float = FALLBACK_DISTANCE_STD
    seed: Optional[int] = None

    def __post_init__(self):
        """Validate configuration."""
        if self.threshold is not None and self.threshold <= 0:
            raise ValueError(f"threshold must be positive: {self.threshold}")
        if self.stop_threshold < 0:
            raise ValueError(f"stop_threshold cannot be negative: {self.stop_threshold}")
        if not 0.0 < self.confidence < 1.0:
            raise ValueError(f"confidence must be in (0, 1): {self.confidence}")
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be positive: {self.max_iterations}")
        if not 0.0 <= self.progress_delta < 1.0:
            raise ValueError(f"progress_delta must be in [0, 1): {self.progress_delta}")
        if self.preliminary_subset_size is not None and self.preliminary_subset_size < 1:
            raise ValueError(
                f"preliminary_subset_size must be positive: {self.preliminary_subset_size}"
            )
        if self.fallback_distance_std < 0:
            raise ValueError(
                f"fallback_distance_std cannot be negative: {self.fallback_distance_std}"
            )
        if self.initial_position is not None:
            object.__setattr__(
                self, 'initial_position', tuple(float(c) for c in self.initial_position)
            )
            if len(self.initial_position) not in (2, 3):
                raise ValueError("initial_position must have 2 or 3 coordinates")

    def subset_size_for(self, num_dimensions: int) -> int:
        """Preliminary subset size for a dimension, validated against dim + 1."""
        min_required = num_dimensions + 1
        if self.preliminary_subset_size is None:
            return min_required
        if self.preliminary_subset_size < min_required:
            raise ValueError(
                f"preliminary_subset_size must be at least {min_required}: "
                f"{self.preliminary_subset_size}"
            )
        return self.preliminary_subset_size


class SampleConsensusEngine:
    """
    Robust position estimation by sample consensus.

    Listener callbacks receive `owner` as first argument (the engine itself
    unless a wrapping estimator passes itself).

    Usage:
        engine = SampleConsensusEngine(RobustMethod.RANSAC,
                                       RobustEstimatorConfig(threshold=0.5, seed=1))
        result = engine.estimate(measurements)
        print(result.position, result.inliers_data.num_inliers)
    """

    def __init__(
        self,
        method: RobustMethod = DEFAULT_METHOD,
        config: Optional[RobustEstimatorConfig] = None,
        listener: Optional[Any] = None,
        rng: Optional[np.random.Generator] = None,
        owner: Optional[Any] = None,
        solver: Optional[LaterationSolver] = None,
    ):
        """
        Initialize engine.

        Args:
            method: Robust method selecting sampling and scoring policies
            config: Estimator configuration (uses defaults if None)
            listener: Object with on_estimate_* callbacks, optional
            rng: Random generator; seeded from config.seed if None
            owner: Object passed to listener callbacks
            solver: Lateration solver used for all solves
        """
        self.method = method
        self.config = config or RobustEstimatorConfig()
        self.listener = listener
        self.rng = rng if rng is not None else np.random.default_rng(self.config.seed)
        self.owner = owner if owner is not None else self
        self.solver = solver or LaterationSolver(LaterationSolverConfig())
        self.metrics = get_metrics()

    def estimate(self, measurements: Sequence[Measurement]) -> EstimationResult:
        """
        Estimate a position from measurements containing outliers.

        Raises:
            NotReadyError: if there are fewer measurements than the subset size
            RobustEstimatorError: if no model with enough inliers is found
        """
        if not measurements:
            raise NotReadyError("no measurements to estimate from")

        positions, distances, stds = unpack_measurements(measurements)
        n, dims = positions.shape
        min_required = dims + 1
        subset_size = self.config.subset_size_for(dims)
        if n < subset_size:
            raise NotReadyError(
                f"{n} measurements available, at least {subset_size} required"
            )

        self._notify('on_estimate_start')
        try:
            best = self._consensus(measurements, positions, distances, subset_size)
        except RobustEstimatorError:
            self._notify('on_estimate_end')
            raise

        best_position, inliers_data = best
        if inliers_data.num_inliers < min_required:
            self._notify('on_estimate_end')
            raise RobustEstimatorError(
                f"Best model has {inliers_data.num_inliers} inliers, "
                f"at least {min_required} required"
            )

        position, covariance = self._refine(
            best_position, positions, distances, stds, inliers_data.inlier_mask
        )

        self.metrics.record_histogram('consensus_iterations', inliers_data.num_iterations)
        self.metrics.record_histogram('inlier_ratio', inliers_data.inlier_ratio)
        logger.debug(
            "%s: %d iterations, %d/%d inliers",
            self.method.name, inliers_data.num_iterations, inliers_data.num_inliers, n,
        )

        self._notify('on_estimate_end')
        return EstimationResult(
            position=position,
            covariance=covariance,
            inliers_data=inliers_data,
            method=self.method.name,
        )

    def _consensus(
        self,
        measurements: Sequence[Measurement],
        positions: np.ndarray,
        distances: np.ndarray,
        subset_size: int,
    ) -> Tuple[np.ndarray, InliersData]:
        config = self.config
        n = len(measurements)

        quality_scores = None
        if self.method.uses_quality_scores:
            quality_scores = np.array([m.quality_score for m in measurements], dtype=float)

        sampling, scoring = policies_for(self.method, config.threshold, config.stop_threshold)
        sampling.reset(n, subset_size, quality_scores, config.max_iterations, self.rng)

        best_position = None
        best_score = -np.inf
        best_mask = None
        best_residuals = None

        required = config.max_iterations
        iteration = 0
        last_progress = 0.0

        while iteration < required and iteration < config.max_iterations:
            indices = sampling.draw()
            subset = [measurements[i] for i in indices]

            candidate = self._preliminary_solution(subset)
            if candidate is not None:
                residuals = range_residuals(candidate, positions, distances)
                score, mask = scoring.score(residuals, subset_size)

                if score > best_score:
                    best_position = candidate
                    best_score = score
                    best_mask = mask
                    best_residuals = residuals

                    if scoring.adaptive_bound:
                        inlier_ratio = np.count_nonzero(mask) / n
                        required = required_iterations(
                            inlier_ratio, subset_size, config.confidence, config.max_iterations
                        )

            iteration += 1
            self._notify('on_estimate_next_iteration', iteration)

            progress = min(iteration / required, 1.0)
            finished = progress >= 1.0 > last_progress
            if finished or progress - last_progress >= config.progress_delta:
                last_progress = progress
                self._notify('on_estimate_progress_change', progress)

            if best_position is not None and scoring.should_stop(best_score):
                break
            if sampling.exhausted:
                break

        if best_position is None:
            raise RobustEstimatorError(
                f"No valid model found in {iteration} iterations "
                f"(every subset was degenerate)"
            )

        return best_position, InliersData(
            inlier_mask=best_mask,
            best_score=float(best_score),
            num_iterations=iteration,
            residuals=best_residuals,
        )

    def _preliminary_solution(self, subset: Sequence[Measurement]) -> Optional[np.ndarray]:
        """Solve a subset, or None if it is degenerate."""
        try:
            result = self.solver.solve(
                subset,
                use_linear=self.config.linear_solver_used,
                homogeneous=self.config.homogeneous_linear_solver_used,
                initial_position=self.config.initial_position,
                refine=self.config.preliminary_solution_refined,
            )
        except (NumericalError, ValueError) as e:
            self.metrics.increment('consensus_degenerate_subsets')
            self.metrics.increment_drop('degenerate_subset')
            logger.debug("Skipping degenerate subset: %s", e)
            return None
        return result.position

    def _refine(
        self,
        position: np.ndarray,
        positions: np.ndarray,
        distances: np.ndarray,
        stds: np.ndarray,
        inlier_mask: np.ndarray,
    ) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        """Re-solve from all inliers; keep the unrefined position on failure."""
        if not self.config.result_refined:
            return position, None

        try:
            refined = self.solver.solve_nonlinear(
                positions[inlier_mask],
                distances[inlier_mask],
                stds[inlier_mask],
                initial_position=position,
                compute_covariance=self.config.covariance_kept,
            )
        except (NumericalError, ValueError) as e:
            self.metrics.increment_drop('refinement_failed')
            logger.warning("Refinement failed, keeping preliminary position: %s", e)
            return position, None

        return refined.position, refined.covariance

    def _notify(self, callback: str, *args):
        if self.listener is None:
            return
        handler = getattr(self.listener, callback, None)
        if handler is not None:
            handler(self.owner, *args)
