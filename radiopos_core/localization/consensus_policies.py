"""
Sample Consensus Policies.

Each robust method is a pair of strategies used by the sample consensus
engine:

| Method  | Sampling    | Scoring                               | Bound     |
|---------|-------------|---------------------------------------|-----------|
| RANSAC  | uniform     | inlier count (residual < threshold)   | adaptive  |
| LMEDS   | uniform     | -median(residual^2)                   | fixed     |
| MSAC    | uniform     | -sum(min(residual^2, threshold^2))    | adaptive  |
| PROSAC  | progressive | inlier count                          | adaptive  |
| PROMEDS | progressive | -median(residual^2)                   | fixed     |

Scores are always "higher is better". Progressive sampling draws from the
measurements with the highest quality scores first and widens the window
following the PROSAC growth function (Chum & Matas, 2005).
"""

import math
from enum import Enum
from typing import Optional, Tuple

import numpy as np


DEFAULT_THRESHOLD = 1e-2
DEFAULT_STOP_THRESHOLD = 1e-5

# Consistency factor of the median absolute deviation for Gaussian noise
MAD_TO_STD = 1.4826
MEDIAN_INLIER_FACTOR = 2.5


class RobustMethod(Enum):
    """Robust estimation method."""

    RANSAC = "ransac"
    LMEDS = "lmeds"
    MSAC = "msac"
    PROSAC = "prosac"
    PROMEDS = "promeds"

    @property
    def uses_quality_scores(self) -> bool:
        return self in (RobustMethod.PROSAC, RobustMethod.PROMEDS)

    @property
    def uses_threshold(self) -> bool:
        return self in (RobustMethod.RANSAC, RobustMethod.MSAC, RobustMethod.PROSAC)


# =============================================================================
# Sampling
# =============================================================================


class SamplingPolicy:
    """Draws index subsets of the measurements."""

    def reset(
        self,
        num_samples: int,
        subset_size: int,
        quality_scores: Optional[np.ndarray],
        max_iterations: int,
        rng: np.random.Generator,
    ):
        if subset_size > num_samples:
            raise ValueError(
                f"Subset size {subset_size} exceeds number of samples {num_samples}"
            )
        self.num_samples = num_samples
        self.subset_size = subset_size
        self.rng = rng

    def draw(self) -> np.ndarray:
        raise NotImplementedError

    @property
    def exhausted(self) -> bool:
        """True when further draws cannot explore anything new."""
        return False


class UniformSampling(SamplingPolicy):
    """Uniformly random subsets without replacement (RANSAC, LMedS, MSAC)."""

    def draw(self) -> np.ndarray:
        return self.rng.choice(self.num_samples, size=self.subset_size, replace=False)


class ProgressiveSampling(SamplingPolicy):
    """
    PROSAC sampling: quality-sorted, progressively widening window.

    With uniform (or absent) quality scores the ordering is a random
    permutation, which makes sampling equivalent to uniform sampling.
    """

    def reset(
        self,
        num_samples: int,
        subset_size: int,
        quality_scores: Optional[np.ndarray],
        max_iterations: int,
        rng: np.random.Generator,
    ):
        super().reset(num_samples, subset_size, quality_scores, max_iterations, rng)

        if quality_scores is None or np.all(quality_scores == quality_scores[0]):
            self.order = rng.permutation(num_samples)
        else:
            self.order = np.argsort(-np.asarray(quality_scores, dtype=float), kind='stable')

        m = subset_size
        N = num_samples

        # T_m: expected number of samples drawn from the top m measurements
        t_n = float(max_iterations)
        for i in range(m):
            t_n *= (m - i) / (N - i)

        self._t_n = t_n
        self._t_n_prime = 1
        self._window = m
        self._draws = 0
        self._total_subsets = math.comb(N, m)

    @property
    def window(self) -> int:
        """Number of top-quality measurements currently sampled from."""
        return self._window

    def draw(self) -> np.ndarray:
        self._draws += 1
        t = self._draws
        m = self.subset_size

        if t > self._t_n_prime and self._window < self.num_samples:
            n = self._window
            t_next = self._t_n * (n + 1) / (n + 1 - m)
            self._t_n_prime += int(math.ceil(t_next - self._t_n))
            self._t_n = t_next
            self._window = n + 1

        n = self._window
        if self._t_n_prime >= t:
            # m - 1 from the first n - 1, plus the n-th measurement
            head = self.rng.choice(n - 1, size=m - 1, replace=False) if m > 1 else []
            picks = np.append(np.asarray(head, dtype=int), n - 1)
        else:
            picks = self.rng.choice(n, size=m, replace=False)

        return self.order[picks]

    @property
    def exhausted(self) -> bool:
        return self._window >= self.num_samples and self._draws >= self._total_subsets


# =============================================================================
# Scoring
# =============================================================================


class ScoringPolicy:
    """Scores a candidate model from the residuals of all measurements."""

    adaptive_bound = True

    def score(self, residuals: np.ndarray, subset_size: int) -> Tuple[float, np.ndarray]:
        """
        Returns:
            Tuple of (score, inlier_mask); higher scores are better
        """
        raise NotImplementedError

    def should_stop(self, best_score: float) -> bool:
        return False


class InlierCountScoring(ScoringPolicy):
    """Number of residuals below threshold (RANSAC, PROSAC)."""

    def __init__(self, threshold: float = DEFAULT_THRESHOLD):
        if threshold <= 0:
            raise ValueError(f"Threshold must be positive: {threshold}")
        self.threshold = threshold

    def score(self, residuals: np.ndarray, subset_size: int) -> Tuple[float, np.ndarray]:
        mask = residuals < self.threshold
        return float(np.count_nonzero(mask)), mask


class TruncatedScoring(ScoringPolicy):
    """Negated sum of squared residuals truncated at threshold^2 (MSAC)."""

    def __init__(self, threshold: float = DEFAULT_THRESHOLD):
        if threshold <= 0:
            raise ValueError(f"Threshold must be positive: {threshold}")
        self.threshold = threshold

    def score(self, residuals: np.ndarray, subset_size: int) -> Tuple[float, np.ndarray]:
        sqr_threshold = self.threshold * self.threshold
        cost = float(np.sum(np.minimum(residuals * residuals, sqr_threshold)))
        return -cost, residuals < self.threshold


class MedianScoring(ScoringPolicy):
    """
    Negated median of squared residuals (LMedS, PROMedS).

    Inliers are residuals within MEDIAN_INLIER_FACTOR robust standard
    deviations, where the standard deviation is estimated from the median
    with the usual small-sample correction.
    """

    adaptive_bound = False

    def __init__(self, stop_threshold: float = DEFAULT_STOP_THRESHOLD):
        if stop_threshold < 0:
            raise ValueError(f"Stop threshold cannot be negative: {stop_threshold}")
        self.stop_threshold = stop_threshold

    def score(self, residuals: np.ndarray, subset_size: int) -> Tuple[float, np.ndarray]:
        sqr_residuals = residuals * residuals
        median = float(np.median(sqr_residuals))

        n = len(residuals)
        correction = 1.0 + 5.0 / max(n - subset_size, 1)
        robust_std = MAD_TO_STD * correction * math.sqrt(median)
        inlier_threshold = max(self.stop_threshold, MEDIAN_INLIER_FACTOR * robust_std)

        return -median, residuals <= inlier_threshold

    def should_stop(self, best_score: float) -> bool:
        return -best_score < self.stop_threshold


# =============================================================================
# Factory
# =============================================================================


def policies_for(
    method: RobustMethod,
    threshold: Optional[float] = None,
    stop_threshold: float = DEFAULT_STOP_THRESHOLD,
) -> Tuple[SamplingPolicy, ScoringPolicy]:
    """
    Build the (sampling, scoring) pair for a robust method.

    Args:
        method: Robust method
        threshold: Inlier threshold (RANSAC, MSAC, PROSAC)
        stop_threshold: Median early-stop threshold (LMedS, PROMedS)
    """
    if threshold is None:
        threshold = DEFAULT_THRESHOLD

    if method == RobustMethod.RANSAC:
        return UniformSampling(), InlierCountScoring(threshold)
    if method == RobustMethod.MSAC:
        return UniformSampling(), TruncatedScoring(threshold)
    if method == RobustMethod.LMEDS:
        return UniformSampling(), MedianScoring(stop_threshold)
    if method == RobustMethod.PROSAC:
        return ProgressiveSampling(), InlierCountScoring(threshold)
    if method == RobustMethod.PROMEDS:
        return ProgressiveSampling(), MedianScoring(stop_threshold)
    raise ValueError(f"Unknown robust method: {method}")


def required_iterations(
    inlier_ratio: float,
    subset_size: int,
    confidence: float,
    max_iterations: int,
) -> int:
    """
    Iterations needed to draw an all-inlier subset with the given confidence.

        ceil(log(1 - confidence) / log(1 - w^subset_size)), in [1, max_iterations]
    """
    if inlier_ratio <= 0.0:
        return max_iterations

    p_good = inlier_ratio ** subset_size
    if p_good >= 1.0:
        return 1

    denominator = math.log(1.0 - p_good)
    if denominator == 0.0:
        return max_iterations

    iterations = math.ceil(math.log(1.0 - confidence) / denominator)
    return int(min(max(iterations, 1), max_iterations))
