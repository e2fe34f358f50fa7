"""
Linear Fingerprint Position Estimator.

Positions a device from RSSI alone using a catalog of located fingerprints
and the positions of the radio sources, without knowing transmitted powers.

Around a nearby catalog position p1, the log-distance path-loss model for
source a is linearized to first order:

    Pr(x) ~ Pr(p1) - 10 n / ln(10) * (p1 - pa)^T (x - p1) / |p1 - pa|^2

Each (nearest fingerprint, source) pair yields one row of a linear system

    row = 10 n / ln(10) * (p1 - pa) / |p1 - pa|^2
    row . x = (Pr(p1) - Pr) + row . p1

solved by least squares. With mean removal, each fingerprint's mean RSSI is
subtracted from its readings first, cancelling a constant receiver bias.

The number of nearest fingerprints grows from min_nearest until the system
is solvable (max_nearest = -1 allows the whole catalog).
"""

import dataclasses
import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from radiopos_core.proto.fingerprint import Fingerprint, LocatedFingerprint
from radiopos_core.proto.measurement import EstimationResult
from radiopos_core.proto.radio_source import DEFAULT_PATH_LOSS_EXPONENT, LocatedRadioSource
from radiopos_core.localization.errors import (
    FingerprintEstimationError,
    LockedError,
    NotReadyError,
    PositioningError,
)
from radiopos_core.localization.fingerprint_finder import FingerprintNearestFinder
from radiopos_core.localization.robust_position_estimator import (
    EstimatorState,
    PositionEstimatorListener,
)
from radiopos_core.metrics import get_metrics

logger = logging.getLogger(__name__)

DEFAULT_MIN_NEAREST_FINGERPRINTS = 1
UNBOUNDED_NEAREST_FINGERPRINTS = -1
LINEAR_FINGERPRINT_METHOD = "LINEAR_FINGERPRINT"


@dataclass(frozen=True)
class FingerprintEstimatorConfig:
    """
    Configuration for fingerprint position estimation.

    Attributes:
        min_nearest: Nearest fingerprints used on the first attempt
        max_nearest: Upper bound on nearest fingerprints, -1 for the whole catalog
        path_loss_exponent: Exponent used for sources that do not carry one
        use_source_path_loss_exponent: Prefer each source's own exponent
        use_no_mean_finder: Rank catalog entries with the mean-removed policy
        remove_means: Subtract each fingerprint's mean RSSI in the linear system
        rank_tol: Relative singular value below which the system is singular
    """

    min_nearest: int = DEFAULT_MIN_NEAREST_FINGERPRINTS
    max_nearest: int = UNBOUNDED_NEAREST_FINGERPRINTS
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT
    use_source_path_loss_exponent: bool = True
    use_no_mean_finder: bool = True
    remove_means: bool = True
    rank_tol: float = 1e-10

    def __post_init__(self):
        """Validate configuration."""
        if self.min_nearest < 1:
            raise ValueError(f"min_nearest must be at least 1: {self.min_nearest}")
        if self.max_nearest != UNBOUNDED_NEAREST_FINGERPRINTS and (
            self.max_nearest < self.min_nearest
        ):
            raise ValueError(
                f"max_nearest must be -1 or >= min_nearest: {self.max_nearest}"
            )
        if self.path_loss_exponent <= 0:
            raise ValueError(
                f"path_loss_exponent must be positive: {self.path_loss_exponent}"
            )
        if self.rank_tol <= 0:
            raise ValueError(f"rank_tol must be positive: {self.rank_tol}")


class FingerprintPositionEstimator:
    """
    First-order linear position estimator from nearest located fingerprints.

    Follows the same lifecycle as RobustPositionEstimator: mutators raise
    LockedError while estimate() runs, listener callbacks receive the
    estimator as first argument.

    Usage:
        estimator = FingerprintPositionEstimator(
            2, catalog=catalog, fingerprint=query, sources=sources)
        position = estimator.estimate()
    """

    def __init__(
        self,
        num_dimensions: int,
        catalog: Optional[Sequence[LocatedFingerprint]] = None,
        fingerprint: Optional[Fingerprint] = None,
        sources: Optional[Sequence[LocatedRadioSource]] = None,
        config: Optional[FingerprintEstimatorConfig] = None,
        listener: Optional[PositionEstimatorListener] = None,
    ):
        if num_dimensions not in (2, 3):
            raise ValueError(f"num_dimensions must be 2 or 3: {num_dimensions}")
        self.num_dimensions = num_dimensions
        self._config = config or FingerprintEstimatorConfig()
        self.metrics = get_metrics()

        self._state = EstimatorState.NOT_READY
        self._catalog: Optional[List[LocatedFingerprint]] = None
        self._fingerprint: Optional[Fingerprint] = None
        self._sources: Optional[List[LocatedRadioSource]] = None
        self._listener = listener

        self._nearest: Optional[List[LocatedFingerprint]] = None
        self._result: Optional[EstimationResult] = None

        if catalog is not None:
            self.set_catalog(catalog)
        if fingerprint is not None:
            self.set_fingerprint(fingerprint)
        if sources is not None:
            self.set_sources(sources)
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
    def is_ready(self) -> bool:
        return bool(self._catalog) and self._fingerprint is not None and bool(self._sources)

    def _update_state(self):
        if self._state != EstimatorState.ESTIMATING:
            self._state = EstimatorState.READY if self.is_ready else EstimatorState.NOT_READY

    def _check_unlocked(self):
        if self.is_locked:
            raise LockedError()

    # =========================================================================
    # Mutators
    # =========================================================================

    def set_catalog(self, catalog: Sequence[LocatedFingerprint]):
        self._check_unlocked()
        if not catalog:
            raise ValueError("Fingerprint catalog cannot be empty")
        for entry in catalog:
            if len(entry.position) != self.num_dimensions:
                raise ValueError(
                    f"Catalog entry position {entry.position} is not "
                    f"{self.num_dimensions}D"
                )
        self._catalog = list(catalog)
        self._update_state()

    def set_fingerprint(self, fingerprint: Fingerprint):
        self._check_unlocked()
        if fingerprint is None:
            raise ValueError("Fingerprint cannot be None")
        self._fingerprint = fingerprint
        self._update_state()

    def set_sources(self, sources: Sequence[LocatedRadioSource]):
        self._check_unlocked()
        if not sources:
            raise ValueError("Located sources cannot be empty")
        for source in sources:
            if source.num_dimensions != self.num_dimensions:
                raise ValueError(
                    f"Source {source.source_id} is {source.num_dimensions}D, "
                    f"estimator is {self.num_dimensions}D"
                )
        self._sources = list(sources)
        self._update_state()

    @property
    def config(self) -> FingerprintEstimatorConfig:
        return self._config

    def set_config(self, config: FingerprintEstimatorConfig):
        self._check_unlocked()
        if config is None:
            raise ValueError("Config cannot be None")
        self._config = config

    def set_min_max_nearest(self, min_nearest: int, max_nearest: int):
        self._check_unlocked()
        self._config = dataclasses.replace(
            self._config, min_nearest=min_nearest, max_nearest=max_nearest
        )

    def set_listener(self, listener: Optional[PositionEstimatorListener]):
        self._check_unlocked()
        self._listener = listener

    # =========================================================================
    # Results
    # =========================================================================

    @property
    def result(self) -> Optional[EstimationResult]:
        return self._result

    @property
    def nearest_fingerprints(self) -> Optional[List[LocatedFingerprint]]:
        """Nearest fingerprints that produced the last estimate."""
        return self._nearest

    # =========================================================================
    # Estimation
    # =========================================================================

    def estimate(self) -> np.ndarray:
        """
        Estimate position.

        Raises:
            LockedError: if already estimating
            NotReadyError: if catalog, fingerprint or sources are missing
            FingerprintEstimationError: if no nearest set yields a solvable system
        """
        self._check_unlocked()
        if not self.is_ready:
            raise NotReadyError()

        self._state = EstimatorState.ESTIMATING
        self.metrics.increment('estimate_attempts')
        try:
            self._notify('on_estimate_start')

            finder = FingerprintNearestFinder(
                self._catalog, remove_mean=self.config.use_no_mean_finder
            )
            min_k = self.config.min_nearest
            max_k = len(self._catalog)
            if self.config.max_nearest != UNBOUNDED_NEAREST_FINGERPRINTS:
                max_k = min(self.config.max_nearest, max_k)

            self._nearest = None
            self._result = None
            position = None
            for k in range(min_k, max_k + 1):
                nearest = [entry for entry, _ in finder.find_nearest(self._fingerprint, k)]
                position = self._solve(nearest)

                self._notify('on_estimate_next_iteration', k - min_k + 1)
                self._notify(
                    'on_estimate_progress_change',
                    (k - min_k + 1) / (max_k - min_k + 1),
                )
                if position is not None:
                    self._nearest = nearest
                    break

            if position is None:
                raise FingerprintEstimationError(
                    f"No solvable system with {min_k} to {max_k} nearest fingerprints"
                )

            self._result = EstimationResult(position=position, method=LINEAR_FINGERPRINT_METHOD)
            self.metrics.increment('estimate_success')
            logger.debug(
                "Fingerprint estimate from %d nearest fingerprints: %s",
                len(self._nearest), position,
            )
            self._notify('on_estimate_end')
            return position

        except PositioningError:
            self.metrics.increment('estimate_failures')
            self._notify('on_estimate_end')
            raise
        finally:
            self._state = EstimatorState.NOT_READY
            self._update_state()

    def _linear_system(
        self,
        nearest: Sequence[LocatedFingerprint],
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Build the first-order path-loss system for the nearest fingerprints."""
        sources_by_id = {source.source_id: source for source in self._sources}
        query_rssi = self._fingerprint.rssi_by_source()
        remove_means = self.config.remove_means
        ln10 = math.log(10.0)

        query_mean = 0.0
        if remove_means and query_rssi:
            query_mean = self._fingerprint.mean_rssi()

        rows = []
        rhs = []
        for entry in nearest:
            entry_rssi = entry.rssi_by_source()
            if not entry_rssi:
                continue
            entry_position = np.asarray(entry.position, dtype=float)
            entry_mean = entry.mean_rssi() if remove_means else 0.0

            for source_id, located_rssi in entry_rssi.items():
                source = sources_by_id.get(source_id)
                if source is None or source_id not in query_rssi:
                    continue

                n = self.config.path_loss_exponent
                if self.config.use_source_path_loss_exponent and source.has_power:
                    n = source.path_loss_exponent

                diff = entry_position - np.asarray(source.position, dtype=float)
                sqr_distance = float(np.dot(diff, diff))
                if sqr_distance == 0.0:
                    # Fingerprint recorded on top of the source
                    continue

                row = 10.0 * n / ln10 * diff / sqr_distance
                diff_rssi = (located_rssi - entry_mean) - (query_rssi[source_id] - query_mean)

                rows.append(row)
                rhs.append(diff_rssi + float(np.dot(row, entry_position)))

        if not rows:
            return np.zeros((0, self.num_dimensions)), np.zeros(0)
        return np.array(rows), np.array(rhs)

    def _solve(self, nearest: Sequence[LocatedFingerprint]) -> Optional[np.ndarray]:
        """Least-squares position, or None if the system is underdetermined."""
        A, b = self._linear_system(nearest)
        if A.shape[0] < self.num_dimensions:
            return None

        singular_values = np.linalg.svd(A, compute_uv=False)
        if singular_values[0] <= 0 or (
            singular_values[self.num_dimensions - 1] < self.config.rank_tol * singular_values[0]
        ):
            return None

        solution, *_ = np.linalg.lstsq(A, b, rcond=None)
        return solution

    def _notify(self, callback: str, *args):
        if self._listener is None:
            return
        handler = getattr(self._listener, callback, None)
        if handler is not None:
            handler(self, *args)
