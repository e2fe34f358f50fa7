"""
Unit tests for the linear fingerprint position estimator.

Tests cover:
- Configuration validation
- Accuracy on a noiseless RSSI catalog
- Invariance to a constant receiver bias with mean removal
- Growth of the nearest fingerprint set until the system is solvable
- Locking, readiness and failures
"""

import dataclasses

import numpy as np
import pytest

from radiopos_core.proto import Fingerprint, LocatedFingerprint, Reading
from radiopos_core.localization import (
    EstimatorState,
    FingerprintEstimationError,
    FingerprintEstimatorConfig,
    FingerprintPositionEstimator,
    LockedError,
    NotReadyError,
)
from radiopos_core.metrics import get_metrics
from tests.conftest import make_sources, rssi_fingerprint


RAW = FingerprintEstimatorConfig(use_no_mean_finder=False, remove_means=False)


class RecordingListener:
    """Listener that records callbacks and probes every mutator."""

    def __init__(self, catalog=None, fingerprint=None, sources=None):
        self.events = []
        self.locked = 0
        self.unlocked = []
        self.catalog = catalog
        self.fingerprint = fingerprint
        self.sources = sources

    def _probe(self, estimator):
        if self.catalog is None:
            return
        attempts = {
            'set_catalog': lambda: estimator.set_catalog(self.catalog),
            'set_fingerprint': lambda: estimator.set_fingerprint(self.fingerprint),
            'set_sources': lambda: estimator.set_sources(self.sources),
            'set_config': lambda: estimator.set_config(FingerprintEstimatorConfig()),
            'set_min_max_nearest': lambda: estimator.set_min_max_nearest(1, 2),
            'set_listener': lambda: estimator.set_listener(None),
            'estimate': estimator.estimate,
        }
        for name, attempt in attempts.items():
            try:
                attempt()
            except LockedError:
                self.locked += 1
            else:
                self.unlocked.append(name)

    def on_estimate_start(self, estimator):
        self.events.append(('start',))
        self._probe(estimator)

    def on_estimate_end(self, estimator):
        self.events.append(('end',))
        self._probe(estimator)

    def on_estimate_next_iteration(self, estimator, iteration):
        self.events.append(('iteration', iteration))

    def on_estimate_progress_change(self, estimator, progress):
        self.events.append(('progress', progress))


@pytest.fixture
def sources():
    return make_sources([(0.0, 0.0), (20.0, 0.0), (0.0, 20.0), (20.0, 20.0)])


@pytest.fixture
def catalog(sources):
    """Located fingerprints every 2m inside the source square."""
    return [
        rssi_fingerprint(sources, (float(x), float(y)), located=True)
        for x in range(2, 20, 2)
        for y in range(2, 20, 2)
    ]


# =============================================================================
# Test Configuration
# =============================================================================


class TestFingerprintEstimatorConfig:
    """Tests for configuration defaults and validation."""

    def test_defaults(self):
        config = FingerprintEstimatorConfig()
        assert config.min_nearest == 1
        assert config.max_nearest == -1
        assert config.path_loss_exponent == 2.0
        assert config.use_no_mean_finder
        assert config.remove_means

    @pytest.mark.parametrize("kwargs", [
        {'min_nearest': 0},
        {'min_nearest': 3, 'max_nearest': 2},
        {'max_nearest': 0},
        {'path_loss_exponent': 0.0},
        {'rank_tol': 0.0},
    ])
    def test_invalid_values_raise(self, kwargs):
        with pytest.raises(ValueError):
            FingerprintEstimatorConfig(**kwargs)

    def test_set_min_max_nearest_validates(self):
        estimator = FingerprintPositionEstimator(2)
        with pytest.raises(ValueError, match="max_nearest"):
            estimator.set_min_max_nearest(3, 2)

        estimator.set_min_max_nearest(2, 5)
        assert (estimator.config.min_nearest, estimator.config.max_nearest) == (2, 5)


# =============================================================================
# Test State and Validation
# =============================================================================


class TestReadiness:
    """Tests for readiness and argument validation."""

    def test_invalid_dimensions(self):
        with pytest.raises(ValueError):
            FingerprintPositionEstimator(1)

    def test_ready_needs_all_inputs(self, catalog, sources):
        estimator = FingerprintPositionEstimator(2, catalog=catalog)
        assert estimator.state == EstimatorState.NOT_READY

        estimator.set_sources(sources)
        assert not estimator.is_ready

        estimator.set_fingerprint(rssi_fingerprint(sources, (5.0, 5.0)))
        assert estimator.state == EstimatorState.READY

    def test_estimate_not_ready(self, catalog):
        with pytest.raises(NotReadyError):
            FingerprintPositionEstimator(2, catalog=catalog).estimate()

    def test_empty_catalog(self):
        with pytest.raises(ValueError, match="empty"):
            FingerprintPositionEstimator(2).set_catalog([])

    def test_catalog_dimension_mismatch(self, catalog):
        with pytest.raises(ValueError, match="3D"):
            FingerprintPositionEstimator(3).set_catalog(catalog)

    def test_empty_sources(self):
        with pytest.raises(ValueError):
            FingerprintPositionEstimator(2).set_sources([])

    def test_none_fingerprint(self):
        with pytest.raises(ValueError):
            FingerprintPositionEstimator(2).set_fingerprint(None)


# =============================================================================
# Test Estimation
# =============================================================================


class TestEstimation:
    """Tests for the first-order linear estimate."""

    def test_noiseless_catalog_raw(self, catalog, sources):
        true_position = (5.3, 6.4)
        estimator = FingerprintPositionEstimator(
            2, catalog=catalog, fingerprint=rssi_fingerprint(sources, true_position),
            sources=sources, config=RAW,
        )

        position = estimator.estimate()

        np.testing.assert_allclose(position, true_position, atol=0.5)
        assert len(estimator.nearest_fingerprints) == 1
        assert estimator.result.method == "LINEAR_FINGERPRINT"
        assert estimator.state == EstimatorState.READY

    def test_noiseless_catalog_mean_removed(self, catalog, sources):
        true_position = (9.3, 10.4)
        estimator = FingerprintPositionEstimator(
            2, catalog=catalog, fingerprint=rssi_fingerprint(sources, true_position),
            sources=sources,
        )

        np.testing.assert_allclose(estimator.estimate(), true_position, atol=1.0)

    def test_exact_on_catalog_position(self, catalog, sources):
        """Test a query recorded at a catalog position is located exactly."""
        estimator = FingerprintPositionEstimator(
            2, catalog=catalog, fingerprint=rssi_fingerprint(sources, (8.0, 12.0)),
            sources=sources,
        )
        np.testing.assert_allclose(estimator.estimate(), (8.0, 12.0), atol=1e-6)

    def test_bias_invariance_with_mean_removal(self, catalog, sources):
        true_position = (5.3, 6.4)
        estimator = FingerprintPositionEstimator(
            2, catalog=catalog, fingerprint=rssi_fingerprint(sources, true_position),
            sources=sources,
        )
        unbiased = estimator.estimate()

        estimator.set_fingerprint(rssi_fingerprint(sources, true_position, bias_db=9.0))
        biased = estimator.estimate()

        np.testing.assert_allclose(biased, unbiased, atol=1e-6)

    def test_nearest_set_grows_until_solvable(self, sources):
        """Test single-source catalog entries need two fingerprints in 2D."""
        catalog = [
            LocatedFingerprint([Reading(source=sources[0], rssi_dbm=-60.0)], (5.0, 5.0)),
            LocatedFingerprint([Reading(source=sources[1], rssi_dbm=-62.0)], (15.0, 5.0)),
            LocatedFingerprint([Reading(source=sources[2], rssi_dbm=-64.0)], (5.0, 15.0)),
        ]
        listener = RecordingListener()
        estimator = FingerprintPositionEstimator(
            2, catalog=catalog, fingerprint=rssi_fingerprint(sources, (10.0, 10.0)),
            sources=sources, listener=listener,
        )

        estimator.estimate()

        assert len(estimator.nearest_fingerprints) == 2
        iterations = [e[1] for e in listener.events if e[0] == 'iteration']
        progress = [e[1] for e in listener.events if e[0] == 'progress']
        assert iterations == [1, 2]
        assert progress == pytest.approx([1.0 / 3.0, 2.0 / 3.0])
        assert listener.events[0] == ('start',)
        assert listener.events[-1] == ('end',)

    def test_max_nearest_bounds_growth(self, sources):
        catalog = [
            LocatedFingerprint([Reading(source=sources[0], rssi_dbm=-60.0)], (5.0, 5.0)),
            LocatedFingerprint([Reading(source=sources[1], rssi_dbm=-62.0)], (15.0, 5.0)),
        ]
        estimator = FingerprintPositionEstimator(
            2, catalog=catalog, fingerprint=rssi_fingerprint(sources, (10.0, 10.0)),
            sources=sources, config=FingerprintEstimatorConfig(min_nearest=1, max_nearest=1),
        )

        with pytest.raises(FingerprintEstimationError):
            estimator.estimate()

    def test_no_common_sources_fails(self, catalog, sources):
        others = make_sources([(0.0, 0.0), (20.0, 0.0), (0.0, 20.0)], prefix="other")
        listener = RecordingListener()
        estimator = FingerprintPositionEstimator(
            2, catalog=catalog, fingerprint=rssi_fingerprint(others, (5.0, 5.0)),
            sources=sources, listener=listener,
        )

        with pytest.raises(FingerprintEstimationError):
            estimator.estimate()

        assert estimator.result is None
        assert estimator.nearest_fingerprints is None
        assert estimator.state == EstimatorState.READY
        assert listener.events[-1] == ('end',)
        assert get_metrics().get_counter('estimate_failures') == 1

    def test_metrics(self, catalog, sources):
        estimator = FingerprintPositionEstimator(
            2, catalog=catalog, fingerprint=rssi_fingerprint(sources, (7.0, 3.0)),
            sources=sources,
        )
        estimator.estimate()

        metrics = get_metrics()
        assert metrics.get_counter('estimate_attempts') == 1
        assert metrics.get_counter('estimate_success') == 1


# =============================================================================
# Test Locking
# =============================================================================


class TestLocking:
    """Mutators are locked during estimate()."""

    def test_mutators_locked_during_estimate(self, catalog, sources):
        fingerprint = rssi_fingerprint(sources, (5.0, 5.0))
        listener = RecordingListener(catalog, fingerprint, sources)
        estimator = FingerprintPositionEstimator(
            2, catalog=catalog, fingerprint=fingerprint, sources=sources, listener=listener,
        )

        estimator.estimate()

        assert listener.unlocked == []
        assert listener.locked == 14
        assert not estimator.is_locked

        estimator.set_min_max_nearest(2, 4)
        estimator.set_listener(None)
        estimator.estimate()
        assert len(estimator.nearest_fingerprints) == 2

    def test_config_not_assignable_during_estimate(self, catalog, sources):
        rejected = []

        class ConfigTamperingListener:
            def on_estimate_next_iteration(self, estimator, iteration):
                try:
                    estimator.config.min_nearest = 5
                except dataclasses.FrozenInstanceError:
                    rejected.append('min_nearest')
                try:
                    estimator.config = FingerprintEstimatorConfig(min_nearest=5)
                except AttributeError:
                    rejected.append('config')

        estimator = FingerprintPositionEstimator(
            2, catalog=catalog, fingerprint=rssi_fingerprint(sources, (8.0, 12.0)),
            sources=sources, listener=ConfigTamperingListener(),
        )
        estimator.estimate()

        assert rejected == ['min_nearest', 'config']
        assert estimator.config.min_nearest == 1

    def test_config_changes_validated_outside_estimate(self):
        estimator = FingerprintPositionEstimator(2)
        with pytest.raises(dataclasses.FrozenInstanceError):
            estimator.config.max_nearest = 0
        with pytest.raises(ValueError):
            dataclasses.replace(estimator.config, max_nearest=0)
