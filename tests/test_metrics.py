"""
Unit tests for metrics module.

Tests cover:
- Counter increment (single-threaded and multi-threaded)
- Drop reason tracking
- Histogram recording and statistics
- Snapshot and reset functionality
- Thread safety
"""

import logging
import threading

import pytest

from radiopos_core.metrics import MetricsCollector, get_metrics, reset_metrics
from radiopos_core.metrics.counters import CounterSnapshot


class TestMetricsCollectorBasic:
    """Tests for basic metrics collector functionality."""

    def test_initialization(self):
        """Test that metrics collector initializes correctly."""
        collector = MetricsCollector()

        # Standard counters should be initialized to 0
        assert collector.get_counter('estimate_attempts') == 0
        assert collector.get_counter('consensus_degenerate_subsets') == 0

        # Unknown counter should return 0
        assert collector.get_counter('unknown_counter') == 0

    def test_increment_counter(self):
        """Test incrementing a counter."""
        collector = MetricsCollector()

        collector.increment('estimate_attempts')
        assert collector.get_counter('estimate_attempts') == 1

        collector.increment('estimate_attempts', 5)
        assert collector.get_counter('estimate_attempts') == 6

    def test_increment_drop_with_valid_reason(self):
        """Test incrementing drop counter with valid reason."""
        collector = MetricsCollector()

        collector.increment_drop('degenerate_subset')
        assert collector.get_counter('items_dropped') == 1
        assert collector.get_drop_count('degenerate_subset') == 1

    def test_increment_drop_unknown_reason(self, caplog):
        """Test incrementing drop counter with unknown reason logs warning."""
        collector = MetricsCollector()

        with caplog.at_level(logging.WARNING, logger='radiopos_core.metrics.counters'):
            collector.increment_drop('cosmic_ray')

        assert 'cosmic_ray' in caplog.text

        # Should still be counted
        assert collector.get_counter('items_dropped') == 1

    def test_multiple_drop_reasons(self):
        """Test tracking several drop reasons at once."""
        collector = MetricsCollector()

        collector.increment_drop('unknown_source', 3)
        collector.increment_drop('missing_power', 2)
        collector.increment_drop('degenerate_subset')

        snapshot = collector.snapshot()
        assert snapshot.drop_reasons['unknown_source'] == 3
        assert snapshot.drop_reasons['missing_power'] == 2
        assert snapshot.total_dropped() == 6


class TestHistograms:
    """Tests for histogram recording."""

    def test_record_histogram(self):
        """Test recording values and reading statistics."""
        collector = MetricsCollector()

        for value in [1, 2, 3, 4, 5]:
            collector.record_histogram('consensus_iterations', value)

        stats = collector.get_histogram_stats('consensus_iterations')
        assert stats['count'] == 5
        assert stats['min'] == 1
        assert stats['max'] == 5
        assert stats['mean'] == pytest.approx(3.0)
        assert stats['median'] == 3

    def test_histogram_empty(self):
        """Test stats of a missing histogram."""
        collector = MetricsCollector()
        assert collector.get_histogram_stats('inlier_ratio') is None

    def test_histogram_max_samples_bounded(self):
        """Test that histograms do not grow without bound."""
        collector = MetricsCollector()

        for i in range(150):
            collector.record_histogram('inlier_ratio', i / 150, max_samples=100)

        stats = collector.get_histogram_stats('inlier_ratio')
        assert stats['count'] <= 100


class TestSnapshot:
    """Tests for snapshots."""

    def test_snapshot_creates_copy(self):
        """Test that snapshot creates independent copy."""
        collector = MetricsCollector()

        collector.increment('lateration_solves', 10)
        snapshot1 = collector.snapshot()

        collector.increment('lateration_solves', 5)
        snapshot2 = collector.snapshot()

        assert isinstance(snapshot1, CounterSnapshot)
        assert snapshot1.counters['lateration_solves'] == 10
        assert snapshot2.counters['lateration_solves'] == 15

    def test_snapshot_counts_drops(self):
        collector = MetricsCollector()

        collector.increment_drop('unknown_source', 5)
        collector.increment_drop('missing_power', 3)

        snapshot = collector.snapshot()
        assert snapshot.total_dropped() == 8
        assert snapshot.counters['items_dropped'] == 8


class TestReset:
    """Tests for reset functionality."""

    def test_reset_clears_counters(self):
        """Test that reset clears all counters."""
        collector = MetricsCollector()

        collector.increment('estimate_success', 100)
        collector.increment_drop('degenerate_subset', 5)
        collector.record_histogram('inlier_ratio', 0.8)

        collector.reset()

        assert collector.get_counter('estimate_success') == 0
        assert collector.get_counter('items_dropped') == 0
        snapshot = collector.snapshot()
        assert snapshot.total_dropped() == 0
        assert not snapshot.histograms
        assert 'estimate_success' in snapshot.counters


class TestThreadSafety:
    """Tests for thread-safe operations."""

    def test_concurrent_increment(self):
        """Test that concurrent increments are thread-safe."""
        collector = MetricsCollector()
        num_threads = 10
        increments_per_thread = 1000

        def worker():
            for _ in range(increments_per_thread):
                collector.increment('lateration_solves')

        threads = [threading.Thread(target=worker) for _ in range(num_threads)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert collector.get_counter('lateration_solves') == num_threads * increments_per_thread


class TestGlobalSingleton:
    """Tests for global metrics singleton."""

    def test_get_metrics_returns_same_instance(self):
        """Test that get_metrics() returns the same instance."""
        assert get_metrics() is get_metrics()

    def test_reset_metrics_creates_new_instance(self):
        """Test that reset_metrics() creates fresh instance."""
        metrics1 = get_metrics()
        metrics1.increment('test_counter', 100)

        reset_metrics()

        metrics2 = get_metrics()
        assert metrics2 is not metrics1
        assert metrics2.get_counter('test_counter') == 0


class TestDropReasonCodes:
    """Tests for standard drop reason codes."""

    def test_all_standard_drop_reasons_defined(self):
        """Test that all standard drop reasons are defined."""
        for reason in [
            'unknown_source',
            'missing_power',
            'missing_position',
            'degenerate_subset',
            'refinement_failed',
            'no_common_sources',
        ]:
            assert reason in MetricsCollector.DROP_REASONS

    def test_drop_reasons_initialized_to_zero(self):
        """Test that all drop reasons are initialized to 0."""
        snapshot = MetricsCollector().snapshot()
        for reason in MetricsCollector.DROP_REASONS:
            assert snapshot.drop_reasons[reason] == 0

