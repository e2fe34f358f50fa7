"""
Pytest configuration and shared fixtures for radio positioning tests.

This module provides reusable fixtures for lateration, sample consensus,
measurement building and fingerprint search tests.
"""

import sys
import math
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from radiopos_core.metrics import reset_metrics
from radiopos_core.proto import (
    LocatedRadioSource,
    LocatedFingerprint,
    Fingerprint,
    Measurement,
    Reading,
)
from radiopos_core.localization.measurement_builder import distance_to_rssi


# =============================================================================
# Metrics
# =============================================================================


@pytest.fixture(autouse=True)
def fresh_metrics():
    """
    Fresh global metrics for every test.

    Objects cache the collector at construction, so tests must build them
    after this fixture runs.
    """
    reset_metrics()
    yield


# =============================================================================
# Source Layout Fixtures
# =============================================================================


@pytest.fixture
def triangle_positions_2d() -> List[Tuple[float, float]]:
    """
    Three sources forming a right triangle.

    Returns:
        List of (x, y) tuples in meters.
    """
    return [
        (0.0, 0.0),
        (10.0, 0.0),
        (0.0, 10.0),
    ]


@pytest.fixture
def true_position_2d() -> Tuple[float, float]:
    """Device position inside the triangle."""
    return (3.0, 4.0)


@pytest.fixture
def grid_positions_2d() -> List[Tuple[float, float]]:
    """
    Ten sources scattered around a 20m x 20m area.

    Returns:
        List of (x, y) tuples in meters.
    """
    return [
        (0.0, 0.0),
        (20.0, 0.0),
        (0.0, 20.0),
        (20.0, 20.0),
        (10.0, -5.0),
        (-5.0, 10.0),
        (25.0, 10.0),
        (10.0, 25.0),
        (3.0, 17.0),
        (17.0, 3.0),
    ]


@pytest.fixture
def cube_positions_3d() -> List[Tuple[float, float, float]]:
    """
    Six sources around a 10m cube, not coplanar.

    Returns:
        List of (x, y, z) tuples in meters.
    """
    return [
        (0.0, 0.0, 0.0),
        (10.0, 0.0, 1.0),
        (0.0, 10.0, 2.0),
        (0.0, 0.0, 10.0),
        (10.0, 10.0, 5.0),
        (5.0, -3.0, 8.0),
    ]


@pytest.fixture
def triangle_sources_2d(triangle_positions_2d) -> List[LocatedRadioSource]:
    """Located WiFi-like sources at the triangle corners, with known power."""
    return make_sources(triangle_positions_2d, transmitted_power_dbm=-30.0)


# =============================================================================
# Helper Functions
# =============================================================================


def calculate_distance(p1: Sequence[float], p2: Sequence[float]) -> float:
    """
    Calculate Euclidean distance between two points of any dimension.

    Args:
        p1: First point.
        p2: Second point.

    Returns:
        Distance in the same units as input.
    """
    return math.sqrt(sum((a - b) ** 2 for a, b in zip(p1, p2)))


def make_sources(
    positions: Sequence[Sequence[float]],
    transmitted_power_dbm: Optional[float] = None,
    prefix: str = "ap",
) -> List[LocatedRadioSource]:
    """Create located sources named ap0, ap1, ... at the given positions."""
    return [
        LocatedRadioSource(
            source_id=f"{prefix}{i}",
            position=tuple(position),
            transmitted_power_dbm=transmitted_power_dbm,
        )
        for i, position in enumerate(positions)
    ]


def make_measurements(
    positions: Sequence[Sequence[float]],
    true_position: Sequence[float],
    std: float = 0.1,
    errors: Optional[Sequence[float]] = None,
    quality_scores: Optional[Sequence[float]] = None,
) -> List[Measurement]:
    """
    Create range measurements from reference positions to a true position.

    Args:
        positions: Reference positions.
        true_position: Device position.
        std: Distance standard deviation of every measurement.
        errors: Optional additive error per measurement.
        quality_scores: Optional quality score per measurement.

    Returns:
        List of Measurement.
    """
    measurements = []
    for i, position in enumerate(positions):
        distance = calculate_distance(position, true_position)
        if errors is not None:
            distance = abs(distance + errors[i])
        measurements.append(Measurement(
            position=tuple(position),
            distance_m=distance,
            distance_std_m=std,
            quality_score=1.0 if quality_scores is None else quality_scores[i],
        ))
    return measurements


def make_ranging_fingerprint(
    sources: Sequence[LocatedRadioSource],
    true_position: Sequence[float],
    errors: Optional[Sequence[float]] = None,
) -> Fingerprint:
    """Fingerprint of exact (or offset) ranging readings to every source."""
    readings = []
    for i, source in enumerate(sources):
        distance = source.distance_to(true_position)
        if errors is not None:
            distance = abs(distance + errors[i])
        readings.append(Reading(source=source, distance_m=distance))
    return Fingerprint(readings)


def rssi_fingerprint(
    sources: Sequence[LocatedRadioSource],
    position: Sequence[float],
    transmitted_power_dbm: float = -30.0,
    path_loss_exponent: float = 2.0,
    bias_db: float = 0.0,
    located: bool = False,
) -> Fingerprint:
    """
    Noiseless RSSI fingerprint at a position from the path-loss model.

    Args:
        sources: Radio sources.
        position: Where the fingerprint is recorded.
        transmitted_power_dbm: Transmitted power of every source.
        path_loss_exponent: Path-loss exponent of every source.
        bias_db: Constant offset added to every reading.
        located: Return a LocatedFingerprint at position.
    """
    readings = []
    for source in sources:
        rssi = distance_to_rssi(
            source.distance_to(position),
            transmitted_power_dbm,
            path_loss_exponent,
            source.frequency_hz,
        )
        readings.append(Reading(source=source, rssi_dbm=rssi + bias_db))

    if located:
        return LocatedFingerprint(readings, position)
    return Fingerprint(readings)


def outlier_errors(
    rng: np.random.Generator,
    num_measurements: int,
    outlier_fraction: float = 0.2,
    outlier_std: float = 10.0,
    inlier_std: float = 0.0,
) -> np.ndarray:
    """
    Additive errors where a fraction of measurements are gross outliers.

    Outliers get at least 3m of error so they are separable from inliers.
    """
    errors = rng.normal(0.0, inlier_std, num_measurements) if inlier_std > 0 else (
        np.zeros(num_measurements)
    )
    num_outliers = int(round(outlier_fraction * num_measurements))
    outlier_indices = rng.choice(num_measurements, size=num_outliers, replace=False)
    for i in outlier_indices:
        error = rng.normal(0.0, outlier_std)
        errors[i] = math.copysign(max(abs(error), 3.0), error)
    return errors
