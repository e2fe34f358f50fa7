"""
Measurement Builder.

Converts a fingerprint of readings plus a list of located radio sources into
the uniform measurements consumed by the lateration solver:

    (reference position, distance, distance std, quality score)

Ranging readings are used as-is. RSSI readings are turned into
pseudo-distances with the log-distance path-loss model

    Prx = n * kdB + Ptx - 10 * n * log10(d),    kdB = 10 * log10(c / (4 * pi * f))

and their uncertainty is propagated to first order from the transmitted
power, received power and path-loss exponent variances.
"""

import logging
import math
from typing import List, Optional, Sequence

import numpy as np

from radiopos_core.proto.radio_source import LocatedRadioSource
from radiopos_core.proto.fingerprint import Fingerprint, Reading, ReadingType
from radiopos_core.proto.measurement import Measurement
from radiopos_core.metrics import get_metrics

logger = logging.getLogger(__name__)

SPEED_OF_LIGHT_M_S = 299792458.0

# Used when neither the reading nor the source carries uncertainty
FALLBACK_DISTANCE_STD = 1.0e-3

# Distances are clamped to this value so residual weights stay finite
MIN_DISTANCE_M = 1.0e-7

DEFAULT_QUALITY_SCORE = 1.0


def _k_db(frequency_hz: float) -> float:
    """Free-space constant 10*log10(c / (4*pi*f)) in dB."""
    k = SPEED_OF_LIGHT_M_S / (4.0 * math.pi * frequency_hz)
    return 10.0 * math.log10(k)


def rssi_to_distance(
    rssi_dbm: float,
    transmitted_power_dbm: float,
    path_loss_exponent: float,
    frequency_hz: float,
) -> float:
    """
    Invert the path-loss model to get a pseudo-distance.

    Args:
        rssi_dbm: Received power (dBm)
        transmitted_power_dbm: Equivalent transmitted power (dBm)
        path_loss_exponent: Path-loss exponent
        frequency_hz: Carrier frequency (Hz)

    Returns:
        Distance in meters
    """
    if path_loss_exponent <= 0:
        raise ValueError(f"Path-loss exponent must be positive: {path_loss_exponent}")

    exponent = (
        path_loss_exponent * _k_db(frequency_hz) + transmitted_power_dbm - rssi_dbm
    ) / (10.0 * path_loss_exponent)
    return 10.0 ** exponent


def distance_to_rssi(
    distance_m: float,
    transmitted_power_dbm: float,
    path_loss_exponent: float,
    frequency_hz: float,
) -> float:
    """Expected received power (dBm) at a distance."""
    if distance_m <= 0:
        raise ValueError(f"Distance must be positive: {distance_m}")
    return (
        path_loss_exponent * _k_db(frequency_hz)
        + transmitted_power_dbm
        - 10.0 * path_loss_exponent * math.log10(distance_m)
    )


def rssi_distance_variance(
    rssi_dbm: float,
    transmitted_power_dbm: float,
    path_loss_exponent: float,
    frequency_hz: float,
    rssi_variance: float = 0.0,
    transmitted_power_variance: float = 0.0,
    path_loss_exponent_variance: float = 0.0,
) -> float:
    """
    First-order propagation of path-loss model variances to distance variance.

    Covariance between transmitted power and path-loss exponent is ignored.

    Returns:
        Distance variance in m^2
    """
    distance = rssi_to_distance(
        rssi_dbm, transmitted_power_dbm, path_loss_exponent, frequency_hz
    )

    ln10 = math.log(10.0)
    ten_n = 10.0 * path_loss_exponent

    d_tx = ln10 / ten_n * distance
    d_rx = -ln10 / ten_n * distance
    d_n = -ln10 * distance * (transmitted_power_dbm - rssi_dbm) / (
        10.0 * path_loss_exponent ** 2
    )

    return (
        d_tx * d_tx * transmitted_power_variance
        + d_rx * d_rx * rssi_variance
        + d_n * d_n * path_loss_exponent_variance
    )


def position_std_from_covariance(covariance: np.ndarray) -> Optional[float]:
    """
    Average positional std from a covariance matrix.

    Singular values of the covariance are the variances along its principal
    axes; their mean is used as a scalar variance.
    """
    try:
        singular_values = np.linalg.svd(np.asarray(covariance, dtype=float), compute_uv=False)
    except np.linalg.LinAlgError:
        return None
    return float(math.sqrt(float(np.mean(singular_values))))


def _ranging_measurement(
    reading: Reading,
    position_std: Optional[float],
    fallback_distance_std: float,
):
    """Distance and std from a ranging reading."""
    std = None
    if reading.distance_std_m is not None or position_std is not None:
        variance = 0.0
        if reading.distance_std_m is not None:
            variance += reading.distance_std_m ** 2
        if position_std is not None:
            variance += position_std ** 2
        std = math.sqrt(variance)

    if std is None or std <= 0:
        std = fallback_distance_std
    return reading.distance_m, std


def _rssi_measurement(
    source: LocatedRadioSource,
    reading: Reading,
    position_std: Optional[float],
    fallback_distance_std: float,
):
    """Pseudo-distance and std from an RSSI reading."""
    distance = rssi_to_distance(
        reading.rssi_dbm,
        source.transmitted_power_dbm,
        source.path_loss_exponent,
        source.frequency_hz,
    )

    has_uncertainty = (
        reading.rssi_std_db is not None
        or source.transmitted_power_std_db is not None
        or source.path_loss_exponent_std is not None
        or position_std is not None
    )

    std = None
    if has_uncertainty:
        variance = rssi_distance_variance(
            reading.rssi_dbm,
            source.transmitted_power_dbm,
            source.path_loss_exponent,
            source.frequency_hz,
            rssi_variance=(reading.rssi_std_db or 0.0) ** 2,
            transmitted_power_variance=(source.transmitted_power_std_db or 0.0) ** 2,
            path_loss_exponent_variance=(source.path_loss_exponent_std or 0.0) ** 2,
        )
        if position_std is not None:
            variance += position_std ** 2
        std = math.sqrt(variance)

    if std is None or std <= 0:
        std = fallback_distance_std
    return distance, std


def build_measurements(
    sources: Sequence[LocatedRadioSource],
    fingerprint: Fingerprint,
    source_quality_scores: Optional[Sequence[float]] = None,
    reading_quality_scores: Optional[Sequence[float]] = None,
    use_position_covariance: bool = False,
    fallback_distance_std: float = FALLBACK_DISTANCE_STD,
) -> List[Measurement]:
    """
    Build measurements from located sources and a fingerprint.

    Args:
        sources: Located radio sources (positions known)
        fingerprint: Readings taken at the unknown position
        source_quality_scores: Optional score per source (same order as sources)
        reading_quality_scores: Optional score per reading (fingerprint order)
        use_position_covariance: Add source position uncertainty to distance std
        fallback_distance_std: Std used when no uncertainty is available

    Returns:
        Measurements in fingerprint reading order. A ranging-and-RSSI reading
        yields two measurements (ranging first).

    Raises:
        ValueError: on negative fallback std or mismatched score lengths
    """
    if fallback_distance_std < 0:
        raise ValueError(
            f"Fallback distance std cannot be negative: {fallback_distance_std}"
        )
    if sources is None or fingerprint is None:
        raise ValueError("Sources and fingerprint are required")

    readings = fingerprint.readings

    if source_quality_scores is not None and len(source_quality_scores) != len(sources):
        raise ValueError(
            f"Expected {len(sources)} source quality scores, "
            f"got {len(source_quality_scores)}"
        )
    if reading_quality_scores is not None and len(reading_quality_scores) != len(readings):
        raise ValueError(
            f"Expected {len(readings)} reading quality scores, "
            f"got {len(reading_quality_scores)}"
        )

    metrics = get_metrics()
    index_by_id = {source.source_id: i for i, source in enumerate(sources)}

    measurements: List[Measurement] = []
    for reading_index, reading in enumerate(readings):
        source_index = index_by_id.get(reading.source.source_id)
        if source_index is None:
            metrics.increment_drop('unknown_source')
            continue

        source = sources[source_index]
        if not source.position:
            metrics.increment_drop('missing_position')
            continue

        quality = None
        if source_quality_scores is not None:
            quality = float(source_quality_scores[source_index])
        if reading_quality_scores is not None:
            quality = (quality or 0.0) + float(reading_quality_scores[reading_index])
        if quality is None:
            quality = DEFAULT_QUALITY_SCORE

        position_std = None
        if use_position_covariance and source.position_covariance is not None:
            position_std = position_std_from_covariance(source.position_covariance)

        pairs = []
        reading_type = reading.reading_type
        if reading_type in (ReadingType.RANGING, ReadingType.RANGING_AND_RSSI):
            pairs.append(
                _ranging_measurement(reading, position_std, fallback_distance_std)
            )
        if reading_type in (ReadingType.RSSI, ReadingType.RANGING_AND_RSSI):
            if source.has_power:
                pairs.append(
                    _rssi_measurement(source, reading, position_std, fallback_distance_std)
                )
            else:
                metrics.increment_drop('missing_power')

        for distance, std in pairs:
            measurements.append(Measurement(
                position=source.position,
                distance_m=max(distance, MIN_DISTANCE_M),
                distance_std_m=std if std > 0 else MIN_DISTANCE_M,
                quality_score=quality,
            ))

    metrics.increment('measurements_built', len(measurements))
    logger.debug(
        "Built %d measurements from %d readings and %d sources",
        len(measurements), len(readings), len(sources),
    )
    return measurements
