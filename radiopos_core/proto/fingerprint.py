"""
Reading and Fingerprint Schemas.

A reading is a single radio measurement taken against one radio source:
a ranging distance, an RSSI value, or both. A fingerprint groups the
readings taken at one place and time; a located fingerprint adds the
known position where it was recorded.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple
from enum import IntEnum

from radiopos_core.proto.radio_source import RadioSource


class ReadingType(IntEnum):
    """Kind of radio reading."""

    RANGING = 0            # Distance only (e.g. UWB, WiFi RTT)
    RSSI = 1               # Received signal strength only
    RANGING_AND_RSSI = 2   # Both distance and RSSI


@dataclass(frozen=True)
class Reading:
    """
    Radio reading against a single source.

    Attributes:
        source: Radio source the reading was taken against
        distance_m: Measured distance in meters (ranging)
        distance_std_m: Std of measured distance (m), if known
        rssi_dbm: Received signal strength (dBm)
        rssi_std_db: Std of received signal strength (dB), if known
    """

    source: RadioSource
    distance_m: Optional[float] = None
    distance_std_m: Optional[float] = None
    rssi_dbm: Optional[float] = None
    rssi_std_db: Optional[float] = None

    def __post_init__(self):
        """Validate reading."""
        if self.source is None:
            raise ValueError("Reading source cannot be None")

        if self.distance_m is None and self.rssi_dbm is None:
            raise ValueError("Reading needs a distance, an RSSI value or both")

        if self.distance_m is not None and self.distance_m < 0:
            raise ValueError(f"Distance cannot be negative: {self.distance_m}")

        if self.distance_std_m is not None and self.distance_std_m <= 0:
            raise ValueError(f"Distance std must be positive: {self.distance_std_m}")

        if self.rssi_std_db is not None and self.rssi_std_db <= 0:
            raise ValueError(f"RSSI std must be positive: {self.rssi_std_db}")

    @property
    def reading_type(self) -> ReadingType:
        """Type of reading, derived from the populated fields."""
        if self.distance_m is not None and self.rssi_dbm is not None:
            return ReadingType.RANGING_AND_RSSI
        if self.distance_m is not None:
            return ReadingType.RANGING
        return ReadingType.RSSI

    @property
    def has_rssi(self) -> bool:
        return self.rssi_dbm is not None

    @property
    def has_distance(self) -> bool:
        return self.distance_m is not None


class Fingerprint:
    """
    Set of readings taken at a single location.

    Readings are kept in insertion order. A source may have several
    readings, e.g. a ranging reading and a separate RSSI reading; lookups
    by source id return the first matching one.
    """

    def __init__(self, readings: Sequence[Reading]):
        if readings is None:
            raise ValueError("Fingerprint readings cannot be None")
        self._readings: List[Reading] = list(readings)

    @property
    def readings(self) -> List[Reading]:
        """Readings in insertion order."""
        return list(self._readings)

    @property
    def source_ids(self) -> List[str]:
        """Distinct source ids, in order of first reading."""
        return list(dict.fromkeys(r.source.source_id for r in self._readings))

    def __len__(self) -> int:
        return len(self._readings)

    def __iter__(self):
        return iter(self._readings)

    def get_reading(self, source_id: str) -> Optional[Reading]:
        """Get the first reading for a source id, or None."""
        for reading in self._readings:
            if reading.source.source_id == source_id:
                return reading
        return None

    def get_readings(self, source_id: str) -> List[Reading]:
        """All readings for a source id, in insertion order."""
        return [r for r in self._readings if r.source.source_id == source_id]

    def rssi_by_source(self) -> Dict[str, float]:
        """Map of source id to the first RSSI (dBm) reported for it."""
        rssi: Dict[str, float] = {}
        for reading in self._readings:
            if reading.has_rssi:
                rssi.setdefault(reading.source.source_id, reading.rssi_dbm)
        return rssi

    def mean_rssi(self, source_ids: Optional[Sequence[str]] = None) -> float:
        """
        Mean RSSI over the given sources (all RSSI readings if None).

        Raises:
            ValueError: if no RSSI value is available
        """
        rssi = self.rssi_by_source()
        if source_ids is not None:
            values = [rssi[sid] for sid in source_ids if sid in rssi]
        else:
            values = list(rssi.values())

        if not values:
            raise ValueError("No RSSI readings available to compute mean")
        return sum(values) / len(values)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(readings={len(self)})"


class LocatedFingerprint(Fingerprint):
    """
    Fingerprint recorded at a known position.

    Immutable once constructed; used as a catalog entry for nearest
    neighbour search.
    """

    def __init__(self, readings: Sequence[Reading], position: Sequence[float]):
        super().__init__(readings)
        position = tuple(float(c) for c in position)
        if len(position) not in (2, 3):
            raise ValueError(f"Position must have 2 or 3 coordinates: {position}")
        self._position = position

    @property
    def position(self) -> Tuple[float, ...]:
        return self._position

    def __repr__(self) -> str:
        return f"{type(self).__name__}(readings={len(self)}, position={self._position})"
