"""
Radio Source Schemas.

Defines radio sources (WiFi access points, BLE beacons) and their located
variants carrying a known position and, optionally, the path-loss
parameters needed to turn RSSI into a pseudo-distance.
"""

from dataclasses import dataclass
from typing import Optional, Tuple
from enum import IntEnum
import numpy as np


DEFAULT_FREQUENCY_HZ = 2.4e9
DEFAULT_PATH_LOSS_EXPONENT = 2.0


class RadioSourceType(IntEnum):
    """Kind of radio source."""

    GENERIC = 0
    WIFI_ACCESS_POINT = 1
    BEACON = 2


@dataclass(eq=False)
class RadioSource:
    """
    Radio source identity.

    Attributes:
        source_id: Unique identifier (BSSID, beacon UUID, ...)
        source_type: Kind of radio source
        frequency_hz: Carrier frequency in Hz

    Notes:
        - Two sources are the same source when their ids match, regardless
          of position or path-loss parameters.
    """

    source_id: str
    source_type: RadioSourceType = RadioSourceType.GENERIC
    frequency_hz: float = DEFAULT_FREQUENCY_HZ

    def __post_init__(self):
        if not self.source_id:
            raise ValueError("Radio source id cannot be empty")
        if self.frequency_hz <= 0:
            raise ValueError(f"Frequency must be positive: {self.frequency_hz}")

    def __eq__(self, other) -> bool:
        if not isinstance(other, RadioSource):
            return NotImplemented
        return self.source_id == other.source_id

    def __hash__(self) -> int:
        return hash(self.source_id)


@dataclass(eq=False)
class LocatedRadioSource(RadioSource):
    """
    Radio source with a known position.

    Attributes:
        position: Source position (x, y) or (x, y, z) in meters
        position_covariance: Position covariance (dim x dim), if known
        transmitted_power_dbm: Equivalent transmitted power (dBm), if known
        transmitted_power_std_db: Std of transmitted power (dB)
        path_loss_exponent: Path-loss exponent (2.0 in free space)
        path_loss_exponent_std: Std of path-loss exponent
    """

    position: Tuple[float, ...] = ()
    position_covariance: Optional[np.ndarray] = None
    transmitted_power_dbm: Optional[float] = None
    transmitted_power_std_db: Optional[float] = None
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT
    path_loss_exponent_std: Optional[float] = None

    def __post_init__(self):
        super().__post_init__()
        self.position = tuple(float(c) for c in self.position)
        if len(self.position) not in (2, 3):
            raise ValueError(
                f"Position must have 2 or 3 coordinates: {self.position}"
            )

        if self.position_covariance is not None:
            self.position_covariance = np.asarray(self.position_covariance, dtype=float)
            dims = len(self.position)
            if self.position_covariance.shape != (dims, dims):
                raise ValueError(
                    f"Position covariance must be {dims}x{dims}, "
                    f"got {self.position_covariance.shape}"
                )

        if self.path_loss_exponent <= 0:
            raise ValueError(
                f"Path-loss exponent must be positive: {self.path_loss_exponent}"
            )

        for name in ('transmitted_power_std_db', 'path_loss_exponent_std'):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} cannot be negative: {value}")

    @property
    def num_dimensions(self) -> int:
        """Number of position coordinates."""
        return len(self.position)

    @property
    def has_power(self) -> bool:
        """True if path-loss model parameters are available."""
        return self.transmitted_power_dbm is not None

    def distance_to(self, point) -> float:
        """Euclidean distance from this source to a point."""
        return float(np.linalg.norm(np.asarray(point, dtype=float) - np.asarray(self.position)))
