"""
Protocol Module: Data schemas shared by the estimators.

- Radio sources (identity, position, path-loss parameters)
- Readings and fingerprints
- Measurements and estimation results
"""

from .radio_source import (
    RadioSource,
    RadioSourceType,
    LocatedRadioSource,
    DEFAULT_FREQUENCY_HZ,
    DEFAULT_PATH_LOSS_EXPONENT,
)
from .fingerprint import (
    Reading,
    ReadingType,
    Fingerprint,
    LocatedFingerprint,
)
from .measurement import (
    Measurement,
    InliersData,
    EstimationResult,
)

__all__ = [
    'RadioSource',
    'RadioSourceType',
    'LocatedRadioSource',
    'DEFAULT_FREQUENCY_HZ',
    'DEFAULT_PATH_LOSS_EXPONENT',
    'Reading',
    'ReadingType',
    'Fingerprint',
    'LocatedFingerprint',
    'Measurement',
    'InliersData',
    'EstimationResult',
]
