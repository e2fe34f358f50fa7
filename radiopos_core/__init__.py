"""
Radio Positioning Core Package.

Robust 2D/3D positioning from ranging and RSSI readings against located
radio sources (WiFi access points, BLE beacons).

Package structure:
- proto: Radio sources, readings, fingerprints, measurements, results
- localization: Measurement building, lateration, sample consensus
  estimators, fingerprint nearest neighbours
- metrics: Diagnostics, counters, histograms
"""

__version__ = "0.1.0"
__author__ = "Radio Positioning Team"

from .metrics import get_metrics
