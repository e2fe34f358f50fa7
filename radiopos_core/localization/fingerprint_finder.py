"""
Fingerprint Nearest Neighbour Finder.

Ranks a catalog of located fingerprints by RSSI similarity to a query
fingerprint. Two policies:

- raw: Euclidean distance over the RSSI of radio sources common to both
  fingerprints; sources present in only one are ignored.
- mean-removed: each fingerprint's mean RSSI over the common sources is
  subtracted first, cancelling a constant receiver calibration bias.

Catalog entries sharing no radio source with the query are never ranked.
"""

import math
from typing import List, Optional, Sequence, Tuple

from radiopos_core.proto.fingerprint import Fingerprint, LocatedFingerprint
from radiopos_core.metrics import get_metrics


def signal_distance(
    query: Fingerprint,
    candidate: Fingerprint,
    remove_mean: bool = False,
) -> Optional[float]:
    """
    RSSI distance between two fingerprints over their common sources.

    Args:
        query: Query fingerprint
        candidate: Fingerprint to compare against
        remove_mean: Subtract each side's mean RSSI over common sources

    Returns:
        Euclidean distance in dB, or None if no source is shared
    """
    query_rssi = query.rssi_by_source()
    candidate_rssi = candidate.rssi_by_source()

    common = [sid for sid in query_rssi if sid in candidate_rssi]
    if not common:
        return None

    query_mean = 0.0
    candidate_mean = 0.0
    if remove_mean:
        query_mean = sum(query_rssi[sid] for sid in common) / len(common)
        candidate_mean = sum(candidate_rssi[sid] for sid in common) / len(common)

    sqr_sum = 0.0
    for sid in common:
        diff = (query_rssi[sid] - query_mean) - (candidate_rssi[sid] - candidate_mean)
        sqr_sum += diff * diff
    return math.sqrt(sqr_sum)


class FingerprintNearestFinder:
    """
    k-nearest located fingerprints to a query fingerprint.

    Holds no state between calls other than the catalog, so searches can be
    repeated freely.

    Usage:
        finder = FingerprintNearestFinder(catalog, remove_mean=True)
        for entry, dist in finder.find_nearest(query, k=3):
            print(entry.position, dist)
    """

    signal_distance = staticmethod(signal_distance)

    def __init__(
        self,
        catalog: Sequence[LocatedFingerprint],
        remove_mean: bool = False,
    ):
        """
        Initialize finder.

        Args:
            catalog: Located fingerprints to search
            remove_mean: Use the mean-removed distance policy

        Raises:
            ValueError: if catalog is None
        """
        if catalog is None:
            raise ValueError("Fingerprint catalog cannot be None")
        self.catalog = list(catalog)
        self.remove_mean = remove_mean
        self.metrics = get_metrics()

    def find_nearest(
        self,
        query: Fingerprint,
        k: int,
    ) -> List[Tuple[LocatedFingerprint, float]]:
        """
        Find up to k nearest catalog entries.

        Args:
            query: Query fingerprint
            k: Maximum number of entries to return (>= 1)

        Returns:
            (entry, distance) pairs, ascending distance; ties keep catalog order
        """
        if k < 1:
            raise ValueError(f"k must be at least 1: {k}")
        if query is None:
            raise ValueError("Query fingerprint cannot be None")

        self.metrics.increment('nearest_searches')

        ranked = []
        for index, entry in enumerate(self.catalog):
            dist = signal_distance(query, entry, self.remove_mean)
            if dist is None:
                self.metrics.increment_drop('no_common_sources')
                continue
            ranked.append((dist, index, entry))

        ranked.sort(key=lambda item: (item[0], item[1]))
        return [(entry, dist) for dist, _, entry in ranked[:k]]

    def find_nearest_to(self, query: Fingerprint) -> Optional[LocatedFingerprint]:
        """Single nearest catalog entry, or None if nothing is comparable."""
        nearest = self.find_nearest(query, 1)
        if not nearest:
            return None
        return nearest[0][0]


def find_nearest(
    query: Fingerprint,
    catalog: Sequence[LocatedFingerprint],
    k: int,
    remove_mean: bool = False,
) -> List[Tuple[LocatedFingerprint, float]]:
    """Convenience wrapper around FingerprintNearestFinder.find_nearest."""
    return FingerprintNearestFinder(catalog, remove_mean).find_nearest(query, k)
