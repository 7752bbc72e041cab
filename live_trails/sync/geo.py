"""
Distance/time filter for raw geolocation fixes.

Decides whether a new fix is significant enough to be recorded. The filter
suppresses GPS jitter while still guaranteeing at least one update per
interval when a device is stationary.
"""

import math
from dataclasses import dataclass

EARTH_RADIUS_METERS = 6_371_000.0

MIN_DISTANCE_METERS = 2.0
MIN_INTERVAL_MS = 1000


@dataclass(frozen=True)
class LastKnownLocation:
    """Most recently accepted fix on the publishing client (never persisted)."""

    latitude: float
    longitude: float
    captured_at: float  # local clock, ms


@dataclass(frozen=True)
class Candidate:
    """A validated fix waiting for a filter decision."""

    latitude: float
    longitude: float
    now: float  # local clock, ms


def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in meters between two lat/lng points."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlam = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlam / 2) ** 2
    return EARTH_RADIUS_METERS * 2 * math.asin(min(1.0, math.sqrt(a)))


def is_valid_coordinate(latitude: object, longitude: object) -> bool:
    """
    Check that a latitude/longitude pair can be fed to the filter.

    Rejects non-numeric values (including booleans), NaN, infinities and
    out-of-range coordinates.
    """
    for value in (latitude, longitude):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        if not math.isfinite(value):
            return False
    return -90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0  # type: ignore[operator]


def should_accept(
    previous: LastKnownLocation | None,
    candidate: Candidate,
    *,
    min_distance: float = MIN_DISTANCE_METERS,
    min_interval: float = MIN_INTERVAL_MS,
) -> bool:
    """
    Decide whether a candidate fix should be recorded.

    The first fix is always accepted. Afterwards a fix is rejected only when
    it is both closer than ``min_distance`` meters and sooner than
    ``min_interval`` ms relative to the previous accepted fix.

    Args:
        previous: Last accepted fix, or None before the first fix
        candidate: The new fix
        min_distance: Distance threshold in meters
        min_interval: Time threshold in milliseconds

    Returns:
        True when the caller should record the candidate and remember it
        as the new ``previous``
    """
    if previous is None:
        return True

    distance = haversine_distance(
        previous.latitude, previous.longitude,
        candidate.latitude, candidate.longitude,
    )
    elapsed = candidate.now - previous.captured_at
    return distance >= min_distance or elapsed >= min_interval
