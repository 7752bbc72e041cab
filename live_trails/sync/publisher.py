"""
Location publisher.

Owns the local device's geolocation watch, runs every raw fix through the
distance/time filter and appends accepted fixes to the user's stream in the
shared store.
"""

import logging
import math
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from live_trails.sync.geo import (MIN_DISTANCE_METERS, MIN_INTERVAL_MS,
                                  Candidate, LastKnownLocation,
                                  is_valid_coordinate, should_accept)
from live_trails.sync.registry import SessionRegistry
from live_trails.sync.store import (Record, Store, StoreError, Subscription,
                                    call_maybe_async)

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def wall_clock_ms() -> float:
    """Current wall-clock time in milliseconds."""
    return time.time() * 1000


class GeolocationError(Exception):
    """
    Error reported by a geolocation source.

    Codes follow the browser Geolocation API.
    """

    PERMISSION_DENIED = "PERMISSION_DENIED"
    POSITION_UNAVAILABLE = "POSITION_UNAVAILABLE"
    TIMEOUT = "TIMEOUT"

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(message or code)
        self.code = code
        self.message = message or code


@dataclass(frozen=True)
class Fix:
    """One raw reading from a geolocation source."""

    latitude: Any
    longitude: Any
    accuracy: float | None = None


@dataclass(frozen=True)
class WatchOptions:
    """Options passed to ``GeolocationSource.watch_position``."""

    high_accuracy: bool = True
    max_age: int = 0
    timeout: int | None = None


@dataclass(frozen=True)
class LocationSample:
    """An accepted, immutable location sample."""

    user_id: str
    latitude: float
    longitude: float
    timestamp: int  # ms

    def to_record(self) -> Record:
        """Convert to the record written to the store."""
        return {
            "user_id": self.user_id,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_record(cls, record: Record | None, user_id: str | None = None) -> "LocationSample | None":
        """
        Build a sample from a store record.

        Args:
            record: Raw record as delivered by the store
            user_id: Owner to use when the record does not carry one

        Returns:
            The sample, or None if the record is missing its owner, a
            coordinate or a timestamp, or holds invalid values
        """
        if not record:
            return None
        owner = record.get("user_id") or user_id
        latitude = record.get("latitude")
        longitude = record.get("longitude")
        timestamp = record.get("timestamp")
        if not owner or not is_valid_coordinate(latitude, longitude):
            return None
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            return None
        if not math.isfinite(timestamp):
            return None
        return cls(
            user_id=str(owner),
            latitude=float(latitude),  # type: ignore[arg-type]
            longitude=float(longitude),  # type: ignore[arg-type]
            timestamp=int(timestamp),
        )


FixCallback = Callable[[Fix], Any]
GeolocationErrorCallback = Callable[[GeolocationError], Any]
ErrorListener = Callable[[Exception], Any]


class GeolocationSource(ABC):
    """Device geolocation collaborator."""

    @abstractmethod
    def watch_position(
        self,
        on_fix: FixCallback,
        on_error: GeolocationErrorCallback,
        options: WatchOptions,
    ) -> Subscription:
        """
        Start delivering fixes.

        Raises:
            GeolocationError: If geolocation is unavailable or denied
        """

    def clear_watch(self, handle: Subscription) -> None:
        """Stop delivering fixes for a watch."""
        handle.cancel()


class PushGeolocationSource(GeolocationSource):
    """
    Geolocation source fed by a transport.

    WebSocket and MQTT sessions push the fixes they receive from a device
    into this source; every active watch gets them.
    """

    def __init__(self) -> None:
        self._watchers: dict[int, tuple[FixCallback, GeolocationErrorCallback]] = {}
        self._next_id = 1
        self._denied: GeolocationError | None = None

    def fail_with(self, error: GeolocationError | None) -> None:
        """Make subsequent ``watch_position`` calls raise ``error``."""
        self._denied = error

    @property
    def watch_count(self) -> int:
        """Number of active watches."""
        return len(self._watchers)

    def watch_position(
        self,
        on_fix: FixCallback,
        on_error: GeolocationErrorCallback,
        options: WatchOptions,
    ) -> Subscription:
        if self._denied is not None:
            raise self._denied
        watch_id = self._next_id
        self._next_id += 1
        self._watchers[watch_id] = (on_fix, on_error)
        logger.debug("Geolocation watch %d started (high_accuracy=%s)", watch_id, options.high_accuracy)
        return Subscription(lambda: self._watchers.pop(watch_id, None))

    async def push_fix(self, fix: Fix) -> None:
        """Deliver a fix to every active watch."""
        for on_fix, _ in list(self._watchers.values()):
            try:
                await call_maybe_async(on_fix, fix)
            except Exception:
                logger.exception("Error in geolocation fix callback")

    async def push_error(self, error: GeolocationError) -> None:
        """Deliver a sensor error to every active watch."""
        for _, on_error in list(self._watchers.values()):
            try:
                await call_maybe_async(on_error, error)
            except Exception:
                logger.exception("Error in geolocation error callback")


class PublisherState(StrEnum):
    """Lifecycle of a LocationPublisher."""

    IDLE = "idle"
    WATCHING = "watching"
    STOPPED = "stopped"


class LocationPublisher:
    """
    Publishes the local user's filtered fixes to the shared store.

    Every accepted fix is written at most once: a failed write is logged and
    dropped, and the next accepted fix supersedes it.
    """

    def __init__(
        self,
        store: Store,
        source: GeolocationSource,
        *,
        clock: Clock = wall_clock_ms,
        min_distance: float = MIN_DISTANCE_METERS,
        min_interval: float = MIN_INTERVAL_MS,
        options: WatchOptions | None = None,
        registry: SessionRegistry | None = None,
    ) -> None:
        self._store = store
        self._source = source
        self._clock = clock
        self._min_distance = min_distance
        self._min_interval = min_interval
        self._options = options or WatchOptions()
        self._registry = registry or SessionRegistry()

        self.state = PublisherState.IDLE
        self.user_id: str | None = None
        self.last_known: LastKnownLocation | None = None
        self._watch: Subscription | None = None
        self._error_listeners: list[ErrorListener] = []

    def on_error(self, callback: ErrorListener) -> None:
        """Register a callback on the error channel (bad fixes, sensor and store errors)."""
        self._error_listeners.append(callback)

    def start(self, user_id: str) -> None:
        """
        Start watching the device's position for ``user_id``.

        Raises:
            RuntimeError: If the publisher was already started or stopped
            ValueError: If ``user_id`` is empty
            GeolocationError: If the source refuses to start a watch; the
                publisher stays idle
        """
        if self.state is not PublisherState.IDLE:
            raise RuntimeError(f"Expected idle publisher, got {self.state}")
        if not user_id:
            raise ValueError("user_id is required to publish locations")

        self.user_id = user_id
        self.last_known = None
        self._watch = self._source.watch_position(self.handle_fix, self._handle_geolocation_error, self._options)
        self.state = PublisherState.WATCHING
        logger.info("Publishing locations for %s", user_id)

    def stop(self) -> None:
        """Cancel the geolocation watch (idempotent)."""
        if self.state is PublisherState.STOPPED:
            return
        if self._watch is not None:
            self._source.clear_watch(self._watch)
            self._watch = None
        previous = self.state
        self.state = PublisherState.STOPPED
        if previous is PublisherState.WATCHING:
            logger.info("Stopped publishing locations for %s", self.user_id)

    async def handle_fix(self, fix: Fix) -> LocationSample | None:
        """
        Process one raw fix.

        Returns:
            The sample that was written, or None if the fix was invalid,
            filtered out or could not be written
        """
        if self.state is not PublisherState.WATCHING or self.user_id is None:
            logger.debug("Ignoring fix while %s", self.state)
            return None

        if not is_valid_coordinate(fix.latitude, fix.longitude):
            logger.warning("Dropping fix with invalid coordinates: lat=%r, lng=%r", fix.latitude, fix.longitude)
            await self._report(ValueError(f"Expected numeric coordinates, got lat={fix.latitude!r}, lng={fix.longitude!r}"))
            return None

        now = self._clock()
        candidate = Candidate(float(fix.latitude), float(fix.longitude), now)
        if not should_accept(
            self.last_known,
            candidate,
            min_distance=self._min_distance,
            min_interval=self._min_interval,
        ):
            logger.debug("Fix filtered out for %s", self.user_id)
            return None

        # Remember the fix before the write suspends so a fix arriving
        # during the write is filtered against it
        self.last_known = LastKnownLocation(candidate.latitude, candidate.longitude, now)
        sample = LocationSample(
            user_id=self.user_id,
            latitude=candidate.latitude,
            longitude=candidate.longitude,
            timestamp=self._registry.next_timestamp(self.user_id, self._clock()),
        )

        try:
            await self._store.append(self.user_id, sample.to_record())
        except StoreError as exc:
            logger.warning("Failed to write location for %s: %s", self.user_id, exc)
            await self._report(exc)
            return None

        logger.debug("Location written for %s at %d", self.user_id, sample.timestamp)
        return sample

    async def _handle_geolocation_error(self, error: GeolocationError) -> None:
        logger.warning("Geolocation error for %s: %s", self.user_id, error.code)
        if error.code == GeolocationError.PERMISSION_DENIED:
            # Permission must be granted again out of band; no retries
            self.stop()
        await self._report(error)

    async def _report(self, error: Exception) -> None:
        for callback in self._error_listeners:
            try:
                await call_maybe_async(callback, error)
            except Exception:
                logger.exception("Error in publisher error callback")
