"""
Per-session context.

Everything a single client connection owns (its publisher state, presence
heartbeat and open subscriptions) lives on one ``SessionContext`` created
at sign-in (or connect, for anonymous viewers) and closed on sign-out or
disconnect.
"""

import logging
from dataclasses import dataclass
from types import TracebackType

from live_trails.sync.aggregator import TrailAggregator, TrailListener
from live_trails.sync.geo import MIN_DISTANCE_METERS, MIN_INTERVAL_MS
from live_trails.sync.presence import (HEARTBEAT_INTERVAL_SECONDS,
                                       ONLINE_TIMEOUT_MS, PresenceListener,
                                       PresenceTracker, PresenceView)
from live_trails.sync.publisher import (Clock, ErrorListener,
                                        GeolocationSource, LocationPublisher,
                                        wall_clock_ms)
from live_trails.sync.registry import SessionRegistry
from live_trails.sync.store import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """Signed-in user owning a session."""

    user_id: str
    email: str = ""
    display_name: str = ""


@dataclass(frozen=True)
class SyncSettings:
    """Tunables for a session."""

    min_distance: float = MIN_DISTANCE_METERS
    min_interval: float = MIN_INTERVAL_MS
    heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS
    online_timeout: float = ONLINE_TIMEOUT_MS
    sweep_interval: float | None = None
    per_user_trails: bool = False


class SessionContext:
    """
    Wires the sync components for one connection.

    A session with an identity publishes (publisher + presence tracker);
    a session with ``observe=True`` also maintains the shared view
    (trail aggregator + presence view). Usable as an async context manager.

    Every session of a process should get the same ``registry`` so that
    sessions of one user coordinate their presence and sample timestamps.
    """

    def __init__(
        self,
        store: Store,
        *,
        source: GeolocationSource | None = None,
        identity: Identity | None = None,
        observe: bool = True,
        settings: SyncSettings | None = None,
        clock: Clock = wall_clock_ms,
        registry: SessionRegistry | None = None,
    ) -> None:
        self.store = store
        self.identity = identity
        self.settings = settings or SyncSettings()
        self.registry = registry or SessionRegistry()

        self.publisher: LocationPublisher | None = None
        self.tracker: PresenceTracker | None = None
        if identity is not None:
            if source is None:
                raise ValueError("A geolocation source is required for a signed-in session")
            self.publisher = LocationPublisher(
                store,
                source,
                clock=clock,
                min_distance=self.settings.min_distance,
                min_interval=self.settings.min_interval,
                registry=self.registry,
            )
            self.tracker = PresenceTracker(
                store,
                clock=clock,
                heartbeat_interval=self.settings.heartbeat_interval,
                registry=self.registry,
            )

        self.aggregator: TrailAggregator | None = None
        self.presence: PresenceView | None = None
        if observe:
            self.aggregator = TrailAggregator(store, per_user=self.settings.per_user_trails)
            self.presence = PresenceView(
                store,
                clock=clock,
                online_timeout=self.settings.online_timeout,
                sweep_interval=self.settings.sweep_interval,
            )

        self._opened = False
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    def on_trails(self, callback: TrailListener) -> None:
        if self.aggregator is not None:
            self.aggregator.on_update(callback)

    def on_presence(self, callback: PresenceListener) -> None:
        if self.presence is not None:
            self.presence.on_update(callback)

    def on_error(self, callback: ErrorListener) -> None:
        if self.publisher is not None:
            self.publisher.on_error(callback)

    async def open(self) -> None:
        """
        Start the session's components.

        Raises:
            GeolocationError: If the device refuses geolocation; presence and
                the views stay up, only publishing is unavailable
        """
        if self._opened:
            return
        self._opened = True

        if self.presence is not None:
            await self.presence.start()
        if self.aggregator is not None:
            await self.aggregator.start()

        if self.identity is not None:
            assert self.tracker is not None and self.publisher is not None
            await self.tracker.start(
                self.identity.user_id,
                email=self.identity.email,
                display_name=self.identity.display_name,
            )
            self.publisher.start(self.identity.user_id)
        logger.debug("Session opened for %s", self.identity.user_id if self.identity else "anonymous viewer")

    async def close(self) -> None:
        """Release everything the session holds (idempotent)."""
        if self._closed:
            return
        self._closed = True

        if self.publisher is not None:
            self.publisher.stop()
        if self.tracker is not None:
            await self.tracker.stop()
        if self.aggregator is not None:
            self.aggregator.stop()
        if self.presence is not None:
            await self.presence.stop()
        logger.debug("Session closed for %s", self.identity.user_id if self.identity else "anonymous viewer")

    async def __aenter__(self) -> "SessionContext":
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
