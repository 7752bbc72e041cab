"""
Presence tracking.

``PresenceTracker`` runs inside the owning session and keeps that user's
presence record fresh with a heartbeat. ``PresenceView`` runs in every
observing client and derives who is effectively online.

The ``online`` flag alone is not authoritative: a tab that is killed never
writes ``online: false``. A user counts as online only while its record
says so and its last heartbeat is younger than the online timeout.
"""

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from live_trails.sync.publisher import Clock, wall_clock_ms
from live_trails.sync.registry import SessionRegistry
from live_trails.sync.store import (PRESENCE, Change, ChangeType, Query,
                                    Record, Store, StoreError, Subscription,
                                    call_maybe_async)

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL_SECONDS = 15.0
ONLINE_TIMEOUT_MS = 30_000


@dataclass(frozen=True)
class PresenceRecord:
    """Presence record as stored, one per user."""

    user_id: str
    online: bool
    last_online: float | None = None
    last_seen: float | None = None
    email: str = ""
    display_name: str = ""

    @classmethod
    def from_record(cls, record: Record, user_id: str | None = None) -> "PresenceRecord | None":
        """Build a presence record from store data, or None without an owner."""
        owner = record.get("user_id") or user_id
        if not owner:
            return None
        last_online = record.get("last_online")
        last_seen = record.get("last_seen", last_online)
        return cls(
            user_id=str(owner),
            online=record.get("online") is True,
            last_online=_as_time(last_online),
            last_seen=_as_time(last_seen),
            email=str(record.get("email") or ""),
            display_name=str(record.get("display_name") or ""),
        )

    @property
    def label(self) -> str:
        """Name to show for this user."""
        return self.display_name or self.email or self.user_id


def _as_time(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def is_effectively_online(record: PresenceRecord, now: float, timeout: float = ONLINE_TIMEOUT_MS) -> bool:
    """
    Derive liveness from a presence record.

    A user is online iff the record says ``online`` and the last heartbeat
    is younger than ``timeout`` ms.
    """
    if not record.online or record.last_seen is None:
        return False
    return (now - record.last_seen) < timeout


@dataclass(frozen=True)
class PresenceStatus:
    """What observers see for one user."""

    user_id: str
    online: bool
    last_seen: float | None
    label: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "online": self.online,
            "last_seen": self.last_seen,
            "label": self.label,
        }


class TrackerState(StrEnum):
    """Lifecycle of a PresenceTracker."""

    UNAUTHENTICATED = "unauthenticated"
    ONLINE = "online"
    OFFLINE = "offline"


class PresenceTracker:
    """
    Maintains the local user's presence record.

    Only the user's own sessions write the record, so writes need no
    locking: the heartbeat and the sign-in/sign-out writes are serialized
    by the event loop. Sessions of the same user share a registry; while
    one of them is still live, the others leave without writing offline.
    """

    def __init__(
        self,
        store: Store,
        *,
        clock: Clock = wall_clock_ms,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        registry: SessionRegistry | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._heartbeat_interval = heartbeat_interval
        self._registry = registry or SessionRegistry()

        self.state = TrackerState.UNAUTHENTICATED
        self.user_id: str | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._cleanup: Subscription | None = None

    async def start(self, user_id: str, *, email: str = "", display_name: str = "") -> None:
        """
        Mark the user online and start the heartbeat.

        A failed sign-in write is logged; the heartbeat still starts so the
        record appears as soon as the store accepts writes again.

        Raises:
            RuntimeError: If the tracker is not in the unauthenticated state
        """
        if self.state is not TrackerState.UNAUTHENTICATED:
            raise RuntimeError(f"Expected unauthenticated tracker, got {self.state}")
        if not user_id:
            raise ValueError("user_id is required to track presence")

        self.user_id = user_id
        self.state = TrackerState.ONLINE
        self._registry.acquire(user_id)
        now = self._clock()
        await self._write({
            "online": True,
            "last_online": now,
            "last_seen": now,
            "email": email,
            "display_name": display_name,
        })
        self._cleanup = self._store.on_disconnect_cleanup(user_id, self._disconnect_value)
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name=f"heartbeat-{user_id}")
        logger.info("User %s is online", user_id)

    def _offline_value(self) -> Record:
        return {"online": False, "last_online": self._clock()}

    def _disconnect_value(self) -> Record | None:
        # Another live session of the user keeps the record online
        assert self.user_id is not None
        if self._registry.active(self.user_id) > 1:
            return None
        return self._offline_value()

    async def heartbeat(self) -> bool:
        """Refresh liveness once. Returns True if the write succeeded."""
        if self.state is not TrackerState.ONLINE:
            return False
        now = self._clock()
        return await self._write({"online": True, "last_online": now, "last_seen": now})

    async def _heartbeat_loop(self) -> None:
        while self.state is TrackerState.ONLINE:
            await asyncio.sleep(self._heartbeat_interval)
            await self.heartbeat()

    async def stop(self) -> None:
        """
        Stop the heartbeat and make a best-effort offline write (idempotent).

        The offline write is skipped while another session of the same user
        is live. Observers must not depend on this write; staleness of
        ``last_seen`` is what takes a user offline in their views.
        """
        if self.state is not TrackerState.ONLINE:
            self.state = TrackerState.OFFLINE
            return
        self.state = TrackerState.OFFLINE

        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        assert self.user_id is not None
        last = self._registry.release(self.user_id)
        if last:
            await self._write(self._offline_value())
        if self._cleanup is not None:
            self._cleanup.cancel()
            self._cleanup = None
        if last:
            logger.info("User %s is offline", self.user_id)
        else:
            logger.info("Session of %s closed, %d still live", self.user_id, self._registry.active(self.user_id))

    async def _write(self, value: Record) -> bool:
        assert self.user_id is not None
        try:
            await self._store.put(self.user_id, value, merge=True)
        except StoreError as exc:
            logger.warning("Presence write failed for %s: %s", self.user_id, exc)
            return False
        return True


PresenceListener = Callable[[Mapping[str, PresenceStatus]], Any]


class PresenceView:
    """
    Read side of presence: every user's derived online state.

    Listeners receive a fresh snapshot whenever a record changes and, when a
    sweep interval is set, whenever a user's derived state flips because
    its heartbeat went stale.
    """

    def __init__(
        self,
        store: Store,
        *,
        clock: Clock = wall_clock_ms,
        online_timeout: float = ONLINE_TIMEOUT_MS,
        sweep_interval: float | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._online_timeout = online_timeout
        self._sweep_interval = sweep_interval

        self._records: dict[str, PresenceRecord] = {}
        self._listeners: list[PresenceListener] = []
        self._subscription: Subscription | None = None
        self._sweep_task: asyncio.Task[None] | None = None
        self._last_published: dict[str, bool] = {}

    def on_update(self, callback: PresenceListener) -> None:
        """Register a listener for presence snapshots."""
        self._listeners.append(callback)

    async def start(self) -> None:
        """Subscribe to presence records and start the staleness sweep."""
        if self._subscription is not None:
            return
        self._subscription = await self._store.subscribe(
            Query(PRESENCE), self.handle_changes, self._handle_error,
        )
        if self._sweep_interval:
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="presence-sweep")

    async def stop(self) -> None:
        """Release the subscription and stop the sweep (idempotent)."""
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    def _handle_error(self, error: Exception) -> None:
        logger.warning("Presence subscription error: %s", error)

    async def handle_changes(self, changes: list[Change]) -> None:
        """Apply a batch of presence changes and notify listeners."""
        for change in changes:
            if change.type is ChangeType.REMOVED:
                self._records.pop(change.key, None)
                continue
            record = PresenceRecord.from_record(change.value or {}, user_id=change.key)
            if record is None:
                logger.debug("Dropping presence record without owner: %s", change.key)
                continue
            self._records[record.user_id] = record
        await self._publish()

    def status(self, user_id: str, now: float | None = None) -> PresenceStatus | None:
        """Derived status for one user, or None if the user has no record."""
        record = self._records.get(user_id)
        if record is None:
            return None
        current = self._clock() if now is None else now
        return PresenceStatus(
            user_id=record.user_id,
            online=is_effectively_online(record, current, self._online_timeout),
            last_seen=record.last_seen,
            label=record.label,
        )

    def statuses(self, now: float | None = None) -> Mapping[str, PresenceStatus]:
        """Read-only snapshot of every known user's derived status."""
        current = self._clock() if now is None else now
        result = {}
        for user_id in sorted(self._records):
            status = self.status(user_id, current)
            assert status is not None
            result[user_id] = status
        return MappingProxyType(result)

    def online_users(self, now: float | None = None) -> list[PresenceStatus]:
        """Users currently considered online."""
        return [status for status in self.statuses(now).values() if status.online]

    def online_count(self, now: float | None = None) -> int:
        return len(self.online_users(now))

    async def sweep(self) -> bool:
        """
        Re-evaluate staleness and notify listeners if any user flipped.

        Returns:
            True if a snapshot was published
        """
        current = {user_id: status.online for user_id, status in self.statuses().items()}
        if current == self._last_published:
            return False
        await self._publish()
        return True

    async def _sweep_loop(self) -> None:
        assert self._sweep_interval is not None
        while True:
            await asyncio.sleep(self._sweep_interval)
            await self.sweep()

    async def _publish(self) -> None:
        snapshot = self.statuses()
        self._last_published = {user_id: status.online for user_id, status in snapshot.items()}
        for callback in self._listeners:
            try:
                await call_maybe_async(callback, snapshot)
            except Exception:
                logger.exception("Error in presence listener")
