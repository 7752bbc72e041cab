"""
Abstract shared store consumed by the synchronization core.

The store holds two kinds of data:

- an append-only ``locations`` collection where each user appends immutable
  samples to its own stream
- a ``presence`` collection of mutable records, one per user, overwritten
  in place by the owning session

Readers subscribe with a ``Query`` and receive an initial snapshot followed
by incremental batches of ``Change`` objects until they cancel.
"""

import inspect
import itertools
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)

LOCATIONS = "locations"
PRESENCE = "presence"

Record = dict[str, Any]


class StoreError(Exception):
    """Raised when a write to or read from the store fails."""


class ChangeType(StrEnum):
    """Kind of change delivered to a subscriber."""

    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class Change:
    """A single record change as seen by one subscriber."""

    type: ChangeType
    key: str
    value: Record | None = None


@dataclass(frozen=True)
class Query:
    """
    Subscription query.

    Attributes:
        collection: ``locations`` or ``presence``
        user_id: Restrict to records owned by this user
        online_only: Restrict to records with ``online`` set to True
    """

    collection: str
    user_id: str | None = None
    online_only: bool = False

    def matches(self, record: Record | None) -> bool:
        """Return True if the record is part of this query's result set."""
        if record is None:
            return False
        if self.user_id is not None and record.get("user_id") != self.user_id:
            return False
        if self.online_only and record.get("online") is not True:
            return False
        return True

    def classify(self, key: str, old: Record | None, new: Record | None) -> Change | None:
        """
        Translate a raw record transition into the change this query observes.

        A record entering the result set is ``added``, one leaving it is
        ``removed`` and one staying in it is ``modified``. Returns None when
        the record is outside the result set both before and after.
        """
        was_member = self.matches(old)
        is_member = self.matches(new)
        if was_member and is_member:
            assert new is not None
            return Change(ChangeType.MODIFIED, key, dict(new))
        if is_member:
            assert new is not None
            return Change(ChangeType.ADDED, key, dict(new))
        if was_member:
            assert old is not None
            return Change(ChangeType.REMOVED, key, dict(old))
        return None


ChangeCallback = Callable[[list[Change]], Any]
ErrorCallback = Callable[[Exception], Any]


async def call_maybe_async(callback: Callable[..., Any], *args: Any) -> None:
    """Call a callback that may be a plain function or a coroutine function."""
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class Subscription:
    """
    Cancel handle for a subscription, a geolocation watch or a cleanup action.

    ``cancel()`` runs the release action exactly once no matter how many
    times it is called. The handle is also a context manager, so a ``with``
    block releases it on every exit path.
    """

    def __init__(self, on_cancel: Callable[[], Any] | None = None) -> None:
        self._on_cancel = on_cancel
        self._active = True

    @property
    def active(self) -> bool:
        """Whether the handle has not been cancelled yet."""
        return self._active

    def cancel(self) -> None:
        """Release the underlying resource (idempotent)."""
        if not self._active:
            return
        self._active = False
        if self._on_cancel is not None:
            self._on_cancel()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cancel()


CleanupValue = Record | Callable[[], Record | None]


class Store(ABC):
    """
    Vendor-agnostic append/put/subscribe interface.

    Subclasses implement the three data operations. Disconnect cleanups are
    shared: a session registers the presence value that must be written if
    its connection goes away, and the transport calls ``disconnect()`` when
    it observes the drop.
    """

    def __init__(self) -> None:
        self._cleanups: dict[int, tuple[str, CleanupValue]] = {}
        self._cleanup_ids = itertools.count(1)

    @abstractmethod
    async def append(self, stream_id: str, record: Record) -> str:
        """
        Append an immutable record to a user's location stream.

        Returns:
            Key assigned to the record by the store

        Raises:
            StoreError: If the write could not be committed
        """

    @abstractmethod
    async def put(
        self,
        record_id: str,
        value: Record,
        *,
        merge: bool = False,
        collection: str = PRESENCE,
    ) -> None:
        """
        Upsert a mutable record.

        With ``merge`` the given fields are merged into the existing record,
        otherwise the record is replaced.

        Raises:
            StoreError: If the write could not be committed
        """

    @abstractmethod
    async def subscribe(
        self,
        query: Query,
        on_change: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        """
        Subscribe to a query.

        The initial snapshot (possibly empty) is delivered to ``on_change``
        before this coroutine returns; later changes are pushed as they
        happen until the returned handle is cancelled.
        """

    def on_disconnect_cleanup(self, record_id: str, value: CleanupValue) -> Subscription:
        """
        Register a presence write to run if the connection drops.

        ``value`` may be a callable, evaluated when the cleanup runs; a
        callable returning None skips the write.

        Returns:
            Handle that unregisters the cleanup when cancelled
        """
        cleanup_id = next(self._cleanup_ids)
        self._cleanups[cleanup_id] = (record_id, value)
        return Subscription(lambda: self._cleanups.pop(cleanup_id, None))

    @property
    def pending_cleanups(self) -> int:
        """Number of registered disconnect cleanups."""
        return len(self._cleanups)

    async def disconnect(self) -> None:
        """Run and forget every registered disconnect cleanup."""
        cleanups = list(self._cleanups.values())
        self._cleanups.clear()
        for record_id, value in cleanups:
            resolved = value() if callable(value) else value
            if resolved is None:
                continue
            try:
                await self.put(record_id, resolved, merge=True)
            except StoreError:
                logger.warning("Disconnect cleanup failed for %s", record_id, exc_info=True)


@dataclass
class _Subscriber:
    query: Query
    on_change: ChangeCallback
    on_error: ErrorCallback | None


async def deliver(subscriber_query: Query, on_change: ChangeCallback,
                  on_error: ErrorCallback | None, changes: list[Change]) -> None:
    """
    Hand a batch of changes to a subscriber callback.

    Exceptions raised by the callback are logged and reported to
    ``on_error``; they never propagate into the store.
    """
    try:
        await call_maybe_async(on_change, changes)
    except Exception as exc:
        logger.exception(
            "Subscriber to %s failed to handle %d change(s)",
            subscriber_query.collection, len(changes),
        )
        if on_error is not None:
            try:
                await call_maybe_async(on_error, exc)
            except Exception:
                logger.exception("Error in subscription error callback")


class MemoryStore(Store):
    """
    In-process store.

    Changes are delivered to subscribers before the write coroutine returns,
    so an awaited ``append`` or ``put`` has been observed by every
    subscriber of the same store.
    """

    def __init__(self) -> None:
        super().__init__()
        self._collections: dict[str, dict[str, Record]] = defaultdict(dict)
        self._subscribers: dict[int, _Subscriber] = {}
        self._subscriber_ids = itertools.count(1)
        self._sequence = itertools.count(1)
        self._offline = False

    def set_offline(self, offline: bool) -> None:
        """Make every subsequent write fail with StoreError until reset."""
        self._offline = offline

    def records(self, collection: str) -> dict[str, Record]:
        """Return a copy of the records currently held in a collection."""
        return {key: dict(value) for key, value in self._collections[collection].items()}

    @property
    def subscriber_count(self) -> int:
        """Number of live subscriptions."""
        return len(self._subscribers)

    def _check_online(self) -> None:
        if self._offline:
            raise StoreError("store is offline")

    async def append(self, stream_id: str, record: Record) -> str:
        self._check_online()
        key = f"{stream_id}/{next(self._sequence):010d}"
        value = {**record, "user_id": stream_id}
        self._collections[LOCATIONS][key] = value
        await self._notify(LOCATIONS, key, None, value)
        return key

    async def put(
        self,
        record_id: str,
        value: Record,
        *,
        merge: bool = False,
        collection: str = PRESENCE,
    ) -> None:
        self._check_online()
        records = self._collections[collection]
        old = records.get(record_id)
        new = {**old, **value} if merge and old is not None else dict(value)
        new["user_id"] = record_id
        records[record_id] = new
        await self._notify(collection, record_id, old, new)

    async def subscribe(
        self,
        query: Query,
        on_change: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        snapshot = [
            Change(ChangeType.ADDED, key, dict(value))
            for key, value in self._collections[query.collection].items()
            if query.matches(value)
        ]
        subscriber_id = next(self._subscriber_ids)
        self._subscribers[subscriber_id] = _Subscriber(query, on_change, on_error)
        subscription = Subscription(lambda: self._subscribers.pop(subscriber_id, None))
        logger.debug("Subscribed to %s (id=%d)", query, subscriber_id)
        await deliver(query, on_change, on_error, snapshot)
        return subscription

    async def _notify(self, collection: str, key: str, old: Record | None, new: Record | None) -> None:
        for subscriber_id, subscriber in list(self._subscribers.items()):
            # A callback earlier in this loop may have cancelled it
            if subscriber_id not in self._subscribers:
                continue
            if subscriber.query.collection != collection:
                continue
            change = subscriber.query.classify(key, old, new)
            if change is not None:
                await deliver(subscriber.query, subscriber.on_change, subscriber.on_error, [change])
