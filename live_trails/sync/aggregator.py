"""
Trail aggregation.

Builds one chronologically ordered trail per user from the shared location
stream. The stream gives no ordering guarantee across writers and may
redeliver records after a reconnect, so every update re-sorts the touched
trails and de-duplicates samples by ``(user_id, timestamp)``.
"""

import logging
from collections.abc import Callable, Iterable, Mapping
from types import MappingProxyType
from typing import Any

from live_trails.sync.publisher import LocationSample
from live_trails.sync.store import (LOCATIONS, PRESENCE, Change, ChangeType,
                                    Query, Store, Subscription,
                                    call_maybe_async)

logger = logging.getLogger(__name__)

Trail = tuple[LocationSample, ...]
Trails = Mapping[str, Trail]
TrailListener = Callable[[Trails], Any]


def build_trails(samples: Iterable[LocationSample]) -> dict[str, Trail]:
    """
    Group samples into trails.

    Each trail is sorted by timestamp ascending and holds at most one sample
    per timestamp; a later duplicate replaces an earlier one.
    """
    by_user: dict[str, dict[int, LocationSample]] = {}
    for sample in samples:
        by_user.setdefault(sample.user_id, {})[sample.timestamp] = sample
    return {
        user_id: tuple(points[ts] for ts in sorted(points))
        for user_id, points in by_user.items()
    }


class TrailAggregator:
    """
    Maintains ``user_id -> Trail`` from store pushes.

    Two subscription layouts are supported:

    - full stream (default): one subscription to every user's samples, the
      owner taken from each record's ``user_id``
    - per user: one subscription to the online presence records, plus one
      location subscription per online user; a user leaving the online set
      has its subscription cancelled and its trail dropped
    """

    def __init__(self, store: Store, *, per_user: bool = False) -> None:
        self._store = store
        self._per_user = per_user

        # user_id -> timestamp -> sample
        self._points: dict[str, dict[int, LocationSample]] = {}
        # store key -> (user_id, timestamp), to resolve removals
        self._keys: dict[str, tuple[str, int]] = {}
        # (user_id, timestamp) -> store keys holding it, in delivery order
        self._holders: dict[tuple[str, int], dict[str, LocationSample]] = {}
        self._trails: dict[str, Trail] = {}
        self._listeners: list[TrailListener] = []

        self._subscription: Subscription | None = None
        self._user_subscriptions: dict[str, Subscription] = {}

    @property
    def per_user(self) -> bool:
        return self._per_user

    @property
    def user_subscription_count(self) -> int:
        """Number of open per-user location subscriptions."""
        return len(self._user_subscriptions)

    def on_update(self, callback: TrailListener) -> None:
        """Register a listener that receives a snapshot after every change."""
        self._listeners.append(callback)

    async def start(self) -> None:
        """Open the subscriptions for the configured layout."""
        if self._subscription is not None:
            return
        if self._per_user:
            self._subscription = await self._store.subscribe(
                Query(PRESENCE, online_only=True), self._handle_presence_changes, self._handle_error,
            )
        else:
            self._subscription = await self._store.subscribe(
                Query(LOCATIONS), self.handle_changes, self._handle_error,
            )

    def stop(self) -> None:
        """Release every subscription (idempotent)."""
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        for subscription in self._user_subscriptions.values():
            subscription.cancel()
        self._user_subscriptions.clear()

    def _handle_error(self, error: Exception) -> None:
        # The subscription stays installed; the view may go stale
        logger.warning("Location subscription error: %s", error)

    async def _handle_presence_changes(self, changes: list[Change]) -> None:
        dropped = False
        for change in changes:
            user_id = change.key
            if change.type is ChangeType.REMOVED:
                dropped = self._drop_user(user_id) or dropped
            else:
                await self._watch_user(user_id)
        if dropped:
            await self._publish()

    async def _watch_user(self, user_id: str) -> None:
        # "added" and "modified" both land here for the same user; only one
        # live listener may exist per user
        existing = self._user_subscriptions.get(user_id)
        if existing is not None and existing.active:
            return
        if existing is not None:
            existing.cancel()
            del self._user_subscriptions[user_id]

        async def on_change(changes: list[Change]) -> None:
            await self.handle_changes(changes, user_id=user_id)

        subscription = await self._store.subscribe(
            Query(LOCATIONS, user_id=user_id), on_change, self._handle_error,
        )
        replaced = self._user_subscriptions.get(user_id)
        self._user_subscriptions[user_id] = subscription
        if replaced is not None:
            # Another watch for this user completed while we were subscribing
            replaced.cancel()
        logger.debug("Watching trail of %s", user_id)

    def _drop_user(self, user_id: str) -> bool:
        subscription = self._user_subscriptions.pop(user_id, None)
        if subscription is not None:
            subscription.cancel()
        self._keys = {key: ident for key, ident in self._keys.items() if ident[0] != user_id}
        self._holders = {ident: keys for ident, keys in self._holders.items() if ident[0] != user_id}
        self._points.pop(user_id, None)
        removed = self._trails.pop(user_id, None) is not None
        logger.debug("Stopped watching trail of %s", user_id)
        return removed

    async def handle_changes(self, changes: list[Change], user_id: str | None = None) -> None:
        """
        Apply a batch of location changes and publish a new snapshot.

        Args:
            changes: Snapshot or incremental changes from the store
            user_id: Owner of every change when the batch comes from a
                per-user subscription
        """
        touched: set[str] = set()
        for change in changes:
            if change.type is ChangeType.REMOVED:
                owner = self._release_key(change.key)
                if owner is not None:
                    touched.add(owner)
                continue

            sample = LocationSample.from_record(change.value, user_id=user_id)
            if sample is None:
                logger.debug("Dropping malformed location record %s", change.key)
                continue
            ident = (sample.user_id, sample.timestamp)
            if self._keys.get(change.key, ident) != ident:
                owner = self._release_key(change.key)
                if owner is not None:
                    touched.add(owner)
            holders = self._holders.setdefault(ident, {})
            holders.pop(change.key, None)
            holders[change.key] = sample
            self._keys[change.key] = ident
            self._points.setdefault(sample.user_id, {})[sample.timestamp] = sample
            touched.add(sample.user_id)

        for owner in touched:
            points = self._points.get(owner)
            if points:
                self._trails[owner] = tuple(points[ts] for ts in sorted(points))
            else:
                self._points.pop(owner, None)
                self._trails.pop(owner, None)

        await self._publish()

    def _release_key(self, key: str) -> str | None:
        """
        Forget one store key.

        The sample stays while another key still holds the same
        ``(user_id, timestamp)``; it then reverts to that key's value.

        Returns:
            Owner of the released key, or None for an unknown key
        """
        ident = self._keys.pop(key, None)
        if ident is None:
            return None
        owner, timestamp = ident
        holders = self._holders.get(ident, {})
        holders.pop(key, None)
        if holders:
            self._points.setdefault(owner, {})[timestamp] = next(reversed(holders.values()))
        else:
            self._holders.pop(ident, None)
            self._points.get(owner, {}).pop(timestamp, None)
        return owner

    def snapshot(self) -> Trails:
        """Read-only view of every trail."""
        return MappingProxyType(dict(self._trails))

    def trail(self, user_id: str) -> Trail:
        return self._trails.get(user_id, ())

    def latest(self, user_id: str) -> LocationSample | None:
        """Most recent sample of a user, i.e. where its marker goes."""
        trail = self._trails.get(user_id)
        return trail[-1] if trail else None

    async def _publish(self) -> None:
        snapshot = self.snapshot()
        for callback in self._listeners:
            try:
                await call_maybe_async(callback, snapshot)
            except Exception:
                logger.exception("Error in trail listener")
