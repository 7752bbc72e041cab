"""
Store backed by the Django ORM and the Channels layer.

Writes are committed to the database first and then broadcast to a channel
layer group per collection. Each subscription owns a private channel in
that group and filters the broadcasts through its own query, so every
subscriber sees the same added/modified/removed semantics as with the
in-memory store.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from asgiref.sync import sync_to_async
from channels.layers import get_channel_layer
from django.db import DatabaseError, transaction

from live_trails.models import LocationSample, PresenceRecord
from live_trails.sync.store import (LOCATIONS, PRESENCE, Change, ChangeCallback,
                                    ChangeType, ErrorCallback, Query, Record,
                                    Store, StoreError, Subscription,
                                    call_maybe_async, deliver)

if TYPE_CHECKING:
    from channels.layers import BaseChannelLayer

logger = logging.getLogger(__name__)

CHANGE_EVENT = "store.change"

# Back-off after the channel layer fails to deliver, in seconds
_RECEIVE_RETRY_SECONDS = 1.0

PRESENCE_FIELDS = ('online', 'last_online', 'last_seen', 'email', 'display_name')
_TEXT_FIELDS = {'email', 'display_name'}


def get_channel_layer_lazy() -> "BaseChannelLayer | None":
    """Get channel layer, returning None if unavailable."""
    try:
        return get_channel_layer()
    except Exception:
        return None


def group_name(collection: str) -> str:
    """Channel layer group receiving every change of a collection."""
    return f"live_trails.{collection}"


def save_sample(stream_id: str, record: Record) -> LocationSample:
    """Insert one location sample owned by ``stream_id``."""
    return LocationSample.objects.create(
        user_id=stream_id,
        latitude=float(record['latitude']),
        longitude=float(record['longitude']),
        timestamp=int(record['timestamp']),
    )


def save_presence(record_id: str, value: Record, merge: bool) -> tuple[Record | None, Record]:
    """
    Upsert the presence record of ``record_id``.

    Returns:
        The record before and after the write
    """
    with transaction.atomic():
        row = PresenceRecord.objects.select_for_update().filter(user_id=record_id).first()
        old = row.to_record() if row is not None else None
        if row is None:
            row = PresenceRecord(user_id=record_id)
        elif not merge:
            row = PresenceRecord(pk=row.pk, user_id=record_id)
        for field in PRESENCE_FIELDS:
            if field not in value:
                continue
            field_value = value[field]
            if field in _TEXT_FIELDS and field_value is None:
                field_value = ''
            setattr(row, field, field_value)
        row.save()
        return old, row.to_record()


def load_snapshot(query: Query) -> list[tuple[str, Record]]:
    """Read every record currently matching ``query``."""
    if query.collection == LOCATIONS:
        samples = LocationSample.objects.all()
        if query.user_id is not None:
            samples = samples.filter(user_id=query.user_id)
        return [(str(sample.pk), sample.to_record()) for sample in samples.order_by('timestamp')]

    if query.collection == PRESENCE:
        rows = PresenceRecord.objects.all()
        if query.user_id is not None:
            rows = rows.filter(user_id=query.user_id)
        if query.online_only:
            rows = rows.filter(online=True)
        return [(row.user_id, row.to_record()) for row in rows]

    raise StoreError(f"Expected '{LOCATIONS}' or '{PRESENCE}' collection, got '{query.collection}'")


class DjangoStore(Store):
    """
    ``Store`` implementation over the database and the channel layer.

    One instance is created per connection (WebSocket client or MQTT
    device), which scopes its disconnect cleanups to that connection.
    """

    def __init__(self, channel_layer: "BaseChannelLayer | None" = None) -> None:
        super().__init__()
        self._channel_layer = channel_layer if channel_layer is not None else get_channel_layer_lazy()

    async def append(self, stream_id: str, record: Record) -> str:
        try:
            sample = await sync_to_async(save_sample)(stream_id, record)
        except (DatabaseError, KeyError, TypeError, ValueError) as exc:
            raise StoreError(f"Failed to append location for {stream_id}: {exc}") from exc

        key = str(sample.pk)
        await self._broadcast(LOCATIONS, key, None, sample.to_record())
        return key

    async def put(
        self,
        record_id: str,
        value: Record,
        *,
        merge: bool = False,
        collection: str = PRESENCE,
    ) -> None:
        if collection != PRESENCE:
            raise StoreError(f"Expected '{PRESENCE}' collection for put, got '{collection}'")
        try:
            old, new = await sync_to_async(save_presence)(record_id, value, merge)
        except (DatabaseError, TypeError, ValueError) as exc:
            raise StoreError(f"Failed to write presence for {record_id}: {exc}") from exc

        await self._broadcast(PRESENCE, record_id, old, new)

    async def _broadcast(self, collection: str, key: str, old: Record | None, new: Record | None) -> None:
        # The write is already committed; a failed broadcast leaves remote
        # views stale until their next snapshot
        if self._channel_layer is None:
            logger.warning("Change broadcast skipped: no channel layer configured")
            return
        try:
            await self._channel_layer.group_send(
                group_name(collection),
                {
                    "type": CHANGE_EVENT,
                    "collection": collection,
                    "key": key,
                    "old": old,
                    "new": new,
                },
            )
        except Exception:
            logger.exception("Change broadcast failed for %s/%s", collection, key)

    async def subscribe(
        self,
        query: Query,
        on_change: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        layer = self._channel_layer
        channel: str | None = None
        if layer is not None:
            # Join before reading the snapshot so no change falls in between;
            # a change seen in both is harmless to consumers
            channel = await layer.new_channel()
            await layer.group_add(group_name(query.collection), channel)

        try:
            records = await sync_to_async(load_snapshot)(query)
        except DatabaseError as exc:
            if layer is not None and channel is not None:
                await layer.group_discard(group_name(query.collection), channel)
            raise StoreError(f"Failed to load snapshot for {query}: {exc}") from exc

        snapshot = [Change(ChangeType.ADDED, key, record) for key, record in records]
        await deliver(query, on_change, on_error, snapshot)

        if layer is None or channel is None:
            logger.warning("No channel layer configured: %s subscription gets the snapshot only", query.collection)
            return Subscription()

        task = asyncio.create_task(
            self._pump(layer, channel, query, on_change, on_error),
            name=f"subscription-{query.collection}",
        )
        # Let the pump enter its try block so a cancel always leaves the group
        await asyncio.sleep(0)
        return Subscription(task.cancel)

    async def _pump(
        self,
        layer: "BaseChannelLayer",
        channel: str,
        query: Query,
        on_change: ChangeCallback,
        on_error: ErrorCallback | None,
    ) -> None:
        try:
            while True:
                try:
                    message: dict[str, Any] = await layer.receive(channel)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.warning("Subscription receive failed for %s: %s", query.collection, exc)
                    if on_error is not None:
                        try:
                            await call_maybe_async(on_error, exc)
                        except Exception:
                            logger.exception("Error in subscription error callback")
                    await asyncio.sleep(_RECEIVE_RETRY_SECONDS)
                    continue

                if message.get("type") != CHANGE_EVENT or message.get("collection") != query.collection:
                    continue
                change = query.classify(str(message["key"]), message.get("old"), message.get("new"))
                if change is not None:
                    await deliver(query, on_change, on_error, [change])
        finally:
            try:
                await layer.group_discard(group_name(query.collection), channel)
            except Exception:
                logger.warning("Failed to leave %s group", query.collection, exc_info=True)
