"""
Serializers for the live trails API.

This module provides DRF serializers for location samples and presence
records. Both are read-only over REST: samples are written by the
publishing sessions, presence by the owning session.
"""
import logging

from rest_framework import serializers

from live_trails.models import LocationSample, PresenceRecord
from live_trails.sync.presence import PresenceRecord as SyncPresenceRecord
from live_trails.sync.presence import is_effectively_online
from live_trails.utils import get_sync_settings, now_ms

logger = logging.getLogger(__name__)


class LocationSampleSerializer(serializers.ModelSerializer):
    """Serializer for LocationSample model."""

    class Meta:
        model = LocationSample
        fields = ['id', 'user_id', 'latitude', 'longitude', 'timestamp', 'received_at']
        read_only_fields = fields


class PresenceRecordSerializer(serializers.ModelSerializer):
    """
    Serializer for PresenceRecord model.

    Adds the derived ``effectively_online`` flag, evaluated against the
    ``now`` passed in the serializer context (defaults to the current time).
    """

    effectively_online = serializers.SerializerMethodField()
    label = serializers.SerializerMethodField()

    class Meta:
        model = PresenceRecord
        fields = [
            'user_id', 'label', 'email', 'display_name', 'online', 'effectively_online',
            'last_online', 'last_seen', 'updated_at',
        ]
        read_only_fields = fields

    def _as_sync_record(self, obj: PresenceRecord) -> SyncPresenceRecord:
        record = SyncPresenceRecord.from_record(obj.to_record())
        assert record is not None
        return record

    def get_effectively_online(self, obj: PresenceRecord) -> bool:
        """Whether the user is online once heartbeat staleness is applied."""
        now = self.context.get('now')
        timeout = self.context.get('online_timeout')
        if timeout is None:
            timeout = get_sync_settings().online_timeout
        return is_effectively_online(
            self._as_sync_record(obj),
            now if now is not None else now_ms(),
            timeout,
        )

    def get_label(self, obj: PresenceRecord) -> str:
        """Name to show for this user."""
        return self._as_sync_record(obj).label

