"""Django admin configuration for live_trails app."""
from typing import Tuple

from django.contrib import admin

from .models import LocationSample, PresenceRecord


@admin.register(LocationSample)
class LocationSampleAdmin(admin.ModelAdmin):
    """Admin interface for LocationSample model (read only, samples are append-only)."""

    list_display: Tuple[str, ...] = ('user_id', 'latitude', 'longitude', 'timestamp', 'received_at')
    list_filter: Tuple[str, ...] = ('user_id', 'received_at')
    search_fields: Tuple[str, ...] = ('user_id',)
    readonly_fields: Tuple[str, ...] = ('user_id', 'latitude', 'longitude', 'timestamp', 'received_at')
    date_hierarchy: str = 'received_at'

    def has_change_permission(self, request, obj=None) -> bool:
        return False


@admin.register(PresenceRecord)
class PresenceRecordAdmin(admin.ModelAdmin):
    """Admin interface for PresenceRecord model."""

    list_display: Tuple[str, ...] = ('user_id', 'display_name', 'email', 'online', 'last_seen', 'updated_at')
    list_filter: Tuple[str, ...] = ('online',)
    search_fields: Tuple[str, ...] = ('user_id', 'email', 'display_name')
    readonly_fields: Tuple[str, ...] = ('updated_at',)
