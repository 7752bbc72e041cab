"""
Database models for live location trails.

``LocationSample`` rows are append-only: written once by the owning
session, never updated or deleted. ``PresenceRecord`` rows are mutable,
one per user, overwritten in place by the owning session.
"""
from typing import Any

from django.db import models


class LocationSample(models.Model):
    """
    A single accepted location sample.

    The owner is identified by ``user_id`` so that both signed-in web users
    and MQTT device users can publish into the same stream.
    """

    user_id = models.CharField(
        max_length=150,
        db_index=True,
        help_text="Identity of the publishing user"
    )
    latitude = models.FloatField(
        help_text="Latitude in decimal degrees (-90 to +90)"
    )
    longitude = models.FloatField(
        help_text="Longitude in decimal degrees (-180 to +180)"
    )
    timestamp = models.BigIntegerField(
        db_index=True,
        help_text="Publisher-assigned time in ms since the epoch, monotonic per user"
    )
    received_at = models.DateTimeField(
        auto_now_add=True,
        help_text="When the store committed this sample"
    )

    class Meta:
        ordering = ['user_id', 'timestamp']
        verbose_name = 'Location Sample'
        verbose_name_plural = 'Location Samples'
        constraints = [
            models.UniqueConstraint(fields=['user_id', 'timestamp'], name='unique_sample_per_user_timestamp'),
        ]

    def __str__(self) -> str:
        """Return string representation of the sample."""
        return f"{self.user_id} @ ({self.latitude}, {self.longitude}) at {self.timestamp}"

    def to_record(self) -> dict[str, Any]:
        """Return the store record for this sample."""
        return {
            'user_id': self.user_id,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'timestamp': self.timestamp,
        }


class PresenceRecord(models.Model):
    """
    Online/offline state of one user as written by that user's session.

    ``online`` alone is not authoritative; observers combine it with the
    age of ``last_seen``.
    """

    user_id = models.CharField(
        max_length=150,
        unique=True,
        help_text="Identity of the user this record belongs to"
    )
    online = models.BooleanField(
        default=False,  # type: ignore[reportArgumentType]  # django-stubs issue
        help_text="Whether the owning session last declared itself online"
    )
    last_online = models.FloatField(
        null=True,
        blank=True,
        help_text="Time of the last online/offline transition or heartbeat, ms since the epoch"
    )
    last_seen = models.FloatField(
        null=True,
        blank=True,
        help_text="Time of the last heartbeat, ms since the epoch"
    )
    email = models.CharField(
        max_length=254,
        blank=True,
        default='',
        help_text="Email of the user, if known"
    )
    display_name = models.CharField(
        max_length=200,
        blank=True,
        default='',
        help_text="Name shown to other users"
    )
    updated_at = models.DateTimeField(
        auto_now=True,
        help_text="When the store last committed a write to this record"
    )

    class Meta:
        ordering = ['user_id']
        verbose_name = 'Presence Record'
        verbose_name_plural = 'Presence Records'

    def __str__(self) -> str:
        """Return string representation of the record."""
        state = "online" if self.online else "offline"
        return f"{self.display_name or self.email or self.user_id} ({state})"

    def to_record(self) -> dict[str, Any]:
        """Return the store record for this presence row."""
        return {
            'user_id': self.user_id,
            'online': self.online,
            'last_online': self.last_online,
            'last_seen': self.last_seen,
            'email': self.email,
            'display_name': self.display_name,
        }
