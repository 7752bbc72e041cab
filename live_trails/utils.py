"""
Shared helpers for the live_trails app.

Bridges Django settings and users to the framework-independent sync
package, and serializes sync snapshots for transports.
"""
import logging
from collections.abc import Mapping
from typing import Any

from django.conf import settings

from live_trails.sync.aggregator import Trails
from live_trails.sync.presence import PresenceStatus
from live_trails.sync.publisher import wall_clock_ms
from live_trails.sync.registry import SessionRegistry
from live_trails.sync.session import Identity, SyncSettings

logger = logging.getLogger(__name__)

# Shared by every WebSocket and MQTT session of this process
session_registry = SessionRegistry()


def get_live_trails_setting(name: str, default: Any = None) -> Any:
    """Read one entry of the ``LIVE_TRAILS`` settings dict."""
    return getattr(settings, 'LIVE_TRAILS', {}).get(name, default)


def get_sync_settings() -> SyncSettings:
    """Build session tunables from Django settings."""
    defaults = SyncSettings()
    sweep = get_live_trails_setting('PRESENCE_SWEEP_SECONDS', 5.0)
    return SyncSettings(
        min_distance=float(get_live_trails_setting('MIN_DISTANCE_METERS', defaults.min_distance)),
        min_interval=float(get_live_trails_setting('MIN_INTERVAL_MS', defaults.min_interval)),
        heartbeat_interval=float(get_live_trails_setting('HEARTBEAT_INTERVAL_SECONDS', defaults.heartbeat_interval)),
        online_timeout=float(get_live_trails_setting('ONLINE_TIMEOUT_MS', defaults.online_timeout)),
        sweep_interval=float(sweep) if sweep else None,
        per_user_trails=bool(get_live_trails_setting('PER_USER_TRAILS', defaults.per_user_trails)),
    )


def identity_for_user(user: Any) -> Identity | None:
    """
    Map a Django user to a sync identity.

    Returns:
        Identity keyed by username, or None for anonymous users
    """
    if user is None or not getattr(user, 'is_authenticated', False):
        return None
    username = user.get_username()
    return Identity(
        user_id=username,
        email=user.email or '',
        display_name=user.get_full_name() or username,
    )


def now_ms() -> float:
    return wall_clock_ms()


def serialize_trails(trails: Trails) -> dict[str, list[dict[str, Any]]]:
    """Convert an aggregator snapshot to JSON-friendly data."""
    return {
        user_id: [
            {
                'latitude': sample.latitude,
                'longitude': sample.longitude,
                'timestamp': sample.timestamp,
            }
            for sample in trail
        ]
        for user_id, trail in trails.items()
    }


def serialize_presence(statuses: Mapping[str, PresenceStatus]) -> dict[str, Any]:
    """Convert a presence snapshot to JSON-friendly data."""
    users = [status.as_dict() for status in statuses.values()]
    return {
        'users': users,
        'online_count': sum(1 for user in users if user['online']),
    }
