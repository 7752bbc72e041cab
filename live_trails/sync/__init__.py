"""Live location synchronization protocol (framework independent)."""

from live_trails.sync.aggregator import TrailAggregator, build_trails
from live_trails.sync.geo import (LastKnownLocation, haversine_distance,
                                  is_valid_coordinate, should_accept)
from live_trails.sync.presence import (PresenceRecord, PresenceStatus,
                                       PresenceTracker, PresenceView,
                                       is_effectively_online)
from live_trails.sync.publisher import (Fix, GeolocationError,
                                        GeolocationSource, LocationPublisher,
                                        LocationSample, PushGeolocationSource)
from live_trails.sync.session import Identity, SessionContext, SyncSettings
from live_trails.sync.store import (Change, ChangeType, MemoryStore, Query,
                                    Store, StoreError, Subscription)

__all__ = [
    "Change",
    "ChangeType",
    "Fix",
    "GeolocationError",
    "GeolocationSource",
    "Identity",
    "LastKnownLocation",
    "LocationPublisher",
    "LocationSample",
    "MemoryStore",
    "PresenceRecord",
    "PresenceStatus",
    "PresenceTracker",
    "PresenceView",
    "PushGeolocationSource",
    "Query",
    "SessionContext",
    "Store",
    "StoreError",
    "Subscription",
    "SyncSettings",
    "TrailAggregator",
    "build_trails",
    "haversine_distance",
    "is_effectively_online",
    "is_valid_coordinate",
    "should_accept",
]
