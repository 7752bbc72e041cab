"""Tests for trail aggregation."""

import pytest
from hamcrest import (assert_that, contains_exactly, empty, equal_to,
                      has_key, has_length, is_, is_not, none)

from live_trails.sync.aggregator import TrailAggregator, Trails, build_trails
from live_trails.sync.publisher import LocationSample
from live_trails.sync.store import (LOCATIONS, Change, ChangeType,
                                    MemoryStore, Query)

T = 1_700_000_000_000


def added(key: str, user_id: str | None, timestamp: object, latitude: object = 27.7, longitude: object = 85.3) -> Change:
    """Build an ``added`` change for a location record."""
    value: dict = {"latitude": latitude, "longitude": longitude, "timestamp": timestamp}
    if user_id is not None:
        value["user_id"] = user_id
    return Change(ChangeType.ADDED, key, value)


def timestamps(aggregator: TrailAggregator, user_id: str) -> list[int]:
    return [sample.timestamp for sample in aggregator.trail(user_id)]


class TestBuildTrails:
    """Tests for build_trails."""

    def test_groups_sorts_and_deduplicates(self) -> None:
        samples = [
            LocationSample("u1", 1.0, 1.0, T + 2),
            LocationSample("u2", 2.0, 2.0, T),
            LocationSample("u1", 1.0, 1.0, T),
            LocationSample("u1", 1.0, 1.0, T + 2),
        ]
        trails = build_trails(samples)
        assert_that([s.timestamp for s in trails["u1"]], equal_to([T, T + 2]))
        assert_that(trails["u2"], has_length(1))

    def test_empty(self) -> None:
        assert_that(build_trails([]), equal_to({}))


@pytest.mark.asyncio
class TestTrailAggregatorChanges:
    """Tests for TrailAggregator.handle_changes."""

    async def test_redelivery_is_deduplicated(self, store: MemoryStore) -> None:
        """The same record delivered twice yields one trail entry."""
        aggregator = TrailAggregator(store)
        await aggregator.handle_changes([added("k1", "u1", T)])
        await aggregator.handle_changes([added("k1-again", "u1", T)])
        assert_that(aggregator.trail("u1"), has_length(1))

    async def test_out_of_order_delivery_is_sorted(self, store: MemoryStore) -> None:
        aggregator = TrailAggregator(store)
        await aggregator.handle_changes([added("a", "u2", T + 2)])
        await aggregator.handle_changes([added("b", "u2", T), added("c", "u2", T + 1)])
        assert_that(timestamps(aggregator, "u2"), equal_to([T, T + 1, T + 2]))

    async def test_malformed_records_are_dropped(self, store: MemoryStore) -> None:
        aggregator = TrailAggregator(store)
        await aggregator.handle_changes([
            added("ok", "u1", T),
            added("no-lat", "u1", T + 1, latitude=None),
            added("nan", "u1", T + 2, longitude=float("nan")),
            added("no-ts", "u1", None),
            added("no-owner", None, T + 3),
            Change(ChangeType.ADDED, "empty", None),
        ])
        assert_that(timestamps(aggregator, "u1"), equal_to([T]))
        assert_that(list(aggregator.snapshot()), equal_to(["u1"]))

    async def test_owner_from_sub_stream(self, store: MemoryStore) -> None:
        aggregator = TrailAggregator(store)
        await aggregator.handle_changes([added("k", None, T)], user_id="u9")
        assert_that(timestamps(aggregator, "u9"), equal_to([T]))

    async def test_removed_record_leaves_trail(self, store: MemoryStore) -> None:
        aggregator = TrailAggregator(store)
        await aggregator.handle_changes([added("a", "u1", T), added("b", "u1", T + 1)])
        await aggregator.handle_changes([Change(ChangeType.REMOVED, "a")])
        assert_that(timestamps(aggregator, "u1"), equal_to([T + 1]))

        await aggregator.handle_changes([Change(ChangeType.REMOVED, "b")])
        assert_that(aggregator.snapshot(), is_not(has_key("u1")))

    async def test_removing_one_duplicate_keeps_sample(self, store: MemoryStore) -> None:
        """Two keys holding the same (user, timestamp): the sample stays until both are gone."""
        aggregator = TrailAggregator(store)
        await aggregator.handle_changes([added("k1", "u1", T, latitude=1.0)])
        await aggregator.handle_changes([added("k2", "u1", T, latitude=2.0)])
        assert_that([s.latitude for s in aggregator.trail("u1")], equal_to([2.0]))

        await aggregator.handle_changes([Change(ChangeType.REMOVED, "k2")])
        assert_that([s.latitude for s in aggregator.trail("u1")], equal_to([1.0]))

        await aggregator.handle_changes([Change(ChangeType.REMOVED, "k1")])
        assert_that(aggregator.snapshot(), is_not(has_key("u1")))

    async def test_removing_older_duplicate_keeps_latest_value(self, store: MemoryStore) -> None:
        aggregator = TrailAggregator(store)
        await aggregator.handle_changes([added("k1", "u1", T, latitude=1.0), added("k2", "u1", T, latitude=2.0)])
        await aggregator.handle_changes([Change(ChangeType.REMOVED, "k1")])
        assert_that([s.latitude for s in aggregator.trail("u1")], equal_to([2.0]))

    async def test_modified_key_moves_to_new_timestamp(self, store: MemoryStore) -> None:
        aggregator = TrailAggregator(store)
        await aggregator.handle_changes([added("k1", "u1", T)])
        await aggregator.handle_changes([Change(ChangeType.MODIFIED, "k1", {
            "user_id": "u1", "latitude": 27.7, "longitude": 85.3, "timestamp": T + 5,
        })])
        assert_that(timestamps(aggregator, "u1"), equal_to([T + 5]))

    async def test_snapshot_is_read_only(self, store: MemoryStore) -> None:
        aggregator = TrailAggregator(store)
        await aggregator.handle_changes([added("a", "u1", T)])
        snapshot = aggregator.snapshot()
        with pytest.raises(TypeError):
            snapshot["u1"] = ()  # type: ignore[index]

    async def test_snapshot_is_not_affected_by_later_changes(self, store: MemoryStore) -> None:
        aggregator = TrailAggregator(store)
        await aggregator.handle_changes([added("a", "u1", T)])
        snapshot = aggregator.snapshot()
        await aggregator.handle_changes([added("b", "u1", T + 1)])
        assert_that(snapshot["u1"], has_length(1))

    async def test_latest(self, store: MemoryStore) -> None:
        aggregator = TrailAggregator(store)
        assert_that(aggregator.latest("u1"), is_(none()))
        await aggregator.handle_changes([added("a", "u1", T + 5, latitude=1.0), added("b", "u1", T, latitude=2.0)])
        latest = aggregator.latest("u1")
        assert latest is not None
        assert_that(latest.latitude, equal_to(1.0))

    async def test_every_change_is_published(self, store: MemoryStore) -> None:
        aggregator = TrailAggregator(store)
        published: list[Trails] = []
        aggregator.on_update(published.append)

        await aggregator.handle_changes([added("a", "u1", T)])
        await aggregator.handle_changes([added("b", "u1", T + 1)])

        assert_that([len(snapshot["u1"]) for snapshot in published], equal_to([1, 2]))


@pytest.mark.asyncio
class TestTrailAggregatorFullStream:
    """Tests for the single full-stream subscription layout."""

    async def test_snapshot_and_live_updates(self, store: MemoryStore) -> None:
        await store.append("u1", {"latitude": 1.0, "longitude": 1.0, "timestamp": T + 1})
        await store.append("u1", {"latitude": 1.0, "longitude": 1.0, "timestamp": T})
        aggregator = TrailAggregator(store)

        await aggregator.start()
        await store.append("u2", {"latitude": 2.0, "longitude": 2.0, "timestamp": T})

        assert_that(timestamps(aggregator, "u1"), equal_to([T, T + 1]))
        assert_that(timestamps(aggregator, "u2"), equal_to([T]))
        aggregator.stop()

    async def test_stop_releases_subscription(self, store: MemoryStore) -> None:
        aggregator = TrailAggregator(store)
        await aggregator.start()
        await aggregator.start()
        assert_that(store.subscriber_count, equal_to(1))

        aggregator.stop()
        aggregator.stop()

        assert_that(store.subscriber_count, equal_to(0))
        await store.append("u1", {"latitude": 1.0, "longitude": 1.0, "timestamp": T})
        assert_that(aggregator.snapshot(), equal_to({}))


@pytest.mark.asyncio
class TestTrailAggregatorPerUser:
    """Tests for the per-user subscription layout."""

    async def test_added_then_modified_opens_one_subscription(self, store: MemoryStore) -> None:
        """Heartbeats fire ``modified`` for the same user; no duplicate listener may appear."""
        aggregator = TrailAggregator(store, per_user=True)
        await aggregator.start()

        await store.put("u1", {"online": True, "last_seen": 0})
        await store.put("u1", {"online": True, "last_seen": 15_000}, merge=True)
        await store.put("u1", {"online": True, "last_seen": 30_000}, merge=True)

        assert_that(aggregator.user_subscription_count, equal_to(1))
        # presence subscription + one location subscription
        assert_that(store.subscriber_count, equal_to(2))
        aggregator.stop()

    async def test_trail_follows_user_stream(self, store: MemoryStore) -> None:
        await store.append("u1", {"latitude": 1.0, "longitude": 1.0, "timestamp": T + 1})
        aggregator = TrailAggregator(store, per_user=True)
        await aggregator.start()
        await store.put("u1", {"online": True})
        await store.append("u1", {"latitude": 1.0, "longitude": 1.0, "timestamp": T})
        await store.append("u2", {"latitude": 2.0, "longitude": 2.0, "timestamp": T})

        assert_that(timestamps(aggregator, "u1"), equal_to([T, T + 1]))
        assert_that(aggregator.trail("u2"), empty())
        aggregator.stop()

    async def test_removed_user_is_dropped(self, store: MemoryStore) -> None:
        aggregator = TrailAggregator(store, per_user=True)
        published: list[Trails] = []
        aggregator.on_update(published.append)
        await aggregator.start()
        await store.put("u1", {"online": True})
        await store.append("u1", {"latitude": 1.0, "longitude": 1.0, "timestamp": T})

        await store.put("u1", {"online": False}, merge=True)

        assert_that(aggregator.user_subscription_count, equal_to(0))
        assert_that(store.subscriber_count, equal_to(1))
        assert_that(aggregator.snapshot(), equal_to({}))
        assert_that(published[-1], equal_to({}))

        # Later samples of the offline user are not picked up
        await store.append("u1", {"latitude": 1.0, "longitude": 1.0, "timestamp": T + 1})
        assert_that(aggregator.trail("u1"), empty())
        aggregator.stop()

    async def test_rejoin_opens_a_fresh_subscription(self, store: MemoryStore) -> None:
        await store.append("u1", {"latitude": 1.0, "longitude": 1.0, "timestamp": T})
        aggregator = TrailAggregator(store, per_user=True)
        await aggregator.start()
        for online in (True, False, True, False, True):
            await store.put("u1", {"online": online}, merge=True)

        assert_that(aggregator.user_subscription_count, equal_to(1))
        assert_that(store.subscriber_count, equal_to(2))
        assert_that(timestamps(aggregator, "u1"), equal_to([T]))
        aggregator.stop()

    async def test_stop_releases_every_subscription(self, store: MemoryStore) -> None:
        aggregator = TrailAggregator(store, per_user=True)
        await aggregator.start()
        await store.put("u1", {"online": True})
        await store.put("u2", {"online": True})
        assert_that(store.subscriber_count, equal_to(3))

        aggregator.stop()

        assert_that(store.subscriber_count, equal_to(0))
        assert_that(aggregator.user_subscription_count, equal_to(0))

    async def test_user_query_matches_only_owner(self) -> None:
        query = Query(LOCATIONS, user_id="u1")
        assert_that(
            [query.matches({"user_id": owner}) for owner in ("u1", "u2")],
            contains_exactly(True, False),
        )
