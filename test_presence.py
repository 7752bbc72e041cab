"""Tests for the presence tracker and presence view."""

import asyncio
from collections.abc import Mapping

import pytest
from hamcrest import (assert_that, contains_exactly, equal_to, has_entries,
                      has_length, is_, none)

from conftest import FakeClock
from live_trails.sync.presence import (PresenceRecord, PresenceStatus,
                                       PresenceTracker, PresenceView,
                                       TrackerState, is_effectively_online)
from live_trails.sync.registry import SessionRegistry
from live_trails.sync.store import PRESENCE, MemoryStore


class TestIsEffectivelyOnline:
    """Tests for the liveness derivation."""

    def test_fresh_heartbeat(self) -> None:
        record = PresenceRecord("u1", online=True, last_seen=0)
        assert_that(is_effectively_online(record, now=29_999), is_(True))

    def test_stale_heartbeat(self) -> None:
        """online=True with a heartbeat older than 30 s counts as offline."""
        record = PresenceRecord("u1", online=True, last_seen=0)
        assert_that(is_effectively_online(record, now=30_001), is_(False))

    def test_timeout_boundary_is_exclusive(self) -> None:
        record = PresenceRecord("u1", online=True, last_seen=0)
        assert_that(is_effectively_online(record, now=30_000), is_(False))

    def test_offline_flag(self) -> None:
        record = PresenceRecord("u1", online=False, last_seen=1_000)
        assert_that(is_effectively_online(record, now=1_000), is_(False))

    def test_never_seen(self) -> None:
        record = PresenceRecord("u1", online=True)
        assert_that(is_effectively_online(record, now=0), is_(False))

    def test_custom_timeout(self) -> None:
        record = PresenceRecord("u1", online=True, last_seen=0)
        assert_that(is_effectively_online(record, now=5_000, timeout=1_000), is_(False))


class TestPresenceRecordFromRecord:
    """Tests for PresenceRecord.from_record."""

    def test_last_seen_falls_back_to_last_online(self) -> None:
        record = PresenceRecord.from_record({"user_id": "u1", "online": True, "last_online": 7})
        assert record is not None
        assert_that(record.last_seen, equal_to(7.0))

    def test_truthy_non_bool_online_is_not_online(self) -> None:
        record = PresenceRecord.from_record({"user_id": "u1", "online": "yes"})
        assert record is not None
        assert_that(record.online, is_(False))

    def test_missing_owner(self) -> None:
        assert_that(PresenceRecord.from_record({"online": True}), is_(none()))

    def test_label_prefers_display_name(self) -> None:
        assert_that(PresenceRecord("u1", True, email="a@example.com", display_name="Ann").label, equal_to("Ann"))
        assert_that(PresenceRecord("u1", True, email="a@example.com").label, equal_to("a@example.com"))
        assert_that(PresenceRecord("u1", True).label, equal_to("u1"))


@pytest.mark.asyncio
class TestPresenceTracker:
    """Tests for PresenceTracker."""

    async def test_start_marks_online(self, store: MemoryStore, clock: FakeClock) -> None:
        clock.now = 1_000
        tracker = PresenceTracker(store, clock=clock, heartbeat_interval=3600)
        await tracker.start("u1", email="a@example.com", display_name="Ann")
        try:
            assert_that(tracker.state, equal_to(TrackerState.ONLINE))
            assert_that(
                store.records(PRESENCE)["u1"],
                has_entries(online=True, last_online=1_000, last_seen=1_000,
                            email="a@example.com", display_name="Ann"),
            )
        finally:
            await tracker.stop()

    async def test_start_twice_raises(self, store: MemoryStore, clock: FakeClock) -> None:
        tracker = PresenceTracker(store, clock=clock, heartbeat_interval=3600)
        await tracker.start("u1")
        try:
            with pytest.raises(RuntimeError, match="Expected unauthenticated tracker"):
                await tracker.start("u1")
        finally:
            await tracker.stop()

    async def test_heartbeat_refreshes_last_seen(self, store: MemoryStore, clock: FakeClock) -> None:
        tracker = PresenceTracker(store, clock=clock, heartbeat_interval=3600)
        await tracker.start("u1", email="a@example.com")
        clock.advance(15_000)

        assert_that(await tracker.heartbeat(), is_(True))

        assert_that(
            store.records(PRESENCE)["u1"],
            has_entries(online=True, last_seen=15_000, last_online=15_000, email="a@example.com"),
        )
        await tracker.stop()

    async def test_heartbeat_loop_runs_on_interval(self, store: MemoryStore, clock: FakeClock) -> None:
        tracker = PresenceTracker(store, clock=clock, heartbeat_interval=0.01)
        await tracker.start("u1")
        clock.advance(15_000)
        await asyncio.sleep(0.05)
        await tracker.stop()
        assert_that(store.records(PRESENCE)["u1"], has_entries(last_seen=15_000))

    async def test_heartbeat_survives_store_errors(self, store: MemoryStore, clock: FakeClock) -> None:
        tracker = PresenceTracker(store, clock=clock, heartbeat_interval=3600)
        await tracker.start("u1")
        store.set_offline(True)
        assert_that(await tracker.heartbeat(), is_(False))
        store.set_offline(False)
        clock.advance(1_000)
        assert_that(await tracker.heartbeat(), is_(True))
        await tracker.stop()

    async def test_stop_writes_offline_once(self, store: MemoryStore, clock: FakeClock) -> None:
        tracker = PresenceTracker(store, clock=clock, heartbeat_interval=3600)
        await tracker.start("u1")
        clock.advance(2_000)

        await tracker.stop()
        await tracker.stop()

        assert_that(tracker.state, equal_to(TrackerState.OFFLINE))
        assert_that(store.records(PRESENCE)["u1"], has_entries(online=False, last_online=2_000))
        assert_that(await tracker.heartbeat(), is_(False))
        assert_that(store.pending_cleanups, equal_to(0))

    async def test_closing_one_of_two_sessions_keeps_user_online(
        self, store: MemoryStore, clock: FakeClock,
    ) -> None:
        """Two tabs of one user: the first to close leaves the record online, the last writes offline."""
        registry = SessionRegistry()
        first = PresenceTracker(store, clock=clock, heartbeat_interval=3600, registry=registry)
        second = PresenceTracker(store, clock=clock, heartbeat_interval=3600, registry=registry)
        view = PresenceView(store, clock=clock)
        await view.start()
        await first.start("alice")
        await second.start("alice")
        assert_that(registry.active("alice"), equal_to(2))

        clock.advance(1_000)
        await first.stop()

        assert_that(store.records(PRESENCE)["alice"], has_entries(online=True))
        status = view.status("alice")
        assert status is not None
        assert_that(status.online, is_(True))

        clock.advance(14_000)
        assert_that(await second.heartbeat(), is_(True))
        await second.stop()

        assert_that(store.records(PRESENCE)["alice"], has_entries(online=False, last_online=15_000))
        assert_that(registry.active("alice"), equal_to(0))
        await view.stop()

    async def test_disconnect_cleanup_skipped_while_other_session_live(
        self, store: MemoryStore, clock: FakeClock,
    ) -> None:
        registry = SessionRegistry()
        dropped = MemoryStore()
        first = PresenceTracker(dropped, clock=clock, heartbeat_interval=3600, registry=registry)
        second = PresenceTracker(store, clock=clock, heartbeat_interval=3600, registry=registry)
        await first.start("alice")
        await second.start("alice")

        await dropped.disconnect()

        assert_that(dropped.records(PRESENCE)["alice"], has_entries(online=True))
        await first.stop()
        await second.stop()
        assert_that(store.records(PRESENCE)["alice"], has_entries(online=False))

    async def test_separate_registries_do_not_interact(self, store: MemoryStore, clock: FakeClock) -> None:
        first = PresenceTracker(store, clock=clock, heartbeat_interval=3600)
        second = PresenceTracker(store, clock=clock, heartbeat_interval=3600)
        await first.start("alice")
        await second.start("alice")
        await first.stop()
        assert_that(store.records(PRESENCE)["alice"], has_entries(online=False))
        await second.stop()

    async def test_stop_before_start(self, store: MemoryStore) -> None:
        """Signing out before sign-in writes nothing."""
        tracker = PresenceTracker(store)
        await tracker.stop()
        assert_that(tracker.state, equal_to(TrackerState.OFFLINE))
        assert_that(store.records(PRESENCE), equal_to({}))

    async def test_disconnect_cleanup_marks_offline(self, store: MemoryStore, clock: FakeClock) -> None:
        """An unclean drop runs the registered cleanup instead of stop()."""
        tracker = PresenceTracker(store, clock=clock, heartbeat_interval=3600)
        await tracker.start("u1")
        assert_that(store.pending_cleanups, equal_to(1))
        clock.advance(4_000)

        await store.disconnect()

        assert_that(store.records(PRESENCE)["u1"], has_entries(online=False, last_online=4_000))
        await tracker.stop()

    async def test_failed_sign_in_write_is_logged(self, store: MemoryStore, clock: FakeClock) -> None:
        store.set_offline(True)
        tracker = PresenceTracker(store, clock=clock, heartbeat_interval=3600)
        await tracker.start("u1")
        assert_that(tracker.state, equal_to(TrackerState.ONLINE))
        store.set_offline(False)
        await tracker.heartbeat()
        assert_that(store.records(PRESENCE)["u1"], has_entries(online=True))
        await tracker.stop()


@pytest.mark.asyncio
class TestPresenceView:
    """Tests for PresenceView."""

    async def test_snapshot_and_updates(self, store: MemoryStore, clock: FakeClock) -> None:
        await store.put("u1", {"online": True, "last_seen": 0})
        view = PresenceView(store, clock=clock)
        snapshots: list[Mapping[str, PresenceStatus]] = []
        view.on_update(snapshots.append)

        await view.start()
        await store.put("u2", {"online": True, "last_seen": 0, "display_name": "Bob"})

        assert_that(snapshots, has_length(2))
        assert_that(list(snapshots[-1]), equal_to(["u1", "u2"]))
        assert_that(snapshots[-1]["u2"].label, equal_to("Bob"))
        assert_that(view.online_count(), equal_to(2))
        await view.stop()

    async def test_crashed_session_goes_offline(self, store: MemoryStore, clock: FakeClock) -> None:
        """A heartbeat at t=0 and nothing after: offline at t=31 s despite online=True."""
        view = PresenceView(store, clock=clock)
        await view.start()
        tracker = PresenceTracker(store, clock=clock, heartbeat_interval=3600)
        await tracker.start("u3")

        clock.now = 31_000

        status = view.status("u3")
        assert status is not None
        assert_that(status.online, is_(False))
        assert_that(store.records(PRESENCE)["u3"], has_entries(online=True))
        assert_that(view.online_users(), equal_to([]))
        await tracker.stop()
        await view.stop()

    async def test_offline_write_is_reflected(self, store: MemoryStore, clock: FakeClock) -> None:
        view = PresenceView(store, clock=clock)
        await view.start()
        tracker = PresenceTracker(store, clock=clock, heartbeat_interval=3600)
        await tracker.start("u1")
        status = view.status("u1")
        assert status is not None
        assert_that(status.online, is_(True))

        await tracker.stop()

        status = view.status("u1")
        assert status is not None
        assert_that(status.online, is_(False))
        await view.stop()

    async def test_unknown_user(self, store: MemoryStore) -> None:
        view = PresenceView(store)
        await view.start()
        assert_that(view.status("nobody"), is_(none()))
        await view.stop()

    async def test_sweep_publishes_only_on_flip(self, store: MemoryStore, clock: FakeClock) -> None:
        await store.put("u1", {"online": True, "last_seen": 0})
        view = PresenceView(store, clock=clock)
        snapshots: list[Mapping[str, PresenceStatus]] = []
        view.on_update(snapshots.append)
        await view.start()

        assert_that(await view.sweep(), is_(False))
        clock.now = 31_000
        assert_that(await view.sweep(), is_(True))
        assert_that(await view.sweep(), is_(False))

        assert_that(
            [snapshot["u1"].online for snapshot in snapshots],
            contains_exactly(True, False),
        )
        await view.stop()

    async def test_sweep_loop(self, store: MemoryStore, clock: FakeClock) -> None:
        await store.put("u1", {"online": True, "last_seen": 0})
        view = PresenceView(store, clock=clock, sweep_interval=0.01)
        snapshots: list[Mapping[str, PresenceStatus]] = []
        view.on_update(snapshots.append)
        await view.start()

        clock.now = 60_000
        await asyncio.sleep(0.05)
        await view.stop()

        assert_that(snapshots[-1]["u1"].online, is_(False))

    async def test_stop_releases_subscription(self, store: MemoryStore) -> None:
        view = PresenceView(store)
        await view.start()
        assert_that(store.subscriber_count, equal_to(1))
        await view.stop()
        await view.stop()
        assert_that(store.subscriber_count, equal_to(0))

    async def test_failing_listener_is_isolated(self, store: MemoryStore) -> None:
        view = PresenceView(store)
        received: list[Mapping[str, PresenceStatus]] = []

        def broken(snapshot: Mapping[str, PresenceStatus]) -> None:
            raise RuntimeError("listener bug")

        view.on_update(broken)
        view.on_update(received.append)
        await view.start()
        assert_that(received, has_length(1))
        await view.stop()

    async def test_status_as_dict(self, store: MemoryStore, clock: FakeClock) -> None:
        await store.put("u1", {"online": True, "last_seen": 0, "email": "a@example.com"})
        view = PresenceView(store, clock=clock)
        await view.start()
        status = view.status("u1")
        assert status is not None
        assert_that(
            status.as_dict(),
            equal_to({"user_id": "u1", "online": True, "last_seen": 0.0, "label": "a@example.com"}),
        )
        await view.stop()
