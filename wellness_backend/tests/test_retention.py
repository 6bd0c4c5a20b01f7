from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from src.wellness.errors import SchedulingConfigError
from src.wellness.models import DeletedAccountGroup
from src.wellness.retention import RetentionScheduler, SchedulerState, load_zone, seconds_until_target

from .fakes import FakeIdentity, SlowIdentity, make_entry

CHICAGO = ZoneInfo("America/Chicago")
FOUR_AM = 4 * 3600

DELETE_CALLS = (
    "delete_todo_categories_for_accounts",
    "delete_todo_entries_for_accounts",
    "delete_rings_for_accounts",
    "delete_ring_records_for_accounts",
)


def chicago(hour, minute=0, second=0):
    return datetime(2025, 1, 15, hour, minute, second, tzinfo=CHICAGO)


class TestSecondsUntilTarget:
    def test_before_target_fires_today(self):
        assert seconds_until_target(chicago(3), FOUR_AM, CHICAGO) == 3600

    def test_after_target_fires_tomorrow(self):
        assert seconds_until_target(chicago(5), FOUR_AM, CHICAGO) == 23 * 3600

    def test_at_target_fires_immediately(self):
        assert seconds_until_target(chicago(4), FOUR_AM, CHICAGO) == 0

    def test_naive_now_is_utc(self):
        # 09:00 UTC is 03:00 in Chicago during standard time
        assert seconds_until_target(datetime(2025, 1, 15, 9, 0, 0), FOUR_AM, CHICAGO) == 3600

    def test_other_zone_same_instant(self):
        now = datetime(2025, 1, 15, 9, 0, 0, tzinfo=timezone.utc)
        assert seconds_until_target(now, FOUR_AM, timezone.utc) == 68400


class TestZone:
    def test_unknown_zone_raises(self):
        with pytest.raises(SchedulingConfigError):
            load_zone("Mars/Olympus_Mons")

    def test_scheduler_falls_back_to_utc(self, storage, caplog):
        with caplog.at_level(logging.ERROR):
            scheduler = RetentionScheduler(storage, FakeIdentity(), zone_name="Mars/Olympus_Mons")
        assert scheduler.zone is timezone.utc
        assert "falls back to UTC" in caplog.text


def seed_account(storage, app_id, org_id, user_id):
    storage.create_todo_category(app_id, org_id, user_id, {"name": "Health"})
    storage.create_todo_entry(make_entry(app_id, org_id, user_id))
    ring = storage.create_ring(app_id, org_id, user_id, [{"name": "Water", "unit": "glasses", "value": 8}])
    storage.create_ring_record(app_id, org_id, user_id, ring["id"], 3)


class TestProcessDelete:
    def test_cascade_deletes_every_resource_kind(self, storage):
        seed_account(storage, "org.edu", "o1", "A1")
        seed_account(storage, "org.edu", "o1", "B2")
        identity = FakeIdentity([DeletedAccountGroup("org.edu", "o1", frozenset({"A1"}))])
        scheduler = RetentionScheduler(storage, identity)

        totals = scheduler.process_delete()

        assert totals == {"todo_categories": 1, "todo_entries": 1, "rings": 1, "ring_records": 1}
        for name in DELETE_CALLS:
            assert storage.calls_to(name) == [("org.edu", "o1", ["A1"])]
        assert storage.get_todo_entries("org.edu", "o1", "A1") == []
        assert len(storage.get_todo_entries("org.edu", "o1", "B2")) == 1
        assert len(storage.get_rings("org.edu", "o1", "B2")) == 1

    def test_second_sweep_with_nothing_reported_deletes_nothing(self, storage):
        identity = FakeIdentity([DeletedAccountGroup("org.edu", "o1", frozenset({"A1"}))])
        scheduler = RetentionScheduler(storage, identity)
        scheduler.process_delete()
        storage.calls.clear()

        identity.groups = []
        scheduler.process_delete()

        assert storage.calls == []

    def test_identity_failure_skips_the_sweep(self, storage, caplog):
        scheduler = RetentionScheduler(storage, FakeIdentity(error=True))
        with caplog.at_level(logging.ERROR):
            totals = scheduler.process_delete()
        assert sum(totals.values()) == 0
        assert storage.calls == []
        assert "skipping sweep" in caplog.text

    def test_empty_groups_are_skipped(self, storage):
        scheduler = RetentionScheduler(storage, FakeIdentity([DeletedAccountGroup("org.edu", "o1", frozenset())]))
        scheduler.process_delete()
        assert storage.calls == []

    def test_failing_kind_does_not_block_the_others(self, storage):
        seed_account(storage, "app1", "org1", "A1")
        seed_account(storage, "app2", "org2", "C3")
        storage.fail_on.add("delete_todo_entries_for_accounts")
        identity = FakeIdentity(
            [
                DeletedAccountGroup("app1", "org1", frozenset({"A1"})),
                DeletedAccountGroup("app2", "org2", frozenset({"C3"})),
            ]
        )

        totals = RetentionScheduler(storage, identity).process_delete()

        assert totals == {"todo_categories": 2, "todo_entries": 0, "rings": 2, "ring_records": 2}
        assert len(storage.calls_to("delete_todo_entries_for_accounts")) == 2
        assert storage.get_todo_categories("app2", "org2", "C3") == []


async def wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


class TestSchedulerLoop:
    def test_start_requires_running_loop(self, storage):
        scheduler = RetentionScheduler(storage, FakeIdentity())
        with pytest.raises(RuntimeError):
            scheduler.start()
        assert scheduler.state is SchedulerState.IDLE

    @pytest.mark.asyncio
    async def test_stop_cancels_armed_timer(self, storage):
        identity = FakeIdentity()
        scheduler = RetentionScheduler(storage, identity, clock=lambda: chicago(5))

        scheduler.start()
        assert scheduler.state is SchedulerState.ARMED
        await scheduler.stop()

        assert scheduler.state is SchedulerState.CANCELLED
        assert identity.calls == 0
        assert scheduler.sweeps == 0

    @pytest.mark.asyncio
    async def test_fires_then_rearms(self, storage):
        identity = FakeIdentity()
        scheduler = RetentionScheduler(storage, identity, clock=lambda: chicago(4), interval_seconds=3600)

        scheduler.start()
        await wait_for(lambda: scheduler.sweeps == 1 and scheduler.state is SchedulerState.ARMED)
        assert identity.calls == 1

        await scheduler.stop()
        assert scheduler.state is SchedulerState.CANCELLED
        assert scheduler.sweeps == 1

    @pytest.mark.asyncio
    async def test_restart_keeps_a_single_timer(self, storage):
        scheduler = RetentionScheduler(storage, FakeIdentity(), clock=lambda: chicago(5))

        scheduler.start()
        first = scheduler._task
        scheduler.start()
        second = scheduler._task

        await wait_for(first.done)
        assert not second.done()
        assert scheduler.state is SchedulerState.ARMED

        await scheduler.stop()
        assert second.done()
        assert scheduler.state is SchedulerState.CANCELLED

    @pytest.mark.asyncio
    async def test_restart_during_sweep_never_overlaps_sweeps(self, storage):
        identity = SlowIdentity(delay=0.3)
        scheduler = RetentionScheduler(storage, identity, clock=lambda: chicago(4), interval_seconds=3600)

        scheduler.start()
        await wait_for(lambda: identity.active == 1)
        await asyncio.sleep(0.05)
        scheduler.start()

        await wait_for(lambda: scheduler.sweeps == 2)
        assert identity.max_active == 1
        assert identity.calls == 2

        await scheduler.stop()
        assert scheduler.state is SchedulerState.CANCELLED

    @pytest.mark.asyncio
    async def test_stop_without_start_is_a_no_op(self, storage):
        scheduler = RetentionScheduler(storage, FakeIdentity())
        await scheduler.stop()
        assert scheduler.state is SchedulerState.IDLE
