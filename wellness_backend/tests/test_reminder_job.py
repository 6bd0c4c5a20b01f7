from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from src.wellness.errors import StorageError
from src.wellness.models import ClaimKind
from src.wellness.reminders import ReminderProcessingJob

from .conftest import NOW
from .fakes import make_entry


@pytest.fixture()
def job(storage, scanner, lifecycle, clock) -> ReminderProcessingJob:
    return ReminderProcessingJob(storage, scanner, lifecycle, clock=clock)


@pytest.fixture()
def seeded(storage):
    due = storage.create_todo_entry(
        make_entry(title="Stretch", has_due_time=True, due_date_time=datetime(2025, 3, 10, 12, 0, 30))
    )
    reminder = storage.create_todo_entry(
        make_entry(
            title="Meditate",
            user_id="user2",
            reminder_type="push",
            due_date_time=datetime(2025, 3, 10, 20, 0, 0),
            reminder_date_time=datetime(2025, 3, 10, 12, 0, 50),
        )
    )
    storage.create_todo_entry(make_entry(has_due_time=True, due_date_time=datetime(2025, 3, 10, 12, 5, 0)))
    return due, reminder


class TestReminderProcessingJob:
    def test_run_notifies_due_then_reminder_entries(self, job, notifications, seeded):
        due, reminder = seeded

        result = job.run()

        assert (result.due_claimed, result.reminders_claimed, result.sent, result.failed) == (1, 1, 2, 0)
        due_request, reminder_request = notifications.sent
        assert due_request.subject == "Task due"
        assert due_request.scheduled_at is None
        assert due_request.data["entity_id"] == due["id"]
        assert due_request.data["operation"] == "todo_due"
        assert reminder_request.subject == "Task reminder"
        assert reminder_request.recipients == ["user2"]
        assert reminder_request.data["entity_name"] == "Meditate"
        assert reminder_request.data["app_id"] == "app1"
        assert reminder_request.data["org_id"] == "org1"

    def test_repeated_runs_in_one_window_notify_once(self, job, notifications, clock, seeded):
        job.run()
        clock.advance(seconds=30)
        second = job.run()

        assert second.due_claimed == 0 and second.reminders_claimed == 0
        assert len(notifications.sent) == 2

    def test_send_failures_are_counted_not_raised(self, job, notifications, storage, seeded):
        notifications.fail_send = True

        result = job.run()

        assert result.sent == 0
        assert result.failed == 2
        # The claim stands even though delivery failed
        assert all(e["task_time"] == NOW for e in storage.scan_entries_for_migration() if e["task_time"])

    def test_storage_failure_aborts_and_rolls_back(self, job, storage, notifications, seeded):
        due, _ = seeded
        real_claim = storage.claim_due_entries

        def claim(kind, *args):
            if kind is ClaimKind.REMINDER:
                raise StorageError("claiming reminder entries")
            return real_claim(kind, *args)

        storage.claim_due_entries = claim

        with pytest.raises(StorageError):
            job.run()

        stored = storage.get_todo_entry("app1", "org1", "user1", due["id"])
        assert stored["task_time"] is None

    def test_explicit_now_overrides_the_clock(self, job, seeded):
        result = job.run(now=NOW + timedelta(minutes=5))
        assert result.due_claimed == 1
        assert result.reminders_claimed == 0
