from __future__ import annotations

from datetime import timedelta

import pytest

from src.wellness.errors import NotificationTransportError
from src.wellness.migration import MigrationPass
from src.wellness.reminders import NotificationLifecycleManager

from .conftest import NOW
from .fakes import FakeNotifications, make_entry

FUTURE = NOW + timedelta(days=1)
PAST = NOW - timedelta(days=1)


@pytest.fixture()
def migration(storage, lifecycle, clock) -> MigrationPass:
    return MigrationPass(storage, lifecycle, clock=clock)


def stored_ids(storage, entry):
    return storage.get_todo_entry(entry["app_id"], entry["org_id"], entry["user_id"], entry["id"])["message_ids"]


class TestMigrationPass:
    def test_backfills_only_entries_missing_future_messages(self, storage, notifications, migration):
        missing = storage.create_todo_entry(make_entry(reminder_type="push", due_date_time=FUTURE))
        complete = storage.create_todo_entry(
            make_entry(
                reminder_type="push",
                due_date_time=FUTURE,
                message_ids={"due_date_message_id": "existing", "reminder_date_message_id": None},
            )
        )
        storage.create_todo_entry(make_entry(reminder_type="none", due_date_time=FUTURE))
        storage.create_todo_entry(make_entry(reminder_type="push", due_date_time=PAST))

        assert migration.run_once() == 1

        assert len(notifications.sent) == 1
        assert notifications.sent[0].data["entity_id"] == missing["id"]
        assert stored_ids(storage, missing)["due_date_message_id"] == "msg-1"
        assert stored_ids(storage, complete)["due_date_message_id"] == "existing"

    def test_is_idempotent(self, storage, notifications, migration):
        storage.create_todo_entry(make_entry(reminder_type="push", due_date_time=FUTURE, reminder_date_time=FUTURE))

        assert migration.run_once() == 1
        assert migration.run_once() == 0
        assert migration.run_once() == 0
        assert len(notifications.sent) == 2
        assert notifications.deleted == []

    def test_explicit_now_decides_what_is_in_the_future(self, storage, notifications, migration, clock):
        entry = storage.create_todo_entry(make_entry(reminder_type="push", due_date_time=FUTURE))
        clock.advance(days=2)

        assert migration.run_once(now=NOW) == 1
        assert stored_ids(storage, entry)["due_date_message_id"] == "msg-1"

    def test_failed_send_does_not_stop_other_entries(self, storage, clock):
        failing = storage.create_todo_entry(make_entry(title="Fails", reminder_type="push", due_date_time=FUTURE))
        ok = storage.create_todo_entry(make_entry(title="Works", reminder_type="push", due_date_time=FUTURE))

        class PickyNotifications(FakeNotifications):
            def send(self, request):
                if request.data["entity_id"] == failing["id"]:
                    raise NotificationTransportError("send notification", "response code 500", 500)
                return super().send(request)

        lifecycle = NotificationLifecycleManager(PickyNotifications(), clock=clock)

        assert MigrationPass(storage, lifecycle, clock=clock).run_once() == 1
        assert stored_ids(storage, failing)["due_date_message_id"] is None
        assert stored_ids(storage, ok)["due_date_message_id"] == "msg-1"

    def test_storage_failure_compensates_sent_messages(self, storage, notifications, migration):
        entry = storage.create_todo_entry(make_entry(reminder_type="push", due_date_time=FUTURE))
        storage.fail_on.add("update_message_ids")

        assert migration.run_once() == 0

        assert notifications.deleted_ids == ["msg-1"]
        assert stored_ids(storage, entry)["due_date_message_id"] is None
