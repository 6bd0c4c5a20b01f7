from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from src.wellness.db import SQLiteStorage
from src.wellness.models import ClaimKind
from src.wellness.reminders import ClaimWindowScanner

from .conftest import NOW
from .fakes import make_entry


@pytest.fixture()
def db(tmp_path) -> SQLiteStorage:
    return SQLiteStorage(str(tmp_path / "data" / "wellness.db"))


class TestSQLiteEntries:
    def test_entry_round_trip_keeps_nested_fields(self, db):
        entry = make_entry(
            work_days=["mon", "thu"],
            location={"latitude": 40.1, "longitude": -88.2},
            reminder_type="push",
            due_date_time=datetime(2025, 3, 11, 9, 0, 0),
            message_ids={"due_date_message_id": "m-1", "reminder_date_message_id": None},
        )
        created = db.create_todo_entry(entry)

        fetched = db.get_todo_entry("app1", "org1", "user1", created["id"])
        assert fetched["work_days"] == ["mon", "thu"]
        assert fetched["location"] == {"latitude": 40.1, "longitude": -88.2}
        assert fetched["due_date_time"] == datetime(2025, 3, 11, 9, 0, 0)
        assert fetched["message_ids"] == {"due_date_message_id": "m-1", "reminder_date_message_id": None}
        assert db.get_todo_entry("app1", "org1", "someone-else", created["id"]) is None

    def test_update_and_message_ids(self, db):
        created = db.create_todo_entry(make_entry())
        created["title"] = "Walk the dog"
        created["completed"] = True

        updated = db.update_todo_entry(created)
        assert updated["title"] == "Walk the dog"
        assert updated["completed"] is True
        assert updated["date_updated"] is not None

        assert db.update_message_ids(created["id"], {"due_date_message_id": "x", "reminder_date_message_id": "y"})
        assert db.get_todo_entry("app1", "org1", "user1", created["id"])["message_ids"]["reminder_date_message_id"] == "y"

    def test_clear_completed(self, db):
        db.create_todo_entry(make_entry(completed=True))
        db.create_todo_entry(make_entry(completed=False))
        assert len(db.get_completed_todo_entries("app1", "org1", "user1")) == 1
        assert db.delete_completed_todo_entries("app1", "org1", "user1") == 1
        assert [e["completed"] for e in db.get_todo_entries("app1", "org1", "user1")] == [False]

    def test_transaction_rolls_back_on_error(self, db):
        with pytest.raises(RuntimeError):
            with db.transaction():
                db.create_todo_entry(make_entry(title="Never stored"))
                raise RuntimeError("boom")
        assert db.get_todo_entries("app1", "org1", "user1") == []


class TestSQLiteCategories:
    def test_category_changes_reach_entries(self, db):
        category = db.create_todo_category("app1", "org1", "user1", {"name": "Health", "color": "red"})
        entry = db.create_todo_entry(make_entry(category={"id": category["id"], "name": "Health", "color": "red", "reminder_type": None}))

        db.update_todo_category("app1", "org1", "user1", category["id"], {"name": "Fitness", "color": "blue"})
        assert db.get_todo_entry("app1", "org1", "user1", entry["id"])["category"]["name"] == "Fitness"

        assert db.delete_todo_category("app1", "org1", "user1", category["id"])
        assert db.get_todo_entry("app1", "org1", "user1", entry["id"])["category"] is None
        assert not db.delete_todo_category("app1", "org1", "user1", category["id"])


class TestSQLiteClaims:
    def test_claim_is_at_most_once_per_window(self, db):
        entry = db.create_todo_entry(make_entry(has_due_time=True, due_date_time=datetime(2025, 3, 10, 12, 0, 30)))
        scanner = ClaimWindowScanner(db)

        first = scanner.claim_due(ClaimKind.DUE, NOW)
        assert [e["id"] for e in first] == [entry["id"]]
        assert first[0]["task_time"] == NOW
        assert scanner.claim_due(ClaimKind.DUE, NOW + timedelta(seconds=30)) == []

    def test_claim_respects_filters(self, db):
        db.create_todo_entry(make_entry(completed=True, has_due_time=True, due_date_time=datetime(2025, 3, 10, 12, 0, 30)))
        db.create_todo_entry(make_entry(has_due_time=False, due_date_time=datetime(2025, 3, 10, 12, 0, 30)))
        reminder = db.create_todo_entry(make_entry(reminder_date_time=datetime(2025, 3, 10, 12, 0, 59, 999000)))

        assert db.claim_due_entries(ClaimKind.DUE, *window(), NOW) == []
        assert [e["id"] for e in db.claim_due_entries(ClaimKind.REMINDER, *window(), NOW)] == [reminder["id"]]

    def test_sub_millisecond_end_of_minute_is_in_window(self, db):
        late = db.create_todo_entry(make_entry(has_due_time=True, due_date_time=datetime(2025, 3, 10, 12, 0, 59, 999500)))
        db.create_todo_entry(make_entry(has_due_time=True, due_date_time=datetime(2025, 3, 10, 12, 1, 0)))

        assert [e["id"] for e in db.claim_due_entries(ClaimKind.DUE, *window(), NOW)] == [late["id"]]


def window():
    start = NOW.replace(second=0, microsecond=0)
    return start, start + timedelta(minutes=1)


class TestSQLiteAccountDeletion:
    def test_deletes_only_listed_accounts_in_scope(self, db):
        for user in ("A1", "B2"):
            db.create_todo_category("org.edu", "o1", user, {"name": "Health"})
            db.create_todo_entry(make_entry("org.edu", "o1", user))
            ring = db.create_ring("org.edu", "o1", user, [{"name": "Steps", "unit": "steps", "value": 10000}])
            db.create_ring_record("org.edu", "o1", user, ring["id"], 4200)
        db.create_todo_entry(make_entry("org.edu", "o2", "A1"))

        assert db.delete_todo_categories_for_accounts("org.edu", "o1", ["A1"]) == 1
        assert db.delete_todo_entries_for_accounts("org.edu", "o1", ["A1"]) == 1
        assert db.delete_rings_for_accounts("org.edu", "o1", ["A1"]) == 1
        assert db.delete_ring_records_for_accounts("org.edu", "o1", ["A1"]) == 1
        assert db.delete_todo_entries_for_accounts("org.edu", "o1", []) == 0

        assert db.get_rings("org.edu", "o1", "A1") == []
        assert len(db.get_ring_records("org.edu", "o1", "B2")) == 1
        assert db.get_rings("org.edu", "o1", "B2")[0]["history"][0]["name"] == "Steps"
        assert len(db.get_todo_entries("org.edu", "o2", "A1")) == 1
