from __future__ import annotations

import copy
import logging
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from threading import RLock
from typing import Any, Callable, Dict, Generator, Iterable, List, Optional, TypeVar

from .errors import StorageError
from .models import (
    ClaimKind,
    MessageIDs,
    Ring,
    RingHistoryEntry,
    RingRecord,
    TodoCategory,
    TodoEntry,
    empty_message_ids,
)
from .settings import get_settings
from .utils import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Entry fields a user update may change; everything else is owned by the core
UPDATABLE_ENTRY_FIELDS = (
    "title",
    "description",
    "category",
    "work_days",
    "location",
    "completed",
    "has_due_time",
    "due_date_time",
    "reminder_type",
    "reminder_date_time",
    "recurrence_type",
    "recurrence_id",
    "message_ids",
)


def category_ref(category: TodoCategory) -> Dict[str, Any]:
    """Denormalized category reference embedded in todo entries."""
    return {
        "id": category["id"],
        "name": category["name"],
        "color": category.get("color"),
        "reminder_type": category.get("reminder_type"),
    }


# PUBLIC_INTERFACE
class Storage(ABC):
    """
    Abstract storage contract for the wellness document collections:
    todo_categories, todo_entries, rings and ring_records.

    Every operation runs inside the active transaction when one is open
    (see `transaction()`), otherwise in its own implicit transaction.
    Backend failures are raised as StorageError.
    """

    @abstractmethod
    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """Open a transaction; commit on normal exit, roll back on exception."""

    def perform_transaction(self, fn: Callable[[], T]) -> T:
        """Run `fn` inside a transaction and return its result."""
        with self.transaction():
            return fn()

    # Todo categories

    @abstractmethod
    def get_todo_categories(self, app_id: str, org_id: str, user_id: str) -> List[TodoCategory]:
        """Return the user's categories sorted by name."""

    @abstractmethod
    def get_todo_category(self, app_id: str, org_id: str, user_id: str, category_id: str) -> Optional[TodoCategory]:
        """Return a single category or None."""

    @abstractmethod
    def create_todo_category(self, app_id: str, org_id: str, user_id: str, data: Dict[str, Any]) -> TodoCategory:
        """Create a category from name/color/reminder_type."""

    @abstractmethod
    def update_todo_category(
        self, app_id: str, org_id: str, user_id: str, category_id: str, data: Dict[str, Any]
    ) -> Optional[TodoCategory]:
        """Update a category and rewrite the category ref on the user's entries. None if not found."""

    @abstractmethod
    def delete_todo_category(self, app_id: str, org_id: str, user_id: str, category_id: str) -> bool:
        """Delete a category and clear the category ref on the user's entries."""

    # Todo entries

    @abstractmethod
    def get_todo_entries(self, app_id: str, org_id: str, user_id: str) -> List[TodoEntry]:
        """Return the user's todo entries sorted by creation date."""

    @abstractmethod
    def get_todo_entry(self, app_id: str, org_id: str, user_id: str, entry_id: str) -> Optional[TodoEntry]:
        """Return a single todo entry or None."""

    @abstractmethod
    def create_todo_entry(self, entry: TodoEntry) -> TodoEntry:
        """Insert a prepared todo entry document (id/date_created are filled when missing)."""

    @abstractmethod
    def update_todo_entry(self, entry: TodoEntry) -> Optional[TodoEntry]:
        """Replace the user-updatable fields of an entry. None if not found."""

    @abstractmethod
    def delete_todo_entry(self, app_id: str, org_id: str, user_id: str, entry_id: str) -> bool:
        """Delete a todo entry. Return True if deleted."""

    @abstractmethod
    def get_completed_todo_entries(self, app_id: str, org_id: str, user_id: str) -> List[TodoEntry]:
        """Return the user's completed entries."""

    @abstractmethod
    def delete_completed_todo_entries(self, app_id: str, org_id: str, user_id: str) -> int:
        """Delete the user's completed entries. Return the number deleted."""

    @abstractmethod
    def update_message_ids(self, entry_id: str, message_ids: MessageIDs) -> bool:
        """Persist notification bookkeeping for an entry."""

    @abstractmethod
    def claim_due_entries(
        self, kind: ClaimKind, window_start: datetime, window_end: datetime, claimed_at: datetime
    ) -> List[TodoEntry]:
        """
        Find not-completed entries whose `kind` timestamp lies in
        [window_start, window_end) and whose task_time is unset or earlier than
        window_start, and set their task_time to `claimed_at`.

        The match-and-set is a single conditional update per entry, so an
        entry can never be returned twice for the same window.
        """

    @abstractmethod
    def scan_entries_for_migration(self) -> List[TodoEntry]:
        """Return every todo entry across all tenants."""

    # Account scoped deletion

    @abstractmethod
    def delete_todo_categories_for_accounts(self, app_id: str, org_id: str, account_ids: Iterable[str]) -> int:
        """Delete all categories of the given accounts in the tenant scope."""

    @abstractmethod
    def delete_todo_entries_for_accounts(self, app_id: str, org_id: str, account_ids: Iterable[str]) -> int:
        """Delete all todo entries of the given accounts in the tenant scope."""

    @abstractmethod
    def delete_rings_for_accounts(self, app_id: str, org_id: str, account_ids: Iterable[str]) -> int:
        """Delete all rings of the given accounts in the tenant scope."""

    @abstractmethod
    def delete_ring_records_for_accounts(self, app_id: str, org_id: str, account_ids: Iterable[str]) -> int:
        """Delete all ring records of the given accounts in the tenant scope."""

    # Rings

    @abstractmethod
    def create_ring(self, app_id: str, org_id: str, user_id: str, history: List[Dict[str, Any]]) -> Ring:
        """Create a ring with its initial history entries."""

    @abstractmethod
    def get_rings(self, app_id: str, org_id: str, user_id: str) -> List[Ring]:
        """Return the user's rings."""

    @abstractmethod
    def create_ring_record(self, app_id: str, org_id: str, user_id: str, ring_id: str, value: float) -> RingRecord:
        """Create a daily record for a ring."""

    @abstractmethod
    def get_ring_records(self, app_id: str, org_id: str, user_id: str, ring_id: Optional[str] = None) -> List[RingRecord]:
        """Return the user's ring records, optionally for a single ring."""


def new_todo_entry(app_id: str, org_id: str, user_id: str, data: Dict[str, Any]) -> TodoEntry:
    """
    Build a fresh todo entry document with a generated id and default
    bookkeeping fields. `data` carries the user-provided content fields.
    """
    entry: TodoEntry = {
        "id": str(uuid.uuid4()),
        "app_id": app_id,
        "org_id": org_id,
        "user_id": user_id,
        "title": data["title"],
        "description": data.get("description"),
        "category": data.get("category"),
        "work_days": list(data.get("work_days") or []),
        "location": data.get("location"),
        "completed": bool(data.get("completed", False)),
        "has_due_time": bool(data.get("has_due_time", False)),
        "due_date_time": data.get("due_date_time"),
        "reminder_type": data.get("reminder_type") or "none",
        "reminder_date_time": data.get("reminder_date_time"),
        "task_time": None,
        "message_ids": empty_message_ids(),
        "recurrence_type": data.get("recurrence_type"),
        "recurrence_id": data.get("recurrence_id"),
        "date_created": utc_now(),
        "date_updated": None,
    }
    return entry


def _owned_by(doc: Dict[str, Any], app_id: str, org_id: str, user_id: str) -> bool:
    return doc["app_id"] == app_id and doc["org_id"] == org_id and doc["user_id"] == user_id


class InMemoryStorage(Storage):
    """
    Thread-safe in-memory document store suitable for testing and default runtime.

    Transactions hold the store lock for their whole duration and roll back to
    a snapshot taken when the outermost transaction began.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._depth = 0
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {
            "todo_categories": {},
            "todo_entries": {},
            "rings": {},
            "ring_records": {},
        }

    def _now(self) -> datetime:
        return utc_now()

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        with self._lock:
            snapshot = copy.deepcopy(self._collections) if self._depth == 0 else None
            self._depth += 1
            try:
                yield
            except BaseException:
                if snapshot is not None:
                    self._collections = snapshot
                    logger.debug("in-memory transaction rolled back")
                raise
            finally:
                self._depth -= 1

    def _coll(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections[name]

    @staticmethod
    def _copy(doc: Any) -> Any:
        return copy.deepcopy(doc)

    # Todo categories

    def get_todo_categories(self, app_id: str, org_id: str, user_id: str) -> List[TodoCategory]:
        with self._lock:
            items = [c for c in self._coll("todo_categories").values() if _owned_by(c, app_id, org_id, user_id)]
            return [self._copy(c) for c in sorted(items, key=lambda c: c["name"])]

    def get_todo_category(self, app_id: str, org_id: str, user_id: str, category_id: str) -> Optional[TodoCategory]:
        with self._lock:
            item = self._coll("todo_categories").get(category_id)
            if item is None or not _owned_by(item, app_id, org_id, user_id):
                return None
            return self._copy(item)

    def create_todo_category(self, app_id: str, org_id: str, user_id: str, data: Dict[str, Any]) -> TodoCategory:
        category: TodoCategory = {
            "id": str(uuid.uuid4()),
            "app_id": app_id,
            "org_id": org_id,
            "user_id": user_id,
            "name": data["name"],
            "color": data.get("color"),
            "reminder_type": data.get("reminder_type"),
            "date_created": self._now(),
            "date_updated": None,
        }
        with self._lock:
            self._coll("todo_categories")[category["id"]] = category
            return self._copy(category)

    def update_todo_category(
        self, app_id: str, org_id: str, user_id: str, category_id: str, data: Dict[str, Any]
    ) -> Optional[TodoCategory]:
        with self.transaction():
            existing = self._coll("todo_categories").get(category_id)
            if existing is None or not _owned_by(existing, app_id, org_id, user_id):
                return None
            existing["name"] = data.get("name", existing["name"])
            existing["color"] = data.get("color", existing.get("color"))
            existing["reminder_type"] = data.get("reminder_type", existing.get("reminder_type"))
            existing["date_updated"] = self._now()

            ref = category_ref(existing)  # type: ignore[arg-type]
            for entry in self._coll("todo_entries").values():
                if _owned_by(entry, app_id, org_id, user_id) and (entry.get("category") or {}).get("id") == category_id:
                    entry["category"] = dict(ref)
            return self._copy(existing)

    def delete_todo_category(self, app_id: str, org_id: str, user_id: str, category_id: str) -> bool:
        with self.transaction():
            existing = self._coll("todo_categories").get(category_id)
            if existing is None or not _owned_by(existing, app_id, org_id, user_id):
                return False
            del self._coll("todo_categories")[category_id]
            for entry in self._coll("todo_entries").values():
                if _owned_by(entry, app_id, org_id, user_id) and (entry.get("category") or {}).get("id") == category_id:
                    entry["category"] = None
            return True

    # Todo entries

    def get_todo_entries(self, app_id: str, org_id: str, user_id: str) -> List[TodoEntry]:
        with self._lock:
            items = [e for e in self._coll("todo_entries").values() if _owned_by(e, app_id, org_id, user_id)]
            return [self._copy(e) for e in sorted(items, key=lambda e: e["date_created"])]

    def get_todo_entry(self, app_id: str, org_id: str, user_id: str, entry_id: str) -> Optional[TodoEntry]:
        with self._lock:
            item = self._coll("todo_entries").get(entry_id)
            if item is None or not _owned_by(item, app_id, org_id, user_id):
                return None
            return self._copy(item)

    def create_todo_entry(self, entry: TodoEntry) -> TodoEntry:
        doc = self._copy(entry)
        doc.setdefault("id", str(uuid.uuid4()))
        doc.setdefault("date_created", self._now())
        with self._lock:
            self._coll("todo_entries")[doc["id"]] = doc
            return self._copy(doc)

    def update_todo_entry(self, entry: TodoEntry) -> Optional[TodoEntry]:
        with self._lock:
            existing = self._coll("todo_entries").get(entry["id"])
            if existing is None or not _owned_by(existing, entry["app_id"], entry["org_id"], entry["user_id"]):
                return None
            for name in UPDATABLE_ENTRY_FIELDS:
                existing[name] = self._copy(entry[name])  # type: ignore[literal-required]
            existing["date_updated"] = self._now()
            return self._copy(existing)

    def delete_todo_entry(self, app_id: str, org_id: str, user_id: str, entry_id: str) -> bool:
        with self._lock:
            existing = self._coll("todo_entries").get(entry_id)
            if existing is None or not _owned_by(existing, app_id, org_id, user_id):
                return False
            del self._coll("todo_entries")[entry_id]
            return True

    def get_completed_todo_entries(self, app_id: str, org_id: str, user_id: str) -> List[TodoEntry]:
        return [e for e in self.get_todo_entries(app_id, org_id, user_id) if e["completed"]]

    def delete_completed_todo_entries(self, app_id: str, org_id: str, user_id: str) -> int:
        with self._lock:
            entries = self._coll("todo_entries")
            doomed = [k for k, e in entries.items() if _owned_by(e, app_id, org_id, user_id) and e["completed"]]
            for key in doomed:
                del entries[key]
            return len(doomed)

    def update_message_ids(self, entry_id: str, message_ids: MessageIDs) -> bool:
        with self._lock:
            existing = self._coll("todo_entries").get(entry_id)
            if existing is None:
                return False
            existing["message_ids"] = dict(message_ids)
            existing["date_updated"] = self._now()
            return True

    def claim_due_entries(
        self, kind: ClaimKind, window_start: datetime, window_end: datetime, claimed_at: datetime
    ) -> List[TodoEntry]:
        field = kind.timestamp_field
        claimed: List[TodoEntry] = []
        with self._lock:
            for entry in self._coll("todo_entries").values():
                if entry["completed"]:
                    continue
                if kind is ClaimKind.DUE and not entry["has_due_time"]:
                    continue
                moment = entry.get(field)
                if moment is None or not (window_start <= moment < window_end):
                    continue
                task_time = entry.get("task_time")
                if task_time is not None and task_time >= window_start:
                    continue
                entry["task_time"] = claimed_at
                claimed.append(self._copy(entry))
        claimed.sort(key=lambda e: (e[field], e["id"]))  # type: ignore[literal-required]
        return claimed

    def scan_entries_for_migration(self) -> List[TodoEntry]:
        with self._lock:
            return [self._copy(e) for e in sorted(self._coll("todo_entries").values(), key=lambda e: e["date_created"])]

    # Account scoped deletion

    def _delete_for_accounts(self, name: str, app_id: str, org_id: str, account_ids: Iterable[str]) -> int:
        accounts = set(account_ids)
        with self._lock:
            coll = self._coll(name)
            doomed = [
                k for k, d in coll.items()
                if d["app_id"] == app_id and d["org_id"] == org_id and d["user_id"] in accounts
            ]
            for key in doomed:
                del coll[key]
            return len(doomed)

    def delete_todo_categories_for_accounts(self, app_id: str, org_id: str, account_ids: Iterable[str]) -> int:
        return self._delete_for_accounts("todo_categories", app_id, org_id, account_ids)

    def delete_todo_entries_for_accounts(self, app_id: str, org_id: str, account_ids: Iterable[str]) -> int:
        return self._delete_for_accounts("todo_entries", app_id, org_id, account_ids)

    def delete_rings_for_accounts(self, app_id: str, org_id: str, account_ids: Iterable[str]) -> int:
        return self._delete_for_accounts("rings", app_id, org_id, account_ids)

    def delete_ring_records_for_accounts(self, app_id: str, org_id: str, account_ids: Iterable[str]) -> int:
        return self._delete_for_accounts("ring_records", app_id, org_id, account_ids)

    # Rings

    def create_ring(self, app_id: str, org_id: str, user_id: str, history: List[Dict[str, Any]]) -> Ring:
        now = self._now()
        ring: Ring = {
            "id": str(uuid.uuid4()),
            "app_id": app_id,
            "org_id": org_id,
            "user_id": user_id,
            "history": [_history_entry(h, now) for h in history],
            "date_created": now,
            "date_updated": None,
        }
        with self._lock:
            self._coll("rings")[ring["id"]] = ring
            return self._copy(ring)

    def get_rings(self, app_id: str, org_id: str, user_id: str) -> List[Ring]:
        with self._lock:
            return [self._copy(r) for r in self._coll("rings").values() if _owned_by(r, app_id, org_id, user_id)]

    def create_ring_record(self, app_id: str, org_id: str, user_id: str, ring_id: str, value: float) -> RingRecord:
        record: RingRecord = {
            "id": str(uuid.uuid4()),
            "app_id": app_id,
            "org_id": org_id,
            "user_id": user_id,
            "ring_id": ring_id,
            "value": float(value),
            "date_created": self._now(),
            "date_updated": None,
        }
        with self._lock:
            self._coll("ring_records")[record["id"]] = record
            return self._copy(record)

    def get_ring_records(self, app_id: str, org_id: str, user_id: str, ring_id: Optional[str] = None) -> List[RingRecord]:
        with self._lock:
            return [
                self._copy(r) for r in self._coll("ring_records").values()
                if _owned_by(r, app_id, org_id, user_id) and (ring_id is None or r["ring_id"] == ring_id)
            ]


def _history_entry(data: Dict[str, Any], now: datetime) -> RingHistoryEntry:
    return {
        "id": str(uuid.uuid4()),
        "color_hex": data.get("color_hex"),
        "name": data.get("name", ""),
        "unit": data.get("unit"),
        "value": float(data.get("value", 0)),
        "date_created": now,
        "date_updated": None,
    }


# PUBLIC_INTERFACE
def get_repository() -> Storage:
    """
    Factory to return the configured storage backend based on settings.
    - memory: InMemoryStorage
    - sqlite: SQLiteStorage
    """
    settings = get_settings()
    if settings.persistence_backend == "sqlite":
        from .db import SQLiteStorage

        try:
            return SQLiteStorage(settings.sqlite_db_path)
        except StorageError:
            logger.exception("cannot open sqlite storage at %s", settings.sqlite_db_path)
            raise
    return InMemoryStorage()
