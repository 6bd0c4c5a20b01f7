from __future__ import annotations

import itertools
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from src.wellness.errors import IdentityError, NotificationTransportError, StorageError
from src.wellness.identity import Identity
from src.wellness.models import DeletedAccountGroup, NotificationRequest, TodoEntry
from src.wellness.notifications import Notifications
from src.wellness.repositories import InMemoryStorage, new_todo_entry


class FixedClock:
    """Callable clock returning a settable naive UTC instant."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeNotifications(Notifications):
    """
    In-memory notifications service.

    - Captures sent requests and deleted message ids for assertions
    - Hands out sequential message ids (msg-1, msg-2, ...)
    - fail_send / fail_delete make the next calls raise NotificationTransportError
    """

    def __init__(self) -> None:
        self.sent: List[NotificationRequest] = []
        self.sent_ids: List[str] = []
        self.deleted: List[Tuple[str, str, str]] = []
        self.fail_send = False
        self.fail_delete = False
        self._ids = itertools.count(1)

    def send(self, request: NotificationRequest) -> Optional[str]:
        if self.fail_send:
            raise NotificationTransportError("send notification", "response code 503", 503)
        if not request.recipients:
            return None
        message_id = f"msg-{next(self._ids)}"
        self.sent.append(request)
        self.sent_ids.append(message_id)
        return message_id

    def delete(self, app_id: str, org_id: str, message_id: str) -> None:
        if self.fail_delete:
            raise NotificationTransportError("delete notification", "response code 503", 503)
        self.deleted.append((app_id, org_id, message_id))

    @property
    def deleted_ids(self) -> List[str]:
        return [message_id for _, _, message_id in self.deleted]


class FakeIdentity(Identity):
    def __init__(self, groups: Optional[List[DeletedAccountGroup]] = None, error: bool = False) -> None:
        self.groups = groups or []
        self.error = error
        self.calls = 0

    def load_deleted_memberships(self) -> List[DeletedAccountGroup]:
        self.calls += 1
        if self.error:
            raise IdentityError("error with response code - 500")
        return list(self.groups)


class SlowIdentity(FakeIdentity):
    """FakeIdentity that blocks for `delay` seconds and tracks how many loads overlap."""

    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def load_deleted_memberships(self) -> List[DeletedAccountGroup]:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(self.delay)
            return super().load_deleted_memberships()
        finally:
            with self._lock:
                self.active -= 1


class FlakyStorage(InMemoryStorage):
    """
    InMemoryStorage that records selected calls and raises StorageError for
    the method names listed in `fail_on`.
    """

    def __init__(self) -> None:
        super().__init__()
        self.fail_on: Set[str] = set()
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []

    def _check(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if name in self.fail_on:
            raise StorageError(name.replace("_", " "))

    def calls_to(self, name: str) -> List[Tuple[Any, ...]]:
        return [args for called, args in self.calls if called == name]

    def create_todo_entry(self, entry: TodoEntry) -> TodoEntry:
        self._check("create_todo_entry", entry["id"])
        return super().create_todo_entry(entry)

    def update_todo_entry(self, entry: TodoEntry) -> Optional[TodoEntry]:
        self._check("update_todo_entry", entry["id"])
        return super().update_todo_entry(entry)

    def delete_todo_entry(self, app_id: str, org_id: str, user_id: str, entry_id: str) -> bool:
        self._check("delete_todo_entry", entry_id)
        return super().delete_todo_entry(app_id, org_id, user_id, entry_id)

    def update_message_ids(self, entry_id, message_ids) -> bool:
        self._check("update_message_ids", entry_id)
        return super().update_message_ids(entry_id, message_ids)

    def claim_due_entries(self, kind, window_start, window_end, claimed_at):
        self._check("claim_due_entries", kind)
        return super().claim_due_entries(kind, window_start, window_end, claimed_at)

    def delete_todo_categories_for_accounts(self, app_id: str, org_id: str, account_ids: Iterable[str]) -> int:
        account_ids = list(account_ids)
        self._check("delete_todo_categories_for_accounts", app_id, org_id, account_ids)
        return super().delete_todo_categories_for_accounts(app_id, org_id, account_ids)

    def delete_todo_entries_for_accounts(self, app_id: str, org_id: str, account_ids: Iterable[str]) -> int:
        account_ids = list(account_ids)
        self._check("delete_todo_entries_for_accounts", app_id, org_id, account_ids)
        return super().delete_todo_entries_for_accounts(app_id, org_id, account_ids)

    def delete_rings_for_accounts(self, app_id: str, org_id: str, account_ids: Iterable[str]) -> int:
        account_ids = list(account_ids)
        self._check("delete_rings_for_accounts", app_id, org_id, account_ids)
        return super().delete_rings_for_accounts(app_id, org_id, account_ids)

    def delete_ring_records_for_accounts(self, app_id: str, org_id: str, account_ids: Iterable[str]) -> int:
        account_ids = list(account_ids)
        self._check("delete_ring_records_for_accounts", app_id, org_id, account_ids)
        return super().delete_ring_records_for_accounts(app_id, org_id, account_ids)


def make_entry(
    app_id: str = "app1",
    org_id: str = "org1",
    user_id: str = "user1",
    **fields: Any,
) -> TodoEntry:
    """Build an unsaved todo entry; keyword arguments override any field."""
    data: Dict[str, Any] = {"title": fields.pop("title", "Drink water")}
    entry = new_todo_entry(app_id, org_id, user_id, data)
    entry.update(fields)  # type: ignore[typeddict-item]
    return entry
