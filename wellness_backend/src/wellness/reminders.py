"""
Reminder and due-time notification lifecycle.

- ClaimWindowScanner claims entries whose due/reminder instant falls in the
  current one-minute window, at most once per window.
- NotificationLifecycleManager keeps an entry's pending message ids in step
  with its due/reminder timestamps across create, update and delete.
- ReminderProcessingJob claims both kinds in one storage transaction and
  sends an immediate notification for every newly claimed entry.

Notification calls are not part of the storage transaction. Sends made while
persisting an entry are recorded in a NotificationJournal so the caller can
compensate (delete them again) when the transaction fails to commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from .errors import NotificationTransportError
from .models import (
    REMINDER_TYPE_NONE,
    ClaimKind,
    MessageIDs,
    NotificationRequest,
    TodoEntry,
    empty_message_ids,
)
from .notifications import Notifications
from .repositories import Storage
from .utils import claim_window, to_epoch_seconds, to_naive_utc, utc_now

logger = logging.getLogger(__name__)

ENTITY_TYPE = "wellness_todo_entry"

_SUBJECTS: Dict[ClaimKind, str] = {
    ClaimKind.DUE: "Task due",
    ClaimKind.REMINDER: "Task reminder",
}
_BODIES: Dict[ClaimKind, str] = {
    ClaimKind.DUE: 'Your task "{title}" is due.',
    ClaimKind.REMINDER: 'Reminder: "{title}".',
}
_OPERATIONS: Dict[ClaimKind, str] = {
    ClaimKind.DUE: "todo_due",
    ClaimKind.REMINDER: "todo_reminder",
}


def notifications_enabled(entry: TodoEntry) -> bool:
    return (entry.get("reminder_type") or REMINDER_TYPE_NONE) != REMINDER_TYPE_NONE


def same_instant(a: Optional[datetime], b: Optional[datetime]) -> bool:
    """True when both are None or both denote the same instant."""
    if a is None or b is None:
        return a is None and b is None
    return to_naive_utc(a) == to_naive_utc(b)


# PUBLIC_INTERFACE
def requires_migration(entry: TodoEntry, now: datetime) -> bool:
    """
    True when an entry should carry a pending message id but does not:
    notifications are enabled and a due/reminder instant lies in the future
    while its message id slot is empty.
    """
    if not notifications_enabled(entry):
        return False
    ids = entry.get("message_ids") or empty_message_ids()
    for kind in ClaimKind:
        moment = entry.get(kind.timestamp_field)
        if moment is not None and to_naive_utc(moment) > now and not ids.get(kind.message_id_field):  # type: ignore[operator]
            return True
    return False


def build_request(entry: TodoEntry, kind: ClaimKind, scheduled_at: Optional[datetime] = None) -> NotificationRequest:
    title = entry.get("title") or ""
    return NotificationRequest(
        recipients=[entry["user_id"]],
        subject=_SUBJECTS[kind],
        body=_BODIES[kind].format(title=title),
        app_id=entry["app_id"],
        org_id=entry["org_id"],
        data={
            "type": ENTITY_TYPE,
            "operation": _OPERATIONS[kind],
            "entity_type": ENTITY_TYPE,
            "entity_id": entry["id"],
            "entity_name": title,
            "app_id": entry["app_id"],
            "org_id": entry["org_id"],
        },
        scheduled_at=to_epoch_seconds(scheduled_at) if scheduled_at is not None else None,
    )


# PUBLIC_INTERFACE
@dataclass
class NotificationJournal:
    """Messages sent while persisting one entry mutation: (app_id, org_id, message_id)."""

    sent: List[Tuple[str, str, str]] = field(default_factory=list)

    def record(self, app_id: str, org_id: str, message_id: str) -> None:
        self.sent.append((app_id, org_id, message_id))

    def __len__(self) -> int:
        return len(self.sent)


# PUBLIC_INTERFACE
class ClaimWindowScanner:
    """Claims entries due in the one-minute window around `now`."""

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    def claim_due(self, kind: ClaimKind, now: datetime) -> List[TodoEntry]:
        """
        Return not-completed entries whose `kind` instant falls in the window
        containing `now` and that were not claimed since the window started;
        each returned entry has task_time set to `now`.
        """
        now = to_naive_utc(now)  # type: ignore[assignment]
        window_start, window_end = claim_window(now)
        with self._storage.transaction():
            entries = self._storage.claim_due_entries(kind, window_start, window_end, now)
        logger.info(
            "claimed %d %s entr%s for window %s - %s",
            len(entries), kind.value, "y" if len(entries) == 1 else "ies",
            window_start.isoformat(), window_end.isoformat(),
        )
        return entries


# PUBLIC_INTERFACE
class NotificationLifecycleManager:
    """
    Keeps an entry's message ids consistent with its due/reminder instants.

    Every notification failure is logged and leaves the affected slot empty
    (failed send) or stale (failed delete); nothing here raises on a
    notification error.
    """

    def __init__(self, notifications: Notifications, clock: Callable[[], datetime] = utc_now) -> None:
        self._notifications = notifications
        self._clock = clock

    def _schedule(
        self, entry: TodoEntry, kind: ClaimKind, moment: datetime, journal: Optional[NotificationJournal]
    ) -> Optional[str]:
        try:
            message_id = self._notifications.send(build_request(entry, kind, scheduled_at=moment))
        except NotificationTransportError as exc:
            logger.error("error scheduling %s notification for todo entry %s - %s", kind.value, entry["id"], exc)
            return None

        if message_id is not None and journal is not None:
            journal.record(entry["app_id"], entry["org_id"], message_id)
        logger.info("scheduled %s notification %s for todo entry %s", kind.value, message_id, entry["id"])
        return message_id

    def _release(self, entry: TodoEntry, kind: ClaimKind, message_id: str) -> None:
        try:
            self._notifications.delete(entry["app_id"], entry["org_id"], message_id)
        except NotificationTransportError as exc:
            logger.error(
                "error deleting %s notification %s for todo entry %s - %s", kind.value, message_id, entry["id"], exc
            )
            return
        logger.info("deleted %s notification %s for todo entry %s", kind.value, message_id, entry["id"])

    def on_create(self, entry: TodoEntry, journal: Optional[NotificationJournal] = None) -> MessageIDs:
        """Schedule a notification for each set due/reminder instant of a new entry."""
        ids = empty_message_ids()
        if not notifications_enabled(entry):
            return ids

        for kind in ClaimKind:
            moment = entry.get(kind.timestamp_field)
            if moment is not None:
                ids[kind.message_id_field] = self._schedule(entry, kind, moment, journal)  # type: ignore[literal-required]
        return ids

    def on_update(
        self,
        existing: TodoEntry,
        incoming: TodoEntry,
        journal: Optional[NotificationJournal] = None,
        now: Optional[datetime] = None,
    ) -> MessageIDs:
        """
        Compute the message ids for `incoming` given the stored `existing` entry.

        Per slot: an unchanged instant keeps its pending message; a changed
        instant replaces it; an unchanged instant without a message is
        backfilled while it is still in the future. Disabling notifications
        releases every pending message.
        """
        now = to_naive_utc(now) if now is not None else self._clock()
        old_ids = existing.get("message_ids") or empty_message_ids()
        enabled = notifications_enabled(incoming)
        ids = empty_message_ids()

        for kind in ClaimKind:
            slot = kind.message_id_field
            old_id = old_ids.get(slot)
            old_moment = existing.get(kind.timestamp_field)
            new_moment = incoming.get(kind.timestamp_field)

            if not enabled:
                if old_id:
                    self._release(existing, kind, old_id)
                continue

            if same_instant(old_moment, new_moment):
                if old_id:
                    ids[slot] = old_id  # type: ignore[literal-required]
                elif new_moment is not None and to_naive_utc(new_moment) > now:  # type: ignore[operator]
                    ids[slot] = self._schedule(incoming, kind, new_moment, journal)  # type: ignore[literal-required]
                continue

            if old_id:
                self._release(existing, kind, old_id)
            if new_moment is not None:
                ids[slot] = self._schedule(incoming, kind, new_moment, journal)  # type: ignore[literal-required]
        return ids

    def on_delete(self, existing: TodoEntry) -> None:
        """Release every pending message of an entry that is being deleted."""
        ids = existing.get("message_ids") or empty_message_ids()
        for kind in ClaimKind:
            message_id = ids.get(kind.message_id_field)
            if message_id:
                self._release(existing, kind, message_id)

    def compensate(self, journal: NotificationJournal) -> None:
        """Delete the messages sent for a storage operation that did not commit."""
        for app_id, org_id, message_id in journal.sent:
            try:
                self._notifications.delete(app_id, org_id, message_id)
            except NotificationTransportError as exc:
                logger.error("compensation failed, notification %s is orphaned - %s", message_id, exc)
                continue
            logger.warning("compensated notification %s after failed storage operation", message_id)
        journal.sent.clear()

    def dispatch_now(self, entry: TodoEntry, kind: ClaimKind) -> bool:
        """Send an immediate notification for a claimed entry. Return True on success."""
        try:
            message_id = self._notifications.send(build_request(entry, kind))
        except NotificationTransportError as exc:
            logger.error("error sending %s notification for todo entry %s - %s", kind.value, entry["id"], exc)
            return False
        logger.info("sent %s notification %s for todo entry %s", kind.value, message_id, entry["id"])
        return True


# PUBLIC_INTERFACE
@dataclass
class ReminderRunResult:
    """Counters of one reminder processing run."""

    due_claimed: int = 0
    reminders_claimed: int = 0
    sent: int = 0
    failed: int = 0


# PUBLIC_INTERFACE
class ReminderProcessingJob:
    """Claims due and reminder entries for the current minute and notifies their users."""

    def __init__(
        self,
        storage: Storage,
        scanner: ClaimWindowScanner,
        lifecycle: NotificationLifecycleManager,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._storage = storage
        self._scanner = scanner
        self._lifecycle = lifecycle
        self._clock = clock

    def run(self, now: Optional[datetime] = None) -> ReminderRunResult:
        """
        Run one processing cycle inside a single storage transaction.

        A StorageError aborts the run and propagates; notification failures
        are counted and logged per entry.
        """
        now = now or self._clock()
        result = ReminderRunResult()

        with self._storage.transaction():
            for kind in (ClaimKind.DUE, ClaimKind.REMINDER):
                entries = self._scanner.claim_due(kind, now)
                if kind is ClaimKind.DUE:
                    result.due_claimed = len(entries)
                else:
                    result.reminders_claimed = len(entries)

                for entry in entries:
                    if self._lifecycle.dispatch_now(entry, kind):
                        result.sent += 1
                    else:
                        result.failed += 1

        logger.info(
            "reminders processed: due=%d reminders=%d sent=%d failed=%d",
            result.due_claimed, result.reminders_claimed, result.sent, result.failed,
        )
        return result
