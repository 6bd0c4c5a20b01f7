from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, TypedDict

REMINDER_TYPE_NONE = "none"


# PUBLIC_INTERFACE
class MessageIDs(TypedDict):
    """
    Identifiers of the pending notifications scheduled for a todo entry.

    Fields:
    - due_date_message_id: message scheduled at the entry's due date time
    - reminder_date_message_id: message scheduled at the entry's reminder date time
    """

    due_date_message_id: Optional[str]
    reminder_date_message_id: Optional[str]


def empty_message_ids() -> MessageIDs:
    return {"due_date_message_id": None, "reminder_date_message_id": None}


class CategoryRef(TypedDict):
    id: str
    name: str
    color: Optional[str]
    reminder_type: Optional[str]


class Location(TypedDict):
    latitude: float
    longitude: float


# PUBLIC_INTERFACE
class TodoCategory(TypedDict):
    """A user defined todo category, scoped to (app_id, org_id, user_id)."""

    id: str
    app_id: str
    org_id: str
    user_id: str
    name: str
    color: Optional[str]
    reminder_type: Optional[str]
    date_created: datetime
    date_updated: Optional[datetime]


# PUBLIC_INTERFACE
class TodoEntry(TypedDict):
    """
    A user todo entry as stored in the todo_entries collection.

    Fields:
    - id/app_id/org_id/user_id: identity and tenant scope
    - title/description/category/work_days/location: content
    - has_due_time/due_date_time/reminder_type/reminder_date_time: scheduling
      (all datetimes are naive UTC instants)
    - completed: completion flag
    - task_time: last moment this entry was claimed by a reminder scan
    - message_ids: pending notification identifiers
    - recurrence_type/recurrence_id: stored as-is, no rescheduling logic
    - date_created/date_updated: audit timestamps
    """

    id: str
    app_id: str
    org_id: str
    user_id: str
    title: str
    description: Optional[str]
    category: Optional[CategoryRef]
    work_days: List[str]
    location: Optional[Location]
    completed: bool
    has_due_time: bool
    due_date_time: Optional[datetime]
    reminder_type: str
    reminder_date_time: Optional[datetime]
    task_time: Optional[datetime]
    message_ids: MessageIDs
    recurrence_type: Optional[str]
    recurrence_id: Optional[str]
    date_created: datetime
    date_updated: Optional[datetime]


class RingHistoryEntry(TypedDict):
    id: str
    color_hex: Optional[str]
    name: str
    unit: Optional[str]
    value: float
    date_created: datetime
    date_updated: Optional[datetime]


# PUBLIC_INTERFACE
class Ring(TypedDict):
    """A wellness ring wrapper with its history of goal definitions."""

    id: str
    app_id: str
    org_id: str
    user_id: str
    history: List[RingHistoryEntry]
    date_created: datetime
    date_updated: Optional[datetime]


# PUBLIC_INTERFACE
class RingRecord(TypedDict):
    """An individual daily record for a ring."""

    id: str
    app_id: str
    org_id: str
    user_id: str
    ring_id: str
    value: float
    date_created: datetime
    date_updated: Optional[datetime]


# PUBLIC_INTERFACE
class ClaimKind(str, Enum):
    """Which timestamp of a todo entry a claim scan matches on."""

    DUE = "due"
    REMINDER = "reminder"

    @property
    def timestamp_field(self) -> str:
        return "due_date_time" if self is ClaimKind.DUE else "reminder_date_time"

    @property
    def message_id_field(self) -> str:
        return "due_date_message_id" if self is ClaimKind.DUE else "reminder_date_message_id"


# PUBLIC_INTERFACE
@dataclass(frozen=True)
class DeletedAccountGroup:
    """Accounts reported deleted by the identity service for one tenant scope."""

    app_id: str
    org_id: str
    account_ids: FrozenSet[str] = frozenset()


# PUBLIC_INTERFACE
@dataclass(frozen=True)
class NotificationRequest:
    """
    A single message to hand to the notifications service.

    scheduled_at is an epoch time in seconds; None means deliver immediately.
    """

    recipients: List[str]
    subject: str
    body: str
    app_id: str
    org_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    scheduled_at: Optional[int] = None


# PUBLIC_INTERFACE
@dataclass(frozen=True)
class UserClaims:
    """Identity and tenant scope of the calling user."""

    app_id: str
    org_id: str
    user_id: str
