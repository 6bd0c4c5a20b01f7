from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Shared type for incoming date-times which can be a date, datetime, or ISO8601 string
DateTimeInput = Union[date, datetime, str]


def _parse_date_time(value: Optional[DateTimeInput]) -> Optional[datetime]:
    """
    Internal helper to normalize a due/reminder date-time input into a datetime.
    - If value is a string, parse via datetime.fromisoformat; a bare date becomes 00:00.
    - If value is a date (not datetime), convert to datetime at 00:00.
    - If value is a datetime, return as-is (aware values are converted to UTC later).
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        return value

    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, 0, 0, 0)

    if isinstance(value, str):
        s = value.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(s)
        except ValueError:
            try:
                d = date.fromisoformat(s)
                return datetime(d.year, d.month, d.day, 0, 0, 0)
            except ValueError as e:
                raise ValueError(
                    "Invalid date-time format. Use ISO8601 date or datetime string (e.g., '2025-01-31' or '2025-01-31T13:45:00Z')."
                ) from e

    raise ValueError("Invalid type for date-time; expected date, datetime, or ISO8601 string.")


def _clean_title(v: str, field_name: str = "title") -> str:
    s = v.strip()
    if not (1 <= len(s) <= 200):
        raise ValueError(f"{field_name} length must be between 1 and 200 characters")
    return s


class LocationSchema(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class CategoryRefOut(BaseModel):
    id: str
    name: str
    color: Optional[str] = None
    reminder_type: Optional[str] = None


class MessageIDsOut(BaseModel):
    due_date_message_id: Optional[str] = None
    reminder_date_message_id: Optional[str] = None


# PUBLIC_INTERFACE
class TodoCategoryIn(BaseModel):
    """
    Schema for creating or replacing a todo category.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"name": "Health", "color": "#4CAF50", "reminder_type": "none"}
        }
    )

    name: str = Field(..., description="Category name", min_length=1, max_length=200)
    color: Optional[str] = Field(default=None, description="Display color, e.g. a hex string")
    reminder_type: Optional[str] = Field(default=None, description="Default reminder type for the category")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _clean_title(v, "name")


# PUBLIC_INTERFACE
class TodoCategoryOut(BaseModel):
    """
    Schema returned by the API for a todo category.
    """

    id: str = Field(..., description="Unique identifier of the category")
    name: str
    color: Optional[str] = None
    reminder_type: Optional[str] = None
    date_created: datetime = Field(..., description="Creation timestamp (UTC)")
    date_updated: Optional[datetime] = Field(default=None, description="Last update timestamp (UTC)")


# PUBLIC_INTERFACE
class TodoEntryIn(BaseModel):
    """
    Schema for creating or replacing a todo entry.

    Any due/reminder date-time is stored as a UTC instant; values without an
    offset are taken as UTC. Setting reminder_type to "none" disables the
    entry's notifications.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "title": "Morning walk",
                "description": "30 minutes around the park",
                "category_id": None,
                "work_days": ["mon", "wed", "fri"],
                "completed": False,
                "has_due_time": True,
                "due_date_time": "2025-02-01T14:00:00Z",
                "reminder_type": "push",
                "reminder_date_time": "2025-02-01T13:30:00Z",
            }
        }
    )

    title: str = Field(..., description="Short title for the todo entry", min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, description="Optional detailed description")
    category_id: Optional[str] = Field(default=None, description="Id of one of the user's todo categories")
    work_days: List[str] = Field(default_factory=list, description="Days of the week the entry applies to")
    location: Optional[LocationSchema] = Field(default=None, description="Optional location")
    completed: bool = Field(default=False, description="Completion status flag")
    has_due_time: bool = Field(default=False, description="Whether due_date_time carries a meaningful time of day")
    due_date_time: Optional[datetime] = Field(default=None, description="Due instant")
    reminder_type: str = Field(default="none", description="'none' disables notifications for the entry")
    reminder_date_time: Optional[datetime] = Field(default=None, description="Reminder instant")
    recurrence_type: Optional[str] = Field(default=None, description="Stored as-is")
    recurrence_id: Optional[str] = Field(default=None, description="Stored as-is")

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        """
        Strip whitespace and enforce 1..200 length.
        """
        return _clean_title(v)

    @field_validator("reminder_type", mode="before")
    @classmethod
    def normalize_reminder_type(cls, v: Optional[str]) -> str:
        if v is None:
            return "none"
        s = str(v).strip().lower()
        return s or "none"

    @field_validator("due_date_time", "reminder_date_time", mode="before")
    @classmethod
    def parse_date_time(cls, v: Optional[DateTimeInput]) -> Optional[datetime]:
        """
        Normalize due/reminder date-times from str/date/datetime to datetime.
        """
        return _parse_date_time(v)


# PUBLIC_INTERFACE
class TodoEntryOut(BaseModel):
    """
    Schema returned by the API for a todo entry.
    """

    id: str = Field(..., description="Unique identifier of the todo entry")
    title: str
    description: Optional[str] = None
    category: Optional[CategoryRefOut] = None
    work_days: List[str] = Field(default_factory=list)
    location: Optional[LocationSchema] = None
    completed: bool
    has_due_time: bool
    due_date_time: Optional[datetime] = None
    reminder_type: str
    reminder_date_time: Optional[datetime] = None
    task_time: Optional[datetime] = Field(default=None, description="Last time a reminder scan claimed this entry")
    message_ids: MessageIDsOut = Field(default_factory=MessageIDsOut)
    recurrence_type: Optional[str] = None
    recurrence_id: Optional[str] = None
    date_created: datetime
    date_updated: Optional[datetime] = None


class ClearCompletedOut(BaseModel):
    deleted: int = Field(..., description="Number of completed entries deleted")


class ReminderRunOut(BaseModel):
    due_claimed: int
    reminders_claimed: int
    sent: int
    failed: int


class VersionOut(BaseModel):
    version: str
