"""
Application root.

Builds the storage backend and the notification/identity adapters once,
wires the reminder engine, the migration pass and the retention scheduler
on top of them, and exposes the user facing operations the routers call.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .errors import InvalidReferenceError, StorageError
from .identity import CoreAdapter, Identity
from .migration import MigrationPass
from .models import TodoCategory, TodoEntry, UserClaims
from .notifications import Notifications, NotificationsAdapter
from .reminders import (
    ClaimWindowScanner,
    NotificationJournal,
    NotificationLifecycleManager,
    ReminderProcessingJob,
    ReminderRunResult,
)
from .repositories import Storage, category_ref, get_repository, new_todo_entry
from .retention import RetentionScheduler
from .settings import Settings, get_settings
from .utils import to_naive_utc, utc_now

logger = logging.getLogger(__name__)

# Entry fields replaced wholesale by a PUT; category and message ids are resolved separately
_CONTENT_FIELDS = (
    "title",
    "description",
    "work_days",
    "location",
    "completed",
    "has_due_time",
    "due_date_time",
    "reminder_type",
    "reminder_date_time",
    "recurrence_type",
    "recurrence_id",
)


# PUBLIC_INTERFACE
class Application:
    """Owns the collaborators and the background jobs of one service instance."""

    def __init__(
        self,
        storage: Storage,
        notifications: Notifications,
        identity: Identity,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings or get_settings()
        self.storage = storage
        self.notifications = notifications
        self.identity = identity

        self.lifecycle = NotificationLifecycleManager(notifications, clock=clock)
        self.scanner = ClaimWindowScanner(storage)
        self.reminder_job = ReminderProcessingJob(storage, self.scanner, self.lifecycle, clock=clock)
        self.migration = MigrationPass(storage, self.lifecycle, clock=clock)
        self.retention = RetentionScheduler(
            storage,
            identity,
            zone_name=self.settings.retention_timezone,
            target_seconds=self.settings.retention_target_seconds,
        )

    # Lifecycle

    async def start(self) -> None:
        """Run the startup migration and arm the retention scheduler, as configured."""
        if self.settings.run_migration:
            try:
                await asyncio.to_thread(self.run_migration)
            except StorageError:
                logger.exception("startup notification migration failed")
        if self.settings.enable_retention:
            self.retention.start()

    async def stop(self) -> None:
        await self.retention.stop()
        for adapter in (self.notifications, self.identity):
            close = getattr(adapter, "close", None)
            if callable(close):
                close()

    # PUBLIC_INTERFACE
    def get_version(self) -> str:
        return self.settings.version

    # Todo categories

    def get_todo_categories(self, claims: UserClaims) -> List[TodoCategory]:
        return self.storage.get_todo_categories(claims.app_id, claims.org_id, claims.user_id)

    def get_todo_category(self, claims: UserClaims, category_id: str) -> Optional[TodoCategory]:
        return self.storage.get_todo_category(claims.app_id, claims.org_id, claims.user_id, category_id)

    def create_todo_category(self, claims: UserClaims, data: Dict[str, Any]) -> TodoCategory:
        return self.storage.perform_transaction(
            lambda: self.storage.create_todo_category(claims.app_id, claims.org_id, claims.user_id, data)
        )

    def update_todo_category(self, claims: UserClaims, category_id: str, data: Dict[str, Any]) -> Optional[TodoCategory]:
        """Update a category; the change is copied into every entry that references it."""
        return self.storage.perform_transaction(
            lambda: self.storage.update_todo_category(claims.app_id, claims.org_id, claims.user_id, category_id, data)
        )

    def delete_todo_category(self, claims: UserClaims, category_id: str) -> bool:
        return self.storage.perform_transaction(
            lambda: self.storage.delete_todo_category(claims.app_id, claims.org_id, claims.user_id, category_id)
        )

    # Todo entries

    def _resolve_category(self, claims: UserClaims, category_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not category_id:
            return None
        category = self.storage.get_todo_category(claims.app_id, claims.org_id, claims.user_id, category_id)
        if category is None:
            raise InvalidReferenceError(f"todo category {category_id} not found")
        return category_ref(category)

    @staticmethod
    def _normalize_times(data: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(data)
        for name in ("due_date_time", "reminder_date_time"):
            data[name] = to_naive_utc(data.get(name))
        return data

    def get_todo_entries(self, claims: UserClaims) -> List[TodoEntry]:
        return self.storage.get_todo_entries(claims.app_id, claims.org_id, claims.user_id)

    def get_todo_entry(self, claims: UserClaims, entry_id: str) -> Optional[TodoEntry]:
        return self.storage.get_todo_entry(claims.app_id, claims.org_id, claims.user_id, entry_id)

    # PUBLIC_INTERFACE
    def create_todo_entry(self, claims: UserClaims, data: Dict[str, Any]) -> TodoEntry:
        """
        Create an entry and schedule its due/reminder notifications.

        Notifications are scheduled before the insert; if the insert fails
        they are deleted again and the StorageError is re-raised.
        """
        data = self._normalize_times(data)
        data["category"] = self._resolve_category(claims, data.pop("category_id", None))
        entry = new_todo_entry(claims.app_id, claims.org_id, claims.user_id, data)

        journal = NotificationJournal()
        entry["message_ids"] = self.lifecycle.on_create(entry, journal)
        try:
            with self.storage.transaction():
                created = self.storage.create_todo_entry(entry)
        except StorageError:
            self.lifecycle.compensate(journal)
            raise
        logger.info("created todo entry %s for %s/%s", created["id"], claims.app_id, claims.org_id)
        return created

    # PUBLIC_INTERFACE
    def update_todo_entry(self, claims: UserClaims, entry_id: str, data: Dict[str, Any]) -> Optional[TodoEntry]:
        """
        Replace an entry's content and bring its pending notifications in line
        with the new due/reminder instants. None when the entry does not exist.
        """
        data = self._normalize_times(data)
        journal = NotificationJournal()
        try:
            with self.storage.transaction():
                existing = self.get_todo_entry(claims, entry_id)
                if existing is None:
                    return None

                incoming: TodoEntry = dict(existing)  # type: ignore[assignment]
                for name in _CONTENT_FIELDS:
                    if name in data:
                        incoming[name] = data[name]  # type: ignore[literal-required]
                if not incoming.get("reminder_type"):
                    incoming["reminder_type"] = "none"
                incoming["category"] = self._resolve_category(claims, data.get("category_id"))  # type: ignore[typeddict-item]
                incoming["message_ids"] = self.lifecycle.on_update(existing, incoming, journal)

                updated = self.storage.update_todo_entry(incoming)
        except StorageError:
            self.lifecycle.compensate(journal)
            raise
        return updated

    # PUBLIC_INTERFACE
    def delete_todo_entry(self, claims: UserClaims, entry_id: str) -> bool:
        """Delete an entry, then release its pending notifications."""
        with self.storage.transaction():
            existing = self.get_todo_entry(claims, entry_id)
            if existing is None:
                return False
            self.storage.delete_todo_entry(claims.app_id, claims.org_id, claims.user_id, entry_id)
        self.lifecycle.on_delete(existing)
        return True

    # PUBLIC_INTERFACE
    def delete_completed_todo_entries(self, claims: UserClaims) -> int:
        """Delete the user's completed entries and release their pending notifications."""
        with self.storage.transaction():
            completed = self.storage.get_completed_todo_entries(claims.app_id, claims.org_id, claims.user_id)
            deleted = self.storage.delete_completed_todo_entries(claims.app_id, claims.org_id, claims.user_id)
        for entry in completed:
            self.lifecycle.on_delete(entry)
        logger.info("cleared %d completed todo entries for user in %s/%s", deleted, claims.app_id, claims.org_id)
        return deleted

    # Jobs

    # PUBLIC_INTERFACE
    def process_reminders(self, now: Optional[datetime] = None) -> ReminderRunResult:
        return self.reminder_job.run(now)

    # PUBLIC_INTERFACE
    def run_migration(self, now: Optional[datetime] = None) -> int:
        return self.migration.run_once(now)


def build_application(settings: Optional[Settings] = None) -> Application:
    """Create an Application with the configured storage backend and HTTP adapters."""
    settings = settings or get_settings()
    notifications = NotificationsAdapter(
        settings.notifications_host,
        settings.internal_api_key,
        timeout=settings.http_timeout_seconds,
    )
    identity = CoreAdapter(
        settings.core_host,
        settings.service_id,
        internal_api_key=settings.internal_api_key,
        timeout=settings.http_timeout_seconds,
    )
    return Application(get_repository(), notifications, identity, settings=settings)


_application: Optional[Application] = None


# PUBLIC_INTERFACE
def get_application() -> Application:
    """
    Return the process-wide Application, building it on first use.

    Routers depend on this function, so tests swap the application through
    `app.dependency_overrides[get_application]`.
    """
    global _application
    if _application is None:
        _application = build_application()
    return _application
