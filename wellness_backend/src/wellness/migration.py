from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from .errors import StorageError
from .reminders import NotificationJournal, NotificationLifecycleManager, requires_migration
from .repositories import Storage
from .utils import to_naive_utc, utc_now

logger = logging.getLogger(__name__)

__all__ = ["MigrationPass", "requires_migration"]


# PUBLIC_INTERFACE
class MigrationPass:
    """
    Startup backfill of missing notification message ids.

    Each eligible entry goes through the lifecycle manager's update path with
    itself as both old and new state, which only schedules the slots that
    are in the future and still empty. Running it again finds nothing to do.
    """

    def __init__(
        self,
        storage: Storage,
        lifecycle: NotificationLifecycleManager,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._storage = storage
        self._lifecycle = lifecycle
        self._clock = clock

    def run_once(self, now: Optional[datetime] = None) -> int:
        """Backfill every entry that requires it. Return the number of entries updated."""
        now = to_naive_utc(now) if now is not None else self._clock()
        entries = self._storage.scan_entries_for_migration()
        pending = [e for e in entries if requires_migration(e, now)]  # type: ignore[arg-type]
        logger.info("notification migration: %d of %d entries require migration", len(pending), len(entries))

        migrated = 0
        for entry in pending:
            journal = NotificationJournal()
            message_ids = self._lifecycle.on_update(entry, entry, journal, now=now)
            if message_ids == entry["message_ids"]:
                logger.warning("todo entry %s still lacks message ids after migration attempt", entry["id"])
                continue

            try:
                with self._storage.transaction():
                    self._storage.update_message_ids(entry["id"], message_ids)
            except StorageError:
                logger.exception("error saving migrated message ids for todo entry %s", entry["id"])
                self._lifecycle.compensate(journal)
                continue
            migrated += 1

        logger.info("notification migration finished: %d entries updated", migrated)
        return migrated
