"""
Daily data-retention sweep.

RetentionScheduler owns a single asyncio task that sleeps until the next
target time of day in a named timezone, runs the cascade deletion of
accounts reported deleted by the identity service, then re-arms for the
next day. It is started from the FastAPI lifespan and stopped on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Callable, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import IdentityError, SchedulingConfigError, StorageError
from .identity import Identity
from .repositories import Storage

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
DEFAULT_TIMEZONE = "America/Chicago"
DEFAULT_TARGET_SECONDS = 4 * 3600


# PUBLIC_INTERFACE
class SchedulerState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    FIRING = "firing"
    CANCELLED = "cancelled"


# PUBLIC_INTERFACE
def load_zone(name: str) -> tzinfo:
    """Return the named timezone. Raises SchedulingConfigError when it cannot be loaded."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise SchedulingConfigError(f"unknown timezone {name!r}") from exc


# PUBLIC_INTERFACE
def seconds_until_target(now: datetime, target_seconds: int, zone: tzinfo) -> int:
    """
    Seconds from `now` until the next `target_seconds` past local midnight in `zone`.

    A naive `now` is taken as UTC. When the local time is at or before the
    target the sweep fires today, otherwise tomorrow.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(zone)
    now_seconds = local.hour * 3600 + local.minute * 60 + local.second

    if now_seconds <= target_seconds:
        return target_seconds - now_seconds
    return SECONDS_PER_DAY - now_seconds + target_seconds


def _aware_utc_now() -> datetime:
    return datetime.now(timezone.utc)


# PUBLIC_INTERFACE
class RetentionScheduler:
    """
    Self-rescheduling, cancellable daily retention sweep.

    States: IDLE -> ARMED -> FIRING -> ARMED -> ... and ARMED/FIRING ->
    CANCELLED on stop(). Each wait races the timer against the cancellation
    event through a single asyncio.wait_for, so exactly one of them wins.
    """

    def __init__(
        self,
        storage: Storage,
        identity: Identity,
        zone_name: str = DEFAULT_TIMEZONE,
        target_seconds: int = DEFAULT_TARGET_SECONDS,
        interval_seconds: float = SECONDS_PER_DAY,
        clock: Callable[[], datetime] = _aware_utc_now,
    ) -> None:
        self._storage = storage
        self._identity = identity
        self._target_seconds = target_seconds
        self._interval_seconds = interval_seconds
        self._clock = clock
        self._state = SchedulerState.IDLE
        self._task: Optional[asyncio.Task] = None
        self._cancel_event: Optional[asyncio.Event] = None
        # Held for the duration of a sweep; a restarted loop queues behind it
        self._sweep_lock = asyncio.Lock()
        self.sweeps = 0

        try:
            self._zone = load_zone(zone_name)
        except SchedulingConfigError as exc:
            logger.error("%s, retention sweep falls back to UTC", exc)
            self._zone = timezone.utc

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def zone(self) -> tzinfo:
        return self._zone

    def next_delay(self) -> int:
        """Seconds until the next sweep if the scheduler were started now."""
        return seconds_until_target(self._clock(), self._target_seconds, self._zone)

    # PUBLIC_INTERFACE
    def start(self) -> None:
        """
        Arm the timer. Must be called from a running event loop.

        Starting an already armed scheduler cancels the pending timer first,
        so there is never more than one live timer. A sweep already running
        in the old loop finishes before the new loop can start another.
        """
        loop = asyncio.get_running_loop()
        if self._task is not None and not self._task.done():
            logger.info("retention scheduler restarted, cancelling pending timer")
            assert self._cancel_event is not None
            self._cancel_event.set()

        cancel_event = asyncio.Event()
        self._cancel_event = cancel_event
        self._state = SchedulerState.ARMED
        self._task = loop.create_task(self._run(cancel_event), name="retention-sweep")

    # PUBLIC_INTERFACE
    async def stop(self) -> None:
        """Cancel the pending timer and wait for the loop to exit. A running sweep is allowed to finish."""
        task, cancel_event = self._task, self._cancel_event
        if task is None or cancel_event is None:
            return
        cancel_event.set()
        await task
        self._task = None
        self._state = SchedulerState.CANCELLED

    def _is_current(self, cancel_event: asyncio.Event) -> bool:
        return cancel_event is self._cancel_event

    async def _wait(self, cancel_event: asyncio.Event, delay: float) -> bool:
        """Return True when cancellation won the race, False when the timer fired."""
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _run(self, cancel_event: asyncio.Event) -> None:
        delay: float = self.next_delay()
        while True:
            logger.info("retention sweep armed, firing in %d seconds", int(delay))
            if await self._wait(cancel_event, delay):
                logger.info("retention timer cancelled")
                if self._is_current(cancel_event):
                    self._state = SchedulerState.CANCELLED
                return

            async with self._sweep_lock:
                if cancel_event.is_set():
                    logger.info("retention timer cancelled while waiting for a running sweep")
                    if self._is_current(cancel_event):
                        self._state = SchedulerState.CANCELLED
                    return
                if self._is_current(cancel_event):
                    self._state = SchedulerState.FIRING
                try:
                    await asyncio.to_thread(self.process_delete)
                except Exception:
                    logger.exception("retention sweep failed")
                self.sweeps += 1

            if self._is_current(cancel_event) and not cancel_event.is_set():
                self._state = SchedulerState.ARMED
            delay = self._interval_seconds

    # PUBLIC_INTERFACE
    def process_delete(self) -> Dict[str, int]:
        """
        Run one retention sweep synchronously and return deleted counts per resource kind.

        An identity failure skips the sweep. Every resource kind of every
        account group is deleted independently; a failing kind is logged and
        the rest continue.
        """
        logger.info("retention sweep started")
        totals = {"todo_categories": 0, "todo_entries": 0, "rings": 0, "ring_records": 0}

        try:
            groups = self._identity.load_deleted_memberships()
        except IdentityError as exc:
            logger.error("error loading deleted memberships, skipping sweep - %s", exc)
            return totals

        deleters = (
            ("todo_categories", self._storage.delete_todo_categories_for_accounts),
            ("todo_entries", self._storage.delete_todo_entries_for_accounts),
            ("rings", self._storage.delete_rings_for_accounts),
            ("ring_records", self._storage.delete_ring_records_for_accounts),
        )
        for group in groups:
            if not group.account_ids:
                continue
            account_ids = sorted(group.account_ids)
            for kind, delete in deleters:
                try:
                    deleted = delete(group.app_id, group.org_id, account_ids)
                except StorageError as exc:
                    logger.error(
                        "error deleting %s for %d account(s) in %s/%s - %s",
                        kind, len(account_ids), group.app_id, group.org_id, exc,
                    )
                    continue
                totals[kind] += deleted
                logger.info("deleted %d %s for %s/%s", deleted, kind, group.app_id, group.org_id)

        logger.info("retention sweep finished: %s", totals)
        return totals
