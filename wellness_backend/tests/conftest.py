from __future__ import annotations

import os
from dataclasses import replace
from datetime import datetime

import pytest

# Ensure we default to memory backend for tests to avoid filesystem dependencies
os.environ.setdefault("PERSISTENCE_BACKEND", "memory")
os.environ.setdefault("WELLNESS_INTERNAL_API_KEY", "test-internal-key")

from src.wellness.application import Application  # noqa: E402
from src.wellness.reminders import ClaimWindowScanner, NotificationLifecycleManager  # noqa: E402
from src.wellness.settings import get_settings  # noqa: E402

from .fakes import FakeIdentity, FakeNotifications, FixedClock, FlakyStorage  # noqa: E402

# 2025-03-10 12:00:10 UTC, ten seconds into a claim window
NOW = datetime(2025, 3, 10, 12, 0, 10)


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture()
def storage() -> FlakyStorage:
    return FlakyStorage()


@pytest.fixture()
def notifications() -> FakeNotifications:
    return FakeNotifications()


@pytest.fixture()
def identity() -> FakeIdentity:
    return FakeIdentity()


@pytest.fixture()
def lifecycle(notifications: FakeNotifications, clock: FixedClock) -> NotificationLifecycleManager:
    return NotificationLifecycleManager(notifications, clock=clock)


@pytest.fixture()
def scanner(storage: FlakyStorage) -> ClaimWindowScanner:
    return ClaimWindowScanner(storage)


@pytest.fixture()
def application(
    storage: FlakyStorage, notifications: FakeNotifications, identity: FakeIdentity, clock: FixedClock
) -> Application:
    """Application wired to in-memory fakes, with background jobs disabled."""
    settings = replace(get_settings(), enable_retention=False, run_migration=False, version="1.2.3")
    return Application(storage, notifications, identity, settings=settings, clock=clock)
