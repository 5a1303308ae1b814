"""Shared fixtures: manual clock, static catalog, recording notifier, engine."""

from datetime import datetime, timedelta

import pytest

from navbat_queue.application.services.queue_engine import QueueEngine
from navbat_queue.infrastructure.catalog.org_catalog import StaticOrgCatalog
from navbat_queue.infrastructure.memory.queue_repo import InMemoryQueueRepository

ORG = "clinic-1"
OTHER_ORG = "office-2"


class ManualClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 2, 9, 0, 0)

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)


class RecordingNotifier:
    def __init__(self) -> None:
        self.events = []

    async def notify(self, event) -> None:
        self.events.append(event)


class FailingNotifier:
    def __init__(self) -> None:
        self.calls = 0

    async def notify(self, event) -> None:
        self.calls += 1
        raise RuntimeError("push channel down")


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def repo():
    return InMemoryQueueRepository(lock_timeout_seconds=1.0)


@pytest.fixture
def catalog():
    return StaticOrgCatalog([ORG, OTHER_ORG])


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(repo, catalog, clock, notifier):
    return QueueEngine(
        repo=repo,
        catalog=catalog,
        clock=clock,
        notifier=notifier,
        tx_retry_backoff_seconds=0.0,
    )
