# tests/conftest.py
"""Pytest configuration and fixtures"""
import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from bulksend.core.bulk import (  # noqa: E402
    BulkJobService,
    ChannelResult,
    ChunkClaimer,
    DispatchExecutor,
    Event,
    JobDriver,
    Recipient,
)
from bulksend.infra.memory_store import InMemoryBulkJobStore, InMemoryRecipientDirectory  # noqa: E402

OWNER_ID = "owner-1"
EVENT_ID = "evt-1"


class ManualClock:
    """Wall clock for the in-memory store that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeDispatcher:
    """
    NotificationDispatcher test double.

    Accepts everything unless a recipient id is listed in ``reject``
    (returns that ChannelResult) or ``raise_for`` (raises that exception).
    Yields to the event loop on every send so concurrent chunks interleave.
    """

    channel = "fake"

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.reject: dict[str, ChannelResult] = {}
        self.raise_for: dict[str, Exception] = {}
        self.requested_channels: list = []

    async def send(self, recipient, event, message_type, *, phone, channel=None):
        await asyncio.sleep(0)
        self.requested_channels.append(channel)
        if recipient.id in self.raise_for:
            raise self.raise_for[recipient.id]
        if recipient.id in self.reject:
            return self.reject[recipient.id]
        self.sent.append((recipient.id, phone))
        return ChannelResult(accepted=True, channel=self.channel, provider_message_id=f"msg-{recipient.id}")

    @property
    def sent_ids(self) -> list[str]:
        return [rid for rid, _ in self.sent]


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store(clock):
    return InMemoryBulkJobStore(clock=clock)


@pytest.fixture
def directory(store):
    return InMemoryRecipientDirectory(store)


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def seed_event(directory):
    """Add an event with ``n`` guests; returns the guest ids in order."""

    def _seed(
        n: int = 25,
        *,
        event_id: str = EVENT_ID,
        owner_id: str = OWNER_ID,
        phone=lambda i: f"050{i:07d}",
        rsvp=lambda i: None,
    ) -> list[str]:
        directory.add_event(Event(id=event_id, owner_id=owner_id, title="Dana & Yoni", location="Tel Aviv"))
        ids = []
        for i in range(n):
            rid = f"{event_id}-guest-{i:03d}"
            directory.add_recipient(Recipient(
                id=rid,
                event_id=event_id,
                name=f"Guest {i}",
                phone_number=phone(i),
                slug=f"slug-{rid}",
                rsvp_status=rsvp(i),
            ))
            ids.append(rid)
        return ids

    return _seed


@pytest.fixture
def claimer(store):
    return ChunkClaimer(store, lease_seconds=300)


@pytest.fixture
def executor(store, dispatcher):
    return DispatchExecutor(store, dispatcher, default_country="IL")


@pytest.fixture
def driver(store, directory, claimer, executor):
    return JobDriver(store, directory, claimer, executor)


@pytest.fixture
def service(store, directory, driver):
    return BulkJobService(store, directory, driver, chunk_size=10, start_immediately=False)
