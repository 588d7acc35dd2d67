# bulksend/infra/memory_store.py
"""
In-memory bulk job store and recipient directory.

Same contracts as the PostgreSQL adapters, for local development,
demos (``STORE_BACKEND=memory``) and tests.  State is per-process and
lost on restart.

Every mutating method runs under one asyncio.Lock without awaiting
inside it, which gives the same all-or-nothing behaviour as the
conditional statements of the SQL store.
"""
from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional, Sequence

from bulksend.core.bulk.domain import (
    BulkJob,
    DeliveryChannel,
    DispatchAuditRecord,
    EntryState,
    Event,
    JobStatus,
    MessageType,
    Recipient,
    RecipientEntry,
    can_transition_entry,
    can_transition_job,
)
from bulksend.core.bulk.errors import NotFoundError
from bulksend.core.bulk.snapshot import is_eligible
from bulksend.infra.logging_config import get_logger

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


_COUNTER_FIELD = {
    EntryState.SENT: "sent_count",
    EntryState.FAILED: "failed_count",
    EntryState.SKIPPED: "skipped_count",
}


class InMemoryBulkJobStore:
    """BulkJobStore backed by dicts. Returns copies, never live objects."""

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or utc_now
        self._lock = asyncio.Lock()
        self._jobs: dict[str, BulkJob] = {}
        self._entries: dict[str, RecipientEntry] = {}
        self._job_entries: dict[str, list[str]] = {}
        self._audit: list[DispatchAuditRecord] = []

    async def create_job(
        self,
        *,
        event_id: str,
        created_by: str,
        message_type: MessageType,
        recipient_ids: Sequence[str],
        channel: DeliveryChannel = DeliveryChannel.AUTO,
        retry_of: Optional[str] = None,
    ) -> BulkJob:
        unique_ids = list(dict.fromkeys(recipient_ids))
        async with self._lock:
            now = self._clock()
            job = BulkJob(
                id=str(uuid.uuid4()),
                event_id=event_id,
                created_by=created_by,
                message_type=message_type,
                status=JobStatus.PENDING,
                total_recipients=len(unique_ids),
                channel=channel,
                retry_of=retry_of,
                created_at=now,
                updated_at=now,
            )
            self._jobs[job.id] = job
            self._job_entries[job.id] = []
            for position, recipient_id in enumerate(unique_ids):
                entry = RecipientEntry(
                    id=str(uuid.uuid4()),
                    job_id=job.id,
                    recipient_id=recipient_id,
                    position=position,
                )
                self._entries[entry.id] = entry
                self._job_entries[job.id].append(entry.id)
            return replace(job)

    async def get_job(self, job_id: str) -> Optional[BulkJob]:
        job = self._jobs.get(job_id)
        return replace(job) if job else None

    async def list_active_jobs(self, limit: int = 100) -> list[BulkJob]:
        active = [j for j in self._jobs.values() if not j.is_terminal]
        active.sort(key=lambda j: j.created_at)
        return [replace(j) for j in active[:limit]]

    async def request_cancel(self, job_id: str) -> Optional[BulkJob]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            if not job.is_terminal and not job.cancel_requested:
                job.cancel_requested = True
                job.updated_at = self._clock()
            return replace(job)

    async def claim_batch(self, job_id: str, max_size: int, lease_seconds: int) -> list[RecipientEntry]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.is_terminal or job.cancel_requested:
                return []

            now = self._clock()
            lease_cutoff = now - timedelta(seconds=lease_seconds)
            claimed: list[RecipientEntry] = []

            for entry_id in self._job_entries[job_id]:
                if len(claimed) >= max_size:
                    break
                entry = self._entries[entry_id]
                reclaimable = (
                    entry.state == EntryState.CLAIMED
                    and entry.claimed_at is not None
                    and entry.claimed_at < lease_cutoff
                )
                if entry.state == EntryState.PENDING or reclaimable:
                    if reclaimable:
                        logger.warning(
                            f"Reclaiming entry {entry.id} (lease expired at {entry.claimed_at})",
                            extra={"job_id": job_id},
                        )
                    entry.state = EntryState.CLAIMED
                    entry.claimed_at = now
                    claimed.append(replace(entry))

            if claimed:
                if job.status == JobStatus.PENDING:
                    job.status = JobStatus.PROCESSING
                    job.started_at = now
                job.updated_at = now

            return claimed

    async def finalize_job(self, job_id: str) -> tuple[BulkJob, bool]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError("Job not found")
            if job.is_terminal:
                return replace(job), False

            if job.cancel_requested:
                target = JobStatus.CANCELLED
            elif all(self._entries[eid].state.is_terminal for eid in self._job_entries[job_id]):
                target = JobStatus.COMPLETED
            else:
                return replace(job), False
            if not can_transition_job(job.status, target):
                return replace(job), False

            job.status = target

            now = self._clock()
            job.completed_at = now
            job.updated_at = now
            return replace(job), True

    async def finalize_entry(
        self,
        entry_id: str,
        state: EntryState,
        *,
        error: Optional[str] = None,
        retryable: Optional[bool] = None,
    ) -> bool:
        if not state.is_terminal:
            raise ValueError(f"Not a terminal entry state: {state}")

        async with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None or entry.state != EntryState.CLAIMED:
                return False
            if not can_transition_entry(entry.state, state):
                return False

            now = self._clock()
            entry.state = state
            entry.last_error = error
            entry.retryable = retryable
            entry.processed_at = now
            if state in (EntryState.SENT, EntryState.FAILED):
                entry.attempt_count += 1

            job = self._jobs[entry.job_id]
            field_name = _COUNTER_FIELD[state]
            setattr(job, field_name, getattr(job, field_name) + 1)
            job.updated_at = now
            return True

    async def append_audit(self, record: DispatchAuditRecord) -> None:
        async with self._lock:
            self._audit.append(replace(record, created_at=record.created_at or self._clock()))

    async def mark_failed(self, job_id: str, error: str) -> None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not can_transition_job(job.status, JobStatus.FAILED):
                return
            now = self._clock()
            job.status = JobStatus.FAILED
            job.error_message = error[:2000]
            job.completed_at = now
            job.updated_at = now

    async def list_entries(
        self,
        job_id: str,
        state: Optional[EntryState] = None,
        *,
        limit: Optional[int] = 1000,
    ) -> list[RecipientEntry]:
        entries = [self._entries[eid] for eid in self._job_entries.get(job_id, [])]
        if state is not None:
            entries = [e for e in entries if e.state == state]
        if limit is not None:
            entries = entries[:limit]
        return [replace(e) for e in entries]

    async def count_entries_by_state(self, job_id: str) -> dict[EntryState, int]:
        counts = {state: 0 for state in EntryState}
        for eid in self._job_entries.get(job_id, []):
            counts[self._entries[eid].state] += 1
        return counts

    # Read helpers for the directory and tests

    def audit_records(self, job_id: Optional[str] = None) -> list[DispatchAuditRecord]:
        return [replace(r) for r in self._audit if job_id is None or r.job_id == job_id]

    def has_sent(self, recipient_id: str, message_type: MessageType) -> bool:
        return any(
            r.recipient_id == recipient_id
            and r.message_type == message_type
            and r.outcome == EntryState.SENT
            for r in self._audit
        )


class InMemoryRecipientDirectory:
    """
    RecipientDirectory over in-process events and guests.

    When given the job store, a guest counts as invited once an INVITE
    to them was SENT, as the SQL directory derives it from the audit table.
    """

    def __init__(self, store: Optional[InMemoryBulkJobStore] = None):
        self._store = store
        self._events: dict[str, Event] = {}
        self._recipients: dict[str, Recipient] = {}

    def add_event(self, event: Event) -> None:
        self._events[event.id] = event

    def add_recipient(self, recipient: Recipient) -> None:
        self._recipients[recipient.id] = recipient

    def remove_recipient(self, recipient_id: str) -> None:
        self._recipients.pop(recipient_id, None)

    async def get_event(self, event_id: str) -> Optional[Event]:
        event = self._events.get(event_id)
        return replace(event) if event else None

    async def list_eligible_recipient_ids(self, event_id: str, message_type: MessageType) -> list[str]:
        return [
            r.id
            for r in self._recipients.values()
            if r.event_id == event_id and is_eligible(self._view(r), message_type)
        ]

    async def get_recipients(self, recipient_ids: Sequence[str]) -> dict[str, Recipient]:
        return {
            rid: self._view(self._recipients[rid])
            for rid in recipient_ids
            if rid in self._recipients
        }

    def _view(self, recipient: Recipient) -> Recipient:
        invited = recipient.invited or (
            self._store is not None and self._store.has_sent(recipient.id, MessageType.INVITE)
        )
        return replace(recipient, invited=invited)


def load_seed(directory: InMemoryRecipientDirectory, path: str | Path) -> int:
    """
    Load events and guests from a JSON file into the directory.

    Format::

        {"events": [{"id": "...", "owner_id": "...", "title": "...", "locale": "en",
                     "guests": [{"id": "...", "name": "...", "phone_number": "..."}]}]}

    Returns the number of guests loaded.
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    loaded = 0
    for raw in data.get("events", []):
        starts_at = raw.get("starts_at")
        directory.add_event(Event(
            id=raw["id"],
            owner_id=raw["owner_id"],
            title=raw["title"],
            starts_at=datetime.fromisoformat(starts_at) if starts_at else None,
            location=raw.get("location", ""),
            venue=raw.get("venue"),
            locale=raw.get("locale", "he"),
        ))
        for guest in raw.get("guests", []):
            directory.add_recipient(Recipient(
                id=guest["id"],
                event_id=raw["id"],
                name=guest["name"],
                phone_number=guest.get("phone_number"),
                slug=guest.get("slug", guest["id"]),
                rsvp_status=guest.get("rsvp_status"),
                invited=bool(guest.get("invited", False)),
            ))
            loaded += 1
    logger.info(f"Loaded {loaded} guests from seed file {path}")
    return loaded
