# bulksend/core/bulk/service.py
"""
Bulk job application service: the single orchestration point for
everything the HTTP layer can do with a bulk job.

Responsibilities:
    1. Ownership checks (event owner creates, job creator operates)
    2. Snapshot resolution and atomic job creation
    3. Kicking off the first chunk without waiting for it
    4. Emitting audit events

The transport layer stays a thin adapter:
    parse request → call service → map BulkJobError → return JSON.
"""
from __future__ import annotations

import asyncio
from typing import Optional, Sequence

from bulksend.core.bulk.domain import (
    BulkJob,
    ChunkResult,
    CreateJobResult,
    DeliveryChannel,
    EntryState,
    MessageType,
    RecipientEntry,
)
from bulksend.core.bulk.driver import JobDriver
from bulksend.core.bulk.errors import AuthorizationError, NotFoundError, ValidationError
from bulksend.core.bulk.ports import BulkJobStore, RecipientDirectory
from bulksend.core.bulk.snapshot import resolve_recipient_snapshot
from bulksend.infra.audit_log import audit_event
from bulksend.infra.logging_config import get_logger
from bulksend.infra.metrics import BulkMetrics

logger = get_logger(__name__)


class BulkJobService:
    """
    Orchestrates bulk job operations for one caller at a time.

    Stateless apart from the set of in-flight background chunks.
    """

    def __init__(
        self,
        store: BulkJobStore,
        directory: RecipientDirectory,
        driver: JobDriver,
        *,
        chunk_size: int = 10,
        start_immediately: bool = True,
    ) -> None:
        self._store = store
        self._directory = directory
        self._driver = driver
        self._chunk_size = chunk_size
        self._start_immediately = start_immediately
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Create / retry
    # ------------------------------------------------------------------

    async def create_job(
        self,
        user_id: str,
        event_id: str,
        message_type: MessageType | str,
        recipient_ids: Optional[Sequence[str]] = None,
        channel: DeliveryChannel | str | None = None,
    ) -> CreateJobResult:
        """
        Create a job for the event and start processing it.

        The first chunk runs in the background; the caller gets the job
        id right away and polls / continues from there.
        """
        if not isinstance(message_type, MessageType):
            message_type = MessageType.parse(message_type)
        if not isinstance(channel, DeliveryChannel):
            channel = DeliveryChannel.parse(channel)

        event = await self._directory.get_event(event_id)
        if event is None:
            raise NotFoundError("Event not found")
        if event.owner_id != user_id:
            raise AuthorizationError("Not authorized to send for this event")

        snapshot = await resolve_recipient_snapshot(
            self._directory, event_id, message_type, recipient_ids
        )
        job = await self._store.create_job(
            event_id=event_id,
            created_by=user_id,
            message_type=message_type,
            recipient_ids=snapshot,
            channel=channel,
        )

        BulkMetrics.job_created(message_type.value)
        audit_event(
            "bulk_job.create",
            job_id=job.id,
            event_id=event_id,
            user_id=user_id,
            detail=f"type={message_type.value} channel={channel.value} recipients={job.total_recipients}",
        )

        self._start(job.id)
        return CreateJobResult(job_id=job.id, total_recipients=job.total_recipients)

    async def retry_failed(self, user_id: str, job_id: str) -> CreateJobResult:
        """
        Create a new job for the retryable failures of a finished job.

        Only FAILED entries flagged retryable are included, and the
        message-type rules are applied again (a guest who RSVP'd since
        will not get another reminder).  Recipients already SENT are
        never included.
        """
        job = await self._get_owned_job(user_id, job_id)
        if not job.is_terminal:
            raise ValidationError("Job is still running")

        failed = await self._store.list_entries(job_id, EntryState.FAILED, limit=None)
        retry_ids = [e.recipient_id for e in failed if e.retryable]
        if not retry_ids:
            raise ValidationError("No retryable failures to retry")

        snapshot = await resolve_recipient_snapshot(
            self._directory, job.event_id, job.message_type, retry_ids
        )
        new_job = await self._store.create_job(
            event_id=job.event_id,
            created_by=user_id,
            message_type=job.message_type,
            recipient_ids=snapshot,
            channel=job.channel,
            retry_of=job.id,
        )

        BulkMetrics.job_created(job.message_type.value)
        audit_event(
            "bulk_job.retry",
            job_id=new_job.id,
            event_id=job.event_id,
            user_id=user_id,
            detail=f"retry_of={job.id} recipients={new_job.total_recipients}",
        )

        self._start(new_job.id)
        return CreateJobResult(job_id=new_job.id, total_recipients=new_job.total_recipients)

    # ------------------------------------------------------------------
    # Drive / cancel
    # ------------------------------------------------------------------

    async def continue_job(self, user_id: str, job_id: str) -> ChunkResult:
        await self._get_owned_job(user_id, job_id)
        return await self._driver.advance(job_id, self._chunk_size, trigger="continue")

    async def cancel_job(self, user_id: str, job_id: str) -> BulkJob:
        """Request cancellation. A finished job is returned as-is."""
        job = await self._get_owned_job(user_id, job_id)
        if job.is_terminal:
            return job

        job = await self._driver.request_cancel(job_id)
        audit_event("bulk_job.cancel", job_id=job_id, event_id=job.event_id, user_id=user_id)
        return job

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_status(self, user_id: str, job_id: str) -> BulkJob:
        return await self._get_owned_job(user_id, job_id)

    async def get_entry_breakdown(self, user_id: str, job_id: str) -> dict[EntryState, int]:
        await self._get_owned_job(user_id, job_id)
        return await self._store.count_entries_by_state(job_id)

    async def list_recipients(
        self,
        user_id: str,
        job_id: str,
        state: EntryState | str | None = None,
        *,
        limit: int = 1000,
    ) -> list[RecipientEntry]:
        """Per-recipient outcomes, e.g. to show why sends failed."""
        if state is not None and not isinstance(state, EntryState):
            try:
                state = EntryState(str(state).upper())
            except ValueError:
                raise ValidationError(f"Invalid recipient state: {state}") from None

        await self._get_owned_job(user_id, job_id)
        return await self._store.list_entries(job_id, state, limit=limit)

    # ------------------------------------------------------------------
    # Background chunks
    # ------------------------------------------------------------------

    async def wait_background(self) -> None:
        """Wait for in-flight first chunks (shutdown, tests)."""
        if self._background:
            await asyncio.gather(*list(self._background))

    def _start(self, job_id: str) -> None:
        if not self._start_immediately:
            return
        task = asyncio.create_task(self._advance_in_background(job_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _advance_in_background(self, job_id: str) -> None:
        try:
            await self._driver.advance(job_id, self._chunk_size, trigger="create")
        except Exception as exc:
            # Continue / sweep pick the job up later
            logger.error(
                f"Initial chunk failed for job {job_id[:8]}: {type(exc).__name__}: {exc}",
                extra={"job_id": job_id},
            )

    async def _get_owned_job(self, user_id: str, job_id: str) -> BulkJob:
        job = await self._store.get_job(job_id)
        if job is None:
            raise NotFoundError("Job not found")
        if job.created_by != user_id:
            raise AuthorizationError("Not authorized to access this job")
        return job
