# bulksend/core/bulk/ports.py
from __future__ import annotations
from typing import Protocol, Optional, Sequence

from bulksend.core.bulk.domain import (
    BulkJob,
    ChannelResult,
    DeliveryChannel,
    DispatchAuditRecord,
    EntryState,
    Event,
    MessageType,
    Recipient,
    RecipientEntry,
)


class BulkJobStore(Protocol):
    """Persistent job state. Every mutation is a single conditional statement."""

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
        """Insert the job and one PENDING entry per recipient, atomically."""
        ...

    async def get_job(self, job_id: str) -> Optional[BulkJob]: ...

    async def list_active_jobs(self, limit: int = 100) -> list[BulkJob]:
        """Non-terminal jobs, oldest first."""
        ...

    async def request_cancel(self, job_id: str) -> Optional[BulkJob]:
        """Set cancel_requested on a non-terminal job. Returns the job as stored."""
        ...

    async def claim_batch(self, job_id: str, max_size: int, lease_seconds: int) -> list[RecipientEntry]:
        """
        Claim up to max_size PENDING (or lease-expired CLAIMED) entries.

        Claims nothing when the job is terminal or cancel_requested.
        Moves the job PENDING -> PROCESSING when something was claimed.
        """
        ...

    async def finalize_job(self, job_id: str) -> tuple[BulkJob, bool]:
        """
        Move the job to its terminal state when it has no more work.

        CANCELLED if cancel was requested, COMPLETED if every entry is
        terminal; otherwise the job is left unchanged.  Returns the job
        and whether this call made the transition.
        """
        ...

    async def finalize_entry(
        self,
        entry_id: str,
        state: EntryState,
        *,
        error: Optional[str] = None,
        retryable: Optional[bool] = None,
    ) -> bool:
        """
        Record a CLAIMED entry's terminal state and bump the job counter
        in the same transaction. Returns False if the entry was no longer
        CLAIMED (already finalized by another invocation).
        """
        ...

    async def append_audit(self, record: DispatchAuditRecord) -> None: ...

    async def mark_failed(self, job_id: str, error: str) -> None:
        """Processor-fatal: move a non-terminal job to FAILED."""
        ...

    async def list_entries(
        self,
        job_id: str,
        state: Optional[EntryState] = None,
        *,
        limit: Optional[int] = 1000,
    ) -> list[RecipientEntry]:
        """Entries in claim order. ``limit=None`` returns all of them."""
        ...

    async def count_entries_by_state(self, job_id: str) -> dict[EntryState, int]: ...


class RecipientDirectory(Protocol):
    """Read-only view of events and their guests."""

    async def get_event(self, event_id: str) -> Optional[Event]: ...

    async def list_eligible_recipient_ids(self, event_id: str, message_type: MessageType) -> list[str]:
        """Recipient ids of the event that the message type applies to."""
        ...

    async def get_recipients(self, recipient_ids: Sequence[str]) -> dict[str, Recipient]:
        """Look up recipients by id. Missing ids are absent from the result."""
        ...


class NotificationDispatcher(Protocol):
    """Outbound channel for one message to one recipient."""

    @property
    def channel(self) -> str: ...

    async def send(
        self,
        recipient: Recipient,
        event: Event,
        message_type: MessageType,
        *,
        phone: str,
        channel: DeliveryChannel = DeliveryChannel.AUTO,
    ) -> ChannelResult:
        """Returns accepted/rejected. May raise on unexpected failures."""
        ...
