# bulksend/transport/models.py
"""
Pydantic request/response models for the bulk job API.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from bulksend.core.bulk.domain import BulkJob, ChunkResult, EntryState, RecipientEntry, SweepItem


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class CreateBulkJobRequest(BaseModel):
    """Start sending one message type to an event's guests."""

    event_id: str = Field(..., min_length=1, max_length=128)
    # Checked by the service so unknown types map to 400, not 422
    message_type: str = Field(..., min_length=1, max_length=32)
    recipient_ids: Optional[list[str]] = Field(
        default=None,
        max_length=10000,
        description="Restrict to these guests; omitted or empty means every eligible guest",
    )
    # WHATSAPP, SMS or AUTO (default); checked by the service like message_type
    channel: Optional[str] = Field(default=None, max_length=16)

    @field_validator("recipient_ids")
    @classmethod
    def ids_must_be_nonblank(cls, v: Optional[list[str]]) -> Optional[list[str]]:
        if v is not None and any(not rid.strip() for rid in v):
            raise ValueError("recipient_ids must not contain blank ids")
        return v


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class CreateBulkJobResponse(BaseModel):
    job_id: str
    total_recipients: int


class ChunkResponse(BaseModel):
    """Outcome of one continue call."""

    processed: int
    sent_count: int
    failed_count: int
    skipped_count: int
    is_complete: bool

    @classmethod
    def from_result(cls, result: ChunkResult) -> "ChunkResponse":
        return cls(
            processed=result.processed,
            sent_count=result.sent,
            failed_count=result.failed,
            skipped_count=result.skipped,
            is_complete=result.is_complete,
        )


class JobStatusResponse(BaseModel):
    id: str
    event_id: str
    message_type: str
    channel: str
    status: str
    total_recipients: int
    sent_count: int
    failed_count: int
    skipped_count: int
    pending_count: int
    cancel_requested: bool
    error_message: Optional[str] = None
    retry_of: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: BulkJob) -> "JobStatusResponse":
        return cls(
            id=job.id,
            event_id=job.event_id,
            message_type=job.message_type.value,
            channel=job.channel.value,
            status=job.status.value,
            total_recipients=job.total_recipients,
            sent_count=job.sent_count,
            failed_count=job.failed_count,
            skipped_count=job.skipped_count,
            pending_count=max(0, job.total_recipients - job.processed_count),
            cancel_requested=job.cancel_requested,
            error_message=job.error_message,
            retry_of=job.retry_of,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


class RecipientEntryResponse(BaseModel):
    recipient_id: str
    state: str
    attempt_count: int
    last_error: Optional[str] = None
    retryable: Optional[bool] = None
    processed_at: Optional[datetime] = None

    @classmethod
    def from_entry(cls, entry: RecipientEntry) -> "RecipientEntryResponse":
        return cls(
            recipient_id=entry.recipient_id,
            state=entry.state.value,
            attempt_count=entry.attempt_count,
            last_error=entry.last_error,
            retryable=entry.retryable,
            processed_at=entry.processed_at,
        )


class RecipientsResponse(BaseModel):
    job_id: str
    state: Optional[EntryState] = None
    count: int
    recipients: list[RecipientEntryResponse] = Field(default_factory=list)


class SweepItemResponse(BaseModel):
    job_id: str
    processed: int
    sent_count: int
    failed_count: int
    skipped_count: int
    is_complete: bool
    error: Optional[str] = None

    @classmethod
    def from_item(cls, item: SweepItem) -> "SweepItemResponse":
        return cls(
            job_id=item.job_id,
            processed=item.processed,
            sent_count=item.sent,
            failed_count=item.failed,
            skipped_count=item.skipped,
            is_complete=item.is_complete,
            error=item.error,
        )


class SweepResponse(BaseModel):
    processed_jobs: int
    results: list[SweepItemResponse] = Field(default_factory=list)
