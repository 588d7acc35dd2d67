# bulksend/core/bulk/domain.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


# ============================================================================
# ENUMS
# ============================================================================

class MessageType(str, Enum):
    """Kind of notification a bulk job sends."""
    INVITE = "INVITE"
    REMINDER = "REMINDER"
    EVENT_DAY = "EVENT_DAY"
    THANK_YOU = "THANK_YOU"

    @classmethod
    def parse(cls, value: str) -> "MessageType":
        from bulksend.core.bulk.errors import ValidationError
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ValidationError(f"Invalid message type: {value}") from None


class DeliveryChannel(str, Enum):
    """
    Channel a job asks for.

    AUTO sends WhatsApp when a WhatsApp provider is configured and
    falls back to SMS otherwise.
    """
    WHATSAPP = "WHATSAPP"
    SMS = "SMS"
    AUTO = "AUTO"

    @classmethod
    def parse(cls, value: str | None) -> "DeliveryChannel":
        from bulksend.core.bulk.errors import ValidationError
        if value is None:
            return cls.AUTO
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ValidationError(f"Invalid channel: {value}") from None


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


class EntryState(str, Enum):
    PENDING = "PENDING"
    CLAIMED = "CLAIMED"
    SENT = "SENT"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ENTRY_STATES


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED})
TERMINAL_ENTRY_STATES = frozenset({EntryState.SENT, EntryState.FAILED, EntryState.SKIPPED})

# Forward-only job transitions
_JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({
        JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED,
    }),
    JobStatus.PROCESSING: frozenset({
        JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED,
    }),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

# Recipient entry transitions. CLAIMED -> SKIPPED covers a claimed
# recipient whose contact channel turns out to be missing at send time.
_ENTRY_TRANSITIONS: dict[EntryState, frozenset[EntryState]] = {
    EntryState.PENDING: frozenset({EntryState.CLAIMED, EntryState.SKIPPED}),
    EntryState.CLAIMED: frozenset({
        EntryState.CLAIMED, EntryState.SENT, EntryState.FAILED, EntryState.SKIPPED,
    }),
    EntryState.SENT: frozenset(),
    EntryState.FAILED: frozenset(),
    EntryState.SKIPPED: frozenset(),
}


def can_transition_job(old: JobStatus, new: JobStatus) -> bool:
    return new in _JOB_TRANSITIONS[old]


def can_transition_entry(old: EntryState, new: EntryState) -> bool:
    return new in _ENTRY_TRANSITIONS[old]


# ============================================================================
# COLLABORATOR DATA (read from the guest directory)
# ============================================================================

@dataclass
class Event:
    """The event a bulk job sends on behalf of."""
    id: str
    owner_id: str
    title: str
    starts_at: Optional[datetime] = None
    location: str = ""
    venue: Optional[str] = None
    locale: str = "he"


@dataclass
class Recipient:
    """A guest of an event, as the directory sees it right now."""
    id: str
    event_id: str
    name: str
    phone_number: Optional[str] = None
    slug: str = ""
    rsvp_status: Optional[str] = None  # None = no RSVP yet
    invited: bool = False  # A SENT invite is already on record


# ============================================================================
# JOB RECORD / RECIPIENT ENTRY
# ============================================================================

@dataclass
class BulkJob:
    """One bulk-send request, scoped to a fixed recipient snapshot."""
    id: str
    event_id: str
    created_by: str
    message_type: MessageType
    status: JobStatus
    total_recipients: int
    channel: DeliveryChannel = DeliveryChannel.AUTO
    sent_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    cancel_requested: bool = False
    error_message: Optional[str] = None
    retry_of: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def processed_count(self) -> int:
        return self.sent_count + self.failed_count + self.skipped_count

    def counters_consistent(self) -> bool:
        """sent + failed (+ skipped) never exceeds the snapshot size."""
        return (
            self.sent_count >= 0
            and self.failed_count >= 0
            and self.skipped_count >= 0
            and self.processed_count <= self.total_recipients
        )


@dataclass
class RecipientEntry:
    """One row per target recipient of a job."""
    id: str
    job_id: str
    recipient_id: str
    state: EntryState = EntryState.PENDING
    position: int = 0
    attempt_count: int = 0
    last_error: Optional[str] = None
    retryable: Optional[bool] = None
    claimed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


# ============================================================================
# RESULTS
# ============================================================================

@dataclass
class ChannelResult:
    """What the notification channel said about one send."""
    accepted: bool
    channel: str
    retryable: bool = False
    error: Optional[str] = None
    provider_message_id: Optional[str] = None


@dataclass
class DispatchOutcome:
    """Classified result for one claimed entry."""
    entry_id: str
    recipient_id: str
    state: EntryState
    channel: str = "none"
    error: Optional[str] = None
    retryable: Optional[bool] = None
    applied: bool = True  # False when another invocation already finalized the entry


@dataclass
class DispatchAuditRecord:
    """Append-only record of one dispatch attempt."""
    job_id: str
    entry_id: str
    recipient_id: str
    message_type: MessageType
    channel: str
    outcome: EntryState
    error: Optional[str] = None
    provider_message_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class ChunkResult:
    """Tallies for one ``advance`` invocation."""
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    is_complete: bool = False

    def add(self, outcome: DispatchOutcome) -> None:
        self.processed += 1
        if outcome.state == EntryState.SENT:
            self.sent += 1
        elif outcome.state == EntryState.FAILED:
            self.failed += 1
        elif outcome.state == EntryState.SKIPPED:
            self.skipped += 1


@dataclass
class SweepItem:
    """Per-job line of a scheduler sweep summary."""
    job_id: str
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    is_complete: bool = False
    error: Optional[str] = None


@dataclass
class CreateJobResult:
    job_id: str
    total_recipients: int
