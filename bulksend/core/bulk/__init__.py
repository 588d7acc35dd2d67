# bulksend/core/bulk/__init__.py
"""
Bulk jobs -- storage-agnostic job processing.

Domain models, ports, and the chunked processor that dispatches one
message type to a fixed recipient snapshot, one resumable chunk at a
time.

Canonical imports:
    from bulksend.core.bulk import BulkJobService, JobDriver
    from bulksend.core.bulk.domain import BulkJob, JobStatus, EntryState
    from bulksend.core.bulk.ports import BulkJobStore
"""
from bulksend.core.bulk.domain import (  # noqa: F401
    MessageType,
    DeliveryChannel,
    JobStatus,
    EntryState,
    Event,
    Recipient,
    BulkJob,
    RecipientEntry,
    ChannelResult,
    DispatchOutcome,
    DispatchAuditRecord,
    ChunkResult,
    SweepItem,
    CreateJobResult,
)
from bulksend.core.bulk.errors import (  # noqa: F401
    BulkJobError,
    ValidationError,
    AuthorizationError,
    NotFoundError,
    TransientStoreError,
    ProcessorFatalError,
)
from bulksend.core.bulk.ports import (  # noqa: F401
    BulkJobStore,
    RecipientDirectory,
    NotificationDispatcher,
)
from bulksend.core.bulk.snapshot import resolve_recipient_snapshot  # noqa: F401
from bulksend.core.bulk.claimer import ChunkClaimer  # noqa: F401
from bulksend.core.bulk.executor import DispatchExecutor  # noqa: F401
from bulksend.core.bulk.driver import JobDriver  # noqa: F401
from bulksend.core.bulk.service import BulkJobService  # noqa: F401
