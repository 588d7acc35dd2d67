# bulksend/infra/audit_log.py
"""
Audit logging for bulk-send operations.

Records job lifecycle actions (create, cancel, retry) and every
dispatch attempt to a dedicated audit logger, separate from the
application log, with structured context.

Events are logged at INFO level to a logger named "audit" so they
can be routed to a separate file / sink via logging configuration.
Dispatch attempts are also persisted to ``bulk_dispatch_audit`` by
the job store; this logger is the operational trail.
"""
from __future__ import annotations

import logging
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from bulksend.core.bulk.domain import DispatchAuditRecord

# Dedicated audit logger, separate from the app logger.
_audit_logger = logging.getLogger("audit")


def audit_event(
    action: str,
    *,
    job_id: str | None = None,
    event_id: str | None = None,
    user_id: str | None = None,
    detail: str = "",
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Record an audit event.

    Args:
        action: Action name (e.g., "bulk_job.create", "bulk_job.cancel")
        job_id: Job affected (if applicable)
        event_id: Event the job belongs to (if applicable)
        user_id: Acting user (if applicable)
        detail: Human-readable detail
        extra: Additional structured context
    """
    record = {
        "audit_action": action,
        "job_id": job_id or "",
        "event_id": event_id or "",
        "user_id": user_id or "",
        "detail": detail,
    }
    if extra:
        record.update(extra)

    _audit_logger.info(
        f"AUDIT: {action} job={job_id or '-'} user={user_id or '-'} {detail}",
        extra=record,
    )


def audit_dispatch(record: DispatchAuditRecord) -> None:
    """Record one dispatch attempt (SENT / FAILED / SKIPPED)."""
    audit_event(
        "bulk_job.dispatch",
        job_id=record.job_id,
        detail=f"outcome={record.outcome.value} channel={record.channel}",
        extra={
            "entry_id": record.entry_id,
            "recipient_id": record.recipient_id,
            "message_type": record.message_type.value,
            "outcome": record.outcome.value,
            "channel": record.channel,
            "error": record.error or "",
            "provider_message_id": record.provider_message_id or "",
        },
    )
