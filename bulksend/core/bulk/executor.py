# bulksend/core/bulk/executor.py
"""
Per-recipient dispatch.

Every claimed entry ends in exactly one terminal state:

- no usable phone number  -> SKIPPED (straight from CLAIMED; the entry was
                             claimed before its phone could be checked)
- channel accepted        -> SENT
- retryable rejection     -> FAILED, retryable=True (throttling, timeouts, 5xx)
- permanent rejection     -> FAILED, retryable=False (invalid number, auth, template)

Nothing is retried inside a chunk; retryable failures are picked up by
``BulkJobService.retry_failed``.  Channel exceptions never escape,
store exceptions always do (the chunk must be retried as a whole).
"""
from __future__ import annotations

from typing import Optional

from bulksend.core.bulk.domain import (
    BulkJob,
    ChannelResult,
    DispatchAuditRecord,
    DispatchOutcome,
    EntryState,
    Event,
    Recipient,
    RecipientEntry,
)
from bulksend.core.bulk.phone import DEFAULT_COUNTRY, to_e164
from bulksend.core.bulk.ports import BulkJobStore, NotificationDispatcher
from bulksend.infra.audit_log import audit_dispatch
from bulksend.infra.logging_config import LogContext, get_logger, mask_phone
from bulksend.infra.metrics import BulkMetrics

logger = get_logger(__name__)

NO_CONTACT_CHANNEL = "No valid phone number"
RECIPIENT_NOT_FOUND = "Recipient no longer exists"


class DispatchExecutor:
    def __init__(
        self,
        store: BulkJobStore,
        dispatcher: NotificationDispatcher,
        *,
        default_country: str = DEFAULT_COUNTRY,
    ):
        self._store = store
        self._dispatcher = dispatcher
        self._default_country = default_country

    async def dispatch(
        self,
        job: BulkJob,
        event: Event,
        entry: RecipientEntry,
        recipient: Optional[Recipient],
    ) -> DispatchOutcome:
        """Send to one claimed entry, record its terminal state and audit it."""
        log = LogContext(logger, job_id=job.id, event_id=job.event_id, recipient_id=entry.recipient_id)

        phone = to_e164(recipient.phone_number, self._default_country) if recipient else None

        if phone is None:
            result = ChannelResult(
                accepted=False,
                channel="none",
                error=NO_CONTACT_CHANNEL if recipient else RECIPIENT_NOT_FOUND,
            )
            state = EntryState.SKIPPED
            retryable = None
            log.info(f"Skipping recipient: {result.error}")
        else:
            result = await self._send(job, event, recipient, phone, log)
            state = EntryState.SENT if result.accepted else EntryState.FAILED
            retryable = None if result.accepted else result.retryable

        applied = await self._store.finalize_entry(
            entry.id,
            state,
            error=None if state == EntryState.SENT else result.error,
            retryable=retryable,
        )
        if not applied:
            log.warning(f"Entry {entry.id} was already finalized, outcome {state.value} not counted")

        record = DispatchAuditRecord(
            job_id=job.id,
            entry_id=entry.id,
            recipient_id=entry.recipient_id,
            message_type=job.message_type,
            channel=result.channel,
            outcome=state,
            error=result.error,
            provider_message_id=result.provider_message_id,
        )
        await self._store.append_audit(record)
        audit_dispatch(record)
        BulkMetrics.recipient_outcome(state.value, result.channel)

        return DispatchOutcome(
            entry_id=entry.id,
            recipient_id=entry.recipient_id,
            state=state,
            channel=result.channel,
            error=result.error,
            retryable=retryable,
            applied=applied,
        )

    async def _send(
        self,
        job: BulkJob,
        event: Event,
        recipient: Recipient,
        phone: str,
        log: LogContext,
    ) -> ChannelResult:
        try:
            result = await self._dispatcher.send(
                recipient, event, job.message_type, phone=phone, channel=job.channel
            )
        except Exception as exc:
            log.error(
                f"Dispatcher raised for {mask_phone(phone)}: {type(exc).__name__}: {exc}",
                exc_info=True,
            )
            return ChannelResult(
                accepted=False,
                channel=self._dispatcher.channel,
                retryable=True,
                error=f"{type(exc).__name__}: {exc}"[:500],
            )

        if result.accepted:
            log.debug(f"Sent to {mask_phone(phone)} via {result.channel}")
        else:
            log.warning(
                f"Send to {mask_phone(phone)} rejected "
                f"(retryable={result.retryable}): {result.error}"
            )
        return result
