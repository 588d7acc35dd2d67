# bulksend/infra/pg_bulk_job_store_async.py
"""
Async PostgreSQL bulk job store (asyncpg).

Jobs, their recipient snapshots and the dispatch audit trail.
Claims use FOR UPDATE SKIP LOCKED plus a lease on claimed_at, so any
number of concurrent invocations can advance the same job.  Counters
only move by in-place increments in the same statement that finalizes
an entry.
"""
from __future__ import annotations

import uuid
from typing import Any, Optional, Sequence

from bulksend.core.bulk.domain import (
    BulkJob,
    DeliveryChannel,
    DispatchAuditRecord,
    EntryState,
    JobStatus,
    MessageType,
    RecipientEntry,
)
from bulksend.core.bulk.errors import NotFoundError
from bulksend.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from bulksend.infra.logging_config import get_logger

logger = get_logger(__name__)


def _parse_uuid(value: Any) -> Optional[uuid.UUID]:
    """Ids come from URLs; anything that is not a UUID cannot exist."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _row_to_job(row) -> BulkJob:
    """Convert an asyncpg Record to a BulkJob dataclass."""
    return BulkJob(
        id=str(row["id"]),
        event_id=row["event_id"],
        created_by=row["created_by"],
        message_type=MessageType(row["message_type"]),
        status=JobStatus(row["status"]),
        total_recipients=row["total_recipients"],
        channel=DeliveryChannel(row["channel"]),
        sent_count=row["sent_count"],
        failed_count=row["failed_count"],
        skipped_count=row["skipped_count"],
        cancel_requested=row["cancel_requested"],
        error_message=row["error_message"],
        retry_of=str(row["retry_of"]) if row["retry_of"] else None,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )


def _row_to_entry(row) -> RecipientEntry:
    return RecipientEntry(
        id=str(row["id"]),
        job_id=str(row["job_id"]),
        recipient_id=row["recipient_id"],
        state=EntryState(row["state"]),
        position=row["position"],
        attempt_count=row["attempt_count"],
        last_error=row["last_error"],
        retryable=row["retryable"],
        claimed_at=row["claimed_at"],
        processed_at=row["processed_at"],
    )


class AsyncPostgresBulkJobStore:
    """BulkJobStore on PostgreSQL."""

    @retry_on_transient_error(max_retries=0)
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
        """
        Insert the job and its recipient entries in one transaction.

        Not retried: a lost commit acknowledgement would create a second job.
        """
        unique_ids = list(dict.fromkeys(recipient_ids))

        async with safe_db_conn(autocommit=False) as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO bulk_jobs (event_id, created_by, message_type, total_recipients, channel, retry_of)
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING *
                """,
                event_id,
                created_by,
                message_type.value,
                len(unique_ids),
                channel.value,
                _parse_uuid(retry_of) if retry_of else None,
            )
            await conn.execute(
                """
                INSERT INTO bulk_job_recipients (job_id, recipient_id, position)
                SELECT $1, r.recipient_id, (r.ord - 1)::int
                FROM unnest($2::text[]) WITH ORDINALITY AS r(recipient_id, ord)
                """,
                row["id"],
                unique_ids,
            )

        job = _row_to_job(row)
        logger.info(
            f"Bulk job created: id={job.id[:8]}, type={message_type.value}, "
            f"channel={channel.value}, recipients={len(unique_ids)}",
            extra={"job_id": job.id, "event_id": event_id},
        )
        return job

    @retry_on_transient_error()
    async def get_job(self, job_id: str) -> Optional[BulkJob]:
        job_uuid = _parse_uuid(job_id)
        if job_uuid is None:
            return None
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM bulk_jobs WHERE id = $1", job_uuid)
            return _row_to_job(row) if row else None

    @retry_on_transient_error()
    async def list_active_jobs(self, limit: int = 100) -> list[BulkJob]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM bulk_jobs
                WHERE status IN ('PENDING', 'PROCESSING')
                ORDER BY created_at
                LIMIT $1
                """,
                limit,
            )
            return [_row_to_job(row) for row in rows]

    @retry_on_transient_error()
    async def request_cancel(self, job_id: str) -> Optional[BulkJob]:
        job_uuid = _parse_uuid(job_id)
        if job_uuid is None:
            return None
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                UPDATE bulk_jobs
                SET cancel_requested = true, updated_at = now()
                WHERE id = $1 AND status IN ('PENDING', 'PROCESSING')
                RETURNING *
                """,
                job_uuid,
            )
            if row is None:
                row = await conn.fetchrow("SELECT * FROM bulk_jobs WHERE id = $1", job_uuid)
            return _row_to_job(row) if row else None

    @retry_on_transient_error()
    async def claim_batch(self, job_id: str, max_size: int, lease_seconds: int) -> list[RecipientEntry]:
        """
        Atomically claim up to max_size entries of an active job.

        PENDING rows and CLAIMED rows whose lease expired are eligible.
        Rows locked by a concurrent claim are skipped, never waited on.
        """
        job_uuid = _parse_uuid(job_id)
        if job_uuid is None:
            return []

        async with safe_db_conn(autocommit=False) as conn:
            rows = await conn.fetch(
                """
                WITH job AS (
                    SELECT id FROM bulk_jobs
                    WHERE id = $1
                      AND status IN ('PENDING', 'PROCESSING')
                      AND NOT cancel_requested
                ),
                claimable AS (
                    SELECT r.id FROM bulk_job_recipients r
                    WHERE r.job_id = (SELECT id FROM job)
                      AND (
                        r.state = 'PENDING'
                        OR (r.state = 'CLAIMED'
                            AND r.claimed_at < now() - make_interval(secs => $3))
                      )
                    ORDER BY r.position
                    LIMIT $2
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE bulk_job_recipients r
                SET state = 'CLAIMED', claimed_at = now()
                FROM claimable c
                WHERE r.id = c.id
                RETURNING r.*
                """,
                job_uuid,
                max_size,
                float(lease_seconds),
            )

            if rows:
                await conn.execute(
                    """
                    UPDATE bulk_jobs
                    SET status = 'PROCESSING',
                        started_at = COALESCE(started_at, now()),
                        updated_at = now()
                    WHERE id = $1 AND status IN ('PENDING', 'PROCESSING')
                    """,
                    job_uuid,
                )

        entries = sorted((_row_to_entry(row) for row in rows), key=lambda e: e.position)
        return entries

    @retry_on_transient_error()
    async def finalize_job(self, job_id: str) -> tuple[BulkJob, bool]:
        job_uuid = _parse_uuid(job_id)
        if job_uuid is None:
            raise NotFoundError("Job not found")

        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                UPDATE bulk_jobs j
                SET status = CASE WHEN j.cancel_requested THEN 'CANCELLED' ELSE 'COMPLETED' END,
                    completed_at = now(),
                    updated_at = now()
                WHERE j.id = $1
                  AND j.status IN ('PENDING', 'PROCESSING')
                  AND (
                    j.cancel_requested
                    OR NOT EXISTS (
                      SELECT 1 FROM bulk_job_recipients r
                      WHERE r.job_id = j.id AND r.state IN ('PENDING', 'CLAIMED')
                    )
                  )
                RETURNING *
                """,
                job_uuid,
            )
            if row is not None:
                return _row_to_job(row), True

            row = await conn.fetchrow("SELECT * FROM bulk_jobs WHERE id = $1", job_uuid)
            if row is None:
                raise NotFoundError("Job not found")
            return _row_to_job(row), False

    @retry_on_transient_error()
    async def finalize_entry(
        self,
        entry_id: str,
        state: EntryState,
        *,
        error: Optional[str] = None,
        retryable: Optional[bool] = None,
    ) -> bool:
        """
        Record a claimed entry's outcome and count it on the job.

        One statement, guarded by state = 'CLAIMED': a retry after a lost
        acknowledgement, or a second finalization after a lease reclaim,
        matches nothing and is not counted twice.
        """
        if not state.is_terminal:
            raise ValueError(f"Not a terminal entry state: {state}")

        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                WITH finalized AS (
                    UPDATE bulk_job_recipients
                    SET state = $2,
                        last_error = $3,
                        retryable = $4,
                        processed_at = now(),
                        attempt_count = attempt_count
                            + CASE WHEN $2 IN ('SENT', 'FAILED') THEN 1 ELSE 0 END
                    WHERE id = $1 AND state = 'CLAIMED'
                    RETURNING job_id
                )
                UPDATE bulk_jobs j
                SET sent_count = j.sent_count + CASE WHEN $2 = 'SENT' THEN 1 ELSE 0 END,
                    failed_count = j.failed_count + CASE WHEN $2 = 'FAILED' THEN 1 ELSE 0 END,
                    skipped_count = j.skipped_count + CASE WHEN $2 = 'SKIPPED' THEN 1 ELSE 0 END,
                    updated_at = now()
                FROM finalized f
                WHERE j.id = f.job_id
                RETURNING j.id
                """,
                _parse_uuid(entry_id),
                state.value,
                error[:2000] if error else None,
                retryable,
            )
            return row is not None

    @retry_on_transient_error(max_retries=0)
    async def append_audit(self, record: DispatchAuditRecord) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                INSERT INTO bulk_dispatch_audit
                  (job_id, entry_id, recipient_id, message_type, channel, outcome, error, provider_message_id)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                _parse_uuid(record.job_id),
                _parse_uuid(record.entry_id),
                record.recipient_id,
                record.message_type.value,
                record.channel,
                record.outcome.value,
                record.error[:2000] if record.error else None,
                record.provider_message_id,
            )

    @retry_on_transient_error()
    async def mark_failed(self, job_id: str, error: str) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE bulk_jobs
                SET status = 'FAILED', error_message = $2, completed_at = now(), updated_at = now()
                WHERE id = $1 AND status IN ('PENDING', 'PROCESSING')
                """,
                _parse_uuid(job_id),
                error[:2000],  # Truncate long errors
            )

    @retry_on_transient_error()
    async def list_entries(
        self,
        job_id: str,
        state: Optional[EntryState] = None,
        *,
        limit: Optional[int] = 1000,
    ) -> list[RecipientEntry]:
        job_uuid = _parse_uuid(job_id)
        if job_uuid is None:
            return []

        conditions = ["job_id = $1"]
        params: list[Any] = [job_uuid]
        idx = 2

        if state is not None:
            conditions.append(f"state = ${idx}")
            params.append(state.value)
            idx += 1

        limit_clause = ""
        if limit is not None:
            limit_clause = f"LIMIT ${idx}"
            params.append(limit)

        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"SELECT * FROM bulk_job_recipients WHERE {' AND '.join(conditions)} "
                f"ORDER BY position {limit_clause}",
                *params,
            )
            return [_row_to_entry(row) for row in rows]

    @retry_on_transient_error()
    async def count_entries_by_state(self, job_id: str) -> dict[EntryState, int]:
        counts = {state: 0 for state in EntryState}
        job_uuid = _parse_uuid(job_id)
        if job_uuid is None:
            return counts

        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT state, count(*)::int AS cnt FROM bulk_job_recipients WHERE job_id = $1 GROUP BY state",
                job_uuid,
            )
        for row in rows:
            counts[EntryState(row["state"])] = row["cnt"]
        return counts


# Global singleton
_store: AsyncPostgresBulkJobStore | None = None


def get_bulk_job_store() -> AsyncPostgresBulkJobStore:
    """Get the global bulk job store instance."""
    global _store
    if _store is None:
        _store = AsyncPostgresBulkJobStore()
    return _store
