# bulksend/core/bulk/claimer.py
from __future__ import annotations

from bulksend.core.bulk.domain import BulkJob, RecipientEntry
from bulksend.core.bulk.ports import BulkJobStore
from bulksend.infra.logging_config import get_logger
from bulksend.infra.metrics import BulkMetrics

logger = get_logger(__name__)


class ChunkClaimer:
    """
    Race-free hand-out of recipient entries to driver invocations.

    All the concurrency control lives in the store's ``claim_batch``:
    one conditional statement per claim, so a manual continue racing a
    scheduler sweep can never get the same entry (unless its lease
    expired, which means the first holder is presumed dead).
    """

    def __init__(self, store: BulkJobStore, lease_seconds: int = 300):
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be positive")
        self._store = store
        self._lease_seconds = lease_seconds

    @property
    def lease_seconds(self) -> int:
        return self._lease_seconds

    async def claim_next_chunk(self, job_id: str, max_size: int) -> list[RecipientEntry]:
        """
        Claim up to ``max_size`` entries of the job.

        Returns an empty list when the job is terminal, cancellation was
        requested, or there is nothing left to claim.
        """
        if max_size <= 0:
            return []

        entries = await self._store.claim_batch(job_id, max_size, self._lease_seconds)
        if entries:
            BulkMetrics.entries_claimed(len(entries))
            logger.debug(
                f"Claimed {len(entries)} entries for job {job_id[:8]}",
                extra={"job_id": job_id},
            )
        return entries

    async def finalize(self, job_id: str) -> BulkJob:
        """
        Move the job to its terminal state if it has no more work.

        CANCELLED wins when cancellation was requested; COMPLETED needs
        every entry to be terminal.  Entries still under a live lease keep
        the job open.
        """
        job, transitioned = await self._store.finalize_job(job_id)
        if transitioned:
            BulkMetrics.job_finished(job.status.value)
            logger.info(
                f"Job {job_id[:8]} finalized: status={job.status.value} "
                f"sent={job.sent_count} failed={job.failed_count} skipped={job.skipped_count}",
                extra={"job_id": job_id, "event_id": job.event_id},
            )
        return job
