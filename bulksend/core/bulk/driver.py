# bulksend/core/bulk/driver.py
"""
Job driver: advances a bulk job by one chunk.

There is no long-lived worker.  A job moves forward only when something
calls ``advance``: the creator right after creation, the "continue"
endpoint, or the scheduler ``sweep``.  All of them share this one code
path, and any number of them may run concurrently on the same job;
the claimer guarantees they never work on the same entry.
"""
from __future__ import annotations

import time
from typing import Callable

from bulksend.core.bulk.claimer import ChunkClaimer
from bulksend.core.bulk.domain import BulkJob, ChunkResult, SweepItem
from bulksend.core.bulk.errors import BulkJobError, NotFoundError, ProcessorFatalError
from bulksend.core.bulk.executor import DispatchExecutor
from bulksend.core.bulk.ports import BulkJobStore, RecipientDirectory
from bulksend.infra.logging_config import LogContext, get_logger
from bulksend.infra.metrics import BulkMetrics

logger = get_logger(__name__)


class JobDriver:
    def __init__(
        self,
        store: BulkJobStore,
        directory: RecipientDirectory,
        claimer: ChunkClaimer,
        executor: DispatchExecutor,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._directory = directory
        self._claimer = claimer
        self._executor = executor
        self._clock = clock

    async def advance(self, job_id: str, chunk_size: int, *, trigger: str = "continue") -> ChunkResult:
        """
        Process up to ``chunk_size`` recipients of the job.

        Returns the tallies of this invocation only.  ``is_complete`` is
        True once the job is terminal; calling again after that is a
        no-op returning zeros.

        Raises:
            NotFoundError: unknown job
            TransientStoreError: store unavailable, job status unchanged
            ProcessorFatalError: counter invariant broken, job marked FAILED
        """
        job = await self._store.get_job(job_id)
        if job is None:
            raise NotFoundError("Job not found")

        if job.is_terminal:
            return ChunkResult(is_complete=True)

        log = LogContext(logger, job_id=job_id, event_id=job.event_id)

        with BulkMetrics.track_chunk_time(trigger):
            if job.cancel_requested:
                job = await self._claimer.finalize(job_id)
                return ChunkResult(is_complete=job.is_terminal)

            # Counters already off: fail before sending anything more
            await self._check_counters(job)

            entries = await self._claimer.claim_next_chunk(job_id, chunk_size)
            if not entries:
                job = await self._claimer.finalize(job_id)
                if not job.is_terminal:
                    log.debug("Nothing to claim, remaining entries are leased by another invocation")
                return ChunkResult(is_complete=job.is_terminal)

            event = await self._directory.get_event(job.event_id)
            if event is None:
                await self._fail(job, "Event no longer exists")

            recipients = await self._directory.get_recipients([e.recipient_id for e in entries])

            result = ChunkResult()
            for entry in entries:
                outcome = await self._executor.dispatch(
                    job, event, entry, recipients.get(entry.recipient_id)
                )
                if outcome.applied:
                    result.add(outcome)

            job = await self._store.get_job(job_id)
            if job is None:
                raise NotFoundError("Job not found")
            await self._check_counters(job)

            job = await self._claimer.finalize(job_id)
            result.is_complete = job.is_terminal

        log.info(
            f"Chunk done ({trigger}): processed={result.processed} sent={result.sent} "
            f"failed={result.failed} skipped={result.skipped} complete={result.is_complete}"
        )
        return result

    async def sweep(
        self,
        chunk_size: int,
        time_budget_seconds: float,
        *,
        max_jobs: int = 100,
    ) -> list[SweepItem]:
        """
        Advance every non-terminal job once, oldest first.

        Stops early when a job still has work after a non-empty chunk
        (the next sweep continues it) or when the time budget runs out.
        Per-job errors are reported in the result, not raised.
        """
        started = self._clock()
        jobs = await self._store.list_active_jobs(max_jobs)
        results: list[SweepItem] = []

        for job in jobs:
            if self._clock() - started >= time_budget_seconds:
                logger.info(f"Sweep time budget exhausted after {len(results)} jobs")
                break

            try:
                chunk = await self.advance(job.id, chunk_size, trigger="sweep")
            except Exception as exc:
                detail = exc.detail if isinstance(exc, BulkJobError) else str(exc)
                logger.error(
                    f"Sweep failed to advance job {job.id[:8]}: {detail}",
                    extra={"job_id": job.id},
                    exc_info=not isinstance(exc, BulkJobError),
                )
                results.append(SweepItem(job_id=job.id, error=detail))
                continue

            results.append(SweepItem(
                job_id=job.id,
                processed=chunk.processed,
                sent=chunk.sent,
                failed=chunk.failed,
                skipped=chunk.skipped,
                is_complete=chunk.is_complete,
            ))

            if chunk.processed > 0 and not chunk.is_complete:
                break

        BulkMetrics.sweep_run(len(results))
        return results

    async def request_cancel(self, job_id: str) -> BulkJob:
        """
        Ask the job to stop.  Takes effect at the next chunk cycle.

        Idempotent; a terminal job is returned unchanged.
        """
        job = await self._store.request_cancel(job_id)
        if job is None:
            raise NotFoundError("Job not found")
        return job

    async def _check_counters(self, job: BulkJob) -> None:
        if not job.counters_consistent():
            await self._fail(
                job,
                f"Counter invariant violated: sent={job.sent_count} failed={job.failed_count} "
                f"skipped={job.skipped_count} total={job.total_recipients}",
            )

    async def _fail(self, job: BulkJob, reason: str) -> None:
        logger.critical(f"Job {job.id[:8]} failed: {reason}", extra={"job_id": job.id})
        await self._store.mark_failed(job.id, reason)
        BulkMetrics.job_finished("FAILED")
        raise ProcessorFatalError(reason)
