"""Durable job queue backed by the ``jobs`` table.

The claim is the only mutual-exclusion primitive in the engine: a job moves
from pending to processing through a conditional UPDATE, so at most one
worker ever owns it. Everything else about a job is written by its owner or
by an admin action.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from sqlalchemy import delete, func, update
from sqlmodel import select

from core.logging import get_logger
from models.database import Job, as_utc, iso, utc_now
from .errors import JobNotFoundError, JobStateError, QueueFullError
from .models import JobStatus, RetryPolicy

if TYPE_CHECKING:
    from core.database import Database

logger = get_logger(__name__)

# Lost claim races retry the candidate selection at most this many times
MAX_CLAIM_ROUNDS = 25

ACTIVE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)


class JobQueue:
    """Single logical job table with exactly-once claim and backoff.

    Constructed once per process and shared by the dispatcher, the worker,
    the sweeper and the job routes.
    """

    def __init__(self, database: "Database", max_pending_per_org: int = 100,
                 default_max_attempts: int = 4, visibility_timeout: int = 300):
        self.database = database
        self.max_pending_per_org = max_pending_per_org
        self.default_max_attempts = default_max_attempts
        self.visibility_timeout = visibility_timeout

    # =========================================================================
    # Producer side
    # =========================================================================

    async def count_active(self, org_id: str) -> int:
        """Jobs of an org that are pending or processing."""
        async with self.database.get_session() as session:
            stmt = select(func.count()).select_from(Job).where(
                Job.org_id == org_id,
                Job.status.in_(ACTIVE_JOB_STATUSES),
            )
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def ensure_capacity(self, org_id: str) -> None:
        """Raise QueueFullError when the org is at its pending ceiling."""
        active = await self.count_active(org_id)
        if active >= self.max_pending_per_org:
            logger.warning("Queue full", org_id=org_id, pending=active, limit=self.max_pending_per_org)
            raise QueueFullError(
                f"Too many pending executions ({active}/{self.max_pending_per_org})",
                pending=active,
                limit=self.max_pending_per_org,
            )

    async def enqueue(self, workflow_id: str, execution_id: str, org_id: str,
                      trigger: Optional[Dict[str, Any]] = None,
                      run_at: Optional[datetime] = None,
                      max_attempts: Optional[int] = None,
                      retry_policy: Optional[RetryPolicy] = None) -> str:
        """Insert a pending job for an execution and return its id."""
        await self.ensure_capacity(org_id)

        policy = retry_policy or RetryPolicy(max_attempts=max_attempts or self.default_max_attempts)
        now = utc_now()
        job = Job(
            id=uuid.uuid4().hex,
            workflow_id=workflow_id,
            execution_id=execution_id,
            org_id=org_id,
            status=JobStatus.PENDING.value,
            attempts=0,
            max_attempts=max_attempts or policy.max_attempts,
            run_at=as_utc(run_at) or now,
            trigger=trigger or {},
            retry_policy=policy.to_dict(),
            created_at=now,
            updated_at=now,
        )

        async with self.database.get_session() as session:
            session.add(job)
            await session.commit()

        logger.info("Job enqueued", job_id=job.id, execution_id=execution_id,
                    workflow_id=workflow_id, org_id=org_id)
        return job.id

    # =========================================================================
    # Consumer side
    # =========================================================================

    async def claim(self, worker_id: str) -> Optional[Job]:
        """Atomically take the next due job, or None if nothing is due.

        Picks the earliest ``run_at`` (ties by ``created_at``) among due
        pending jobs. The transition is a conditional UPDATE guarded on
        ``status = 'pending'``; when another worker wins the race the
        selection is repeated.
        """
        for _ in range(MAX_CLAIM_ROUNDS):
            now = utc_now()
            async with self.database.get_session() as session:
                stmt = (
                    select(Job.id)
                    .where(Job.status == JobStatus.PENDING.value, Job.run_at <= now)
                    .order_by(Job.run_at, Job.created_at)
                    .limit(1)
                )
                result = await session.execute(stmt)
                job_id = result.scalar_one_or_none()
                if job_id is None:
                    return None

                claimed = await session.execute(
                    update(Job)
                    .where(Job.id == job_id, Job.status == JobStatus.PENDING.value)
                    .values(
                        status=JobStatus.PROCESSING.value,
                        claimed_by=worker_id,
                        claimed_at=now,
                        updated_at=now,
                    )
                )
                if claimed.rowcount != 1:
                    await session.rollback()
                    logger.debug("Claim race lost", job_id=job_id, worker_id=worker_id)
                    continue

                await session.commit()
                job = await session.get(Job, job_id, populate_existing=True)

            logger.info("Job claimed", job_id=job_id, worker_id=worker_id,
                        execution_id=job.execution_id, attempts=job.attempts)
            return job

        logger.warning("Claim gave up after repeated races", worker_id=worker_id)
        return None

    async def complete(self, job_id: str) -> None:
        """Mark a processing job completed."""
        now = utc_now()
        async with self.database.get_session() as session:
            result = await session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.PROCESSING.value)
                .values(status=JobStatus.COMPLETED.value, completed_at=now, updated_at=now)
            )
            await session.commit()

        if result.rowcount != 1:
            logger.warning("Complete ignored, job not processing", job_id=job_id)
        else:
            logger.info("Job completed", job_id=job_id)

    async def fail(self, job_id: str, error: str) -> Optional[Job]:
        """Record a failed attempt.

        With attempts left the job goes back to pending with
        ``run_at = now + initialDelay * multiplier ** attempts``; otherwise it
        is failed for good.
        """
        async with self.database.get_session() as session:
            job = await session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if job.status != JobStatus.PROCESSING.value:
                logger.warning("Fail ignored, job not processing", job_id=job_id, status=job.status)
                return job

            policy = RetryPolicy.from_dict(job.retry_policy)
            policy.max_attempts = job.max_attempts
            now = utc_now()

            if policy.has_attempts_left(job.attempts):
                delay = policy.calculate_delay(job.attempts)
                job.status = JobStatus.PENDING.value
                job.run_at = now + timedelta(seconds=delay)
                logger.info("Job scheduled for retry", job_id=job_id,
                            attempt=job.attempts + 1, delay=delay)
            else:
                job.status = JobStatus.FAILED.value
                job.completed_at = now
                logger.warning("Job failed permanently", job_id=job_id,
                               attempts=job.attempts + 1, error=error)

            job.attempts += 1
            job.last_error = (error or "")[:2000]
            job.claimed_by = None
            job.claimed_at = None
            job.updated_at = now
            await session.commit()
            await session.refresh(job)
            return job

    async def defer(self, job_id: str, run_at: datetime) -> None:
        """Return a processing job to pending until ``run_at``.

        Used when an execution pauses on a delay node; attempts are untouched
        so the resumed walk reuses the same job.
        """
        now = utc_now()
        async with self.database.get_session() as session:
            result = await session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.PROCESSING.value)
                .values(
                    status=JobStatus.PENDING.value,
                    run_at=as_utc(run_at),
                    claimed_by=None,
                    claimed_at=None,
                    updated_at=now,
                )
            )
            await session.commit()

        if result.rowcount != 1:
            logger.warning("Defer ignored, job not processing", job_id=job_id)
        else:
            logger.info("Job deferred", job_id=job_id, run_at=iso(run_at))

    # =========================================================================
    # Administration
    # =========================================================================

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self.database.get_session() as session:
            return await session.get(Job, job_id)

    async def get_job_for_execution(self, execution_id: str) -> Optional[Job]:
        async with self.database.get_session() as session:
            result = await session.execute(select(Job).where(Job.execution_id == execution_id))
            return result.scalar_one_or_none()

    async def retry(self, job_id: str) -> Job:
        """Put a failed, waiting or stale job back in the queue to run now.

        A processing job is only taken back once its claim is past the
        visibility timeout; a live claim still belongs to its worker.
        """
        async with self.database.get_session() as session:
            job = await session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if job.status == JobStatus.COMPLETED.value:
                raise JobStateError(f"Job {job_id} already completed")

            now = utc_now()
            if job.status == JobStatus.PROCESSING.value and not self._is_stale(job, now):
                raise JobStateError(f"Job {job_id} is being processed by {job.claimed_by}")
            if job.status == JobStatus.FAILED.value and job.attempts >= job.max_attempts:
                # Give a manually retried job one more attempt
                job.max_attempts = job.attempts + 1
            job.status = JobStatus.PENDING.value
            job.run_at = now
            job.claimed_by = None
            job.claimed_at = None
            job.completed_at = None
            job.updated_at = now
            await session.commit()
            await session.refresh(job)

        logger.info("Job manually retried", job_id=job_id)
        return job

    async def cancel(self, job_id: str) -> Job:
        """Fail a pending or processing job with ``lastError = "Cancelled"``."""
        async with self.database.get_session() as session:
            job = await session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if job.status not in ACTIVE_JOB_STATUSES:
                raise JobStateError(f"Job {job_id} is {job.status} and cannot be cancelled")

            now = utc_now()
            job.status = JobStatus.FAILED.value
            job.last_error = "Cancelled"
            job.completed_at = now
            job.updated_at = now
            await session.commit()
            await session.refresh(job)

        logger.info("Job cancelled", job_id=job_id)
        return job

    async def queue_status(self, org_id: Optional[str] = None) -> Dict[str, int]:
        """Job counts per status, optionally for one org."""
        counts = {status.value: 0 for status in JobStatus}
        async with self.database.get_session() as session:
            stmt = select(Job.status, func.count()).group_by(Job.status)
            if org_id:
                stmt = stmt.where(Job.org_id == org_id)
            result = await session.execute(stmt)
            for status, count in result.all():
                counts[status] = int(count)
        return counts

    def _is_stale(self, job: Job, now: datetime) -> bool:
        claimed_at = as_utc(job.claimed_at)
        return bool(
            job.status == JobStatus.PROCESSING.value and claimed_at
            and (now - claimed_at).total_seconds() > self.visibility_timeout
        )

    def describe(self, job: Job, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Job row plus computed fields for listings."""
        now = now or utc_now()
        run_at = as_utc(job.run_at)
        wait_ms = 0
        if job.status == JobStatus.PENDING.value and run_at:
            wait_ms = max(0, int((run_at - now).total_seconds() * 1000))
        is_stale = self._is_stale(job, now)
        return {
            "id": job.id,
            "workflowId": job.workflow_id,
            "executionId": job.execution_id,
            "orgId": job.org_id,
            "status": job.status,
            "attempts": job.attempts,
            "maxAttempts": job.max_attempts,
            "runAt": iso(job.run_at),
            "lastError": job.last_error,
            "claimedBy": job.claimed_by,
            "claimedAt": iso(job.claimed_at),
            "createdAt": iso(job.created_at),
            "completedAt": iso(job.completed_at),
            "canRetry": job.status in (JobStatus.FAILED.value, JobStatus.PENDING.value) or is_stale,
            "canCancel": job.status in ACTIVE_JOB_STATUSES,
            "waitTimeMs": wait_ms,
            "isStale": is_stale,
        }

    async def list_jobs(self, org_id: Optional[str] = None, status: Optional[str] = None,
                        page: int = 1, page_size: int = 20) -> Dict[str, Any]:
        """Paginated job listing, newest first."""
        page = max(1, page)
        page_size = min(max(1, page_size), 100)
        async with self.database.get_session() as session:
            stmt = select(Job)
            count_stmt = select(func.count()).select_from(Job)
            if org_id:
                stmt = stmt.where(Job.org_id == org_id)
                count_stmt = count_stmt.where(Job.org_id == org_id)
            if status:
                stmt = stmt.where(Job.status == status)
                count_stmt = count_stmt.where(Job.status == status)

            total = int((await session.execute(count_stmt)).scalar_one())
            result = await session.execute(
                stmt.order_by(Job.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
            )
            jobs = list(result.scalars().all())

        now = utc_now()
        return {
            "jobs": [self.describe(job, now) for job in jobs],
            "total": total,
            "page": page,
            "pageSize": page_size,
        }

    # =========================================================================
    # Sweeps
    # =========================================================================

    async def requeue_stale(self, older_than: Optional[int] = None) -> List[str]:
        """Return processing jobs whose claim outlived the visibility timeout.

        The abandoned attempt does not count against ``maxAttempts``.
        """
        cutoff = utc_now() - timedelta(seconds=older_than or self.visibility_timeout)
        requeued: List[str] = []
        async with self.database.get_session() as session:
            result = await session.execute(
                select(Job.id).where(
                    Job.status == JobStatus.PROCESSING.value,
                    Job.claimed_at < cutoff,
                )
            )
            for job_id in result.scalars().all():
                now = utc_now()
                updated = await session.execute(
                    update(Job)
                    .where(Job.id == job_id, Job.status == JobStatus.PROCESSING.value,
                           Job.claimed_at < cutoff)
                    .values(status=JobStatus.PENDING.value, run_at=now, claimed_by=None,
                            claimed_at=None, updated_at=now)
                )
                if updated.rowcount == 1:
                    requeued.append(job_id)
            await session.commit()

        if requeued:
            logger.warning("Requeued stale jobs", count=len(requeued), job_ids=requeued)
        return requeued

    async def purge_finished(self, older_than_days: int) -> int:
        """Delete completed and failed jobs finished before the retention window."""
        cutoff = utc_now() - timedelta(days=older_than_days)
        async with self.database.get_session() as session:
            result = await session.execute(
                delete(Job).where(
                    Job.status.in_((JobStatus.COMPLETED.value, JobStatus.FAILED.value)),
                    Job.completed_at < cutoff,
                )
            )
            await session.commit()

        if result.rowcount:
            logger.info("Purged finished jobs", count=result.rowcount, older_than_days=older_than_days)
        return result.rowcount or 0
