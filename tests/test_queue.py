"""
Tests for the durable job queue: claim exclusivity, backoff and admin actions.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from models.database import Job, as_utc, utc_now
from services.execution.errors import JobStateError, QueueFullError
from services.execution.models import RetryPolicy
from services.execution.queue import JobQueue


async def make_due(database, job_id):
    async with database.get_session() as session:
        await session.execute(update(Job).where(Job.id == job_id).values(run_at=utc_now()))
        await session.commit()


class TestClaim:
    async def test_at_most_one_claimant(self, job_queue):
        """50 concurrent workers racing for one job: exactly one wins."""
        job_id = await job_queue.enqueue("wf-1", "exec-1", "org-1")

        results = await asyncio.gather(*[job_queue.claim(f"worker-{i}") for i in range(50)])

        winners = [job for job in results if job is not None]
        assert len(winners) == 1
        assert winners[0].id == job_id
        assert winners[0].status == "processing"

        job = await job_queue.get_job(job_id)
        assert job.claimed_by == winners[0].claimed_by

    async def test_many_jobs_each_claimed_once(self, job_queue):
        ids = {await job_queue.enqueue("wf-1", f"exec-{i}", "org-1") for i in range(10)}

        results = await asyncio.gather(*[job_queue.claim(f"worker-{i}") for i in range(20)])

        claimed = [job.id for job in results if job is not None]
        assert len(claimed) == len(set(claimed))
        assert set(claimed) == ids

    async def test_claim_order_and_due_time(self, job_queue):
        later = await job_queue.enqueue("wf-1", "exec-later", "org-1",
                                        run_at=utc_now() - timedelta(seconds=5))
        earliest = await job_queue.enqueue("wf-1", "exec-early", "org-1",
                                           run_at=utc_now() - timedelta(seconds=60))
        await job_queue.enqueue("wf-1", "exec-future", "org-1", run_at=utc_now() + timedelta(hours=1))

        first = await job_queue.claim("w")
        second = await job_queue.claim("w")
        third = await job_queue.claim("w")

        assert first.id == earliest
        assert second.id == later
        assert third is None

    async def test_empty_queue(self, job_queue):
        assert await job_queue.claim("w") is None


class TestBackoff:
    async def test_backoff_grows_then_fails_permanently(self, database, job_queue):
        policy = RetryPolicy(max_attempts=4, initial_delay=1.0, max_delay=3600.0, backoff_multiplier=2.0)
        job_id = await job_queue.enqueue("wf-1", "exec-1", "org-1", retry_policy=policy)

        delays = []
        for attempt in range(3):
            job = await job_queue.claim("w")
            assert job is not None and job.id == job_id
            before = utc_now()
            failed = await job_queue.fail(job_id, f"boom {attempt}")
            assert failed.status == "pending"
            assert failed.attempts == attempt + 1
            delays.append((as_utc(failed.run_at) - before).total_seconds())
            await make_due(database, job_id)

        assert delays[0] < delays[1] < delays[2]
        assert delays[0] == pytest.approx(1.0, abs=0.5)
        assert delays[2] == pytest.approx(4.0, abs=0.5)

        await job_queue.claim("w")
        final = await job_queue.fail(job_id, "boom 3")
        assert final.status == "failed"
        assert final.attempts == 4
        assert final.last_error == "boom 3"
        assert final.completed_at is not None
        assert await job_queue.claim("w") is None

    def test_delay_is_capped(self):
        policy = RetryPolicy(max_attempts=10, initial_delay=10.0, max_delay=60.0, backoff_multiplier=3.0)
        assert policy.calculate_delay(0) == 10.0
        assert policy.calculate_delay(1) == 30.0
        assert policy.calculate_delay(5) == 60.0

    async def test_defer_keeps_attempts(self, job_queue):
        job_id = await job_queue.enqueue("wf-1", "exec-1", "org-1")
        await job_queue.claim("w")
        resume_at = utc_now() + timedelta(minutes=5)

        await job_queue.defer(job_id, resume_at)

        job = await job_queue.get_job(job_id)
        assert job.status == "pending"
        assert job.attempts == 0
        assert job.claimed_by is None
        assert abs((as_utc(job.run_at) - resume_at).total_seconds()) < 1
        assert await job_queue.claim("w") is None


class TestCapacity:
    async def test_queue_full_at_ceiling(self, database):
        queue = JobQueue(database, max_pending_per_org=2)
        await queue.enqueue("wf-1", "exec-1", "org-1")
        await queue.enqueue("wf-1", "exec-2", "org-1")

        with pytest.raises(QueueFullError) as exc_info:
            await queue.enqueue("wf-1", "exec-3", "org-1")
        assert exc_info.value.code == "QUEUE_FULL"
        assert exc_info.value.limit == 2

        # Other orgs are unaffected
        await queue.enqueue("wf-2", "exec-4", "org-2")

    async def test_completed_jobs_free_capacity(self, database):
        queue = JobQueue(database, max_pending_per_org=1)
        job_id = await queue.enqueue("wf-1", "exec-1", "org-1")
        await queue.claim("w")
        await queue.complete(job_id)

        await queue.enqueue("wf-1", "exec-2", "org-1")
        assert await queue.count_active("org-1") == 1


class TestAdministration:
    async def test_cancel_pending_job(self, job_queue):
        job_id = await job_queue.enqueue("wf-1", "exec-1", "org-1")

        job = await job_queue.cancel(job_id)

        assert job.status == "failed"
        assert job.last_error == "Cancelled"
        with pytest.raises(JobStateError):
            await job_queue.cancel(job_id)

    async def test_retry_exhausted_job(self, job_queue):
        policy = RetryPolicy(max_attempts=1)
        job_id = await job_queue.enqueue("wf-1", "exec-1", "org-1", retry_policy=policy)
        await job_queue.claim("w")
        failed = await job_queue.fail(job_id, "nope")
        assert failed.status == "failed"

        job = await job_queue.retry(job_id)

        assert job.status == "pending"
        assert job.max_attempts == 2
        assert (await job_queue.claim("w")).id == job_id

    async def test_retry_completed_job_rejected(self, job_queue):
        job_id = await job_queue.enqueue("wf-1", "exec-1", "org-1")
        await job_queue.claim("w")
        await job_queue.complete(job_id)

        with pytest.raises(JobStateError):
            await job_queue.retry(job_id)

    async def test_retry_live_claim_rejected(self, job_queue):
        job_id = await job_queue.enqueue("wf-1", "exec-1", "org-1")
        await job_queue.claim("busy-worker")

        with pytest.raises(JobStateError):
            await job_queue.retry(job_id)
        row = job_queue.describe(await job_queue.get_job(job_id))
        assert row["canRetry"] is False
        assert row["claimedBy"] == "busy-worker"

    async def test_queue_status_counts(self, job_queue):
        done = await job_queue.enqueue("wf-1", "exec-1", "org-1")
        await job_queue.enqueue("wf-1", "exec-2", "org-1")
        await job_queue.enqueue("wf-1", "exec-3", "org-2")
        await job_queue.claim("w")
        await job_queue.complete(done)

        status = await job_queue.queue_status("org-1")
        assert status == {"pending": 1, "processing": 0, "completed": 1, "failed": 0}

    async def test_list_jobs_computed_fields(self, database, job_queue):
        future = await job_queue.enqueue("wf-1", "exec-1", "org-1", run_at=utc_now() + timedelta(minutes=10))
        stale = await job_queue.enqueue("wf-1", "exec-2", "org-1")
        await job_queue.claim("w")
        async with database.get_session() as session:
            await session.execute(
                update(Job).where(Job.id == stale).values(claimed_at=utc_now() - timedelta(hours=1))
            )
            await session.commit()

        listing = await job_queue.list_jobs("org-1", page=1, page_size=10)

        assert listing["total"] == 2
        rows = {row["id"]: row for row in listing["jobs"]}
        assert rows[future]["status"] == "pending"
        assert rows[future]["canCancel"] is True
        assert rows[future]["waitTimeMs"] > 9 * 60 * 1000
        assert rows[stale]["status"] == "processing"
        assert rows[stale]["isStale"] is True
        assert rows[stale]["canRetry"] is True

        only_pending = await job_queue.list_jobs("org-1", status="pending")
        assert [row["id"] for row in only_pending["jobs"]] == [future]

    async def test_requeue_stale(self, database, job_queue):
        job_id = await job_queue.enqueue("wf-1", "exec-1", "org-1")
        await job_queue.claim("w")
        async with database.get_session() as session:
            await session.execute(
                update(Job).where(Job.id == job_id).values(claimed_at=utc_now() - timedelta(hours=1))
            )
            await session.commit()

        requeued = await job_queue.requeue_stale(older_than=60)

        assert requeued == [job_id]
        assert (await job_queue.get_job(job_id)).status == "pending"

    async def test_purge_finished(self, database, job_queue):
        old = await job_queue.enqueue("wf-1", "exec-1", "org-1")
        recent = await job_queue.enqueue("wf-1", "exec-2", "org-1")
        pending = await job_queue.enqueue("wf-1", "exec-3", "org-1")
        for job_id in (old, recent):
            await job_queue.cancel(job_id)
        async with database.get_session() as session:
            await session.execute(
                update(Job).where(Job.id == old).values(completed_at=utc_now() - timedelta(days=30))
            )
            await session.commit()

        assert await job_queue.purge_finished(older_than_days=7) == 1

        assert await job_queue.get_job(old) is None
        assert await job_queue.get_job(recent) is not None
        assert await job_queue.get_job(pending) is not None
