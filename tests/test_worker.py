"""
Tests for the worker loop, batch processing and crash recovery.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from models.database import Job, utc_now
from services.execution.errors import JobStateError, WorkflowNotActiveError
from services.execution.models import RetryPolicy
from services.execution.recovery import RecoverySweeper
from services.execution.worker import WorkflowWorker

GRAPH = {
    "nodes": [
        {"id": "t", "type": "manual-trigger"},
        {"id": "greet", "type": "transform", "config": {"template": "Hello {{ name }}"}},
    ],
    "edges": [{"source": "t", "target": "greet"}],
}


class ExplodingWalker:
    async def walk(self, job):
        raise RuntimeError("database went away")


@pytest.fixture
async def workflow(make_workflow):
    return await make_workflow(**GRAPH)


class TestBatch:
    async def test_batch_runs_due_jobs(self, worker, dispatcher, workflow, org_auth, records):
        queued = [await dispatcher.dispatch("manual", workflow.id, {"name": f"user{i}"}, org_auth)
                  for i in range(3)]

        summary = await worker.process_batch(5)

        assert summary["processed"] == 3
        assert summary["successCount"] == 3
        assert summary["failureCount"] == 0
        for entry in queued:
            execution = await records.get_execution(entry["executionId"])
            assert execution.status == "completed"

    async def test_batch_size_is_clamped(self, worker, dispatcher, workflow, org_auth):
        for _ in range(3):
            await dispatcher.dispatch("manual", workflow.id, {}, org_auth)

        assert (await worker.process_batch(0))["processed"] == 1
        assert (await worker.process_batch(50))["processed"] == 2

    async def test_empty_queue(self, worker):
        summary = await worker.process_batch(3)
        assert summary["processed"] == 0
        assert summary["results"] == []


class TestInfrastructureErrors:
    async def test_walk_exception_fails_job_with_backoff(self, job_queue, records, settings, workflow):
        execution = await records.create_execution(workflow.id, workflow.org_id, 1, {"type": "manual"})
        job_id = await job_queue.enqueue(workflow.id, execution.id, workflow.org_id)
        worker = WorkflowWorker(job_queue, ExplodingWalker(), records, settings)

        summary = await worker.process_batch(1)

        assert summary["results"][0]["outcome"] == "error"
        assert summary["results"][0]["error"] == "Internal error: RuntimeError"
        job = await job_queue.get_job(job_id)
        assert job.status == "pending"
        assert job.attempts == 1
        assert (await records.get_execution(execution.id)).status == "pending"

    async def test_exhausted_attempts_fail_execution(self, job_queue, records, settings, workflow):
        execution = await records.create_execution(workflow.id, workflow.org_id, 1, {"type": "manual"})
        job_id = await job_queue.enqueue(workflow.id, execution.id, workflow.org_id,
                                         retry_policy=RetryPolicy(max_attempts=1))
        worker = WorkflowWorker(job_queue, ExplodingWalker(), records, settings)

        await worker.process_batch(1)

        assert (await job_queue.get_job(job_id)).status == "failed"
        failed = await records.get_execution(execution.id)
        assert failed.status == "failed"
        assert failed.result["error"]["code"] == "INTERNAL_ERROR"


class TestManualRetry:
    async def test_finished_execution_reruns_as_new_execution(self, dispatcher, job_queue, records, workflow,
                                                              org_auth, drain):
        queued = await dispatcher.dispatch("manual", workflow.id, {"name": "Ada"}, org_auth)
        job = await job_queue.cancel(queued["jobId"])
        await records.cancel(queued["executionId"], "Cancelled by user")
        assert job_queue.describe(job)["canRetry"] is True

        retried = await dispatcher.retry_job(job)
        await drain()

        assert retried.id != job.id
        assert retried.execution_id != queued["executionId"]
        rerun = await records.get_execution(retried.execution_id)
        assert rerun.status == "completed"
        assert rerun.version == workflow.version
        assert rerun.trigger["retryOf"] == queued["executionId"]
        assert rerun.context["nodeOutputs"]["greet"] == "Hello Ada"
        assert (await job_queue.get_job(retried.id)).status == "completed"
        assert (await records.get_execution(queued["executionId"])).status == "cancelled"
        assert (await job_queue.get_job(job.id)).status == "failed"

    async def test_open_execution_requeues_same_job(self, database, dispatcher, job_queue, records, workflow,
                                                    org_auth, drain):
        queued = await dispatcher.dispatch("manual", workflow.id, {"name": "Ada"}, org_auth)
        await job_queue.claim("worker-that-crashed")
        async with database.get_session() as session:
            await session.execute(
                update(Job).where(Job.id == queued["jobId"]).values(claimed_at=utc_now() - timedelta(hours=1))
            )
            await session.commit()

        retried = await dispatcher.retry_job(await job_queue.get_job(queued["jobId"]))
        await drain()

        assert retried.id == queued["jobId"]
        assert (await records.get_execution(queued["executionId"])).status == "completed"
        assert (await job_queue.get_job(retried.id)).status == "completed"

    async def test_completed_job_rejected(self, dispatcher, job_queue, workflow, org_auth, drain):
        queued = await dispatcher.dispatch("manual", workflow.id, {}, org_auth)
        await drain()

        with pytest.raises(JobStateError):
            await dispatcher.retry_job(await job_queue.get_job(queued["jobId"]))

    async def test_paused_workflow_not_rerun(self, dispatcher, job_queue, records, workflow, workflow_service,
                                             org_auth):
        queued = await dispatcher.dispatch("manual", workflow.id, {}, org_auth)
        job = await job_queue.cancel(queued["jobId"])
        await records.cancel(queued["executionId"])
        await workflow_service.set_status(workflow.id, "paused", org_auth.org_id)

        with pytest.raises(WorkflowNotActiveError):
            await dispatcher.retry_job(job)
        assert await job_queue.count_active(org_auth.org_id) == 0


class TestPollLoop:
    async def test_loop_drains_queue(self, job_queue, walker, records, settings, dispatcher, workflow,
                                     org_auth):
        worker = WorkflowWorker(job_queue, walker, records, settings.model_copy(update={
            "worker_poll_interval": 0.05, "worker_concurrency": 2,
        }))
        queued = await dispatcher.dispatch("manual", workflow.id, {"name": "Ada"}, org_auth)

        await worker.start()
        try:
            for _ in range(100):
                execution = await records.get_execution(queued["executionId"])
                if execution.status == "completed":
                    break
                await asyncio.sleep(0.05)
        finally:
            await worker.stop()

        assert execution.status == "completed"
        assert execution.context["nodeOutputs"]["greet"] == "Hello Ada"
        assert not worker.is_running


class TestRecovery:
    async def test_abandoned_claim_is_resumed(self, database, job_queue, records, dispatcher, workflow,
                                              org_auth, drain):
        queued = await dispatcher.dispatch("manual", workflow.id, {"name": "Ada"}, org_auth)
        # A worker claims the job and dies
        claimed = await job_queue.claim("worker-that-crashed")
        async with database.get_session() as session:
            await session.execute(
                update(Job).where(Job.id == claimed.id).values(claimed_at=utc_now() - timedelta(minutes=10))
            )
            await session.commit()

        sweeper = RecoverySweeper(job_queue, records, visibility_timeout=300)
        report = await sweeper.sweep_once()

        assert report["requeued"] == [queued["jobId"]]
        job = await job_queue.get_job(queued["jobId"])
        assert job.status == "pending"
        assert job.attempts == 0

        await drain()
        assert (await records.get_execution(queued["executionId"])).status == "completed"

    async def test_fresh_claims_are_left_alone(self, job_queue, records, dispatcher, workflow, org_auth):
        await dispatcher.dispatch("manual", workflow.id, {}, org_auth)
        await job_queue.claim("busy-worker")

        report = await RecoverySweeper(job_queue, records, visibility_timeout=300).sweep_once()

        assert report["requeued"] == []

    async def test_start_and_stop(self, job_queue, records):
        sweeper = RecoverySweeper(job_queue, records, sweep_interval=1)

        await sweeper.start()
        await asyncio.sleep(0.2)
        await sweeper.stop()

        assert sweeper._task.done()
