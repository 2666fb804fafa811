"""Workflow worker - claims jobs and runs them through the graph walker.

Workers are stateless; they coordinate only through the queue claim. A
worker can run as an in-process poll loop (``start``/``stop``) or be driven
externally one batch at a time through ``process_batch`` (the cron-invoked
``/api/workflows/process`` endpoint).
"""

import asyncio
import socket
import time
import uuid
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from core.logging import get_logger, job_log_context
from models.database import Job
from .errors import INTERNAL_ERROR
from .models import JobStatus, WalkOutcome, WalkResult

if TYPE_CHECKING:
    from core.config import Settings
    from .queue import JobQueue
    from .records import ExecutionRecordManager
    from .walker import GraphWalker

logger = get_logger(__name__)


def make_worker_id(prefix: str = "worker") -> str:
    return f"{prefix}-{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


class WorkflowWorker:
    """Claims due jobs and maps walk outcomes back onto the queue."""

    def __init__(self, job_queue: "JobQueue", walker: "GraphWalker",
                 record_manager: "ExecutionRecordManager", settings: "Settings"):
        self.job_queue = job_queue
        self.walker = walker
        self.records = record_manager
        self.poll_interval = settings.worker_poll_interval
        self.concurrency = settings.worker_concurrency
        self.batch_max = settings.worker_batch_max
        self.worker_id = make_worker_id()
        self._running = False
        self._tasks: List[asyncio.Task] = []

    # =========================================================================
    # Single job
    # =========================================================================

    async def run_job(self, job: Job, worker_id: Optional[str] = None) -> Dict[str, Any]:
        """Walk one claimed job and settle it.

        Any exception from the walk is treated as an infrastructure failure
        of this job only: the attempt is failed with backoff and, once the
        attempts are spent, the execution is finalized as failed.
        """
        start_time = time.time()
        entry: Dict[str, Any] = {
            "jobId": job.id,
            "workflowId": job.workflow_id,
            "executionId": job.execution_id,
        }

        with job_log_context(job, worker_id or self.worker_id):
            try:
                result = await self.walker.walk(job)
                await self._settle(job, result)
                entry["success"] = result.outcome in (WalkOutcome.COMPLETED, WalkOutcome.PAUSED)
                entry["outcome"] = result.outcome.value
                if result.error:
                    entry["error"] = result.error
            except Exception as e:
                logger.error("Job processing failed", error=str(e), exc_info=True)
                entry["success"] = False
                entry["outcome"] = "error"
                entry["error"] = f"Internal error: {type(e).__name__}"
                await self._fail_after_error(job, str(e))

            entry["durationMs"] = int((time.time() - start_time) * 1000)
            logger.info("Job finished", outcome=entry["outcome"], duration_ms=entry["durationMs"])
        return entry

    async def _settle(self, job: Job, result: WalkResult) -> None:
        if result.outcome == WalkOutcome.RETRY:
            await self.job_queue.fail(job.id, result.error or "Retryable node failure")
        elif result.outcome == WalkOutcome.PAUSED:
            await self.job_queue.defer(job.id, result.resume_at)
        else:
            # Completed, failed and cancelled executions all finish the job
            await self.job_queue.complete(job.id)

    async def _fail_after_error(self, job: Job, error: str) -> None:
        try:
            failed = await self.job_queue.fail(job.id, error)
            if failed is not None and failed.status == JobStatus.FAILED.value:
                await self.records.finalize(
                    job.execution_id, success=False,
                    error={"code": INTERNAL_ERROR, "message": "Execution failed after repeated internal errors"},
                )
        except Exception as e:
            # Left processing; the sweeper requeues it after the visibility timeout
            logger.error("Could not record job failure", job_id=job.id, error=str(e))

    # =========================================================================
    # Batch (externally driven)
    # =========================================================================

    async def process_batch(self, count: int = 1, worker_id: Optional[str] = None) -> Dict[str, Any]:
        """Claim and run up to ``count`` due jobs sequentially."""
        count = max(1, min(count, self.batch_max))
        worker_id = worker_id or self.worker_id
        start_time = time.time()
        results: List[Dict[str, Any]] = []

        for _ in range(count):
            try:
                job = await self.job_queue.claim(worker_id)
            except Exception as e:
                logger.error("Claim failed", worker_id=worker_id, error=str(e))
                break
            if job is None:
                break
            results.append(await self.run_job(job, worker_id))

        success_count = sum(1 for entry in results if entry["success"])
        summary = {
            "success": True,
            "workerId": worker_id,
            "processed": len(results),
            "successCount": success_count,
            "failureCount": len(results) - success_count,
            "totalDurationMs": int((time.time() - start_time) * 1000),
            "results": results,
        }
        if results:
            logger.info("Batch processed", worker_id=worker_id, processed=len(results),
                        success_count=success_count)
        return summary

    # =========================================================================
    # Poll loop (in-process)
    # =========================================================================

    async def start(self) -> None:
        if self._running:
            logger.warning("Worker already running")
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._poll_loop(f"{self.worker_id}-{index}"), name=f"worker_{index}")
            for index in range(self.concurrency)
        ]
        logger.info("Worker started", worker_id=self.worker_id, concurrency=self.concurrency,
                    poll_interval=self.poll_interval)

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Worker stopped", worker_id=self.worker_id)

    @property
    def is_running(self) -> bool:
        return self._running

    async def _poll_loop(self, worker_id: str) -> None:
        while self._running:
            try:
                job = await self.job_queue.claim(worker_id)
            except Exception as e:
                logger.error("Poll iteration failed", worker_id=worker_id, error=str(e))
                job = None

            if job is None:
                await asyncio.sleep(self.poll_interval)
                continue

            await self.run_job(job, worker_id)
