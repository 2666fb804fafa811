"""Recovery sweeper for crash recovery.

Runs as background task to:
- Requeue jobs whose worker died mid-walk (claim older than the visibility timeout)
- Purge finished jobs, old logs and old terminal executions
"""

import asyncio
from typing import Any, Dict, Optional, TYPE_CHECKING

from core.logging import get_logger

if TYPE_CHECKING:
    from .queue import JobQueue
    from .records import ExecutionRecordManager

logger = get_logger(__name__)


class RecoverySweeper:
    """Background task that returns abandoned jobs to the queue.

    A claimed job carries ``claimed_at``; a worker that crashes never
    completes, fails or defers it. After ``visibility_timeout`` seconds the
    sweeper puts it back to pending so another worker resumes the execution
    from its persisted progress.
    """

    def __init__(self, job_queue: "JobQueue", record_manager: "ExecutionRecordManager",
                 visibility_timeout: int = 300,  # 5 minutes
                 sweep_interval: int = 60,       # 1 minute
                 job_retention_days: int = 7,
                 log_retention_days: int = 7,
                 execution_retention_days: int = 30):
        """Initialize recovery sweeper.

        Args:
            job_queue: Shared JobQueue
            record_manager: Execution record manager (log and record retention)
            visibility_timeout: Seconds before a processing job is considered abandoned
            sweep_interval: Seconds between sweep runs
        """
        self.job_queue = job_queue
        self.records = record_manager
        self.visibility_timeout = visibility_timeout
        self.sweep_interval = sweep_interval
        self.job_retention_days = job_retention_days
        self.log_retention_days = log_retention_days
        self.execution_retention_days = execution_retention_days
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the recovery sweeper background task."""
        if self._running:
            logger.warning("Recovery sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Recovery sweeper started",
                    visibility_timeout=self.visibility_timeout,
                    sweep_interval=self.sweep_interval)

    async def stop(self) -> None:
        """Stop the recovery sweeper."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Recovery sweeper stopped")

    async def _sweep_loop(self) -> None:
        """Main sweep loop - runs continuously."""
        while self._running:
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error("Sweep iteration failed", error=str(e))

            # Wait before next sweep
            await asyncio.sleep(self.sweep_interval)

    async def sweep_once(self) -> Dict[str, Any]:
        """Single sweep iteration."""
        requeued = await self.job_queue.requeue_stale(self.visibility_timeout)
        purged_jobs = await self.job_queue.purge_finished(self.job_retention_days)
        purged_logs = await self.records.purge_logs(self.log_retention_days)
        purged_executions = await self.records.purge_executions(self.execution_retention_days)

        if requeued:
            logger.info("Recovered abandoned jobs", count=len(requeued))

        return {
            "requeued": requeued,
            "purgedJobs": purged_jobs,
            "purgedLogs": purged_logs,
            "purgedExecutions": purged_executions,
        }
