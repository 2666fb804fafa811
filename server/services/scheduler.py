"""
Cron Scheduler Service using APScheduler.
Fires schedule triggers for active workflows with schedule-trigger nodes.
"""
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from constants import SCHEDULE_TRIGGER
from core.logging import get_logger
from models.database import utc_now
from models.workflow import WorkflowDefinition
from services.execution.dispatcher import AuthContext
from services.execution.errors import EngineError

if TYPE_CHECKING:
    from core.database import Database
    from services.execution.dispatcher import TriggerDispatcher

logger = get_logger(__name__)


def build_cron_trigger(cron_expression: str, timezone: str = "UTC") -> CronTrigger:
    """Parse a cron expression.

    Supports 6-field (second minute hour day month weekday) and 5-field
    (minute hour day month weekday, second=0) formats.

    Raises:
        ValueError: wrong field count or invalid field values
    """
    parts = (cron_expression or "").split()

    if len(parts) == 6:
        return CronTrigger(
            second=parts[0],
            minute=parts[1],
            hour=parts[2],
            day=parts[3],
            month=parts[4],
            day_of_week=parts[5],
            timezone=timezone
        )
    if len(parts) == 5:
        return CronTrigger(
            second='0',
            minute=parts[0],
            hour=parts[1],
            day=parts[2],
            month=parts[3],
            day_of_week=parts[4],
            timezone=timezone
        )
    raise ValueError(f"expected 5 or 6 fields, got {len(parts)}")


class ScheduleService:
    """Keeps one APScheduler cron job per schedule-trigger node of each active workflow."""

    def __init__(self, database: "Database", dispatcher: "TriggerDispatcher",
                 scheduler: Optional[AsyncIOScheduler] = None):
        self.database = database
        self.dispatcher = dispatcher
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")

    async def start(self) -> None:
        """Start the scheduler and register every active workflow."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started")
        await self.sync_all()

    def shutdown(self) -> None:
        """Shutdown the scheduler gracefully."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler shutdown")

    async def sync_all(self) -> int:
        registered = 0
        for workflow in await self.database.list_workflows(status="active"):
            document = await self.database.get_workflow_version(workflow.id, workflow.version)
            if document is None:
                continue
            registered += len(self.register_workflow(workflow.id, WorkflowDefinition.model_validate(document)))
        return registered

    def register_workflow(self, workflow_id: str, definition: WorkflowDefinition) -> List[str]:
        """Replace the cron jobs of a workflow with its current schedule triggers."""
        self.unregister_workflow(workflow_id)
        job_ids = []
        for node in definition.trigger_nodes():
            if node.type != SCHEDULE_TRIGGER or not node.enabled:
                continue
            cron = node.config.get("cron")
            tz = node.config.get("timezone") or definition.settings.timezone
            try:
                trigger = build_cron_trigger(cron, timezone=tz)
            except (ValueError, TypeError, KeyError) as e:
                logger.warning("Skipping invalid schedule", workflow_id=workflow_id, node_id=node.id,
                               cron=cron, error=str(e))
                continue

            job_id = f"{workflow_id}:{node.id}"
            self.scheduler.add_job(
                self._fire,
                trigger=trigger,
                id=job_id,
                replace_existing=True,
                kwargs={"workflow_id": workflow_id, "node_id": node.id, "cron": cron},
            )
            job_ids.append(job_id)
            logger.info("Registered cron job", job_id=job_id, cron=cron, timezone=tz)
        return job_ids

    def unregister_workflow(self, workflow_id: str) -> int:
        removed = 0
        for job in self.scheduler.get_jobs():
            if job.id.startswith(f"{workflow_id}:"):
                try:
                    self.scheduler.remove_job(job.id)
                    removed += 1
                except JobLookupError:
                    logger.warning("Job not found", job_id=job.id)
        if removed:
            logger.info("Removed cron jobs", workflow_id=workflow_id, count=removed)
        return removed

    async def _fire(self, workflow_id: str, node_id: str, cron: str) -> None:
        payload = {
            "scheduledAt": utc_now().isoformat(),
            "nodeId": node_id,
            "cron": cron,
        }
        try:
            await self.dispatcher.dispatch("schedule", workflow_id, payload, AuthContext.internal("scheduler"))
        except EngineError as e:
            logger.warning("Scheduled trigger rejected", workflow_id=workflow_id, node_id=node_id,
                           code=e.code, error=e.message)

    def get_all_jobs(self) -> List[Dict[str, Any]]:
        """Get list of all scheduled jobs."""
        return [
            {
                "id": job.id,
                "next_run_time": job.next_run_time.isoformat() if getattr(job, "next_run_time", None) else None,
                "trigger": str(job.trigger)
            }
            for job in self.scheduler.get_jobs()
        ]
