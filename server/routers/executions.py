"""Internal execution routes: full record view and cancellation."""

from fastapi import APIRouter, Depends

from core.container import container
from core.logging import get_logger
from services.execution.dispatcher import AuthContext
from services.execution.errors import ExecutionNotFoundError, JobStateError
from services.execution.models import JobStatus
from services.execution.queue import JobQueue
from services.execution.records import ExecutionRecordManager
from routers.deps import get_auth_context, require_org

logger = get_logger(__name__)
router = APIRouter(prefix="/api/executions", tags=["executions"])


async def _org_execution(records: ExecutionRecordManager, execution_id: str, org_id: str):
    execution = await records.get_execution(execution_id)
    if execution is None or execution.org_id != org_id:
        raise ExecutionNotFoundError(f"Execution {execution_id} not found")
    return execution


@router.get("/{execution_id}")
async def get_execution(
    execution_id: str,
    logs: bool = True,
    auth: AuthContext = Depends(get_auth_context),
    records: ExecutionRecordManager = Depends(lambda: container.record_manager()),
    job_queue: JobQueue = Depends(lambda: container.job_queue())
):
    execution = await _org_execution(records, execution_id, require_org(auth))
    job = await job_queue.get_job_for_execution(execution_id)
    data = {
        "success": True,
        "execution": records.to_dict(execution),
        "job": job_queue.describe(job) if job else None,
    }
    if logs:
        data["logs"] = [records.log_to_dict(entry) for entry in await records.get_logs(execution_id)]
    return data


@router.post("/{execution_id}/cancel")
async def cancel_execution(
    execution_id: str,
    auth: AuthContext = Depends(get_auth_context),
    records: ExecutionRecordManager = Depends(lambda: container.record_manager()),
    job_queue: JobQueue = Depends(lambda: container.job_queue())
):
    """Cancel the execution. A pending job is failed so it is never claimed."""
    await _org_execution(records, execution_id, require_org(auth))
    execution = await records.cancel(execution_id, "Cancelled by user")

    job = await job_queue.get_job_for_execution(execution_id)
    if job is not None and job.status == JobStatus.PENDING.value:
        try:
            await job_queue.cancel(job.id)
        except JobStateError:
            # Claimed in the meantime; the walk sees the cancelled record
            logger.info("Job claimed before cancel", job_id=job.id, execution_id=execution_id)

    return {"success": True, "execution": records.to_dict(execution)}
