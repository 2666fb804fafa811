"""Job queue inspection and administration routes."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from core.container import container
from core.logging import get_logger
from services.execution.dispatcher import AuthContext, TriggerDispatcher
from services.execution.errors import JobNotFoundError
from services.execution.queue import JobQueue
from services.execution.records import ExecutionRecordManager
from routers.deps import get_auth_context, require_org

logger = get_logger(__name__)
router = APIRouter(prefix="/api/jobs", tags=["jobs"])


async def _org_job(job_queue: JobQueue, job_id: str, org_id: str):
    job = await job_queue.get_job(job_id)
    if job is None or job.org_id != org_id:
        raise JobNotFoundError(f"Job {job_id} not found")
    return job


@router.get("")
async def list_jobs(
    status: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    pageSize: int = Query(default=20, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    job_queue: JobQueue = Depends(lambda: container.job_queue())
):
    """Paginated jobs with computed canRetry/canCancel/waitTimeMs/isStale."""
    listing = await job_queue.list_jobs(require_org(auth), status=status, page=page, page_size=pageSize)
    return {"success": True, **listing}


@router.get("/status")
async def queue_status(
    auth: AuthContext = Depends(get_auth_context),
    job_queue: JobQueue = Depends(lambda: container.job_queue())
):
    counts = await job_queue.queue_status(require_org(auth))
    return {"success": True, "status": counts}


@router.post("/{job_id}/retry")
async def retry_job(
    job_id: str,
    auth: AuthContext = Depends(get_auth_context),
    job_queue: JobQueue = Depends(lambda: container.job_queue()),
    dispatcher: TriggerDispatcher = Depends(lambda: container.dispatcher())
):
    """Requeue the job, or re-run it as a new execution once the old one finished."""
    job = await _org_job(job_queue, job_id, require_org(auth))
    retried = await dispatcher.retry_job(job)
    logger.info("Job retried via API", job_id=job_id, new_job_id=retried.id, user_id=auth.user_id)
    return {"success": True, "job": job_queue.describe(retried), "executionId": retried.execution_id}


@router.post("/{job_id}/cancel")
async def cancel_job(
    job_id: str,
    auth: AuthContext = Depends(get_auth_context),
    job_queue: JobQueue = Depends(lambda: container.job_queue()),
    records: ExecutionRecordManager = Depends(lambda: container.record_manager())
):
    """Fail the job and cancel its execution; a running walk stops at its next step."""
    await _org_job(job_queue, job_id, require_org(auth))
    job = await job_queue.cancel(job_id)
    await records.cancel(job.execution_id, "Cancelled by user")
    logger.info("Job cancelled via API", job_id=job_id, user_id=auth.user_id)
    return {"success": True, "job": job_queue.describe(job)}
