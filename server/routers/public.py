"""Public (embed) routes: execute a workflow by slug and poll its status.

Callers are unauthenticated, so responses only carry ``{success, error,
code}`` on failure and the sanitized execution view on success.
"""

import re
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field

from core.container import container
from core.logging import get_logger
from services.execution.dispatcher import AuthContext, TriggerDispatcher
from services.execution.errors import EngineError, ExecutionNotFoundError
from services.execution.records import ExecutionRecordManager
from routers.deps import error_response, public_context

logger = get_logger(__name__)
router = APIRouter(prefix="/api/public", tags=["public"])

EXECUTION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8,64}$")


class PublicExecuteRequest(BaseModel):
    token: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


@router.post("/workflows/{slug}/execute")
async def execute_public_workflow(
    slug: str,
    request: Optional[PublicExecuteRequest] = None,
    x_execution_token: Optional[str] = Header(default=None),
    auth: AuthContext = Depends(public_context),
    dispatcher: TriggerDispatcher = Depends(lambda: container.dispatcher())
):
    """Queue a run of a workflow that allows public execution."""
    request = request or PublicExecuteRequest()
    token = request.token or x_execution_token
    try:
        queued = await dispatcher.dispatch("api", slug, request.payload, auth, token=token)
    except EngineError as e:
        logger.info("Public execution rejected", slug=slug, code=e.code)
        return error_response(e)

    return {"success": True, "executionId": queued["executionId"], "status": queued["status"]}


@router.get("/executions/{execution_id}")
async def get_public_execution(
    execution_id: str,
    logs: bool = False,
    records: ExecutionRecordManager = Depends(lambda: container.record_manager())
):
    """Sanitized execution status, optionally with its ordered logs."""
    if not EXECUTION_ID_PATTERN.match(execution_id):
        return error_response(EngineError("Invalid execution id", code="INVALID_EXECUTION_ID",
                                          status_code=400))

    execution = await records.get_execution(execution_id)
    if execution is None:
        return error_response(ExecutionNotFoundError("Execution not found"))

    entries = await records.get_logs(execution_id) if logs else None
    return {"success": True, **records.public_view(execution, entries)}
