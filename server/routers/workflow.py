"""Workflow routes: draft editing, publishing, manual runs and batch processing."""

import hmac
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, Field

from core.config import Settings
from core.container import container
from core.logging import get_logger
from services.execution.dispatcher import AuthContext, TriggerDispatcher
from services.execution.errors import EngineError
from services.execution.worker import WorkflowWorker
from services.workflow import WorkflowService
from routers.deps import error_response, get_auth_context, require_org

logger = get_logger(__name__)
router = APIRouter(prefix="/api/workflows", tags=["workflows"])


class WorkflowCreateRequest(BaseModel):
    name: str
    slug: Optional[str] = None
    description: Optional[str] = None
    nodes: List[Dict[str, Any]] = Field(default_factory=list)
    edges: List[Dict[str, Any]] = Field(default_factory=list)
    settings: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    embedSettings: Optional[Dict[str, Any]] = None


class WorkflowStatusRequest(BaseModel):
    status: str


class ManualExecuteRequest(BaseModel):
    payload: Dict[str, Any] = Field(default_factory=dict)


@router.post("")
async def create_workflow(
    request: WorkflowCreateRequest,
    auth: AuthContext = Depends(get_auth_context),
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Create a draft workflow."""
    org_id = require_org(auth)
    workflow = await workflow_service.create_workflow(
        org_id=org_id,
        name=request.name,
        definition={
            "nodes": request.nodes,
            "edges": request.edges,
            "settings": request.settings,
            "variables": request.variables,
        },
        slug=request.slug,
        description=request.description,
        embed_settings=request.embedSettings,
    )
    return {"success": True, "workflow": workflow_service.to_dict(workflow)}


@router.get("")
async def list_workflows(
    status: Optional[str] = None,
    auth: AuthContext = Depends(get_auth_context),
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    workflows = await workflow_service.list_workflows(require_org(auth), status=status)
    return {
        "success": True,
        "workflows": [workflow_service.to_dict(w, include_graph=False) for w in workflows],
    }


@router.post("/process")
async def process_jobs(
    count: int = Query(default=1),
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(lambda: container.settings()),
    worker: WorkflowWorker = Depends(lambda: container.worker())
):
    """Claim and run up to ``count`` due jobs (1-10). Driven by an external cron."""
    if settings.cron_secret:
        expected = f"Bearer {settings.cron_secret}"
        if not authorization or not hmac.compare_digest(authorization, expected):
            logger.warning("Process endpoint rejected, bad cron secret")
            return error_response(EngineError("Unauthorized", code="UNAUTHORIZED", status_code=401))

    return await worker.process_batch(count)


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    auth: AuthContext = Depends(get_auth_context),
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    workflow = await workflow_service.get_workflow(workflow_id, require_org(auth))
    return {"success": True, "workflow": workflow_service.to_dict(workflow)}


@router.put("/{workflow_id}")
async def update_workflow(
    workflow_id: str,
    changes: Dict[str, Any],
    auth: AuthContext = Depends(get_auth_context),
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Update the draft graph or metadata; the active version is untouched until republished."""
    workflow = await workflow_service.update_workflow(workflow_id, require_org(auth), changes)
    return {"success": True, "workflow": workflow_service.to_dict(workflow)}


@router.post("/{workflow_id}/publish")
async def publish_workflow(
    workflow_id: str,
    auth: AuthContext = Depends(get_auth_context),
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    workflow = await workflow_service.publish(workflow_id, require_org(auth))
    return {"success": True, "workflow": workflow_service.to_dict(workflow, include_graph=False)}


@router.post("/{workflow_id}/status")
async def set_workflow_status(
    workflow_id: str,
    request: WorkflowStatusRequest,
    auth: AuthContext = Depends(get_auth_context),
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    workflow = await workflow_service.set_status(workflow_id, request.status, require_org(auth))
    return {"success": True, "workflow": workflow_service.to_dict(workflow, include_graph=False)}


@router.post("/{workflow_id}/execute")
async def execute_workflow(
    workflow_id: str,
    request: Optional[ManualExecuteRequest] = None,
    auth: AuthContext = Depends(get_auth_context),
    dispatcher: TriggerDispatcher = Depends(lambda: container.dispatcher())
):
    """Queue a manual run for the caller's organization."""
    request = request or ManualExecuteRequest()
    queued = await dispatcher.dispatch("manual", workflow_id, request.payload, auth)
    return {"success": True, **queued}
