"""Webhook endpoint router for incoming HTTP requests.

Each request to /webhook/{workflow_id} fires the workflow's webhook trigger
with the request as payload.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from core.container import container
from core.logging import get_logger
from services.execution.dispatcher import AuthContext, TriggerDispatcher
from routers.deps import client_ip

logger = get_logger(__name__)
router = APIRouter(prefix="/webhook", tags=["webhook"])


@router.api_route("/{workflow_id}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
async def handle_webhook(
    workflow_id: str,
    request: Request,
    dispatcher: TriggerDispatcher = Depends(lambda: container.dispatcher())
):
    """Handle incoming webhook requests and queue a run of the workflow."""
    body = await request.body()
    json_body = None
    content_type = request.headers.get("content-type", "")

    if "application/json" in content_type and body:
        try:
            json_body = await request.json()
        except ValueError:
            logger.warning("Webhook body is not valid JSON", workflow_id=workflow_id)

    webhook_data = {
        "method": request.method,
        "headers": dict(request.headers),
        "query": dict(request.query_params),
        "body": body.decode("utf-8", errors="replace") if body else "",
        "json": json_body,
    }

    logger.info("Webhook received", method=request.method, workflow_id=workflow_id)

    auth = AuthContext.internal("webhook", ip=client_ip(request),
                                user_agent=request.headers.get("user-agent"))
    queued = await dispatcher.dispatch("webhook", workflow_id, webhook_data, auth)

    return JSONResponse(
        content={
            "success": True,
            "status": "received",
            "executionId": queued["executionId"],
        },
        status_code=202
    )
