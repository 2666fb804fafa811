"""Form submission intake; fans each submission out to watching workflows."""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from core.container import container
from core.logging import get_logger
from services.execution.dispatcher import AuthContext, TriggerDispatcher
from routers.deps import get_auth_context, require_org

logger = get_logger(__name__)
router = APIRouter(prefix="/api/forms", tags=["forms"])


@router.post("/{form_id}/submissions")
async def submit_form(
    form_id: str,
    submission: Dict[str, Any],
    auth: AuthContext = Depends(get_auth_context),
    dispatcher: TriggerDispatcher = Depends(lambda: container.dispatcher())
):
    org_id = require_org(auth)
    results = await dispatcher.dispatch_form_submission(org_id, form_id, submission, auth)
    return {"success": True, "formId": form_id, "dispatched": results}
