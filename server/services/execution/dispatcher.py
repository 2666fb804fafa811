"""Trigger Dispatcher - turns a trigger event into a queued execution.

Every admission check runs before anything is written, so a rejected
trigger leaves no Job, no Execution and no usage increment behind.
"""

import hashlib
import hmac
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, TYPE_CHECKING

from constants import FORM_TRIGGER, TRIGGER_KIND_NODE_TYPES, TRIGGER_KINDS
from core.logging import get_logger
from models.database import Job, Workflow, utc_now
from models.workflow import EmbedSettings, WorkflowDefinition
from .errors import (
    ExecutionNotFoundError, ForbiddenError, InvalidTokenError, JobStateError, LimitExceededError,
    QueueFullError, UnsupportedTriggerError, WorkflowNotActiveError, WorkflowNotFoundError,
)
from .models import TERMINAL_EXECUTION_STATUSES, JobStatus, RetryPolicy

if TYPE_CHECKING:
    from core.database import Database
    from services.usage import UsageMeter
    from .queue import JobQueue
    from .records import ExecutionRecordManager

logger = get_logger(__name__)

API_TRIGGER_KIND = "api"


def hash_token(token: str) -> str:
    """One-way hash stored as ``embedSettings.executionToken``."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def token_matches(supplied: Optional[str], stored_hash: str) -> bool:
    if not supplied:
        return False
    return hmac.compare_digest(hash_token(supplied), stored_hash.lower())


@dataclass
class AuthContext:
    """Caller identity resolved by the (external) authentication layer."""
    org_id: Optional[str] = None
    user_id: Optional[str] = None
    is_internal: bool = False
    actor: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def internal(cls, actor: str, ip: Optional[str] = None,
                 user_agent: Optional[str] = None) -> "AuthContext":
        return cls(is_internal=True, actor=actor, ip=ip, user_agent=user_agent)

    def source(self) -> Dict[str, Any]:
        return {
            "ip": self.ip,
            "userAgent": self.user_agent,
            "actor": self.actor or self.user_id or ("anonymous" if not self.is_internal else "system"),
        }


class Authorizer(Protocol):
    """Capability deciding whether a caller may fire an internal trigger."""

    def can_trigger(self, auth: AuthContext, workflow: Workflow) -> bool:
        ...


class OrgAuthorizer:
    """Internal actors may trigger anything; users only their own org's workflows."""

    def can_trigger(self, auth: AuthContext, workflow: Workflow) -> bool:
        if auth.is_internal:
            return True
        return bool(auth.org_id) and auth.org_id == workflow.org_id


class TriggerDispatcher:
    def __init__(self, database: "Database", job_queue: "JobQueue",
                 record_manager: "ExecutionRecordManager", usage_meter: "UsageMeter",
                 authorizer: Authorizer):
        self.database = database
        self.job_queue = job_queue
        self.records = record_manager
        self.usage_meter = usage_meter
        self.authorizer = authorizer

    async def dispatch(self, trigger_kind: str, workflow_ref: str, payload: Optional[Dict[str, Any]],
                       auth: AuthContext, token: Optional[str] = None) -> Dict[str, Any]:
        """Admit a trigger and enqueue its execution.

        Returns ``{"executionId", "jobId", "status": "queued"}``; raises an
        admission error (an ``EngineError``) otherwise.
        """
        if trigger_kind not in TRIGGER_KINDS:
            raise UnsupportedTriggerError(f"Unsupported trigger type: {trigger_kind}")

        workflow = await self.database.find_workflow(workflow_ref)
        if workflow is None:
            raise WorkflowNotFoundError("Workflow not found")

        if trigger_kind == API_TRIGGER_KIND:
            self._check_public_access(workflow, token)
        elif not self.authorizer.can_trigger(auth, workflow):
            logger.warning("Trigger refused", workflow_id=workflow.id, org_id=auth.org_id,
                           trigger_type=trigger_kind)
            raise ForbiddenError("Not allowed to execute this workflow")

        if workflow.status != "active":
            raise WorkflowNotActiveError(f"Workflow is {workflow.status}, not active")

        definition = await self._active_definition(workflow)
        self._check_trigger_node(definition, trigger_kind)

        await self.job_queue.ensure_capacity(workflow.org_id)

        metered = trigger_kind == API_TRIGGER_KIND
        if metered:
            usage = await self.usage_meter.check_and_increment(workflow.org_id, workflow.id)
            if not usage.allowed:
                raise LimitExceededError(
                    "Execution limit reached for this billing period",
                    current=usage.current, limit=usage.limit, remaining=usage.remaining,
                )

        trigger = {
            "type": trigger_kind,
            "payload": payload or {},
            "source": auth.source(),
            "receivedAt": utc_now().isoformat(),
        }
        return await self._enqueue(workflow, definition, trigger, metered)

    def _check_public_access(self, workflow: Workflow, token: Optional[str]) -> None:
        embed = EmbedSettings.model_validate(workflow.embed_settings or {})
        if not embed.allow_public_execution:
            # Same answer as a missing workflow
            raise WorkflowNotFoundError("Workflow not found")
        if embed.execution_token and not token_matches(token, embed.execution_token):
            logger.warning("Public execution rejected, bad token", workflow_id=workflow.id)
            raise InvalidTokenError("Invalid or missing execution token")

    async def _active_definition(self, workflow: Workflow) -> WorkflowDefinition:
        document = await self.database.get_workflow_version(workflow.id, workflow.version)
        if document is None:
            raise WorkflowNotActiveError("Workflow has no published version")
        return WorkflowDefinition.model_validate(document)

    def _check_trigger_node(self, definition: WorkflowDefinition, trigger_kind: str) -> None:
        # Manual and api runs fall back to any trigger node
        if trigger_kind in ("manual", API_TRIGGER_KIND):
            return
        wanted = TRIGGER_KIND_NODE_TYPES[trigger_kind]
        if not any(node.type in wanted for node in definition.trigger_nodes()):
            raise UnsupportedTriggerError(f"Workflow has no {trigger_kind} trigger")

    async def retry_job(self, job: Job) -> Job:
        """Run a job again.

        While its execution is still open the job itself goes back in the
        queue. Once the execution has finished, a failed job is re-run as a
        fresh execution of the same trigger and published version; the old
        execution and job keep their history.
        """
        execution = await self.records.get_execution(job.execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution {job.execution_id} not found")
        if execution.status not in TERMINAL_EXECUTION_STATUSES:
            return await self.job_queue.retry(job.id)
        if job.status != JobStatus.FAILED.value:
            raise JobStateError(f"Job {job.id} is {job.status} and its execution already finished")

        workflow = await self.database.get_workflow(job.workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError("Workflow not found")
        if workflow.status != "active":
            raise WorkflowNotActiveError(f"Workflow is {workflow.status}, not active")
        document = await self.database.get_workflow_version(workflow.id, execution.version)
        if document is None:
            raise WorkflowNotActiveError(f"Workflow version {execution.version} not found")
        definition = WorkflowDefinition.model_validate(document)

        await self.job_queue.ensure_capacity(workflow.org_id)
        trigger = {
            **(execution.trigger or {}),
            "retryOf": execution.id,
            "receivedAt": utc_now().isoformat(),
        }
        queued = await self._enqueue(workflow, definition, trigger, metered=False,
                                     version=execution.version)
        logger.info("Job retried as new execution", job_id=job.id, execution_id=execution.id,
                    new_execution_id=queued["executionId"])
        return await self.job_queue.get_job(queued["jobId"])

    async def _enqueue(self, workflow: Workflow, definition: WorkflowDefinition,
                       trigger: Dict[str, Any], metered: bool,
                       version: Optional[int] = None) -> Dict[str, Any]:
        execution = await self.records.create_execution(
            workflow_id=workflow.id,
            org_id=workflow.org_id,
            version=workflow.version if version is None else version,
            trigger=trigger,
        )
        policy = RetryPolicy.from_settings(definition.settings.retry_policy)
        try:
            job_id = await self.job_queue.enqueue(
                workflow.id, execution.id, workflow.org_id,
                trigger=trigger, retry_policy=policy,
            )
        except QueueFullError:
            # Lost a race for the last queue slot
            await self.records.delete_execution(execution.id)
            if metered:
                await self.usage_meter.release(workflow.org_id)
            raise

        logger.info("Execution queued", execution_id=execution.id, job_id=job_id,
                    workflow_id=workflow.id, trigger_type=trigger["type"])
        return {"executionId": execution.id, "jobId": job_id, "status": "queued"}

    async def dispatch_form_submission(self, org_id: str, form_id: str,
                                       submission: Dict[str, Any],
                                       auth: Optional[AuthContext] = None) -> List[Dict[str, Any]]:
        """Fan a form submission out to every active workflow watching the form.

        A workflow that cannot admit the run is reported in the result rather
        than failing the whole submission.
        """
        auth = auth or AuthContext.internal("form_submission")
        results: List[Dict[str, Any]] = []
        for workflow in await self.database.list_workflows(org_id=org_id, status="active"):
            document = await self.database.get_workflow_version(workflow.id, workflow.version)
            if document is None:
                continue
            definition = WorkflowDefinition.model_validate(document)
            watches = any(
                node.type == FORM_TRIGGER and node.config.get("formId") == form_id
                for node in definition.trigger_nodes()
            )
            if not watches:
                continue

            try:
                queued = await self.dispatch("form_submission", workflow.id,
                                             {"formId": form_id, **submission}, auth)
            except (QueueFullError, ForbiddenError, WorkflowNotActiveError) as e:
                logger.warning("Form submission not dispatched", workflow_id=workflow.id,
                               form_id=form_id, code=e.code)
                results.append({"workflowId": workflow.id, "success": False, "code": e.code,
                                "error": e.message})
                continue
            results.append({"workflowId": workflow.id, "success": True, **queued})

        logger.info("Form submission dispatched", form_id=form_id, org_id=org_id, workflows=len(results))
        return results
