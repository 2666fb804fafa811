"""Workflow Service - draft editing, publishing and lifecycle.

A workflow row holds the editable draft graph. Publishing validates the
draft, stores it as an immutable numbered version and makes that version the
one new executions run against. Executions always reference the version they
were created for, so editing or republishing never changes a run in flight.
"""

import re
import uuid
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from constants import WORKFLOW_STATUSES
from core.logging import get_logger
from models.database import Workflow, iso
from models.workflow import EmbedSettings, WorkflowDefinition
from services.execution.dispatcher import hash_token
from services.execution.errors import WorkflowNotFoundError, WorkflowValidationError
from services.execution.validation import parse_definition, validate_definition

if TYPE_CHECKING:
    from core.database import Database
    from services.node_executor import NodeExecutor
    from services.scheduler import ScheduleService

logger = get_logger(__name__)

DRAFT_FIELDS = ("nodes", "edges", "settings", "variables")


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (value or "").lower()).strip("-")
    return slug[:60] or "workflow"


class WorkflowService:
    """Workflow lifecycle: draft -> active <-> paused -> archived."""

    def __init__(self, database: "Database", registry: "NodeExecutor",
                 schedule_service: Optional["ScheduleService"] = None):
        self.database = database
        self.registry = registry
        self.schedule_service = schedule_service

    # =========================================================================
    # Drafts
    # =========================================================================

    async def _unique_slug(self, base: str) -> str:
        slug = slugify(base)
        if await self.database.get_workflow_by_slug(slug) is None:
            return slug
        return f"{slug}-{uuid.uuid4().hex[:6]}"

    def _embed_settings(self, current: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Merge embed settings; a plaintext ``executionToken`` is stored hashed."""
        merged = EmbedSettings.model_validate(current or {}).model_dump(by_alias=True)
        if "allowPublicExecution" in update:
            merged["allowPublicExecution"] = bool(update["allowPublicExecution"])
        if "executionToken" in update:
            token = update["executionToken"]
            merged["executionToken"] = hash_token(token) if token else None
        return merged

    async def create_workflow(self, org_id: str, name: str, definition: Optional[Dict[str, Any]] = None,
                              slug: Optional[str] = None, description: Optional[str] = None,
                              embed_settings: Optional[Dict[str, Any]] = None) -> Workflow:
        """Create a draft. The graph must be structurally sound but need not be publishable."""
        parsed = parse_definition(definition or {})
        document = parsed.to_document()
        workflow = Workflow(
            id=uuid.uuid4().hex,
            org_id=org_id,
            name=name,
            slug=await self._unique_slug(slug or name),
            description=description,
            status="draft",
            version=0,
            nodes=document["nodes"],
            edges=document["edges"],
            settings=document["settings"],
            variables=document["variables"],
            embed_settings=self._embed_settings({}, embed_settings or {}),
        )
        workflow = await self.database.create_workflow(workflow)
        logger.info("Workflow created", workflow_id=workflow.id, org_id=org_id, slug=workflow.slug)
        return workflow

    async def get_workflow(self, workflow_ref: str, org_id: Optional[str] = None) -> Workflow:
        """Look up by id or slug; another org's workflow looks missing."""
        workflow = await self.database.find_workflow(workflow_ref)
        if workflow is None or (org_id is not None and workflow.org_id != org_id):
            raise WorkflowNotFoundError("Workflow not found")
        return workflow

    async def update_workflow(self, workflow_id: str, org_id: Optional[str],
                              changes: Dict[str, Any]) -> Workflow:
        """Update the draft graph and metadata. Active versions are unaffected until republished."""
        workflow = await self.get_workflow(workflow_id, org_id)
        fields: Dict[str, Any] = {}

        if any(key in changes for key in DRAFT_FIELDS):
            draft = self.draft_definition(workflow)
            for key in DRAFT_FIELDS:
                if key in changes:
                    draft[key] = changes[key]
            document = parse_definition(draft).to_document()
            fields.update({key: document[key] for key in DRAFT_FIELDS})

        for key in ("name", "description"):
            if key in changes:
                fields[key] = changes[key]
        if "slug" in changes and changes["slug"] and slugify(changes["slug"]) != workflow.slug:
            fields["slug"] = await self._unique_slug(changes["slug"])
        if "embedSettings" in changes:
            fields["embed_settings"] = self._embed_settings(workflow.embed_settings, changes["embedSettings"] or {})

        if not fields:
            return workflow
        workflow = await self.database.update_workflow(workflow.id, **fields)
        logger.info("Workflow updated", workflow_id=workflow.id, fields=sorted(fields))
        return workflow

    @staticmethod
    def draft_definition(workflow: Workflow) -> Dict[str, Any]:
        return {
            "nodes": list(workflow.nodes or []),
            "edges": list(workflow.edges or []),
            "settings": dict(workflow.settings or {}),
            "variables": dict(workflow.variables or {}),
        }

    # =========================================================================
    # Publishing and lifecycle
    # =========================================================================

    def validate(self, workflow: Workflow) -> WorkflowDefinition:
        """Run every publish check against the draft; raises WorkflowValidationError."""
        definition = parse_definition(self.draft_definition(workflow))
        problems = validate_definition(definition, self.registry)
        if problems:
            logger.warning("Workflow failed validation", workflow_id=workflow.id, problems=problems)
            raise WorkflowValidationError(problems)
        return definition

    async def publish(self, workflow_id: str, org_id: Optional[str] = None) -> Workflow:
        """Snapshot the draft as a new version and activate it."""
        workflow = await self.get_workflow(workflow_id, org_id)
        if workflow.status == "archived":
            raise WorkflowValidationError(["Archived workflows cannot be published"])

        definition = self.validate(workflow)
        version = workflow.version + 1
        await self.database.save_workflow_version(workflow.id, version, definition.to_document())
        workflow = await self.database.update_workflow(workflow.id, version=version, status="active")

        if self.schedule_service is not None:
            self.schedule_service.register_workflow(workflow.id, definition)

        logger.info("Workflow published", workflow_id=workflow.id, version=version)
        return workflow

    async def set_status(self, workflow_id: str, status: str, org_id: Optional[str] = None) -> Workflow:
        if status not in WORKFLOW_STATUSES:
            raise WorkflowValidationError([f"Unknown status: {status}"])

        workflow = await self.get_workflow(workflow_id, org_id)
        if status == "active" and workflow.version < 1:
            raise WorkflowValidationError(["Workflow has never been published"])
        if status == "draft" and workflow.version > 0:
            raise WorkflowValidationError(["A published workflow cannot return to draft"])

        workflow = await self.database.update_workflow(workflow.id, status=status)

        if self.schedule_service is not None:
            if status == "active":
                document = await self.database.get_workflow_version(workflow.id, workflow.version)
                if document is not None:
                    self.schedule_service.register_workflow(workflow.id, WorkflowDefinition.model_validate(document))
            else:
                self.schedule_service.unregister_workflow(workflow.id)

        logger.info("Workflow status changed", workflow_id=workflow.id, status=status)
        return workflow

    async def list_workflows(self, org_id: str, status: Optional[str] = None) -> List[Workflow]:
        return await self.database.list_workflows(org_id=org_id, status=status)

    # =========================================================================
    # Views
    # =========================================================================

    @staticmethod
    def to_dict(workflow: Workflow, include_graph: bool = True) -> Dict[str, Any]:
        embed = EmbedSettings.model_validate(workflow.embed_settings or {})
        data: Dict[str, Any] = {
            "id": workflow.id,
            "orgId": workflow.org_id,
            "name": workflow.name,
            "slug": workflow.slug,
            "description": workflow.description,
            "status": workflow.status,
            "version": workflow.version,
            "embedSettings": {
                "allowPublicExecution": embed.allow_public_execution,
                "hasExecutionToken": bool(embed.execution_token),
            },
            "stats": {
                "totalExecutions": workflow.total_executions,
                "successfulExecutions": workflow.successful_executions,
                "failedExecutions": workflow.failed_executions,
                "avgDurationMs": round(workflow.avg_duration_ms or 0.0, 2),
                "lastExecutedAt": iso(workflow.last_executed_at),
            },
            "createdAt": iso(workflow.created_at),
            "updatedAt": iso(workflow.updated_at),
        }
        if include_graph:
            data.update(WorkflowService.draft_definition(workflow))
        return data
