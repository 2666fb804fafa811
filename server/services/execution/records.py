"""Execution Record Manager.

Owns the ``executions`` and ``execution_logs`` tables. Progress writes are
compare-and-set on ``revision`` so concurrent writers never lose each
other's list appends; terminal records are frozen.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from sqlalchemy import delete, update
from sqlmodel import select

from core.logging import get_logger
from models.database import Execution, ExecutionLog, iso, utc_now
from .errors import ExecutionNotFoundError
from .models import ExecutionStatus, LogLevel, TERMINAL_EXECUTION_STATUSES

if TYPE_CHECKING:
    from core.database import Database

logger = get_logger(__name__)

# Compare-and-set attempts before a progress write gives up
MAX_UPDATE_ATTEMPTS = 10

# List fields that accept append-without-duplicates patches
APPENDABLE_FIELDS = frozenset(["completed_nodes", "failed_nodes", "skipped_nodes"])

# Fields a progress patch may set directly
PATCHABLE_FIELDS = frozenset([
    "status", "started_at", "completed_at", "current_node_id", "result", "metrics",
    "context", "resume_at", "paused_node_id",
]) | APPENDABLE_FIELDS

# Fields shown on the public status endpoint
PUBLIC_FIELDS = (
    "executionId", "workflowId", "status", "startedAt", "completedAt", "currentNodeId",
    "completedNodes", "failedNodes", "result", "metrics",
)


class ExecutionRecordManager:
    """Creates executions, appends logs and applies progress patches."""

    def __init__(self, database: "Database"):
        self.database = database

    async def create_execution(self, workflow_id: str, org_id: str, version: int,
                               trigger: Dict[str, Any],
                               variables: Optional[Dict[str, Any]] = None,
                               execution_id: Optional[str] = None) -> Execution:
        """Insert a pending execution record."""
        now = utc_now()
        execution = Execution(
            id=execution_id or uuid.uuid4().hex,
            workflow_id=workflow_id,
            org_id=org_id,
            version=version,
            status=ExecutionStatus.PENDING.value,
            trigger=trigger,
            context={"variables": variables or {}, "nodeOutputs": {}, "takenEdges": [], "errors": []},
            metrics={},
            created_at=now,
            updated_at=now,
        )
        async with self.database.get_session() as session:
            session.add(execution)
            await session.commit()
            await session.refresh(execution)

        logger.info("Execution created", execution_id=execution.id, workflow_id=workflow_id,
                    trigger_type=trigger.get("type"))
        return execution

    async def delete_execution(self, execution_id: str) -> None:
        """Remove a just-created execution whose job could not be enqueued."""
        async with self.database.get_session() as session:
            await session.execute(delete(ExecutionLog).where(ExecutionLog.execution_id == execution_id))
            await session.execute(delete(Execution).where(Execution.id == execution_id))
            await session.commit()

    async def get_execution(self, execution_id: str) -> Optional[Execution]:
        async with self.database.get_session() as session:
            return await session.get(Execution, execution_id)

    async def require_execution(self, execution_id: str) -> Execution:
        execution = await self.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution {execution_id} not found")
        return execution

    # =========================================================================
    # Logs
    # =========================================================================

    async def append_log(self, execution_id: str, event: str, message: str = "",
                         level: str = LogLevel.INFO.value, node_id: Optional[str] = None,
                         data: Optional[Dict[str, Any]] = None) -> ExecutionLog:
        """Append one log entry; the row id gives the total arrival order."""
        entry = ExecutionLog(
            execution_id=execution_id,
            node_id=node_id,
            timestamp=utc_now(),
            level=level,
            event=event,
            message=(message or "")[:2000],
            data=data,
        )
        async with self.database.get_session() as session:
            session.add(entry)
            await session.commit()
            await session.refresh(entry)
        return entry

    async def get_logs(self, execution_id: str, limit: Optional[int] = None) -> List[ExecutionLog]:
        async with self.database.get_session() as session:
            stmt = select(ExecutionLog).where(
                ExecutionLog.execution_id == execution_id
            ).order_by(ExecutionLog.id)
            if limit:
                stmt = stmt.limit(limit)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def purge_logs(self, older_than_days: int) -> int:
        cutoff = utc_now() - timedelta(days=older_than_days)
        async with self.database.get_session() as session:
            result = await session.execute(delete(ExecutionLog).where(ExecutionLog.timestamp < cutoff))
            await session.commit()
        if result.rowcount:
            logger.info("Purged execution logs", count=result.rowcount, older_than_days=older_than_days)
        return result.rowcount or 0

    # =========================================================================
    # Progress
    # =========================================================================

    async def update_progress(self, execution_id: str, patch: Optional[Dict[str, Any]] = None,
                              append: Optional[Dict[str, List[str]]] = None) -> Execution:
        """Merge a patch into the record with compare-and-set on ``revision``.

        ``append`` adds ids to list fields without duplicates. On a lost race
        the record is re-read and the patch re-applied to the fresh copy.
        Terminal records are returned unchanged.
        """
        patch = patch or {}
        append = append or {}
        unknown = (set(patch) - PATCHABLE_FIELDS) | (set(append) - APPENDABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown execution fields: {sorted(unknown)}")

        for attempt in range(MAX_UPDATE_ATTEMPTS):
            current = await self.require_execution(execution_id)
            if current.status in TERMINAL_EXECUTION_STATUSES:
                logger.warning("Ignoring update to terminal execution",
                               execution_id=execution_id, status=current.status)
                return current

            values: Dict[str, Any] = dict(patch)
            for field_name, items in append.items():
                merged = list(getattr(current, field_name) or [])
                for item in items:
                    if item not in merged:
                        merged.append(item)
                values[field_name] = merged
            values["revision"] = current.revision + 1
            values["updated_at"] = utc_now()

            async with self.database.get_session() as session:
                result = await session.execute(
                    update(Execution)
                    .where(Execution.id == execution_id, Execution.revision == current.revision)
                    .values(**values)
                )
                await session.commit()

            if result.rowcount == 1:
                for key, value in values.items():
                    setattr(current, key, value)
                return current

            logger.debug("Execution update conflict, retrying",
                         execution_id=execution_id, attempt=attempt + 1)

        raise RuntimeError(f"Execution {execution_id} update kept conflicting")

    async def mark_running(self, execution_id: str, started_at: Optional[datetime] = None) -> Execution:
        patch: Dict[str, Any] = {
            "status": ExecutionStatus.RUNNING.value,
            "resume_at": None,
            "paused_node_id": None,
        }
        if started_at is not None:
            patch["started_at"] = started_at
        return await self.update_progress(execution_id, patch)

    async def mark_paused(self, execution_id: str, node_id: str, resume_at: datetime,
                          context: Dict[str, Any]) -> Execution:
        return await self.update_progress(execution_id, {
            "status": ExecutionStatus.PAUSED.value,
            "resume_at": resume_at,
            "paused_node_id": node_id,
            "current_node_id": node_id,
            "context": context,
        })

    async def finalize(self, execution_id: str, success: bool, output: Any = None,
                       error: Optional[Dict[str, Any]] = None,
                       metrics: Optional[Dict[str, Any]] = None,
                       context: Optional[Dict[str, Any]] = None,
                       status: Optional[ExecutionStatus] = None) -> Execution:
        """Move the record to its terminal state exactly once."""
        status = status or (ExecutionStatus.COMPLETED if success else ExecutionStatus.FAILED)
        result: Dict[str, Any] = {"success": success, "output": output}
        if error:
            result["error"] = error
        patch: Dict[str, Any] = {
            "status": status.value,
            "completed_at": utc_now(),
            "current_node_id": None,
            "resume_at": None,
            "result": result,
        }
        if metrics is not None:
            patch["metrics"] = metrics
        if context is not None:
            patch["context"] = context

        execution = await self.update_progress(execution_id, patch)
        logger.info("Execution finalized", execution_id=execution_id, status=execution.status)
        return execution

    async def cancel(self, execution_id: str, reason: str = "Cancelled") -> Execution:
        """Cancel a non-terminal execution; the walker notices between steps."""
        execution = await self.require_execution(execution_id)
        if execution.status in TERMINAL_EXECUTION_STATUSES:
            return execution

        execution = await self.finalize(
            execution_id,
            success=False,
            error={"code": "CANCELLED", "message": reason},
            status=ExecutionStatus.CANCELLED,
        )
        await self.append_log(execution_id, "cancelled", reason, level=LogLevel.WARN.value)
        return execution

    async def is_cancelled(self, execution_id: str) -> bool:
        async with self.database.get_session() as session:
            result = await session.execute(select(Execution.status).where(Execution.id == execution_id))
            status = result.scalar_one_or_none()
        return status == ExecutionStatus.CANCELLED.value

    async def purge_executions(self, older_than_days: int) -> int:
        """Delete terminal executions and their logs past the retention window."""
        cutoff = utc_now() - timedelta(days=older_than_days)
        async with self.database.get_session() as session:
            result = await session.execute(
                select(Execution.id).where(
                    Execution.status.in_(tuple(TERMINAL_EXECUTION_STATUSES)),
                    Execution.completed_at < cutoff,
                )
            )
            ids = list(result.scalars().all())
            if ids:
                await session.execute(delete(ExecutionLog).where(ExecutionLog.execution_id.in_(ids)))
                await session.execute(delete(Execution).where(Execution.id.in_(ids)))
                await session.commit()
        if ids:
            logger.info("Purged executions", count=len(ids), older_than_days=older_than_days)
        return len(ids)

    # =========================================================================
    # Views
    # =========================================================================

    @staticmethod
    def to_dict(execution: Execution) -> Dict[str, Any]:
        """Full record for internal callers."""
        return {
            "executionId": execution.id,
            "workflowId": execution.workflow_id,
            "orgId": execution.org_id,
            "version": execution.version,
            "status": execution.status,
            "startedAt": iso(execution.started_at),
            "completedAt": iso(execution.completed_at),
            "currentNodeId": execution.current_node_id,
            "completedNodes": list(execution.completed_nodes or []),
            "failedNodes": list(execution.failed_nodes or []),
            "skippedNodes": list(execution.skipped_nodes or []),
            "result": execution.result,
            "metrics": execution.metrics or {},
            "trigger": execution.trigger or {},
            "context": execution.context or {},
            "resumeAt": iso(execution.resume_at),
            "pausedNodeId": execution.paused_node_id,
            "createdAt": iso(execution.created_at),
            "updatedAt": iso(execution.updated_at),
        }

    @staticmethod
    def log_to_dict(entry: ExecutionLog) -> Dict[str, Any]:
        return {
            "sequence": entry.id,
            "nodeId": entry.node_id,
            "timestamp": iso(entry.timestamp),
            "level": entry.level,
            "event": entry.event,
            "message": entry.message,
            "data": entry.data,
        }

    def public_view(self, execution: Execution,
                    logs: Optional[List[ExecutionLog]] = None) -> Dict[str, Any]:
        """Sanitized status for unauthenticated pollers.

        Trigger payload and source, context and claim details never leave
        the service through this view.
        """
        full = self.to_dict(execution)
        view = {key: full[key] for key in PUBLIC_FIELDS}
        if logs is not None:
            view["logs"] = [
                {key: value for key, value in self.log_to_dict(entry).items() if key != "sequence"}
                for entry in logs
            ]
        return view
