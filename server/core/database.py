"""Async database service with SQLModel and SQLAlchemy 2.0."""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Dict, Any, List, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel, select

from core.config import Settings
from core.logging import get_logger
from models.database import (
    Workflow, WorkflowVersion, Job, Execution, ExecutionLog, UsageCounter, StoreDocument, utc_now,
)

logger = get_logger(__name__)

# Tables owned by this service; imported so metadata.create_all sees them.
TABLES = (Workflow, WorkflowVersion, Job, Execution, ExecutionLog, UsageCounter, StoreDocument)


class Database:
    """Async database service with SQLModel.

    Owns the engine lifecycle and the workflow/document tables. Jobs and
    executions are written by JobQueue and ExecutionRecordManager through
    ``get_session``.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            logging.getLogger("aiosqlite").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

            engine_kwargs: Dict[str, Any] = {"echo": self.settings.database_echo, "future": True}
            if self.settings.is_sqlite:
                engine_kwargs["connect_args"] = {"timeout": 30}
            if ":memory:" not in self.settings.database_url:
                engine_kwargs["pool_size"] = self.settings.database_pool_size
                engine_kwargs["max_overflow"] = self.settings.database_max_overflow

            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)

            if self.settings.is_sqlite:
                @event.listens_for(self.engine.sync_engine, "connect")
                def _sqlite_pragmas(dbapi_connection, connection_record):
                    cursor = dbapi_connection.cursor()
                    cursor.execute("PRAGMA journal_mode=WAL")
                    cursor.execute("PRAGMA busy_timeout=30000")
                    cursor.close()

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def ping(self) -> bool:
        try:
            async with self.get_session() as session:
                await session.execute(select(1))
            return True
        except Exception as e:
            logger.warning("Database ping failed", error=str(e))
            return False

    # ============================================================================
    # Workflows
    # ============================================================================

    async def create_workflow(self, workflow: Workflow) -> Workflow:
        """Insert a new workflow draft."""
        async with self.get_session() as session:
            session.add(workflow)
            await session.commit()
            await session.refresh(workflow)
            return workflow

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        """Get workflow by ID."""
        async with self.get_session() as session:
            stmt = select(Workflow).where(Workflow.id == workflow_id)
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def get_workflow_by_slug(self, slug: str) -> Optional[Workflow]:
        """Get workflow by public slug."""
        async with self.get_session() as session:
            stmt = select(Workflow).where(Workflow.slug == slug)
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def find_workflow(self, ref: str) -> Optional[Workflow]:
        """Resolve a workflow reference that may be an id or a slug."""
        workflow = await self.get_workflow(ref)
        if workflow is None:
            workflow = await self.get_workflow_by_slug(ref)
        return workflow

    async def list_workflows(self, org_id: Optional[str] = None,
                             status: Optional[str] = None) -> List[Workflow]:
        async with self.get_session() as session:
            stmt = select(Workflow)
            if org_id:
                stmt = stmt.where(Workflow.org_id == org_id)
            if status:
                stmt = stmt.where(Workflow.status == status)
            result = await session.execute(stmt.order_by(Workflow.created_at))
            return list(result.scalars().all())

    async def update_workflow(self, workflow_id: str, **fields) -> Optional[Workflow]:
        """Apply field updates to a workflow row."""
        async with self.get_session() as session:
            stmt = select(Workflow).where(Workflow.id == workflow_id)
            result = await session.execute(stmt)
            workflow = result.scalar_one_or_none()
            if workflow is None:
                return None

            for key, value in fields.items():
                setattr(workflow, key, value)
            workflow.updated_at = utc_now()

            await session.commit()
            await session.refresh(workflow)
            return workflow

    async def save_workflow_version(self, workflow_id: str, version: int,
                                    definition: Dict[str, Any]) -> None:
        async with self.get_session() as session:
            session.add(WorkflowVersion(workflow_id=workflow_id, version=version, definition=definition))
            await session.commit()

    async def get_workflow_version(self, workflow_id: str, version: int) -> Optional[Dict[str, Any]]:
        """Get the immutable definition snapshot for one published version."""
        async with self.get_session() as session:
            stmt = select(WorkflowVersion).where(
                WorkflowVersion.workflow_id == workflow_id,
                WorkflowVersion.version == version,
            )
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
            return row.definition if row else None

    async def record_execution_stats(self, workflow_id: str, success: bool,
                                     duration_ms: Optional[float]) -> None:
        """Fold one finished execution into the workflow's running stats."""
        try:
            async with self.get_session() as session:
                stmt = select(Workflow).where(Workflow.id == workflow_id)
                result = await session.execute(stmt)
                workflow = result.scalar_one_or_none()
                if workflow is None:
                    return

                total = workflow.total_executions + 1
                if duration_ms is not None:
                    workflow.avg_duration_ms = (
                        workflow.avg_duration_ms * workflow.total_executions + duration_ms
                    ) / total
                workflow.total_executions = total
                if success:
                    workflow.successful_executions += 1
                else:
                    workflow.failed_executions += 1
                workflow.last_executed_at = utc_now()
                await session.commit()

        except Exception as e:
            logger.error("Failed to record workflow stats", workflow_id=workflow_id, error=str(e))

    # ============================================================================
    # Store documents
    # ============================================================================

    async def find_documents(self, org_id: str, collection: str) -> List[StoreDocument]:
        async with self.get_session() as session:
            stmt = select(StoreDocument).where(
                StoreDocument.org_id == org_id,
                StoreDocument.collection == collection,
            ).order_by(StoreDocument.created_at)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def insert_document(self, org_id: str, collection: str, data: Dict[str, Any]) -> StoreDocument:
        async with self.get_session() as session:
            document = StoreDocument(
                id=uuid.uuid4().hex,
                org_id=org_id,
                collection=collection,
                data=data,
            )
            session.add(document)
            await session.commit()
            await session.refresh(document)
            return document

    async def replace_documents(self, documents: List[StoreDocument]) -> int:
        """Persist new ``data`` for already loaded documents."""
        if not documents:
            return 0
        async with self.get_session() as session:
            for document in documents:
                stored = await session.get(StoreDocument, document.id)
                if stored is None:
                    continue
                stored.data = dict(document.data)
                stored.updated_at = utc_now()
            await session.commit()
        return len(documents)

    async def delete_documents(self, document_ids: List[str]) -> int:
        if not document_ids:
            return 0
        async with self.get_session() as session:
            deleted = 0
            for document_id in document_ids:
                stored = await session.get(StoreDocument, document_id)
                if stored is not None:
                    await session.delete(stored)
                    deleted += 1
            await session.commit()
            return deleted
