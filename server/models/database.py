"""SQLModel database models and tables."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import UniqueConstraint, func


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything is stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


class Workflow(SQLModel, table=True):
    """Workflow definitions (current draft plus lifecycle state)."""

    __tablename__ = "workflows"

    id: str = Field(primary_key=True, max_length=255)
    org_id: str = Field(index=True, max_length=255)
    name: str = Field(max_length=255)
    slug: str = Field(index=True, unique=True, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    status: str = Field(default="draft", index=True, max_length=20)
    version: int = Field(default=0)
    nodes: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    edges: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    settings: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    variables: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    embed_settings: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    total_executions: int = Field(default=0)
    successful_executions: int = Field(default=0)
    failed_executions: int = Field(default=0)
    avg_duration_ms: float = Field(default=0.0)
    last_executed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class WorkflowVersion(SQLModel, table=True):
    """Immutable snapshot of a published workflow graph."""

    __tablename__ = "workflow_versions"
    __table_args__ = (UniqueConstraint("workflow_id", "version"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    workflow_id: str = Field(index=True, max_length=255)
    version: int
    definition: Dict[str, Any] = Field(sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )


class Job(SQLModel, table=True):
    """Queue entry. Mutated only through the JobQueue service."""

    __tablename__ = "jobs"

    id: str = Field(primary_key=True, max_length=64)
    workflow_id: str = Field(index=True, max_length=255)
    execution_id: str = Field(index=True, unique=True, max_length=64)
    org_id: str = Field(index=True, max_length=255)
    status: str = Field(default="pending", index=True, max_length=20)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=4)
    run_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), index=True, nullable=False)
    )
    last_error: Optional[str] = Field(default=None, max_length=2000)
    trigger: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    retry_policy: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    claimed_by: Optional[str] = Field(default=None, max_length=255)
    claimed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class Execution(SQLModel, table=True):
    """User-visible run record. Written only by the ExecutionRecordManager."""

    __tablename__ = "executions"

    id: str = Field(primary_key=True, max_length=64)
    workflow_id: str = Field(index=True, max_length=255)
    org_id: str = Field(index=True, max_length=255)
    version: int = Field(default=0)
    status: str = Field(default="pending", index=True, max_length=20)
    started_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    current_node_id: Optional[str] = Field(default=None, max_length=255)
    completed_nodes: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    failed_nodes: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    skipped_nodes: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    result: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    metrics: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    trigger: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    context: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    resume_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    paused_node_id: Optional[str] = Field(default=None, max_length=255)
    revision: int = Field(default=0)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class ExecutionLog(SQLModel, table=True):
    """Append-only execution log. The autoincrement id is the arrival order."""

    __tablename__ = "execution_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    execution_id: str = Field(index=True, max_length=64)
    node_id: Optional[str] = Field(default=None, max_length=255)
    timestamp: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True)
    )
    level: str = Field(default="info", max_length=10)
    event: str = Field(max_length=50)
    message: str = Field(default="", max_length=2000)
    data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))


class UsageCounter(SQLModel, table=True):
    """Per-organization execution usage for one billing period (YYYY-MM)."""

    __tablename__ = "usage_counters"
    __table_args__ = (UniqueConstraint("org_id", "period"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    org_id: str = Field(index=True, max_length=255)
    period: str = Field(max_length=7)
    executions: int = Field(default=0)
    execution_limit: Optional[int] = Field(default=None)
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class StoreDocument(SQLModel, table=True):
    """Organization-scoped documents read and written by store nodes."""

    __tablename__ = "store_documents"

    id: str = Field(primary_key=True, max_length=64)
    org_id: str = Field(index=True, max_length=255)
    collection: str = Field(index=True, max_length=255)
    data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
