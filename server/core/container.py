"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from services.execution.dispatcher import OrgAuthorizer, TriggerDispatcher
from services.execution.queue import JobQueue
from services.execution.records import ExecutionRecordManager
from services.execution.recovery import RecoverySweeper
from services.execution.walker import GraphWalker
from services.execution.worker import WorkflowWorker
from services.node_executor import NodeExecutor
from services.scheduler import ScheduleService
from services.usage import DatabaseUsageMeter
from services.workflow import WorkflowService


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Database
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Job queue, constructed once and shared by reference
    job_queue = providers.Singleton(
        JobQueue,
        database=database,
        max_pending_per_org=settings.provided.queue_max_pending_per_org,
        default_max_attempts=settings.provided.job_default_max_attempts,
        visibility_timeout=settings.provided.visibility_timeout,
    )

    record_manager = providers.Singleton(
        ExecutionRecordManager,
        database=database
    )

    # Capabilities consulted by the dispatcher
    usage_meter = providers.Singleton(
        DatabaseUsageMeter,
        database=database,
        default_limit=settings.provided.default_execution_limit,
    )

    authorizer = providers.Singleton(
        OrgAuthorizer
    )

    # Execution engine
    node_registry = providers.Singleton(
        NodeExecutor,
        database=database,
        settings=settings
    )

    graph_walker = providers.Singleton(
        GraphWalker,
        database=database,
        record_manager=record_manager,
        registry=node_registry,
        settings=settings
    )

    dispatcher = providers.Singleton(
        TriggerDispatcher,
        database=database,
        job_queue=job_queue,
        record_manager=record_manager,
        usage_meter=usage_meter,
        authorizer=authorizer
    )

    worker = providers.Singleton(
        WorkflowWorker,
        job_queue=job_queue,
        walker=graph_walker,
        record_manager=record_manager,
        settings=settings
    )

    sweeper = providers.Singleton(
        RecoverySweeper,
        job_queue=job_queue,
        record_manager=record_manager,
        visibility_timeout=settings.provided.visibility_timeout,
        sweep_interval=settings.provided.sweep_interval,
        job_retention_days=settings.provided.job_retention_days,
        log_retention_days=settings.provided.log_retention_days,
        execution_retention_days=settings.provided.execution_retention_days,
    )

    # Workflow lifecycle
    schedule_service = providers.Singleton(
        ScheduleService,
        database=database,
        dispatcher=dispatcher
    )

    workflow_service = providers.Singleton(
        WorkflowService,
        database=database,
        registry=node_registry,
        schedule_service=schedule_service
    )


# Global container instance
container = Container()
