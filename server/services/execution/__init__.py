"""Workflow execution engine.

- queue.py: JobQueue with exactly-once claim and backoff
- records.py: ExecutionRecordManager (records, append-only logs)
- walker.py: GraphWalker
- dispatcher.py: TriggerDispatcher and admission checks
- worker.py: WorkflowWorker (batch and poll loop)
- recovery.py: RecoverySweeper (visibility timeout, retention)
- expressions.py / conditions.py: Expression Resolver
- validation.py: publish-time checks

Only leaf modules are re-exported here; import the walker, dispatcher and
worker from their modules.
"""

from .errors import EngineError
from .models import (
    ExecutionStatus,
    JobStatus,
    LogLevel,
    NodeError,
    NodeResult,
    RetryPolicy,
    WalkOutcome,
    WalkResult,
)
from .queue import JobQueue
from .records import ExecutionRecordManager

__all__ = [
    'EngineError',
    'ExecutionStatus',
    'JobStatus',
    'LogLevel',
    'NodeError',
    'NodeResult',
    'RetryPolicy',
    'WalkOutcome',
    'WalkResult',
    'JobQueue',
    'ExecutionRecordManager',
]
