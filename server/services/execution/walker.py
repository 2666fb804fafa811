"""Graph Walker - drives one execution of a workflow version.

One walk runs inside one claimed job attempt:

1. Load the execution and the definition snapshot it was created for.
2. Restore accumulated context (node outputs, taken edges, settled nodes).
3. Pick the active root: the trigger node matching the firing trigger kind.
4. Repeatedly schedule every ready node, bounded by the branch
   parallelism, and process completions one at a time with
   asyncio.wait(FIRST_COMPLETED).
5. Finish with an outcome the worker maps onto the job.

Inbound edge states decide readiness:

- pending: source not settled yet
- taken: source completed (or was passed through) and selected the edge
- not_taken: source settled without selecting the edge
- failed: source failed

A node with no pending inbound edge runs when at least one edge is taken,
is skipped when all are not taken, and inherits failure (skipped, never
invoked) when any is failed.
"""

import asyncio
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, TYPE_CHECKING

from pydantic import ValidationError

from constants import (
    BRANCHING_NODE_TYPES, CONDITIONAL, DEFAULT_BRANCH_HANDLE, MANUAL_TRIGGER,
    SWITCH, TRIGGER_KIND_NODE_TYPES,
)
from core.logging import get_logger
from models.database import Execution, Job, as_utc, utc_now
from models.workflow import Edge, Node, WorkflowDefinition
from services.handlers.base import NodeContext
from .conditions import evaluate_condition
from .errors import (
    DEPENDENCY_FAILED, EXECUTION_TIMEOUT, ExpressionError, HANDLER_EXCEPTION, INTERNAL_ERROR,
    WORKFLOW_VERSION_MISSING,
)
from .expressions import ExpressionScope, evaluate_bool
from .models import (
    ExecutionStatus, LogLevel, NodeError, NodeResult, RetryPolicy, TERMINAL_EXECUTION_STATUSES,
    WalkOutcome, WalkResult,
)

if TYPE_CHECKING:
    from core.config import Settings
    from core.database import Database
    from services.node_executor import NodeExecutor
    from .records import ExecutionRecordManager

logger = get_logger(__name__)

PENDING, TAKEN, NOT_TAKEN, FAILED = "pending", "taken", "not_taken", "failed"


def select_root(definition: WorkflowDefinition, trigger_kind: Optional[str]) -> Optional[Node]:
    """Trigger node matching the firing kind, else a manual trigger, else the first trigger."""
    triggers = definition.trigger_nodes()
    if not triggers:
        return None
    wanted = TRIGGER_KIND_NODE_TYPES.get(trigger_kind or "", frozenset())
    for node in triggers:
        if node.type in wanted:
            return node
    for node in triggers:
        if node.type == MANUAL_TRIGGER:
            return node
    return triggers[0]


def reachable_from(definition: WorkflowDefinition, root_id: str) -> Set[str]:
    seen = {root_id}
    frontier = [root_id]
    while frontier:
        node_id = frontier.pop()
        for edge in definition.outgoing(node_id):
            if edge.target not in seen:
                seen.add(edge.target)
                frontier.append(edge.target)
    return seen


class WalkState:
    """Mutable per-walk bookkeeping, restored from and persisted to the record."""

    def __init__(self, execution: Execution, definition: WorkflowDefinition, root: Node):
        context = dict(execution.context or {})
        self.definition = definition
        self.root = root
        self.reachable = reachable_from(definition, root.id)
        self.variables: Dict[str, Any] = {**definition.variables, **(context.get("variables") or {})}
        self.node_outputs: Dict[str, Any] = dict(context.get("nodeOutputs") or {})
        self.taken_edges: Set[str] = set(context.get("takenEdges") or [])
        self.errors: List[Dict[str, Any]] = list(context.get("errors") or [])
        self.suspensions: Dict[str, str] = dict(context.get("suspensions") or {})
        self.completed: List[str] = list(execution.completed_nodes or [])
        self.failed: List[str] = list(execution.failed_nodes or [])
        self.skipped: List[str] = list(execution.skipped_nodes or [])
        self.node_metrics: Dict[str, Any] = dict((execution.metrics or {}).get("nodeMetrics") or {})
        self.running: Set[str] = set()

    @property
    def settled(self) -> Set[str]:
        return set(self.completed) | set(self.failed) | set(self.skipped)

    def context(self) -> Dict[str, Any]:
        return {
            "variables": self.variables,
            "nodeOutputs": self.node_outputs,
            "takenEdges": sorted(self.taken_edges),
            "errors": self.errors,
            "suspensions": self.suspensions,
        }

    def inbound(self, node_id: str) -> List[Edge]:
        """Inbound edges whose source can still settle in this walk."""
        return [edge for edge in self.definition.incoming(node_id) if edge.source in self.reachable]

    def edge_state(self, edge: Edge, settled: Set[str]) -> str:
        if edge.source not in settled:
            return PENDING
        if edge.source in self.failed:
            return FAILED
        if edge.key in self.taken_edges:
            return TAKEN
        return NOT_TAKEN

    def ready_nodes(self) -> List[Node]:
        settled = self.settled
        ready = []
        for node in self.definition.nodes:
            if node.id not in self.reachable or node.id in settled or node.id in self.running:
                continue
            if node.id == self.root.id:
                ready.append(node)
                continue
            states = [self.edge_state(edge, settled) for edge in self.inbound(node.id)]
            if states and PENDING not in states:
                ready.append(node)
        return ready

    def inbound_states(self, node_id: str) -> List[str]:
        settled = self.settled
        return [self.edge_state(edge, settled) for edge in self.inbound(node_id)]

    def inputs_for(self, node_id: str) -> Dict[str, Any]:
        return {
            edge.source: self.node_outputs.get(edge.source)
            for edge in self.inbound(node_id)
            if edge.key in self.taken_edges
        }

    def terminal_output(self) -> Dict[str, Any]:
        """Outputs of completed nodes that took no outgoing edge."""
        output = {}
        for node_id in self.completed:
            outgoing = self.definition.outgoing(node_id)
            if not any(edge.key in self.taken_edges for edge in outgoing):
                output[node_id] = self.node_outputs.get(node_id)
        return output


class GraphWalker:
    """Executes a workflow graph for one claimed job attempt."""

    def __init__(self, database: "Database", record_manager: "ExecutionRecordManager",
                 registry: "NodeExecutor", settings: "Settings"):
        self.database = database
        self.records = record_manager
        self.registry = registry
        self.settings = settings

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def walk(self, job: Job) -> WalkResult:
        execution = await self.records.get_execution(job.execution_id)
        if execution is None:
            logger.error("Job references missing execution", job_id=job.id, execution_id=job.execution_id)
            return WalkResult(WalkOutcome.FAILED, error="Execution not found")

        if execution.status in TERMINAL_EXECUTION_STATUSES:
            logger.info("Execution already terminal", execution_id=execution.id, status=execution.status)
            outcome = WalkOutcome.CANCELLED if execution.status == ExecutionStatus.CANCELLED.value \
                else WalkOutcome.COMPLETED
            return WalkResult(outcome)

        document = await self.database.get_workflow_version(execution.workflow_id, execution.version)
        if document is None:
            return await self._abort(execution, WORKFLOW_VERSION_MISSING,
                                     f"Workflow version {execution.version} not found")
        try:
            definition = WorkflowDefinition.model_validate(document)
        except ValidationError as e:
            return await self._abort(execution, INTERNAL_ERROR, f"Stored definition is invalid: {e}")

        trigger_kind = (execution.trigger or {}).get("type")
        root = select_root(definition, trigger_kind)
        if root is None:
            return await self._abort(execution, INTERNAL_ERROR, "Workflow has no trigger node")

        state = WalkState(execution, definition, root)
        resuming = execution.status == ExecutionStatus.PAUSED.value
        first_start = execution.started_at is None
        started_at = as_utc(execution.started_at) or utc_now()

        execution = await self.records.mark_running(execution.id, started_at if first_start else None)
        if execution.status == ExecutionStatus.CANCELLED.value:
            return WalkResult(WalkOutcome.CANCELLED)

        if first_start:
            await self.records.append_log(
                execution.id, "execution_start", f"Execution started by {trigger_kind} trigger",
                data={"workflowId": execution.workflow_id, "version": execution.version, "rootNodeId": root.id},
            )
        elif resuming:
            await self.records.append_log(execution.id, "resumed", "Execution resumed after delay",
                                          node_id=execution.paused_node_id)
        else:
            await self.records.append_log(execution.id, "retry", f"Attempt {job.attempts + 1} started",
                                          data={"attempt": job.attempts + 1})

        logger.info("Walking workflow", execution_id=execution.id, workflow_id=execution.workflow_id,
                    root=root.id, attempt=job.attempts, resuming=resuming)

        return await self._run(job, execution, state, started_at)

    # =========================================================================
    # SCHEDULING LOOP
    # =========================================================================

    def _parallelism(self, definition: WorkflowDefinition) -> int:
        settings = definition.settings
        if settings.execution_mode == "sequential":
            return 1
        return settings.branch_parallelism or self.settings.branch_parallelism

    async def _run(self, job: Job, execution: Execution, state: WalkState,
                   started_at: datetime) -> WalkResult:
        settings = state.definition.settings
        policy = RetryPolicy.from_dict(job.retry_policy)
        policy.max_attempts = job.max_attempts
        semaphore = asyncio.Semaphore(self._parallelism(state.definition))
        max_execution_time = settings.max_execution_time or self.settings.default_max_execution_time_ms
        deadline = time.monotonic() + max_execution_time / 1000.0

        task_to_node: Dict[asyncio.Task, Node] = {}
        pending_tasks: Set[asyncio.Task] = set()
        stop_scheduling: Optional[WalkResult] = None
        resume_at: Optional[datetime] = None

        async def run_node(node: Node) -> NodeResult:
            async with semaphore:
                return await self._execute_node(job, execution, state, node)

        while True:
            if stop_scheduling is None and resume_at is None:
                cancelled = await self._settle_ready(execution, state)
                if cancelled:
                    await self._cancel_tasks(pending_tasks)
                    return WalkResult(WalkOutcome.CANCELLED)

                for node in state.ready_nodes():
                    state.running.add(node.id)
                    task = asyncio.create_task(run_node(node), name=f"node_{node.id}")
                    task_to_node[task] = node
                    pending_tasks.add(task)
                    await self.records.append_log(execution.id, "node_start",
                                                  f"Node {node.name or node.id} started",
                                                  node_id=node.id, data={"type": node.type})

            if not pending_tasks:
                break

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return await self._timeout(execution, state, pending_tasks, started_at, max_execution_time)

            done, pending_tasks = await asyncio.wait(
                pending_tasks,
                timeout=remaining,
                return_when=asyncio.FIRST_COMPLETED
            )
            if not done:
                return await self._timeout(execution, state, pending_tasks, started_at, max_execution_time)

            for task in done:
                node = task_to_node.pop(task)
                state.running.discard(node.id)
                try:
                    result = task.result()
                except Exception as e:
                    logger.error("Node task raised", execution_id=execution.id, node_id=node.id,
                                 error=str(e), exc_info=True)
                    result = NodeResult.fail(HANDLER_EXCEPTION, f"{type(e).__name__}: {e}")

                if result.success and result.suspend_until is not None:
                    suspend_until = as_utc(result.suspend_until)
                    state.suspensions[node.id] = suspend_until.isoformat()
                    resume_at = suspend_until if resume_at is None else min(resume_at, suspend_until)
                    continue

                if result.success:
                    execution = await self._record_success(execution, state, node, result)
                    if execution.status == ExecutionStatus.CANCELLED.value:
                        await self._cancel_tasks(pending_tasks)
                        return WalkResult(WalkOutcome.CANCELLED)
                    continue

                outcome = await self._record_failure(job, execution, state, node, result.error, policy)
                if outcome is None:
                    continue
                if stop_scheduling is None or (outcome.outcome == WalkOutcome.FAILED
                                               and stop_scheduling.outcome == WalkOutcome.RETRY):
                    stop_scheduling = outcome
                if outcome.outcome == WalkOutcome.FAILED:
                    await self._cancel_tasks(pending_tasks)
                    pending_tasks = set()

        if stop_scheduling is not None:
            if stop_scheduling.outcome == WalkOutcome.FAILED:
                await self._finish(execution, state, started_at, success=False,
                                   error=stop_scheduling.error_detail)
            return stop_scheduling

        if resume_at is not None:
            return await self._pause(execution, state, resume_at)

        success = not state.failed
        error = None
        if not success:
            first = next((e for e in state.errors if e.get("nodeId") in state.failed), None) or {}
            error = {"code": first.get("code", INTERNAL_ERROR), "message": first.get("message", "Node failed"),
                     "nodeId": first.get("nodeId")}
        await self._finish(execution, state, started_at, success=success, error=error)
        return WalkResult(WalkOutcome.COMPLETED if success else WalkOutcome.FAILED,
                          error=None if success else error["message"])

    async def _settle_ready(self, execution: Execution, state: WalkState) -> bool:
        """Skip and pass through ready nodes that will not run a handler.

        Loops until no such node is left because each settled node can make
        its dependents ready. Returns True if the execution was cancelled.
        """
        while True:
            changed = False
            for node in state.ready_nodes():
                if node.id == state.root.id:
                    continue
                states = state.inbound_states(node.id)

                if FAILED in states:
                    state.failed.append(node.id)
                    state.skipped.append(node.id)
                    state.errors.append({
                        "nodeId": node.id,
                        "code": DEPENDENCY_FAILED,
                        "message": "Upstream node failed",
                        "retryable": False,
                    })
                    await self.records.append_log(
                        execution.id, "node_skip", f"Node {node.name or node.id} skipped: upstream failed",
                        level=LogLevel.WARN.value, node_id=node.id, data={"reason": "dependency_failed"},
                    )
                    updated = await self.records.update_progress(
                        execution.id, {"context": state.context()},
                        append={"failed_nodes": [node.id], "skipped_nodes": [node.id]},
                    )
                elif TAKEN not in states:
                    state.skipped.append(node.id)
                    await self.records.append_log(
                        execution.id, "node_skip", f"Node {node.name or node.id} skipped: branch not taken",
                        node_id=node.id, data={"reason": "branch_not_taken"},
                    )
                    updated = await self.records.update_progress(
                        execution.id, append={"skipped_nodes": [node.id]},
                    )
                elif not node.enabled:
                    state.skipped.append(node.id)
                    for edge in state.definition.outgoing(node.id):
                        state.taken_edges.add(edge.key)
                    await self.records.append_log(
                        execution.id, "node_skip", f"Node {node.name or node.id} disabled, passing through",
                        node_id=node.id, data={"reason": "disabled"},
                    )
                    updated = await self.records.update_progress(
                        execution.id, {"context": state.context()}, append={"skipped_nodes": [node.id]},
                    )
                else:
                    continue

                changed = True
                if updated.status == ExecutionStatus.CANCELLED.value:
                    return True

            if not changed:
                return await self.records.is_cancelled(execution.id)

    # =========================================================================
    # NODE EXECUTION
    # =========================================================================

    def _scope(self, execution: Execution, state: WalkState, job: Job) -> ExpressionScope:
        return ExpressionScope(
            trigger=execution.trigger or {},
            node_outputs=state.node_outputs,
            variables=state.variables,
            execution={
                "id": execution.id,
                "workflowId": execution.workflow_id,
                "orgId": execution.org_id,
                "version": execution.version,
                "attempt": job.attempts + 1,
            },
        )

    async def _execute_node(self, job: Job, execution: Execution, state: WalkState, node: Node) -> NodeResult:
        suspension = state.suspensions.get(node.id)
        resumed = False
        if suspension:
            suspend_until = datetime.fromisoformat(suspension)
            if suspend_until > utc_now():
                # Another delay resumed first; keep waiting on the recorded time
                return NodeResult(output={"resumeAt": suspension}, suspend_until=suspend_until)
            resumed = True

        ctx = NodeContext(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            org_id=execution.org_id,
            node=node,
            scope=self._scope(execution, state, job),
            inputs=state.inputs_for(node.id),
            attempt=job.attempts,
            resumed=resumed,
            timezone=state.definition.settings.timezone,
        )

        start_time = time.time()
        result = await self.registry.execute(ctx)
        duration_ms = int((time.time() - start_time) * 1000)
        state.node_metrics[node.id] = {
            "durationMs": duration_ms,
            "attempt": job.attempts + 1,
            "success": result.success,
        }
        return result

    async def _record_success(self, execution: Execution, state: WalkState, node: Node,
                              result: NodeResult) -> Execution:
        state.node_outputs[node.id] = result.output
        state.completed.append(node.id)
        state.suspensions.pop(node.id, None)

        followed = self._select_edges(execution, state, node, result)
        state.taken_edges.update(edge.key for edge in followed)

        if node.type in BRANCHING_NODE_TYPES:
            await self.records.append_log(
                execution.id, "condition_eval", f"Node {node.name or node.id} selected branch {result.branch}",
                node_id=node.id,
                data={"branch": result.branch, "followed": [edge.target for edge in followed]},
            )

        await self.records.append_log(
            execution.id, "node_complete", f"Node {node.name or node.id} completed",
            node_id=node.id, data={"durationMs": state.node_metrics.get(node.id, {}).get("durationMs")},
        )
        logger.info("Node completed", execution_id=execution.id, node_id=node.id, node_type=node.type)

        return await self.records.update_progress(
            execution.id,
            {"context": state.context(), "current_node_id": node.id,
             "metrics": {"nodeMetrics": state.node_metrics}},
            append={"completed_nodes": [node.id]},
        )

    async def _record_failure(self, job: Job, execution: Execution, state: WalkState, node: Node,
                              error: NodeError, policy: RetryPolicy) -> Optional[WalkResult]:
        """Apply the error-handling policy; returns a stop outcome or None to continue."""
        settings = state.definition.settings
        state.errors.append({
            "nodeId": node.id,
            "code": error.code,
            "message": error.message,
            "retryable": error.retryable,
            "attempt": job.attempts + 1,
        })
        await self.records.append_log(
            execution.id, "node_error", f"Node {node.name or node.id} failed: {error.message}",
            level=LogLevel.ERROR.value, node_id=node.id, data=error.to_dict(),
        )
        logger.warning("Node failed", execution_id=execution.id, node_id=node.id,
                       code=error.code, retryable=error.retryable)

        if settings.error_handling == "stop" and error.retryable and policy.has_attempts_left(job.attempts):
            await self.records.update_progress(execution.id, {"context": state.context()})
            await self.records.append_log(
                execution.id, "retry", f"Node {node.name or node.id} will be retried",
                level=LogLevel.WARN.value, node_id=node.id,
                data={"attempt": job.attempts + 1, "maxAttempts": job.max_attempts, "code": error.code},
            )
            return WalkResult(WalkOutcome.RETRY, error=error.message)

        state.failed.append(node.id)
        await self.records.update_progress(
            execution.id, {"context": state.context()}, append={"failed_nodes": [node.id]},
        )
        if settings.error_handling == "stop":
            return WalkResult(WalkOutcome.FAILED, error=error.message,
                              error_detail={"code": error.code, "message": error.message, "nodeId": node.id})
        return None

    # =========================================================================
    # EDGE SELECTION
    # =========================================================================

    def _edge_condition(self, execution: Execution, state: WalkState, edge: Edge) -> bool:
        scope = ExpressionScope(trigger=execution.trigger or {}, node_outputs=state.node_outputs,
                                variables=state.variables)
        try:
            if isinstance(edge.condition, dict):
                return evaluate_condition(edge.condition, scope.as_dict())
            return evaluate_bool(edge.condition, scope)
        except ExpressionError as e:
            logger.warning("Edge condition failed to evaluate", edge=edge.key, error=str(e))
            return False

    def _select_edges(self, execution: Execution, state: WalkState, node: Node,
                      result: NodeResult) -> List[Edge]:
        outgoing = state.definition.outgoing(node.id)

        if node.type == CONDITIONAL:
            passed = result.branch == "true"
            followed, defaults = [], []
            for edge in outgoing:
                handle = (edge.source_handle or "").lower()
                if edge.condition:
                    if self._edge_condition(execution, state, edge):
                        followed.append(edge)
                elif handle == "false":
                    if not passed:
                        followed.append(edge)
                elif handle in ("", "true"):
                    if passed:
                        followed.append(edge)
                elif handle == DEFAULT_BRANCH_HANDLE:
                    defaults.append(edge)
            return followed or defaults

        if node.type == SWITCH:
            followed = [edge for edge in outgoing if edge.source_handle == result.branch]
            if not followed:
                followed = [edge for edge in outgoing if edge.source_handle == DEFAULT_BRANCH_HANDLE]
            return followed

        return [
            edge for edge in outgoing
            if not edge.condition or self._edge_condition(execution, state, edge)
        ]

    # =========================================================================
    # TERMINATION
    # =========================================================================

    async def _cancel_tasks(self, tasks: Set[asyncio.Task]) -> None:
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks, return_when=asyncio.ALL_COMPLETED)

    def _metrics(self, state: WalkState, started_at: datetime) -> Dict[str, Any]:
        return {
            "totalDurationMs": int((utc_now() - started_at).total_seconds() * 1000),
            "nodeMetrics": state.node_metrics,
            "completedCount": len(state.completed),
            "failedCount": len(state.failed),
            "skippedCount": len(state.skipped),
        }

    async def _finish(self, execution: Execution, state: WalkState, started_at: datetime,
                      success: bool, error: Optional[Dict[str, Any]] = None) -> Execution:
        metrics = self._metrics(state, started_at)
        execution = await self.records.finalize(
            execution.id, success=success, output=state.terminal_output() if success else None,
            error=error, metrics=metrics, context=state.context(),
        )
        if execution.status == ExecutionStatus.CANCELLED.value:
            return execution
        await self.records.append_log(
            execution.id, "execution_complete",
            "Execution completed" if success else f"Execution failed: {(error or {}).get('message')}",
            level=LogLevel.INFO.value if success else LogLevel.ERROR.value,
            data={"success": success, "totalDurationMs": metrics["totalDurationMs"]},
        )
        await self.database.record_execution_stats(execution.workflow_id, success, metrics["totalDurationMs"])
        logger.info("Execution finished", execution_id=execution.id, success=success,
                    duration_ms=metrics["totalDurationMs"])
        return execution

    async def _timeout(self, execution: Execution, state: WalkState, pending_tasks: Set[asyncio.Task],
                       started_at: datetime, max_execution_time: int) -> WalkResult:
        await self._cancel_tasks(pending_tasks)
        message = f"Execution exceeded maxExecutionTime of {max_execution_time} ms"
        logger.warning("Execution timed out", execution_id=execution.id, max_execution_time=max_execution_time)
        await self._finish(execution, state, started_at, success=False,
                           error={"code": EXECUTION_TIMEOUT, "message": message})
        return WalkResult(WalkOutcome.FAILED, error=message)

    async def _pause(self, execution: Execution, state: WalkState, resume_at: datetime) -> WalkResult:
        paused_node = min(state.suspensions, key=lambda node_id: state.suspensions[node_id])
        execution = await self.records.mark_paused(execution.id, paused_node, resume_at, state.context())
        if execution.status == ExecutionStatus.CANCELLED.value:
            return WalkResult(WalkOutcome.CANCELLED)
        await self.records.append_log(
            execution.id, "paused", f"Execution paused until {resume_at.isoformat()}",
            node_id=paused_node, data={"resumeAt": resume_at.isoformat()},
        )
        logger.info("Execution paused", execution_id=execution.id, node_id=paused_node,
                    resume_at=resume_at.isoformat())
        return WalkResult(WalkOutcome.PAUSED, resume_at=resume_at)

    async def _abort(self, execution: Execution, code: str, message: str) -> WalkResult:
        """Terminal failure before any node ran."""
        logger.error("Execution aborted", execution_id=execution.id, code=code, error=message)
        await self.records.finalize(execution.id, success=False, error={"code": code, "message": message})
        await self.records.append_log(execution.id, "execution_complete", message,
                                      level=LogLevel.ERROR.value, data={"success": False, "code": code})
        await self.database.record_execution_stats(execution.workflow_id, False, None)
        return WalkResult(WalkOutcome.FAILED, error=message)

