"""Publish-time workflow validation.

A definition is checked once when it is published; the walker assumes every
active version passed these checks.
"""

from typing import Any, Dict, List, TYPE_CHECKING

from pydantic import ValidationError

from models.workflow import WorkflowDefinition
from services.execution.errors import WorkflowValidationError
from services.execution.expressions import find_expression_errors
from services.handlers.base import format_validation_error

if TYPE_CHECKING:
    from services.node_executor import NodeExecutor


def parse_definition(document: Dict[str, Any]) -> WorkflowDefinition:
    """Parse a stored definition, converting pydantic errors to problem lists."""
    try:
        return WorkflowDefinition.model_validate(document or {})
    except ValidationError as e:
        raise WorkflowValidationError([format_validation_error(e)])


def find_cycle(definition: WorkflowDefinition) -> List[str]:
    """Return the node ids of a cycle reachable from any trigger, or []."""
    adjacency: Dict[str, List[str]] = {node.id: [] for node in definition.nodes}
    for edge in definition.edges:
        adjacency[edge.source].append(edge.target)

    # Iterative DFS with white/grey/black colouring
    state: Dict[str, int] = {}
    for trigger in definition.trigger_nodes():
        if state.get(trigger.id):
            continue
        path: List[str] = [trigger.id]
        stack = [(trigger.id, iter(adjacency[trigger.id]))]
        state[trigger.id] = 1
        while stack:
            node_id, children = stack[-1]
            child = next(children, None)
            if child is None:
                state[node_id] = 2
                stack.pop()
                path.pop()
                continue
            if state.get(child) == 1:
                return path[path.index(child):] + [child]
            if not state.get(child):
                state[child] = 1
                path.append(child)
                stack.append((child, iter(adjacency[child])))
    return []


def validate_definition(definition: WorkflowDefinition, registry: "NodeExecutor") -> List[str]:
    """Collect every reason the definition cannot be published."""
    problems: List[str] = []

    triggers = definition.trigger_nodes()
    if not triggers:
        problems.append("Workflow has no trigger node")

    cycle = find_cycle(definition)
    if cycle:
        problems.append(f"Cycle detected: {' -> '.join(cycle)}")

    for node in definition.nodes:
        error = registry.validate_node(node)
        if error:
            problems.append(f"Node {node.id} ({node.type}): {error}")

    for edge in definition.edges:
        if isinstance(edge.condition, str):
            wrapped = edge.condition if "{{" in edge.condition else "{{" + edge.condition + "}}"
            for error in find_expression_errors(wrapped, f"edge {edge.key}"):
                problems.append(error)

    if definition.settings.execution_mode == "parallel" and definition.settings.branch_parallelism == 1:
        problems.append("executionMode 'parallel' conflicts with branchParallelism 1")

    return problems
