"""Data node handlers - Transform, Filter and Merge."""

from typing import Any, Dict, List

from core.logging import get_logger
from models.nodes import BaseNodeConfig
from services.execution.conditions import evaluate_conditions
from services.execution.errors import INVALID_CONFIG
from services.execution.models import NodeResult
from .base import NodeContext, NodeHandler

logger = get_logger(__name__)


def set_nested_value(target: Dict[str, Any], path: str, value: Any) -> None:
    """Set ``value`` at a dot path, creating intermediate dicts."""
    parts = path.split(".")
    current = target
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[parts[-1]] = value


class TransformHandler(NodeHandler):
    """Reshapes data.

    ``template`` mode returns the resolved template value as the output;
    ``mapping`` mode builds an object from ``{target, source, default}``
    mappings whose sources are resolved expressions.
    """

    node_type = "transform"

    async def execute(self, ctx: NodeContext, config: BaseNodeConfig) -> NodeResult:
        if config.mode == "template":
            return NodeResult(output=config.template)

        output: Dict[str, Any] = {}
        for mapping in config.mappings:
            value = mapping.source if mapping.source is not None else mapping.default
            set_nested_value(output, mapping.target, value)
        return NodeResult(output=output)


class FilterHandler(NodeHandler):
    """Keeps the items of a list that satisfy the conditions."""

    node_type = "filter"
    required_fields = ("items",)

    async def execute(self, ctx: NodeContext, config: BaseNodeConfig) -> NodeResult:
        items = config.items
        if not isinstance(items, list):
            return NodeResult.fail(INVALID_CONFIG, f"items must resolve to a list, got {type(items).__name__}")

        conditions = [condition.model_dump() for condition in config.conditions]
        kept: List[Any] = []
        removed: List[Any] = []
        for item in items:
            matched, _ = evaluate_conditions(conditions, item, config.combine_with)
            (kept if matched else removed).append(item)

        logger.debug("Filter applied", node_id=ctx.node_id, total=len(items), kept=len(kept))
        return NodeResult(output={
            "filtered": kept,
            "removed": removed,
            "counts": {"total": len(items), "filtered": len(kept), "removed": len(removed)},
        })


class MergeHandler(NodeHandler):
    """Combines the outputs of every upstream node on a taken edge."""

    node_type = "merge"

    async def execute(self, ctx: NodeContext, config: BaseNodeConfig) -> NodeResult:
        values = list(ctx.inputs.values())

        if config.mode == "first":
            return NodeResult(output=next((v for v in values if v is not None), None))

        if config.mode == "append":
            merged: List[Any] = []
            for value in values:
                if isinstance(value, list):
                    merged.extend(value)
                elif value is not None:
                    merged.append(value)
            return NodeResult(output={"items": merged, "count": len(merged)})

        combined: Dict[str, Any] = {}
        for source_id, value in ctx.inputs.items():
            if isinstance(value, dict):
                combined.update(value)
            else:
                combined[source_id] = value
        return NodeResult(output=combined)
