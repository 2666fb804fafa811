"""Common contract for node handlers.

Every node kind is one ``NodeHandler`` subclass. The registry in
``services.node_executor`` is keyed by ``node_type`` and the walker only ever
talks to handlers through ``validate`` (publish time) and ``execute`` (run
time).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError

from models.nodes import BaseNodeConfig, validate_node_config
from models.workflow import Node
from services.execution.expressions import ExpressionScope, TEMPLATE_PATTERN
from services.execution.models import NodeResult


@dataclass
class NodeContext:
    """Everything a handler may read while executing one node."""
    execution_id: str
    workflow_id: str
    org_id: str
    node: Node
    scope: ExpressionScope
    inputs: Dict[str, Any] = field(default_factory=dict)
    attempt: int = 0
    resumed: bool = False
    timezone: str = "UTC"

    @property
    def node_id(self) -> str:
        return self.node.id


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, (str, list, dict)) and len(value) == 0)


def _is_full_template(value: str) -> bool:
    match = TEMPLATE_PATTERN.fullmatch(value.strip())
    return match is not None


def blank_templates(value: Any) -> Any:
    """Replace whole-template strings with None for publish-time validation.

    Their resolved type is unknown until run time.
    """
    if isinstance(value, str):
        return None if _is_full_template(value) else value
    if isinstance(value, dict):
        return {key: blank_templates(item) for key, item in value.items()}
    if isinstance(value, list):
        return [blank_templates(item) for item in value]
    return value


def format_validation_error(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()) if part != "type")
        problems.append(f"{location or 'config'}: {item.get('msg')}")
    return "; ".join(problems)


class NodeHandler:
    """Base class for node kinds."""

    node_type: str = ""
    # Config keys that must be present at publish time and non-empty after resolution
    required_fields: Tuple[str, ...] = ()
    # Config keys passed through without template substitution
    raw_fields: Tuple[str, ...] = ()

    def validate(self, config: Dict[str, Any]) -> Optional[str]:
        """Return an error message if the stored config can never run."""
        config = config or {}
        missing = [name for name in self.required_fields if is_blank(config.get(name))]
        if missing:
            return f"Missing required field(s): {', '.join(missing)}"

        try:
            model = validate_node_config(self.node_type, blank_templates(config))
        except ValidationError as e:
            return format_validation_error(e)

        return self.check(model, config)

    def check(self, model: BaseNodeConfig, raw: Dict[str, Any]) -> Optional[str]:
        """Kind-specific publish-time checks beyond the config model."""
        return None

    def missing_inputs(self, resolved: Dict[str, Any]) -> Tuple[str, ...]:
        return tuple(name for name in self.required_fields if is_blank(resolved.get(name)))

    def parse(self, resolved: Dict[str, Any]) -> BaseNodeConfig:
        return validate_node_config(self.node_type, resolved)

    async def execute(self, ctx: NodeContext, config: BaseNodeConfig) -> NodeResult:
        raise NotImplementedError
