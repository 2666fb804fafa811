"""Node Executor - Single node execution with handler dispatch.

Uses a closed registry keyed by node kind; every kind in
``constants.ALL_NODE_TYPES`` must have exactly one handler.
"""

import asyncio
import time
from typing import Any, Dict, Optional, TYPE_CHECKING

import httpx
from pydantic import ValidationError

from constants import ALL_NODE_TYPES
from core.logging import get_logger
from services.execution.errors import (
    ExpressionError, HANDLER_EXCEPTION, INVALID_CONFIG, MISSING_REQUIRED_INPUT,
    NODE_TIMEOUT, UNKNOWN_NODE_TYPE,
)
from services.execution.expressions import find_expression_errors, resolve_value
from services.execution.models import NodeResult
from services.handlers import (
    AiPromptHandler, ConditionalHandler, DelayHandler, EmailSendHandler, FilterHandler,
    HttpRequestHandler, MergeHandler, NodeContext, NodeHandler, SlackMessageHandler,
    StoreQueryHandler, StoreWriteHandler, SwitchHandler, TransformHandler,
    build_trigger_handlers,
)
from services.handlers.base import format_validation_error

if TYPE_CHECKING:
    from core.config import Settings
    from core.database import Database
    from models.workflow import Node

logger = get_logger(__name__)


class NodeExecutor:
    """Executes individual workflow nodes using registry-based dispatch."""

    def __init__(
        self,
        database: "Database",
        settings: "Settings",
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        mailer: Optional[Any] = None,
        chat_model_factory: Optional[Any] = None,
    ):
        self.database = database
        self.settings = settings
        self.http_transport = http_transport
        self.mailer = mailer
        self.chat_model_factory = chat_model_factory
        self._handlers = self._build_handler_registry()

    def _build_handler_registry(self) -> Dict[str, NodeHandler]:
        """Build handler registry with service dependencies bound at construction."""
        registry: Dict[str, NodeHandler] = {
            **build_trigger_handlers(),
            # Logic
            'conditional': ConditionalHandler(),
            'switch': SwitchHandler(),
            'delay': DelayHandler(),
            # Data
            'transform': TransformHandler(),
            'filter': FilterHandler(),
            'merge': MergeHandler(),
            'store-query': StoreQueryHandler(self.database),
            'store-write': StoreWriteHandler(self.database),
            # Actions
            'http-request': HttpRequestHandler(self.settings.http_timeout, transport=self.http_transport),
            'email-send': EmailSendHandler(self.settings, mailer=self.mailer),
            'slack-message': SlackMessageHandler(self.settings, transport=self.http_transport),
            # AI
            'ai-prompt': AiPromptHandler(self.settings, model_factory=self.chat_model_factory),
        }

        missing = ALL_NODE_TYPES - set(registry)
        if missing:
            raise RuntimeError(f"No handler registered for node types: {sorted(missing)}")
        return registry

    def get_handler(self, node_type: str) -> Optional[NodeHandler]:
        return self._handlers.get(node_type)

    def register(self, handler: NodeHandler) -> None:
        """Replace the handler for a kind (used to stub side effects in tests)."""
        if handler.node_type not in ALL_NODE_TYPES:
            raise ValueError(f"Unknown node type: {handler.node_type}")
        self._handlers[handler.node_type] = handler

    def validate_node(self, node: "Node") -> Optional[str]:
        """Publish-time validation of one node's stored config."""
        handler = self.get_handler(node.type)
        if handler is None:
            return f"Unknown node type: {node.type}"

        expression_errors = find_expression_errors(
            {k: v for k, v in node.config.items() if k not in handler.raw_fields}
        )
        if expression_errors:
            return "; ".join(expression_errors)
        return handler.validate(node.config)

    def resolve_config(self, handler: NodeHandler, config: Dict[str, Any], ctx: NodeContext) -> Dict[str, Any]:
        resolved = {}
        for key, value in (config or {}).items():
            resolved[key] = value if key in handler.raw_fields else resolve_value(value, ctx.scope)
        return resolved

    async def execute(self, ctx: NodeContext, timeout: Optional[float] = None) -> NodeResult:
        """Execute a single workflow node.

        Never raises for node-level problems: unknown kinds, bad configs,
        timeouts and handler exceptions all come back as ``NodeResult`` errors.
        """
        node = ctx.node
        handler = self.get_handler(node.type)
        if handler is None:
            return NodeResult.fail(UNKNOWN_NODE_TYPE, f"Unknown node type: {node.type}")

        start_time = time.time()
        try:
            resolved = self.resolve_config(handler, node.config, ctx)
        except ExpressionError as e:
            return NodeResult.fail(INVALID_CONFIG, f"Invalid expression: {e}")

        missing = handler.missing_inputs(resolved)
        if missing:
            return NodeResult.fail(MISSING_REQUIRED_INPUT, f"Required input(s) resolved empty: {', '.join(missing)}")

        try:
            config = handler.parse(resolved)
        except ValidationError as e:
            return NodeResult.fail(INVALID_CONFIG, format_validation_error(e))

        timeout = timeout or node.timeout or self.settings.default_node_timeout
        try:
            result = await asyncio.wait_for(handler.execute(ctx, config), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Node timed out", node_id=node.id, node_type=node.type, timeout=timeout)
            return NodeResult.fail(NODE_TIMEOUT, f"Node timed out after {timeout} seconds", retryable=True)
        except Exception as e:
            logger.error("Node handler raised", node_id=node.id, node_type=node.type,
                         error=str(e), exc_info=True)
            return NodeResult.fail(HANDLER_EXCEPTION, f"{type(e).__name__}: {e}")

        logger.debug("Node executed", node_id=node.id, node_type=node.type,
                     success=result.success, execution_time=round(time.time() - start_time, 4))
        return result
