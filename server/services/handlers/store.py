"""Data-store node handlers - query and write organization documents."""

from typing import Any, Dict, List, Optional, TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from core.logging import get_logger
from models.nodes import BaseNodeConfig
from services.execution.conditions import evaluate_conditions, get_nested_value
from services.execution.errors import INVALID_CONFIG, NETWORK_ERROR
from services.execution.models import NodeResult
from .base import NodeContext, NodeHandler

if TYPE_CHECKING:
    from core.database import Database

logger = get_logger(__name__)


def _document_view(document) -> Dict[str, Any]:
    return {"_id": document.id, **(document.data or {})}


class _StoreHandler(NodeHandler):
    required_fields = ("collection",)

    def __init__(self, database: "Database"):
        self.database = database

    async def _matching(self, ctx: NodeContext, config: BaseNodeConfig) -> List[Any]:
        documents = await self.database.find_documents(ctx.org_id, config.collection)
        conditions = [condition.model_dump() for condition in config.conditions]
        logic = getattr(config, "combine_with", "and")
        return [
            document for document in documents
            if evaluate_conditions(conditions, _document_view(document), logic)[0]
        ]


class StoreQueryHandler(_StoreHandler):
    node_type = "store-query"

    async def execute(self, ctx: NodeContext, config: BaseNodeConfig) -> NodeResult:
        try:
            documents = await self._matching(ctx, config)
        except SQLAlchemyError as e:
            return NodeResult.fail(NETWORK_ERROR, f"Store query failed: {e}", retryable=True)

        rows = [_document_view(document) for document in documents]
        if config.sort_by:
            rows.sort(
                key=lambda row: (get_nested_value(row, config.sort_by) is None,
                                 str(get_nested_value(row, config.sort_by))),
                reverse=config.sort_order == "desc",
            )
        rows = rows[:config.limit]
        return NodeResult(output={"documents": rows, "count": len(rows)})


class StoreWriteHandler(_StoreHandler):
    """Insert, update, upsert or delete documents in one collection.

    Update and delete apply to every document matching ``conditions``; with
    no conditions they are rejected so a misconfigured node cannot wipe a
    collection.
    """

    node_type = "store-write"

    def check(self, model: BaseNodeConfig, raw: Dict[str, Any]) -> Optional[str]:
        if model.operation in ("insert", "update", "upsert") and "document" not in raw:
            return f"document is required for {model.operation}"
        if model.operation in ("update", "delete", "upsert") and not model.conditions:
            return f"conditions are required for {model.operation}"
        return None

    async def execute(self, ctx: NodeContext, config: BaseNodeConfig) -> NodeResult:
        document = config.document or {}
        if config.operation in ("update", "delete", "upsert") and not config.conditions:
            return NodeResult.fail(INVALID_CONFIG, f"conditions are required for {config.operation}")

        try:
            if config.operation == "insert":
                created = await self.database.insert_document(ctx.org_id, config.collection, document)
                return NodeResult(output={"operation": "insert", "insertedId": created.id, "count": 1})

            matched = await self._matching(ctx, config)

            if config.operation == "delete":
                deleted = await self.database.delete_documents([d.id for d in matched])
                return NodeResult(output={"operation": "delete", "count": deleted})

            if not matched and config.operation == "upsert":
                created = await self.database.insert_document(ctx.org_id, config.collection, document)
                return NodeResult(output={"operation": "upsert", "insertedId": created.id, "count": 1})

            for existing in matched:
                existing.data = {**(existing.data or {}), **document}
            updated = await self.database.replace_documents(matched)
            return NodeResult(output={"operation": config.operation, "count": updated})

        except SQLAlchemyError as e:
            logger.error("Store write failed", node_id=ctx.node_id, error=str(e))
            return NodeResult.fail(NETWORK_ERROR, f"Store write failed: {e}", retryable=True)
