"""Trigger node handlers.

A trigger node is the root of a run. Executing it publishes the trigger
payload as the node's output so downstream nodes can reference
``{{<trigger-node-id>.payload.field}}``.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from constants import (
    API_TRIGGER, FORM_TRIGGER, MANUAL_TRIGGER, SCHEDULE_TRIGGER, WEBHOOK_TRIGGER,
)
from models.nodes import BaseNodeConfig
from services.execution.models import NodeResult
from services.scheduler import build_cron_trigger
from .base import NodeContext, NodeHandler


class TriggerHandler(NodeHandler):
    """Shared execute for every trigger kind."""

    def __init__(self, node_type: str):
        self.node_type = node_type

    async def execute(self, ctx: NodeContext, config: BaseNodeConfig) -> NodeResult:
        trigger = ctx.scope.trigger
        payload = trigger.get("payload") or {}
        output: Dict[str, Any] = {
            "type": trigger.get("type"),
            "payload": payload,
            "data": payload,
            "receivedAt": trigger.get("receivedAt") or datetime.now(timezone.utc).isoformat(),
        }
        output.update(self.extra_output(config, payload))
        return NodeResult(output=output)

    def extra_output(self, config: BaseNodeConfig, payload: Any) -> Dict[str, Any]:
        return {}


class FormTriggerHandler(TriggerHandler):
    required_fields = ("formId",)

    def __init__(self):
        super().__init__(FORM_TRIGGER)

    def extra_output(self, config: BaseNodeConfig, payload: Any) -> Dict[str, Any]:
        return {"formId": config.form_id, "submission": payload}


class ScheduleTriggerHandler(TriggerHandler):
    required_fields = ("cron",)

    def __init__(self):
        super().__init__(SCHEDULE_TRIGGER)

    def check(self, model: BaseNodeConfig, raw: Dict[str, Any]) -> Optional[str]:
        try:
            build_cron_trigger(model.cron, timezone=model.timezone)
        except (ValueError, TypeError, KeyError) as e:
            return f"cron: {e}"
        return None

    def extra_output(self, config: BaseNodeConfig, payload: Any) -> Dict[str, Any]:
        return {"cron": config.cron, "scheduledAt": (payload or {}).get("scheduledAt")}


def build_trigger_handlers() -> Dict[str, NodeHandler]:
    return {
        MANUAL_TRIGGER: TriggerHandler(MANUAL_TRIGGER),
        WEBHOOK_TRIGGER: TriggerHandler(WEBHOOK_TRIGGER),
        API_TRIGGER: TriggerHandler(API_TRIGGER),
        FORM_TRIGGER: FormTriggerHandler(),
        SCHEDULE_TRIGGER: ScheduleTriggerHandler(),
    }
