"""Logic node handlers - Conditional, Switch and Delay."""

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from constants import CONDITIONAL, DELAY, SWITCH
from core.logging import get_logger
from models.nodes import BaseNodeConfig
from services.execution.conditions import OPERATOR_FUNCTIONS, evaluate_conditions
from services.execution.errors import ExpressionError, INVALID_CONFIG
from services.execution.expressions import evaluate_bool, parse_expression, parse_template
from services.execution.models import NodeResult
from .base import NodeContext, NodeHandler

logger = get_logger(__name__)

_UNIT_SECONDS = {"seconds": 1, "minutes": 60, "hours": 3600, "days": 86400}


class ConditionalHandler(NodeHandler):
    """Evaluates an expression or structured conditions to a true/false branch.

    Output: ``{result, branch, evaluatedConditions}``. Outgoing edges with
    ``sourceHandle`` "true"/"false" (or no handle, meaning "true") follow the
    branch; edges carrying their own ``condition`` are decided by the walker.
    """

    node_type = CONDITIONAL
    # Evaluated by the handler itself, never template-substituted
    raw_fields = ("expression",)

    def check(self, model: BaseNodeConfig, raw: Dict[str, Any]) -> Optional[str]:
        if model.expression:
            try:
                if "{{" in model.expression:
                    parse_template(model.expression)
                else:
                    parse_expression(model.expression)
            except ExpressionError as e:
                return f"expression: {e}"
        return None

    async def execute(self, ctx: NodeContext, config: BaseNodeConfig) -> NodeResult:
        evaluated: List[Dict[str, Any]]
        if config.expression:
            result = evaluate_bool(config.expression, ctx.scope)
            evaluated = [{"expression": config.expression, "result": result}]
        elif config.conditions:
            result, evaluated = evaluate_conditions(
                [condition.model_dump() for condition in config.conditions],
                ctx.scope.as_dict(),
                config.combine_with,
            )
        else:
            # No conditions configured
            result, evaluated = True, []

        branch = "true" if result else "false"
        logger.debug("Conditional evaluated", node_id=ctx.node_id, result=result)
        return NodeResult(
            output={"result": result, "branch": branch, "evaluatedConditions": evaluated},
            branch=branch,
        )


class SwitchHandler(NodeHandler):
    """Routes to the output named by the first matching case."""

    node_type = SWITCH

    def check(self, model: BaseNodeConfig, raw: Dict[str, Any]) -> Optional[str]:
        if not model.cases:
            return "cases: at least one case is required"
        if model.match_mode == "regex":
            for case in model.cases:
                if isinstance(case.value, str) and "{{" not in case.value:
                    try:
                        re.compile(case.value)
                    except re.error as e:
                        return f"cases: invalid regex {case.value!r}: {e}"
        return None

    @staticmethod
    def _matches(mode: str, value: Any, expected: Any) -> bool:
        if mode == "contains":
            return OPERATOR_FUNCTIONS["contains"](value, expected)
        if mode == "regex":
            return OPERATOR_FUNCTIONS["matches"](value, expected)
        return OPERATOR_FUNCTIONS["eq"](value, expected)

    async def execute(self, ctx: NodeContext, config: BaseNodeConfig) -> NodeResult:
        for index, case in enumerate(config.cases):
            if self._matches(config.match_mode, config.value, case.value):
                return NodeResult(
                    output={"value": config.value, "matchedCase": index, "branch": case.output},
                    branch=case.output,
                )
        return NodeResult(
            output={"value": config.value, "matchedCase": None, "branch": config.default_output},
            branch=config.default_output,
        )


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class DelayHandler(NodeHandler):
    """Suspends the execution until a resume time.

    First run returns ``suspend_until``; the walker pauses the execution and
    defers the job. When the job is picked up again the node runs with
    ``ctx.resumed`` set and completes.
    """

    node_type = DELAY

    def check(self, model: BaseNodeConfig, raw: Dict[str, Any]) -> Optional[str]:
        if model.duration is None and not model.until and "duration" not in raw and "until" not in raw:
            return "duration or until is required"
        if model.until:
            try:
                parse_timestamp(model.until)
            except ValueError:
                return f"until: not an ISO timestamp: {model.until!r}"
        return None

    def resume_time(self, config: BaseNodeConfig, now: datetime) -> datetime:
        if config.until:
            return parse_timestamp(config.until)
        seconds = (config.duration or 0) * _UNIT_SECONDS[config.unit]
        return now + timedelta(seconds=seconds)

    async def execute(self, ctx: NodeContext, config: BaseNodeConfig) -> NodeResult:
        now = datetime.now(timezone.utc)
        if ctx.resumed:
            return NodeResult(output={"resumedAt": now.isoformat(), "delayed": True})

        try:
            resume_at = self.resume_time(config, now)
        except ValueError as e:
            return NodeResult.fail(INVALID_CONFIG, f"Invalid delay: {e}")

        if resume_at <= now:
            return NodeResult(output={"resumedAt": now.isoformat(), "delayed": False})

        logger.info("Delay node suspending execution", node_id=ctx.node_id,
                    resume_at=resume_at.isoformat())
        return NodeResult(
            output={"resumeAt": resume_at.isoformat()},
            suspend_until=resume_at,
        )
