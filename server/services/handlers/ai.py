"""AI node handler - single prompt completion through LangChain."""

import json
from typing import Any, Callable, Optional, TYPE_CHECKING

import openai
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from core.logging import get_logger
from models.nodes import BaseNodeConfig
from services.execution.errors import HANDLER_EXCEPTION, INVALID_CONFIG, NETWORK_ERROR, NODE_TIMEOUT
from services.execution.models import NodeResult
from .base import NodeContext, NodeHandler

if TYPE_CHECKING:
    from core.config import Settings

logger = get_logger(__name__)

RETRYABLE_AI_ERRORS = (
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


class AiPromptHandler(NodeHandler):
    """Sends the resolved prompt to a chat model and returns the reply."""

    node_type = "ai-prompt"
    required_fields = ("prompt",)

    def __init__(self, settings: "Settings", model_factory: Optional[Callable[..., Any]] = None):
        self.settings = settings
        self.model_factory = model_factory or self._create_model
        self._needs_api_key = model_factory is None

    def _create_model(self, model: str, temperature: float, max_tokens: int):
        return ChatOpenAI(
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=self.settings.openai_api_key,
            timeout=self.settings.ai_timeout,
            max_retries=0,
        )

    async def execute(self, ctx: NodeContext, config: BaseNodeConfig) -> NodeResult:
        if self._needs_api_key and not self.settings.openai_api_key:
            return NodeResult.fail(INVALID_CONFIG, "No AI API key configured")

        model_name = config.model or self.settings.ai_model
        chat_model = self.model_factory(model_name, config.temperature, config.max_tokens)

        messages = []
        if config.system_prompt:
            messages.append(SystemMessage(content=config.system_prompt))
        messages.append(HumanMessage(content=config.prompt))

        try:
            response = await chat_model.ainvoke(messages)
        except openai.APITimeoutError:
            return NodeResult.fail(NODE_TIMEOUT, "AI request timed out", retryable=True)
        except RETRYABLE_AI_ERRORS as e:
            logger.warning("AI request failed", node_id=ctx.node_id, error=str(e))
            return NodeResult.fail(NETWORK_ERROR, f"AI request failed: {type(e).__name__}", retryable=True)
        except openai.OpenAIError as e:
            return NodeResult.fail(HANDLER_EXCEPTION, f"AI request rejected: {type(e).__name__}")

        text = response.content if isinstance(response.content, str) else str(response.content)
        output = {"text": text, "model": model_name}

        if config.output_format == "json":
            try:
                output["data"] = json.loads(text)
            except ValueError:
                return NodeResult.fail(HANDLER_EXCEPTION, "Model reply is not valid JSON")

        usage = getattr(response, "usage_metadata", None)
        if usage:
            output["usage"] = dict(usage)

        logger.info("AI prompt completed", node_id=ctx.node_id, model=model_name)
        return NodeResult(output=output)
