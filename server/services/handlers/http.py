"""HTTP node handler - outbound HTTP Request."""

import time
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx

from core.logging import get_logger
from models.nodes import BaseNodeConfig
from services.execution.errors import HTTP_ERROR, INVALID_CONFIG, NETWORK_ERROR, NODE_TIMEOUT
from services.execution.models import NodeError, NodeResult
from .base import NodeContext, NodeHandler

logger = get_logger(__name__)

# Status codes worth another attempt
RETRYABLE_STATUS_CODES = frozenset([408, 425, 429, 500, 502, 503, 504])


def _auth_headers(auth) -> Dict[str, str]:
    if auth is None or auth.type == "none":
        return {}
    if auth.type == "bearer" and auth.token:
        return {"Authorization": f"Bearer {auth.token}"}
    if auth.type == "api_key" and auth.api_key:
        return {auth.header_name: auth.api_key}
    return {}


def _stringify_mapping(values: Dict[str, Any]) -> Dict[str, str]:
    return {str(k): "" if v is None else str(v) for k, v in (values or {}).items()}


class HttpRequestHandler(NodeHandler):
    """Calls an external HTTP endpoint.

    Timeouts, connection errors and 408/425/429/5xx responses are retryable;
    other 4xx responses and malformed configs are terminal. Outbound calls may
    run more than once when a job is retried.
    """

    node_type = "http-request"
    required_fields = ("url",)

    def __init__(self, default_timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.default_timeout = default_timeout
        self.transport = transport

    def check(self, model: BaseNodeConfig, raw: Dict[str, Any]) -> Optional[str]:
        if model.url and "{{" not in model.url:
            scheme = urlparse(model.url).scheme
            if scheme not in ("http", "https"):
                return f"url: unsupported scheme {scheme!r}"
        return None

    def _request_kwargs(self, config: BaseNodeConfig) -> Dict[str, Any]:
        headers = _stringify_mapping(config.headers)
        headers.update(_auth_headers(config.auth))
        kwargs: Dict[str, Any] = {
            "method": config.method,
            "url": config.url,
            "headers": headers,
            "params": _stringify_mapping(config.query_params),
        }
        if config.auth is not None and config.auth.type == "basic":
            kwargs["auth"] = (config.auth.username or "", config.auth.password or "")

        if config.method in ("POST", "PUT", "PATCH", "DELETE") and config.body is not None:
            if config.body_type == "json":
                kwargs["json"] = config.body
            elif config.body_type == "form":
                kwargs["data"] = config.body if isinstance(config.body, dict) else {}
            else:
                kwargs["content"] = config.body if isinstance(config.body, (str, bytes)) else str(config.body)
        return kwargs

    async def execute(self, ctx: NodeContext, config: BaseNodeConfig) -> NodeResult:
        scheme = urlparse(config.url or "").scheme
        if scheme not in ("http", "https"):
            return NodeResult.fail(INVALID_CONFIG, f"Unsupported URL: {config.url!r}")

        timeout = config.timeout or ctx.node.timeout or self.default_timeout
        kwargs = self._request_kwargs(config)
        start_time = time.time()

        logger.info("HTTP request executing", node_id=ctx.node_id, method=config.method, url=config.url)

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                response = await client.request(**kwargs)
        except httpx.TimeoutException:
            logger.warning("HTTP request timed out", node_id=ctx.node_id, url=config.url)
            return NodeResult.fail(NODE_TIMEOUT, f"Request timed out after {timeout} seconds", retryable=True)
        except httpx.RequestError as e:
            logger.warning("HTTP request failed", node_id=ctx.node_id, error=str(e))
            return NodeResult.fail(NETWORK_ERROR, f"Request failed: {type(e).__name__}", retryable=True)

        try:
            data = response.json()
        except ValueError:
            data = response.text

        output = {
            "status": response.status_code,
            "statusText": response.reason_phrase,
            "ok": response.is_success,
            "headers": dict(response.headers),
            "data": data,
            "url": str(response.url),
            "method": config.method,
            "durationMs": int((time.time() - start_time) * 1000),
        }

        if response.status_code >= 400:
            retryable = response.status_code in RETRYABLE_STATUS_CODES
            return NodeResult(
                output=output,
                error=NodeError(HTTP_ERROR, f"HTTP {response.status_code} {response.reason_phrase}", retryable),
            )
        return NodeResult(output=output)
