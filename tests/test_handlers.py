"""
Tests for node handlers and the node executor registry.
"""

import asyncio
import smtplib
from datetime import datetime, timedelta, timezone

import httpx
import openai
import pytest
from langchain_core.messages import HumanMessage, SystemMessage

from models.workflow import Node
from services.execution.expressions import ExpressionScope
from services.execution.models import NodeResult
from services.handlers import (
    AiPromptHandler, EmailSendHandler, HttpRequestHandler, NodeContext, NodeHandler, SlackMessageHandler,
)


def make_ctx(node_type, config, payload=None, node_outputs=None, inputs=None, org_id="org-test",
             timeout=None, resumed=False):
    return NodeContext(
        execution_id="exec-1",
        workflow_id="wf-1",
        org_id=org_id,
        node=Node(id="n1", type=node_type, config=config, timeout=timeout),
        scope=ExpressionScope(
            trigger={"type": "manual", "payload": payload or {}},
            node_outputs=node_outputs or {},
            variables={"token": "abc123", "team": "support"},
            execution={"id": "exec-1"},
        ),
        inputs=inputs or {},
        resumed=resumed,
    )


class TestHttpRequest:
    async def test_post_with_bearer_auth_and_templated_body(self, registry, http_recorder):
        http_recorder.respond("/items", 201, {"id": 7})
        ctx = make_ctx("http-request", {
            "url": "https://api.example.com/items",
            "method": "POST",
            "auth": {"type": "bearer", "token": "{{ variables.token }}"},
            "queryParams": {"source": "{{ variables.team }}"},
            "body": {"name": "{{ name }}", "count": "{{ count }}"},
        }, payload={"name": "Ada", "count": 2})

        result = await registry.execute(ctx)

        assert result.success
        assert result.output["status"] == 201
        assert result.output["data"] == {"id": 7}
        request = http_recorder.requests[-1]
        assert request.method == "POST"
        assert request.headers["authorization"] == "Bearer abc123"
        assert request.url.params["source"] == "support"
        assert http_recorder.last_json() == {"name": "Ada", "count": 2}

    async def test_api_key_header(self, registry, http_recorder):
        ctx = make_ctx("http-request", {
            "url": "https://api.example.com/ping",
            "auth": {"type": "api_key", "apiKey": "k-1", "headerName": "X-Key"},
        })

        await registry.execute(ctx)

        assert http_recorder.requests[-1].headers["x-key"] == "k-1"

    async def test_client_error_is_terminal(self, registry, http_recorder):
        http_recorder.respond("/missing", 404, {"error": "not found"})

        result = await registry.execute(make_ctx("http-request", {"url": "https://api.example.com/missing"}))

        assert not result.success
        assert result.error.code == "HTTP_ERROR"
        assert result.error.retryable is False
        assert result.output["status"] == 404

    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_server_errors_are_retryable(self, registry, http_recorder, status):
        http_recorder.respond("/flaky", status, text="busy")

        result = await registry.execute(make_ctx("http-request", {"url": "https://api.example.com/flaky"}))

        assert result.error.retryable is True
        assert result.output["data"] == "busy"

    async def test_connection_error_is_retryable(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        handler = HttpRequestHandler(transport=httpx.MockTransport(refuse))
        ctx = make_ctx("http-request", {"url": "https://api.example.com/x"})

        result = await handler.execute(ctx, handler.parse(ctx.node.config))

        assert result.error.code == "NETWORK_ERROR"
        assert result.error.retryable is True

    async def test_unsupported_scheme(self, registry):
        result = await registry.execute(make_ctx("http-request", {"url": "ftp://files.example.com/a"}))
        assert result.error.code == "INVALID_CONFIG"

        node = Node(id="n", type="http-request", config={"url": "file:///etc/passwd"})
        assert "unsupported scheme" in registry.validate_node(node)


class TestMessaging:
    async def test_email_sent_to_all_recipients(self, registry, mailer):
        ctx = make_ctx("email-send", {
            "to": "ops@example.com; lead@example.com",
            "cc": ["audit@example.com"],
            "subject": "Ticket from {{ name }}",
            "body": "Urgency is {{ urgency }}",
            "html": "<b>{{ urgency }}</b>",
        }, payload={"name": "Ada", "urgency": "critical"})

        result = await registry.execute(ctx)

        assert result.success
        assert result.output["to"] == ["ops@example.com", "lead@example.com"]
        sent = mailer.sent[0]
        assert sent["recipients"] == ["ops@example.com", "lead@example.com", "audit@example.com"]
        assert sent["message"]["Subject"] == "Ticket from Ada"
        assert sent["message"]["From"] == "engine@example.com"
        assert sent["message"]["Cc"] == "audit@example.com"

    async def test_invalid_recipient(self, registry, mailer):
        result = await registry.execute(make_ctx("email-send", {"to": "not-an-address", "subject": "Hi"}))

        assert result.error.code == "INVALID_CONFIG"
        assert mailer.sent == []

    async def test_smtp_outage_is_retryable(self, registry, settings):
        class BrokenMailer:
            configured = True

            async def send(self, message, recipients):
                raise smtplib.SMTPServerDisconnected("gone")

        registry.register(EmailSendHandler(settings, mailer=BrokenMailer()))

        result = await registry.execute(make_ctx("email-send", {"to": "a@example.com", "subject": "Hi"}))

        assert result.error.code == "NETWORK_ERROR"
        assert result.error.retryable is True

    async def test_slack_uses_default_webhook(self, registry, http_recorder):
        ctx = make_ctx("slack-message", {"text": "Deploy by {{ name }}", "channel": "#ops"}, payload={"name": "Ada"})

        result = await registry.execute(ctx)

        assert result.success
        request = http_recorder.requests[-1]
        assert request.url.host == "hooks.slack.test"
        assert http_recorder.last_json() == {"text": "Deploy by Ada", "channel": "#ops"}

    async def test_slack_server_error_is_retryable(self, registry, http_recorder):
        http_recorder.respond("/services/T000/B000/XXX", 502, text="bad gateway")

        result = await registry.execute(make_ctx("slack-message", {"text": "hello"}))

        assert result.error.code == "HTTP_ERROR"
        assert result.error.retryable is True

    async def test_slack_without_webhook(self, settings):
        handler = SlackMessageHandler(settings.model_copy(update={"slack_webhook_url": None}))
        ctx = make_ctx("slack-message", {"text": "hello"})

        result = await handler.execute(ctx, handler.parse(ctx.node.config))

        assert result.error.code == "INVALID_CONFIG"


class TestAiPrompt:
    async def test_prompt_is_resolved_and_sent(self, registry, chat_factory, settings):
        ctx = make_ctx("ai-prompt", {
            "prompt": "Reply to {{ name }} about {{ topic }}",
            "systemPrompt": "You are a support agent for {{ variables.team }}",
            "temperature": 0.2,
        }, payload={"name": "Ada", "topic": "billing"})

        result = await registry.execute(ctx)

        assert result.success
        assert result.output == {"text": "Thanks for reaching out!", "model": settings.ai_model}
        call = chat_factory.calls[0]
        assert call["temperature"] == 0.2
        system, human = call["messages"]
        assert isinstance(system, SystemMessage)
        assert system.content == "You are a support agent for support"
        assert isinstance(human, HumanMessage)
        assert human.content == "Reply to Ada about billing"

    async def test_json_output(self, registry, settings, make_chat_factory):
        registry.register(AiPromptHandler(settings, model_factory=make_chat_factory('{"label": "billing"}')))

        result = await registry.execute(make_ctx("ai-prompt", {"prompt": "Classify", "outputFormat": "json"}))

        assert result.output["data"] == {"label": "billing"}

    async def test_invalid_json_reply(self, registry, settings, make_chat_factory):
        registry.register(AiPromptHandler(settings, model_factory=make_chat_factory("not json")))

        result = await registry.execute(make_ctx("ai-prompt", {"prompt": "Classify", "outputFormat": "json"}))

        assert result.error.code == "HANDLER_EXCEPTION"
        assert result.error.retryable is False

    async def test_connection_error_is_retryable(self, registry, settings):
        class Unreachable:
            async def ainvoke(self, messages):
                raise openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1"))

        registry.register(AiPromptHandler(settings, model_factory=lambda *args: Unreachable()))

        result = await registry.execute(make_ctx("ai-prompt", {"prompt": "Hello"}))

        assert result.error.code == "NETWORK_ERROR"
        assert result.error.retryable is True

    async def test_missing_api_key(self, settings):
        handler = AiPromptHandler(settings.model_copy(update={"openai_api_key": None}))
        ctx = make_ctx("ai-prompt", {"prompt": "Hello"})

        result = await handler.execute(ctx, handler.parse(ctx.node.config))

        assert result.error.code == "INVALID_CONFIG"


class TestData:
    async def test_transform_mapping(self, registry):
        ctx = make_ctx("transform", {
            "mode": "mapping",
            "mappings": [
                {"target": "customer.name", "source": "{{ name }}"},
                {"target": "customer.tier", "source": "{{ tier }}", "default": "free"},
            ],
        }, payload={"name": "Ada"})

        result = await registry.execute(ctx)

        assert result.output == {"customer": {"name": "Ada", "tier": "free"}}

    async def test_filter_items(self, registry):
        ctx = make_ctx("filter", {
            "items": "{{ fetch.items }}",
            "conditions": [{"field": "score", "operator": "gte", "value": 5}],
        }, node_outputs={"fetch": {"items": [{"score": 9}, {"score": 2}, {"score": 5}]}})

        result = await registry.execute(ctx)

        assert result.output["filtered"] == [{"score": 9}, {"score": 5}]
        assert result.output["counts"] == {"total": 3, "filtered": 2, "removed": 1}

    async def test_filter_requires_list(self, registry):
        result = await registry.execute(make_ctx("filter", {"items": "not a list"}))
        assert result.error.code == "INVALID_CONFIG"

    async def test_merge_modes(self, registry):
        inputs = {"a": [1, 2], "b": 3, "c": None}

        appended = await registry.execute(make_ctx("merge", {"mode": "append"}, inputs=inputs))
        first = await registry.execute(make_ctx("merge", {"mode": "first"}, inputs=inputs))

        assert appended.output == {"items": [1, 2, 3], "count": 3}
        assert first.output == [1, 2]


class TestStore:
    async def write(self, registry, config, org_id="org-test"):
        return await registry.execute(make_ctx("store-write", {"collection": "tickets", **config}, org_id=org_id))

    async def query(self, registry, config=None, org_id="org-test"):
        return await registry.execute(make_ctx("store-query", {"collection": "tickets", **(config or {})},
                                               org_id=org_id))

    async def test_insert_query_update_delete(self, registry):
        for priority, title in [(1, "low"), (3, "high"), (2, "mid")]:
            inserted = await self.write(registry, {"document": {"title": title, "priority": priority}})
            assert inserted.output["count"] == 1

        ordered = await self.query(registry, {"sortBy": "priority", "sortOrder": "desc", "limit": 2})
        assert [doc["title"] for doc in ordered.output["documents"]] == ["high", "mid"]

        updated = await self.write(registry, {
            "operation": "update",
            "document": {"status": "closed"},
            "conditions": [{"field": "priority", "operator": "lt", "value": 3}],
        })
        assert updated.output["count"] == 2

        closed = await self.query(registry, {"conditions": [{"field": "status", "operator": "eq", "value": "closed"}]})
        assert sorted(doc["title"] for doc in closed.output["documents"]) == ["low", "mid"]

        deleted = await self.write(registry, {
            "operation": "delete",
            "conditions": [{"field": "status", "operator": "eq", "value": "closed"}],
        })
        assert deleted.output["count"] == 2
        assert (await self.query(registry)).output["count"] == 1

    async def test_upsert_inserts_when_missing(self, registry):
        result = await self.write(registry, {
            "operation": "upsert",
            "document": {"email": "ada@example.com", "visits": 1},
            "conditions": [{"field": "email", "operator": "eq", "value": "ada@example.com"}],
        })

        assert result.output["operation"] == "upsert"
        assert "insertedId" in result.output

    async def test_collections_are_per_org(self, registry):
        await self.write(registry, {"document": {"title": "mine"}})

        assert (await self.query(registry, org_id="org-other")).output["count"] == 0

    async def test_update_without_conditions_rejected(self, registry):
        result = await self.write(registry, {"operation": "update", "document": {"x": 1}})
        assert result.error.code == "INVALID_CONFIG"

        node = Node(id="n", type="store-write", config={"collection": "c", "operation": "delete"})
        assert "conditions are required" in registry.validate_node(node)


class TestLogic:
    async def test_conditional_with_structured_conditions(self, registry):
        ctx = make_ctx("conditional", {
            "conditions": [
                {"field": "plan", "operator": "eq", "value": "pro"},
                {"field": "seats", "operator": "gt", "value": 10},
            ],
            "combineWith": "or",
        }, payload={"plan": "free", "seats": 25})

        result = await registry.execute(ctx)

        assert result.branch == "true"
        assert [entry["result"] for entry in result.output["evaluatedConditions"]] == [False, True]

    async def test_delay_suspends_then_completes(self, registry):
        before = datetime.now(timezone.utc)

        first = await registry.execute(make_ctx("delay", {"duration": 2, "unit": "minutes"}))
        resumed = await registry.execute(make_ctx("delay", {"duration": 2, "unit": "minutes"}, resumed=True))

        assert first.suspend_until - before >= timedelta(minutes=2)
        assert resumed.suspend_until is None
        assert resumed.output["delayed"] is True

    async def test_delay_until_past_time_does_not_suspend(self, registry):
        past = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()

        result = await registry.execute(make_ctx("delay", {"until": past}))

        assert result.suspend_until is None
        assert result.output["delayed"] is False

    def test_delay_validation(self, registry):
        assert registry.validate_node(Node(id="d", type="delay", config={})) == "duration or until is required"
        assert "until" in registry.validate_node(Node(id="d", type="delay", config={"until": "tomorrow"}))

    async def test_form_trigger_output(self, registry):
        result = await registry.execute(make_ctx("form-trigger", {"formId": "contact"}, payload={"email": "a@b.c"}))

        assert result.output["formId"] == "contact"
        assert result.output["submission"] == {"email": "a@b.c"}
        assert result.output["payload"] == {"email": "a@b.c"}


class TestNodeExecutor:
    async def test_unknown_node_type(self, registry):
        result = await registry.execute(make_ctx("teleport", {}))
        assert result.error.code == "UNKNOWN_NODE_TYPE"

    async def test_required_input_resolving_empty(self, registry, http_recorder):
        result = await registry.execute(make_ctx("http-request", {"url": "{{ missing_url }}"}))

        assert result.error.code == "MISSING_REQUIRED_INPUT"
        assert http_recorder.requests == []

    async def test_invalid_config_after_resolution(self, registry):
        result = await registry.execute(make_ctx("transform", {"mode": "{{ mode }}"}, payload={"mode": "weird"}))
        assert result.error.code == "INVALID_CONFIG"

    async def test_node_timeout(self, registry):
        class Sleeper(NodeHandler):
            node_type = "transform"

            async def execute(self, ctx, config):
                await asyncio.sleep(2)
                return NodeResult(output="late")

        registry.register(Sleeper())

        result = await registry.execute(make_ctx("transform", {}, timeout=0.1))

        assert result.error.code == "NODE_TIMEOUT"
        assert result.error.retryable is True

    async def test_handler_exception_is_captured(self, registry):
        class Exploding(NodeHandler):
            node_type = "transform"

            async def execute(self, ctx, config):
                raise RuntimeError("kaboom")

        registry.register(Exploding())

        result = await registry.execute(make_ctx("transform", {}))

        assert result.error.code == "HANDLER_EXCEPTION"
        assert "kaboom" in result.error.message
        assert result.error.retryable is False

    def test_register_rejects_unknown_kind(self, registry):
        class Custom(NodeHandler):
            node_type = "custom"

        with pytest.raises(ValueError):
            registry.register(Custom())

    def test_validate_reports_bad_expression(self, registry):
        node = Node(id="n", type="slack-message", config={"text": "Hi {{ name( }}"})
        assert registry.validate_node(node).startswith("config.text")
