"""
Pytest fixtures for engine tests.

Every test gets its own SQLite file and freshly wired services; outbound
HTTP, SMTP and chat models are replaced with in-memory fakes.
"""

import json
from typing import Any, Dict, List, Optional

import httpx
import pytest
from langchain_core.messages import AIMessage

from core.config import Settings
from core.database import Database
from services.execution.dispatcher import AuthContext, OrgAuthorizer, TriggerDispatcher
from services.execution.queue import JobQueue
from services.execution.records import ExecutionRecordManager
from services.execution.walker import GraphWalker
from services.execution.worker import WorkflowWorker
from services.node_executor import NodeExecutor
from services.usage import DatabaseUsageMeter
from services.workflow import WorkflowService

ORG_ID = "org-test"


class FakeMailer:
    """Collects messages instead of talking to SMTP."""

    configured = True

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def send(self, message, recipients):
        self.sent.append({"message": message, "recipients": list(recipients)})


class FakeChatModel:
    def __init__(self, reply: str, calls: List[Dict[str, Any]], **kwargs):
        self.reply = reply
        self.calls = calls
        self.kwargs = kwargs

    async def ainvoke(self, messages):
        self.calls.append({"messages": messages, **self.kwargs})
        return AIMessage(content=self.reply)


class FakeChatFactory:
    def __init__(self, reply: str = "ok"):
        self.reply = reply
        self.calls: List[Dict[str, Any]] = []

    def __call__(self, model, temperature, max_tokens):
        return FakeChatModel(self.reply, self.calls, model=model, temperature=temperature,
                             max_tokens=max_tokens)


class HttpRecorder:
    """httpx.MockTransport handler with canned responses per path."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.routes: Dict[str, Dict[str, Any]] = {}

    def respond(self, path: str, status_code: int = 200, json_body: Any = None, text: Optional[str] = None):
        if json_body is not None:
            self.routes[path] = {"status_code": status_code, "json": json_body}
        else:
            self.routes[path] = {"status_code": status_code, "text": text or ""}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(200, json={"ok": True, "path": request.url.path})
        return httpx.Response(**route)

    def last_json(self) -> Any:
        return json.loads(self.requests[-1].content)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/engine.db",
        log_format="console",
        log_level="WARNING",
        worker_enabled=False,
        queue_max_pending_per_org=100,
        default_execution_limit=1000,
        default_node_timeout=5.0,
        slack_webhook_url="https://hooks.slack.test/services/T000/B000/XXX",
        smtp_from_email="engine@example.com",
        cron_secret=None,
    )


@pytest.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
def job_queue(database, settings):
    return JobQueue(
        database,
        max_pending_per_org=settings.queue_max_pending_per_org,
        default_max_attempts=settings.job_default_max_attempts,
        visibility_timeout=settings.visibility_timeout,
    )


@pytest.fixture
def records(database):
    return ExecutionRecordManager(database)


@pytest.fixture
def usage_meter(database, settings):
    return DatabaseUsageMeter(database, default_limit=settings.default_execution_limit)


@pytest.fixture
def http_recorder():
    return HttpRecorder()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def chat_factory():
    return FakeChatFactory(reply="Thanks for reaching out!")


@pytest.fixture
def make_chat_factory():
    return FakeChatFactory


@pytest.fixture
def registry(database, settings, http_recorder, mailer, chat_factory):
    return NodeExecutor(
        database,
        settings,
        http_transport=httpx.MockTransport(http_recorder),
        mailer=mailer,
        chat_model_factory=chat_factory,
    )


@pytest.fixture
def walker(database, records, registry, settings):
    return GraphWalker(database, records, registry, settings)


@pytest.fixture
def dispatcher(database, job_queue, records, usage_meter):
    return TriggerDispatcher(database, job_queue, records, usage_meter, OrgAuthorizer())


@pytest.fixture
def worker(job_queue, walker, records, settings):
    return WorkflowWorker(job_queue, walker, records, settings)


@pytest.fixture
def workflow_service(database, registry):
    return WorkflowService(database, registry)


@pytest.fixture
def org_auth():
    return AuthContext(org_id=ORG_ID, user_id="user-1", actor="user-1")


@pytest.fixture
def make_workflow(workflow_service):
    """Create and publish a workflow; returns the active Workflow row."""

    async def _make(nodes, edges, settings=None, variables=None, embed_settings=None,
                    name="Test workflow", publish=True, org_id=ORG_ID):
        workflow = await workflow_service.create_workflow(
            org_id=org_id,
            name=name,
            definition={
                "nodes": nodes,
                "edges": edges,
                "settings": settings or {},
                "variables": variables or {},
            },
            embed_settings=embed_settings,
        )
        if publish:
            workflow = await workflow_service.publish(workflow.id, org_id)
        return workflow

    return _make


@pytest.fixture
def drain(worker):
    """Run due jobs until the queue has nothing claimable."""

    async def _drain(limit: int = 20) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        for _ in range(limit):
            batch = await worker.process_batch(10)
            if not batch["processed"]:
                break
            results.extend(batch["results"])
        return results

    return _drain
