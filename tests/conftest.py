"""Shared fixtures: a controllable clock, in-memory backends and workflow builders."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from nurture.audit import AuditLog
from nurture.config import RunnerConfig
from nurture.credits import CreditLedger
from nurture.dispatch import WorkflowOrchestrator
from nurture.handlers import EngineServices, StepContext
from nurture.persistence import InMemoryAutomationRepository, reset_repository
from nurture.persistence.models import (
    Contact,
    ContactState,
    SenderConfig,
    Workflow,
    WorkflowStatus,
)
from nurture.transports import InMemoryMailTransport

USER_ID = "user-1"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **delta):
        self.now = self.now + timedelta(**delta)
        return self.now


class WebhookEndpoint:
    """httpx.MockTransport handler recording requests."""

    def __init__(self):
        self.requests = []
        self.status_code = 200
        self.text = '{"ok": true}'
        self.error = None

    def __call__(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, text=self.text)


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch):
    for name in (
        "NURTURE_CONFIG",
        "NURTURE_DATABASE_URL",
        "DATABASE_URL",
        "NURTURE_SERVICE_KEY",
        "NURTURE_JWT_SECRET",
        "NURTURE_MAIL_BACKEND",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_repository()
    yield
    reset_repository()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repo():
    return InMemoryAutomationRepository()


@pytest.fixture
def mail():
    return InMemoryMailTransport()


@pytest.fixture
def endpoint():
    return WebhookEndpoint()


@pytest.fixture
def http(endpoint):
    return httpx.AsyncClient(transport=httpx.MockTransport(endpoint))


@pytest.fixture
def services(repo, mail, http, clock):
    return EngineServices(
        repository=repo,
        ledger=CreditLedger(repo),
        mail=mail,
        http=http,
        audit=AuditLog(repo, clock=clock),
        settings=RunnerConfig(),
    )


@pytest.fixture
def orchestrator(services, clock):
    return WorkflowOrchestrator(services, clock=clock)


@pytest.fixture
def sender(repo):
    config = SenderConfig(
        id="sender-1",
        user_id=USER_ID,
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_username="owner@example.com",
        smtp_password="secret",
        sender_name="Olive Owner",
    )
    repo._senders[config.id] = config
    return config


@pytest.fixture
def graph_workflow():
    """Build a live workflow from ``(id, kind, config)`` nodes and edge tuples."""

    def build(nodes, edges, status=WorkflowStatus.LIVE, **fields):
        return Workflow(
            id=fields.pop("id", "wf-1"),
            user_id=fields.pop("user_id", USER_ID),
            name=fields.pop("name", "Welcome series"),
            status=status,
            settings={
                "workflow_graph": {
                    "nodes": [
                        {"id": node_id, "kind": kind, "title": node_id, "config": config}
                        for node_id, kind, config in nodes
                    ],
                    "edges": [
                        {
                            "id": f"e{index}",
                            "source": edge[0],
                            "target": edge[1],
                            "sourceHandle": edge[2] if len(edge) > 2 else "",
                        }
                        for index, edge in enumerate(edges)
                    ],
                }
            },
            **fields,
        )

    return build


@pytest.fixture
def enroll(repo, clock):
    """Insert an active, due contact for a workflow."""

    async def add(workflow, email="ada@example.com", full_name="Ada Lovelace", **state):
        contact = Contact(
            workflow_id=workflow.id,
            user_id=workflow.user_id,
            email=email,
            full_name=full_name,
            next_run_at=clock(),
            state=ContactState(full_name=full_name, email=email, **state),
        )
        return await repo.create_contact(contact)

    return add


@pytest.fixture
def step_context(services, clock):
    """Build a :class:`StepContext` for calling a handler directly."""

    def build(config, state=None, node=None, contact=None, workflow=None, **fields):
        workflow = workflow or Workflow(
            id="wf-1", user_id=USER_ID, name="Welcome series", status=WorkflowStatus.LIVE
        )
        contact = contact or Contact(
            id="contact-1",
            workflow_id=workflow.id,
            user_id=workflow.user_id,
            email="ada@example.com",
            full_name="Ada Lovelace",
        )
        step_key = fields.pop("step_key", node.id if node is not None else "step_1")
        return StepContext(
            workflow=workflow,
            contact=contact,
            state=state if state is not None else contact.state,
            config=config,
            step_index=fields.pop("step_index", 0),
            step_key=step_key,
            wait_key=fields.pop("wait_key", step_key),
            title=fields.pop("title", "Step"),
            now=clock(),
            services=services,
            node=node,
        )

    return build
