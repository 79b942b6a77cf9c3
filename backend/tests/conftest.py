import pytest
from fastapi.testclient import TestClient
from dotenv import load_dotenv
from unittest.mock import AsyncMock

# Load the test environment before any app import so Settings picks it up.
load_dotenv(dotenv_path="backend/.env.test")

from app.main import app # noqa: E402
from app.models.flow import Flow # noqa: E402
from app.services.cache_service import CacheService, cache_service # noqa: E402
from app.services.flow_repository import InMemoryFlowRepository # noqa: E402
from app.services.flow_runtime import FlowRuntime # noqa: E402
from app.services.session_store import InMemorySessionStore # noqa: E402
from app.services import security_service # noqa: E402
from app.services.whatsapp_service import whatsapp_service # noqa: E402
from app.config.settings import settings # noqa: E402


@pytest.fixture(autouse=True)
def no_redis(monkeypatch):
    """Tests never talk to Redis: locks fall back to in-process locks, dedupe is off."""
    monkeypatch.setattr(cache_service, "redis", None)
    monkeypatch.setattr(security_service.rate_limiter, "redis", None)
    monkeypatch.setattr(whatsapp_service.circuit_breaker, "redis", None)


def _connections(edges):
    connections = []
    for i, edge in enumerate(edges):
        source, target = edge[0], edge[1]
        handle = edge[2] if len(edge) > 2 else None
        connections.append({"id": f"c{i}", "source": source, "target": target, "sourceHandle": handle})
    return connections


@pytest.fixture
def flow_factory():
    """
    Builds a Flow from step dicts and (source, target[, handle]) edges.
    The start step is added automatically unless one is given.
    """
    def _build(steps, edges=(), flow_id="flow-1", name="Test flow", trigger=None, is_active=True):
        steps = list(steps)
        if not any(s["type"] == "start" for s in steps):
            steps.insert(0, {"id": "start", "type": "start", "config": {"trigger": trigger or {"type": "none"}}})
        return Flow.model_validate({
            "id": flow_id,
            "name": name,
            "isActive": is_active,
            "steps": steps,
            "connections": _connections(edges),
        })
    return _build


@pytest.fixture
def hi_flow(flow_factory):
    """'Hi' starts a two-option menu; each option sends a different message."""
    return flow_factory(
        steps=[
            {"id": "menu", "type": "question_multiple", "config": {
                "message": "Pick one",
                "options": [{"id": "opt-sales", "label": "Sales"}, {"id": "opt-support", "label": "Support"}],
                "storeKey": "department",
            }},
            {"id": "sales", "type": "send_message", "config": {"text": "Sales will call you, {{name}}"}},
            {"id": "support", "type": "send_message", "config": {"text": "Support is on it"}},
        ],
        edges=[("start", "menu"), ("menu", "sales", "opt-sales"), ("menu", "support", "opt-support")],
        flow_id="flow-hi",
        name="Hi menu",
        trigger={"type": "message_received", "matchMode": "contains", "keywords": ["Hi"]},
    )


@pytest.fixture
def session_store():
    return InMemorySessionStore()


@pytest.fixture
def flow_repo():
    return InMemoryFlowRepository()


@pytest.fixture
def dispatcher():
    mock = AsyncMock()
    mock.dispatch.return_value = True
    mock.dispatch_all.side_effect = lambda actions: [True] * len(actions)
    return mock


@pytest.fixture
def delegate():
    return AsyncMock()


@pytest.fixture
def local_cache():
    cache = CacheService(settings.redis_url)
    cache.redis = None
    return cache


@pytest.fixture
def runtime(session_store, flow_repo, dispatcher, delegate, local_cache):
    return FlowRuntime(
        store=session_store,
        flows=flow_repo,
        dispatcher=dispatcher,
        delegate=delegate,
        cache=local_cache,
    )


@pytest.fixture(scope="function")
def test_client(mocker):
    """
    Provides a TestClient for API integration tests.
    The runtime entry point is mocked so webhooks never start real flows.
    """
    mocker.patch("app.routes.webhooks.flow_runtime.handle_inbound_event", new_callable=AsyncMock)
    mocker.patch("app.utils.lifecycle.whatsapp_service.cleanup", new_callable=AsyncMock)
    mocker.patch("app.utils.lifecycle.notification_service.cleanup", new_callable=AsyncMock)

    # The app's lifespan (startup/shutdown events) is managed by the TestClient
    with TestClient(app) as client:
        yield client
