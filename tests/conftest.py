"""Shared test fixtures for the flow engine."""
import pytest

import config.settings as settings_module
from backend.connector import MockIntegrationClient
from channels.base import RecordingDeliverer
from config.settings import (
    DatabaseConfig, DeliveryConfig, EngineConfig, IntegrationConfig, Settings,
)
from core.engine import FlowEngine, build_engine
from database.store_factory import reset_store
from database.store_memory import InMemorySessionStore
from flows.registry import FlowRegistry
from handlers.nodes import create_default_registry
from models.schemas import Edge, FlowDefinition, Node


def make_flow(flow_id: str, nodes: list[tuple], edges: list[tuple], **kwargs) -> FlowDefinition:
    """nodes: (id, type, data); edges: (source, target) or (source, target, handle)."""
    return FlowDefinition(
        id=flow_id,
        nodes=[Node(id=n[0], type=n[1], data=n[2] if len(n) > 2 else {}) for n in nodes],
        edges=[
            Edge(id=f"e{i}", source=e[0], target=e[1],
                 source_handle=e[2] if len(e) > 2 else None)
            for i, e in enumerate(edges)
        ],
        **kwargs,
    )


@pytest.fixture
def build_flow():
    return make_flow


@pytest.fixture
def test_settings() -> Settings:
    """Settings with zero backoff and short claim waits so tests run fast."""
    return Settings(
        engine=EngineConfig(
            lease_seconds=30,
            claim_wait_seconds=0.05,
            claim_poll_interval=0.01,
            max_steps_per_turn=20,
        ),
        delivery=DeliveryConfig(max_attempts=3, backoff_base=0, backoff_max=0),
        integration=IntegrationConfig(
            type="mock", timeout_seconds=1, max_attempts=3, backoff_base=0, backoff_max=0,
        ),
        database=DatabaseConfig(store_backend="memory"),
    )


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch, test_settings):
    monkeypatch.setattr(settings_module, "_settings", test_settings)
    reset_store()
    yield
    reset_store()


@pytest.fixture
def deliverer() -> RecordingDeliverer:
    return RecordingDeliverer()


@pytest.fixture
def integration() -> MockIntegrationClient:
    return MockIntegrationClient()


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def make_engine(test_settings, deliverer, integration, store):
    """Build an engine over the given flows with the shared fixtures as collaborators."""
    def _make(*flows: FlowDefinition, settings: Settings = None,
              deliverer_=None, integration_=None, store_=None) -> FlowEngine:
        settings = settings or test_settings
        handlers = create_default_registry(
            deliverer_ or deliverer, integration_ or integration,
            delivery_config=settings.delivery,
            integration_config=settings.integration,
            unmatched_policy=settings.engine.unmatched_reply_policy,
        )
        registry = FlowRegistry(known_types=handlers.types)
        for flow in flows:
            registry.publish(flow)
        engine = build_engine(
            settings,
            store=store_ or store,
            flows=registry,
            deliverer=deliverer_ or deliverer,
            integration=integration_ or integration,
        )
        return engine
    return _make


# ──────────────────────────────────────────────────────────────
#  Flows
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def age_flow() -> FlowDefinition:
    """start → message("Hi") → condition(age >= 18) → Adult | Minor"""
    return make_flow(
        "age_check",
        nodes=[
            ("start", "start"),
            ("hi", "message", {"message": "Hi"}),
            ("check", "condition", {"condition": "age >= 18"}),
            ("adult", "message", {"message": "Adult"}),
            ("minor", "message", {"message": "Minor"}),
        ],
        edges=[
            ("start", "hi"),
            ("hi", "check"),
            ("check", "adult", "true"),
            ("check", "minor", "false"),
        ],
        variables={"age": "number"},
    )


@pytest.fixture
def greeting_flow() -> FlowDefinition:
    """Keyword-triggered straight chain of messages."""
    return make_flow(
        "greeting",
        nodes=[
            ("start", "start"),
            ("m1", "message", {"message": "Hello!"}),
            ("m2", "message", {"message": "Welcome aboard."}),
        ],
        edges=[("start", "m1"), ("m1", "m2")],
        trigger_keywords=["hi", "hello"],
    )


@pytest.fixture
def menu_flow() -> FlowDefinition:
    """start → quickReply(sales | support) → reply per branch."""
    return make_flow(
        "menu",
        nodes=[
            ("start", "start"),
            ("menu", "quickReply", {
                "body": "Pick one",
                "buttons": [{"id": "sales", "title": "Sales"}, {"id": "support", "title": "Support"}],
            }),
            ("sales_msg", "message", {"message": "Sales it is, {{name}}"}),
            ("support_msg", "message", {"message": "Support will call you"}),
        ],
        edges=[
            ("start", "menu"),
            ("menu", "sales_msg", "sales"),
            ("menu", "support_msg", "support"),
        ],
        trigger_keywords=["menu"],
    )


@pytest.fixture
def api_flow() -> FlowDefinition:
    """start → apiCall(crm lookup) → message using the merged response."""
    return make_flow(
        "lookup",
        nodes=[
            ("start", "start"),
            ("fetch", "apiCall", {
                "url": "https://crm.example.com/customers",
                "method": "POST",
                "body": {"phone": "{{phone}}"},
                "saveAs": "crm",
            }),
            ("reply", "message", {"message": "Welcome back {{crm.customer.name}}"}),
        ],
        edges=[("start", "fetch"), ("fetch", "reply")],
    )
