"""
Tests for the execution coordinator: claim discipline, failure handling,
duplicate suppression and the per-turn loop guard.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from backend.connector import MockIntegrationClient
from channels.base import RecordingDeliverer
from config.settings import DeliveryConfig, EngineConfig, IntegrationConfig, Settings
from core.engine import FlowEngine
from core.errors import DeliveryError
from flows.registry import FlowRegistry
from handlers import Advance, NodeHandler, create_default_registry
from models.schemas import InboundEvent, SessionStatus, TurnStatus


def _event(text=None, conv="conv-1", **kwargs) -> InboundEvent:
    return InboundEvent(conversation_id=conv, text=text, **kwargs)


class BlockingDeliverer(RecordingDeliverer):
    """Holds the first delivery until released, so a turn stays in flight."""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.gate = asyncio.Event()

    async def deliver(self, conversation_id, content, buttons=None, metadata=None):
        self.started.set()
        await self.gate.wait()
        return await super().deliver(conversation_id, content, buttons, metadata)


class RejectingDeliverer(RecordingDeliverer):
    """Fails every delivery whose text starts with a given prefix."""

    def __init__(self, prefix: str):
        super().__init__()
        self.prefix = prefix

    async def deliver(self, conversation_id, content, buttons=None, metadata=None):
        if content.startswith(self.prefix):
            raise DeliveryError("gateway down")
        return await super().deliver(conversation_id, content, buttons, metadata)


class SlowIntegration(MockIntegrationClient):
    """Each call takes `delay` seconds."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    async def call(self, endpoint, payload=None, timeout=None, method="POST"):
        await asyncio.sleep(self.delay)
        return await super().call(endpoint, payload, timeout=timeout, method=method)


class SetVariableHandler(NodeHandler):
    node_type = "setVariable"

    async def handle(self, node, session, graph):
        session.variables[node.data["name"]] = node.data["value"]
        return Advance()


class ExplodingHandler(NodeHandler):
    node_type = "explode"

    async def handle(self, node, session, graph):
        raise RuntimeError("boom")


# ──────────────────────────────────────────────────────────────
#  Claim exclusivity
# ──────────────────────────────────────────────────────────────

class TestClaimExclusivity:
    @pytest.mark.asyncio
    async def test_concurrent_events_run_one_turn_and_report_busy(self, make_engine, greeting_flow):
        deliverer = BlockingDeliverer()
        engine = make_engine(greeting_flow, deliverer_=deliverer)

        first = asyncio.create_task(engine.start_or_resume("conv-1", _event("hi")))
        await deliverer.started.wait()

        second = await engine.start_or_resume("conv-1", _event("hello again"))
        assert second.status == TurnStatus.BUSY

        deliverer.gate.set()
        result = await first
        assert result.status == TurnStatus.COMPLETED
        assert [m.content for m in deliverer.outbox] == ["Hello!", "Welcome aboard."]

        sessions = await engine.list_sessions("conv-1")
        assert len(sessions) == 1
        assert sessions[0].status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_racing_starts_create_a_single_session(self, make_engine, greeting_flow):
        deliverer = BlockingDeliverer()
        engine = make_engine(greeting_flow, deliverer_=deliverer)

        tasks = [asyncio.create_task(engine.start_or_resume("conv-1", _event("hi"))) for _ in range(3)]
        await deliverer.started.wait()
        await asyncio.sleep(0.3)
        deliverer.gate.set()
        results = await asyncio.gather(*tasks)

        statuses = sorted(r.status.value for r in results)
        assert statuses == ["busy", "busy", "completed"]
        assert len(await engine.list_sessions("conv-1")) == 1
        assert len(deliverer.outbox) == 2

    @pytest.mark.asyncio
    async def test_abandoned_turn_is_recorded_as_aborted(self, make_engine, menu_flow, store):
        engine = make_engine(menu_flow)
        first = await engine.start_or_resume("conv-1", _event("menu"))
        assert first.status == TurnStatus.WAITING_FOR_INPUT

        # a claimant that crashed mid-turn: lease already expired, status still running
        assert await store.claim(first.session_id, "crashed", 0) is not None
        await asyncio.sleep(0.01)

        result = await engine.start_or_resume("conv-1", _event(selected_handle="sales"))
        assert result.status == TurnStatus.FAILED
        assert result.error.code == "aborted"
        session = await engine.get_session_state(first.session_id)
        assert session.status == SessionStatus.FAILED
        assert session.current_node_id == "menu"
        assert "menu.choice" not in session.variables

    @pytest.mark.asyncio
    async def test_lost_claim_reports_busy(self, make_engine, greeting_flow, store, monkeypatch):
        engine = make_engine(greeting_flow)
        monkeypatch.setattr(store, "release", AsyncMock(return_value=False))
        result = await engine.start_or_resume("conv-1", _event("hi"))
        assert result.status == TurnStatus.BUSY

    @pytest.mark.asyncio
    async def test_abort_before_first_step_names_the_start_node(self, make_engine, greeting_flow, store):
        engine = make_engine(greeting_flow)
        session = await store.create_session("greeting", 1, "conv-1")
        assert await store.claim(session.id, "crashed", 0) is not None
        await asyncio.sleep(0.01)

        result = await engine.start_or_resume("conv-1", _event("hi", event_id="evt-7"))
        assert result.status == TurnStatus.FAILED
        assert result.error.code == "aborted"
        assert result.error.node_id == "start"
        stored = await engine.get_session_state(session.id)
        assert stored.last_error.node_id == "start"
        assert stored.processed_events == []

        # the event never ran, so its redelivery starts the flow
        retry = await engine.start_or_resume("conv-1", _event("hi", event_id="evt-7"))
        assert retry.status == TurnStatus.COMPLETED
        assert retry.session_id != session.id

    @pytest.mark.asyncio
    async def test_long_turn_renews_its_lease(self, make_engine, build_flow, deliverer):
        settings = Settings(
            engine=EngineConfig(lease_seconds=0.25, claim_wait_seconds=0, claim_poll_interval=0.01),
            delivery=DeliveryConfig(max_attempts=1, backoff_base=0, backoff_max=0),
            integration=IntegrationConfig(type="mock", timeout_seconds=1, max_attempts=1,
                                          backoff_base=0, backoff_max=0),
        )
        flow = build_flow(
            "slow",
            [("start", "start"),
             ("a1", "apiCall", {"url": "https://crm.example.com/a"}),
             ("a2", "apiCall", {"url": "https://crm.example.com/b"}),
             ("done", "message", {"message": "done"})],
            [("start", "a1"), ("a1", "a2"), ("a2", "done")],
        )
        engine = make_engine(flow, settings=settings, integration_=SlowIntegration(0.15))

        first = asyncio.create_task(engine.start_or_resume("conv-1", _event("go")))
        # past the initial lease, while a2 is still running
        await asyncio.sleep(0.27)
        second = await engine.start_or_resume("conv-1", _event("again"))
        assert second.status == TurnStatus.BUSY

        result = await first
        assert result.status == TurnStatus.COMPLETED
        assert [m.content for m in deliverer.outbox] == ["done"]
        session = await engine.get_session_state(result.session_id)
        assert session.status == SessionStatus.COMPLETED
        assert session.last_error is None

    @pytest.mark.asyncio
    async def test_turn_stops_when_renewal_fails(self, make_engine, greeting_flow, store,
                                                 deliverer, monkeypatch):
        engine = make_engine(greeting_flow)
        monkeypatch.setattr(store, "renew", AsyncMock(return_value=False))
        result = await engine.start_or_resume("conv-1", _event("hi"))
        assert result.status == TurnStatus.BUSY
        assert deliverer.outbox == []
        stored = await engine.get_session_state(result.session_id)
        assert stored.status == SessionStatus.RUNNING
        assert stored.claim_token is not None


# ──────────────────────────────────────────────────────────────
#  Duplicate suppression
# ──────────────────────────────────────────────────────────────

class TestDuplicateEvents:
    @pytest.mark.asyncio
    async def test_redelivered_event_does_not_advance(self, make_engine, menu_flow, deliverer):
        engine = make_engine(menu_flow)
        first = await engine.start_or_resume("conv-1", _event("menu", event_id="wamid.1"))
        again = await engine.start_or_resume("conv-1", _event("menu", event_id="wamid.1"))

        assert first.status == TurnStatus.WAITING_FOR_INPUT
        assert again.duplicate is True
        assert again.status == TurnStatus.WAITING_FOR_INPUT
        assert again.current_node_id == "menu"
        assert len(deliverer.outbox) == 1

    @pytest.mark.asyncio
    async def test_duplicate_button_press_is_ignored(self, make_engine, build_flow, deliverer):
        flow = build_flow(
            "survey",
            [("start", "start"),
             ("q1", "quickReply", {"body": "Q1", "buttons": ["yes", "no"]}),
             ("q2", "quickReply", {"body": "Q2", "buttons": ["yes", "no"]}),
             ("done", "message", {"message": "Thanks"})],
            [("start", "q1"), ("q1", "q2", "yes"), ("q2", "done", "yes")],
        )
        engine = make_engine(flow)
        await engine.start_or_resume("conv-1", _event("start"))
        r1 = await engine.start_or_resume("conv-1", _event(selected_handle="yes", event_id="tap-1"))
        r2 = await engine.start_or_resume("conv-1", _event(selected_handle="yes", event_id="tap-1"))
        assert r1.current_node_id == "q2"
        assert r2.duplicate and r2.current_node_id == "q2"
        assert [m.content for m in deliverer.outbox] == ["Q1", "Q2"]

    @pytest.mark.asyncio
    async def test_redelivery_after_completion_is_ignored(self, make_engine, greeting_flow, deliverer):
        engine = make_engine(greeting_flow)
        first = await engine.start_or_resume("conv-1", _event("hi", event_id="wamid.1"))
        again = await engine.start_or_resume("conv-1", _event("hi", event_id="wamid.1"))

        assert first.status == TurnStatus.COMPLETED
        assert again.duplicate is True
        assert again.status == TurnStatus.COMPLETED
        assert again.session_id == first.session_id
        assert [m.content for m in deliverer.outbox] == ["Hello!", "Welcome aboard."]
        assert len(await engine.list_sessions("conv-1")) == 1

    @pytest.mark.asyncio
    async def test_new_event_after_completion_starts_over(self, make_engine, greeting_flow, deliverer):
        engine = make_engine(greeting_flow)
        first = await engine.start_or_resume("conv-1", _event("hi", event_id="wamid.1"))
        second = await engine.start_or_resume("conv-1", _event("hi", event_id="wamid.2"))
        assert not second.duplicate
        assert second.session_id != first.session_id
        assert len(deliverer.outbox) == 4

    @pytest.mark.asyncio
    async def test_redelivered_final_button_press_is_ignored(self, make_engine, menu_flow, deliverer):
        engine = make_engine(menu_flow)
        await engine.start_or_resume("conv-1", _event("menu", event_id="m-1"))
        done = await engine.start_or_resume("conv-1", _event(selected_handle="support", event_id="tap-1"))
        again = await engine.start_or_resume("conv-1", _event(selected_handle="support", event_id="tap-1"))

        assert done.status == TurnStatus.COMPLETED
        assert again.duplicate is True
        assert again.status == TurnStatus.COMPLETED
        assert again.session_id == done.session_id
        assert [m.content for m in deliverer.outbox] == ["Pick one", "Support will call you"]

    @pytest.mark.asyncio
    async def test_redelivery_after_failure_reports_the_failure(self, make_engine, menu_flow):
        engine = make_engine(menu_flow, deliverer_=RejectingDeliverer("Pick"))
        first = await engine.start_or_resume("conv-1", _event("menu", event_id="f-1"))
        again = await engine.start_or_resume("conv-1", _event("menu", event_id="f-1"))

        assert first.status == TurnStatus.FAILED
        assert again.duplicate is True
        assert again.status == TurnStatus.FAILED
        assert again.error.code == "delivery_error"
        assert len(await engine.list_sessions("conv-1")) == 1

    @pytest.mark.asyncio
    async def test_event_window_is_bounded(self, make_engine, build_flow, test_settings):
        test_settings.engine.processed_event_window = 2
        flow = build_flow(
            "repeat",
            [("start", "start"), ("q", "quickReply", {"body": "Again?", "buttons": ["again"]})],
            [("start", "q"), ("q", "q", "again")],
        )
        engine = make_engine(flow)
        result = await engine.start_or_resume("conv-1", _event("go", event_id="e1"))
        for i in range(2, 5):
            r = await engine.start_or_resume("conv-1", _event(selected_handle="again", event_id=f"e{i}"))
            assert r.status == TurnStatus.WAITING_FOR_INPUT
        session = await engine.get_session_state(result.session_id)
        assert session.processed_events == ["e3", "e4"]


# ──────────────────────────────────────────────────────────────
#  Failure handling
# ──────────────────────────────────────────────────────────────

class TestFailureHandling:
    @pytest.mark.asyncio
    async def test_failed_turn_keeps_last_persisted_position(self, make_engine, menu_flow):
        deliverer = RejectingDeliverer("Sales")
        engine = make_engine(menu_flow, deliverer_=deliverer)
        first = await engine.start_or_resume("conv-1", _event("menu", variables={"name": "Asha"}))

        result = await engine.start_or_resume("conv-1", _event(selected_handle="sales"))
        assert result.status == TurnStatus.FAILED
        assert result.error.code == "delivery_error"
        assert result.error.node_id == "sales_msg"

        session = await engine.get_session_state(first.session_id)
        assert session.status == SessionStatus.FAILED
        assert session.current_node_id == "menu"
        assert session.variables == {"name": "Asha"}
        assert session.last_error.node_id == "sales_msg"
        assert session.claim_token is None
        assert session.trace[-1].outcome == "fail"

    @pytest.mark.asyncio
    async def test_failed_session_is_not_resumed(self, make_engine, menu_flow):
        engine = make_engine(menu_flow, deliverer_=RejectingDeliverer("Pick"))
        first = await engine.start_or_resume("conv-1", _event("menu"))
        assert first.status == TurnStatus.FAILED
        second = await engine.start_or_resume("conv-1", _event("menu"))
        assert second.session_id != first.session_id

    @pytest.mark.asyncio
    async def test_unknown_node_type_fails_the_session(self, store, test_settings, build_flow):
        handlers = create_default_registry(RecordingDeliverer(), AsyncMock(),
                                           test_settings.delivery, test_settings.integration)
        flows = FlowRegistry()
        flows.publish(build_flow("f", [("start", "start"), ("x", "teleport")], [("start", "x")]))
        engine = FlowEngine(store, flows, handlers, test_settings)

        result = await engine.start_or_resume("conv-1", _event("go"))
        assert result.status == TurnStatus.FAILED
        assert result.error.code == "unknown_node_type"
        assert result.error.node_id == "x"

    @pytest.mark.asyncio
    async def test_handler_crash_is_contained(self, store, test_settings, build_flow):
        handlers = create_default_registry(RecordingDeliverer(), AsyncMock(),
                                           test_settings.delivery, test_settings.integration)
        handlers.register(ExplodingHandler())
        flows = FlowRegistry(handlers.types)
        flows.publish(build_flow("f", [("start", "start"), ("x", "explode")], [("start", "x")]))
        engine = FlowEngine(store, flows, handlers, test_settings)

        result = await engine.start_or_resume("conv-1", _event("go"))
        assert result.status == TurnStatus.FAILED
        assert result.error.code == "handler_crashed"
        assert "boom" in result.error.message

    @pytest.mark.asyncio
    async def test_cycle_without_suspension_hits_step_limit(self, make_engine, build_flow, test_settings):
        flow = build_flow(
            "loop",
            [("start", "start"), ("m", "message", {"message": "again"}),
             ("c", "condition", {"condition": "done == true"}), ("end", "message", {"message": "x"})],
            [("start", "m"), ("m", "c"), ("c", "m", "false"), ("c", "end", "true")],
        )
        engine = make_engine(flow)
        result = await engine.start_or_resume("conv-1", _event("go"))
        assert result.status == TurnStatus.FAILED
        assert result.error.code == "step_limit_exceeded"
        assert result.steps == test_settings.engine.max_steps_per_turn + 1


# ──────────────────────────────────────────────────────────────
#  Extensibility & trace
# ──────────────────────────────────────────────────────────────

class TestNodeRegistration:
    @pytest.mark.asyncio
    async def test_new_node_type_runs_without_engine_changes(self, store, test_settings, build_flow):
        deliverer = RecordingDeliverer()
        handlers = create_default_registry(deliverer, AsyncMock(),
                                           test_settings.delivery, test_settings.integration)
        handlers.register(SetVariableHandler())
        flows = FlowRegistry(handlers.types)
        flows.publish(build_flow(
            "f",
            [("start", "start"), ("set", "setVariable", {"name": "tier", "value": "gold"}),
             ("msg", "message", {"message": "You are {{tier}}"})],
            [("start", "set"), ("set", "msg")],
        ))
        engine = FlowEngine(store, flows, handlers, test_settings)

        result = await engine.start_or_resume("conv-1", _event("go"))
        assert result.status == TurnStatus.COMPLETED
        assert deliverer.outbox[0].content == "You are gold"
        session = await engine.get_session_state(result.session_id)
        assert session.variables == {"tier": "gold"}


class TestTrace:
    @pytest.mark.asyncio
    async def test_trace_records_each_step(self, make_engine, menu_flow):
        engine = make_engine(menu_flow)
        first = await engine.start_or_resume("conv-1", _event("menu"))
        await engine.start_or_resume("conv-1", _event(selected_handle="support"))
        session = await engine.get_session_state(first.session_id)
        assert [(t.node_id, t.outcome) for t in session.trace] == [
            ("start", "advance"),
            ("menu", "suspend"),
            ("menu", "resume:advance"),
            ("support_msg", "advance"),
        ]
        assert session.trace[2].handle == "support"

    @pytest.mark.asyncio
    async def test_trace_is_capped(self, make_engine, build_flow):
        settings = Settings(engine=EngineConfig(trace_limit=3, claim_wait_seconds=0.05))
        settings.delivery.backoff_base = 0
        flow = build_flow(
            "chain",
            [("start", "start")] + [(f"m{i}", "message", {"message": str(i)}) for i in range(5)],
            [("start", "m0")] + [(f"m{i}", f"m{i + 1}") for i in range(4)],
        )
        engine = make_engine(flow, settings=settings)
        result = await engine.start_or_resume("conv-1", _event("go"))
        session = await engine.get_session_state(result.session_id)
        assert [t.node_id for t in session.trace] == ["m2", "m3", "m4"]
