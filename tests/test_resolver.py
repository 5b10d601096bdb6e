"""Tests for trigger resolution: keyword matching, priority and resume rules."""
import pytest

from core.resolver import ResolutionAction, TriggerResolver
from flows.registry import FlowRegistry
from models.schemas import InboundEvent, SessionStatus


def _event(text=None, **kwargs) -> InboundEvent:
    kwargs.setdefault("conversation_id", "conv-1")
    return InboundEvent(text=text, **kwargs)


@pytest.fixture
def catch_all_flow(build_flow):
    return build_flow("fallback", [("start", "start"), ("m", "message", {"message": "?"})], [("start", "m")])


@pytest.fixture
def resolver_for(store):
    def _make(*flows):
        registry = FlowRegistry()
        for flow in flows:
            registry.publish(flow)
        return TriggerResolver(store, registry)
    return _make


class TestKeywordMatching:
    @pytest.mark.asyncio
    async def test_substring_match_is_case_insensitive(self, resolver_for, greeting_flow):
        resolution = await resolver_for(greeting_flow).resolve(_event("Well HELLO there"))
        assert resolution.action == ResolutionAction.START
        assert resolution.graph.flow_id == "greeting"
        assert resolution.keyword == "hello"

    @pytest.mark.asyncio
    async def test_no_keyword_no_match(self, resolver_for, greeting_flow):
        resolution = await resolver_for(greeting_flow).resolve(_event("bye"))
        assert resolution.action == ResolutionAction.NO_MATCH
        assert resolution.session is None

    @pytest.mark.asyncio
    async def test_empty_text_does_not_match_keywords(self, resolver_for, greeting_flow):
        resolution = await resolver_for(greeting_flow).resolve(_event(None))
        assert resolution.action == ResolutionAction.NO_MATCH

    @pytest.mark.asyncio
    async def test_catch_all_triggers_on_anything(self, resolver_for, catch_all_flow):
        resolution = await resolver_for(catch_all_flow).resolve(_event("whatever"))
        assert resolution.action == ResolutionAction.START
        assert resolution.keyword == ""

    @pytest.mark.asyncio
    async def test_keyword_flows_beat_catch_all(self, resolver_for, catch_all_flow, greeting_flow):
        resolver = resolver_for(catch_all_flow, greeting_flow)
        assert (await resolver.resolve(_event("hi"))).graph.flow_id == "greeting"
        assert (await resolver.resolve(_event("bye"))).graph.flow_id == "fallback"

    @pytest.mark.asyncio
    async def test_registration_order_breaks_ties(self, resolver_for, greeting_flow, build_flow):
        other = build_flow("other", [("start", "start"), ("m", "message")], [("start", "m")],
                           trigger_keywords=["hello"])
        resolution = await resolver_for(other, greeting_flow).resolve(_event("hello"))
        assert resolution.graph.flow_id == "other"

    @pytest.mark.asyncio
    async def test_blank_keywords_count_as_catch_all(self, resolver_for, build_flow):
        flow = build_flow("blank", [("start", "start")], [], trigger_keywords=["  "])
        assert (await resolver_for(flow).resolve(_event("x"))).action == ResolutionAction.START


class TestEligibility:
    @pytest.mark.asyncio
    async def test_inactive_flow_never_starts(self, resolver_for, greeting_flow):
        greeting_flow.is_active = False
        assert (await resolver_for(greeting_flow).resolve(_event("hi"))).action == ResolutionAction.NO_MATCH

    @pytest.mark.asyncio
    async def test_platform_restriction(self, resolver_for, greeting_flow):
        greeting_flow.enabled_platforms = ["whatsapp"]
        resolver = resolver_for(greeting_flow)
        assert (await resolver.resolve(_event("hi", platform="instagram"))).action == ResolutionAction.NO_MATCH
        assert (await resolver.resolve(_event("hi", platform="whatsapp"))).action == ResolutionAction.START

    @pytest.mark.asyncio
    async def test_flow_id_restricts_candidates(self, resolver_for, greeting_flow, catch_all_flow):
        resolver = resolver_for(greeting_flow, catch_all_flow)
        resolution = await resolver.resolve(_event("hi", flow_id="fallback"))
        assert resolution.graph.flow_id == "fallback"

    @pytest.mark.asyncio
    async def test_latest_version_starts(self, resolver_for, greeting_flow):
        resolver = resolver_for(greeting_flow, greeting_flow)
        assert (await resolver.resolve(_event("hi"))).graph.version == 2


class TestResume:
    @pytest.mark.asyncio
    async def test_active_session_is_resumed_regardless_of_keywords(self, resolver_for, greeting_flow, store):
        session = await store.create_session("greeting", 1, "conv-1")
        resolution = await resolver_for(greeting_flow).resolve(_event("bye"))
        assert resolution.action == ResolutionAction.RESUME
        assert resolution.session.id == session.id

    @pytest.mark.asyncio
    async def test_inactive_flow_still_resumes(self, resolver_for, greeting_flow, store):
        greeting_flow.is_active = False
        await store.create_session("greeting", 1, "conv-1")
        assert (await resolver_for(greeting_flow).resolve(_event("x"))).action == ResolutionAction.RESUME

    @pytest.mark.asyncio
    async def test_terminal_session_is_not_resumed(self, resolver_for, greeting_flow, store):
        session = await store.create_session("greeting", 1, "conv-1")
        await store.claim(session.id, "t", 30)
        await store.release(session.id, "t", status=SessionStatus.COMPLETED,
                            current_node_id=None, variables={})
        resolution = await resolver_for(greeting_flow).resolve(_event("hi"))
        assert resolution.action == ResolutionAction.START

    @pytest.mark.asyncio
    async def test_other_conversation_is_not_resumed(self, resolver_for, greeting_flow, store):
        await store.create_session("greeting", 1, "conv-2")
        assert (await resolver_for(greeting_flow).resolve(_event("bye"))).action == ResolutionAction.NO_MATCH


class TestProcessedEvents:
    @pytest.mark.asyncio
    async def test_event_of_a_finished_session_is_a_duplicate(self, resolver_for, greeting_flow, store):
        session = await store.create_session("greeting", 1, "conv-1")
        await store.claim(session.id, "t", 30)
        await store.release(session.id, "t", status=SessionStatus.COMPLETED,
                            current_node_id=None, variables={}, processed_events=["wamid.1"])
        resolver = resolver_for(greeting_flow)

        duplicate = await resolver.resolve(_event("hi", event_id="wamid.1"))
        assert duplicate.action == ResolutionAction.DUPLICATE
        assert duplicate.session.id == session.id

        fresh = await resolver.resolve(_event("hi", event_id="wamid.2"))
        assert fresh.action == ResolutionAction.START

    @pytest.mark.asyncio
    async def test_event_of_a_live_session_goes_back_to_it(self, resolver_for, greeting_flow, build_flow, store):
        other = build_flow("other", [("start", "start"), ("m", "message", {"message": "x"})],
                           [("start", "m")], trigger_keywords=["other"])
        first = await store.create_session("greeting", 1, "conv-1")
        await store.claim(first.id, "t", 30)
        await store.release(first.id, "t", status=SessionStatus.WAITING_FOR_INPUT,
                            current_node_id="m1", variables={}, processed_events=["evt-1"])
        await store.create_session("other", 1, "conv-1")

        resolution = await resolver_for(greeting_flow, other).resolve(_event("hi", event_id="evt-1"))
        assert resolution.action == ResolutionAction.RESUME
        assert resolution.session.id == first.id
