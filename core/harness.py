"""
Flow Test Harness — exercise a flow through the real engine.

The harness is an ordinary caller of FlowEngine.start_or_resume: it
synthesizes inbound events for a private test conversation and records
what the bot delivered, so a flow under test runs the same code path as
a live webhook.

    harness = FlowTestHarness.for_flow(flow)
    await harness.send("hi")
    await harness.press("sales")
    print(harness.transcript_text())
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from backend.connector import IntegrationClient, MockIntegrationClient
from channels.base import RecordingDeliverer
from config.settings import Settings, get_settings
from core.engine import FlowEngine, build_engine
from database.store_memory import InMemorySessionStore
from models.schemas import FlowDefinition, InboundEvent, Session, TurnResult, TurnStatus


@dataclass
class TranscriptLine:
    speaker: str                                  # bot | user | system
    text: str
    buttons: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        line = f"[{self.speaker}] {self.text}"
        if self.buttons:
            line += f"  ({' | '.join(self.buttons)})"
        return line


class FlowTestHarness:

    def __init__(
        self,
        engine: FlowEngine,
        deliverer: RecordingDeliverer,
        flow_id: str,
        variables: dict[str, Any] = None,
    ):
        self.engine = engine
        self.deliverer = deliverer
        self.flow_id = flow_id
        self.variables = dict(variables or {})
        self.transcript: list[TranscriptLine] = []
        self.last_result: Optional[TurnResult] = None
        self.conversation_id = self._new_conversation_id()

    @classmethod
    def for_flow(
        cls,
        flow: FlowDefinition,
        settings: Settings = None,
        integration: IntegrationClient = None,
        variables: dict[str, Any] = None,
    ) -> "FlowTestHarness":
        """
        Standalone harness: in-memory store, recording deliverer, mock integrations.
        The flow is published through the engine's own registry, so it is
        validated against the registered node types exactly as in production.
        """
        settings = replace(settings or get_settings(), flows=[])
        deliverer = RecordingDeliverer()
        engine = build_engine(
            settings,
            store=InMemorySessionStore(),
            deliverer=deliverer,
            integration=integration or MockIntegrationClient(),
        )
        engine.flows.publish(flow)
        return cls(engine, deliverer, flow.id, variables)

    @staticmethod
    def _new_conversation_id() -> str:
        return f"test-{uuid.uuid4().hex[:12]}"

    # ── Driving ───────────────────────────────────────────

    async def send(self, text: str, event_id: str = None) -> TurnResult:
        """Type a message into the test conversation."""
        self.transcript.append(TranscriptLine("user", text))
        return await self._run(InboundEvent(
            conversation_id=self.conversation_id,
            flow_id=self.flow_id,
            text=text,
            event_id=event_id,
            variables=self.variables,
        ))

    async def press(self, button_id: str, event_id: str = None) -> TurnResult:
        """Tap a quick-reply button."""
        self.transcript.append(TranscriptLine("user", f"<{button_id}>"))
        return await self._run(InboundEvent(
            conversation_id=self.conversation_id,
            flow_id=self.flow_id,
            selected_handle=button_id,
            event_id=event_id,
            variables=self.variables,
        ))

    def reset(self):
        """Start over in a fresh conversation; earlier sessions stay in the store."""
        self.transcript.clear()
        self.last_result = None
        self.conversation_id = self._new_conversation_id()

    async def _run(self, event: InboundEvent) -> TurnResult:
        seen = len(self.deliverer.messages_for(self.conversation_id))
        result = await self.engine.start_or_resume(self.conversation_id, event)
        for msg in self.deliverer.messages_for(self.conversation_id)[seen:]:
            self.transcript.append(TranscriptLine(
                "bot", msg.content, [b.get("title", b.get("id", "")) for b in msg.buttons],
            ))
        self.transcript.append(TranscriptLine("system", self._describe(result)))
        self.last_result = result
        return result

    @staticmethod
    def _describe(result: TurnResult) -> str:
        if result.duplicate:
            return "duplicate event ignored"
        if result.status == TurnStatus.WAITING_FOR_INPUT:
            return f"waiting for input at '{result.current_node_id}'"
        if result.status == TurnStatus.COMPLETED:
            return "flow completed"
        if result.status == TurnStatus.FAILED:
            err = result.error
            return f"flow failed at '{err.node_id}': {err.code}" if err else "flow failed"
        if result.status == TurnStatus.NO_MATCH:
            return "no flow matched"
        return "session busy"

    # ── Inspection ────────────────────────────────────────

    async def session(self) -> Optional[Session]:
        if self.last_result is None or self.last_result.session_id is None:
            return None
        return await self.engine.get_session_state(self.last_result.session_id)

    def bot_messages(self) -> list[str]:
        return [line.text for line in self.transcript if line.speaker == "bot"]

    def transcript_text(self) -> str:
        return "\n".join(str(line) for line in self.transcript)
