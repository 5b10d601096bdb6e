"""
Trigger Resolver — decides whether an inbound event resumes or starts a run.

Order of precedence:
  0. An event id already processed by a session of the conversation goes
     back to that session: a finished one reports DUPLICATE, a live one is
     resumed so its claim-held check acknowledges the redelivery.
  1. A non-terminal session for the conversation is always resumed,
     regardless of trigger keywords or whether the flow is still active.
  2. Flows with trigger keywords, in registration order: the first keyword
     found (case-insensitive substring) in the inbound text starts that flow.
  3. Catch-all flows (no keywords), in registration order.
  4. Nothing matched → NO_MATCH; the event is dropped, no session created.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from database.store_base import BaseSessionStore
from flows.graph import FlowGraph
from flows.registry import FlowRegistry
from models.schemas import InboundEvent, Session

logger = structlog.get_logger()


class ResolutionAction(str, Enum):
    RESUME = "resume"
    START = "start"
    NO_MATCH = "no_match"
    DUPLICATE = "duplicate"


@dataclass
class Resolution:
    action: ResolutionAction
    session: Optional[Session] = None
    graph: Optional[FlowGraph] = None
    keyword: str = ""


class TriggerResolver:

    def __init__(self, store: BaseSessionStore, flows: FlowRegistry):
        self.store = store
        self.flows = flows

    async def resolve(self, event: InboundEvent) -> Resolution:
        if event.event_id:
            handled = await self.store.find_session_with_event(event.conversation_id, event.event_id)
            if handled is not None:
                if handled.is_terminal:
                    logger.info("duplicate_event_ignored",
                                session_id=handled.id,
                                conversation_id=event.conversation_id,
                                event_id=event.event_id)
                    return Resolution(ResolutionAction.DUPLICATE, session=handled)
                return Resolution(ResolutionAction.RESUME, session=handled)

        active = await self.store.find_active_session(event.conversation_id, event.flow_id)
        if active is not None:
            logger.debug("trigger_resume",
                         session_id=active.id,
                         conversation_id=event.conversation_id,
                         flow_id=active.flow_id)
            return Resolution(ResolutionAction.RESUME, session=active)

        match = self.match_flow(event)
        if match is None:
            logger.info("trigger_no_match",
                        conversation_id=event.conversation_id,
                        flow_id=event.flow_id,
                        platform=event.platform)
            return Resolution(ResolutionAction.NO_MATCH)

        graph, keyword = match
        logger.info("trigger_matched",
                    conversation_id=event.conversation_id,
                    flow_id=graph.flow_id,
                    flow_version=graph.version,
                    keyword=keyword)
        return Resolution(ResolutionAction.START, graph=graph, keyword=keyword)

    def match_flow(self, event: InboundEvent) -> Optional[tuple[FlowGraph, str]]:
        """First eligible flow for the event and the keyword that matched it ("" for catch-all)."""
        candidates = [
            g for g in self.flows.list_latest()
            if self._eligible(g, event)
        ]
        text = (event.text or "").lower()

        if text:
            for graph in candidates:
                for keyword in graph.flow.trigger_keywords:
                    needle = keyword.strip().lower()
                    if needle and needle in text:
                        return graph, keyword

        for graph in candidates:
            if not any(k.strip() for k in graph.flow.trigger_keywords):
                return graph, ""
        return None

    @staticmethod
    def _eligible(graph: FlowGraph, event: InboundEvent) -> bool:
        flow = graph.flow
        if event.flow_id and flow.id != event.flow_id:
            return False
        if not flow.is_active:
            return False
        if flow.enabled_platforms and event.platform not in flow.enabled_platforms:
            return False
        return True
