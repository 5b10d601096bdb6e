"""
Flow Engine — the single entry point that drives flow execution.

    result = await engine.start_or_resume(conversation_id, event)
    session = await engine.get_session_state(result.session_id)

Live webhooks and the test harness both call start_or_resume, so a tested
flow behaves exactly as it will in production.
"""
from __future__ import annotations

import structlog
from typing import Optional

from backend.connector import IntegrationClient, create_integration_client
from channels.base import MessageDeliverer
from channels.webhook_adapter import create_deliverer
from config.settings import Settings, get_settings
from core.coordinator import ExecutionCoordinator
from core.errors import SessionConflictError
from core.resolver import ResolutionAction, TriggerResolver
from database.store_base import BaseSessionStore
from database.store_factory import create_store
from flows.registry import FlowRegistry
from handlers.base import HandlerRegistry
from handlers.nodes import create_default_registry
from models.schemas import InboundEvent, Session, SessionStatus, TurnResult, TurnStatus

logger = structlog.get_logger()

_FINISHED_STATUS = {
    SessionStatus.COMPLETED: TurnStatus.COMPLETED,
    SessionStatus.FAILED: TurnStatus.FAILED,
}


def check_lease(settings: Settings) -> bool:
    """
    Warn when one node can outlive the claim lease. The lease is renewed
    before every node, so it only has to cover the slowest single node:
    an apiCall or a delivery with all of its retries. Returns True if the
    lease is long enough.
    """
    ceiling = settings.node_ceiling_seconds
    if settings.engine.lease_seconds < ceiling:
        logger.warning("lease_shorter_than_turn_ceiling",
                       lease_seconds=settings.engine.lease_seconds,
                       turn_ceiling_seconds=ceiling,
                       integration_ceiling_seconds=settings.integration_ceiling_seconds,
                       delivery_ceiling_seconds=settings.delivery_ceiling_seconds)
        return False
    return True


class FlowEngine:
    """Resolves inbound events to sessions and runs turns on them."""

    def __init__(
        self,
        store: BaseSessionStore,
        flows: FlowRegistry,
        handlers: HandlerRegistry,
        settings: Settings = None,
        deliverer: MessageDeliverer = None,
        integration: IntegrationClient = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.flows = flows
        self.handlers = handlers
        self.deliverer = deliverer
        self.integration = integration
        self.resolver = TriggerResolver(store, flows)
        self.coordinator = ExecutionCoordinator(store, flows, handlers, self.settings.engine)
        check_lease(self.settings)

    async def close(self):
        if self.deliverer is not None:
            await self.deliverer.close()
        if self.integration is not None:
            await self.integration.close()
        await self.store.close()

    async def start_or_resume(self, conversation_id: str, event: InboundEvent) -> TurnResult:
        if event.conversation_id != conversation_id:
            event = event.model_copy(update={"conversation_id": conversation_id})
        return await self._dispatch(event, retry_resolution=True)

    async def _dispatch(self, event: InboundEvent, retry_resolution: bool) -> TurnResult:
        resolution = await self.resolver.resolve(event)

        if resolution.action == ResolutionAction.NO_MATCH:
            return TurnResult(status=TurnStatus.NO_MATCH)

        if resolution.action == ResolutionAction.DUPLICATE:
            session = resolution.session
            return TurnResult(
                status=_FINISHED_STATUS[session.status],
                session_id=session.id,
                current_node_id=session.current_node_id,
                error=session.last_error,
                duplicate=True,
            )

        if resolution.action == ResolutionAction.START:
            graph = resolution.graph
            try:
                session = await self.store.create_session(
                    graph.flow_id, graph.version, event.conversation_id,
                    trigger_keyword=resolution.keyword,
                )
            except SessionConflictError:
                # A concurrent event started this flow first; contend for its session instead
                session = await self.store.find_active_session(event.conversation_id, graph.flow_id)
                if session is None:
                    return TurnResult(status=TurnStatus.BUSY)
            return await self.coordinator.run_turn(session.id, event)

        session = resolution.session
        result = await self.coordinator.run_turn(session.id, event)
        if result.status == TurnStatus.BUSY and retry_resolution:
            # The session may have ended between lookup and claim
            current = await self.store.get_session(session.id)
            if current is not None and current.is_terminal:
                logger.debug("session_ended_before_claim", session_id=session.id)
                return await self._dispatch(event, retry_resolution=False)
        return result

    async def get_session_state(self, session_id: str) -> Optional[Session]:
        return await self.store.get_session(session_id)

    async def list_sessions(self, conversation_id: str) -> list[Session]:
        return await self.store.list_sessions(conversation_id)


def build_engine(
    settings: Settings = None,
    store: BaseSessionStore = None,
    flows: FlowRegistry = None,
    deliverer: MessageDeliverer = None,
    integration: IntegrationClient = None,
) -> FlowEngine:
    """Wire an engine from settings; any collaborator can be passed in instead."""
    settings = settings or get_settings()
    deliverer = deliverer or create_deliverer(settings.delivery)
    integration = integration or create_integration_client(settings.integration)
    handlers = create_default_registry(
        deliverer, integration,
        delivery_config=settings.delivery,
        integration_config=settings.integration,
        unmatched_policy=settings.engine.unmatched_reply_policy,
    )
    if flows is None:
        flows = FlowRegistry(known_types=handlers.types)
        flows.publish_from_config(settings.flows)
    store = store or create_store(settings.database)
    return FlowEngine(store, flows, handlers, settings,
                      deliverer=deliverer, integration=integration)
