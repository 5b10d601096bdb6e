"""
Execution Coordinator — runs one turn of a session.

A turn:
  1. claim the session (poll up to engine.claim_wait_seconds, else BUSY)
  2. pick the entry node: start node for a fresh session, otherwise the
     node the session is waiting at, resumed with the inbound event
  3. invoke handlers and follow Advance results through the graph until a
     handler suspends, completes or fails, or no outgoing edge is left;
     the lease is renewed before every node after the first
  4. persist position, variables and status while releasing the claim
  5. report the resulting status

Handlers work on a deep copy of the session. A failed turn persists the
error but keeps the position and variables from the start of the turn.
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from dataclasses import dataclass, field
from typing import Optional

from config.settings import EngineConfig, get_settings
from core.errors import (
    AbortedTurnError, ClaimLostError, ConfigurationError, FlowEngineError,
    StepLimitExceededError, UnknownNodeTypeError,
)
from database.store_base import BaseSessionStore
from flows.graph import FlowGraph
from flows.registry import FlowRegistry
from handlers.base import Advance, Complete, Fail, HandlerRegistry, HandlerResult, Suspend
from models.schemas import (
    Claim, InboundEvent, Node, Session, SessionError, SessionStatus,
    TraceEntry, TurnResult, TurnStatus,
)

logger = structlog.get_logger()

_TURN_STATUS = {
    SessionStatus.IDLE: TurnStatus.WAITING_FOR_INPUT,
    SessionStatus.WAITING_FOR_INPUT: TurnStatus.WAITING_FOR_INPUT,
    SessionStatus.RUNNING: TurnStatus.BUSY,
    SessionStatus.COMPLETED: TurnStatus.COMPLETED,
    SessionStatus.FAILED: TurnStatus.FAILED,
}


@dataclass
class _Outcome:
    """Where a traversal stopped."""
    status: SessionStatus
    node_id: Optional[str] = None
    error: Optional[FlowEngineError] = None
    steps: int = 0
    trace: list[TraceEntry] = field(default_factory=list)


class ExecutionCoordinator:

    def __init__(
        self,
        store: BaseSessionStore,
        flows: FlowRegistry,
        handlers: HandlerRegistry,
        config: EngineConfig = None,
    ):
        self.store = store
        self.flows = flows
        self.handlers = handlers
        self.config = config or get_settings().engine

    # ══════════════════════════════════════════════════════════
    #  TURN
    # ══════════════════════════════════════════════════════════

    async def run_turn(self, session_id: str, event: InboundEvent) -> TurnResult:
        token = uuid.uuid4().hex
        claim = await self._acquire(session_id, token)
        if claim is None:
            logger.info("session_busy",
                        session_id=session_id,
                        conversation_id=event.conversation_id,
                        event_id=event.event_id)
            return TurnResult(status=TurnStatus.BUSY, session_id=session_id)

        session = claim.session
        logger.info("session_claimed",
                    session_id=session.id,
                    flow_id=session.flow_id,
                    conversation_id=session.conversation_id,
                    previous_status=claim.previous_status.value,
                    current_node_id=session.current_node_id)

        if claim.previous_status == SessionStatus.RUNNING:
            abandoned_at = self._last_known_node(session)
            logger.warning("session_aborted",
                           session_id=session.id,
                           node_id=abandoned_at)
            error = AbortedTurnError(
                "previous turn abandoned its claim before finishing",
                node_id=abandoned_at,
            )
            outcome = _Outcome(status=SessionStatus.FAILED,
                               node_id=session.current_node_id, error=error)
            # the event was not handled; leave it redeliverable
            return await self._finish(claim, event, outcome, record_event=False)

        if event.event_id and event.event_id in session.processed_events:
            return await self._acknowledge_duplicate(claim, event)

        graph = self.flows.get(session.flow_id, session.flow_version)
        if graph is None:
            error = ConfigurationError(
                f"flow '{session.flow_id}' version {session.flow_version} is not published",
            )
            outcome = _Outcome(status=SessionStatus.FAILED,
                               node_id=session.current_node_id, error=error)
            return await self._finish(claim, event, outcome)

        working = session.model_copy(deep=True)
        outcome = await self._traverse(graph, working, event, claim.token)
        if isinstance(outcome.error, ClaimLostError):
            logger.warning("claim_lost",
                           session_id=session.id,
                           conversation_id=session.conversation_id,
                           node_id=outcome.error.node_id)
            return TurnResult(status=TurnStatus.BUSY, session_id=session.id, steps=outcome.steps)
        return await self._finish(claim, event, outcome, working)

    async def _acquire(self, session_id: str, token: str) -> Optional[Claim]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.claim_wait_seconds
        while True:
            claim = await self.store.claim(session_id, token, self.config.lease_seconds)
            if claim is not None:
                return claim
            if loop.time() >= deadline:
                return None
            await asyncio.sleep(self.config.claim_poll_interval)

    # ══════════════════════════════════════════════════════════
    #  TRAVERSAL
    # ══════════════════════════════════════════════════════════

    async def _traverse(
        self, graph: FlowGraph, working: Session, event: InboundEvent, token: str,
    ) -> _Outcome:
        outcome = _Outcome(status=SessionStatus.RUNNING)
        try:
            if working.current_node_id is None:
                working.variables.update(event.variables)
                node = graph.start_node()
                result = await self._invoke(node, working, graph)
                resumed = False
            else:
                node = graph.get_node(working.current_node_id)
                if node is None:
                    raise ConfigurationError(
                        f"session is positioned at unknown node '{working.current_node_id}'",
                        node_id=working.current_node_id,
                    )
                result = await self._invoke(node, working, graph, event)
                resumed = True

            while True:
                outcome.steps += 1
                self._record(outcome, node, result, resumed, working)
                if outcome.steps > self.config.max_steps_per_turn:
                    raise StepLimitExceededError(
                        f"turn exceeded {self.config.max_steps_per_turn} steps without suspending",
                        node_id=node.id,
                    )

                if isinstance(result, Suspend):
                    outcome.status = SessionStatus.WAITING_FOR_INPUT
                    outcome.node_id = node.id
                    return outcome
                if isinstance(result, Complete):
                    outcome.status = SessionStatus.COMPLETED
                    return outcome
                if isinstance(result, Fail):
                    if result.error.node_id is None:
                        result.error.node_id = node.id
                    outcome.status = SessionStatus.FAILED
                    outcome.error = result.error
                    return outcome

                edge = graph.next_edge(node.id, result.handle)
                if edge is None:
                    outcome.status = SessionStatus.COMPLETED
                    return outcome
                next_node = graph.get_node(edge.target)
                if next_node is None:
                    raise ConfigurationError(
                        f"edge from '{node.id}' targets missing node '{edge.target}'",
                        node_id=node.id,
                    )
                node = next_node
                resumed = False
                await self._renew(working, token, node)
                result = await self._invoke(node, working, graph)

        except FlowEngineError as e:
            outcome.status = SessionStatus.FAILED
            outcome.error = e
            return outcome

    async def _renew(self, working: Session, token: str, node: Node):
        if not await self.store.renew(working.id, token, self.config.lease_seconds):
            raise ClaimLostError(
                f"claim on session '{working.id}' was taken over before node '{node.id}'",
                node_id=node.id,
            )

    async def _invoke(
        self, node: Node, working: Session, graph: FlowGraph, event: InboundEvent = None,
    ) -> HandlerResult:
        handler = self.handlers.get(node.type)
        if handler is None:
            return Fail(UnknownNodeTypeError(
                f"no handler registered for node type '{node.type}'", node_id=node.id,
            ))
        try:
            if event is not None:
                return await handler.resume(node, working, graph, event)
            return await handler.handle(node, working, graph)
        except FlowEngineError as e:
            if e.node_id is None:
                e.node_id = node.id
            return Fail(e)
        except Exception as e:
            logger.exception("handler_crashed",
                             session_id=working.id,
                             node_id=node.id,
                             node_type=node.type)
            return Fail(FlowEngineError(str(e) or type(e).__name__,
                                        node_id=node.id, code="handler_crashed"))

    def _last_known_node(self, session: Session) -> Optional[str]:
        """Where an abandoned turn was: its waiting node, its last traced step, or the start node."""
        if session.current_node_id:
            return session.current_node_id
        if session.trace:
            return session.trace[-1].node_id
        graph = self.flows.get(session.flow_id, session.flow_version)
        if graph is None:
            return None
        try:
            return graph.start_node().id
        except ConfigurationError:
            return None

    def _record(self, outcome: _Outcome, node: Node, result: HandlerResult,
                resumed: bool, working: Session):
        kind = type(result).__name__.lower()
        handle = result.handle if isinstance(result, Advance) else None
        if isinstance(result, Fail):
            detail = f"{result.error.code}: {result.error}"
        elif isinstance(result, (Suspend, Complete)):
            detail = result.reason
        else:
            detail = ""
        outcome.trace.append(TraceEntry(
            node_id=node.id,
            node_type=node.type,
            outcome=f"resume:{kind}" if resumed else kind,
            handle=handle,
            detail=detail,
        ))
        logger.debug("node_executed",
                     session_id=working.id,
                     node_id=node.id,
                     node_type=node.type,
                     outcome=kind,
                     handle=handle)

    # ══════════════════════════════════════════════════════════
    #  PERSIST + RELEASE
    # ══════════════════════════════════════════════════════════

    async def _finish(
        self, claim: Claim, event: InboundEvent, outcome: _Outcome, working: Session = None,
        record_event: bool = True,
    ) -> TurnResult:
        session = claim.session
        error = None

        if outcome.status == SessionStatus.FAILED:
            # Position and variables stay where the last successful turn left them
            node_id = session.current_node_id
            variables = session.variables
            failing = outcome.error
            error = SessionError(
                code=failing.code,
                message=str(failing),
                node_id=failing.node_id,
            )
        elif outcome.status == SessionStatus.COMPLETED:
            node_id = None
            variables = working.variables
        else:
            node_id = outcome.node_id
            variables = working.variables

        released = await self.store.release(
            session.id,
            claim.token,
            status=outcome.status,
            current_node_id=node_id,
            variables=variables,
            last_error=error,
            processed_events=self._remember(
                session.processed_events, event.event_id if record_event else None,
            ),
            trace=(session.trace + outcome.trace)[-self.config.trace_limit:],
        )
        if not released:
            logger.warning("claim_lost",
                           session_id=session.id,
                           conversation_id=session.conversation_id)
            return TurnResult(status=TurnStatus.BUSY, session_id=session.id, steps=outcome.steps)

        if error is not None:
            logger.error("turn_failed",
                         session_id=session.id,
                         flow_id=session.flow_id,
                         conversation_id=session.conversation_id,
                         node_id=error.node_id,
                         error_code=error.code,
                         error=error.message)
        else:
            logger.info("turn_completed",
                        session_id=session.id,
                        flow_id=session.flow_id,
                        conversation_id=session.conversation_id,
                        status=outcome.status.value,
                        node_id=node_id,
                        steps=outcome.steps)

        return TurnResult(
            status=_TURN_STATUS[outcome.status],
            session_id=session.id,
            current_node_id=node_id,
            error=error,
            steps=outcome.steps,
        )

    async def _acknowledge_duplicate(self, claim: Claim, event: InboundEvent) -> TurnResult:
        """Give the claim back without touching state and report where the session is."""
        session = claim.session
        status = claim.previous_status
        released = await self.store.release(
            session.id,
            claim.token,
            status=status,
            current_node_id=session.current_node_id,
            variables=session.variables,
            last_error=session.last_error,
        )
        if not released:
            logger.warning("claim_lost", session_id=session.id)
            return TurnResult(status=TurnStatus.BUSY, session_id=session.id)

        logger.info("duplicate_event_ignored",
                    session_id=session.id,
                    event_id=event.event_id)
        return TurnResult(
            status=_TURN_STATUS[status],
            session_id=session.id,
            current_node_id=session.current_node_id,
            duplicate=True,
        )

    def _remember(self, processed: list[str], event_id: Optional[str]) -> list[str]:
        if not event_id:
            return list(processed)
        window = max(self.config.processed_event_window, 1)
        return (list(processed) + [event_id])[-window:]
