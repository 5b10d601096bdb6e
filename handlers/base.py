"""
Node handler interface and registry.

A handler runs one node and tells the coordinator how to continue:

  Advance(handle)  — follow the outgoing edge for `handle` (None = default edge)
  Suspend(reason)  — persist here and wait for the next inbound event
  Complete(reason) — end the run successfully without following any edge
  Fail(error)      — end the run; the session is marked failed

Side effects (deliveries, integration calls) happen inside handle() before
it returns. Adding a node type means registering a handler, never editing
the coordinator.
"""
from __future__ import annotations

import abc
import structlog
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Union

from core.errors import FlowEngineError
from models.schemas import InboundEvent, Node, Session

if TYPE_CHECKING:
    from flows.graph import FlowGraph

logger = structlog.get_logger()


@dataclass
class Advance:
    handle: Optional[str] = None


@dataclass
class Suspend:
    reason: str = "awaiting_input"


@dataclass
class Complete:
    reason: str = ""


@dataclass
class Fail:
    error: FlowEngineError


HandlerResult = Union[Advance, Suspend, Complete, Fail]


class NodeHandler(abc.ABC):
    """Base class for all node handlers."""

    node_type: str

    @abc.abstractmethod
    async def handle(self, node: Node, session: Session, graph: "FlowGraph") -> HandlerResult:
        """Execute the node against the session's working state."""
        ...

    async def resume(
        self, node: Node, session: Session, graph: "FlowGraph", event: InboundEvent,
    ) -> HandlerResult:
        """
        Continue from a node the session was suspended at. The inbound event
        supplies the branch. Default: follow the default edge.
        """
        return Advance(event.selected_handle)


class HandlerRegistry:
    """Closed map of node type → handler."""

    def __init__(self):
        self._handlers: dict[str, NodeHandler] = {}

    def register(self, handler: NodeHandler):
        if handler.node_type in self._handlers:
            logger.warning("node_handler_replaced", node_type=handler.node_type)
        self._handlers[handler.node_type] = handler
        logger.debug("node_handler_registered", node_type=handler.node_type)

    def get(self, node_type: str) -> Optional[NodeHandler]:
        return self._handlers.get(node_type)

    def __contains__(self, node_type: str) -> bool:
        return node_type in self._handlers

    @property
    def types(self) -> set[str]:
        return set(self._handlers)
