"""
Core data models for the flow engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# Session variables hold scalars only
VariableValue = Union[str, int, float, bool, None]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class NodeType(str, Enum):
    """Built-in node types. The set is open: handlers register by string."""
    START = "start"
    MESSAGE = "message"
    QUICK_REPLY = "quickReply"
    INPUT = "input"
    CONDITION = "condition"
    API_CALL = "apiCall"
    HANDOFF = "handoff"


class SessionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    WAITING_FOR_INPUT = "waiting_for_input"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


class TurnStatus(str, Enum):
    """What a caller of start_or_resume gets back."""
    WAITING_FOR_INPUT = "waiting_for_input"
    COMPLETED = "completed"
    FAILED = "failed"
    BUSY = "busy"
    NO_MATCH = "no_match"


# ──────────────────────────────────────────────────────────────
#  Flow Graph — operator-authored definition
# ──────────────────────────────────────────────────────────────

class Node(BaseModel):
    """One step in a flow. `data` is type-specific configuration."""
    id: str
    type: str
    data: dict[str, Any] = {}


class Edge(BaseModel):
    """Directed connection; sourceHandle picks a branch of a multi-branch node."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    source: str
    target: str
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle")


class FlowDefinition(BaseModel):
    """
    A published flow. Immutable once a session references it; edits are
    published as a new version and running sessions keep their version.
    """
    id: str
    version: int = 0                              # 0 = assign on publish
    name: str = ""
    nodes: list[Node] = []
    edges: list[Edge] = []
    trigger_keywords: list[str] = []              # empty = any inbound message triggers
    is_active: bool = True
    enabled_platforms: list[str] = []             # empty = all platforms
    variables: dict[str, str] = {}                # declared types: string | number | boolean
    created_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Session — durable execution state of one flow run
# ──────────────────────────────────────────────────────────────

class TraceEntry(BaseModel):
    """One executed step, kept for the debugger view."""
    node_id: str
    node_type: str
    outcome: str                                  # advance | suspend | fail | resume
    handle: Optional[str] = None
    detail: str = ""
    at: datetime = Field(default_factory=_utcnow)


class SessionError(BaseModel):
    code: str
    message: str
    node_id: Optional[str] = None


class Session(BaseModel):
    id: str = Field(default_factory=_new_id)
    flow_id: str
    flow_version: int
    conversation_id: str
    current_node_id: Optional[str] = None         # None = not started or completed
    variables: dict[str, VariableValue] = {}
    status: SessionStatus = SessionStatus.IDLE
    trigger_keyword: str = ""
    claim_token: Optional[str] = None
    claimed_until: Optional[datetime] = None
    version: int = 0                              # bumped on every persisted write
    last_error: Optional[SessionError] = None
    processed_events: list[str] = []
    trace: list[TraceEntry] = []
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    ended_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def lease_expired(self, now: datetime = None) -> bool:
        if self.claimed_until is None:
            return True
        return (now or _utcnow()) >= self.claimed_until


class Claim(BaseModel):
    """A held lease on a session, as returned by the store."""
    session: Session
    token: str
    previous_status: SessionStatus


# ──────────────────────────────────────────────────────────────
#  Inbound event & turn result — the engine's boundary
# ──────────────────────────────────────────────────────────────

class InboundEvent(BaseModel):
    """Normalized inbound event, after channel verification."""
    conversation_id: str
    flow_id: Optional[str] = None                 # restrict to one flow (test harness)
    text: Optional[str] = None
    selected_handle: Optional[str] = None         # button id for quick replies
    event_id: Optional[str] = None                # channel message id, for dedup
    platform: str = ""                            # whatsapp, instagram, ...
    variables: dict[str, VariableValue] = {}      # contact context, seeded when a session starts
    timestamp: datetime = Field(default_factory=_utcnow)


class TurnResult(BaseModel):
    status: TurnStatus
    session_id: Optional[str] = None
    current_node_id: Optional[str] = None
    error: Optional[SessionError] = None
    duplicate: bool = False
    steps: int = 0


# ──────────────────────────────────────────────────────────────
#  Rule Condition — parsed form of a condition node expression
# ──────────────────────────────────────────────────────────────

class RuleCondition(BaseModel):
    field: str
    operator: str           # == | != | > | < | >= | <= | contains
    value: VariableValue
