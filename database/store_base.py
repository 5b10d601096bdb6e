"""
Abstract Session Store — Interface for all storage backends.

Implementations:
  - SqlSessionStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemorySessionStore (dict-based, single-process, no persistence)
  - FileSessionStore     (JSON files on disk, single-process, durable)

Concurrency contract:
  claim()   is one atomic conditional update: it succeeds only when no claim
            is held or the held lease has expired, and sets status=running.
  renew()   extends the lease of a held claim; it fails once the token is lost.
  release() persists the turn's outcome and clears the claim in the same
            atomic write, and only if the caller's token still holds it.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from models.schemas import Claim, Session, SessionError, SessionStatus, TraceEntry


class BaseSessionStore(ABC):
    """Interface that all session store backends must implement."""

    # ── Lifecycle ─────────────────────────────────────────────

    @abstractmethod
    async def create_session(
        self, flow_id: str, flow_version: int, conversation_id: str,
        trigger_keyword: str = "",
    ) -> Session:
        """Create an idle session. Raises SessionConflictError if one is already active."""
        ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def find_active_session(
        self, conversation_id: str, flow_id: str = None,
    ) -> Optional[Session]:
        """Most recently updated non-terminal session for the conversation."""
        ...

    @abstractmethod
    async def list_sessions(self, conversation_id: str) -> list[Session]:
        """All sessions for the conversation, terminal included, oldest first."""
        ...

    async def find_session_with_event(
        self, conversation_id: str, event_id: str,
    ) -> Optional[Session]:
        """Most recent session of the conversation that already processed `event_id`."""
        for session in reversed(await self.list_sessions(conversation_id)):
            if event_id in session.processed_events:
                return session
        return None

    # ── Claim / release ───────────────────────────────────────

    @abstractmethod
    async def claim(self, session_id: str, token: str, lease_seconds: float) -> Optional[Claim]:
        ...

    @abstractmethod
    async def renew(self, session_id: str, token: str, lease_seconds: float) -> bool:
        """Push the lease of a held claim forward. False if `token` no longer holds it."""
        ...

    @abstractmethod
    async def release(
        self,
        session_id: str,
        token: str,
        *,
        status: SessionStatus,
        current_node_id: Optional[str],
        variables: dict[str, Any],
        last_error: Optional[SessionError] = None,
        processed_events: Optional[list[str]] = None,
        trace: Optional[list[TraceEntry]] = None,
    ) -> bool:
        ...

    async def close(self) -> None:
        return None
