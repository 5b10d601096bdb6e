"""
InMemorySessionStore — Dict-backed session store for development and testing.

Features:
  - Zero dependencies (no database server)
  - Full interface compatibility with SqlSessionStore
  - claim/release are atomic under one asyncio.Lock (single event loop)
  - All data lost on process restart

Best for: local development, unit tests, the flow test harness.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from core.errors import SessionConflictError
from database.models import active_key
from database.store_base import BaseSessionStore
from models.schemas import Claim, Session, SessionError, SessionStatus, TraceEntry

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemorySessionStore(BaseSessionStore):
    """
    Sessions are held as JSON-ready dicts so that every read hands out an
    independent Session object. Callers never alias stored state.
    """

    def __init__(self):
        self._sessions: dict[str, dict] = {}           # id → session dict
        self._active_index: dict[str, str] = {}        # "flow_id:conversation_id" → session_id
        self._lock = asyncio.Lock()
        logger.info("inmemory_store_initialized")

    # ── Helpers ───────────────────────────────────────────

    def _load(self, session_id: str) -> Optional[Session]:
        data = self._sessions.get(session_id)
        return Session.model_validate(data) if data else None

    def _save(self, session: Session):
        self._sessions[session.id] = session.model_dump(mode="json")

    def _persist(self):
        """Hook for durable subclasses; called after every mutation, under the lock."""
        return None

    # ── Lifecycle ─────────────────────────────────────────

    async def create_session(
        self, flow_id: str, flow_version: int, conversation_id: str,
        trigger_keyword: str = "",
    ) -> Session:
        key = active_key(flow_id, conversation_id)
        async with self._lock:
            existing = self._active_index.get(key)
            if existing:
                raise SessionConflictError(
                    f"conversation '{conversation_id}' already has an active "
                    f"session '{existing}' for flow '{flow_id}'"
                )
            session = Session(
                flow_id=flow_id, flow_version=flow_version,
                conversation_id=conversation_id, trigger_keyword=trigger_keyword,
            )
            self._save(session)
            self._active_index[key] = session.id
            self._persist()
        logger.info("session_created",
                    session_id=session.id,
                    flow_id=flow_id,
                    flow_version=flow_version,
                    conversation_id=conversation_id)
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        return self._load(session_id)

    async def find_active_session(
        self, conversation_id: str, flow_id: str = None,
    ) -> Optional[Session]:
        candidates = []
        for key, sid in self._active_index.items():
            session = self._load(sid)
            if session is None or session.conversation_id != conversation_id:
                continue
            if flow_id and session.flow_id != flow_id:
                continue
            candidates.append(session)
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.updated_at)

    async def list_sessions(self, conversation_id: str) -> list[Session]:
        sessions = [
            Session.model_validate(data) for data in self._sessions.values()
            if data.get("conversation_id") == conversation_id
        ]
        return sorted(sessions, key=lambda s: s.created_at)

    # ── Claim / release ───────────────────────────────────

    async def claim(self, session_id: str, token: str, lease_seconds: float) -> Optional[Claim]:
        async with self._lock:
            session = self._load(session_id)
            if session is None or session.is_terminal:
                return None
            now = _utcnow()
            if session.claim_token and not session.lease_expired(now):
                return None

            previous = session.status
            session.claim_token = token
            session.claimed_until = now + timedelta(seconds=lease_seconds)
            session.status = SessionStatus.RUNNING
            session.version += 1
            session.updated_at = now
            self._save(session)
            self._persist()
        return Claim(session=session, token=token, previous_status=previous)

    async def renew(self, session_id: str, token: str, lease_seconds: float) -> bool:
        async with self._lock:
            session = self._load(session_id)
            if session is None or session.claim_token != token:
                return False
            now = _utcnow()
            session.claimed_until = now + timedelta(seconds=lease_seconds)
            session.version += 1
            session.updated_at = now
            self._save(session)
            self._persist()
        return True

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
        async with self._lock:
            session = self._load(session_id)
            if session is None or session.claim_token != token:
                return False

            now = _utcnow()
            session.status = status
            session.current_node_id = current_node_id
            session.variables = dict(variables)
            session.last_error = last_error
            if processed_events is not None:
                session.processed_events = list(processed_events)
            if trace is not None:
                session.trace = list(trace)
            session.claim_token = None
            session.claimed_until = None
            session.version += 1
            session.updated_at = now
            if status.is_terminal:
                session.ended_at = now
                self._active_index.pop(active_key(session.flow_id, session.conversation_id), None)
            self._save(session)
            self._persist()
        return True

    # ── Stats ─────────────────────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "sessions": len(self._sessions),
            "active_sessions": len(self._active_index),
        }
