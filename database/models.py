"""
SQLAlchemy ORM model for flow sessions (PostgreSQL, MySQL 8+, SQLite).

One row per flow run. Variables, processed event ids, trace and last error
are JSON columns; PostgreSQL stores them as json, MySQL as native JSON and
SQLite as TEXT.

"One active session per (flow, conversation)" is a plain UNIQUE on
`active_key`. The key is set to NULL when a session reaches a terminal
status; NULLs never collide under a UNIQUE constraint.

`version` is bumped on every write; claims compare it to detect a
concurrent writer.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import String, Integer, DateTime, Index, JSON
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def active_key(flow_id: str, conversation_id: str) -> str:
    return f"{flow_id}:{conversation_id}"


# ──────────────────────────────────────────────────────────────
#  Flow Sessions
# ──────────────────────────────────────────────────────────────

class SessionRow(Base):
    __tablename__ = "flow_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    flow_id: Mapped[str] = mapped_column(String(128), nullable=False)
    flow_version: Mapped[int] = mapped_column(Integer, nullable=False)
    conversation_id: Mapped[str] = mapped_column(String(128), nullable=False)

    current_node_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    variables: Mapped[Any] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(32), default="idle")
    trigger_keyword: Mapped[str] = mapped_column(String(256), default="")

    # Concurrency control
    claim_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    claimed_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0)
    active_key: Mapped[Optional[str]] = mapped_column(String(300), unique=True, nullable=True)

    last_error: Mapped[Any] = mapped_column(JSON, nullable=True)
    processed_events: Mapped[Any] = mapped_column(JSON, default=list)
    trace: Mapped[Any] = mapped_column(JSON, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_flow_sessions_conversation", "conversation_id"),
        Index("ix_flow_sessions_flow_status", "flow_id", "status"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "flow_id": self.flow_id,
            "flow_version": self.flow_version,
            "conversation_id": self.conversation_id,
            "current_node_id": self.current_node_id,
            "variables": self.variables or {},
            "status": self.status,
            "trigger_keyword": self.trigger_keyword or "",
            "claim_token": self.claim_token,
            "claimed_until": self.claimed_until,
            "version": self.version or 0,
            "last_error": self.last_error,
            "processed_events": self.processed_events or [],
            "trace": self.trace or [],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "ended_at": self.ended_at,
        }
