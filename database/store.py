"""
SqlSessionStore — Portable SQL session store for PostgreSQL, MySQL, SQLite.

claim() is an optimistic compare-and-set: the row is read, the lease rules
are checked in Python, and the UPDATE only lands if `version` is unchanged.
A concurrent claimant bumps `version` first, so exactly one UPDATE matches.

SQLite hands back naive datetimes even for timezone-aware columns; they are
normalized to UTC on the way out.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from core.errors import SessionConflictError
from database.models import SessionRow, active_key
from database.session import get_db_session
from database.store_base import BaseSessionStore
from models.schemas import Claim, Session, SessionError, SessionStatus, TraceEntry

logger = structlog.get_logger()

_TERMINAL = (SessionStatus.COMPLETED.value, SessionStatus.FAILED.value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlSessionStore(BaseSessionStore):
    """
    Persistent session store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Lifecycle ─────────────────────────────────────────

    async def create_session(
        self, flow_id: str, flow_version: int, conversation_id: str,
        trigger_keyword: str = "",
    ) -> Session:
        session = Session(
            flow_id=flow_id, flow_version=flow_version,
            conversation_id=conversation_id, trigger_keyword=trigger_keyword,
        )
        row = SessionRow(
            id=session.id,
            flow_id=flow_id,
            flow_version=flow_version,
            conversation_id=conversation_id,
            current_node_id=None,
            variables={},
            status=session.status.value,
            trigger_keyword=trigger_keyword,
            version=0,
            active_key=active_key(flow_id, conversation_id),
            processed_events=[],
            trace=[],
            created_at=session.created_at,
            updated_at=session.updated_at,
        )
        try:
            async with get_db_session() as db:
                db.add(row)
                await db.flush()
        except IntegrityError:
            raise SessionConflictError(
                f"conversation '{conversation_id}' already has an active "
                f"session for flow '{flow_id}'"
            )
        logger.info("session_created",
                    session_id=session.id,
                    flow_id=flow_id,
                    flow_version=flow_version,
                    conversation_id=conversation_id)
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        async with get_db_session() as db:
            row = await db.get(SessionRow, session_id)
            return self._row_to_session(row.to_dict()) if row else None

    async def find_active_session(
        self, conversation_id: str, flow_id: str = None,
    ) -> Optional[Session]:
        async with get_db_session() as db:
            stmt = select(SessionRow).where(
                SessionRow.conversation_id == conversation_id,
                SessionRow.active_key.is_not(None),
            )
            if flow_id:
                stmt = stmt.where(SessionRow.flow_id == flow_id)
            stmt = stmt.order_by(SessionRow.updated_at.desc()).limit(1)
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_session(row.to_dict()) if row else None

    async def list_sessions(self, conversation_id: str) -> list[Session]:
        async with get_db_session() as db:
            stmt = (
                select(SessionRow)
                .where(SessionRow.conversation_id == conversation_id)
                .order_by(SessionRow.created_at)
            )
            result = await db.execute(stmt)
            return [self._row_to_session(r.to_dict()) for r in result.scalars()]

    # ── Claim / release ───────────────────────────────────

    async def claim(self, session_id: str, token: str, lease_seconds: float) -> Optional[Claim]:
        async with get_db_session() as db:
            row = await db.get(SessionRow, session_id)
            if row is None or row.status in _TERMINAL:
                return None
            snapshot = row.to_dict()
            now = _utcnow()
            held_until = _aware(snapshot["claimed_until"])
            if snapshot["claim_token"] and held_until is not None and held_until > now:
                return None

            observed = snapshot["version"]
            previous = SessionStatus(snapshot["status"])
            changes = {
                "claim_token": token,
                "claimed_until": now + timedelta(seconds=lease_seconds),
                "status": SessionStatus.RUNNING.value,
                "version": observed + 1,
                "updated_at": now,
            }
            stmt = (
                update(SessionRow)
                .where(SessionRow.id == session_id, SessionRow.version == observed)
                .values(**changes)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            if result.rowcount != 1:
                logger.debug("claim_lost_race", session_id=session_id)
                return None

        snapshot.update(changes)
        return Claim(
            session=self._row_to_session(snapshot),
            token=token,
            previous_status=previous,
        )

    async def renew(self, session_id: str, token: str, lease_seconds: float) -> bool:
        # the version bump fails any concurrent claim that read the old lease
        now = _utcnow()
        async with get_db_session() as db:
            stmt = (
                update(SessionRow)
                .where(SessionRow.id == session_id, SessionRow.claim_token == token)
                .values(
                    claimed_until=now + timedelta(seconds=lease_seconds),
                    version=SessionRow.version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

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
        now = _utcnow()
        values: dict[str, Any] = {
            "status": status.value,
            "current_node_id": current_node_id,
            "variables": dict(variables),
            "last_error": last_error.model_dump(mode="json") if last_error else None,
            "claim_token": None,
            "claimed_until": None,
            "version": SessionRow.version + 1,
            "updated_at": now,
        }
        if processed_events is not None:
            values["processed_events"] = list(processed_events)
        if trace is not None:
            values["trace"] = [t.model_dump(mode="json") for t in trace]
        if status.is_terminal:
            values["ended_at"] = now
            values["active_key"] = None

        async with get_db_session() as db:
            stmt = (
                update(SessionRow)
                .where(SessionRow.id == session_id, SessionRow.claim_token == token)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

    # ── Converters ────────────────────────────────────────

    @staticmethod
    def _row_to_session(data: dict[str, Any]) -> Session:
        data = dict(data)
        for key in ("claimed_until", "created_at", "updated_at", "ended_at"):
            data[key] = _aware(data.get(key))
        if data.get("created_at") is None:
            data.pop("created_at")
        if data.get("updated_at") is None:
            data.pop("updated_at")
        return Session.model_validate(data)
