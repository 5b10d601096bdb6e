"""
FastAPI Application — HTTP surface over the flow engine.

Provides:
- Flow publishing and lookup
- Inbound event endpoint (normalized events from channel webhooks)
- Session inspection for the debugger / trace view
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import get_settings
from core.engine import FlowEngine, build_engine
from core.errors import FlowValidationError
from database.session import close_db, init_db
from models.schemas import FlowDefinition, InboundEvent, TurnStatus

logger = structlog.get_logger()


def create_app(engine: FlowEngine = None) -> FastAPI:
    """Build the app. Pass an engine to skip settings-driven wiring (tests)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        owns_engine = engine is None
        uses_sql = owns_engine and settings.database.store_backend == "sql"

        if uses_sql:
            await init_db()
        app.state.engine = engine or build_engine(settings)

        logger.info("flow_engine_started",
                    app_name=settings.app_name,
                    store_backend=type(app.state.engine.store).__name__,
                    flows=len(app.state.engine.flows.list_latest()))
        yield

        if owns_engine:
            await app.state.engine.close()
        if uses_sql:
            await close_db()
        logger.info("flow_engine_stopped")

    app = FastAPI(
        title="FlowEngine API",
        description="Conversational flow execution engine",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _engine(request: Request) -> FlowEngine:
        return request.app.state.engine

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        engine_ = _engine(request)
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "flows": [g.flow_id for g in engine_.flows.list_latest()],
            "node_types": sorted(engine_.handlers.types),
        }

    # ══════════════════════════════════════════════════════════
    #  FLOWS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/flows")
    async def publish_flow(flow: FlowDefinition, request: Request):
        flows = _engine(request).flows
        try:
            report = flows.publish(flow)
        except FlowValidationError as e:
            return JSONResponse(status_code=422, content={
                "flow_id": e.flow_id, "errors": e.errors, "warnings": e.warnings,
            })
        published = flows.latest(flow.id)
        return {"id": flow.id, "version": published.version, "warnings": report.warnings}

    @app.get("/api/v1/flows/{flow_id}")
    async def get_flow(flow_id: str, request: Request, version: Optional[int] = Query(None)):
        graph = _engine(request).flows.get(flow_id, version)
        if graph is None:
            raise HTTPException(404, "Flow not found")
        return graph.flow.model_dump(mode="json", by_alias=True)

    # ══════════════════════════════════════════════════════════
    #  INBOUND EVENTS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/events/inbound")
    async def receive_inbound_event(event: InboundEvent, request: Request):
        engine_ = _engine(request)
        result = await engine_.start_or_resume(event.conversation_id, event)
        if result.status == TurnStatus.BUSY:
            # One retry, then acknowledge and drop; the channel redelivers if it must
            result = await engine_.start_or_resume(event.conversation_id, event)
        if result.status == TurnStatus.BUSY:
            logger.info("inbound_event_dropped_busy",
                        conversation_id=event.conversation_id,
                        event_id=event.event_id)
            return JSONResponse(status_code=202, content=result.model_dump(mode="json"))
        return result.model_dump(mode="json")

    # ══════════════════════════════════════════════════════════
    #  SESSIONS
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/sessions/{session_id}")
    async def get_session_state(session_id: str, request: Request):
        session = await _engine(request).get_session_state(session_id)
        if session is None:
            raise HTTPException(404, "Session not found")
        return session.model_dump(mode="json")

    @app.get("/api/v1/conversations/{conversation_id}/sessions")
    async def list_conversation_sessions(conversation_id: str, request: Request) -> list[dict[str, Any]]:
        sessions = await _engine(request).list_sessions(conversation_id)
        return [s.model_dump(mode="json") for s in sessions]

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
