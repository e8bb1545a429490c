"""
REST surface over the cache engine's message protocol.

Endpoints:
  GET  /api/health
  POST /api/engine/messages
  GET  /api/engine/status
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from loguru import logger
from sqlalchemy import text

from app.engine import CacheEngine
from app.schemas.responses import (
    EngineEventsResponse,
    EngineMessage,
    EngineStatusResponse,
    HealthResponse,
)

router = APIRouter(prefix="/api")


def get_engine(request: Request) -> CacheEngine:
    """FastAPI dependency: the engine opened by the application lifespan."""
    return request.app.state.engine


# ── Health ────────────────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
def health(engine: CacheEngine = Depends(get_engine)):
    if engine.store is None:
        db_status = "closed"
    else:
        try:
            with engine.store.connect() as conn:
                conn.execute(text("SELECT 1"))
            db_status = "ok"
        except Exception as e:
            db_status = f"error: {e}"
    return HealthResponse(status="ok", db=db_status, engine=engine.status.value)


# ── Engine ────────────────────────────────────────────────────────────────────


@router.post("/engine/messages", response_model=EngineEventsResponse)
def post_message(message: EngineMessage, engine: CacheEngine = Depends(get_engine)):
    """
    Handle one engine message and return every event it produced.

    Sync endpoints run in FastAPI's thread pool; the engine serialises
    messages itself.
    """
    if not engine.accepts(message.type):
        raise HTTPException(status_code=400, detail=f"Unknown message type: {message.type}")
    logger.debug(f"Engine message {message.type}")
    events = engine.handle(message.model_dump())
    return EngineEventsResponse(events=events)


@router.get("/engine/status", response_model=EngineStatusResponse)
def engine_status(engine: CacheEngine = Depends(get_engine)):
    return EngineStatusResponse(**engine.snapshot())
