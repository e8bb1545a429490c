"""Pydantic request/response schemas for API endpoints."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str
    db: str
    engine: str
    version: str = "1.0.0"


class EngineMessage(BaseModel):
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)


class EngineEvent(BaseModel):
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)


class EngineEventsResponse(BaseModel):
    events: list[EngineEvent]


class EngineStatusResponse(BaseModel):
    status: str
    ready: bool
