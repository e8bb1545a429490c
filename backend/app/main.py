"""
Sales cache – FastAPI application entry point.

Run with:
    uvicorn app.main:app --reload --host 0.0.0.0 --port 8000
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from app.api.routes import router
from app.core.config import settings
from app.core.logging import setup_logging
from app.engine import CacheEngine
from app.etl.client import UpstreamClient


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown hooks."""
    setup_logging()
    logger.info("Starting sales cache backend …")
    engine = CacheEngine(database_url=settings.DATABASE_URL, client=UpstreamClient())
    for event in engine.handle({"type": "init"}):
        if event["type"] == "error":
            logger.error(f"Cache engine failed to open: {event['payload']['message']}")
    app.state.engine = engine
    yield
    engine.close()
    logger.info("Sales cache backend shut down")


app = FastAPI(
    title="Sales Cache API",
    description="Local analytical cache over the Tally sales ledger",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS – allow frontend dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.get("/")
def root():
    return {"message": "Sales Cache API", "docs": "/docs"}
