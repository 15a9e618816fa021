"""FastAPI application entrypoint and router wiring for the task board."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import APIRouter, FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi_pagination import add_pagination

from taskboard.api.boards import router as boards_router
from taskboard.api.events import router as events_router
from taskboard.api.stages import router as stages_router
from taskboard.api.tasks import router as tasks_router
from taskboard.core.config import settings
from taskboard.core.error_handling import install_error_handling
from taskboard.core.logging import configure_logging, get_logger
from taskboard.db.session import dispose_engine, init_db
from taskboard.schemas.health import HealthStatusResponse
from taskboard.services.change_channel import (
    RedisChangeChannel,
    get_change_channel,
    set_change_channel,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

configure_logging()
logger = get_logger(__name__)
OPENAPI_TAGS = [
    {
        "name": "health",
        "description": "Service liveness/readiness probes used by infrastructure checks.",
    },
    {
        "name": "boards",
        "description": "Board lifecycle and per-actor capability endpoints.",
    },
    {
        "name": "stages",
        "description": "Ordered process stages: create, update, reorder and delete.",
    },
    {
        "name": "tasks",
        "description": "Broker tasks, moves between stages, history and comments.",
    },
    {
        "name": "events",
        "description": "Server-sent board change stream for live board views.",
    },
]


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    """Initialize application resources before serving requests."""
    logger.info(
        "app.lifecycle.starting",
        extra={
            "environment": settings.environment,
            "db_auto_migrate": settings.db_auto_migrate,
            "change_channel_backend": settings.change_channel_backend,
        },
    )
    await init_db()
    channel = get_change_channel()
    logger.info("app.lifecycle.started")
    try:
        yield
    finally:
        if isinstance(channel, RedisChangeChannel):
            await channel.aclose()
        set_change_channel(None)
        await dispose_engine()
        logger.info("app.lifecycle.stopped")


app = FastAPI(
    title="Task Board API",
    version="0.1.0",
    lifespan=lifespan,
    openapi_tags=OPENAPI_TAGS,
)

origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
if origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id"],
    )
    logger.info("app.cors.enabled", extra={"origins_count": len(origins)})
else:
    logger.info("app.cors.disabled")

install_error_handling(app)


@app.get(
    "/health",
    tags=["health"],
    response_model=HealthStatusResponse,
    summary="Health Check",
    responses={
        status.HTTP_200_OK: {
            "description": "Service is alive.",
            "content": {"application/json": {"example": {"ok": True}}},
        },
    },
)
def health() -> HealthStatusResponse:
    """Lightweight liveness probe endpoint."""
    return HealthStatusResponse(ok=True)


@app.get("/healthz", tags=["health"], response_model=HealthStatusResponse)
def healthz() -> HealthStatusResponse:
    """Alias liveness probe endpoint for platform compatibility."""
    return HealthStatusResponse(ok=True)


@app.get("/readyz", tags=["health"], response_model=HealthStatusResponse)
def readyz() -> HealthStatusResponse:
    """Readiness probe endpoint for service orchestration checks."""
    return HealthStatusResponse(ok=True)


api_v1 = APIRouter(prefix="/api/v1")
api_v1.include_router(boards_router)
api_v1.include_router(stages_router)
api_v1.include_router(tasks_router)
api_v1.include_router(events_router)
app.include_router(api_v1)

add_pagination(app)
logger.debug("app.routes.registered", extra={"count": len(app.routes)})
