"""FastAPI application entry point — wires everything together.

Usage:
    python -m garageflow.main

Serves the workflow HTTP API and the realtime WebSocket endpoint.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI

from garageflow.api.routes import register_error_handlers, router
from garageflow.api.ws import ws_router
from garageflow.audit import event_log_subscriber
from garageflow.config import settings
from garageflow.db.engine import async_session_factory, db_lifespan, redis_client
from garageflow.realtime.bus import EventBus
from garageflow.realtime.dedup import DedupStore, InMemoryDedupStore, RedisDedupStore
from garageflow.realtime.dispatcher import NotificationDispatcher
from garageflow.realtime.registry import ConnectionRegistry
from garageflow.realtime.router import EventRouter
from garageflow.workflow.executor import TransitionExecutor
from garageflow.workflow.store import SqlAppointmentStore

# ── Logging setup ────────────────────────────────────────────────────

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    stream=sys.stdout,
)
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = logging.getLogger(__name__)

# ── FastAPI lifespan ─────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup and shutdown lifecycle."""
    logger.info("Starting GarageFlow (env=%s)", settings.environment)

    # 1. Database
    async with db_lifespan():
        logger.info("Database initialized")

        # 2. Event bus
        bus = EventBus()
        await bus.start()
        logger.info("Event bus started")

        # 3. Event log — always active (global subscriber)
        bus.subscribe(event_log_subscriber(async_session_factory))
        logger.info("Event log subscriber registered")

        # 4. Realtime delivery
        registry = ConnectionRegistry()
        await registry.start()

        dedup: DedupStore
        if settings.notifications.dedup_backend == "redis":
            dedup = RedisDedupStore(redis_client)
        else:
            dedup = InMemoryDedupStore()
        dispatcher = NotificationDispatcher(EventRouter(dedup), registry)
        bus.subscribe(dispatcher.on_event)
        logger.info("Notification dispatcher registered (dedup=%s)", settings.notifications.dedup_backend)

        # 5. Workflow
        store = SqlAppointmentStore(async_session_factory)
        app.state.store = store
        app.state.registry = registry
        app.state.executor = TransitionExecutor(store, bus)

        try:
            yield
        finally:
            # Shutdown in reverse order
            logger.info("Shutting down GarageFlow...")

            await bus.stop()
            logger.info("Event bus stopped")

            await dispatcher.stop()
            await registry.stop()
            logger.info("Realtime delivery stopped")

    logger.info("GarageFlow shutdown complete")


# ── FastAPI app ──────────────────────────────────────────────────────

app = FastAPI(
    title="GarageFlow API",
    description="Appointment workflow engine for garage service operations",
    version="0.1.0",
    lifespan=lifespan,
)
app.include_router(router)
app.include_router(ws_router)
register_error_handlers(app)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {
        "status": "ok",
        "environment": settings.environment,
    }


# ── Entry point ──────────────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run(
        "garageflow.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
