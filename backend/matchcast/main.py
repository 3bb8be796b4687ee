"""
backend/matchcast/main.py

Purpose:
    FastAPI application bootstrap: middleware/router wiring and the lifecycle
    of the producer, the consumer runtimes and the websocket hub. Which parts
    run in this process is controlled by PRODUCER_ENABLED and the
    CONSUMER_*_ENABLED toggles, so the same app can be deployed as producer,
    consumer worker or both.

Dependencies:
    - matchcast.database
    - matchcast.services.producer
    - matchcast.services.event_handlers
    - matchcast.services.websocket_manager
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import ConnectionFailure, OperationFailure, ServerSelectionTimeoutError

import matchcast.database as _db
from matchcast.config import settings
from matchcast.database import close_db, connect_db
from matchcast.middleware.logging import EVENT_ID_HEADER, StructuredLoggingMiddleware, setup_logging
from matchcast.services.broker_topology import build_topology
from matchcast.services.producer import PublishError, match_event_producer

logger = logging.getLogger("matchcast")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    await connect_db()
    from matchcast.services.event_handlers import start_consumers, stop_consumers
    from matchcast.services.websocket_manager import websocket_manager

    topology = build_topology()
    if settings.WS_EVENTS_ENABLED:
        await websocket_manager.start()
        logger.info("WebSocket notification hub enabled")
    else:
        logger.info("WebSocket notification hub disabled via config")
    await start_consumers(topology)
    if settings.PRODUCER_ENABLED:
        await match_event_producer.start()
        logger.info("Producer enabled exchange=%s", topology.exchange_name)
    else:
        logger.info("Producer disabled via config")

    yield

    if settings.PRODUCER_ENABLED:
        await match_event_producer.stop()
    await stop_consumers()
    if settings.WS_EVENTS_ENABLED:
        await websocket_manager.stop()
    await close_db()


app = FastAPI(
    title="matchcast",
    description="Match event distribution with derived live state",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type"],
    expose_headers=[EVENT_ID_HEADER],
)

# Structured logging
app.add_middleware(StructuredLoggingMiddleware)

# Routers
from matchcast.routers.admin import router as admin_router
from matchcast.routers.match_events import router as match_events_router
from matchcast.routers.matches import router as matches_router
from matchcast.routers.odds import router as odds_router
from matchcast.routers.ws import router as ws_router

app.include_router(match_events_router)
app.include_router(matches_router)
app.include_router(odds_router)
app.include_router(ws_router)
app.include_router(admin_router)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Return clean validation errors without leaking internal field paths."""
    errors = []
    for err in exc.errors():
        loc = err.get("loc", ())
        # Strip the "body" / "path" prefix for cleaner messages
        field = ".".join(str(l) for l in loc[1:]) if len(loc) > 1 else str(loc[-1]) if loc else "unknown"
        errors.append({"field": field, "message": err.get("msg", "Invalid value.")})
    return JSONResponse(status_code=422, content={"detail": "Validation error.", "errors": errors})


@app.exception_handler(PublishError)
async def publish_error_handler(request: Request, exc: PublishError):
    logger.error("Publish rejected on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Event could not be published. Try again later."})


@app.exception_handler(ServerSelectionTimeoutError)
async def db_timeout_handler(request: Request, exc: ServerSelectionTimeoutError):
    logger.error("Database timeout: %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(ConnectionFailure)
async def db_connection_handler(request: Request, exc: ConnectionFailure):
    logger.error("Database connection failure: %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(OperationFailure)
async def db_operation_handler(request: Request, exc: OperationFailure):
    logger.error("Database operation error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Catch-all: log the real error, return a safe generic message."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.get("/health")
async def health():
    """Health check -- verifies DB connection and broker connectivity."""
    from matchcast.services.event_handlers import active_consumers

    try:
        result = await _db.db.command("ping")
        db_ok = result.get("ok") == 1.0
    except Exception:
        db_ok = False

    producer_ok = match_event_producer.connected or not settings.PRODUCER_ENABLED
    return {
        "status": "healthy" if db_ok and producer_ok else "degraded",
        "db": "connected" if db_ok else "disconnected",
        "producer": {
            "enabled": settings.PRODUCER_ENABLED,
            "connected": match_event_producer.connected,
        },
        "consumers": {consumer.role: consumer.running for consumer in active_consumers},
    }
