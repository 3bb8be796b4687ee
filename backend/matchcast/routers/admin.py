"""
backend/matchcast/routers/admin.py

Purpose:
    Operational view of the event pipeline: producer, consumer runtimes,
    in-memory broker queues, websocket fan-out and odds engine counters.
"""

from typing import Any

from fastapi import APIRouter

from matchcast.config import settings
from matchcast.services.broker import memory_broker_server
from matchcast.services.event_handlers import consumer_stats
from matchcast.services.odds_engine import odds_engine
from matchcast.services.producer import match_event_producer
from matchcast.services.websocket_manager import websocket_manager

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/consumers")
async def pipeline_stats() -> dict[str, Any]:
    broker_backend = str(settings.BROKER_BACKEND).strip().lower()
    return {
        "broker_backend": broker_backend,
        "producer": match_event_producer.stats(),
        "consumers": consumer_stats(),
        "broker": memory_broker_server.stats() if broker_backend == "memory" else None,
        "websocket": websocket_manager.stats(),
        "odds": odds_engine.stats(),
    }
