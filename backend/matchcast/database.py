"""
backend/matchcast/database.py

Purpose:
    MongoDB connection bootstrap and index management for the authoritative
    match store (matches, match_statistics, match_events).

Dependencies:
    - motor.motor_asyncio
    - matchcast.config
"""

import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from matchcast.config import settings

client: AsyncIOMotorClient = None
db: AsyncIOMotorDatabase = None

logger = logging.getLogger("matchcast.database")


async def connect_db() -> None:
    global client, db
    client = AsyncIOMotorClient(
        settings.MONGO_URI,
        maxPoolSize=25,
        minPoolSize=1,
        tz_aware=True,
        serverSelectionTimeoutMS=settings.MONGO_SERVER_SELECTION_TIMEOUT_MS,
        socketTimeoutMS=settings.MONGO_SOCKET_TIMEOUT_MS,
    )
    db = client[settings.MONGO_DB]
    await _ensure_indexes()
    logger.info("MongoDB connected db=%s transactions=%s", settings.MONGO_DB, settings.MONGO_TRANSACTIONS_ENABLED)


async def close_db() -> None:
    global client
    if client:
        client.close()


async def _ensure_indexes() -> None:
    """Create indexes on startup. Idempotent, safe to run repeatedly."""

    # ---- Matches (_id = matchId) ----
    await db.matches.create_index("status")

    # ---- Event log (_id = eventId doubles as the idempotency key) ----
    await db.match_events.create_index([("match_id", 1), ("event_time", 1)])
    await db.match_events.create_index("event_kind")
