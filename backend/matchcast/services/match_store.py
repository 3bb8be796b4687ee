"""
backend/matchcast/services/match_store.py

Purpose:
    Primary-key access to the authoritative store: matches, match_statistics
    and the append-only match_events log. Every mutation is a single-document
    atomic operator ($inc / $set / insert) so concurrent writers on the same
    row never lose updates, and each one is safe to repeat for the same
    eventId. write_unit() groups one event's writes into a MongoDB
    transaction when MONGO_TRANSACTIONS_ENABLED is set.

Dependencies:
    - motor (via matchcast.database)
    - pymongo.errors
    - matchcast.models.match
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from pymongo.errors import DuplicateKeyError

import matchcast.database as _db
from matchcast.config import settings
from matchcast.models.match import MatchInDB, MatchStatisticInDB, MatchStatus
from matchcast.services.event_models import BaseMatchEvent, MatchStartedEvent
from matchcast.utils import utcnow

logger = logging.getLogger("matchcast.match_store")

HOME = "home"
AWAY = "away"

_STAT_COUNTERS = (
    "total_goals",
    "total_yellow_cards",
    "total_red_cards",
    "total_substitutions",
    "total_events",
)


@asynccontextmanager
async def write_unit() -> AsyncIterator[Any]:
    """Yield a session bound to a transaction, or None when transactions are off."""
    if not settings.MONGO_TRANSACTIONS_ENABLED:
        yield None
        return
    async with await _db.client.start_session() as session:
        async with session.start_transaction():
            yield session


async def event_recorded(event_id: str, *, session: Any = None) -> bool:
    doc = await _db.db.match_events.find_one({"_id": event_id}, {"_id": 1}, session=session)
    return doc is not None


async def append_event_log(event: BaseMatchEvent, payload: str, *, session: Any = None) -> bool:
    """Insert the immutable event row. False when the eventId is already logged."""
    try:
        await _db.db.match_events.insert_one(
            {
                "_id": event.event_id,
                "match_id": event.match_id,
                "event_kind": event.kind.value,
                "event_time": event.event_time,
                "payload": payload,
                "recorded_at": utcnow(),
            },
            session=session,
        )
    except DuplicateKeyError:
        return False
    return True


async def get_match(match_id: str, *, session: Any = None) -> MatchInDB | None:
    doc = await _db.db.matches.find_one({"_id": match_id}, session=session)
    return MatchInDB.from_doc(doc) if doc else None


async def match_exists(match_id: str) -> bool:
    doc = await _db.db.matches.find_one({"_id": match_id}, {"_id": 1})
    return doc is not None


async def get_statistics(match_id: str, *, session: Any = None) -> MatchStatisticInDB | None:
    doc = await _db.db.match_statistics.find_one({"_id": match_id}, session=session)
    return MatchStatisticInDB.from_doc(doc) if doc else None


async def create_match(event: MatchStartedEvent, *, session: Any = None) -> bool:
    """Create the match and its zeroed statistics row. False if the match already exists.

    The statistics upsert runs either way, so a retry after a partial failure
    still leaves both rows in place.
    """
    now = utcnow()
    created = True
    try:
        await _db.db.matches.insert_one(
            {
                "_id": event.match_id,
                "home_team_id": event.home_team_id,
                "away_team_id": event.away_team_id,
                "home_team_name": event.home_team_name,
                "away_team_name": event.away_team_name,
                "home_score": 0,
                "away_score": 0,
                "status": MatchStatus.in_progress.value,
                "applied_event_ids": [],
                "created_at": now,
                "updated_at": now,
            },
            session=session,
        )
    except DuplicateKeyError:
        created = False
    # $setOnInsert keeps counters untouched if the statistics row exists already.
    await _db.db.match_statistics.update_one(
        {"_id": event.match_id},
        {"$setOnInsert": {**{counter: 0 for counter in _STAT_COUNTERS}, "updated_at": now}},
        upsert=True,
        session=session,
    )
    return created


async def increment_score(match_id: str, side: str, *, event_id: str, session: Any = None) -> bool:
    """$inc one side's score at most once per event_id. False when already applied."""
    field = "home_score" if side == HOME else "away_score"
    result = await _db.db.matches.update_one(
        {"_id": match_id, "applied_event_ids": {"$ne": event_id}},
        {
            "$inc": {field: 1},
            "$addToSet": {"applied_event_ids": event_id},
            "$set": {"updated_at": utcnow()},
        },
        session=session,
    )
    return bool(result.matched_count)


async def finish_match(match_id: str, final_home: int, final_away: int, *, session: Any = None) -> None:
    await _db.db.matches.update_one(
        {"_id": match_id},
        {
            "$set": {
                "status": MatchStatus.finished.value,
                "home_score": int(final_home),
                "away_score": int(final_away),
                "updated_at": utcnow(),
            }
        },
        session=session,
    )


STATS_APPLIED = "applied"
STATS_DUPLICATE = "duplicate"
STATS_MISSING = "missing"


async def increment_statistics(match_id: str, increments: dict[str, int], *, event_id: str) -> str:
    """Atomically $inc counters on an existing row, at most once per event_id.

    Returns STATS_APPLIED, STATS_DUPLICATE (event already counted) or
    STATS_MISSING (no statistics row yet).
    """
    unknown = set(increments) - set(_STAT_COUNTERS)
    if unknown:
        raise ValueError(f"unknown statistic counters: {sorted(unknown)}")
    if any(int(delta) < 0 for delta in increments.values()):
        raise ValueError("statistic counters are never decremented")
    result = await _db.db.match_statistics.update_one(
        {"_id": match_id, "applied_event_ids": {"$ne": event_id}},
        {
            "$inc": {key: int(delta) for key, delta in increments.items()},
            "$addToSet": {"applied_event_ids": event_id},
            "$set": {"updated_at": utcnow()},
        },
    )
    if result.matched_count:
        return STATS_APPLIED
    doc = await _db.db.match_statistics.find_one({"_id": match_id}, {"_id": 1})
    return STATS_DUPLICATE if doc is not None else STATS_MISSING


async def list_matches_by_status(status: MatchStatus, *, limit: int = 500) -> list[MatchInDB]:
    docs = await _db.db.matches.find({"status": status.value}).to_list(length=limit)
    return [MatchInDB.from_doc(doc) for doc in docs]
