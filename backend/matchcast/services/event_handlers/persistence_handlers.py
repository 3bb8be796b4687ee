"""
backend/matchcast/services/event_handlers/persistence_handlers.py

Purpose:
    Persistence consumer: the single writer of the authoritative match record
    and the append-only event log. Every mutation is idempotent per eventId
    (insert-if-absent, guarded $inc, absolute $set) and the event-log row is
    written last, so an event whose writes failed half-way is still replayed
    in full on redelivery, and a fully applied one is skipped.

Dependencies:
    - matchcast.services.match_store
    - matchcast.services.event_models
"""

from __future__ import annotations

import logging

from matchcast.services import match_store
from matchcast.services.event_models import (
    BaseMatchEvent,
    GoalEvent,
    MatchEndedEvent,
    MatchStartedEvent,
    encode_event,
)

logger = logging.getLogger("matchcast.event_handlers.persistence")


async def handle_persistence(event: BaseMatchEvent) -> None:
    if await match_store.event_recorded(event.event_id):
        logger.info("Duplicate event skipped event_id=%s kind=%s", event.event_id, event.kind.value)
        return

    payload = encode_event(event).decode("utf-8")
    async with match_store.write_unit() as session:
        if isinstance(event, MatchStartedEvent):
            await _apply_match_started(event, session)
        elif isinstance(event, GoalEvent):
            await _apply_goal(event, session)
        elif isinstance(event, MatchEndedEvent):
            await _apply_match_ended(event, session)

        # Log row last: it marks the event as fully applied.
        if not await match_store.append_event_log(event, payload, session=session):
            logger.info("Duplicate event skipped event_id=%s kind=%s", event.event_id, event.kind.value)
            return

    logger.info(
        "Persisted event event_id=%s kind=%s match_id=%s",
        event.event_id,
        event.kind.value,
        event.match_id,
    )


async def _apply_match_started(event: MatchStartedEvent, session) -> None:
    created = await match_store.create_match(event, session=session)
    if not created:
        logger.warning("Duplicate MatchStarted for existing match_id=%s; record kept", event.match_id)
        return
    logger.info(
        "Created match match_id=%s home=%s away=%s",
        event.match_id,
        event.home_team_name or event.home_team_id,
        event.away_team_name or event.away_team_id,
    )


async def _apply_goal(event: GoalEvent, session) -> None:
    match = await match_store.get_match(event.match_id, session=session)
    if match is None:
        logger.error("Goal for unknown match_id=%s event_id=%s; score unchanged", event.match_id, event.event_id)
        return
    if event.team_id == match.home_team_id:
        side = match_store.HOME
    elif event.team_id == match.away_team_id:
        side = match_store.AWAY
    else:
        logger.warning(
            "Goal team_id=%s is neither side of match_id=%s; score unchanged",
            event.team_id,
            event.match_id,
        )
        return
    applied = await match_store.increment_score(event.match_id, side, event_id=event.event_id, session=session)
    if not applied:
        logger.info("Goal already applied event_id=%s match_id=%s", event.event_id, event.match_id)


async def _apply_match_ended(event: MatchEndedEvent, session) -> None:
    match = await match_store.get_match(event.match_id, session=session)
    if match is None:
        logger.error("MatchEnded for unknown match_id=%s event_id=%s", event.match_id, event.event_id)
        return
    await match_store.finish_match(
        event.match_id,
        event.final_home_score,
        event.final_away_score,
        session=session,
    )
