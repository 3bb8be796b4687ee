"""
backend/matchcast/services/event_handlers/statistics_handlers.py

Purpose:
    Statistics consumer. Folds Goal / Card / Substitution / MatchEnded events
    into monotonically increasing counters, each eventId counted at most once.
    The statistics row is created by the persistence consumer, which may lag
    behind; a missing row is retried a bounded number of times before the
    event is dropped.

Dependencies:
    - matchcast.services.match_store
    - matchcast.config
"""

from __future__ import annotations

import asyncio
import logging

from matchcast.config import settings
from matchcast.services import match_store
from matchcast.services.event_models import BaseMatchEvent, CardEvent, CardSeverity, EventKind

logger = logging.getLogger("matchcast.event_handlers.statistics")


def statistic_increments(event: BaseMatchEvent) -> dict[str, int]:
    increments = {"total_events": 1}
    kind = event.kind
    if kind is EventKind.goal:
        increments["total_goals"] = 1
    elif kind is EventKind.card and isinstance(event, CardEvent):
        if event.card_severity is CardSeverity.red:
            increments["total_red_cards"] = 1
        else:
            increments["total_yellow_cards"] = 1
    elif kind is EventKind.substitution:
        increments["total_substitutions"] = 1
    return increments


async def handle_statistics(event: BaseMatchEvent) -> None:
    if event.kind is EventKind.match_started:
        return

    increments = statistic_increments(event)
    retries = max(0, int(settings.STATS_MISSING_RETRY_ATTEMPTS))
    delay = max(0.0, float(settings.STATS_MISSING_RETRY_DELAY_SECONDS))

    outcome = await match_store.increment_statistics(event.match_id, increments, event_id=event.event_id)
    remaining = retries
    while outcome == match_store.STATS_MISSING and remaining > 0:
        logger.warning(
            "Statistics row missing match_id=%s; retrying in %.0fms (%d left)",
            event.match_id,
            delay * 1000,
            remaining,
        )
        await asyncio.sleep(delay)
        remaining -= 1
        outcome = await match_store.increment_statistics(event.match_id, increments, event_id=event.event_id)

    if outcome == match_store.STATS_APPLIED:
        logger.info("Statistics updated match_id=%s kind=%s", event.match_id, event.kind.value)
    elif outcome == match_store.STATS_DUPLICATE:
        logger.info("Duplicate event skipped event_id=%s kind=%s", event.event_id, event.kind.value)
    else:
        logger.error(
            "Statistics row still missing match_id=%s event_id=%s; event dropped",
            event.match_id,
            event.event_id,
        )
