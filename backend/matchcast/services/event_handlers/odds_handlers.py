"""
backend/matchcast/services/event_handlers/odds_handlers.py

Purpose:
    Odds consumer. Hands each match-affecting event to the odds engine.

Dependencies:
    - matchcast.services.odds_engine
"""

from __future__ import annotations

import logging

from matchcast.services.event_models import BaseMatchEvent
from matchcast.services.odds_engine import odds_engine

logger = logging.getLogger("matchcast.event_handlers.odds")


async def handle_odds(event: BaseMatchEvent) -> None:
    state = await odds_engine.apply(event)
    if state is None:
        logger.info("Odds not adjusted event_id=%s kind=%s", event.event_id, event.kind.value)
