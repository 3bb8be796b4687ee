"""
backend/matchcast/services/event_handlers/notification_handlers.py

Purpose:
    Notification consumer. Waits briefly so persistence and statistics can
    catch up, reads the combined match + statistics view and pushes it to the
    match's group. MatchStarted / MatchEnded are also broadcast to every
    subscriber, and a Goal additionally broadcasts a score update.
    A match or statistics row that is still missing after the wait drops the
    notification; there is no retry.

Dependencies:
    - matchcast.services.match_store
    - matchcast.services.websocket_manager
    - matchcast.config
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from matchcast.config import settings
from matchcast.models.match import MatchStatsView
from matchcast.services import match_store
from matchcast.services.event_models import BaseMatchEvent, EventKind
from matchcast.services.websocket_manager import websocket_manager

logger = logging.getLogger("matchcast.event_handlers.notifications")

GROUP_MESSAGE = "match_stats_updated"
BROADCAST_MESSAGES = {
    EventKind.match_started: "match_started",
    EventKind.match_ended: "match_ended",
    EventKind.goal: "score_updated",
}
_LATEST_EVENT_KINDS = {EventKind.goal, EventKind.card, EventKind.substitution}


def _latest_event(event: BaseMatchEvent) -> dict[str, Any] | None:
    if event.kind not in _LATEST_EVENT_KINDS:
        return None
    return event.model_dump(mode="json")


async def handle_notifications(event: BaseMatchEvent) -> None:
    delay = max(0.0, float(settings.NOTIFICATION_DELAY_SECONDS))
    if delay:
        await asyncio.sleep(delay)

    match = await match_store.get_match(event.match_id)
    stats = await match_store.get_statistics(event.match_id)
    if match is None or stats is None:
        logger.warning(
            "No stored state for match_id=%s (match=%s statistics=%s); notification dropped event_id=%s",
            event.match_id,
            match is not None,
            stats is not None,
            event.event_id,
        )
        return

    view = MatchStatsView.combine(event.match_id, match, stats, latest_event=_latest_event(event))
    data = view.model_dump(mode="json")

    delivered = await websocket_manager.send_to_group(event.match_id, event_type=GROUP_MESSAGE, data=data)
    broadcast_type = BROADCAST_MESSAGES.get(event.kind)
    broadcast_delivered = 0
    if broadcast_type is not None:
        broadcast_delivered = await websocket_manager.broadcast(event_type=broadcast_type, data=data)

    logger.info(
        "Notified match_id=%s kind=%s group_delivered=%d broadcast=%s broadcast_delivered=%d",
        event.match_id,
        event.kind.value,
        delivered,
        broadcast_type or "-",
        broadcast_delivered,
    )
