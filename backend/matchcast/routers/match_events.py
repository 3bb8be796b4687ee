"""
backend/matchcast/routers/match_events.py

Purpose:
    Producer HTTP surface. Each endpoint validates the request, publishes one
    event and answers 202 Accepted; consumer processing is never awaited.

Dependencies:
    - matchcast.services.producer
    - matchcast.models.match_events
"""

from typing import Any

from fastapi import APIRouter, Response, status

from matchcast.middleware.logging import EVENT_ID_HEADER
from matchcast.models.match_events import (
    CardRequest,
    EndMatchRequest,
    GoalRequest,
    StartMatchRequest,
    SubstitutionRequest,
)
from matchcast.services.broker_topology import routing_key
from matchcast.services.event_models import BaseMatchEvent
from matchcast.services.producer import match_event_producer

router = APIRouter(prefix="/api/match-events", tags=["match-events"])


def _accepted(event: BaseMatchEvent, response: Response) -> dict[str, Any]:
    response.headers[EVENT_ID_HEADER] = event.event_id
    return {
        "status": "accepted",
        "event_id": event.event_id,
        "match_id": event.match_id,
        "event_kind": event.kind.value,
        "routing_key": routing_key(event.match_id, event.kind),
        "event": event.model_dump(mode="json"),
    }


@router.post("/start", status_code=status.HTTP_202_ACCEPTED)
async def start_match(body: StartMatchRequest, response: Response):
    """Publish MatchStarted. A match id and team ids are generated when omitted."""
    event = await match_event_producer.start_match(body)
    return _accepted(event, response)


@router.post("/end", status_code=status.HTTP_202_ACCEPTED)
async def end_match(body: EndMatchRequest, response: Response):
    event = await match_event_producer.end_match(body)
    return _accepted(event, response)


@router.post("/goal", status_code=status.HTTP_202_ACCEPTED)
async def record_goal(body: GoalRequest, response: Response):
    event = await match_event_producer.record_goal(body)
    return _accepted(event, response)


@router.post("/card", status_code=status.HTTP_202_ACCEPTED)
async def record_card(body: CardRequest, response: Response):
    event = await match_event_producer.record_card(body)
    return _accepted(event, response)


@router.post("/substitution", status_code=status.HTTP_202_ACCEPTED)
async def record_substitution(body: SubstitutionRequest, response: Response):
    event = await match_event_producer.record_substitution(body)
    return _accepted(event, response)
