"""
backend/matchcast/services/producer.py

Purpose:
    Builds typed match events from validated requests and publishes each one
    exactly once to the topic exchange as a persistent message. Success means
    the broker accepted the message; consumer-side completion is never awaited
    and publish failures are not retried here.

Dependencies:
    - matchcast.services.broker
    - matchcast.services.broker_topology
    - matchcast.services.event_models
    - matchcast.models.match_events
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from typing import Any

from matchcast.models.match_events import (
    CardRequest,
    EndMatchRequest,
    GoalRequest,
    StartMatchRequest,
    SubstitutionRequest,
)
from matchcast.services.broker import Broker, BrokerError, build_broker
from matchcast.services.broker_topology import Topology, build_topology, routing_key
from matchcast.services.event_models import (
    BaseMatchEvent,
    CardEvent,
    GoalEvent,
    MatchEndedEvent,
    MatchStartedEvent,
    SubstitutionEvent,
    encode_event,
    make_match_id,
)

logger = logging.getLogger("matchcast.producer")

_TEAM_ID_RANGE = (1, 999)


class PublishError(RuntimeError):
    """The broker did not accept the message."""


def _envelope_overrides(request: Any) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if request.event_id:
        overrides["event_id"] = request.event_id
    if request.event_time is not None:
        overrides["event_time"] = request.event_time
    return overrides


def _pick_team_ids(home: int | None, away: int | None) -> tuple[int, int]:
    home_id = home or random.randint(*_TEAM_ID_RANGE)
    away_id = away or random.randint(*_TEAM_ID_RANGE)
    while away_id == home_id and not (home and away):
        if away:
            home_id = random.randint(*_TEAM_ID_RANGE)
        else:
            away_id = random.randint(*_TEAM_ID_RANGE)
    return home_id, away_id


class MatchEventProducer:
    def __init__(
        self,
        *,
        topology: Topology,
        broker_factory: Callable[[str], Broker] = build_broker,
    ) -> None:
        self._topology = topology
        self._broker_factory = broker_factory
        self._broker: Broker | None = None
        self._published_total = 0
        self._failed_total = 0

    @property
    def connected(self) -> bool:
        return self._broker is not None and not self._broker.is_closed

    async def start(self) -> None:
        if self.connected:
            return
        broker = self._broker_factory("producer")
        await broker.connect()
        # Exchange only: queues belong to the consumer roles.
        await broker.declare_topology(self._topology, roles=())
        self._broker = broker
        logger.info("Producer connected exchange=%s", self._topology.exchange_name)

    async def stop(self) -> None:
        if self._broker is None:
            return
        broker, self._broker = self._broker, None
        await broker.close()
        logger.info("Producer stopped")

    async def publish(self, event: BaseMatchEvent) -> BaseMatchEvent:
        if not self.connected:
            self._failed_total += 1
            raise PublishError("producer is not connected to the broker")
        key = routing_key(event.match_id, event.kind)
        try:
            await self._broker.publish(
                self._topology.exchange_name,
                key,
                encode_event(event),
                message_id=event.event_id,
                message_type=event.kind.value,
            )
        except BrokerError as exc:
            self._failed_total += 1
            logger.error("Publish failed event_id=%s routing_key=%s error=%s", event.event_id, key, exc)
            raise PublishError(str(exc)) from exc
        self._published_total += 1
        logger.info(
            "Published event_id=%s kind=%s match_id=%s routing_key=%s",
            event.event_id,
            event.kind.value,
            event.match_id,
            key,
        )
        return event

    async def start_match(self, request: StartMatchRequest) -> MatchStartedEvent:
        home_id, away_id = _pick_team_ids(request.home_team_id, request.away_team_id)
        event = MatchStartedEvent(
            match_id=request.match_id or make_match_id(),
            home_team_id=home_id,
            away_team_id=away_id,
            home_team_name=request.home_team_name,
            away_team_name=request.away_team_name,
            **_envelope_overrides(request),
        )
        await self.publish(event)
        return event

    async def end_match(self, request: EndMatchRequest) -> MatchEndedEvent:
        event = MatchEndedEvent(
            match_id=request.match_id,
            final_home_score=request.final_home_score,
            final_away_score=request.final_away_score,
            **_envelope_overrides(request),
        )
        await self.publish(event)
        return event

    async def record_goal(self, request: GoalRequest) -> GoalEvent:
        event = GoalEvent(
            match_id=request.match_id,
            team_id=request.team_id,
            player_id=request.player_id,
            minute=request.minute,
            **_envelope_overrides(request),
        )
        await self.publish(event)
        return event

    async def record_card(self, request: CardRequest) -> CardEvent:
        event = CardEvent(
            match_id=request.match_id,
            team_id=request.team_id,
            player_id=request.player_id,
            card_severity=request.card_severity,
            minute=request.minute,
            **_envelope_overrides(request),
        )
        await self.publish(event)
        return event

    async def record_substitution(self, request: SubstitutionRequest) -> SubstitutionEvent:
        event = SubstitutionEvent(
            match_id=request.match_id,
            team_id=request.team_id,
            player_in_id=request.player_in_id,
            player_out_id=request.player_out_id,
            minute=request.minute,
            **_envelope_overrides(request),
        )
        await self.publish(event)
        return event

    def stats(self) -> dict[str, Any]:
        return {
            "connected": self.connected,
            "exchange": self._topology.exchange_name,
            "published_total": self._published_total,
            "failed_total": self._failed_total,
        }


match_event_producer = MatchEventProducer(topology=build_topology())
