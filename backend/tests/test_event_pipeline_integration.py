"""
backend/tests/test_event_pipeline_integration.py

Purpose:
    End-to-end run of producer -> topic exchange -> all consumer roles over
    the in-memory broker and a fake Mongo: start / goals / end converge to a
    consistent final state in every derived view.
"""

from __future__ import annotations

import asyncio
import sys

import pytest

sys.path.insert(0, "backend")

from matchcast.config import settings
from matchcast.models.match_events import EndMatchRequest, GoalRequest, StartMatchRequest
from matchcast.services.broker import InMemoryBrokerServer, InMemoryTopicBroker
from matchcast.services.broker_topology import build_topology
from matchcast.services.event_handlers import build_consumers, notification_handlers, odds_handlers
from matchcast.services.odds_engine import OddsEngine
from matchcast.services.producer import MatchEventProducer


class _RecordingManager:
    def __init__(self):
        self.group_calls: list[tuple[str, str, dict]] = []
        self.broadcasts: list[tuple[str, dict]] = []

    async def send_to_group(self, group, *, event_type, data):
        self.group_calls.append((group, event_type, data))
        return 1

    async def broadcast(self, *, event_type, data):
        self.broadcasts.append((event_type, data))
        return 1


async def _wait_for(predicate, timeout: float = 3.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("pipeline did not converge")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_start_goals_end_scenario(fake_db, monkeypatch):
    monkeypatch.setattr(settings, "NOTIFICATION_DELAY_SECONDS", 0.05)
    monkeypatch.setattr(settings, "STATS_MISSING_RETRY_DELAY_SECONDS", 0.01)
    monkeypatch.setattr(settings, "SMTP_ENABLED", False)
    for role in ("PERSISTENCE", "STATISTICS", "ODDS", "NOTIFICATIONS", "EMAIL"):
        monkeypatch.setattr(settings, f"CONSUMER_{role}_ENABLED", True)
    manager = _RecordingManager()
    engine = OddsEngine()
    monkeypatch.setattr(notification_handlers, "websocket_manager", manager)
    monkeypatch.setattr(odds_handlers, "odds_engine", engine)

    server = InMemoryBrokerServer(queue_maxsize=100)

    def factory(name):
        return InMemoryTopicBroker(server, name=name)

    topology = build_topology("match.events", dead_letter_enabled=False)
    consumers = build_consumers(topology, broker_factory=factory)
    for consumer in consumers:
        await consumer.start()
    producer = MatchEventProducer(topology=topology, broker_factory=factory)
    await producer.start()

    def acked(role: str) -> int:
        return next(c for c in consumers if c.role == role).stats()["acked_total"]

    try:
        started = await producer.start_match(
            StartMatchRequest(match_id="WC1", home_team_id=10, away_team_id=20, home_team_name="Peru", away_team_name="Chile")
        )
        await _wait_for(lambda: acked("persistence") == 1)

        published = 1
        goal = None
        for team_id, minute in ((10, 12), (10, 40), (20, 55), (10, 80)):
            goal = await producer.record_goal(GoalRequest(match_id="WC1", team_id=team_id, player_id=7, minute=minute))
            published += 1
            await _wait_for(lambda: acked("persistence") == published and acked("odds") == published)

        # Same eventId published twice.
        await producer.publish(goal)
        published += 1
        await _wait_for(lambda: acked("persistence") == published)

        await producer.end_match(EndMatchRequest(match_id="WC1", final_home_score=3, final_away_score=1))
        published += 1
        await _wait_for(
            lambda: all(c.stats()["acked_total"] == published for c in consumers),
        )
    finally:
        await producer.stop()
        for consumer in consumers:
            await consumer.stop()

    match = fake_db.matches.docs["WC1"]
    assert match["status"] == "Finished"
    assert (match["home_score"], match["away_score"]) == (3, 1)
    assert len(fake_db.match_events.docs) == 6
    assert started.event_id in fake_db.match_events.docs

    stats = fake_db.match_statistics.docs["WC1"]
    assert stats["total_goals"] == 4
    assert stats["total_events"] == 5

    assert engine.current("WC1").as_tuple() == (1.01, 1000.0, 1000.0)

    broadcast_types = [event_type for event_type, _ in manager.broadcasts]
    assert broadcast_types[0] == "match_started"
    assert broadcast_types[-1] == "match_ended"
    # Notifications are not deduplicated: the redelivered goal is pushed again.
    assert broadcast_types.count("score_updated") == 5
    assert all(group == "WC1" for group, _, _ in manager.group_calls)

    queues = server.stats()["queues"]
    assert all(q["depth"] == 0 for q in queues.values())
    assert queues["queue.odds"]["delivered_total"] == 7
