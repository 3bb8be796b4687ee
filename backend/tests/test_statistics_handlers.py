"""
backend/tests/test_statistics_handlers.py

Purpose:
    Statistics consumer: monotonic counters and bounded retry when the
    statistics row has not been created yet.
"""

from __future__ import annotations

import asyncio
import sys

import pytest

sys.path.insert(0, "backend")

from matchcast.config import settings
from matchcast.services.event_handlers import statistics_handlers
from matchcast.services.event_models import (
    CardEvent,
    GoalEvent,
    MatchEndedEvent,
    MatchStartedEvent,
    SubstitutionEvent,
)


def _seed_row(fake_db, match_id: str = "M") -> None:
    fake_db.match_statistics.docs[match_id] = {
        "_id": match_id,
        "total_goals": 0,
        "total_yellow_cards": 0,
        "total_red_cards": 0,
        "total_substitutions": 0,
        "total_events": 0,
    }


@pytest.fixture(autouse=True)
def _fast_retries(monkeypatch):
    monkeypatch.setattr(settings, "STATS_MISSING_RETRY_ATTEMPTS", 3)
    monkeypatch.setattr(settings, "STATS_MISSING_RETRY_DELAY_SECONDS", 0.01)


@pytest.mark.asyncio
async def test_counters_follow_event_kinds(fake_db):
    _seed_row(fake_db)
    events = [
        GoalEvent(match_id="M", team_id=1, player_id=2, minute=3),
        CardEvent(match_id="M", team_id=1, player_id=2, card_severity="Yellow", minute=4),
        CardEvent(match_id="M", team_id=1, player_id=3, card_severity="Red", minute=5),
        SubstitutionEvent(match_id="M", team_id=1, player_in_id=4, player_out_id=2, minute=6),
        MatchEndedEvent(match_id="M", final_home_score=1, final_away_score=0),
    ]
    for event in events:
        await statistics_handlers.handle_statistics(event)

    row = fake_db.match_statistics.docs["M"]
    assert row["total_goals"] == 1
    assert row["total_yellow_cards"] == 1
    assert row["total_red_cards"] == 1
    assert row["total_substitutions"] == 1
    assert row["total_events"] == 5


@pytest.mark.asyncio
async def test_match_started_is_ignored(fake_db):
    _seed_row(fake_db)
    await statistics_handlers.handle_statistics(
        MatchStartedEvent(match_id="M", home_team_id=1, away_team_id=2)
    )
    assert fake_db.match_statistics.docs["M"]["total_events"] == 0
    assert "update_one" not in fake_db.match_statistics.calls


@pytest.mark.asyncio
async def test_counters_never_decrease(fake_db):
    _seed_row(fake_db)
    previous = 0
    for minute in range(5):
        await statistics_handlers.handle_statistics(GoalEvent(match_id="M", team_id=1, player_id=2, minute=minute))
        current = fake_db.match_statistics.docs["M"]["total_goals"]
        assert current >= previous
        previous = current
    assert previous == 5


@pytest.mark.asyncio
async def test_missing_row_retried_until_it_appears(fake_db):
    async def _create_later():
        await asyncio.sleep(0.015)
        _seed_row(fake_db)

    creator = asyncio.create_task(_create_later())
    await statistics_handlers.handle_statistics(GoalEvent(match_id="M", team_id=1, player_id=2, minute=3))
    await creator

    assert fake_db.match_statistics.docs["M"]["total_goals"] == 1


@pytest.mark.asyncio
async def test_missing_row_dropped_after_bounded_retries(fake_db):
    await statistics_handlers.handle_statistics(GoalEvent(match_id="M", team_id=1, player_id=2, minute=3))

    assert fake_db.match_statistics.docs == {}
    # One initial attempt plus three retries.
    assert fake_db.match_statistics.calls.count("update_one") == 4


def test_increment_mapping():
    card = CardEvent(match_id="M", team_id=1, player_id=2, card_severity="Red", minute=1)
    assert statistics_handlers.statistic_increments(card) == {"total_events": 1, "total_red_cards": 1}


@pytest.mark.asyncio
async def test_redelivered_event_counted_once(fake_db):
    _seed_row(fake_db)
    goal = GoalEvent(match_id="M", team_id=1, player_id=2, minute=3)
    await statistics_handlers.handle_statistics(goal)
    await statistics_handlers.handle_statistics(goal)

    row = fake_db.match_statistics.docs["M"]
    assert row["total_goals"] == 1
    assert row["total_events"] == 1
    # A duplicate is recognized without entering the missing-row retry loop.
    assert fake_db.match_statistics.calls.count("update_one") == 2
