"""
backend/matchcast/services/odds_engine.py

Purpose:
    Live 1X2 odds per match, kept in process memory and adjusted by match
    events. The engine is the only owner of the odds map; odds are never
    persisted and are rebuilt from defaults after a restart.

    Adjustment rules (every price floored at 1.01 after each update):
      - MatchStarted:  no change
      - Goal:          leader shortens by impact = 1.2^|diff| * (1 + t),
                       trailer lengthens by impact * 1.4 / 1.2,
                       draw lengthens by impact / 1.5;
                       level score shortens draw by 1.1 * (1 + t),
                       both wins lengthen by 1.1.  t = min(minute, 90) / 90
      - Card:          red -> wins * 1.15, draw * 1.10
                       yellow -> wins * 1.05, draw * 1.02
      - Substitution:  wins * 1.02, draw * 1.01
      - MatchEnded:    winning outcome 1.01, the other two 1000.0

Dependencies:
    - matchcast.services.match_store
    - matchcast.services.event_models
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from matchcast.services import match_store
from matchcast.services.event_models import (
    BaseMatchEvent,
    CardEvent,
    CardSeverity,
    GoalEvent,
    MatchEndedEvent,
    SubstitutionEvent,
)
from matchcast.utils import utcnow

logger = logging.getLogger("matchcast.odds_engine")

ODDS_FLOOR = 1.01
SETTLED_ODDS = 1000.0
DEFAULT_HOME_WIN = 2.5
DEFAULT_DRAW = 3.5
DEFAULT_AWAY_WIN = 3.0

_WIN_BASE = 1.2
_LOSE_BASE = 1.4
_LEVEL_BASE = 1.1
_FULL_TIME_MINUTE = 90

_CARD_FACTORS = {
    # severity: (win multiplier, draw multiplier)
    CardSeverity.red: (1.15, 1.10),
    CardSeverity.yellow: (1.05, 1.02),
}
_SUBSTITUTION_FACTORS = (1.02, 1.01)


def _floor(price: float) -> float:
    return max(ODDS_FLOOR, float(price))


@dataclass
class OddsState:
    home_win: float = DEFAULT_HOME_WIN
    draw: float = DEFAULT_DRAW
    away_win: float = DEFAULT_AWAY_WIN
    updated_at: datetime = field(default_factory=utcnow)

    def as_tuple(self) -> tuple[float, float, float]:
        return self.home_win, self.draw, self.away_win


class OddsEngine:
    def __init__(self) -> None:
        self._odds: dict[str, OddsState] = {}
        self._adjustments_total = 0
        self._skipped_total = 0

    def current(self, match_id: str) -> OddsState | None:
        return self._odds.get(match_id)

    def _ensure(self, match_id: str) -> OddsState:
        state = self._odds.get(match_id)
        if state is None:
            state = self._odds[match_id] = OddsState()
            logger.info(
                "Initialized odds match_id=%s home=%.2f draw=%.2f away=%.2f",
                match_id,
                state.home_win,
                state.draw,
                state.away_win,
            )
        return state

    def _store(self, match_id: str, state: OddsState, home: float, draw: float, away: float, reason: str) -> None:
        state.home_win = _floor(home)
        state.draw = _floor(draw)
        state.away_win = _floor(away)
        state.updated_at = utcnow()
        self._adjustments_total += 1
        logger.info(
            "Odds updated match_id=%s reason=%s home=%.2f draw=%.2f away=%.2f",
            match_id,
            reason,
            state.home_win,
            state.draw,
            state.away_win,
        )

    async def apply(self, event: BaseMatchEvent) -> OddsState | None:
        """Adjust odds for one event. Returns the resulting state, None when skipped."""
        if isinstance(event, GoalEvent):
            return await self._apply_goal(event)
        if isinstance(event, CardEvent):
            return self.apply_card(event.match_id, event.card_severity)
        if isinstance(event, SubstitutionEvent):
            return self.apply_substitution(event.match_id)
        if isinstance(event, MatchEndedEvent):
            return self.apply_match_ended(event.match_id, event.final_home_score, event.final_away_score)
        state = self._ensure(event.match_id)
        logger.info(
            "Odds unchanged match_id=%s kind=%s home=%.2f draw=%.2f away=%.2f",
            event.match_id,
            event.kind.value,
            state.home_win,
            state.draw,
            state.away_win,
        )
        return state

    async def _apply_goal(self, event: GoalEvent) -> OddsState | None:
        match = await match_store.get_match(event.match_id)
        if match is None:
            self._skipped_total += 1
            logger.error("No match found for goal odds adjustment match_id=%s event_id=%s", event.match_id, event.event_id)
            return None
        home_score, away_score = match.home_score, match.away_score
        if event.team_id == match.home_team_id:
            home_score += 1
        elif event.team_id == match.away_team_id:
            away_score += 1
        else:
            self._skipped_total += 1
            logger.warning(
                "Goal team_id=%s matches neither side match_id=%s; odds unchanged",
                event.team_id,
                event.match_id,
            )
            return None
        return self.apply_goal(event.match_id, home_score, away_score, event.minute)

    def apply_goal(self, match_id: str, home_score: int, away_score: int, minute: int) -> OddsState:
        """Adjust for a goal given the score after it."""
        state = self._ensure(match_id)
        home, draw, away = state.as_tuple()
        diff = int(home_score) - int(away_score)
        time_factor = min(max(0, int(minute)), _FULL_TIME_MINUTE) / _FULL_TIME_MINUTE

        if diff == 0:
            draw /= _LEVEL_BASE * (1 + time_factor)
            home *= _LEVEL_BASE
            away *= _LEVEL_BASE
        else:
            impact = (_WIN_BASE ** abs(diff)) * (1 + time_factor)
            trailing = impact * _LOSE_BASE / _WIN_BASE
            if diff > 0:
                home /= impact
                away *= trailing
            else:
                away /= impact
                home *= trailing
            draw *= impact / 1.5

        self._store(match_id, state, home, draw, away, f"goal {home_score}-{away_score} minute={minute}")
        return state

    def apply_card(self, match_id: str, severity: CardSeverity) -> OddsState:
        win_factor, draw_factor = _CARD_FACTORS[CardSeverity(severity)]
        state = self._ensure(match_id)
        self._store(
            match_id,
            state,
            state.home_win * win_factor,
            state.draw * draw_factor,
            state.away_win * win_factor,
            f"card {CardSeverity(severity).value.lower()}",
        )
        return state

    def apply_substitution(self, match_id: str) -> OddsState:
        win_factor, draw_factor = _SUBSTITUTION_FACTORS
        state = self._ensure(match_id)
        self._store(
            match_id,
            state,
            state.home_win * win_factor,
            state.draw * draw_factor,
            state.away_win * win_factor,
            "substitution",
        )
        return state

    def apply_match_ended(self, match_id: str, final_home: int, final_away: int) -> OddsState:
        state = self._ensure(match_id)
        if final_home > final_away:
            prices = (ODDS_FLOOR, SETTLED_ODDS, SETTLED_ODDS)
        elif final_away > final_home:
            prices = (SETTLED_ODDS, SETTLED_ODDS, ODDS_FLOOR)
        else:
            prices = (SETTLED_ODDS, ODDS_FLOOR, SETTLED_ODDS)
        self._store(match_id, state, *prices, f"ended {final_home}-{final_away}")
        return state

    async def get_odds(self, match_id: str) -> OddsState | None:
        """In-memory odds, else defaults for a stored match, else None (not found)."""
        state = self._odds.get(match_id)
        if state is not None:
            return state
        if not await match_store.match_exists(match_id):
            logger.info("Odds requested for unknown match_id=%s", match_id)
            return None
        return self._ensure(match_id)

    def forget(self, match_id: str) -> None:
        self._odds.pop(match_id, None)

    def clear(self) -> None:
        self._odds.clear()

    def stats(self) -> dict[str, Any]:
        return {
            "tracked_matches": len(self._odds),
            "adjustments_total": self._adjustments_total,
            "skipped_total": self._skipped_total,
        }


odds_engine = OddsEngine()
