from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel


class MatchStatus(str, Enum):
    not_started = "NotStarted"
    in_progress = "InProgress"
    finished = "Finished"


class MatchInDB(BaseModel):
    """Authoritative match document, ``_id`` is the opaque match id.

    Written only by the persistence consumer.
    """
    match_id: str
    home_team_id: int
    away_team_id: int
    home_team_name: str = ""
    away_team_name: str = ""
    home_score: int = 0
    away_score: int = 0
    status: MatchStatus = MatchStatus.not_started
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "MatchInDB":
        return cls(match_id=str(doc["_id"]), **{k: v for k, v in doc.items() if k != "_id"})


class MatchStatisticInDB(BaseModel):
    """Running counters folded from the event stream (never decremented)."""
    match_id: str
    total_goals: int = 0
    total_yellow_cards: int = 0
    total_red_cards: int = 0
    total_substitutions: int = 0
    total_events: int = 0
    updated_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "MatchStatisticInDB":
        return cls(match_id=str(doc["_id"]), **{k: v for k, v in doc.items() if k != "_id"})


# ---------------------------------------------------------------------------
# API / push views
# ---------------------------------------------------------------------------


class MatchStatsView(BaseModel):
    """Combined match + statistics view, used by the read API and pushes."""
    match_id: str
    home_team_id: Optional[int] = None
    away_team_id: Optional[int] = None
    home_team_name: Optional[str] = None
    away_team_name: Optional[str] = None
    home_score: Optional[int] = None
    away_score: Optional[int] = None
    status: Optional[MatchStatus] = None
    total_goals: Optional[int] = None
    total_yellow_cards: Optional[int] = None
    total_red_cards: Optional[int] = None
    total_substitutions: Optional[int] = None
    total_events: Optional[int] = None
    latest_event: Optional[dict[str, Any]] = None

    @classmethod
    def combine(
        cls,
        match_id: str,
        match: Optional[MatchInDB],
        stats: Optional[MatchStatisticInDB],
        latest_event: Optional[dict[str, Any]] = None,
    ) -> "MatchStatsView":
        data: dict[str, Any] = {"match_id": match_id, "latest_event": latest_event}
        if match is not None:
            data.update(match.model_dump(exclude={"match_id", "created_at", "updated_at"}))
        if stats is not None:
            data.update(stats.model_dump(exclude={"match_id", "updated_at"}))
        return cls(**data)


class MatchSummary(BaseModel):
    match_id: str
    home_team_name: str
    away_team_name: str
    home_score: int
    away_score: int
    status: MatchStatus


class OddsResponse(BaseModel):
    match_id: str
    home_team_name: str
    away_team_name: str
    home_win_odds: float
    draw_odds: float
    away_win_odds: float
