"""
backend/matchcast/models/match_events.py

Purpose:
    Inbound request bodies for the five producer operations. eventId and
    eventTime are optional; the producer fills them in when absent.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from matchcast.services.event_models import CardSeverity, validate_match_id


class _EventRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    event_id: Optional[str] = Field(default=None, min_length=1)
    event_time: Optional[datetime] = None


class _MatchScopedRequest(_EventRequest):
    match_id: str

    @field_validator("match_id", mode="before")
    @classmethod
    def _check_match_id(cls, value):
        return validate_match_id(value)


class StartMatchRequest(_EventRequest):
    match_id: Optional[str] = None
    home_team_id: Optional[int] = None
    away_team_id: Optional[int] = None
    home_team_name: str = Field(min_length=1, max_length=120)
    away_team_name: str = Field(min_length=1, max_length=120)

    @field_validator("match_id", mode="before")
    @classmethod
    def _check_match_id(cls, value):
        return None if value in (None, "") else validate_match_id(value)

    @model_validator(mode="after")
    def _distinct_teams(self):
        if self.home_team_id is not None and self.home_team_id == self.away_team_id:
            raise ValueError("homeTeamId and awayTeamId must differ")
        return self


class EndMatchRequest(_MatchScopedRequest):
    final_home_score: int = Field(ge=0)
    final_away_score: int = Field(ge=0)


class GoalRequest(_MatchScopedRequest):
    team_id: int
    player_id: int
    minute: int = Field(ge=0, le=150)


class CardRequest(_MatchScopedRequest):
    team_id: int
    player_id: int
    card_severity: CardSeverity
    minute: int = Field(ge=0, le=150)


class SubstitutionRequest(_MatchScopedRequest):
    team_id: int
    player_in_id: int
    player_out_id: int
    minute: int = Field(ge=0, le=150)
