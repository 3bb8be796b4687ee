"""
backend/matchcast/services/event_models.py

Purpose:
    Wire contracts for match-lifecycle events. Every message carries the same
    envelope (eventId, matchId, eventKind, eventTime) under fixed camelCase
    names; the kind-specific body is selected by the eventKind tag.

    Decoding is two-phase so a consumer can route or reject a message without
    understanding its body:
        1. parse_envelope()  -> EventEnvelope   (always-present fields only)
        2. decode_event()    -> concrete event  (body chosen by the tag)

Dependencies:
    - pydantic
    - matchcast.utils
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from matchcast.utils import ensure_utc, utcnow

# Routing-key separators and topic wildcards may not appear in an identity.
_MATCH_ID_PATTERN = re.compile(r"^[^.*#\s]+$")
_MATCH_ID_MAX_LENGTH = 128


class EventKind(str, Enum):
    match_started = "MatchStarted"
    match_ended = "MatchEnded"
    goal = "Goal"
    card = "Card"
    substitution = "Substitution"

    @property
    def routing_segment(self) -> str:
        return self.value.lower()


class CardSeverity(str, Enum):
    yellow = "Yellow"
    red = "Red"


class MalformedEventError(ValueError):
    """Message cannot be turned into a usable event; redelivery will not help."""


def make_event_id() -> str:
    return str(uuid.uuid4())


def make_match_id() -> str:
    return uuid.uuid4().hex


def validate_match_id(value: Any) -> str:
    if isinstance(value, bool) or value is None:
        raise ValueError("matchId must be a non-empty identifier")
    text = str(value).strip()
    if not text or len(text) > _MATCH_ID_MAX_LENGTH or not _MATCH_ID_PATTERN.match(text):
        raise ValueError(f"matchId {text!r} is not a valid identifier")
    return text


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    @field_validator("match_id", mode="before", check_fields=False)
    @classmethod
    def _check_match_id(cls, value: Any) -> str:
        return validate_match_id(value)

    @field_validator("event_time", mode="after", check_fields=False)
    @classmethod
    def _normalize_event_time(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class EventEnvelope(_WireModel):
    """Fields every serialized event is guaranteed to carry."""

    event_id: str = Field(min_length=1)
    match_id: str
    event_kind: EventKind
    event_time: datetime


class BaseMatchEvent(_WireModel):
    event_id: str = Field(default_factory=make_event_id, min_length=1)
    match_id: str
    event_kind: str
    event_time: datetime = Field(default_factory=utcnow)

    @property
    def kind(self) -> EventKind:
        return EventKind(self.event_kind)

    def envelope(self) -> EventEnvelope:
        return EventEnvelope(
            event_id=self.event_id,
            match_id=self.match_id,
            event_kind=self.kind,
            event_time=self.event_time,
        )


class MatchStartedEvent(BaseMatchEvent):
    event_kind: Literal["MatchStarted"] = "MatchStarted"
    home_team_id: int
    away_team_id: int
    home_team_name: str = ""
    away_team_name: str = ""


class MatchEndedEvent(BaseMatchEvent):
    event_kind: Literal["MatchEnded"] = "MatchEnded"
    final_home_score: int = Field(ge=0)
    final_away_score: int = Field(ge=0)


class GoalEvent(BaseMatchEvent):
    event_kind: Literal["Goal"] = "Goal"
    team_id: int
    player_id: int
    minute: int = Field(ge=0)


class CardEvent(BaseMatchEvent):
    event_kind: Literal["Card"] = "Card"
    team_id: int
    player_id: int
    card_severity: CardSeverity
    minute: int = Field(ge=0)


class SubstitutionEvent(BaseMatchEvent):
    event_kind: Literal["Substitution"] = "Substitution"
    team_id: int
    player_in_id: int
    player_out_id: int
    minute: int = Field(ge=0)


MatchEvent = Annotated[
    Union[MatchStartedEvent, MatchEndedEvent, GoalEvent, CardEvent, SubstitutionEvent],
    Field(discriminator="event_kind"),
]

EVENT_MODELS: dict[EventKind, type[BaseMatchEvent]] = {
    EventKind.match_started: MatchStartedEvent,
    EventKind.match_ended: MatchEndedEvent,
    EventKind.goal: GoalEvent,
    EventKind.card: CardEvent,
    EventKind.substitution: SubstitutionEvent,
}


def _summarize(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(item) for item in err.get("loc", ())) or "body"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


def parse_envelope(body: bytes | str) -> EventEnvelope:
    try:
        return EventEnvelope.model_validate_json(body)
    except ValidationError as exc:
        raise MalformedEventError(f"invalid envelope ({_summarize(exc)})") from exc


def decode_event(body: bytes | str, envelope: EventEnvelope | None = None) -> BaseMatchEvent:
    if envelope is None:
        envelope = parse_envelope(body)
    model = EVENT_MODELS[envelope.event_kind]
    try:
        return model.model_validate_json(body)
    except ValidationError as exc:
        raise MalformedEventError(
            f"invalid {envelope.event_kind.value} body event_id={envelope.event_id} ({_summarize(exc)})"
        ) from exc


def encode_event(event: BaseMatchEvent) -> bytes:
    return event.model_dump_json(by_alias=True).encode("utf-8")
