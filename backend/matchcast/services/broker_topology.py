"""
backend/matchcast/services/broker_topology.py

Purpose:
    Routing-key scheme and the declarative exchange/queue/binding layout shared
    by the producer and every consumer role.

    Routing key shape:  events.match.<matchId>.<eventkind lowercased>
    e.g. events.match.4f1c.goal, events.match.4f1c.matchstarted

Dependencies:
    - matchcast.config
    - matchcast.services.event_models
"""

from __future__ import annotations

from dataclasses import dataclass, field

from matchcast.config import settings
from matchcast.services.event_models import EventKind, validate_match_id

ROUTING_PREFIX = "events.match"
ALL_EVENTS_PATTERN = f"{ROUTING_PREFIX}.*.*"
DEAD_LETTER_SUFFIX = ".dead"


def routing_key(match_id: str, kind: EventKind | str) -> str:
    kind = EventKind(kind)
    return f"{ROUTING_PREFIX}.{validate_match_id(match_id)}.{kind.routing_segment}"


def kind_pattern(kind: EventKind | str) -> str:
    return f"{ROUTING_PREFIX}.*.{EventKind(kind).routing_segment}"


def topic_matches(pattern: str, key: str) -> bool:
    """AMQP topic semantics: '*' is exactly one word, '#' zero or more words."""
    return _match_words(pattern.split("."), key.split("."))


def _match_words(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match_words(rest, words[idx:]) for idx in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match_words(rest, words[1:])
    return False


@dataclass(frozen=True)
class QueueSpec:
    role: str
    name: str
    binding_patterns: tuple[str, ...]
    durable: bool = True
    exclusive: bool = False
    auto_delete: bool = False

    @property
    def dead_letter_name(self) -> str:
        return f"{self.name}{DEAD_LETTER_SUFFIX}"

    def accepts(self, key: str) -> bool:
        return any(topic_matches(pattern, key) for pattern in self.binding_patterns)


@dataclass(frozen=True)
class Topology:
    exchange_name: str
    queues: dict[str, QueueSpec] = field(default_factory=dict)
    dead_letter_enabled: bool = False

    @property
    def dead_letter_exchange_name(self) -> str:
        return f"{self.exchange_name}{DEAD_LETTER_SUFFIX}"

    def queue_for(self, role: str) -> QueueSpec:
        try:
            return self.queues[role]
        except KeyError:
            raise KeyError(f"no queue declared for consumer role {role!r}") from None


ROLE_PERSISTENCE = "persistence"
ROLE_STATISTICS = "statistics"
ROLE_ODDS = "odds"
ROLE_NOTIFICATIONS = "notifications"
ROLE_EMAIL = "email"

_ODDS_KINDS = (
    EventKind.match_started,
    EventKind.match_ended,
    EventKind.goal,
    EventKind.card,
    EventKind.substitution,
)


def build_topology(
    exchange_name: str | None = None,
    *,
    dead_letter_enabled: bool | None = None,
) -> Topology:
    specs = (
        QueueSpec(ROLE_PERSISTENCE, "queue.persistence", (ALL_EVENTS_PATTERN,)),
        QueueSpec(ROLE_STATISTICS, "queue.statistics", (ALL_EVENTS_PATTERN,)),
        QueueSpec(ROLE_ODDS, "queue.odds", tuple(kind_pattern(kind) for kind in _ODDS_KINDS)),
        QueueSpec(ROLE_NOTIFICATIONS, "queue.notifications", (ALL_EVENTS_PATTERN,)),
        QueueSpec(ROLE_EMAIL, "queue.email", (ALL_EVENTS_PATTERN,)),
    )
    return Topology(
        exchange_name=exchange_name or settings.BROKER_EXCHANGE_NAME,
        queues={spec.role: spec for spec in specs},
        dead_letter_enabled=(
            settings.BROKER_DEAD_LETTER_ENABLED if dead_letter_enabled is None else dead_letter_enabled
        ),
    )
