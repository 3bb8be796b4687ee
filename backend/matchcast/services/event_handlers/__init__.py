"""
backend/matchcast/services/event_handlers/__init__.py

Purpose:
    Central registration entrypoint for consumer roles. Builds one consumer
    runtime per enabled role, each bound to its own queue.

Dependencies:
    - matchcast.services.consumer_runtime
    - matchcast.services.event_handlers.persistence_handlers
    - matchcast.services.event_handlers.statistics_handlers
    - matchcast.services.event_handlers.odds_handlers
    - matchcast.services.event_handlers.notification_handlers
    - matchcast.services.event_handlers.email_handlers
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from matchcast.config import settings
from matchcast.services.broker import Broker, build_broker
from matchcast.services.broker_topology import (
    ROLE_EMAIL,
    ROLE_NOTIFICATIONS,
    ROLE_ODDS,
    ROLE_PERSISTENCE,
    ROLE_STATISTICS,
    Topology,
)
from matchcast.services.consumer_runtime import AsyncEventHandler, ConsumerRuntime
from matchcast.services.event_handlers.email_handlers import handle_email
from matchcast.services.event_handlers.notification_handlers import handle_notifications
from matchcast.services.event_handlers.odds_handlers import handle_odds
from matchcast.services.event_handlers.persistence_handlers import handle_persistence
from matchcast.services.event_handlers.statistics_handlers import handle_statistics

logger = logging.getLogger("matchcast.event_handlers")


def enabled_roles() -> list[tuple[str, AsyncEventHandler]]:
    roles: list[tuple[str, AsyncEventHandler]] = []
    if settings.CONSUMER_PERSISTENCE_ENABLED:
        roles.append((ROLE_PERSISTENCE, handle_persistence))
    if settings.CONSUMER_STATISTICS_ENABLED:
        roles.append((ROLE_STATISTICS, handle_statistics))
    if settings.CONSUMER_ODDS_ENABLED:
        roles.append((ROLE_ODDS, handle_odds))
    if settings.CONSUMER_NOTIFICATIONS_ENABLED:
        roles.append((ROLE_NOTIFICATIONS, handle_notifications))
    if settings.CONSUMER_EMAIL_ENABLED:
        roles.append((ROLE_EMAIL, handle_email))
    return roles


def build_consumers(
    topology: Topology,
    *,
    broker_factory: Callable[[str], Broker] = build_broker,
) -> list[ConsumerRuntime]:
    return [
        ConsumerRuntime(
            role=role,
            handler=handler,
            topology=topology,
            broker_factory=broker_factory,
            prefetch=settings.CONSUMER_PREFETCH,
            handler_timeout=settings.CONSUMER_HANDLER_TIMEOUT_SECONDS,
            shutdown_grace=settings.CONSUMER_SHUTDOWN_GRACE_SECONDS,
            error_buffer_size=settings.CONSUMER_ERROR_BUFFER_SIZE,
        )
        for role, handler in enabled_roles()
    ]


active_consumers: list[ConsumerRuntime] = []


async def start_consumers(
    topology: Topology,
    *,
    broker_factory: Callable[[str], Broker] = build_broker,
) -> list[ConsumerRuntime]:
    consumers = build_consumers(topology, broker_factory=broker_factory)
    for consumer in consumers:
        await consumer.start()
        active_consumers.append(consumer)
    logger.info("Consumers started roles=%s", ",".join(c.role for c in consumers) or "-")
    return consumers


async def stop_consumers() -> None:
    while active_consumers:
        consumer = active_consumers.pop()
        await consumer.stop()


def consumer_stats() -> list[dict[str, Any]]:
    return [consumer.stats() for consumer in active_consumers]
