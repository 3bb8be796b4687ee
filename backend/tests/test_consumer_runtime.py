"""
backend/tests/test_consumer_runtime.py

Purpose:
    Consumer runtime lifecycle: ack on success, reject without requeue on
    malformed input / handler failure / timeout, per-match serialization and
    graceful shutdown.
"""

from __future__ import annotations

import asyncio
import sys

import pytest

sys.path.insert(0, "backend")

from matchcast.services.broker import InMemoryBrokerServer, InMemoryTopicBroker
from matchcast.services.broker_topology import ROLE_STATISTICS, build_topology, routing_key
from matchcast.services.consumer_runtime import ConsumerRuntime
from matchcast.services.event_models import GoalEvent, encode_event


def _runtime(server, handler, **kwargs) -> ConsumerRuntime:
    kwargs.setdefault("prefetch", 4)
    kwargs.setdefault("handler_timeout", 1.0)
    kwargs.setdefault("shutdown_grace", 1.0)
    return ConsumerRuntime(
        role=ROLE_STATISTICS,
        handler=handler,
        topology=build_topology("match.events", dead_letter_enabled=kwargs.pop("dead_letter", False)),
        broker_factory=lambda name: InMemoryTopicBroker(server, name=name),
        **kwargs,
    )


async def _publish(server, body: bytes, key: str) -> None:
    producer = InMemoryTopicBroker(server, name="producer")
    await producer.connect()
    await producer.publish("match.events", key, body)
    await producer.close()


async def _publish_goal(server, match_id: str = "M", minute: int = 10) -> GoalEvent:
    event = GoalEvent(match_id=match_id, team_id=1, player_id=2, minute=minute)
    await _publish(server, encode_event(event), routing_key(match_id, event.kind))
    return event


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_successful_handler_acks():
    server = InMemoryBrokerServer(queue_maxsize=50)
    seen = []

    async def _handler(event):
        seen.append(event.event_id)

    runtime = _runtime(server, _handler)
    await runtime.start()
    event = await _publish_goal(server)
    await _wait_for(lambda: runtime.stats()["acked_total"] == 1)
    await runtime.stop()

    assert seen == [event.event_id]
    queue_stats = server.stats()["queues"]["queue.statistics"]
    assert queue_stats["acked_total"] == 1
    assert queue_stats["rejected_total"] == 0
    assert queue_stats["depth"] == 0


@pytest.mark.asyncio
async def test_malformed_message_rejected_without_requeue():
    server = InMemoryBrokerServer(queue_maxsize=50)
    calls = []

    async def _handler(event):
        calls.append(event)

    runtime = _runtime(server, _handler)
    await runtime.start()
    await _publish(server, b'{"eventKind": "Goal"}', "events.match.M.goal")
    await _wait_for(lambda: runtime.stats()["rejected_malformed_total"] == 1)
    await runtime.stop()

    assert calls == []
    queue_stats = server.stats()["queues"]["queue.statistics"]
    assert queue_stats["rejected_total"] == 1
    assert queue_stats["depth"] == 0
    assert runtime.stats()["recent_errors"][0]["error"].startswith("malformed")


@pytest.mark.asyncio
async def test_handler_failure_rejects_and_dead_letters_when_enabled():
    server = InMemoryBrokerServer(queue_maxsize=50)

    async def _handler(_event):
        raise RuntimeError("store unavailable")

    runtime = _runtime(server, _handler, dead_letter=True)
    await runtime.start()
    event = await _publish_goal(server)
    await _wait_for(lambda: runtime.stats()["failed_total"] == 1)
    await runtime.stop()

    assert server.depth("queue.statistics") == 0
    parked = server.drain("queue.statistics.dead")
    assert len(parked) == 1
    errors = runtime.stats()["recent_errors"]
    assert errors[0]["event_id"] == event.event_id
    assert "store unavailable" in errors[0]["error"]


@pytest.mark.asyncio
async def test_handler_timeout_is_a_failure():
    server = InMemoryBrokerServer(queue_maxsize=50)

    async def _handler(_event):
        await asyncio.sleep(5)

    runtime = _runtime(server, _handler, handler_timeout=0.05)
    await runtime.start()
    await _publish_goal(server)
    await _wait_for(lambda: runtime.stats()["timed_out_total"] == 1)
    await runtime.stop()

    assert runtime.stats()["failed_total"] == 1
    assert server.stats()["queues"]["queue.statistics"]["rejected_total"] == 1


@pytest.mark.asyncio
async def test_same_match_serialized_different_matches_parallel():
    server = InMemoryBrokerServer(queue_maxsize=50)
    active: dict[str, int] = {}
    peak: dict[str, int] = {}
    overall = {"now": 0, "peak": 0}

    async def _handler(event):
        active[event.match_id] = active.get(event.match_id, 0) + 1
        peak[event.match_id] = max(peak.get(event.match_id, 0), active[event.match_id])
        overall["now"] += 1
        overall["peak"] = max(overall["peak"], overall["now"])
        await asyncio.sleep(0.05)
        overall["now"] -= 1
        active[event.match_id] -= 1

    runtime = _runtime(server, _handler, prefetch=4)
    await runtime.start()
    for minute in range(3):
        await _publish_goal(server, "A", minute)
        await _publish_goal(server, "B", minute)
    await _wait_for(lambda: runtime.stats()["acked_total"] == 6)
    await runtime.stop()

    assert peak == {"A": 1, "B": 1}
    assert overall["peak"] == 2


@pytest.mark.asyncio
async def test_stop_waits_for_inflight_then_aborts_after_grace():
    server = InMemoryBrokerServer(queue_maxsize=50)
    started = asyncio.Event()
    finished = []

    async def _slow(event):
        started.set()
        await asyncio.sleep(0.1)
        finished.append(event.event_id)

    runtime = _runtime(server, _slow, shutdown_grace=1.0)
    await runtime.start()
    await _publish_goal(server)
    await asyncio.wait_for(started.wait(), timeout=1)
    await runtime.stop()
    assert len(finished) == 1
    assert runtime.stats()["acked_total"] == 1

    # A handler that outlives the grace period is aborted and left unsettled.
    server2 = InMemoryBrokerServer(queue_maxsize=50)
    started2 = asyncio.Event()

    async def _stuck(_event):
        started2.set()
        await asyncio.sleep(10)

    runtime2 = _runtime(server2, _stuck, shutdown_grace=0.05, handler_timeout=30)
    await runtime2.start()
    await _publish_goal(server2)
    await asyncio.wait_for(started2.wait(), timeout=1)
    await runtime2.stop()

    stats = server2.stats()["queues"]["queue.statistics"]
    assert stats["acked_total"] == 0
    assert stats["rejected_total"] == 0
    redelivered = server2.drain("queue.statistics")
    assert len(redelivered) == 1 and redelivered[0].redelivered
    assert runtime2.running is False
