"""
backend/tests/test_memory_broker.py

Purpose:
    In-memory topic broker: fan-out by binding, manual ack/reject,
    dead-lettering and redelivery of unsettled messages on close.
"""

from __future__ import annotations

import asyncio
import sys

import pytest

sys.path.insert(0, "backend")

from matchcast.services.broker import BrokerError, InMemoryBrokerServer, InMemoryTopicBroker
from matchcast.services.broker_topology import ROLE_ODDS, ROLE_PERSISTENCE, build_topology


async def _connected(server: InMemoryBrokerServer, name: str) -> InMemoryTopicBroker:
    broker = InMemoryTopicBroker(server, name=name)
    await broker.connect()
    return broker


@pytest.mark.asyncio
async def test_fanout_follows_bindings():
    server = InMemoryBrokerServer(queue_maxsize=10)
    topology = build_topology("match.events", dead_letter_enabled=False)
    broker = await _connected(server, "t")
    await broker.declare_topology(topology)

    await broker.publish("match.events", "events.match.M.goal", b"{}")
    await broker.publish("match.events", "events.match.M.corner", b"{}")
    await broker.publish("other.exchange", "events.match.M.goal", b"{}")

    assert server.depth("queue.persistence") == 2
    assert server.depth("queue.statistics") == 2
    assert server.depth("queue.odds") == 1
    stats = server.stats()
    assert stats["published_total"] == 3
    assert stats["unroutable_total"] == 1
    await broker.close()


@pytest.mark.asyncio
async def test_declare_is_idempotent():
    server = InMemoryBrokerServer(queue_maxsize=10)
    topology = build_topology("match.events", dead_letter_enabled=False)
    broker = await _connected(server, "t")
    await broker.declare_topology(topology, roles=[ROLE_ODDS])
    await broker.declare_topology(topology, roles=[ROLE_ODDS])

    await broker.publish("match.events", "events.match.M.goal", b"{}")
    assert server.depth("queue.odds") == 1
    with pytest.raises(BrokerError):
        server.depth("queue.persistence")


@pytest.mark.asyncio
async def test_reject_without_requeue_drops_or_dead_letters():
    for dead_letter in (False, True):
        server = InMemoryBrokerServer(queue_maxsize=10)
        topology = build_topology("match.events", dead_letter_enabled=dead_letter)
        broker = await _connected(server, "t")
        await broker.declare_topology(topology, roles=[ROLE_PERSISTENCE])
        seen = asyncio.Event()

        async def _reject(delivery):
            await delivery.reject(requeue=False)
            seen.set()

        tag = await broker.consume("queue.persistence", _reject, prefetch=1)
        await broker.publish("match.events", "events.match.M.goal", b"payload")
        await asyncio.wait_for(seen.wait(), timeout=1)
        await broker.cancel(tag)

        assert server.depth("queue.persistence") == 0
        if dead_letter:
            parked = server.drain("queue.persistence.dead")
            assert [m.body for m in parked] == [b"payload"]
        else:
            assert "queue.persistence.dead" not in server.stats()["queues"]
        await broker.close()


@pytest.mark.asyncio
async def test_close_requeues_unsettled_and_blocks_late_settle():
    server = InMemoryBrokerServer(queue_maxsize=10)
    topology = build_topology("match.events", dead_letter_enabled=False)
    broker = await _connected(server, "t")
    await broker.declare_topology(topology, roles=[ROLE_PERSISTENCE])
    held = []
    received = asyncio.Event()

    async def _hold(delivery):
        held.append(delivery)
        received.set()

    await broker.consume("queue.persistence", _hold, prefetch=1)
    await broker.publish("match.events", "events.match.M.goal", b"x", message_id="e-1")
    await asyncio.wait_for(received.wait(), timeout=1)
    await broker.close()

    requeued = server.drain("queue.persistence")
    assert len(requeued) == 1
    assert requeued[0].redelivered is True
    assert requeued[0].message_id == "e-1"
    with pytest.raises(BrokerError):
        await held[0].ack()


@pytest.mark.asyncio
async def test_double_settle_is_an_error():
    server = InMemoryBrokerServer(queue_maxsize=10)
    topology = build_topology("match.events", dead_letter_enabled=False)
    broker = await _connected(server, "t")
    await broker.declare_topology(topology, roles=[ROLE_PERSISTENCE])
    errors = []
    done = asyncio.Event()

    async def _ack_twice(delivery):
        await delivery.ack()
        try:
            await delivery.ack()
        except BrokerError as exc:
            errors.append(exc)
        done.set()

    await broker.consume("queue.persistence", _ack_twice, prefetch=1)
    await broker.publish("match.events", "events.match.M.goal", b"x")
    await asyncio.wait_for(done.wait(), timeout=1)
    await broker.close()

    assert len(errors) == 1
    assert server.stats()["queues"]["queue.persistence"]["acked_total"] == 1


@pytest.mark.asyncio
async def test_publish_requires_connection():
    server = InMemoryBrokerServer(queue_maxsize=10)
    broker = InMemoryTopicBroker(server, name="t")
    with pytest.raises(BrokerError):
        await broker.publish("match.events", "events.match.M.goal", b"x")


@pytest.mark.asyncio
async def test_publish_to_full_queue_is_refused_everywhere():
    server = InMemoryBrokerServer(queue_maxsize=1)
    topology = build_topology("match.events", dead_letter_enabled=False)
    broker = await _connected(server, "t")
    await broker.declare_topology(topology, roles=[ROLE_PERSISTENCE, ROLE_ODDS])

    await broker.publish("match.events", "events.match.M.corner", b"{}")
    with pytest.raises(BrokerError):
        await broker.publish("match.events", "events.match.M.goal", b"{}")

    # Nothing half-delivered: odds had room but got no copy.
    assert server.depth("queue.odds") == 0
    assert server.depth("queue.persistence") == 1
    queues = server.stats()["queues"]
    assert queues["queue.persistence"]["refused_total"] == 1
    assert server.stats()["published_total"] == 1
    await broker.close()
