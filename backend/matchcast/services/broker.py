"""
backend/matchcast/services/broker.py

Purpose:
    Broker transports behind one small interface (declare / publish / consume /
    cancel / close). AmqpBroker talks to RabbitMQ through aio-pika; the
    in-memory broker reproduces topic-exchange fan-out, manual ack/reject,
    prefetch-bounded workers and dead-lettering inside one process so the whole
    pipeline can run without RabbitMQ (local runs, tests).

    Each consumer role and the producer open their own broker "connection".

Dependencies:
    - aio-pika
    - asyncio
    - matchcast.config
    - matchcast.services.broker_topology
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)
from aio_pika.exceptions import AMQPError

from matchcast.config import settings
from matchcast.services.broker_topology import QueueSpec, Topology, topic_matches
from matchcast.utils import utcnow

logger = logging.getLogger("matchcast.broker")


class BrokerError(RuntimeError):
    """Transport-level failure (connect, declare, publish, settle)."""


class Delivery(Protocol):
    body: bytes
    routing_key: str
    message_id: str | None
    redelivered: bool

    async def ack(self) -> None: ...

    async def reject(self, *, requeue: bool = False) -> None: ...


DeliveryCallback = Callable[[Delivery], Awaitable[None]]


class Broker(Protocol):
    name: str

    @property
    def is_closed(self) -> bool: ...

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def declare_topology(self, topology: Topology, roles: Iterable[str] | None = None) -> None: ...

    async def publish(
        self,
        exchange_name: str,
        routing_key: str,
        body: bytes,
        *,
        message_id: str | None = None,
        message_type: str | None = None,
    ) -> None: ...

    async def consume(self, queue_name: str, callback: DeliveryCallback, *, prefetch: int) -> str: ...

    async def cancel(self, consumer_tag: str) -> None: ...


def _selected_specs(topology: Topology, roles: Iterable[str] | None) -> list[QueueSpec]:
    if roles is None:
        return list(topology.queues.values())
    return [topology.queue_for(role) for role in roles]


# ---------------------------------------------------------------------------
# AMQP (RabbitMQ) transport
# ---------------------------------------------------------------------------


class _AmqpDelivery:
    __slots__ = ("_message", "body", "routing_key", "message_id", "redelivered")

    def __init__(self, message: AbstractIncomingMessage) -> None:
        self._message = message
        self.body = message.body
        self.routing_key = message.routing_key or ""
        self.message_id = message.message_id
        self.redelivered = bool(message.redelivered)

    async def ack(self) -> None:
        try:
            await self._message.ack()
        except AMQPError as exc:
            raise BrokerError(f"ack failed: {exc}") from exc

    async def reject(self, *, requeue: bool = False) -> None:
        try:
            await self._message.reject(requeue=requeue)
        except AMQPError as exc:
            raise BrokerError(f"reject failed: {exc}") from exc


class AmqpBroker:
    def __init__(
        self,
        url: str,
        *,
        name: str,
        connect_timeout: float,
        publish_timeout: float,
    ) -> None:
        self.name = name
        self._url = url
        self._connect_timeout = float(connect_timeout)
        self._publish_timeout = float(publish_timeout)
        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchanges: dict[str, AbstractExchange] = {}
        self._queues: dict[str, AbstractQueue] = {}
        self._consumers: dict[str, AbstractQueue] = {}

    @property
    def is_closed(self) -> bool:
        return self._connection is None or self._connection.is_closed

    async def connect(self) -> None:
        if not self.is_closed:
            return
        try:
            self._connection = await aio_pika.connect_robust(
                self._url,
                timeout=self._connect_timeout,
                client_properties={"connection_name": f"matchcast.{self.name}"},
            )
            self._channel = await self._connection.channel(publisher_confirms=True)
        except (AMQPError, asyncio.TimeoutError, OSError) as exc:
            raise BrokerError(f"connect failed for {self.name}: {exc}") from exc
        logger.info("AMQP connection opened name=%s", self.name)

    async def close(self) -> None:
        if self._connection is None:
            return
        connection, self._connection = self._connection, None
        self._channel = None
        self._exchanges.clear()
        self._queues.clear()
        self._consumers.clear()
        await connection.close()
        logger.info("AMQP connection closed name=%s", self.name)

    def _require_channel(self) -> AbstractChannel:
        if self._channel is None or self.is_closed:
            raise BrokerError(f"broker {self.name} is not connected")
        return self._channel

    async def declare_topology(self, topology: Topology, roles: Iterable[str] | None = None) -> None:
        channel = self._require_channel()
        try:
            exchange = await channel.declare_exchange(
                topology.exchange_name,
                aio_pika.ExchangeType.TOPIC,
                durable=True,
            )
            self._exchanges[topology.exchange_name] = exchange
            dead_letter_exchange = None
            if topology.dead_letter_enabled:
                dead_letter_exchange = await channel.declare_exchange(
                    topology.dead_letter_exchange_name,
                    aio_pika.ExchangeType.DIRECT,
                    durable=True,
                )

            for spec in _selected_specs(topology, roles):
                arguments: dict[str, Any] = {}
                if dead_letter_exchange is not None:
                    arguments["x-dead-letter-exchange"] = dead_letter_exchange.name
                    arguments["x-dead-letter-routing-key"] = spec.dead_letter_name
                    dead_queue = await channel.declare_queue(spec.dead_letter_name, durable=True)
                    await dead_queue.bind(dead_letter_exchange, routing_key=spec.dead_letter_name)
                queue = await channel.declare_queue(
                    spec.name,
                    durable=spec.durable,
                    exclusive=spec.exclusive,
                    auto_delete=spec.auto_delete,
                    arguments=arguments or None,
                )
                for pattern in spec.binding_patterns:
                    await queue.bind(exchange, routing_key=pattern)
                self._queues[spec.name] = queue
                logger.info(
                    "Declared queue=%s role=%s bindings=%s dead_letter=%s",
                    spec.name,
                    spec.role,
                    ",".join(spec.binding_patterns),
                    bool(arguments),
                )
        except AMQPError as exc:
            raise BrokerError(f"topology declaration failed: {exc}") from exc

    async def publish(
        self,
        exchange_name: str,
        routing_key: str,
        body: bytes,
        *,
        message_id: str | None = None,
        message_type: str | None = None,
    ) -> None:
        self._require_channel()
        exchange = self._exchanges.get(exchange_name)
        if exchange is None:
            raise BrokerError(f"exchange {exchange_name!r} was not declared on {self.name}")
        message = aio_pika.Message(
            body=body,
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=message_id,
            type=message_type,
            timestamp=utcnow(),
        )
        try:
            await exchange.publish(
                message,
                routing_key=routing_key,
                mandatory=False,
                timeout=self._publish_timeout,
            )
        except (AMQPError, asyncio.TimeoutError, OSError) as exc:
            raise BrokerError(f"publish failed routing_key={routing_key}: {exc}") from exc

    async def consume(self, queue_name: str, callback: DeliveryCallback, *, prefetch: int) -> str:
        channel = self._require_channel()
        queue = self._queues.get(queue_name)
        if queue is None:
            raise BrokerError(f"queue {queue_name!r} was not declared on {self.name}")

        async def _on_message(message: AbstractIncomingMessage) -> None:
            await callback(_AmqpDelivery(message))

        try:
            await channel.set_qos(prefetch_count=max(1, int(prefetch)))
            consumer_tag = await queue.consume(_on_message, no_ack=False)
        except AMQPError as exc:
            raise BrokerError(f"consume failed queue={queue_name}: {exc}") from exc
        self._consumers[consumer_tag] = queue
        return consumer_tag

    async def cancel(self, consumer_tag: str) -> None:
        queue = self._consumers.pop(consumer_tag, None)
        if queue is None or self.is_closed:
            return
        try:
            await queue.cancel(consumer_tag)
        except AMQPError as exc:
            raise BrokerError(f"cancel failed consumer_tag={consumer_tag}: {exc}") from exc


# ---------------------------------------------------------------------------
# In-memory transport
# ---------------------------------------------------------------------------


@dataclass
class _StoredMessage:
    body: bytes
    routing_key: str
    message_id: str | None
    message_type: str | None
    redelivered: bool = False


@dataclass
class _MemoryQueue:
    spec: QueueSpec
    queue: asyncio.Queue[_StoredMessage]
    dead_letter: _MemoryQueue | None = None
    delivered_total: int = 0
    acked_total: int = 0
    rejected_total: int = 0
    dead_lettered_total: int = 0
    dropped_total: int = 0
    refused_total: int = 0
    max_depth_seen: int = 0


class InMemoryBrokerServer:
    """Process-local stand-in for a RabbitMQ node: exchanges, queues, bindings."""

    def __init__(self, *, queue_maxsize: int) -> None:
        self._queue_maxsize = max(1, int(queue_maxsize))
        self._bindings: dict[str, list[tuple[str, str]]] = defaultdict(list)
        self._queues: dict[str, _MemoryQueue] = {}
        self._published = 0
        self._unroutable = 0

    def declare(self, topology: Topology, roles: Iterable[str] | None = None) -> None:
        bindings = self._bindings[topology.exchange_name]
        for spec in _selected_specs(topology, roles):
            mq = self._queues.get(spec.name)
            if mq is None:
                mq = _MemoryQueue(spec=spec, queue=asyncio.Queue(maxsize=self._queue_maxsize))
                self._queues[spec.name] = mq
            if topology.dead_letter_enabled and mq.dead_letter is None:
                dead_spec = QueueSpec(spec.role, spec.dead_letter_name, ())
                mq.dead_letter = self._queues.setdefault(
                    dead_spec.name,
                    _MemoryQueue(spec=dead_spec, queue=asyncio.Queue(maxsize=self._queue_maxsize)),
                )
            for pattern in spec.binding_patterns:
                if (spec.name, pattern) not in bindings:
                    bindings.append((spec.name, pattern))

    def route(self, exchange_name: str, message: _StoredMessage) -> int:
        """Fan a message out to every bound queue; BrokerError if any of them is full."""
        targets = sorted(
            {
                queue_name
                for queue_name, pattern in self._bindings.get(exchange_name, [])
                if topic_matches(pattern, message.routing_key)
            }
        )
        if not targets:
            self._published += 1
            self._unroutable += 1
            logger.debug("Unroutable message routing_key=%s", message.routing_key)
            return 0
        full = [name for name in targets if self._queues[name].queue.full()]
        if full:
            for name in full:
                self._queues[name].refused_total += 1
            raise BrokerError(f"queue(s) {', '.join(full)} full; message refused routing_key={message.routing_key}")
        self._published += 1
        for queue_name in targets:
            self.enqueue(self._queues[queue_name], message)
        return len(targets)

    def enqueue(self, mq: _MemoryQueue, message: _StoredMessage) -> None:
        try:
            mq.queue.put_nowait(message)
            mq.max_depth_seen = max(mq.max_depth_seen, mq.queue.qsize())
        except asyncio.QueueFull:
            mq.dropped_total += 1
            logger.warning("In-memory queue full; dropping queue=%s routing_key=%s", mq.spec.name, message.routing_key)

    def get_queue(self, name: str) -> _MemoryQueue:
        mq = self._queues.get(name)
        if mq is None:
            raise BrokerError(f"queue {name!r} was not declared")
        return mq

    def depth(self, name: str) -> int:
        return self.get_queue(name).queue.qsize()

    def drain(self, name: str) -> list[_StoredMessage]:
        mq = self.get_queue(name)
        drained: list[_StoredMessage] = []
        while not mq.queue.empty():
            drained.append(mq.queue.get_nowait())
        return drained

    def stats(self) -> dict[str, Any]:
        return {
            "published_total": self._published,
            "unroutable_total": self._unroutable,
            "queues": {
                name: {
                    "depth": mq.queue.qsize(),
                    "max_depth_seen": mq.max_depth_seen,
                    "delivered_total": mq.delivered_total,
                    "acked_total": mq.acked_total,
                    "rejected_total": mq.rejected_total,
                    "dead_lettered_total": mq.dead_lettered_total,
                    "dropped_total": mq.dropped_total,
                    "refused_total": mq.refused_total,
                }
                for name, mq in sorted(self._queues.items())
            },
        }


class _MemoryDelivery:
    def __init__(self, broker: InMemoryTopicBroker, mq: _MemoryQueue, message: _StoredMessage) -> None:
        self._broker = broker
        self._mq = mq
        self._message = message
        self.body = message.body
        self.routing_key = message.routing_key
        self.message_id = message.message_id
        self.redelivered = message.redelivered
        self.settled = False

    def _settle(self) -> None:
        if self._broker.is_closed:
            raise BrokerError(f"connection {self._broker.name} is closed")
        if self.settled:
            raise BrokerError("delivery already settled")
        self.settled = True
        self._broker._unsettled.discard(self)

    async def ack(self) -> None:
        self._settle()
        self._mq.acked_total += 1

    async def reject(self, *, requeue: bool = False) -> None:
        self._settle()
        self._mq.rejected_total += 1
        server = self._broker._server
        if requeue:
            server.enqueue(self._mq, _redelivery(self._message))
        elif self._mq.dead_letter is not None:
            self._mq.dead_lettered_total += 1
            server.enqueue(self._mq.dead_letter, _redelivery(self._message))


def _redelivery(message: _StoredMessage) -> _StoredMessage:
    return _StoredMessage(
        body=message.body,
        routing_key=message.routing_key,
        message_id=message.message_id,
        message_type=message.message_type,
        redelivered=True,
    )


@dataclass
class _MemoryConsumer:
    tag: str
    mq: _MemoryQueue
    callback: DeliveryCallback
    workers: list[asyncio.Task] = field(default_factory=list)
    inflight: set[asyncio.Task] = field(default_factory=set)


class InMemoryTopicBroker:
    """One "connection" to an InMemoryBrokerServer."""

    def __init__(self, server: InMemoryBrokerServer, *, name: str) -> None:
        self.name = name
        self._server = server
        self._closed = True
        self._consumers: dict[str, _MemoryConsumer] = {}
        self._unsettled: set[_MemoryDelivery] = set()
        self._tag_seq = 0

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def server(self) -> InMemoryBrokerServer:
        return self._server

    async def connect(self) -> None:
        self._closed = False

    async def close(self) -> None:
        if self._closed:
            return
        for tag in list(self._consumers):
            await self.cancel(tag)
        self._closed = True
        # Unsettled messages go back to their queue, as a broker does when a channel dies.
        for delivery in list(self._unsettled):
            delivery.settled = True
            self._server.enqueue(delivery._mq, _redelivery(delivery._message))
        self._unsettled.clear()

    def _require_open(self) -> None:
        if self._closed:
            raise BrokerError(f"broker {self.name} is not connected")

    async def declare_topology(self, topology: Topology, roles: Iterable[str] | None = None) -> None:
        self._require_open()
        self._server.declare(topology, roles)

    async def publish(
        self,
        exchange_name: str,
        routing_key: str,
        body: bytes,
        *,
        message_id: str | None = None,
        message_type: str | None = None,
    ) -> None:
        self._require_open()
        self._server.route(
            exchange_name,
            _StoredMessage(body=body, routing_key=routing_key, message_id=message_id, message_type=message_type),
        )

    async def consume(self, queue_name: str, callback: DeliveryCallback, *, prefetch: int) -> str:
        self._require_open()
        mq = self._server.get_queue(queue_name)
        self._tag_seq += 1
        tag = f"{self.name}-ctag-{self._tag_seq}"
        consumer = _MemoryConsumer(tag=tag, mq=mq, callback=callback)
        for idx in range(max(1, int(prefetch))):
            consumer.workers.append(
                asyncio.create_task(self._worker_loop(consumer), name=f"memory_broker_{queue_name}_{idx}")
            )
        self._consumers[tag] = consumer
        return tag

    async def cancel(self, consumer_tag: str) -> None:
        consumer = self._consumers.pop(consumer_tag, None)
        if consumer is None:
            return
        # Stops delivery only; callbacks already running keep going.
        for worker in consumer.workers:
            worker.cancel()
        for worker in consumer.workers:
            try:
                await worker
            except asyncio.CancelledError:
                pass
        consumer.workers.clear()

    async def _worker_loop(self, consumer: _MemoryConsumer) -> None:
        while True:
            message = await consumer.mq.queue.get()
            consumer.mq.delivered_total += 1
            delivery = _MemoryDelivery(self, consumer.mq, message)
            self._unsettled.add(delivery)
            task = asyncio.create_task(self._run_callback(consumer, delivery))
            consumer.inflight.add(task)
            task.add_done_callback(consumer.inflight.discard)
            await asyncio.shield(task)

    async def _run_callback(self, consumer: _MemoryConsumer, delivery: _MemoryDelivery) -> None:
        try:
            await consumer.callback(delivery)
        except Exception as exc:
            # A raising callback leaves the message unsettled, as with aio-pika.
            logger.error("In-memory consumer callback failed consumer_tag=%s error=%s", consumer.tag, exc, exc_info=True)


memory_broker_server = InMemoryBrokerServer(queue_maxsize=settings.BROKER_MEMORY_QUEUE_MAXSIZE)


def build_broker(name: str) -> Broker:
    backend = str(settings.BROKER_BACKEND or "amqp").strip().lower()
    if backend == "memory":
        return InMemoryTopicBroker(memory_broker_server, name=name)
    if backend == "amqp":
        return AmqpBroker(
            settings.AMQP_URL,
            name=name,
            connect_timeout=settings.BROKER_CONNECT_TIMEOUT_SECONDS,
            publish_timeout=settings.BROKER_PUBLISH_TIMEOUT_SECONDS,
        )
    raise ValueError(f"unsupported BROKER_BACKEND {settings.BROKER_BACKEND!r}")
