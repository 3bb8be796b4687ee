"""
backend/matchcast/services/consumer_runtime.py

Purpose:
    Generic subscribe / deserialize / dispatch / acknowledge-or-reject loop,
    instantiated once per consumer role with its own broker connection, queue
    and bindings.

    Per message:  Received -> Parsed -> Dispatched -> Acknowledged | Rejected
      - malformed envelope or body      -> reject(requeue=False)
      - handler raised or timed out     -> reject(requeue=False), logged
      - handler returned                -> ack
    A rejected message is dropped unless the queue has a dead-letter exchange.

    Handlers for the same matchId run one at a time (per-match asyncio.Lock);
    different matches are processed concurrently up to the prefetch window.

Dependencies:
    - asyncio
    - matchcast.services.broker
    - matchcast.services.event_models
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from matchcast.services.broker import Broker, BrokerError, Delivery, build_broker
from matchcast.services.broker_topology import Topology
from matchcast.services.event_models import BaseMatchEvent, MalformedEventError, decode_event, parse_envelope
from matchcast.utils import elapsed_ms, utcnow

logger = logging.getLogger("matchcast.consumer_runtime")

AsyncEventHandler = Callable[[BaseMatchEvent], Awaitable[None]]
_LAG_SAMPLE_LIMIT = 500


@dataclass
class _LockSlot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    waiters: int = 0


class ConsumerRuntime:
    def __init__(
        self,
        *,
        role: str,
        handler: AsyncEventHandler,
        topology: Topology,
        broker_factory: Callable[[str], Broker] = build_broker,
        prefetch: int = 8,
        handler_timeout: float = 15.0,
        shutdown_grace: float = 10.0,
        error_buffer_size: int = 200,
    ) -> None:
        self.role = role
        self.queue = topology.queue_for(role)
        self._handler = handler
        self._topology = topology
        self._broker_factory = broker_factory
        self._prefetch = max(1, int(prefetch))
        self._handler_timeout = float(handler_timeout)
        self._shutdown_grace = max(0.0, float(shutdown_grace))

        self._broker: Broker | None = None
        self._consumer_tag: str | None = None
        self._accepting = False
        self._inflight: set[asyncio.Task] = set()
        self._locks: dict[str, _LockSlot] = {}

        self._received = 0
        self._acked = 0
        self._rejected_malformed = 0
        self._failed = 0
        self._timed_out = 0
        self._lag_samples: deque[int] = deque(maxlen=_LAG_SAMPLE_LIMIT)
        self._errors: deque[dict[str, Any]] = deque(maxlen=max(1, int(error_buffer_size)))

    @property
    def running(self) -> bool:
        return self._accepting

    async def start(self) -> None:
        if self._accepting:
            return
        broker = self._broker_factory(self.role)
        await broker.connect()
        await broker.declare_topology(self._topology, roles=[self.role])
        self._broker = broker
        self._accepting = True
        self._consumer_tag = await broker.consume(self.queue.name, self._on_delivery, prefetch=self._prefetch)
        logger.info(
            "Consumer started role=%s queue=%s bindings=%s prefetch=%d",
            self.role,
            self.queue.name,
            ",".join(self.queue.binding_patterns),
            self._prefetch,
        )

    async def stop(self) -> None:
        if self._broker is None:
            return
        self._accepting = False
        broker = self._broker
        if self._consumer_tag is not None:
            try:
                await broker.cancel(self._consumer_tag)
            except BrokerError as exc:
                logger.warning("Consumer cancel failed role=%s error=%s", self.role, exc)
            self._consumer_tag = None

        if self._inflight:
            _done, pending = await asyncio.wait(set(self._inflight), timeout=self._shutdown_grace)
            if pending:
                logger.warning("Aborting %d in-flight handler(s) role=%s", len(pending), self.role)
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        # Unsettled deliveries return to the queue when the connection goes away.
        self._broker = None
        await broker.close()
        logger.info("Consumer stopped role=%s", self.role)

    async def _on_delivery(self, delivery: Delivery) -> None:
        if not self._accepting:
            return
        task = asyncio.current_task()
        if task is not None:
            self._inflight.add(task)
        try:
            await self._process(delivery)
        finally:
            if task is not None:
                self._inflight.discard(task)

    async def _process(self, delivery: Delivery) -> None:
        self._received += 1
        try:
            envelope = parse_envelope(delivery.body)
            event = decode_event(delivery.body, envelope)
        except MalformedEventError as exc:
            self._rejected_malformed += 1
            self._record_error(None, None, f"malformed: {exc}")
            logger.warning(
                "Rejecting malformed message role=%s routing_key=%s error=%s",
                self.role,
                delivery.routing_key,
                exc,
            )
            await self._settle(delivery, ack=False)
            return

        self._lag_samples.append(elapsed_ms(event.event_time))
        try:
            async with self._match_lock(event.match_id):
                await asyncio.wait_for(self._handler(event), timeout=self._handler_timeout)
        except asyncio.TimeoutError:
            self._timed_out += 1
            self._failed += 1
            self._record_error(event.event_id, event.match_id, f"timeout after {self._handler_timeout}s")
            logger.error(
                "Handler timed out role=%s event_id=%s kind=%s match_id=%s; rejecting",
                self.role,
                event.event_id,
                event.kind.value,
                event.match_id,
            )
            await self._settle(delivery, ack=False)
            return
        except Exception as exc:
            self._failed += 1
            self._record_error(event.event_id, event.match_id, str(exc))
            logger.error(
                "Handler failed role=%s event_id=%s kind=%s match_id=%s error=%s; rejecting",
                self.role,
                event.event_id,
                event.kind.value,
                event.match_id,
                str(exc),
                exc_info=True,
            )
            await self._settle(delivery, ack=False)
            return

        await self._settle(delivery, ack=True)
        self._acked += 1

    async def _settle(self, delivery: Delivery, *, ack: bool) -> None:
        broker = self._broker
        if broker is None or broker.is_closed:
            logger.warning("Connection closed before settling message role=%s ack=%s", self.role, ack)
            return
        try:
            if ack:
                await delivery.ack()
            else:
                await delivery.reject(requeue=False)
        except BrokerError as exc:
            logger.error("Settle failed role=%s ack=%s error=%s", self.role, ack, exc)

    @asynccontextmanager
    async def _match_lock(self, match_id: str) -> AsyncIterator[None]:
        slot = self._locks.get(match_id)
        if slot is None:
            slot = self._locks[match_id] = _LockSlot()
        slot.waiters += 1
        try:
            async with slot.lock:
                yield
        finally:
            slot.waiters -= 1
            if slot.waiters == 0:
                self._locks.pop(match_id, None)

    def _record_error(self, event_id: str | None, match_id: str | None, error: str) -> None:
        self._errors.append(
            {
                "ts": utcnow().isoformat(),
                "role": self.role,
                "event_id": event_id,
                "match_id": match_id,
                "error": error,
            }
        )

    def _lag_summary(self) -> dict[str, float]:
        if not self._lag_samples:
            return {"avg": 0.0, "p50": 0.0, "p95": 0.0}
        values = sorted(self._lag_samples)
        n = len(values)
        avg = round(sum(values) / n, 2)
        p50 = float(values[min(n - 1, int(0.50 * (n - 1)))])
        p95 = float(values[min(n - 1, int(0.95 * (n - 1)))])
        return {"avg": avg, "p50": p50, "p95": p95}

    def stats(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "queue": self.queue.name,
            "bindings": list(self.queue.binding_patterns),
            "running": self._accepting,
            "prefetch": self._prefetch,
            "inflight": len(self._inflight),
            "received_total": self._received,
            "acked_total": self._acked,
            "rejected_malformed_total": self._rejected_malformed,
            "failed_total": self._failed,
            "timed_out_total": self._timed_out,
            "lag_ms": self._lag_summary(),
            "recent_errors": list(self._errors),
        }
