"""
backend/matchcast/services/websocket_manager.py

Purpose:
    Process-local WebSocket connection manager for match notifications.
    Tracks client connections and their match-group memberships, pushes
    messages to one group or to every subscriber, and drops connections
    that fail a send or a heartbeat ping. Delivery is fire-and-forget.

Dependencies:
    - fastapi.WebSocket
    - matchcast.config
    - matchcast.utils
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from fastapi import WebSocket

from matchcast.config import settings
from matchcast.utils import utcnow

logger = logging.getLogger("matchcast.websocket_manager")


@dataclass
class ManagedConnection:
    connection_id: str
    websocket: WebSocket
    connected_at: datetime
    last_seen_at: datetime
    groups: set[str] = field(default_factory=set)


class WebSocketManager:
    def __init__(
        self,
        *,
        max_connections: int,
        heartbeat_seconds: int,
        send_timeout_seconds: float = 5.0,
    ) -> None:
        self._max_connections = max(1, int(max_connections))
        self._heartbeat_seconds = max(1, int(heartbeat_seconds))
        self._send_timeout = max(0.1, float(send_timeout_seconds))
        self._connections: dict[str, ManagedConnection] = {}
        self._lock = asyncio.Lock()
        self._heartbeat_task: asyncio.Task | None = None
        self._running = False
        self._group_sends = 0
        self._broadcast_total = 0
        self._send_failures = 0
        self._dropped_connections = 0
        self._last_errors: list[dict[str, Any]] = []

    @property
    def is_full(self) -> bool:
        return len(self._connections) >= self._max_connections

    async def start(self) -> None:
        async with self._lock:
            if self._running:
                return
            self._running = True
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="ws_heartbeat")
            logger.info("WebSocket manager started")

    async def stop(self) -> None:
        async with self._lock:
            if not self._running:
                return
            self._running = False
            if self._heartbeat_task is not None:
                self._heartbeat_task.cancel()
                try:
                    await self._heartbeat_task
                except asyncio.CancelledError:
                    pass
                self._heartbeat_task = None
            self._connections.clear()
            logger.info("WebSocket manager stopped")

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        async with self._lock:
            if len(self._connections) >= self._max_connections:
                raise RuntimeError("max_connections_exceeded")
            connection_id = str(uuid.uuid4())
            now = utcnow()
            self._connections[connection_id] = ManagedConnection(
                connection_id=connection_id,
                websocket=websocket,
                connected_at=now,
                last_seen_at=now,
            )
        logger.info("WS client connected id=%s (%d total)", connection_id, len(self._connections))
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        async with self._lock:
            self._connections.pop(connection_id, None)

    async def touch(self, connection_id: str) -> None:
        async with self._lock:
            conn = self._connections.get(connection_id)
            if conn:
                conn.last_seen_at = utcnow()

    async def join_group(self, connection_id: str, group: str) -> list[str]:
        async with self._lock:
            conn = self._connections.get(connection_id)
            if not conn:
                raise RuntimeError("connection_not_found")
            conn.groups.add(str(group))
            conn.last_seen_at = utcnow()
            return sorted(conn.groups)

    async def leave_group(self, connection_id: str, group: str) -> list[str]:
        async with self._lock:
            conn = self._connections.get(connection_id)
            if not conn:
                raise RuntimeError("connection_not_found")
            conn.groups.discard(str(group))
            conn.last_seen_at = utcnow()
            return sorted(conn.groups)

    async def send_to_group(self, group: str, *, event_type: str, data: dict[str, Any]) -> int:
        async with self._lock:
            connections = [conn for conn in self._connections.values() if group in conn.groups]
        delivered = await self._deliver(connections, {"type": str(event_type), "group": str(group), "data": data})
        self._group_sends += 1
        return delivered

    async def broadcast(self, *, event_type: str, data: dict[str, Any]) -> int:
        async with self._lock:
            connections = list(self._connections.values())
        delivered = await self._deliver(connections, {"type": str(event_type), "data": data})
        self._broadcast_total += 1
        return delivered

    async def _deliver(self, connections: list[ManagedConnection], message: dict[str, Any]) -> int:
        delivered = 0
        dead_ids: list[str] = []
        for conn in connections:
            try:
                await asyncio.wait_for(conn.websocket.send_json(message), timeout=self._send_timeout)
                delivered += 1
            except Exception as exc:
                dead_ids.append(conn.connection_id)
                self._send_failures += 1
                self._append_error(
                    {
                        "ts": utcnow().isoformat(),
                        "connection_id": conn.connection_id,
                        "event_type": message["type"],
                        "error": str(exc) or type(exc).__name__,
                    }
                )

        for conn_id in dead_ids:
            await self.disconnect(conn_id)
            self._dropped_connections += 1
        return delivered

    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "active_connections": len(self._connections),
            "max_connections": self._max_connections,
            "heartbeat_seconds": self._heartbeat_seconds,
            "group_sends_total": self._group_sends,
            "broadcast_total": self._broadcast_total,
            "send_failures": self._send_failures,
            "dropped_connections": self._dropped_connections,
            "last_errors": list(self._last_errors),
        }

    async def _heartbeat_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._heartbeat_seconds)
            async with self._lock:
                connections = list(self._connections.values())
            dead_ids: list[str] = []
            for conn in connections:
                try:
                    await asyncio.wait_for(
                        conn.websocket.send_json({"type": "ping", "data": {"ts": utcnow().isoformat()}}),
                        timeout=self._send_timeout,
                    )
                except Exception:
                    dead_ids.append(conn.connection_id)
            for conn_id in dead_ids:
                await self.disconnect(conn_id)
                self._dropped_connections += 1

    def _append_error(self, error: dict[str, Any]) -> None:
        self._last_errors.append(error)
        if len(self._last_errors) > 200:
            self._last_errors = self._last_errors[-200:]


websocket_manager = WebSocketManager(
    max_connections=settings.WS_MAX_CONNECTIONS,
    heartbeat_seconds=settings.WS_HEARTBEAT_SECONDS,
    send_timeout_seconds=settings.WS_SEND_TIMEOUT_SECONDS,
)
