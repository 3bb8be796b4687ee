"""
backend/matchcast/routers/ws.py

Purpose:
    Notification hub websocket. Clients join or leave match groups and then
    receive pushes from the notification consumer.

    Client commands:
      {"type": "join_match_group",  "match_id": "..."}
      {"type": "leave_match_group", "match_id": "..."}
      {"type": "ping"}
"""

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from matchcast.services.event_models import validate_match_id
from matchcast.services.websocket_manager import websocket_manager

logger = logging.getLogger("matchcast.ws")

router = APIRouter()

_GROUP_COMMANDS = {
    "join_match_group": "joined_group",
    "leave_match_group": "left_group",
}


@router.websocket("/ws/notifications")
async def websocket_notifications(ws: WebSocket):
    if websocket_manager.is_full:
        await ws.close(code=4002, reason="Too many connections")
        return

    try:
        connection_id = await websocket_manager.connect(ws)
    except RuntimeError:
        await ws.close(code=4002, reason="Too many connections")
        return

    try:
        while True:
            payload = await ws.receive_json()
            await websocket_manager.touch(connection_id)
            if not isinstance(payload, dict):
                await ws.send_json({"type": "error", "data": {"detail": "Expected a JSON object."}})
                continue
            command = str(payload.get("type") or "")
            if command == "ping":
                await ws.send_json({"type": "pong"})
                continue
            if command not in _GROUP_COMMANDS:
                await ws.send_json({"type": "error", "data": {"detail": f"Unsupported command '{command}'."}})
                continue
            try:
                match_id = validate_match_id(payload.get("match_id"))
            except ValueError as exc:
                await ws.send_json({"type": "error", "data": {"detail": str(exc)}})
                continue
            if command == "join_match_group":
                groups = await websocket_manager.join_group(connection_id, match_id)
            else:
                groups = await websocket_manager.leave_group(connection_id, match_id)
            await ws.send_json({"type": _GROUP_COMMANDS[command], "data": {"match_id": match_id, "groups": groups}})
    except WebSocketDisconnect:
        pass
    except ValueError:
        logger.info("WS client sent invalid JSON id=%s", connection_id)
    finally:
        await websocket_manager.disconnect(connection_id)
