# api/websocket_routes.py
import json
import time
import uuid
from typing import Dict

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

websocket_router = APIRouter(tags=['websocket'])


def _now_ms() -> int:
    return int(time.time() * 1000)


class ConnectionManager:
    """Open WebSocket connections keyed by a generated connection id."""

    def __init__(self):
        self.connections: Dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        self.connections[connection_id] = websocket
        print(f"[WebSocket] Connected: {connection_id} (active: {len(self.connections)})")
        return connection_id

    def disconnect(self, connection_id: str):
        self.connections.pop(connection_id, None)
        print(f"[WebSocket] Disconnected: {connection_id} (active: {len(self.connections)})")

    async def broadcast(self, message: dict):
        for connection_id, websocket in list(self.connections.items()):
            try:
                await websocket.send_json(message)
            except Exception as e:
                print(f"[WebSocket] Error sending to {connection_id}: {e}")
                self.disconnect(connection_id)


manager = ConnectionManager()


async def handle_message(websocket: WebSocket, raw: str):
    try:
        message = json.loads(raw)
        if not isinstance(message, dict):
            raise ValueError("Message must be a JSON object")
    except ValueError:
        await websocket.send_json({
            "type": "error",
            "message": "Invalid message format",
            "timestamp": _now_ms(),
        })
        return

    message_type = message.get("type")
    if message_type == "chat":
        await manager.broadcast({
            "type": "chat",
            "message": message.get("message"),
            "sender": message.get("sender") or "Anonymous",
            "timestamp": _now_ms(),
        })
    elif message_type == "ping":
        await websocket.send_json({"type": "pong", "timestamp": _now_ms()})
    else:
        await websocket.send_json({"type": "echo", "data": message, "timestamp": _now_ms()})


@websocket_router.websocket('/ws')
async def websocket_endpoint(websocket: WebSocket):
    connection_id = await manager.connect(websocket)
    try:
        await websocket.send_json({
            "type": "system",
            "message": "Connected to WebSocket server",
            "timestamp": _now_ms(),
        })
        while True:
            raw = await websocket.receive_text()
            await handle_message(websocket, raw)
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(connection_id)
