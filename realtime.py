import logging
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)


def order_room(order_id: str) -> str:
    return f"order_{order_id}"


def chat_room(conversation_id: str) -> str:
    return f"chat_{conversation_id}"


class ConnectionManager:
    """WebSocket rooms keyed by order or conversation."""

    def __init__(self):
        self.rooms: Dict[str, Set[WebSocket]] = {}

    async def connect(self, room: str, websocket: WebSocket):
        await websocket.accept()
        self.rooms.setdefault(room, set()).add(websocket)
        logger.info(f"[WS] Joined {room} ({len(self.rooms[room])} connected)")

    def disconnect(self, room: str, websocket: WebSocket):
        members = self.rooms.get(room)
        if not members:
            return
        members.discard(websocket)
        if not members:
            del self.rooms[room]
        logger.info(f"[WS] Left {room}")

    def count(self, room: str) -> int:
        return len(self.rooms.get(room, ()))

    async def broadcast(self, room: str, event: str, data: Any, exclude: Optional[WebSocket] = None) -> int:
        message = {"event": event, "data": jsonable_encoder(data)}
        sent = 0
        for websocket in list(self.rooms.get(room, ())):
            if websocket is exclude:
                continue
            try:
                await websocket.send_json(message)
                sent += 1
            except (WebSocketDisconnect, RuntimeError, ConnectionError) as e:
                logger.warning(f"[WS] Dropping dead connection in {room}: {e}")
                self.disconnect(room, websocket)
        return sent


manager = ConnectionManager()
