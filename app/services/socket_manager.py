"""Per-user websocket rooms.

Every dashboard tab of a tenant joins the room ``user:{user_id}``; server-side
events are fanned out to all sockets in that room as ``{"event", "data"}`` JSON.
"""

from collections import defaultdict
from typing import Any, Dict, Set

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from app.logging_config import get_logger

logger = get_logger("socket_manager")


def room_for(user_id: Any) -> str:
    return f"user:{user_id}"


class ConnectionManager:
    def __init__(self):
        self.rooms: Dict[str, Set[WebSocket]] = defaultdict(set)

    async def connect(self, websocket: WebSocket, user_id: Any) -> None:
        await websocket.accept()
        room = room_for(user_id)
        self.rooms[room].add(websocket)
        logger.info(
            "WS connected",
            extra={"context": {"room": room, "connections": len(self.rooms[room])}},
        )

    def disconnect(self, websocket: WebSocket, user_id: Any) -> None:
        room = room_for(user_id)
        sockets = self.rooms.get(room)
        if not sockets:
            return
        sockets.discard(websocket)
        if not sockets:
            del self.rooms[room]
        logger.info("WS disconnected", extra={"context": {"room": room}})

    def connection_count(self, user_id: Any) -> int:
        return len(self.rooms.get(room_for(user_id), ()))

    async def emit(self, user_id: Any, event: str, data: Any = None) -> int:
        """Send an event to every socket of the user. Returns the number of sockets reached."""
        if not user_id:
            return 0
        room = room_for(user_id)
        sockets = self.rooms.get(room)
        if not sockets:
            return 0

        message = {"event": event, "data": jsonable_encoder(data)}
        delivered = 0
        dead: Set[WebSocket] = set()
        for websocket in list(sockets):
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as exc:
                logger.warning(
                    "WS send failed, dropping socket",
                    extra={"context": {"room": room, "event": event, "error": str(exc)}},
                )
                dead.add(websocket)

        for websocket in dead:
            self.disconnect(websocket, user_id)
        return delivered


manager = ConnectionManager()


# Events describing rows written through a db session wait in session.info
# until the request transaction commits.
PENDING_EVENTS_KEY = "pending_ws_events"


def emit_after_commit(db: Any, user_id: Any, event: str, data: Any = None) -> None:
    """Queue an event for delivery by ``send_pending_events`` once ``db`` has committed.

    The payload is encoded now, while the rows it describes are still loaded.
    """
    if not user_id:
        return
    db.info.setdefault(PENDING_EVENTS_KEY, []).append((user_id, event, jsonable_encoder(data)))


def pending_events(db: Any) -> list:
    return list(db.info.get(PENDING_EVENTS_KEY, ()))


def discard_pending_events(db: Any) -> None:
    db.info.pop(PENDING_EVENTS_KEY, None)


async def send_pending_events(db: Any) -> int:
    """Deliver the events queued on ``db``. Call only after ``db.commit()``."""
    events = db.info.pop(PENDING_EVENTS_KEY, [])
    delivered = 0
    for user_id, event, data in events:
        delivered += await manager.emit(user_id, event, data)
    return delivered
