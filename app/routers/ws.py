from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session

from app.database import get_db
from app.logging_config import get_logger
from app.services.security import resolve_token_user
from app.services.socket_manager import manager

router = APIRouter()
logger = get_logger("ws")

UNAUTHORIZED_CLOSE_CODE = 4401


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
):
    """Dashboard channel. The JWT is passed as ?token= because browsers cannot set headers here."""
    user = resolve_token_user(db, token)
    # only the lookup needs the database
    db.close()
    if not user:
        await websocket.close(code=UNAUTHORIZED_CLOSE_CODE)
        return

    user_id = str(user.id)
    await manager.connect(websocket, user_id)
    try:
        while True:
            try:
                data = await websocket.receive_json()
            except (ValueError, KeyError, TypeError):
                # KeyError/TypeError: binary frame where text was expected
                logger.warning("Malformed websocket frame", extra={"context": {"user_id": user_id}})
                continue
            if isinstance(data, dict) and data.get("type") == "ping":
                await websocket.send_json({"event": "pong", "data": {"ts": data.get("ts")}})
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket, user_id)
