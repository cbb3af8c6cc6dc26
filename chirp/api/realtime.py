import json
import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from chirp.dependencies import authenticate_access_token
from chirp.errors import ApiError, Unauthorized
from chirp.models import get_db
from chirp.services.presence import PresenceRegistry
from chirp.services.token_codec import TokenCodec
from chirp.services.users import UserDirectory

router = APIRouter()
logger = logging.getLogger(__name__)

WS_UNAUTHORIZED = 4401
WS_INTERNAL_ERROR = 1011


def _bearer_from_headers(websocket: WebSocket) -> str | None:
    header = websocket.headers.get("authorization")
    if header and header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


def _authenticate(token: str | None, db: Session) -> dict[str, Any]:
    user = authenticate_access_token(token, UserDirectory(db), TokenCodec.from_settings())
    return {
        "id": user.id,
        "username": user.username,
        "displayName": user.display_name,
        "isVerified": user.is_verified,
    }


async def _relay(registry: PresenceRegistry, sender: dict[str, Any], message: dict[str, Any]) -> None:
    event = message.get("event")
    data = message.get("data") or {}
    if not isinstance(data, dict):
        return
    receiver_id = data.get("receiverId")
    if not isinstance(receiver_id, int):
        return

    if event == "typing":
        await registry.send_to(receiver_id, "userTyping", {"userId": sender["id"], "user": sender})
    elif event == "stopTyping":
        await registry.send_to(receiver_id, "userStoppedTyping", {"userId": sender["id"]})


@router.websocket("/ws")
async def presence_socket(
    websocket: WebSocket,
    db: Annotated[Session, Depends(get_db)],
    token: str | None = None,
):
    """Presence and typing channel; the socket is accepted only for a valid access token."""
    registry: PresenceRegistry = websocket.app.state.presence
    try:
        sender = await run_in_threadpool(_authenticate, token or _bearer_from_headers(websocket), db)
    except Unauthorized as exc:
        logger.info("Socket connection rejected: %s", exc.message)
        await websocket.close(code=WS_UNAUTHORIZED, reason=exc.message)
        return
    except ApiError as exc:
        await websocket.close(code=WS_INTERNAL_ERROR, reason=exc.message)
        return

    user_id = sender["id"]
    await websocket.accept()
    came_online = registry.connect(user_id, websocket)
    logger.info("Socket connected for user=%s", user_id)

    try:
        await websocket.send_json({"event": "onlineUsers", "data": registry.online_user_ids()})
        if came_online:
            await registry.broadcast("userOnline", {"userId": user_id, "user": sender}, exclude_user_id=user_id)

        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                await websocket.send_json({"event": "error", "data": {"message": "Invalid JSON payload"}})
                continue
            if isinstance(message, dict):
                await _relay(registry, sender, message)
    except WebSocketDisconnect:
        pass
    finally:
        if registry.disconnect(user_id, websocket):
            await registry.broadcast("userOffline", {"userId": user_id})
        logger.info("Socket disconnected for user=%s", user_id)
