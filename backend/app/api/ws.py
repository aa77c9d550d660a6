"""WebSocket endpoint for realtime chat signals."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, TypeVar

from fastapi import APIRouter, WebSocket, status
from fastapi.exceptions import HTTPException
from fastapi.websockets import WebSocketDisconnect, WebSocketState

from app.api.deps import get_user_from_token
from app.api.events import publish_read_state, publish_status_changes
from app.config import get_settings
from app.database import get_db_session
from app.models import User
from app.monitoring.metrics import chat_rejections_total
from app.realtime import get_chat_manager, get_presence_manager, get_typing_manager
from app.realtime.managers import safe_send_json
from app.services import conversations, message_log, read_tracker
from app.services.errors import ChatError

router = APIRouter(prefix="/ws", tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

manager = get_chat_manager()
presence_manager = get_presence_manager()
typing_manager = get_typing_manager()

T = TypeVar("T")


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_payload: Dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver* while sending keepalive pings when idle."""

    ping_payload = ping_payload or {"type": "ping"}
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    last_activity = time.monotonic()
    last_ping_sent: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break

            now = time.monotonic()
            should_ping = interval <= 0 or (
                now - last_activity >= interval
                and (last_ping_sent is None or now - last_ping_sent >= interval)
            )
            if should_ping:
                if not await safe_send_json(websocket, ping_payload):
                    break
                last_ping_sent = now
            continue
        except (RuntimeError, WebSocketDisconnect):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            yield message


async def _resolve_user(websocket: WebSocket) -> User | None:
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing token")
        return None

    try:
        with get_db_session() as db:
            return get_user_from_token(token, db)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return None


async def _send_error(websocket: WebSocket, kind: str, message: str) -> None:
    await safe_send_json(websocket, {"type": "error", "kind": kind, "message": message})


async def _reject(websocket: WebSocket, exc: ChatError) -> None:
    chat_rejections_total.labels(exc.kind).inc()
    await _send_error(websocket, exc.kind, exc.message)


def _parse_ids(raw: Any) -> list[int] | None:
    if not isinstance(raw, list) or any(
        not isinstance(item, int) or isinstance(item, bool) for item in raw
    ):
        return None
    return raw


async def _handle_delivered(chat_id: int, user: User, payload: dict[str, Any], websocket: WebSocket) -> None:
    message_ids = _parse_ids(payload.get("message_ids"))
    if message_ids is None:
        await _send_error(websocket, "invalid_frame", "'message_ids' must be a list of integers")
        return
    with get_db_session() as db:
        changed = message_log.acknowledge_delivery(chat_id, user.id, message_ids, db)
        await publish_status_changes(chat_id, changed)


async def _handle_read(chat_id: int, user: User, payload: dict[str, Any], websocket: WebSocket) -> None:
    last_message_id = payload.get("last_message_id")
    if not isinstance(last_message_id, int) or isinstance(last_message_id, bool):
        await _send_error(websocket, "invalid_frame", "'last_message_id' must be an integer")
        return
    with get_db_session() as db:
        result = read_tracker.mark_read(chat_id, user.id, last_message_id, db)
        if result.advanced:
            await publish_status_changes(chat_id, result.status_changes)
            await publish_read_state(result.participant)


async def _handle_typing(chat_id: int, user: User, payload: dict[str, Any], websocket: WebSocket) -> None:
    event = payload.get("event")
    if event not in {"start", "stop"}:
        await _send_error(websocket, "invalid_frame", "Typing frames need 'event' of 'start' or 'stop'")
        return
    await typing_manager.set_status(chat_id, user, event == "start", source=websocket)


_HANDLERS = {
    "delivered": _handle_delivered,
    "read": _handle_read,
    "typing": _handle_typing,
}


@router.websocket("/chats/{chat_id}")
async def websocket_chat(websocket: WebSocket, chat_id: int) -> None:
    """Stream presence, typing and status changes for one chat."""

    user = await _resolve_user(websocket)
    if user is None:
        return

    with get_db_session() as db:
        try:
            conversations.get_chat(chat_id, db)
            conversations.require_participant(chat_id, user.id, db)
        except ChatError as exc:
            chat_rejections_total.labels(exc.kind).inc()
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.message)
            return

    await websocket.accept()
    await manager.connect(chat_id, websocket)
    await presence_manager.join(chat_id, user, websocket)
    await typing_manager.send_snapshot(chat_id, websocket)

    try:
        async for raw_message in iter_keepalive_messages(
            websocket,
            websocket.receive_text,
            timeout_seconds=settings.websocket_keepalive_timeout_seconds,
            ping_interval_seconds=settings.websocket_keepalive_ping_interval_seconds,
        ):
            try:
                payload = json.loads(raw_message)
            except json.JSONDecodeError:
                await _send_error(websocket, "invalid_frame", "Invalid message format")
                continue

            if not isinstance(payload, dict):
                await _send_error(websocket, "invalid_frame", "Message payload must be a JSON object")
                continue

            payload_type = payload.get("type")
            if payload_type == "ping":
                await safe_send_json(websocket, {"type": "pong"})
                continue
            if payload_type == "pong":
                continue

            handler = _HANDLERS.get(payload_type)
            if handler is None:
                await _send_error(websocket, "invalid_frame", "Unsupported payload type")
                continue
            try:
                await handler(chat_id, user, payload, websocket)
            except ChatError as exc:
                await _reject(websocket, exc)
    except WebSocketDisconnect:
        pass
    finally:
        await typing_manager.clear_user(chat_id, user.id)
        await presence_manager.leave(chat_id, user.id)
        await manager.disconnect(chat_id, websocket)
