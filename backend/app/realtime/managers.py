"""In-process realtime managers for chat websockets."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import defaultdict
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, Set, TYPE_CHECKING

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from app.config import get_settings
from app.core.clock import utcnow
from app.monitoring.metrics import realtime_connections, realtime_events_total

if TYPE_CHECKING:  # pragma: no cover - typing helpers only
    from app.models import User


logger = logging.getLogger(__name__)

OfflineCallback = Callable[[int, int, datetime], Awaitable[None] | None]


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Safely send JSON data through websocket, handling disconnections gracefully.

    Returns True if message was sent successfully, False otherwise.
    """
    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Failed to send websocket message: %s", e)
        return False


def _display_name(user: "User") -> str:
    return user.display_name or user.login


# ---------------------------------------------------------------------------
# Internal state helpers
# ---------------------------------------------------------------------------


class PresenceStatusStore:
    """Online users per chat, counted by open sockets."""

    def __init__(self) -> None:
        self._online: Dict[int, Dict[int, str]] = defaultdict(dict)
        self._sockets: Dict[tuple[int, int], int] = defaultdict(int)

    def _format_snapshot(self, chat_id: int) -> list[dict[str, str | int]]:
        bucket = self._online.get(chat_id, {})
        entries: list[dict[str, str | int]] = [
            {"id": user_id, "display_name": name} for user_id, name in bucket.items()
        ]
        entries.sort(key=lambda item: str(item["display_name"]).lower())
        return entries

    def mark_online(
        self, chat_id: int, *, user_id: int, display_name: str
    ) -> tuple[list[dict[str, str | int]], bool]:
        key = (chat_id, user_id)
        self._sockets[key] += 1
        bucket = self._online.setdefault(chat_id, {})
        was_present = user_id in bucket
        bucket[user_id] = display_name
        return self._format_snapshot(chat_id), not was_present

    def mark_offline(self, chat_id: int, user_id: int) -> tuple[list[dict[str, str | int]], bool]:
        """Release one socket; the user goes offline when the last one closes."""

        key = (chat_id, user_id)
        if self._sockets.get(key, 0) <= 0:
            return self._format_snapshot(chat_id), False
        self._sockets[key] -= 1
        if self._sockets[key] > 0:
            return self._format_snapshot(chat_id), False
        self._sockets.pop(key, None)
        bucket = self._online.get(chat_id)
        if bucket is not None:
            bucket.pop(user_id, None)
            if not bucket:
                self._online.pop(chat_id, None)
        return self._format_snapshot(chat_id), True

    def is_online(self, chat_id: int, user_id: int) -> bool:
        return user_id in self._online.get(chat_id, {})

    def snapshot(self, chat_id: int) -> list[dict[str, str | int]]:
        return self._format_snapshot(chat_id)


class TypingStatusStore:
    """Transient typing indicators with lazy expiry.

    Entries older than the TTL are dropped on every access; a user can be
    typing in several chats at once.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[int, Dict[int, tuple[str, float]]] = defaultdict(dict)

    @property
    def ttl(self) -> float:
        return self._ttl

    def _cleanup_expired(self, chat_id: int, now: float) -> bool:
        bucket = self._entries.get(chat_id)
        if not bucket:
            self._entries.pop(chat_id, None)
            return False
        removed = [user_id for user_id, (_, ts) in bucket.items() if now - ts > self._ttl]
        for user_id in removed:
            bucket.pop(user_id, None)
        if not bucket:
            self._entries.pop(chat_id, None)
        return bool(removed)

    def _build_snapshot(self, chat_id: int) -> list[dict[str, str | int]]:
        entries: list[dict[str, str | int]] = [
            {"id": user_id, "display_name": display_name}
            for user_id, (display_name, _) in self._entries.get(chat_id, {}).items()
        ]
        entries.sort(key=lambda item: str(item["display_name"]).lower())
        return entries

    def start(
        self, chat_id: int, *, user_id: int, display_name: str
    ) -> tuple[list[dict[str, str | int]], bool, float]:
        """Record a typing-start; returns ``(snapshot, changed, started_at)``."""

        now = self._clock()
        self._cleanup_expired(chat_id, now)
        bucket = self._entries.setdefault(chat_id, {})
        changed = user_id not in bucket
        bucket[user_id] = (display_name, now)
        return self._build_snapshot(chat_id), changed, now

    def stop(self, chat_id: int, user_id: int) -> tuple[list[dict[str, str | int]], bool]:
        now = self._clock()
        changed = self._cleanup_expired(chat_id, now)
        bucket = self._entries.get(chat_id)
        if bucket and user_id in bucket:
            bucket.pop(user_id, None)
            if not bucket:
                self._entries.pop(chat_id, None)
            changed = True
        return self._build_snapshot(chat_id), changed

    def expire(
        self, chat_id: int, user_id: int, started_at: float
    ) -> tuple[list[dict[str, str | int]], bool]:
        """Drop the entry if it has not been refreshed since *started_at*."""

        bucket = self._entries.get(chat_id)
        entry = bucket.get(user_id) if bucket else None
        if entry is None or entry[1] != started_at:
            return self._build_snapshot(chat_id), False
        return self.stop(chat_id, user_id)

    def snapshot(self, chat_id: int) -> list[dict[str, str | int]]:
        self._cleanup_expired(chat_id, self._clock())
        return self._build_snapshot(chat_id)

    def is_typing(self, chat_id: int, user_id: int) -> bool:
        return any(entry["id"] == user_id for entry in self.snapshot(chat_id))


# ---------------------------------------------------------------------------
# Connection manager
# ---------------------------------------------------------------------------


class ChatConnectionManager:
    """Track active WebSocket connections per chat."""

    def __init__(self) -> None:
        self._connections: Dict[int, Set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def connect(self, chat_id: int, websocket: WebSocket) -> None:
        async with self._lock:
            bucket = self._connections.setdefault(chat_id, set())
            bucket.add(websocket)
            realtime_connections.labels("chats").inc()

    async def disconnect(self, chat_id: int, websocket: WebSocket) -> None:
        async with self._lock:
            connections = self._connections.get(chat_id)
            if connections and websocket in connections:
                connections.remove(websocket)
                realtime_connections.labels("chats").dec()
                if not connections:
                    self._connections.pop(chat_id, None)

    def connection_count(self, chat_id: int) -> int:
        return len(self._connections.get(chat_id, ()))

    async def broadcast(
        self,
        chat_id: int,
        payload: dict[str, Any],
        *,
        exclude: Iterable[WebSocket] | None = None,
    ) -> int:
        connections: Iterable[WebSocket] = self._connections.get(chat_id, set()).copy()
        exclude_set = set(exclude or [])
        delivered = 0
        for connection in connections:
            if connection in exclude_set:
                continue
            if await safe_send_json(connection, payload):
                delivered += 1
        realtime_events_total.labels(str(payload.get("type", "event")), "out", "broadcast").inc()
        return delivered


# ---------------------------------------------------------------------------
# Presence manager
# ---------------------------------------------------------------------------


class PresenceManager:
    """Broadcast online snapshots and persist ``last_seen_at`` on the way out."""

    def __init__(
        self,
        connection_manager: ChatConnectionManager,
        *,
        on_offline: OfflineCallback | None = None,
    ) -> None:
        self._connections = connection_manager
        self._store = PresenceStatusStore()
        self._on_offline = on_offline
        self._lock = asyncio.Lock()

    @property
    def store(self) -> PresenceStatusStore:
        return self._store

    async def join(self, chat_id: int, user: "User", websocket: WebSocket) -> None:
        async with self._lock:
            snapshot, changed = self._store.mark_online(
                chat_id, user_id=user.id, display_name=_display_name(user)
            )
        payload = {"type": "presence", "chat_id": chat_id, "online": snapshot}
        await safe_send_json(websocket, payload)
        if changed:
            await self._connections.broadcast(chat_id, payload, exclude={websocket})
            realtime_events_total.labels("presence", "in", "join").inc()

    async def leave(self, chat_id: int, user_id: int) -> None:
        async with self._lock:
            snapshot, changed = self._store.mark_offline(chat_id, user_id)
        if not changed:
            return
        realtime_events_total.labels("presence", "in", "leave").inc()
        await self._connections.broadcast(
            chat_id, {"type": "presence", "chat_id": chat_id, "online": snapshot}
        )
        if self._on_offline is not None:
            try:
                result = self._on_offline(chat_id, user_id, utcnow())
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Failed to record last seen for user %s in chat %s", user_id, chat_id
                )

    def snapshot(self, chat_id: int) -> list[dict[str, str | int]]:
        return self._store.snapshot(chat_id)


# ---------------------------------------------------------------------------
# Typing manager
# ---------------------------------------------------------------------------


class TypingManager:
    """Broadcast typing indicators and expire them when refreshes stop."""

    def __init__(
        self,
        connection_manager: ChatConnectionManager,
        *,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._connections = connection_manager
        self._store = TypingStatusStore(ttl_seconds, clock)
        self._timers: Dict[tuple[int, int], asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task[None]] = set()

    @property
    def store(self) -> TypingStatusStore:
        return self._store

    def _payload(self, chat_id: int, snapshot: list[dict[str, str | int]]) -> dict[str, Any]:
        return {
            "type": "typing",
            "chat_id": chat_id,
            "users": snapshot,
            "expires_in": self._store.ttl,
        }

    def _cancel_timer(self, chat_id: int, user_id: int) -> None:
        handle = self._timers.pop((chat_id, user_id), None)
        if handle is not None:
            handle.cancel()

    def _schedule_expiry(self, chat_id: int, user_id: int, started_at: float) -> None:
        self._cancel_timer(chat_id, user_id)
        loop = asyncio.get_running_loop()

        def fire() -> None:
            self._timers.pop((chat_id, user_id), None)
            task = loop.create_task(self._expire(chat_id, user_id, started_at))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        self._timers[(chat_id, user_id)] = loop.call_later(self._store.ttl, fire)

    async def _expire(self, chat_id: int, user_id: int, started_at: float) -> None:
        snapshot, changed = self._store.expire(chat_id, user_id, started_at)
        if changed:
            realtime_events_total.labels("typing", "in", "expire").inc()
            await self._connections.broadcast(chat_id, self._payload(chat_id, snapshot))

    async def send_snapshot(self, chat_id: int, websocket: WebSocket) -> None:
        snapshot = self._store.snapshot(chat_id)
        if snapshot:
            await safe_send_json(websocket, self._payload(chat_id, snapshot))

    async def set_status(
        self,
        chat_id: int,
        user: "User",
        is_typing: bool,
        *,
        source: WebSocket | None = None,
    ) -> None:
        if is_typing:
            snapshot, changed, started_at = self._store.start(
                chat_id, user_id=user.id, display_name=_display_name(user)
            )
            self._schedule_expiry(chat_id, user.id, started_at)
        else:
            self._cancel_timer(chat_id, user.id)
            snapshot, changed = self._store.stop(chat_id, user.id)
        realtime_events_total.labels("typing", "in", "start" if is_typing else "stop").inc()
        if not changed:
            return
        exclude = {source} if source is not None else None
        await self._connections.broadcast(chat_id, self._payload(chat_id, snapshot), exclude=exclude)

    async def clear_user(self, chat_id: int, user_id: int) -> None:
        self._cancel_timer(chat_id, user_id)
        snapshot, changed = self._store.stop(chat_id, user_id)
        if changed:
            await self._connections.broadcast(chat_id, self._payload(chat_id, snapshot))

    async def stop(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


# ---------------------------------------------------------------------------
# Singletons
# ---------------------------------------------------------------------------


def _write_last_seen(chat_id: int, user_id: int, when: datetime) -> None:
    from app import database
    from app.services import conversations

    with database.get_db_session() as db:
        conversations.record_last_seen(chat_id, user_id, when, db)


async def _persist_last_seen(chat_id: int, user_id: int, when: datetime) -> None:
    # The session is synchronous; keep its commit off the event loop.
    await asyncio.to_thread(_write_last_seen, chat_id, user_id, when)


settings = get_settings()

chat_manager = ChatConnectionManager()
presence_manager = PresenceManager(chat_manager, on_offline=_persist_last_seen)
typing_manager = TypingManager(chat_manager, ttl_seconds=float(settings.chat_typing_ttl_seconds))


async def startup_realtime() -> None:
    logger.info("Realtime managers ready (typing ttl %.1fs)", typing_manager.store.ttl)


async def shutdown_realtime() -> None:
    await typing_manager.stop()


# Convenience accessors exposed to the FastAPI layer ----------------------


def get_chat_manager() -> ChatConnectionManager:
    return chat_manager


def get_presence_manager() -> PresenceManager:
    return presence_manager


def get_typing_manager() -> TypingManager:
    return typing_manager


__all__ = [
    "ChatConnectionManager",
    "PresenceManager",
    "PresenceStatusStore",
    "TypingManager",
    "TypingStatusStore",
    "safe_send_json",
    "startup_realtime",
    "shutdown_realtime",
    "get_chat_manager",
    "get_presence_manager",
    "get_typing_manager",
]
