"""Realtime helpers for chat websocket coordination."""

from .managers import (  # noqa: F401
    ChatConnectionManager,
    PresenceManager,
    TypingManager,
    get_chat_manager,
    get_presence_manager,
    get_typing_manager,
    shutdown_realtime,
    startup_realtime,
)

__all__ = [
    "startup_realtime",
    "shutdown_realtime",
    "get_chat_manager",
    "get_presence_manager",
    "get_typing_manager",
    "ChatConnectionManager",
    "PresenceManager",
    "TypingManager",
]
