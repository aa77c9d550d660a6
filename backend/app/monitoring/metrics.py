"""Metric definitions for the chat engine and realtime layer."""

from __future__ import annotations

from .registry import registry


chat_messages_total = registry.counter(
    "chat_messages_total",
    "Number of messages appended to chat logs.",
    label_names=("message_type",),
)

chat_rejections_total = registry.counter(
    "chat_rejections_total",
    "Number of chat operations rejected with a typed error.",
    label_names=("kind",),
)

chat_reactions_total = registry.counter(
    "chat_reactions_total",
    "Number of reaction changes applied to messages.",
    label_names=("action",),
)

chat_poll_votes_total = registry.counter(
    "chat_poll_votes_total",
    "Number of poll ballots cast or withdrawn.",
    label_names=("action",),
)

chat_read_cursor_moves_total = registry.counter(
    "chat_read_cursor_moves_total",
    "Number of times a participant read cursor advanced.",
)

realtime_events_total = registry.counter(
    "realtime_events_total",
    "Count of realtime messages processed by the websocket managers.",
    label_names=("topic", "direction", "action"),
)

realtime_connections = registry.gauge(
    "realtime_active_connections",
    "Number of active websocket connections handled locally.",
    label_names=("scope",),
)
