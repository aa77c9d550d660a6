"""Realtime fan-out of changes made through the HTTP API."""

from __future__ import annotations

from typing import Iterable

from app.models import ChatParticipant, Message
from app.realtime import get_chat_manager
from app.schemas import MessageRead


async def publish_message(chat_id: int, action: str, message: MessageRead) -> None:
    """Push a created, edited or deleted message to the chat's sockets."""

    await get_chat_manager().broadcast(
        chat_id,
        {
            "type": "message",
            "action": action,
            "chat_id": chat_id,
            "message": message.model_dump(mode="json"),
        },
    )


async def publish_status_changes(chat_id: int, messages: Iterable[Message]) -> None:
    updates = [
        {"message_id": message.id, "sequence": message.sequence, "status": message.delivery_status.value}
        for message in messages
    ]
    if not updates:
        return
    await get_chat_manager().broadcast(
        chat_id, {"type": "status", "chat_id": chat_id, "updates": updates}
    )


async def publish_read_state(participant: ChatParticipant) -> None:
    await get_chat_manager().broadcast(
        participant.chat_id,
        {
            "type": "read_state",
            "chat_id": participant.chat_id,
            "user_id": participant.user_id,
            "last_read_message_id": participant.last_read_message_id,
            "last_read_sequence": participant.last_read_sequence or 0,
        },
    )
