"""HTTP endpoints for conversations, their history and read state."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Response, status
from sqlalchemy.orm import Session

from app.api.deps import get_current_user
from app.api.events import publish_message, publish_read_state, publish_status_changes
from app.api.messages import build_draft, serialize_message, serialize_messages
from app.config import get_settings
from app.core.clock import utcnow
from app.database import get_db
from app.models import Chat, ChatParticipant, User
from app.schemas import (
    ChatCreate,
    ChatRead,
    ChatSummary,
    ChatUpdate,
    ChatUserRead,
    DeliveredRequest,
    MessageCreate,
    MessageGroupRead,
    MessageRead,
    MuteRequest,
    ParticipantAdd,
    ParticipantRead,
    ParticipantUpdate,
    ReadRequest,
    ReadStateRead,
)
from app.services import conversations, grouping, message_log, read_tracker

router = APIRouter(prefix="/chats", tags=["chats"])

settings = get_settings()


def serialize_participant(participant: ChatParticipant) -> ParticipantRead:
    return ParticipantRead(
        user_id=participant.user_id,
        user=ChatUserRead.model_validate(participant.user) if participant.user is not None else None,
        role=participant.role,
        permissions=sorted(participant.permissions, key=lambda item: item.value),
        is_active=participant.is_active,
        is_muted=participant.is_muted,
        muted_until=participant.muted_until,
        joined_at=participant.joined_at,
        left_at=participant.left_at,
        last_read_message_id=participant.last_read_message_id,
        last_read_sequence=participant.last_read_sequence or 0,
        last_seen_at=participant.last_seen_at,
    )


def serialize_chat(chat: Chat) -> ChatRead:
    return ChatRead(
        id=chat.id,
        name=chat.name,
        description=chat.description,
        chat_type=chat.chat_type,
        created_by_id=chat.created_by_id,
        last_sequence=chat.last_sequence or 0,
        last_activity=chat.last_activity,
        is_archived=chat.is_archived,
        archived_at=chat.archived_at,
        is_pinned=chat.is_pinned,
        settings=chat.settings,
        created_at=chat.created_at,
        updated_at=chat.updated_at,
        participants=[serialize_participant(item) for item in chat.active_participants],
    )


def _summarize(chat: Chat, user_id: int, db: Session) -> ChatSummary:
    participant = conversations.require_participant(chat.id, user_id, db)
    return ChatSummary(
        id=chat.id,
        name=chat.name,
        chat_type=chat.chat_type,
        last_sequence=chat.last_sequence or 0,
        last_activity=chat.last_activity,
        is_archived=chat.is_archived,
        is_pinned=chat.is_pinned,
        is_muted=participant.muted_at(utcnow()),
        unread_count=read_tracker.unread_count(chat.id, user_id, db),
        unread_mentions=read_tracker.unread_mentions_count(chat.id, user_id, db),
    )


@router.post("", response_model=ChatRead, status_code=status.HTTP_201_CREATED)
def create_chat(
    payload: ChatCreate,
    response: Response,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ChatRead:
    """Open a conversation; an existing direct chat is returned with 200."""

    chat, created = conversations.create_chat(
        current_user.id,
        payload.chat_type,
        payload.participant_ids,
        db,
        name=payload.name,
        description=payload.description,
        settings=payload.settings,
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    return serialize_chat(chat)


@router.get("", response_model=list[ChatSummary])
def list_chats(
    include_archived: bool = Query(default=False),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[ChatSummary]:
    chats = conversations.list_user_chats(current_user.id, db, include_archived=include_archived)
    return [_summarize(chat, current_user.id, db) for chat in chats]


@router.get("/{chat_id}", response_model=ChatRead)
def get_chat(
    chat_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ChatRead:
    conversations.require_participant(chat_id, current_user.id, db)
    return serialize_chat(conversations.get_chat(chat_id, db))


@router.patch("/{chat_id}", response_model=ChatRead)
def update_chat(
    chat_id: int,
    payload: ChatUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ChatRead:
    chat = conversations.update_chat_info(
        chat_id, current_user.id, db, name=payload.name, description=payload.description
    )
    return serialize_chat(chat)


@router.patch("/{chat_id}/settings", response_model=ChatRead)
def update_chat_settings(
    chat_id: int,
    changes: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ChatRead:
    """Merge the given capability toggles into the chat settings."""

    return serialize_chat(conversations.update_settings(chat_id, current_user.id, changes, db))


@router.post("/{chat_id}/archive", response_model=ChatRead)
def archive_chat(
    chat_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ChatRead:
    return serialize_chat(conversations.set_archived(chat_id, current_user.id, True, db))


@router.post("/{chat_id}/unarchive", response_model=ChatRead)
def unarchive_chat(
    chat_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ChatRead:
    return serialize_chat(conversations.set_archived(chat_id, current_user.id, False, db))


@router.put("/{chat_id}/pin", response_model=ChatRead)
def pin_chat(
    chat_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ChatRead:
    return serialize_chat(conversations.set_pinned(chat_id, current_user.id, True, db))


@router.delete("/{chat_id}/pin", response_model=ChatRead)
def unpin_chat(
    chat_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ChatRead:
    return serialize_chat(conversations.set_pinned(chat_id, current_user.id, False, db))


@router.post(
    "/{chat_id}/participants",
    response_model=ParticipantRead,
    status_code=status.HTTP_201_CREATED,
)
def add_participant(
    chat_id: int,
    payload: ParticipantAdd,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ParticipantRead:
    participant = conversations.add_participant(
        chat_id, current_user.id, payload.user_id, db, role=payload.role
    )
    return serialize_participant(participant)


@router.patch("/{chat_id}/participants/{user_id}", response_model=ParticipantRead)
def update_participant(
    chat_id: int,
    user_id: int,
    payload: ParticipantUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ParticipantRead:
    participant = conversations.update_participant(
        chat_id,
        current_user.id,
        user_id,
        db,
        role=payload.role,
        permissions=payload.permissions,
    )
    return serialize_participant(participant)


@router.delete("/{chat_id}/participants/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_participant(
    chat_id: int,
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Response:
    conversations.remove_participant(chat_id, current_user.id, user_id, db)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/{chat_id}/mute", response_model=ParticipantRead)
def mute_chat(
    chat_id: int,
    payload: MuteRequest | None = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ParticipantRead:
    until = payload.until if payload is not None else None
    return serialize_participant(conversations.mute_chat(chat_id, current_user.id, db, until=until))


@router.delete("/{chat_id}/mute", response_model=ParticipantRead)
def unmute_chat(
    chat_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ParticipantRead:
    return serialize_participant(conversations.unmute_chat(chat_id, current_user.id, db))


@router.post(
    "/{chat_id}/messages",
    response_model=MessageRead,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    chat_id: int,
    payload: MessageCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MessageRead:
    """Append a message and push it to connected participants."""

    message = message_log.send_message(chat_id, current_user.id, build_draft(payload), db)
    serialized = serialize_message(message_log.get_message(message.id, db), current_user.id)
    await publish_message(chat_id, "created", serialized)
    return serialized


@router.get("/{chat_id}/messages", response_model=list[MessageRead])
def get_history(
    chat_id: int,
    before: int | None = Query(default=None, ge=1, description="Return messages below this sequence"),
    limit: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[MessageRead]:
    """Return a page of top-level messages in ascending sequence order."""

    messages = message_log.list_messages(
        chat_id, current_user.id, db, before_sequence=before, limit=limit
    )
    return serialize_messages(messages, current_user.id)


@router.get("/{chat_id}/messages/grouped", response_model=list[MessageGroupRead])
def get_grouped_history(
    chat_id: int,
    before: int | None = Query(default=None, ge=1),
    limit: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[MessageGroupRead]:
    """Return a history page split into sender groups for display."""

    messages = message_log.list_messages(
        chat_id, current_user.id, db, before_sequence=before, limit=limit
    )
    anchor = None
    if messages:
        preceding = message_log.list_messages(
            chat_id, current_user.id, db, before_sequence=messages[0].sequence, limit=1
        )
        if preceding:
            anchor = grouping.anchor_from(preceding[-1])
    participant = conversations.require_participant(chat_id, current_user.id, db)
    groups = grouping.group_messages(
        messages,
        window=timedelta(seconds=settings.chat_group_window_seconds),
        anchor=anchor,
        viewer_id=current_user.id,
        read_sequence=participant.last_read_sequence or 0,
    )
    return [
        MessageGroupRead(
            sender_id=group.sender_id,
            continues_previous=group.continues_previous,
            unread_count=group.unread_count,
            started_at=group.started_at,
            ended_at=group.ended_at,
            messages=serialize_messages(group.messages, current_user.id),
        )
        for group in groups
    ]


@router.get("/{chat_id}/pins", response_model=list[MessageRead])
def get_pinned_messages(
    chat_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[MessageRead]:
    messages = message_log.list_pinned_messages(chat_id, current_user.id, db)
    return serialize_messages(messages, current_user.id)


def _read_state(chat_id: int, user_id: int, db: Session) -> ReadStateRead:
    state = read_tracker.chat_read_state(chat_id, user_id, db)
    return ReadStateRead.model_validate(state)


@router.post("/{chat_id}/read", response_model=ReadStateRead)
async def mark_read(
    chat_id: int,
    payload: ReadRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ReadStateRead:
    """Advance the read cursor; older positions are ignored."""

    result = read_tracker.mark_read(chat_id, current_user.id, payload.last_message_id, db)
    if result.advanced:
        await publish_status_changes(chat_id, result.status_changes)
        await publish_read_state(result.participant)
    return _read_state(chat_id, current_user.id, db)


@router.post("/{chat_id}/delivered", response_model=list[int])
async def acknowledge_delivery(
    chat_id: int,
    payload: DeliveredRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[int]:
    """Record client receipt; returns the ids whose status advanced."""

    changed = message_log.acknowledge_delivery(chat_id, current_user.id, payload.message_ids, db)
    await publish_status_changes(chat_id, changed)
    return [message.id for message in changed]


@router.get("/{chat_id}/read-state", response_model=ReadStateRead)
def get_read_state(
    chat_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ReadStateRead:
    return _read_state(chat_id, current_user.id, db)
