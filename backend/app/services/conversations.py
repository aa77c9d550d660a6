"""Conversation store: chats, participants, settings and membership checks."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.core.clock import utcnow
from app.models import (
    Chat,
    ChatParticipant,
    ChatPermission,
    ChatSettings,
    ChatType,
    ParticipantRole,
    User,
)
from app.services.errors import (
    ChatNotFound,
    InvalidParticipantCount,
    NameRequired,
    NotParticipant,
    PermissionDenied,
    UnknownUser,
    ValidationFailed,
)
from app.services.permissions import default_permissions, require_permission

logger = logging.getLogger(__name__)


def _normalize_pair(user_a_id: int, user_b_id: int) -> tuple[int, int]:
    return (user_a_id, user_b_id) if user_a_id < user_b_id else (user_b_id, user_a_id)


def _coerce_settings(settings: ChatSettings | dict[str, Any] | None) -> ChatSettings:
    if settings is None:
        return ChatSettings()
    if isinstance(settings, ChatSettings):
        return settings
    try:
        return ChatSettings.model_validate(settings)
    except ValidationError as exc:
        raise ValidationFailed(f"Invalid chat settings: {exc.errors()[0]['msg']}") from exc


def _ensure_users_exist(user_ids: Iterable[int], db: Session) -> None:
    wanted = set(user_ids)
    if not wanted:
        return
    found = set(db.execute(select(User.id).where(User.id.in_(wanted))).scalars())
    missing = sorted(wanted - found)
    if missing:
        raise UnknownUser(f"Unknown user ids: {', '.join(str(item) for item in missing)}")


def get_chat(chat_id: int, db: Session) -> Chat:
    chat = db.get(Chat, chat_id)
    if chat is None:
        raise ChatNotFound()
    return chat


def get_participant(chat_id: int, user_id: int, db: Session) -> ChatParticipant | None:
    """Return the participant record for the user, active or not."""

    stmt = select(ChatParticipant).where(
        ChatParticipant.chat_id == chat_id,
        ChatParticipant.user_id == user_id,
    )
    return db.execute(stmt).scalar_one_or_none()


def require_participant(chat_id: int, user_id: int, db: Session) -> ChatParticipant:
    """Ensure the user is an active participant of the chat."""

    participant = get_participant(chat_id, user_id, db)
    if participant is None or not participant.is_active:
        raise NotParticipant()
    return participant


def _activate(participant: ChatParticipant, role: ParticipantRole, now: datetime) -> None:
    participant.role = role
    participant.permissions = default_permissions(role)
    participant.is_active = True
    participant.left_at = None
    participant.joined_at = now


def _new_participant(user_id: int, role: ParticipantRole, now: datetime) -> ChatParticipant:
    participant = ChatParticipant(user_id=user_id)
    _activate(participant, role, now)
    return participant


def _find_direct_chat(user_a_id: int, user_b_id: int, db: Session) -> Chat | None:
    stmt = (
        select(Chat)
        .where(Chat.direct_user_a_id == user_a_id, Chat.direct_user_b_id == user_b_id)
        .options(selectinload(Chat.participants))
    )
    return db.execute(stmt).scalar_one_or_none()


def _reactivate_direct(chat: Chat, db: Session) -> None:
    now = utcnow()
    changed = False
    for participant in chat.participants:
        if not participant.is_active:
            _activate(participant, participant.role, now)
            changed = True
    if changed:
        db.commit()


def create_chat(
    creator_id: int,
    chat_type: ChatType,
    participant_ids: Iterable[int],
    db: Session,
    *,
    name: str | None = None,
    description: str | None = None,
    settings: ChatSettings | dict[str, Any] | None = None,
) -> tuple[Chat, bool]:
    """Create a chat and return ``(chat, created)``.

    Direct chats are idempotent per user pair: asking for a second direct chat
    between the same two users returns the existing one with ``created`` set
    to ``False``.
    """

    chat_type = ChatType(chat_type)
    others = {int(user_id) for user_id in participant_ids} - {creator_id}
    chat_settings = _coerce_settings(settings)

    if chat_type == ChatType.DIRECT:
        if len(others) != 1:
            raise InvalidParticipantCount("Direct chats require exactly one other participant")
        (other_id,) = others
        _ensure_users_exist({creator_id, other_id}, db)
        user_a_id, user_b_id = _normalize_pair(creator_id, other_id)

        existing = _find_direct_chat(user_a_id, user_b_id, db)
        if existing is not None:
            _reactivate_direct(existing, db)
            return existing, False

        now = utcnow()
        chat = Chat(
            chat_type=chat_type,
            created_by_id=creator_id,
            direct_user_a_id=user_a_id,
            direct_user_b_id=user_b_id,
            last_activity=now,
        )
        chat.settings = chat_settings
        chat.participants = [
            _new_participant(creator_id, ParticipantRole.OWNER, now),
            _new_participant(other_id, ParticipantRole.MEMBER, now),
        ]
        db.add(chat)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = _find_direct_chat(user_a_id, user_b_id, db)
            if existing is None:
                raise
            logger.info(
                "Concurrent direct chat creation for users %s and %s resolved to chat %s",
                user_a_id,
                user_b_id,
                existing.id,
            )
            return existing, False
        db.refresh(chat)
        logger.info("Created direct chat %s between users %s and %s", chat.id, user_a_id, user_b_id)
        return chat, True

    cleaned_name = (name or "").strip()
    if not cleaned_name:
        raise NameRequired(f"A name is required for {chat_type.value} chats")
    if chat_type in (ChatType.GROUP, ChatType.CHANNEL) and not others:
        raise InvalidParticipantCount(
            f"{chat_type.value.capitalize()} chats require at least one other participant"
        )
    _ensure_users_exist(others | {creator_id}, db)

    now = utcnow()
    chat = Chat(
        name=cleaned_name,
        description=description,
        chat_type=chat_type,
        created_by_id=creator_id,
        last_activity=now,
    )
    chat.settings = chat_settings
    chat.participants = [_new_participant(creator_id, ParticipantRole.OWNER, now)] + [
        _new_participant(user_id, ParticipantRole.MEMBER, now) for user_id in sorted(others)
    ]
    db.add(chat)
    db.commit()
    db.refresh(chat)
    logger.info("Created %s chat %s with %d participants", chat_type.value, chat.id, len(others) + 1)
    return chat, True


def add_participant(
    chat_id: int,
    actor_id: int,
    user_id: int,
    db: Session,
    *,
    role: ParticipantRole = ParticipantRole.MEMBER,
) -> ChatParticipant:
    """Add a user to a chat, reactivating a previous membership when present."""

    chat = get_chat(chat_id, db)
    if chat.chat_type == ChatType.DIRECT:
        raise InvalidParticipantCount("Direct chats have exactly two participants")
    actor = require_participant(chat_id, actor_id, db)
    require_permission(actor, ChatPermission.ADD_PARTICIPANTS)
    role = ParticipantRole(role)
    if role == ParticipantRole.OWNER:
        raise PermissionDenied("The owner role cannot be granted")
    _ensure_users_exist({user_id}, db)

    now = utcnow()
    participant = get_participant(chat_id, user_id, db)
    if participant is not None and participant.is_active:
        return participant
    if participant is None:
        participant = _new_participant(user_id, role, now)
        participant.chat_id = chat_id
        db.add(participant)
    else:
        _activate(participant, role, now)
    db.commit()
    db.refresh(participant)
    logger.info("User %s added user %s to chat %s as %s", actor_id, user_id, chat_id, role.value)
    return participant


def remove_participant(chat_id: int, actor_id: int, user_id: int, db: Session) -> ChatParticipant:
    """Mark a participant as having left; the record is kept for attribution."""

    chat = get_chat(chat_id, db)
    actor = require_participant(chat_id, actor_id, db)
    if actor_id != user_id:
        if chat.chat_type == ChatType.DIRECT:
            raise InvalidParticipantCount("Direct chats have exactly two participants")
        require_permission(actor, ChatPermission.REMOVE_PARTICIPANTS)

    participant = get_participant(chat_id, user_id, db)
    if participant is None or not participant.is_active:
        raise NotParticipant("User is not an active participant of this chat")
    if participant.role == ParticipantRole.OWNER and actor_id != user_id:
        raise PermissionDenied("The chat owner cannot be removed")

    participant.is_active = False
    participant.left_at = utcnow()
    db.commit()
    logger.info("User %s removed user %s from chat %s", actor_id, user_id, chat_id)
    return participant


def update_participant(
    chat_id: int,
    actor_id: int,
    user_id: int,
    db: Session,
    *,
    role: ParticipantRole | None = None,
    permissions: Iterable[ChatPermission] | None = None,
) -> ChatParticipant:
    """Change a participant's role or explicit permission set.

    A role change reseeds the permissions from the role defaults unless an
    explicit permission set is supplied.
    """

    get_chat(chat_id, db)
    actor = require_participant(chat_id, actor_id, db)
    require_permission(actor, ChatPermission.MANAGE_PERMISSIONS)
    participant = require_participant(chat_id, user_id, db)

    if participant.role == ParticipantRole.OWNER or role == ParticipantRole.OWNER:
        raise PermissionDenied("The owner role cannot be changed")

    if role is not None:
        participant.role = ParticipantRole(role)
        if permissions is None:
            participant.permissions = default_permissions(participant.role)
    if permissions is not None:
        participant.permissions = {ChatPermission(item) for item in permissions}
    db.commit()
    db.refresh(participant)
    return participant


def mute_chat(chat_id: int, user_id: int, db: Session, *, until: datetime | None = None) -> ChatParticipant:
    """Silence notifications for the caller; sending and reading are unaffected."""

    participant = require_participant(chat_id, user_id, db)
    participant.is_muted = True
    participant.muted_until = until
    db.commit()
    return participant


def unmute_chat(chat_id: int, user_id: int, db: Session) -> ChatParticipant:
    participant = require_participant(chat_id, user_id, db)
    participant.is_muted = False
    participant.muted_until = None
    db.commit()
    return participant


def update_settings(chat_id: int, actor_id: int, changes: dict[str, Any], db: Session) -> Chat:
    """Merge *changes* into the chat settings."""

    chat = get_chat(chat_id, db)
    actor = require_participant(chat_id, actor_id, db)
    require_permission(actor, ChatPermission.EDIT_CHAT_INFO)

    unknown = set(changes) - set(ChatSettings.model_fields)
    if unknown:
        raise ValidationFailed(f"Unknown chat settings: {', '.join(sorted(unknown))}")
    try:
        merged = chat.settings.merged(changes)
    except ValidationError as exc:
        raise ValidationFailed(f"Invalid chat settings: {exc.errors()[0]['msg']}") from exc

    chat.settings = merged
    db.commit()
    db.refresh(chat)
    logger.info("User %s updated settings of chat %s: %s", actor_id, chat_id, sorted(changes))
    return chat


def update_chat_info(
    chat_id: int,
    actor_id: int,
    db: Session,
    *,
    name: str | None = None,
    description: str | None = None,
) -> Chat:
    chat = get_chat(chat_id, db)
    actor = require_participant(chat_id, actor_id, db)
    require_permission(actor, ChatPermission.EDIT_CHAT_INFO)
    if chat.chat_type == ChatType.DIRECT and (name is not None or description is not None):
        raise ValidationFailed("Direct chats have no name or description")

    if name is not None:
        cleaned = name.strip()
        if not cleaned:
            raise NameRequired()
        chat.name = cleaned
    if description is not None:
        chat.description = description or None
    db.commit()
    db.refresh(chat)
    return chat


def set_archived(chat_id: int, actor_id: int, archived: bool, db: Session) -> Chat:
    """Archive or restore a chat. Archived chats reject new messages."""

    chat = get_chat(chat_id, db)
    actor = require_participant(chat_id, actor_id, db)
    require_permission(actor, ChatPermission.EDIT_CHAT_INFO)
    if chat.is_archived != archived:
        chat.is_archived = archived
        chat.archived_at = utcnow() if archived else None
        db.commit()
        db.refresh(chat)
        logger.info("User %s %s chat %s", actor_id, "archived" if archived else "restored", chat_id)
    return chat


def set_pinned(chat_id: int, actor_id: int, pinned: bool, db: Session) -> Chat:
    chat = get_chat(chat_id, db)
    actor = require_participant(chat_id, actor_id, db)
    require_permission(actor, ChatPermission.EDIT_CHAT_INFO)
    chat.is_pinned = pinned
    chat.pinned_by_id = actor_id if pinned else None
    db.commit()
    db.refresh(chat)
    return chat


def list_user_chats(user_id: int, db: Session, *, include_archived: bool = False) -> list[Chat]:
    """Return chats the user actively participates in, pinned and recent first."""

    stmt = (
        select(Chat)
        .join(ChatParticipant, ChatParticipant.chat_id == Chat.id)
        .where(ChatParticipant.user_id == user_id, ChatParticipant.is_active.is_(True))
        .options(selectinload(Chat.participants))
        .order_by(Chat.is_pinned.desc(), Chat.last_activity.desc(), Chat.id.desc())
    )
    if not include_archived:
        stmt = stmt.where(Chat.is_archived.is_(False))
    return list(db.execute(stmt).scalars())


def record_last_seen(chat_id: int, user_id: int, when: datetime, db: Session) -> None:
    """Persist the durable ``last_seen_at`` fact when a user goes offline."""

    participant = get_participant(chat_id, user_id, db)
    if participant is None:
        return
    participant.last_seen_at = when
    db.commit()
