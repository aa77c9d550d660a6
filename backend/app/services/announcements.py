"""Announcements with audience resolution and per-recipient read receipts."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, assert_never

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from app.config import get_settings
from app.core.clock import as_utc, utcnow
from app.models import (
    Announcement,
    AnnouncementAudience,
    AnnouncementPriority,
    AnnouncementReceipt,
    ChatParticipant,
    ChatPermission,
    MessageType,
    User,
)
from app.models.payloads import AnnouncementPayload
from app.services import conversations, message_log
from app.services.errors import AnnouncementNotFound, PermissionDenied, UnknownUser, ValidationFailed
from app.services.permissions import require_permission

logger = logging.getLogger(__name__)

settings = get_settings()

TITLE_MAX_LENGTH = 200
CONTENT_MAX_LENGTH = 2000


@dataclass(slots=True)
class AnnouncementDraft:
    title: str
    content: str
    audience: AnnouncementAudience = AnnouncementAudience.EVERYONE
    priority: AnnouncementPriority = AnnouncementPriority.NORMAL
    chat_id: int | None = None
    target_user_ids: tuple[int, ...] = ()
    target_roles: tuple[str, ...] = ()
    expires_at: datetime | None = None
    is_pinned: bool = False


def _validate(draft: AnnouncementDraft) -> tuple[str, str]:
    title = draft.title.strip()
    content = draft.content.strip()
    if not 1 <= len(title) <= TITLE_MAX_LENGTH:
        raise ValidationFailed(f"Title must be between 1 and {TITLE_MAX_LENGTH} characters")
    if not 1 <= len(content) <= CONTENT_MAX_LENGTH:
        raise ValidationFailed(f"Content must be between 1 and {CONTENT_MAX_LENGTH} characters")
    if draft.expires_at is not None and as_utc(draft.expires_at) <= utcnow():
        raise ValidationFailed("Expiry must be in the future")

    audience = AnnouncementAudience(draft.audience)
    match audience:
        case AnnouncementAudience.EVERYONE:
            pass
        case AnnouncementAudience.SPECIFIC:
            if not draft.target_user_ids:
                raise ValidationFailed("Specific announcements need at least one target user")
        case AnnouncementAudience.ROLE_BASED:
            if not draft.target_roles:
                raise ValidationFailed("Role-based announcements need at least one target role")
        case AnnouncementAudience.CHAT_MEMBERS:
            if draft.chat_id is None:
                raise ValidationFailed("Chat member announcements must target a chat")
        case _:
            assert_never(audience)
    return title, content


def resolve_recipients(
    audience: AnnouncementAudience,
    db: Session,
    *,
    chat_id: int | None = None,
    target_user_ids: Iterable[int] = (),
    target_roles: Iterable[str] = (),
) -> list[int]:
    """Return the sorted user ids an announcement is delivered to."""

    audience = AnnouncementAudience(audience)
    match audience:
        case AnnouncementAudience.EVERYONE:
            stmt = select(User.id)
        case AnnouncementAudience.SPECIFIC:
            wanted = {int(user_id) for user_id in target_user_ids}
            stmt = select(User.id).where(User.id.in_(wanted))
            found = set(db.execute(stmt).scalars())
            if found != wanted:
                missing = ", ".join(str(item) for item in sorted(wanted - found))
                raise UnknownUser(f"Unknown user ids: {missing}")
            return sorted(found)
        case AnnouncementAudience.ROLE_BASED:
            roles = [role.strip().lower() for role in target_roles if role.strip()]
            stmt = select(User.id).where(func.lower(User.org_role).in_(roles))
        case AnnouncementAudience.CHAT_MEMBERS:
            stmt = select(ChatParticipant.user_id).where(
                ChatParticipant.chat_id == chat_id, ChatParticipant.is_active.is_(True)
            )
        case _:
            assert_never(audience)
    return sorted(set(db.execute(stmt).scalars()))


def create_announcement(creator_id: int, draft: AnnouncementDraft, db: Session) -> Announcement:
    """Publish an announcement.

    Chat-scoped announcements require ``create_announcements`` in that chat
    and are also posted into it as an ``announcement`` message. Global ones
    require an organisation role listed in ``announcement_creator_roles``.
    """

    title, content = _validate(draft)
    creator = db.get(User, creator_id)
    if creator is None:
        raise UnknownUser()

    if draft.chat_id is not None:
        chat = conversations.get_chat(draft.chat_id, db)
        participant = conversations.require_participant(chat.id, creator_id, db)
        require_permission(participant, ChatPermission.CREATE_ANNOUNCEMENTS)
    elif creator.org_role.lower() not in {role.lower() for role in settings.announcement_creator_roles}:
        raise PermissionDenied("Only organisation administrators can publish global announcements")

    recipients = resolve_recipients(
        draft.audience,
        db,
        chat_id=draft.chat_id,
        target_user_ids=draft.target_user_ids,
        target_roles=draft.target_roles,
    )

    announcement = Announcement(
        chat_id=draft.chat_id,
        title=title,
        content=content,
        priority=AnnouncementPriority(draft.priority),
        audience=AnnouncementAudience(draft.audience),
        target_user_ids=sorted({int(user_id) for user_id in draft.target_user_ids}),
        target_roles=sorted({role.strip().lower() for role in draft.target_roles if role.strip()}),
        recipient_ids=recipients,
        is_pinned=draft.is_pinned,
        expires_at=draft.expires_at,
        created_by_id=creator_id,
        created_at=utcnow(),
    )
    db.add(announcement)
    db.commit()
    db.refresh(announcement)

    if draft.chat_id is not None:
        message = message_log.send_message(
            draft.chat_id,
            creator_id,
            message_log.MessageDraft(
                content=content,
                message_type=MessageType.ANNOUNCEMENT,
                payload=AnnouncementPayload(
                    announcement_id=announcement.id,
                    title=title,
                    priority=announcement.priority,
                ),
            ),
            db,
        )
        announcement.message_id = message.id
        db.commit()
        db.refresh(announcement)

    logger.info(
        "User %s published announcement %s to %d recipients",
        creator_id,
        announcement.id,
        announcement.total_recipients,
    )
    return announcement


def get_announcement(announcement_id: int, db: Session) -> Announcement:
    stmt = (
        select(Announcement)
        .where(Announcement.id == announcement_id)
        .options(selectinload(Announcement.receipts))
    )
    announcement = db.execute(stmt).scalar_one_or_none()
    if announcement is None:
        raise AnnouncementNotFound()
    return announcement


def _ensure_visible(announcement: Announcement, user_id: int) -> None:
    if user_id not in (announcement.recipient_ids or []) and user_id != announcement.created_by_id:
        raise AnnouncementNotFound()


def get_announcement_for_user(announcement_id: int, user_id: int, db: Session) -> Announcement:
    announcement = get_announcement(announcement_id, db)
    _ensure_visible(announcement, user_id)
    return announcement


def mark_announcement_read(announcement_id: int, user_id: int, db: Session) -> Announcement:
    """Record a recipient's read receipt; repeated calls are no-ops."""

    announcement = get_announcement(announcement_id, db)
    if user_id not in (announcement.recipient_ids or []):
        raise AnnouncementNotFound()
    if not any(receipt.user_id == user_id for receipt in announcement.receipts):
        announcement.receipts.append(AnnouncementReceipt(user_id=user_id, read_at=utcnow()))
        db.commit()
        db.refresh(announcement)
    return announcement


def read_ratio(announcement: Announcement) -> float:
    total = announcement.total_recipients
    if total == 0:
        return 0.0
    return len(announcement.receipts) / total


def read_percentage(announcement: Announcement) -> int:
    return int(read_ratio(announcement) * 100 + 0.5)


def is_read_by(announcement: Announcement, user_id: int) -> bool:
    return any(receipt.user_id == user_id for receipt in announcement.receipts)


def list_announcements_for_user(
    user_id: int, db: Session, *, include_expired: bool = False
) -> list[Announcement]:
    """Active announcements addressed to the user, pinned and newest first."""

    now = utcnow()
    stmt = (
        select(Announcement)
        .where(Announcement.is_active.is_(True))
        .options(selectinload(Announcement.receipts))
        .order_by(Announcement.is_pinned.desc(), Announcement.created_at.desc(), Announcement.id.desc())
    )
    if not include_expired:
        stmt = stmt.where(or_(Announcement.expires_at.is_(None), Announcement.expires_at > now))
    return [
        announcement
        for announcement in db.execute(stmt).scalars()
        if user_id in (announcement.recipient_ids or [])
    ]


def deactivate_announcement(announcement_id: int, actor_id: int, db: Session) -> Announcement:
    announcement = get_announcement(announcement_id, db)
    if announcement.created_by_id != actor_id:
        raise PermissionDenied("Only the author can withdraw an announcement")
    announcement.is_active = False
    db.commit()
    db.refresh(announcement)
    return announcement
