"""HTTP endpoints for announcements."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import get_current_user
from app.database import get_db
from app.models import Announcement, User
from app.schemas import AnnouncementCreate, AnnouncementRead
from app.services import announcements

router = APIRouter(prefix="/announcements", tags=["announcements"])


def serialize_announcement(announcement: Announcement, current_user_id: int) -> AnnouncementRead:
    return AnnouncementRead(
        id=announcement.id,
        chat_id=announcement.chat_id,
        message_id=announcement.message_id,
        title=announcement.title,
        content=announcement.content,
        priority=announcement.priority,
        audience=announcement.audience,
        is_active=announcement.is_active,
        is_pinned=announcement.is_pinned,
        expires_at=announcement.expires_at,
        created_by_id=announcement.created_by_id,
        created_at=announcement.created_at,
        total_recipients=announcement.total_recipients,
        read_count=len(announcement.receipts),
        read_percentage=announcements.read_percentage(announcement),
        is_read=announcements.is_read_by(announcement, current_user_id),
    )


@router.post("", response_model=AnnouncementRead, status_code=status.HTTP_201_CREATED)
def create_announcement(
    payload: AnnouncementCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> AnnouncementRead:
    draft = announcements.AnnouncementDraft(
        title=payload.title,
        content=payload.content,
        audience=payload.audience,
        priority=payload.priority,
        chat_id=payload.chat_id,
        target_user_ids=tuple(payload.target_user_ids),
        target_roles=tuple(payload.target_roles),
        expires_at=payload.expires_at,
        is_pinned=payload.is_pinned,
    )
    announcement = announcements.create_announcement(current_user.id, draft, db)
    return serialize_announcement(announcement, current_user.id)


@router.get("", response_model=list[AnnouncementRead])
def list_announcements(
    include_expired: bool = Query(default=False),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[AnnouncementRead]:
    """Active announcements addressed to the current user."""

    items = announcements.list_announcements_for_user(
        current_user.id, db, include_expired=include_expired
    )
    return [serialize_announcement(item, current_user.id) for item in items]


@router.get("/{announcement_id}", response_model=AnnouncementRead)
def get_announcement(
    announcement_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> AnnouncementRead:
    announcement = announcements.get_announcement_for_user(announcement_id, current_user.id, db)
    return serialize_announcement(announcement, current_user.id)


@router.post("/{announcement_id}/read", response_model=AnnouncementRead)
def mark_announcement_read(
    announcement_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> AnnouncementRead:
    announcement = announcements.mark_announcement_read(announcement_id, current_user.id, db)
    return serialize_announcement(announcement, current_user.id)


@router.delete("/{announcement_id}", response_model=AnnouncementRead)
def deactivate_announcement(
    announcement_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> AnnouncementRead:
    announcement = announcements.deactivate_announcement(announcement_id, current_user.id, db)
    return serialize_announcement(announcement, current_user.id)
