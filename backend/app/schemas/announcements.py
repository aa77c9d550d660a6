"""Schemas for announcements and their read statistics."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, constr

from app.models import AnnouncementAudience, AnnouncementPriority


class AnnouncementCreate(BaseModel):
    title: constr(strip_whitespace=True, min_length=1, max_length=200)
    content: constr(strip_whitespace=True, min_length=1, max_length=2000)
    priority: AnnouncementPriority = AnnouncementPriority.NORMAL
    audience: AnnouncementAudience = AnnouncementAudience.EVERYONE
    chat_id: int | None = Field(default=None, description="Chat to post the announcement into")
    target_user_ids: list[int] = Field(default_factory=list)
    target_roles: list[str] = Field(default_factory=list)
    expires_at: datetime | None = None
    is_pinned: bool = False


class AnnouncementRead(BaseModel):
    id: int
    chat_id: int | None = None
    message_id: int | None = None
    title: str
    content: str
    priority: AnnouncementPriority
    audience: AnnouncementAudience
    is_active: bool
    is_pinned: bool
    expires_at: datetime | None = None
    created_by_id: int | None = None
    created_at: datetime
    total_recipients: int = 0
    read_count: int = 0
    read_percentage: int = Field(0, ge=0, le=100)
    is_read: bool = False
