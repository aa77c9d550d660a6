"""Schemas for conversations, participants and read state."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, constr

from app.models import ChatPermission, ChatSettings, ChatType, ParticipantRole


class ChatUserRead(BaseModel):
    """Minimal user card embedded in chat payloads."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    login: str
    display_name: str | None = None


class ParticipantRead(BaseModel):
    user_id: int
    user: ChatUserRead | None = None
    role: ParticipantRole
    permissions: list[ChatPermission] = Field(default_factory=list)
    is_active: bool
    is_muted: bool
    muted_until: datetime | None = None
    joined_at: datetime
    left_at: datetime | None = None
    last_read_message_id: int | None = None
    last_read_sequence: int = 0
    last_seen_at: datetime | None = None


class ChatCreate(BaseModel):
    """Payload for opening a conversation."""

    chat_type: ChatType = Field(..., description="direct, group, channel or announcement")
    participant_ids: list[int] = Field(
        default_factory=list, description="Users to include besides the creator"
    )
    name: constr(strip_whitespace=True, max_length=128) | None = None
    description: constr(strip_whitespace=True, max_length=2000) | None = None
    settings: ChatSettings | None = None


class ChatUpdate(BaseModel):
    name: constr(strip_whitespace=True, min_length=1, max_length=128) | None = None
    description: constr(strip_whitespace=True, max_length=2000) | None = None


class ChatRead(BaseModel):
    id: int
    name: str | None = None
    description: str | None = None
    chat_type: ChatType
    created_by_id: int | None = None
    last_sequence: int
    last_activity: datetime
    is_archived: bool
    archived_at: datetime | None = None
    is_pinned: bool
    settings: ChatSettings
    created_at: datetime
    updated_at: datetime
    participants: list[ParticipantRead] = Field(default_factory=list)


class ChatSummary(BaseModel):
    """Row of the conversation list."""

    id: int
    name: str | None = None
    chat_type: ChatType
    last_sequence: int
    last_activity: datetime
    is_archived: bool
    is_pinned: bool
    is_muted: bool = False
    unread_count: int = Field(0, ge=0)
    unread_mentions: int = Field(0, ge=0)


class ParticipantAdd(BaseModel):
    user_id: int
    role: ParticipantRole = ParticipantRole.MEMBER


class ParticipantUpdate(BaseModel):
    role: ParticipantRole | None = None
    permissions: list[ChatPermission] | None = Field(
        default=None, description="Explicit permission set replacing the role defaults"
    )


class MuteRequest(BaseModel):
    until: datetime | None = Field(default=None, description="Mute expiry; omit to mute indefinitely")


class ReadRequest(BaseModel):
    last_message_id: int


class DeliveredRequest(BaseModel):
    message_ids: list[int] = Field(default_factory=list)


class ReadStateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    chat_id: int
    user_id: int
    last_read_message_id: int | None = None
    last_read_sequence: int = 0
    unread_count: int = 0
    unread_mentions: int = 0
