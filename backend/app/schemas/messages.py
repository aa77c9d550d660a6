"""Schemas related to chat messages."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, constr

from app.models import DeleteScope, DeliveryStatus, MessageType


class MessageAuthor(BaseModel):
    """Lightweight author information for displaying messages."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    login: str
    display_name: str | None = None


class AttachmentIn(BaseModel):
    """Descriptor returned by the upload service."""

    url: constr(strip_whitespace=True, min_length=1, max_length=1024)
    format: constr(strip_whitespace=True, max_length=32) | None = None
    resource_type: constr(strip_whitespace=True, max_length=32) | None = None
    bytes: int = Field(0, ge=0)
    original_filename: constr(strip_whitespace=True, max_length=255) | None = None


class MentionIn(BaseModel):
    user_id: int
    start_index: int = Field(..., ge=0)
    end_index: int = Field(..., ge=1)


class MessageCreate(BaseModel):
    """Payload for appending a message to a chat."""

    content: str = ""
    message_type: MessageType = MessageType.TEXT
    attachments: list[AttachmentIn] = Field(default_factory=list)
    reply_to_message_id: int | None = None
    mentions: list[MentionIn] = Field(default_factory=list)
    payload: dict[str, Any] | None = Field(
        default=None, description="Typed payload matching the message type"
    )
    client_token: constr(strip_whitespace=True, min_length=1, max_length=64) | None = Field(
        default=None, description="Client generated idempotency key"
    )


class MessageUpdate(BaseModel):
    content: str
    mentions: list[MentionIn] | None = None


class ReactionRequest(BaseModel):
    emoji: constr(strip_whitespace=True, min_length=1, max_length=32)


class ForwardRequest(BaseModel):
    target_chat_id: int
    client_token: constr(strip_whitespace=True, min_length=1, max_length=64) | None = None


class PinRequest(BaseModel):
    reason: constr(strip_whitespace=True, max_length=255) | None = None


class MessageReactionSummary(BaseModel):
    """Aggregated reaction information for a message."""

    emoji: str = Field(..., description="Emoji identifier, e.g. :thumbsup:")
    count: int = Field(..., ge=0, description="Total reactions with the emoji")
    reacted: bool = Field(
        default=False,
        description="Indicates whether the current user added this reaction",
    )
    user_ids: list[int] = Field(
        default_factory=list,
        description="Identifiers of users who added this reaction",
    )


class MessageAttachmentRead(BaseModel):
    """Serialized representation of a message attachment."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    url: str
    format: str | None = None
    resource_type: str | None = None
    bytes: int = 0
    original_filename: str | None = None


class MessageMentionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    start_index: int
    end_index: int
    is_read: bool = False


class MessageRead(BaseModel):
    """Serialized representation of a chat message."""

    id: int
    chat_id: int
    sequence: int
    sender_id: int
    sender: MessageAuthor | None = None
    client_token: str | None = None
    content: str
    message_type: MessageType
    payload: dict[str, Any] | None = None
    delivery_status: DeliveryStatus
    reply_to_message_id: int | None = None
    reply_snapshot: dict[str, Any] | None = None
    forwarded_from: dict[str, Any] | None = None
    forward_chain: int = 0
    thread_id: int | None = None
    thread_replies_count: int = 0
    last_thread_reply: datetime | None = None
    is_pinned: bool = False
    pinned_by_id: int | None = None
    pinned_at: datetime | None = None
    pinned_reason: str | None = None
    is_edited: bool = False
    edited_at: datetime | None = None
    is_deleted: bool = False
    deleted_for: DeleteScope = DeleteScope.NONE
    deleted_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    attachments: list[MessageAttachmentRead] = Field(default_factory=list)
    mentions: list[MessageMentionRead] = Field(default_factory=list)
    reactions: list[MessageReactionSummary] = Field(default_factory=list)


class MessageGroupRead(BaseModel):
    """Consecutive messages rendered under one sender header."""

    sender_id: int
    continues_previous: bool = False
    unread_count: int = 0
    started_at: datetime
    ended_at: datetime
    messages: list[MessageRead] = Field(default_factory=list)


class ThreadRead(BaseModel):
    root: MessageRead
    replies: list[MessageRead] = Field(default_factory=list)


class PollVoteRequest(BaseModel):
    option_indexes: list[int] = Field(..., description="Zero-based indexes of the chosen options")


class PollOptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    index: int
    text: str
    vote_count: int = 0
    voter_ids: list[int] = Field(
        default_factory=list, description="Empty when the poll is anonymous"
    )
    selected: bool = False


class PollRead(BaseModel):
    """Current state and tallies of a poll message."""

    model_config = ConfigDict(from_attributes=True)

    message_id: int
    question: str
    allow_multiple: bool
    is_anonymous: bool
    is_open: bool
    expires_at: datetime | None = None
    closed_at: datetime | None = None
    total_votes: int = 0
    total_voters: int = 0
    options: list[PollOptionRead] = Field(default_factory=list)
