"""Pydantic schemas for API payloads."""

from .announcements import AnnouncementCreate, AnnouncementRead
from .chats import (
    ChatCreate,
    ChatRead,
    ChatSummary,
    ChatUpdate,
    ChatUserRead,
    DeliveredRequest,
    MuteRequest,
    ParticipantAdd,
    ParticipantRead,
    ParticipantUpdate,
    ReadRequest,
    ReadStateRead,
)
from .messages import (
    AttachmentIn,
    ForwardRequest,
    MentionIn,
    MessageAttachmentRead,
    MessageAuthor,
    MessageCreate,
    MessageGroupRead,
    MessageMentionRead,
    MessageRead,
    MessageReactionSummary,
    MessageUpdate,
    PinRequest,
    PollOptionRead,
    PollRead,
    PollVoteRequest,
    ReactionRequest,
    ThreadRead,
)

__all__ = [
    "AnnouncementCreate",
    "AnnouncementRead",
    "ChatCreate",
    "ChatRead",
    "ChatSummary",
    "ChatUpdate",
    "ChatUserRead",
    "DeliveredRequest",
    "MuteRequest",
    "ParticipantAdd",
    "ParticipantRead",
    "ParticipantUpdate",
    "ReadRequest",
    "ReadStateRead",
    "AttachmentIn",
    "ForwardRequest",
    "MentionIn",
    "MessageAttachmentRead",
    "MessageAuthor",
    "MessageCreate",
    "MessageGroupRead",
    "MessageMentionRead",
    "MessageRead",
    "MessageReactionSummary",
    "MessageUpdate",
    "PinRequest",
    "PollOptionRead",
    "PollRead",
    "PollVoteRequest",
    "ReactionRequest",
    "ThreadRead",
]
