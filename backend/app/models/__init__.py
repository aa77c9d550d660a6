"""Database models package."""

from .base import Base
from .chat import (
    Announcement,
    AnnouncementReceipt,
    Chat,
    ChatParticipant,
    Message,
    MessageAttachment,
    MessageEdit,
    MessageMention,
    MessageReaction,
    MessageReceipt,
    PollVote,
    User,
    decode_permissions,
    encode_permissions,
)
from .chat_settings import ChatSettings
from .enums import (
    AnnouncementAudience,
    AnnouncementPriority,
    ChatPermission,
    ChatType,
    DeleteScope,
    DeliveryStatus,
    MessageType,
    ParticipantRole,
)

__all__ = [
    "Base",
    "User",
    "Chat",
    "ChatParticipant",
    "ChatSettings",
    "Message",
    "MessageAttachment",
    "MessageEdit",
    "MessageMention",
    "MessageReaction",
    "MessageReceipt",
    "PollVote",
    "Announcement",
    "AnnouncementReceipt",
    "AnnouncementAudience",
    "AnnouncementPriority",
    "ChatPermission",
    "ChatType",
    "DeleteScope",
    "DeliveryStatus",
    "MessageType",
    "ParticipantRole",
    "decode_permissions",
    "encode_permissions",
]
