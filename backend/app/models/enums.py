from __future__ import annotations

from enum import Enum


class ChatType(str, Enum):
    """Kinds of conversation containers."""

    DIRECT = "direct"
    GROUP = "group"
    CHANNEL = "channel"
    ANNOUNCEMENT = "announcement"


class ParticipantRole(str, Enum):
    """Roles that a user can have inside a chat."""

    OWNER = "owner"
    ADMIN = "admin"
    MODERATOR = "moderator"
    MEMBER = "member"
    GUEST = "guest"


class ChatPermission(str, Enum):
    """Granular permissions held by a chat participant."""

    SEND_MESSAGES = "send_messages"
    SEND_ATTACHMENTS = "send_attachments"
    DELETE_OWN_MESSAGES = "delete_own_messages"
    DELETE_ANY_MESSAGES = "delete_any_messages"
    EDIT_OWN_MESSAGES = "edit_own_messages"
    EDIT_ANY_MESSAGES = "edit_any_messages"
    PIN_MESSAGES = "pin_messages"
    REACT_TO_MESSAGES = "react_to_messages"
    MENTION_USERS = "mention_users"
    ADD_PARTICIPANTS = "add_participants"
    REMOVE_PARTICIPANTS = "remove_participants"
    EDIT_CHAT_INFO = "edit_chat_info"
    MANAGE_PERMISSIONS = "manage_permissions"
    CREATE_ANNOUNCEMENTS = "create_announcements"


class MessageType(str, Enum):
    """Content kinds a message can carry."""

    TEXT = "text"
    IMAGE = "image"
    DOCUMENT = "document"
    AUDIO = "audio"
    VIDEO = "video"
    LINK = "link"
    LOCATION = "location"
    CONTACT = "contact"
    SYSTEM = "system"
    ANNOUNCEMENT = "announcement"
    POLL = "poll"
    EVENT = "event"


class DeliveryStatus(str, Enum):
    """Position of a message in the delivery state machine."""

    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class DeleteScope(str, Enum):
    """Visibility of a message deletion."""

    NONE = "none"
    SENDER = "sender"
    EVERYONE = "everyone"


class AnnouncementPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class AnnouncementAudience(str, Enum):
    """Who receives an announcement."""

    EVERYONE = "everyone"
    SPECIFIC = "specific"
    ROLE_BASED = "role_based"
    CHAT_MEMBERS = "chat_members"
