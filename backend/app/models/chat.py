from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from pydantic import BaseModel
from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.clock import as_utc, utcnow
from app.models.base import Base
from app.models.chat_settings import ChatSettings
from app.models.enums import (
    AnnouncementAudience,
    AnnouncementPriority,
    ChatPermission,
    ChatType,
    DeleteScope,
    DeliveryStatus,
    MessageType,
    ParticipantRole,
)
from app.models.payloads import parse_payload

_PERMISSION_BIT_VALUES: dict[ChatPermission, int] = {
    permission: 1 << index for index, permission in enumerate(ChatPermission)
}


def encode_permissions(permissions: Iterable[ChatPermission]) -> int:
    """Convert a collection of permissions into a bitmask."""

    mask = 0
    for permission in permissions:
        mask |= _PERMISSION_BIT_VALUES[ChatPermission(permission)]
    return mask


def decode_permissions(mask: int) -> list[ChatPermission]:
    """Expand a bitmask back into a list of permissions."""

    values: list[ChatPermission] = []
    for permission, bit in _PERMISSION_BIT_VALUES.items():
        if mask & bit:
            values.append(permission)
    return values


def _enum(enum_cls: type, name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


class User(Base):
    """Portal user as provisioned by the identity service."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    login: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(128))
    org_role: Mapped[str] = mapped_column(String(64), default="member", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    participations: Mapped[list["ChatParticipant"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    @property
    def name(self) -> str:
        return self.display_name or self.login


class Chat(Base):
    """Conversation container."""

    __tablename__ = "chats"
    __table_args__ = (
        UniqueConstraint("direct_user_a_id", "direct_user_b_id", name="uq_chat_direct_pair"),
        Index("ix_chats_last_activity", "last_activity"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str | None] = mapped_column(String(128))
    description: Mapped[str | None] = mapped_column(Text)
    chat_type: Mapped[ChatType] = mapped_column(_enum(ChatType, "chat_type"), nullable=False)
    created_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    direct_user_a_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    direct_user_b_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    last_sequence: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_activity: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    settings_data: Mapped[dict[str, Any]] = mapped_column(
        "settings", JSON, default=dict, nullable=False
    )
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_pinned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    pinned_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    participants: Mapped[list["ChatParticipant"]] = relationship(
        back_populates="chat", cascade="all, delete-orphan", order_by="ChatParticipant.id"
    )
    messages: Mapped[list["Message"]] = relationship(
        back_populates="chat", cascade="all, delete-orphan", order_by="Message.sequence"
    )

    @property
    def settings(self) -> ChatSettings:
        return ChatSettings.model_validate(self.settings_data or {})

    @settings.setter
    def settings(self, value: ChatSettings) -> None:
        self.settings_data = value.model_dump()

    @property
    def active_participants(self) -> list["ChatParticipant"]:
        return [participant for participant in self.participants if participant.is_active]


class ChatParticipant(Base):
    """Membership of a user in a chat with role, permissions and read cursor."""

    __tablename__ = "chat_participants"
    __table_args__ = (UniqueConstraint("chat_id", "user_id", name="uq_chat_participant"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    chat_id: Mapped[int] = mapped_column(ForeignKey("chats.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role: Mapped[ParticipantRole] = mapped_column(
        _enum(ParticipantRole, "participant_role"), default=ParticipantRole.MEMBER, nullable=False
    )
    permissions_mask: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    left_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_muted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    muted_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_read_message_id: Mapped[int | None] = mapped_column(
        ForeignKey("messages.id", ondelete="SET NULL")
    )
    last_read_sequence: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    chat: Mapped[Chat] = relationship(back_populates="participants")
    user: Mapped[User] = relationship(back_populates="participations")

    @property
    def permissions(self) -> set[ChatPermission]:
        return set(decode_permissions(self.permissions_mask or 0))

    @permissions.setter
    def permissions(self, value: Iterable[ChatPermission]) -> None:
        self.permissions_mask = encode_permissions(value)

    def has_permission(self, permission: ChatPermission) -> bool:
        return bool((self.permissions_mask or 0) & _PERMISSION_BIT_VALUES[permission])

    def muted_at(self, moment: datetime) -> bool:
        """Return whether notifications are muted at *moment*, honouring expiry."""

        if not self.is_muted:
            return False
        until = as_utc(self.muted_until)
        return until is None or until > moment


class Message(Base):
    """Entry of a chat's append-only message log."""

    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("chat_id", "sequence", name="uq_message_chat_sequence"),
        UniqueConstraint("chat_id", "sender_id", "client_token", name="uq_message_client_token"),
        Index("ix_messages_thread", "thread_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    chat_id: Mapped[int] = mapped_column(ForeignKey("chats.id", ondelete="CASCADE"), nullable=False)
    sender_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    client_token: Mapped[str | None] = mapped_column(String(64))
    content: Mapped[str] = mapped_column(Text, default="", nullable=False)
    message_type: Mapped[MessageType] = mapped_column(
        _enum(MessageType, "message_type"), default=MessageType.TEXT, nullable=False
    )
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    delivery_status: Mapped[DeliveryStatus] = mapped_column(
        _enum(DeliveryStatus, "delivery_status"), default=DeliveryStatus.SENT, nullable=False
    )
    reply_to_message_id: Mapped[int | None] = mapped_column(
        ForeignKey("messages.id", ondelete="SET NULL")
    )
    reply_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    forwarded_from: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    forward_chain: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_pinned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    pinned_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    pinned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    pinned_reason: Mapped[str | None] = mapped_column(String(255))
    is_edited: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    edited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    deleted_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    deleted_for: Mapped[DeleteScope] = mapped_column(
        _enum(DeleteScope, "delete_scope"), default=DeleteScope.NONE, nullable=False
    )
    thread_id: Mapped[int | None] = mapped_column(ForeignKey("messages.id", ondelete="SET NULL"))
    thread_replies_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_thread_reply: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    chat: Mapped[Chat] = relationship(back_populates="messages")
    sender: Mapped[User] = relationship(foreign_keys=[sender_id])
    attachments: Mapped[list["MessageAttachment"]] = relationship(
        back_populates="message", cascade="all, delete-orphan", order_by="MessageAttachment.id"
    )
    reactions: Mapped[list["MessageReaction"]] = relationship(
        back_populates="message", cascade="all, delete-orphan", order_by="MessageReaction.id"
    )
    receipts: Mapped[list["MessageReceipt"]] = relationship(
        back_populates="message", cascade="all, delete-orphan"
    )
    mentions: Mapped[list["MessageMention"]] = relationship(
        back_populates="message", cascade="all, delete-orphan", order_by="MessageMention.start_index"
    )
    edits: Mapped[list["MessageEdit"]] = relationship(
        back_populates="message", cascade="all, delete-orphan", order_by="MessageEdit.id"
    )

    @property
    def typed_payload(self) -> BaseModel | None:
        if self.payload is None:
            return None
        return parse_payload(self.message_type, self.payload)

    @property
    def is_deleted_for_everyone(self) -> bool:
        return self.deleted_for == DeleteScope.EVERYONE

    def is_visible_to(self, user_id: int) -> bool:
        """Tombstones for everyone stay visible; sender-only deletes hide from the author."""

        return not (self.deleted_for == DeleteScope.SENDER and self.sender_id == user_id)


class MessageAttachment(Base):
    """Opaque descriptor returned by the upload service."""

    __tablename__ = "message_attachments"

    id: Mapped[int] = mapped_column(primary_key=True)
    message_id: Mapped[int] = mapped_column(
        ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    url: Mapped[str] = mapped_column(String(1024), nullable=False)
    format: Mapped[str | None] = mapped_column(String(32))
    resource_type: Mapped[str | None] = mapped_column(String(32))
    bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    original_filename: Mapped[str | None] = mapped_column(String(255))

    message: Mapped[Message] = relationship(back_populates="attachments")


class MessageEdit(Base):
    """Single entry of a message's edit history."""

    __tablename__ = "message_edits"

    id: Mapped[int] = mapped_column(primary_key=True)
    message_id: Mapped[int] = mapped_column(
        ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    editor_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    previous_content: Mapped[str] = mapped_column(Text, nullable=False)
    new_content: Mapped[str] = mapped_column(Text, nullable=False)
    edited_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    message: Mapped[Message] = relationship(back_populates="edits")


class MessageReaction(Base):
    """Reaction left by a user on a message."""

    __tablename__ = "message_reactions"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", "emoji", name="uq_message_reaction"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    message_id: Mapped[int] = mapped_column(
        ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    emoji: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    message: Mapped[Message] = relationship(back_populates="reactions")


class MessageReceipt(Base):
    """Delivery and read receipt of a message for a specific user."""

    __tablename__ = "message_receipts"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_message_receipt"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    message_id: Mapped[int] = mapped_column(
        ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    message: Mapped[Message] = relationship(back_populates="receipts")


class MessageMention(Base):
    """Mention of a user inside a message's content."""

    __tablename__ = "message_mentions"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", "start_index", name="uq_message_mention"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    message_id: Mapped[int] = mapped_column(
        ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    start_index: Mapped[int] = mapped_column(Integer, nullable=False)
    end_index: Mapped[int] = mapped_column(Integer, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    message: Mapped[Message] = relationship(back_populates="mentions")


class PollVote(Base):
    """Choice of one option of a poll message by a user."""

    __tablename__ = "poll_votes"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", "option_index", name="uq_poll_vote"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    message_id: Mapped[int] = mapped_column(
        ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    option_index: Mapped[int] = mapped_column(Integer, nullable=False)
    voted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class Announcement(Base):
    """Broadcast notice, either global or scoped to a chat."""

    __tablename__ = "announcements"

    id: Mapped[int] = mapped_column(primary_key=True)
    chat_id: Mapped[int | None] = mapped_column(ForeignKey("chats.id", ondelete="SET NULL"))
    message_id: Mapped[int | None] = mapped_column(ForeignKey("messages.id", ondelete="SET NULL"))
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[AnnouncementPriority] = mapped_column(
        _enum(AnnouncementPriority, "announcement_priority"),
        default=AnnouncementPriority.NORMAL,
        nullable=False,
    )
    audience: Mapped[AnnouncementAudience] = mapped_column(
        _enum(AnnouncementAudience, "announcement_audience"), nullable=False
    )
    target_user_ids: Mapped[list[int]] = mapped_column(JSON, default=list, nullable=False)
    target_roles: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    recipient_ids: Mapped[list[int]] = mapped_column(JSON, default=list, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_pinned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    receipts: Mapped[list["AnnouncementReceipt"]] = relationship(
        back_populates="announcement", cascade="all, delete-orphan"
    )

    @property
    def total_recipients(self) -> int:
        return len(self.recipient_ids or [])

    def is_expired(self, moment: datetime) -> bool:
        expires_at = as_utc(self.expires_at)
        return expires_at is not None and expires_at <= moment


class AnnouncementReceipt(Base):
    __tablename__ = "announcement_receipts"
    __table_args__ = (
        UniqueConstraint("announcement_id", "user_id", name="uq_announcement_receipt"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    announcement_id: Mapped[int] = mapped_column(
        ForeignKey("announcements.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    read_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    announcement: Mapped[Announcement] = relationship(back_populates="receipts")
