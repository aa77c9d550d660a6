"""create chat tables

Revision ID: 20250301_01
Revises:
Create Date: 2025-03-01 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20250301_01"
down_revision = None
branch_labels = None
depends_on = None


CHAT_TYPE = sa.Enum("direct", "group", "channel", "announcement", name="chat_type")
PARTICIPANT_ROLE = sa.Enum("owner", "admin", "moderator", "member", "guest", name="participant_role")
MESSAGE_TYPE = sa.Enum(
    "text",
    "image",
    "document",
    "audio",
    "video",
    "link",
    "location",
    "contact",
    "system",
    "announcement",
    "poll",
    "event",
    name="message_type",
)
DELIVERY_STATUS = sa.Enum("sending", "sent", "delivered", "read", "failed", name="delivery_status")
DELETE_SCOPE = sa.Enum("none", "sender", "everyone", name="delete_scope")
ANNOUNCEMENT_PRIORITY = sa.Enum("low", "normal", "high", "urgent", name="announcement_priority")
ANNOUNCEMENT_AUDIENCE = sa.Enum(
    "everyone", "specific", "role_based", "chat_members", name="announcement_audience"
)


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=None if nullable else sa.func.now(),
        nullable=nullable,
    )


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("login", sa.String(length=64), nullable=False, unique=True),
        sa.Column("display_name", sa.String(length=128), nullable=True),
        sa.Column("org_role", sa.String(length=64), nullable=False, server_default="member"),
        _timestamp("created_at"),
        mysql_charset="utf8mb4",
    )

    op.create_table(
        "chats",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=128), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("chat_type", CHAT_TYPE, nullable=False),
        sa.Column("created_by_id", sa.Integer(), nullable=True),
        sa.Column("direct_user_a_id", sa.Integer(), nullable=True),
        sa.Column("direct_user_b_id", sa.Integer(), nullable=True),
        sa.Column("last_sequence", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("last_activity"),
        sa.Column("settings", sa.JSON(), nullable=False),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("archived_at", nullable=True),
        sa.Column("is_pinned", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("pinned_by_id", sa.Integer(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["created_by_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["direct_user_a_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["direct_user_b_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["pinned_by_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("direct_user_a_id", "direct_user_b_id", name="uq_chat_direct_pair"),
        mysql_charset="utf8mb4",
    )
    op.create_index("ix_chats_last_activity", "chats", ["last_activity"])

    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("chat_id", sa.Integer(), nullable=False),
        sa.Column("sender_id", sa.Integer(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("client_token", sa.String(length=64), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("message_type", MESSAGE_TYPE, nullable=False, server_default="text"),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("delivery_status", DELIVERY_STATUS, nullable=False, server_default="sent"),
        sa.Column("reply_to_message_id", sa.Integer(), nullable=True),
        sa.Column("reply_snapshot", sa.JSON(), nullable=True),
        sa.Column("forwarded_from", sa.JSON(), nullable=True),
        sa.Column("forward_chain", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_pinned", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("pinned_by_id", sa.Integer(), nullable=True),
        _timestamp("pinned_at", nullable=True),
        sa.Column("pinned_reason", sa.String(length=255), nullable=True),
        sa.Column("is_edited", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("edited_at", nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("deleted_at", nullable=True),
        sa.Column("deleted_by_id", sa.Integer(), nullable=True),
        sa.Column("deleted_for", DELETE_SCOPE, nullable=False, server_default="none"),
        sa.Column("thread_id", sa.Integer(), nullable=True),
        sa.Column("thread_replies_count", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("last_thread_reply", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["chat_id"], ["chats.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["sender_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["reply_to_message_id"], ["messages.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["thread_id"], ["messages.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["pinned_by_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["deleted_by_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("chat_id", "sequence", name="uq_message_chat_sequence"),
        sa.UniqueConstraint("chat_id", "sender_id", "client_token", name="uq_message_client_token"),
        mysql_charset="utf8mb4",
    )
    op.create_index("ix_messages_thread", "messages", ["thread_id"])

    op.create_table(
        "chat_participants",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("chat_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("role", PARTICIPANT_ROLE, nullable=False, server_default="member"),
        sa.Column("permissions_mask", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("joined_at"),
        _timestamp("left_at", nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_muted", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("muted_until", nullable=True),
        sa.Column("last_read_message_id", sa.Integer(), nullable=True),
        sa.Column("last_read_sequence", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("last_read_at", nullable=True),
        _timestamp("last_seen_at", nullable=True),
        sa.ForeignKeyConstraint(["chat_id"], ["chats.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["last_read_message_id"], ["messages.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("chat_id", "user_id", name="uq_chat_participant"),
        mysql_charset="utf8mb4",
    )

    op.create_table(
        "message_attachments",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("message_id", sa.Integer(), nullable=False),
        sa.Column("url", sa.String(length=1024), nullable=False),
        sa.Column("format", sa.String(length=32), nullable=True),
        sa.Column("resource_type", sa.String(length=32), nullable=True),
        sa.Column("bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("original_filename", sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(["message_id"], ["messages.id"], ondelete="CASCADE"),
        mysql_charset="utf8mb4",
    )

    op.create_table(
        "message_edits",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("message_id", sa.Integer(), nullable=False),
        sa.Column("editor_id", sa.Integer(), nullable=True),
        sa.Column("previous_content", sa.Text(), nullable=False),
        sa.Column("new_content", sa.Text(), nullable=False),
        _timestamp("edited_at"),
        sa.ForeignKeyConstraint(["message_id"], ["messages.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["editor_id"], ["users.id"], ondelete="SET NULL"),
        mysql_charset="utf8mb4",
    )

    op.create_table(
        "message_reactions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("message_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("emoji", sa.String(length=32), nullable=False),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["message_id"], ["messages.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("message_id", "user_id", "emoji", name="uq_message_reaction"),
        mysql_charset="utf8mb4",
    )

    op.create_table(
        "message_receipts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("message_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        _timestamp("delivered_at", nullable=True),
        _timestamp("read_at", nullable=True),
        sa.ForeignKeyConstraint(["message_id"], ["messages.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("message_id", "user_id", name="uq_message_receipt"),
        mysql_charset="utf8mb4",
    )
    op.create_index("ix_receipts_user", "message_receipts", ["user_id"])

    op.create_table(
        "message_mentions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("message_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("start_index", sa.Integer(), nullable=False),
        sa.Column("end_index", sa.Integer(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("read_at", nullable=True),
        sa.ForeignKeyConstraint(["message_id"], ["messages.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("message_id", "user_id", "start_index", name="uq_message_mention"),
        mysql_charset="utf8mb4",
    )

    op.create_table(
        "announcements",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("chat_id", sa.Integer(), nullable=True),
        sa.Column("message_id", sa.Integer(), nullable=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("priority", ANNOUNCEMENT_PRIORITY, nullable=False, server_default="normal"),
        sa.Column("audience", ANNOUNCEMENT_AUDIENCE, nullable=False),
        sa.Column("target_user_ids", sa.JSON(), nullable=False),
        sa.Column("target_roles", sa.JSON(), nullable=False),
        sa.Column("recipient_ids", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_pinned", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("expires_at", nullable=True),
        sa.Column("created_by_id", sa.Integer(), nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["chat_id"], ["chats.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["message_id"], ["messages.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["created_by_id"], ["users.id"], ondelete="SET NULL"),
        mysql_charset="utf8mb4",
    )

    op.create_table(
        "announcement_receipts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("announcement_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        _timestamp("read_at"),
        sa.ForeignKeyConstraint(["announcement_id"], ["announcements.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("announcement_id", "user_id", name="uq_announcement_receipt"),
        mysql_charset="utf8mb4",
    )


def downgrade() -> None:
    op.drop_table("announcement_receipts")
    op.drop_table("announcements")
    op.drop_table("message_mentions")
    op.drop_index("ix_receipts_user", table_name="message_receipts")
    op.drop_table("message_receipts")
    op.drop_table("message_reactions")
    op.drop_table("message_edits")
    op.drop_table("message_attachments")
    op.drop_table("chat_participants")
    op.drop_index("ix_messages_thread", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_chats_last_activity", table_name="chats")
    op.drop_table("chats")
    op.drop_table("users")

    bind = op.get_bind()
    for enum in (
        ANNOUNCEMENT_AUDIENCE,
        ANNOUNCEMENT_PRIORITY,
        DELETE_SCOPE,
        DELIVERY_STATUS,
        MESSAGE_TYPE,
        PARTICIPANT_ROLE,
        CHAT_TYPE,
    ):
        enum.drop(bind, checkfirst=True)
