"""add poll votes

Revision ID: 20250315_02
Revises: 20250301_01
Create Date: 2025-03-15 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20250315_02"
down_revision = "20250301_01"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "poll_votes",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("message_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("option_index", sa.Integer(), nullable=False),
        sa.Column(
            "voted_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.ForeignKeyConstraint(["message_id"], ["messages.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("message_id", "user_id", "option_index", name="uq_poll_vote"),
        mysql_charset="utf8mb4",
    )


def downgrade() -> None:
    op.drop_table("poll_votes")
