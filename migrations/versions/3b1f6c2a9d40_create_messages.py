"""create messages

Revision ID: 3b1f6c2a9d40
Revises:
Create Date: 2026-10-18 09:12:41.512300

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "3b1f6c2a9d40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the chat message table."""
    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("sender_id", sa.Text(), nullable=False),
        sa.Column("community_id", sa.BigInteger(), nullable=True),
        sa.Column("receiver_id", sa.Text(), nullable=True),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("message_type", sa.Text(), nullable=False, server_default="Text"),
        sa.Column("file_url", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_messages_community_sent_at", "messages", ["community_id", "sent_at"]
    )
    op.create_index(
        "ix_messages_pair_sent_at", "messages", ["sender_id", "receiver_id", "sent_at"]
    )


def downgrade() -> None:
    """Drop the chat message table."""
    op.drop_index("ix_messages_pair_sent_at", table_name="messages")
    op.drop_index("ix_messages_community_sent_at", table_name="messages")
    op.drop_table("messages")
