# src/chorus_chat/models/message.py
"""Models describing chat messages in communities and direct conversations."""

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from chorus_chat.db.session import Base
from chorus_chat.db.time import utcnow


class ChatMessage(Base):
    """Persisted chat message.

    Community messages carry ``community_id``; direct messages leave it NULL and
    are addressed by the unordered ``(sender_id, receiver_id)`` pair.
    """

    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_community_sent_at", "community_id", "sent_at"),
        Index("ix_messages_pair_sent_at", "sender_id", "receiver_id", "sent_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    sender_id: Mapped[str] = mapped_column(Text, nullable=False)
    community_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    receiver_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    # One of Text, Image, File.
    message_type: Mapped[str] = mapped_column(Text, nullable=False, default="Text")
    file_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    # The only column that may change after insert.
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def to_row(self) -> dict[str, object]:
        """Return the row as a plain mapping, the shape change feeds deliver."""
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "community_id": self.community_id,
            "receiver_id": self.receiver_id,
            "content": self.content,
            "message_type": self.message_type,
            "file_url": self.file_url,
            "sent_at": self.sent_at,
            "is_read": self.is_read,
        }
