# src/chorus_chat/schemas/message.py
"""Message-related Pydantic schemas."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from chorus_chat.db.time import as_utc

# Fields a persisted message may still change; everything else is immutable.
MUTABLE_FIELDS: frozenset[str] = frozenset({"is_read"})

DEFAULT_ATTACHMENT_CONTENT = "Sent an attachment"

_IMAGE_URL_PATTERN = re.compile(r"\.(jpg|jpeg|png|gif|webp|svg)($|\?)", re.IGNORECASE)


class MessageKind(str, Enum):
    """Kind tag of a message."""

    TEXT = "Text"
    IMAGE = "Image"
    FILE = "File"


class DeliveryStatus(str, Enum):
    """Client-side delivery status. Never persisted."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ChangeOperation(str, Enum):
    """Kinds of change notification a live feed delivers."""

    INSERT = "insert"
    UPDATE = "update"


def infer_attachment_kind(file_url: str) -> MessageKind:
    """Return ``Image`` for URLs that look like images, ``File`` otherwise."""
    if _IMAGE_URL_PATTERN.search(file_url):
        return MessageKind.IMAGE
    return MessageKind.FILE


class Message(BaseModel):
    """A message entry in a channel log.

    Canonical entries carry the positive id assigned by persistence; optimistic
    entries carry a negative temporary id until reconciled.
    """

    id: int
    channel_key: str
    sender_id: str
    community_id: int | None = None
    receiver_id: str | None = None
    content: str = ""
    message_type: MessageKind = MessageKind.TEXT
    file_url: str | None = None
    sent_at: datetime
    is_read: bool = False
    status: DeliveryStatus = DeliveryStatus.CONFIRMED

    model_config = ConfigDict(from_attributes=True)

    @field_validator("sent_at")
    @classmethod
    def _normalize_sent_at(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def sort_key(self) -> tuple[datetime, int]:
        """Total order of a channel log: ``(sent_at, id)`` ascending."""
        return (self.sent_at, self.id)

    @property
    def is_temporary(self) -> bool:
        return self.id < 0

    def to_record(self) -> dict[str, Any]:
        """Return the persistable fields, without identity or client-side status."""
        return {
            "sender_id": self.sender_id,
            "community_id": self.community_id,
            "receiver_id": self.receiver_id,
            "content": self.content,
            "message_type": self.message_type.value,
            "file_url": self.file_url,
            "sent_at": self.sent_at,
            "is_read": self.is_read,
        }


class MessageDraft(BaseModel):
    """Schema for a locally composed message before it is sent."""

    sender_id: str = Field(..., min_length=1, description="Id of the sending user")
    content: str = Field("", description="Message text, or a caption for attachments")
    message_type: MessageKind | None = Field(
        None,
        description="Explicit kind; inferred from file_url when omitted",
    )
    file_url: str | None = Field(None, description="URL of an uploaded image or file")

    @model_validator(mode="after")
    def _check_kind(self) -> MessageDraft:
        self.content = self.content.strip()
        if self.message_type is None:
            self.message_type = (
                infer_attachment_kind(self.file_url) if self.file_url else MessageKind.TEXT
            )
        if self.message_type is MessageKind.TEXT:
            if not self.content:
                raise ValueError("Text messages require content")
        else:
            if not self.file_url:
                raise ValueError(f"{self.message_type.value} messages require file_url")
            if not self.content:
                self.content = DEFAULT_ATTACHMENT_CONTENT
        return self


@dataclass(frozen=True)
class HistoryCursor:
    """Position in a channel log used for paging.

    With ``id`` set, the cursor is the exact ``(sent_at, id)`` of an entry and
    comparisons are strict. With ``id`` None it marks a timestamp, inclusive.
    """

    sent_at: datetime
    id: int | None = None

    @classmethod
    def of(cls, message: Message) -> HistoryCursor:
        return cls(sent_at=message.sent_at, id=message.id)


class ChangeEvent(BaseModel):
    """A decoded live-feed notification for one channel."""

    operation: ChangeOperation
    message_id: int
    # Set for inserts.
    message: Message | None = None
    # Set for updates; restricted to MUTABLE_FIELDS.
    changes: dict[str, Any] = Field(default_factory=dict)
