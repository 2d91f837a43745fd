# src/chorus_chat/schemas/channel.py
"""Channel state and channel API schemas."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, model_validator

from .message import DeliveryStatus, Message


class ChannelStatus(str, Enum):
    """Lifecycle state of one open channel."""

    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"
    CLOSED = "closed"


class ChannelSnapshot(BaseModel):
    """Read-only view of a channel handed to the UI layer."""

    channel_key: str
    status: ChannelStatus
    messages: list[Message] = Field(default_factory=list)
    error: str | None = None
    has_older: bool = True


class OpenChannelRequest(BaseModel):
    """Schema for opening a community or direct channel."""

    community_id: int | None = Field(None, description="Community to open")
    peer_ids: tuple[str, str] | None = Field(
        None,
        description="The two participants of a direct conversation, in any order",
    )

    @model_validator(mode="after")
    def _exactly_one(self) -> OpenChannelRequest:
        if (self.community_id is None) == (self.peer_ids is None):
            raise ValueError("Provide exactly one of community_id or peer_ids")
        return self


class SendMessageResponse(BaseModel):
    """Outcome of an optimistic send once its write has resolved."""

    channel_key: str
    status: DeliveryStatus
    message: Message | None = None
