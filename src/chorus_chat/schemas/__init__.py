# src/chorus_chat/schemas/__init__.py
"""
Pydantic schemas for the synchronization engine and its API.

These schemas define the structure of message data for validation and serialization.
"""

from .channel import ChannelSnapshot, ChannelStatus, OpenChannelRequest, SendMessageResponse
from .message import (
    ChangeEvent,
    ChangeOperation,
    DeliveryStatus,
    HistoryCursor,
    Message,
    MessageDraft,
    MessageKind,
)

__all__ = [
    "ChannelSnapshot", "ChannelStatus", "OpenChannelRequest", "SendMessageResponse",
    "ChangeEvent", "ChangeOperation",
    "DeliveryStatus", "HistoryCursor",
    "Message", "MessageDraft", "MessageKind",
]
