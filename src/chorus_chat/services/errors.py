"""Error taxonomy for the conversation synchronization engine.

Duplicate delivery is not represented here: it is routine and handled
silently by the merge engine.
"""

from __future__ import annotations


class ChatSyncError(RuntimeError):
    """Base exception for synchronization failures."""


class TransientFetchError(ChatSyncError):
    """Raised when a history fetch fails for a retryable reason (network, timeout)."""


class PersistenceWriteError(ChatSyncError):
    """Raised when persisting a message or a field update fails."""


class SubscriptionDropped(ChatSyncError):
    """Signals that the transport behind a live subscription disconnected.

    Delivered to the subscription owner as a notification, never raised into
    the event loop; the lifecycle manager reacts by reopening the feed and
    running gap recovery.
    """

    def __init__(self, channel_key: str, reason: str | None = None) -> None:
        self.channel_key = channel_key
        self.reason = reason
        message = f"Live subscription for {channel_key} dropped"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class MalformedEvent(ChatSyncError):
    """Raised for events or rows with an unknown kind or missing required fields."""


class ChannelPermissionError(ChatSyncError):
    """Raised when persistence denies access to a channel. Unrecoverable."""


class ChannelNotOpenError(ChatSyncError, LookupError):
    """Raised when an operation targets a channel that is not currently open."""

    def __init__(self, channel_key: str) -> None:
        self.channel_key = channel_key
        super().__init__(f"Channel {channel_key} is not open")
