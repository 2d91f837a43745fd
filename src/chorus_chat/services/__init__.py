# src/chorus_chat/services/__init__.py
"""Conversation synchronization services for Chorus Chat."""

from .addressing import ChannelKey, ChannelKind, parse_channel_key, resolve, resolve_community, resolve_direct
from .conversations import ConversationSync, build_conversation_sync
from .errors import (
    ChannelNotOpenError,
    ChannelPermissionError,
    ChatSyncError,
    MalformedEvent,
    PersistenceWriteError,
    SubscriptionDropped,
    TransientFetchError,
)
from .event_bus import EventBus, InMemoryEventBus
from .history import HistoryLoader
from .hosted import HostedMessageStore
from .lifecycle import SubscriptionLifecycleManager
from .live import LiveSubscription
from .merge import MergeEngine
from .persistence import MessageStore, SqlMessageStore
from .sender import OptimisticSender

__all__ = [
    "ChannelKey",
    "ChannelKind",
    "resolve",
    "resolve_community",
    "resolve_direct",
    "parse_channel_key",
    "ConversationSync",
    "build_conversation_sync",
    "ChatSyncError",
    "TransientFetchError",
    "PersistenceWriteError",
    "SubscriptionDropped",
    "MalformedEvent",
    "ChannelPermissionError",
    "ChannelNotOpenError",
    "EventBus",
    "InMemoryEventBus",
    "HistoryLoader",
    "HostedMessageStore",
    "SubscriptionLifecycleManager",
    "LiveSubscription",
    "MergeEngine",
    "MessageStore",
    "SqlMessageStore",
    "OptimisticSender",
]
