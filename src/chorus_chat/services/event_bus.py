"""Push-event bus interface and an in-process implementation.

The bus delivers ``{operation, row}`` change notifications filtered by channel,
the way a hosted backend's change feed filters by table and row predicate.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from chorus_chat.services.addressing import ChannelKey
from chorus_chat.services.errors import SubscriptionDropped

# Configure logger for this module
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BusNotification:
    """Raw change notification as delivered by the transport."""

    operation: str
    row: Mapping[str, Any]


NotificationCallback = Callable[[BusNotification], None]
DropCallback = Callable[[SubscriptionDropped], None]


@dataclass(eq=False)
class BusSubscription:
    """Handle for one registered feed."""

    channel: ChannelKey
    event_kinds: frozenset[str]
    callback: NotificationCallback
    on_drop: DropCallback
    active: bool = field(default=True)

    def wants(self, notification: BusNotification) -> bool:
        return (
            self.active
            and notification.operation in self.event_kinds
            and self.channel.may_contain(notification.operation, notification.row)
        )

    def deliver(self, notification: BusNotification) -> None:
        if self.active:
            self.callback(notification)


class EventBus(Protocol):
    """Interface consumed from the push-event transport."""

    async def subscribe(
        self,
        channel: ChannelKey,
        event_kinds: Collection[str],
        callback: NotificationCallback,
        on_drop: DropCallback,
    ) -> BusSubscription:
        """Open a feed for ``channel`` restricted to ``event_kinds``."""
        ...

    async def unsubscribe(self, handle: BusSubscription) -> None:
        """Stop a feed. Must be idempotent."""
        ...


class InMemoryEventBus:
    """Registers subscriptions and broadcasts notifications to matching listeners.

    Used by the SQL store to emulate a change feed, and by tests to deliver
    events and simulate transport drops deterministically.
    """

    def __init__(self) -> None:
        self._subscriptions: list[BusSubscription] = []

    async def subscribe(
        self,
        channel: ChannelKey,
        event_kinds: Collection[str],
        callback: NotificationCallback,
        on_drop: DropCallback,
    ) -> BusSubscription:
        subscription = BusSubscription(
            channel=channel,
            event_kinds=frozenset(event_kinds),
            callback=callback,
            on_drop=on_drop,
        )
        self._subscriptions.append(subscription)
        return subscription

    async def unsubscribe(self, handle: BusSubscription) -> None:
        handle.active = False
        try:
            self._subscriptions.remove(handle)
        except ValueError:
            return

    def publish(self, operation: str, row: Mapping[str, Any]) -> int:
        """Deliver a notification to every matching subscription. Returns the fan-out."""
        notification = BusNotification(operation=operation, row=dict(row))
        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.wants(notification):
                subscription.deliver(notification)
                delivered += 1
        return delivered

    def drop(self, channel: ChannelKey | None = None, reason: str = "transport disconnected") -> int:
        """Simulate a transport disconnect for ``channel`` (or every channel)."""
        dropped = [
            subscription
            for subscription in self._subscriptions
            if channel is None or subscription.channel == channel
        ]
        for subscription in dropped:
            subscription.active = False
            self._subscriptions.remove(subscription)
        for subscription in dropped:
            logger.info("Dropping live feed for %s: %s", subscription.channel, reason)
            subscription.on_drop(SubscriptionDropped(str(subscription.channel), reason))
        return len(dropped)

    def subscription_count(self, channel: ChannelKey | None = None) -> int:
        return sum(
            1
            for subscription in self._subscriptions
            if channel is None or subscription.channel == channel
        )
