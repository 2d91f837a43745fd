"""Live change-feed subscription for one channel."""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection

from chorus_chat.schemas.message import ChangeEvent, ChangeOperation
from chorus_chat.services.addressing import ChannelKey
from chorus_chat.services.codec import decode_change
from chorus_chat.services.errors import MalformedEvent, SubscriptionDropped
from chorus_chat.services.event_bus import BusNotification, BusSubscription, EventBus

# Configure logger for this module
logger = logging.getLogger(__name__)

_OPERATIONS = frozenset(operation.value for operation in ChangeOperation)


class LiveSubscription:
    """Decodes a channel's change notifications and forwards them in arrival order.

    After :meth:`close` returns, or once the transport has dropped, no further
    events reach ``on_event``.
    """

    def __init__(
        self,
        bus: EventBus,
        channel: ChannelKey,
        event_kinds: Collection[str],
        on_event: Callable[[ChangeEvent], object],
        on_drop: Callable[[SubscriptionDropped], object],
    ) -> None:
        unknown = set(event_kinds) - _OPERATIONS
        if unknown:
            raise ValueError(f"Unsupported event kinds: {', '.join(sorted(unknown))}")
        self.bus = bus
        self.channel = channel
        self.event_kinds = frozenset(event_kinds)
        self._on_event = on_event
        self._on_drop = on_drop
        self._handle: BusSubscription | None = None
        self._closed = False
        self._dropped = False
        self.malformed_count = 0

    @classmethod
    async def open(
        cls,
        bus: EventBus,
        channel: ChannelKey,
        event_kinds: Collection[str],
        on_event: Callable[[ChangeEvent], object],
        on_drop: Callable[[SubscriptionDropped], object],
    ) -> LiveSubscription:
        subscription = cls(bus, channel, event_kinds, on_event, on_drop)
        subscription._handle = await bus.subscribe(
            channel,
            subscription.event_kinds,
            subscription._receive,
            subscription._handle_drop,
        )
        logger.debug("Subscribed to %s for %s", channel, sorted(subscription.event_kinds))
        return subscription

    @property
    def active(self) -> bool:
        return not (self._closed or self._dropped)

    async def close(self) -> None:
        """Stop delivery. Safe to call more than once."""
        self._closed = True
        handle, self._handle = self._handle, None
        if handle is not None:
            await self.bus.unsubscribe(handle)
            logger.debug("Unsubscribed from %s", self.channel)

    def _receive(self, notification: BusNotification) -> None:
        if not self.active:
            return
        channel_key = str(self.channel)
        if not self.channel.may_contain(notification.operation, notification.row):
            logger.warning("Discarding event for another channel on %s", channel_key)
            return
        try:
            event = decode_change(
                notification.operation,
                notification.row,
                channel_key,
                self.event_kinds,
            )
        except MalformedEvent as exc:
            self.malformed_count += 1
            logger.warning("Discarding malformed event on %s: %s", channel_key, exc)
            return
        self._on_event(event)

    def _handle_drop(self, error: SubscriptionDropped) -> None:
        if not self.active:
            return
        self._dropped = True
        self._handle = None
        logger.warning("%s", error)
        self._on_drop(error)
