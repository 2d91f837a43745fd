"""Subscription lifecycle: one live feed per open channel, with gap recovery."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Collection
from datetime import datetime

from chorus_chat.services.addressing import ChannelKey, parse_channel_key
from chorus_chat.services.errors import ChatSyncError, SubscriptionDropped
from chorus_chat.services.event_bus import EventBus
from chorus_chat.services.history import HistoryLoader, HistoryPage
from chorus_chat.services.live import LiveSubscription
from chorus_chat.services.merge import MergeEngine

# Configure logger for this module
logger = logging.getLogger(__name__)


class SubscriptionLifecycleManager:
    """Keeps at most one live subscription per channel key.

    When a feed drops, the manager reopens it and refetches everything since
    the newest confirmed entry seen before the drop, merging the result through
    the channel's engine. Recovery results for an engine that has since been
    closed or replaced are discarded.
    """

    def __init__(
        self,
        bus: EventBus,
        history: HistoryLoader,
        *,
        event_kinds: Collection[str] = ("insert", "update"),
        gap_page_size: int = 100,
    ) -> None:
        self.bus = bus
        self.history = history
        self.event_kinds = tuple(event_kinds)
        self.gap_page_size = gap_page_size
        self._engines: dict[str, MergeEngine] = {}
        self._subscriptions: dict[str, LiveSubscription] = {}
        self._recoveries: dict[str, asyncio.Task[None]] = {}

    def is_open(self, channel: ChannelKey) -> bool:
        return str(channel) in self._engines

    def subscription_for(self, channel: ChannelKey) -> LiveSubscription | None:
        return self._subscriptions.get(str(channel))

    async def open_channel(self, channel: ChannelKey, engine: MergeEngine) -> LiveSubscription | None:
        """Subscribe ``engine`` to the channel feed. No-op if already open."""
        key = str(channel)
        if key in self._engines:
            logger.debug("Channel %s already has a live subscription", key)
            return self._subscriptions.get(key)

        self._engines[key] = engine
        try:
            subscription = await self._subscribe(channel, engine)
        except Exception:
            if self._engines.get(key) is engine:
                del self._engines[key]
            raise

        if self._engines.get(key) is not engine:
            # Closed while the subscribe call was in flight.
            await subscription.close()
            return None
        self._subscriptions[key] = subscription
        return subscription

    async def close_channel(self, channel: ChannelKey) -> None:
        """Release the channel's subscription. Idempotent."""
        key = str(channel)
        self._engines.pop(key, None)
        recovery = self._recoveries.pop(key, None)
        if recovery is not None:
            recovery.cancel()
        subscription = self._subscriptions.pop(key, None)
        if subscription is not None:
            await subscription.close()

    async def close_all(self) -> None:
        for key in list(self._engines):
            await self.close_channel(parse_channel_key(key))

    async def wait_for_recovery(self, channel: ChannelKey) -> None:
        """Wait until any in-progress gap recovery for ``channel`` has finished."""
        while True:
            task = self._recoveries.get(str(channel))
            if task is None or task.done():
                return
            await asyncio.wait({task})

    async def _subscribe(self, channel: ChannelKey, engine: MergeEngine) -> LiveSubscription:
        return await LiveSubscription.open(
            self.bus,
            channel,
            self.event_kinds,
            engine.apply_live_event,
            lambda error: self._handle_drop(channel, engine, error),
        )

    def _handle_drop(self, channel: ChannelKey, engine: MergeEngine, error: SubscriptionDropped) -> None:
        key = str(channel)
        if self._engines.get(key) is not engine:
            return
        self._subscriptions.pop(key, None)
        since = engine.newest_confirmed_sent_at()
        logger.info("Reconnecting %s, recovering messages since %s", key, since)
        task = asyncio.get_running_loop().create_task(self._recover(channel, engine, since))
        self._recoveries[key] = task

    async def _recover(self, channel: ChannelKey, engine: MergeEngine, since: datetime | None) -> None:
        key = str(channel)
        try:
            subscription = await self._subscribe(channel, engine)
            if self._engines.get(key) is not engine:
                await subscription.close()
                return
            self._subscriptions[key] = subscription

            page: HistoryPage | None = None
            if since is None:
                # Nothing confirmed yet: reload the newest page and reopen paging.
                page = await self.history.load_page(channel)
                messages = page.messages
            else:
                messages = await self.history.fetch_since(channel, since, self.gap_page_size)

            if self._engines.get(key) is not engine:
                logger.debug("Discarding gap recovery for replaced channel %s", key)
                return
            restored = engine.apply_history_page(messages)
            if page is not None:
                engine.set_has_older(not page.exhausted)
            logger.info("Gap recovery on %s restored %d messages", key, restored)
        except ChatSyncError as exc:
            if self._engines.get(key) is engine:
                engine.fail(exc)
        except Exception as exc:
            logger.exception("Gap recovery on %s failed", key)
            if self._engines.get(key) is engine:
                engine.fail(exc)
        finally:
            if self._recoveries.get(key) is asyncio.current_task():
                del self._recoveries[key]

