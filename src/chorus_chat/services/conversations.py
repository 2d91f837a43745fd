"""Conversation synchronization facade.

``ConversationSync`` owns every open channel: its merge engine, optimistic
sender, live subscription and background fetches. The UI layer talks only to
this class and reads channel state through :class:`ChannelSnapshot` objects.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable, Collection, Coroutine
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from chorus_chat.core.settings import Settings
from chorus_chat.db.time import utcnow
from chorus_chat.schemas.channel import ChannelSnapshot, ChannelStatus
from chorus_chat.schemas.message import Message, MessageDraft
from chorus_chat.services.addressing import ChannelKey, parse_channel_key
from chorus_chat.services.codec import decode_change
from chorus_chat.services.errors import (
    ChannelNotOpenError,
    ChannelPermissionError,
    ChatSyncError,
)
from chorus_chat.services.event_bus import EventBus, InMemoryEventBus
from chorus_chat.services.history import HistoryLoader
from chorus_chat.services.lifecycle import SubscriptionLifecycleManager
from chorus_chat.services.merge import MergeEngine
from chorus_chat.services.persistence import MessageStore, SqlMessageStore
from chorus_chat.services.sender import OptimisticSender

# Configure logger for this module
logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ChannelSession:
    """Everything owned by one open channel."""

    channel: ChannelKey
    engine: MergeEngine
    sender: OptimisticSender
    tasks: set[asyncio.Task[Any]] = field(default_factory=set)
    loading_older: bool = False

    @property
    def generation(self) -> int:
        return self.engine.generation


class ConversationSync:
    """Keyed arena of open channels.

    Each open stamps a new generation on the channel's engine. Background
    fetch results are applied only while their generation is still the one
    registered for the key, so a close/reopen never sees stale pages.
    """

    def __init__(
        self,
        store: MessageStore,
        bus: EventBus,
        *,
        page_size: int = 20,
        gap_recovery_page_size: int = 100,
        event_kinds: Collection[str] = ("insert", "update"),
        max_retries: int = 3,
        retry_delay_seconds: float = 0.5,
        clock: Callable[[], datetime] = utcnow,
        history: HistoryLoader | None = None,
    ) -> None:
        self.store = store
        self.bus = bus
        self.history = history or HistoryLoader(
            store,
            page_size=page_size,
            max_retries=max_retries,
            retry_delay_seconds=retry_delay_seconds,
        )
        self.lifecycle = SubscriptionLifecycleManager(
            bus,
            self.history,
            event_kinds=event_kinds,
            gap_page_size=gap_recovery_page_size,
        )
        self._clock = clock
        self._sessions: dict[str, ChannelSession] = {}
        self._generations = itertools.count(1)

    @property
    def open_channels(self) -> list[str]:
        return list(self._sessions)

    # -- channel lifecycle ---------------------------------------------------------

    async def open_channel(self, channel: ChannelKey | str) -> ChannelSnapshot:
        """Open a channel: start the initial history fetch and the live feed.

        Opening an already-open channel is a no-op. A channel in ``ERROR`` is
        torn down and reopened from scratch.
        """
        channel = parse_channel_key(channel)
        key = str(channel)
        existing = self._sessions.get(key)
        if existing is not None:
            if existing.engine.status is not ChannelStatus.ERROR:
                return existing.engine.snapshot()
            logger.info("Reopening channel %s after error", key)
            del self._sessions[key]
            await self._teardown(existing)

        engine = MergeEngine(key, generation=next(self._generations))
        engine.begin_loading()
        session = ChannelSession(
            channel=channel,
            engine=engine,
            sender=OptimisticSender(channel, engine, self.store, clock=self._clock),
        )
        self._sessions[key] = session
        self._spawn(session, self._load_initial(session))

        try:
            await self.lifecycle.open_channel(channel, engine)
        except ChatSyncError as exc:
            engine.fail(exc)
        logger.info("Opened channel %s (generation %d)", key, engine.generation)
        return engine.snapshot()

    async def close_channel(self, channel: ChannelKey | str) -> None:
        """Close a channel and discard its state. Idempotent."""
        key = str(parse_channel_key(channel))
        session = self._sessions.pop(key, None)
        if session is None:
            return
        await self._teardown(session)
        logger.info("Closed channel %s", key)

    async def close(self) -> None:
        """Close every open channel."""
        for key in list(self._sessions):
            await self.close_channel(key)

    def get_channel_state(self, channel: ChannelKey | str) -> ChannelSnapshot:
        """Return the channel's current snapshot; ``IDLE`` and empty if not open."""
        key = str(parse_channel_key(channel))
        session = self._sessions.get(key)
        if session is None:
            return ChannelSnapshot(channel_key=key, status=ChannelStatus.IDLE)
        return session.engine.snapshot()

    async def wait_until_settled(self, channel: ChannelKey | str) -> ChannelSnapshot:
        """Wait for the channel's background fetches and gap recovery to finish."""
        channel = parse_channel_key(channel)
        session = self._sessions.get(str(channel))
        if session is not None:
            while session.tasks:
                await asyncio.wait(set(session.tasks))
        await self.lifecycle.wait_for_recovery(channel)
        return self.get_channel_state(channel)

    # -- history -------------------------------------------------------------------

    async def load_older(self, channel: ChannelKey | str) -> int:
        """Fetch the page before the oldest loaded entry and merge it.

        Returns the number of messages added. Transient failures propagate
        after retries and leave the channel untouched; a permission failure
        moves the channel to ``ERROR``.
        """
        session = self._require(channel)
        engine = session.engine
        if session.loading_older or not engine.accepting or not engine.has_older:
            return 0
        cursor = engine.oldest_cursor()
        if cursor is None:
            # Nothing loaded yet; the initial fetch covers the newest page.
            return 0

        session.loading_older = True
        try:
            page = await self.history.load_page(session.channel, cursor)
        except ChannelPermissionError as exc:
            if self._is_current(session):
                engine.fail(exc)
            return 0
        finally:
            session.loading_older = False

        if not self._is_current(session):
            logger.debug("Discarding stale older page for %s", engine.channel_key)
            return 0
        added = engine.apply_history_page(page.messages)
        engine.set_has_older(not page.exhausted)
        return added

    async def _load_initial(self, session: ChannelSession) -> None:
        engine = session.engine
        try:
            page = await self.history.load_page(session.channel)
        except ChatSyncError as exc:
            if self._is_current(session):
                engine.fail(exc)
            return

        if not self._is_current(session):
            logger.debug(
                "Discarding stale initial page for %s (generation %d)",
                engine.channel_key,
                session.generation,
            )
            return
        engine.apply_history_page(page.messages)
        engine.set_has_older(not page.exhausted)
        engine.mark_ready()

    # -- writes --------------------------------------------------------------------

    async def send_message(self, channel: ChannelKey | str, draft: MessageDraft) -> Message:
        """Send ``draft`` optimistically and return the entry once the write resolves."""
        session = self._require_accepting(channel)
        return await session.sender.send(draft)

    async def retry_message(self, channel: ChannelKey | str, temp_id: int) -> Message:
        session = self._require_accepting(channel)
        return await session.sender.retry(temp_id)

    def discard_message(self, channel: ChannelKey | str, temp_id: int) -> Message:
        session = self._require(channel)
        return session.sender.discard(temp_id)

    async def mark_read(self, channel: ChannelKey | str, message_id: int) -> Message | None:
        """Persist ``is_read`` for a message and merge the change locally.

        Raises:
            KeyError: If ``message_id`` is not a confirmed entry of this channel.
        """
        session = self._require_accepting(channel)
        current = session.engine.get(message_id)
        if current is None or current.is_temporary:
            raise KeyError(message_id)
        try:
            row = await self.store.update_message(message_id, {"is_read": True})
        except ChannelPermissionError as exc:
            if self._is_current(session):
                session.engine.fail(exc)
            raise

        if not session.channel.matches(row):
            logger.warning(
                "Store returned message %s outside %s; not merging", message_id, session.channel
            )
        elif self._is_current(session):
            event = decode_change("update", row, session.engine.channel_key)
            session.engine.apply_live_event(event)
        return session.engine.get(message_id)

    # -- internals -----------------------------------------------------------------

    def _require(self, channel: ChannelKey | str) -> ChannelSession:
        key = str(parse_channel_key(channel))
        session = self._sessions.get(key)
        if session is None:
            raise ChannelNotOpenError(key)
        return session

    def _require_accepting(self, channel: ChannelKey | str) -> ChannelSession:
        session = self._require(channel)
        if not session.engine.accepting:
            raise ChannelNotOpenError(session.engine.channel_key)
        return session

    def _is_current(self, session: ChannelSession) -> bool:
        current = self._sessions.get(session.engine.channel_key)
        return (
            current is not None
            and current.generation == session.generation
            and session.engine.accepting
        )

    def _spawn(self, session: ChannelSession, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(coro)
        session.tasks.add(task)
        task.add_done_callback(session.tasks.discard)
        return task

    async def _teardown(self, session: ChannelSession) -> None:
        session.engine.dispose()
        for task in list(session.tasks):
            task.cancel()
        await self.lifecycle.close_channel(session.channel)


def build_conversation_sync(
    config: Settings,
    *,
    store: MessageStore | None = None,
    bus: EventBus | None = None,
) -> ConversationSync:
    """Compose a :class:`ConversationSync` from settings.

    With the SQL backend, the store publishes its writes to the in-process bus
    so that live subscriptions observe them.
    """
    if bus is None:
        bus = InMemoryEventBus()
    if store is None:
        if config.hosted_enabled:
            from chorus_chat.services.hosted import HostedConfig, HostedMessageStore

            store = HostedMessageStore(
                HostedConfig(
                    base_url=config.hosted_base_url,
                    api_key=config.hosted_api_key,
                    table=config.hosted_messages_table,
                    timeout_seconds=float(config.hosted_http_timeout_seconds),
                )
            )
        else:
            from chorus_chat.db.session import SessionLocal

            store = SqlMessageStore(
                SessionLocal,
                bus if isinstance(bus, InMemoryEventBus) else None,
            )

    return ConversationSync(
        store,
        bus,
        page_size=config.history_page_size,
        gap_recovery_page_size=config.gap_recovery_page_size,
        event_kinds=config.live_event_kinds,
        max_retries=config.history_fetch_max_retries,
        retry_delay_seconds=config.history_fetch_retry_delay_seconds,
    )
