"""Paged history retrieval with retry."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from chorus_chat.schemas.message import HistoryCursor, Message
from chorus_chat.services.addressing import ChannelKey
from chorus_chat.services.codec import message_from_row
from chorus_chat.services.errors import MalformedEvent, TransientFetchError
from chorus_chat.services.persistence import MessageStore

# Configure logger for this module
logger = logging.getLogger(__name__)

MAX_RETRY_DELAY_SECONDS = 30.0

T = TypeVar("T")


@dataclass(frozen=True)
class HistoryPage:
    """One decoded page plus whether the store ran out of older rows."""

    messages: list[Message] = field(default_factory=list)
    exhausted: bool = False


class HistoryLoader:
    """Fetches bounded, ordered pages of a channel's history.

    Transient failures are retried with exponential backoff; permission errors
    and exhausted retries propagate to the caller. Rows that fail to decode are
    logged and skipped.
    """

    def __init__(
        self,
        store: MessageStore,
        *,
        page_size: int = 20,
        max_retries: int = 3,
        retry_delay_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self.store = store
        self.page_size = page_size
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self._sleep = sleep

    async def fetch_page(
        self,
        channel: ChannelKey,
        cursor: HistoryCursor | None = None,
        page_size: int | None = None,
    ) -> list[Message]:
        """Return up to ``page_size`` messages strictly older than ``cursor``, ascending.

        Without a cursor the most recent page is returned.
        """
        page = await self.load_page(channel, cursor, page_size)
        return page.messages

    async def load_page(
        self,
        channel: ChannelKey,
        cursor: HistoryCursor | None = None,
        page_size: int | None = None,
    ) -> HistoryPage:
        limit = page_size or self.page_size
        rows = await self._with_retries(
            channel,
            lambda: self.store.fetch_messages(channel, before=cursor, limit=limit),
        )
        messages = self._decode(rows, channel)
        logger.debug("Loaded %d messages for %s (cursor=%s)", len(messages), channel, cursor)
        return HistoryPage(messages=messages, exhausted=len(rows) < limit)

    async def fetch_since(
        self,
        channel: ChannelKey,
        since: datetime,
        page_size: int | None = None,
    ) -> list[Message]:
        """Return every message sent at or after ``since``, ascending.

        Pages forward until the store returns a short page. Used for gap
        recovery after a live feed reconnects.
        """
        limit = page_size or self.page_size
        cursor = HistoryCursor(sent_at=since)
        collected: list[Message] = []
        while True:
            page_cursor = cursor
            rows = await self._with_retries(
                channel,
                lambda: self.store.fetch_messages(channel, after=page_cursor, limit=limit),
            )
            messages = self._decode(rows, channel)
            collected.extend(messages)
            if len(rows) < limit:
                break
            if not messages:
                logger.warning("Stopping gap recovery for %s on an undecodable page", channel)
                break
            cursor = HistoryCursor.of(messages[-1])
        return self._dedupe(collected)

    async def _with_retries(
        self,
        channel: ChannelKey,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        attempt = 0
        while True:
            try:
                return await call()
            except TransientFetchError as exc:
                attempt += 1
                if attempt > self.max_retries:
                    logger.error(
                        "History fetch for %s failed after %d attempts: %s",
                        channel,
                        attempt,
                        exc,
                    )
                    raise
                delay = min(self.retry_delay_seconds * 2 ** (attempt - 1), MAX_RETRY_DELAY_SECONDS)
                logger.warning(
                    "History fetch for %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    channel,
                    attempt,
                    self.max_retries + 1,
                    delay,
                    exc,
                )
                await self._sleep(delay)

    def _decode(self, rows: Iterable[Mapping[str, Any]], channel: ChannelKey) -> list[Message]:
        channel_key = str(channel)
        messages: list[Message] = []
        for row in rows:
            if not channel.matches(row):
                logger.warning("Skipping row %s outside channel %s", row.get("id"), channel_key)
                continue
            try:
                messages.append(message_from_row(row, channel_key))
            except MalformedEvent as exc:
                logger.warning("Skipping malformed history row on %s: %s", channel_key, exc)
        return self._dedupe(messages)

    @staticmethod
    def _dedupe(messages: Iterable[Message]) -> list[Message]:
        unique: dict[int, Message] = {}
        for message in messages:
            unique.setdefault(message.id, message)
        return sorted(unique.values(), key=lambda message: message.sort_key)
