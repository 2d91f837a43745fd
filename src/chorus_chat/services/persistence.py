"""Persistence query interface and its SQLAlchemy implementation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from chorus_chat.db.time import as_utc
from chorus_chat.models import ChatMessage
from chorus_chat.schemas.message import MUTABLE_FIELDS, HistoryCursor
from chorus_chat.services.addressing import ChannelKey, ChannelKind
from chorus_chat.services.errors import PersistenceWriteError, TransientFetchError
from chorus_chat.services.event_bus import InMemoryEventBus

# Configure logger for this module
logger = logging.getLogger(__name__)

Row = dict[str, Any]


class MessageStore(Protocol):
    """Interface consumed from the persistence layer.

    Rows are plain mappings with the columns of :class:`ChatMessage`.
    """

    async def fetch_messages(
        self,
        channel: ChannelKey,
        *,
        before: HistoryCursor | None = None,
        after: HistoryCursor | None = None,
        limit: int,
    ) -> list[Row]:
        """Return up to ``limit`` rows of ``channel`` in ascending ``(sent_at, id)`` order.

        ``before`` selects the newest rows strictly older than the cursor,
        ``after`` the oldest rows newer than it. Without either, the most recent
        rows are returned.
        """
        ...

    async def insert_message(self, record: Mapping[str, Any]) -> Row:
        """Persist a new message and return the canonical row."""
        ...

    async def update_message(self, message_id: int, fields: Mapping[str, Any]) -> Row:
        """Apply a partial update and return the updated row."""
        ...


def channel_clause(channel: ChannelKey) -> ColumnElement[bool]:
    """SQL predicate selecting the rows of ``channel``."""
    if channel.kind is ChannelKind.COMMUNITY:
        return ChatMessage.community_id == channel.community_id
    low, high = channel.participants  # type: ignore[misc]
    return and_(
        ChatMessage.community_id.is_(None),
        or_(
            and_(ChatMessage.sender_id == low, ChatMessage.receiver_id == high),
            and_(ChatMessage.sender_id == high, ChatMessage.receiver_id == low),
        ),
    )


def _before_clause(cursor: HistoryCursor) -> ColumnElement[bool]:
    sent_at = as_utc(cursor.sent_at)
    if cursor.id is None:
        return ChatMessage.sent_at < sent_at
    return or_(
        ChatMessage.sent_at < sent_at,
        and_(ChatMessage.sent_at == sent_at, ChatMessage.id < cursor.id),
    )


def _after_clause(cursor: HistoryCursor) -> ColumnElement[bool]:
    sent_at = as_utc(cursor.sent_at)
    if cursor.id is None:
        return ChatMessage.sent_at >= sent_at
    return or_(
        ChatMessage.sent_at > sent_at,
        and_(ChatMessage.sent_at == sent_at, ChatMessage.id > cursor.id),
    )


class SqlMessageStore:
    """Message store backed by SQLAlchemy.

    Blocking database work runs in worker threads. When a bus is attached,
    committed inserts and updates are published to it from the event loop,
    which emulates the change feed of a hosted backend.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        bus: InMemoryEventBus | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._bus = bus

    async def fetch_messages(
        self,
        channel: ChannelKey,
        *,
        before: HistoryCursor | None = None,
        after: HistoryCursor | None = None,
        limit: int,
    ) -> list[Row]:
        try:
            return await asyncio.to_thread(self._fetch_sync, channel, before, after, limit)
        except SQLAlchemyError as exc:
            raise TransientFetchError(f"History query for {channel} failed: {exc}") from exc

    async def insert_message(self, record: Mapping[str, Any]) -> Row:
        try:
            row = await asyncio.to_thread(self._insert_sync, dict(record))
        except SQLAlchemyError as exc:
            raise PersistenceWriteError(f"Message insert failed: {exc}") from exc
        self._publish("insert", row)
        return row

    async def update_message(self, message_id: int, fields: Mapping[str, Any]) -> Row:
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise PersistenceWriteError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        try:
            row = await asyncio.to_thread(self._update_sync, message_id, dict(fields))
        except SQLAlchemyError as exc:
            raise PersistenceWriteError(f"Message update failed: {exc}") from exc
        self._publish("update", row)
        return row

    def _fetch_sync(
        self,
        channel: ChannelKey,
        before: HistoryCursor | None,
        after: HistoryCursor | None,
        limit: int,
    ) -> list[Row]:
        stmt = select(ChatMessage).where(channel_clause(channel))
        if before is not None:
            stmt = stmt.where(_before_clause(before))
        if after is not None:
            stmt = stmt.where(_after_clause(after))

        descending = after is None
        if descending:
            stmt = stmt.order_by(ChatMessage.sent_at.desc(), ChatMessage.id.desc())
        else:
            stmt = stmt.order_by(ChatMessage.sent_at.asc(), ChatMessage.id.asc())

        with self._session_factory() as db:
            rows = [message.to_row() for message in db.execute(stmt.limit(limit)).scalars()]
        if descending:
            rows.reverse()
        logger.debug("Fetched %d rows for %s", len(rows), channel)
        return rows

    def _insert_sync(self, record: Row) -> Row:
        record.pop("id", None)
        if record.get("sent_at") is not None:
            record["sent_at"] = as_utc(record["sent_at"])
        with self._session_factory() as db:
            message = ChatMessage(**record)
            db.add(message)
            db.commit()
            db.refresh(message)
            return message.to_row()

    def _update_sync(self, message_id: int, fields: Row) -> Row:
        with self._session_factory() as db:
            message = db.get(ChatMessage, message_id)
            if message is None:
                raise PersistenceWriteError(f"Message {message_id} not found")
            for name, value in fields.items():
                setattr(message, name, value)
            db.commit()
            db.refresh(message)
            return message.to_row()

    def _publish(self, operation: str, row: Row) -> None:
        if self._bus is not None:
            self._bus.publish(operation, row)
