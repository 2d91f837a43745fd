"""Optimistic message sending."""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from datetime import datetime

from chorus_chat.db.time import utcnow
from chorus_chat.schemas.message import DeliveryStatus, Message, MessageDraft
from chorus_chat.services.addressing import ChannelKey, ChannelKind
from chorus_chat.services.codec import message_from_row
from chorus_chat.services.errors import (
    ChannelPermissionError,
    MalformedEvent,
    PersistenceWriteError,
)
from chorus_chat.services.merge import MergeEngine
from chorus_chat.services.persistence import MessageStore

# Configure logger for this module
logger = logging.getLogger(__name__)

# Temporary ids are negative and unique for the life of the process.
_TEMP_ID_COUNTER = itertools.count(1)


def next_temp_id() -> int:
    return -next(_TEMP_ID_COUNTER)


class OptimisticSender:
    """Shows outgoing messages immediately and reconciles them once persisted."""

    def __init__(
        self,
        channel: ChannelKey,
        engine: MergeEngine,
        store: MessageStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.channel = channel
        self.engine = engine
        self.store = store
        self._clock = clock
        # temp id -> canonical id (None until the write resolves)
        self._in_flight: dict[int, int | None] = {}

    @property
    def in_flight(self) -> dict[int, int | None]:
        return dict(self._in_flight)

    async def send(self, draft: MessageDraft) -> Message:
        """Insert a pending entry, persist it, and return the entry's final state.

        Write failures leave the entry in the log with ``failed`` status rather
        than raising.
        """
        pending = self._build_pending(draft)
        self.engine.insert_pending(pending)
        logger.debug("Sending %s on %s", pending.id, self.channel)
        return await self._write(pending)

    async def retry(self, temp_id: int) -> Message:
        """Resend a failed entry under the same temporary id."""
        entry = self._failed_entry(temp_id)
        pending = self.engine.set_delivery_status(temp_id, DeliveryStatus.PENDING) or entry
        return await self._write(pending)

    def discard(self, temp_id: int) -> Message:
        """Remove a failed entry from the log."""
        entry = self._failed_entry(temp_id)
        self.engine.remove_temporary(temp_id)
        logger.info("Discarded failed message %s on %s", temp_id, self.channel)
        return entry

    def _failed_entry(self, temp_id: int) -> Message:
        entry = self.engine.get(temp_id)
        if entry is None or not entry.is_temporary:
            raise KeyError(temp_id)
        if entry.status is not DeliveryStatus.FAILED:
            raise ValueError(f"Message {temp_id} is {entry.status.value}, not failed")
        return entry

    def _build_pending(self, draft: MessageDraft) -> Message:
        community_id = None
        receiver_id = None
        if self.channel.kind is ChannelKind.COMMUNITY:
            community_id = self.channel.community_id
        else:
            receiver_id = self.channel.counterpart(draft.sender_id)
        return Message(
            id=next_temp_id(),
            channel_key=str(self.channel),
            sender_id=draft.sender_id,
            community_id=community_id,
            receiver_id=receiver_id,
            content=draft.content,
            message_type=draft.message_type,
            file_url=draft.file_url,
            sent_at=self._clock(),
            status=DeliveryStatus.PENDING,
        )

    async def _write(self, pending: Message) -> Message:
        temp_id = pending.id
        self._in_flight[temp_id] = None
        try:
            row = await self.store.insert_message(pending.to_record())
            canonical = message_from_row(row, str(self.channel))
        except (PersistenceWriteError, ChannelPermissionError, MalformedEvent) as exc:
            self._in_flight.pop(temp_id, None)
            logger.warning("Send of %s on %s failed: %s", temp_id, self.channel, exc)
            if isinstance(exc, ChannelPermissionError):
                self.engine.fail(exc)
            failed = self.engine.set_delivery_status(temp_id, DeliveryStatus.FAILED)
            return failed or pending.model_copy(update={"status": DeliveryStatus.FAILED})

        self._in_flight[temp_id] = canonical.id
        confirmed = self.engine.reconcile(temp_id, canonical)
        del self._in_flight[temp_id]
        logger.debug("Reconciled %s -> %s on %s", temp_id, canonical.id, self.channel)
        return confirmed
