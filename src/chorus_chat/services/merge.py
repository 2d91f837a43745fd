"""Per-channel merge engine.

The engine owns one channel's message log: a list kept sorted by
``(sent_at, id)`` plus an id index for constant-time duplicate detection.
History pages, live events and optimistic sends all converge through it, and
applying any finite set of pages and insert events in any order yields the
same final log.
"""

from __future__ import annotations

import bisect
import logging
from collections.abc import Iterable
from datetime import datetime

from chorus_chat.schemas.channel import ChannelSnapshot, ChannelStatus
from chorus_chat.schemas.message import (
    MUTABLE_FIELDS,
    ChangeEvent,
    ChangeOperation,
    DeliveryStatus,
    HistoryCursor,
    Message,
)

# Configure logger for this module
logger = logging.getLogger(__name__)

SortKey = tuple[datetime, int]

_ACCEPTING = frozenset({ChannelStatus.IDLE, ChannelStatus.LOADING, ChannelStatus.READY})


class MergeEngine:
    """Ordered, deduplicated message log of a single channel.

    State machine: ``IDLE -> LOADING -> READY``, ``READY/LOADING -> ERROR`` and
    any state ``-> CLOSED`` on :meth:`dispose`. Applies are silently ignored in
    ``ERROR`` and ``CLOSED`` so late events from a torn-down session are harmless.
    """

    def __init__(self, channel_key: str, generation: int = 0) -> None:
        self.channel_key = channel_key
        self.generation = generation
        self._status = ChannelStatus.IDLE
        self._error: str | None = None
        self._has_older = True
        self._entries: list[Message] = []
        self._keys: list[SortKey] = []
        self._index: dict[int, SortKey] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._index

    @property
    def status(self) -> ChannelStatus:
        return self._status

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def has_older(self) -> bool:
        return self._has_older

    @property
    def accepting(self) -> bool:
        """True while the engine still applies incoming data."""
        return self._status in _ACCEPTING

    @property
    def messages(self) -> list[Message]:
        return list(self._entries)

    # -- lifecycle -----------------------------------------------------------------

    def begin_loading(self) -> None:
        """Enter ``LOADING``; only valid from ``IDLE``."""
        if self._status is not ChannelStatus.IDLE:
            raise RuntimeError(f"Cannot start loading {self.channel_key} from {self._status.value}")
        self._status = ChannelStatus.LOADING

    def mark_ready(self) -> None:
        """Leave ``LOADING`` once the first history page has been applied."""
        if self._status is ChannelStatus.LOADING:
            self._status = ChannelStatus.READY

    def fail(self, error: BaseException | str) -> None:
        """Move to the terminal ``ERROR`` state; a new open is required to recover."""
        if self._status is ChannelStatus.CLOSED:
            return
        self._status = ChannelStatus.ERROR
        self._error = str(error)
        logger.error("Channel %s entered error state: %s", self.channel_key, self._error)

    def dispose(self) -> None:
        """Discard all state and enter ``CLOSED``. Idempotent."""
        self._status = ChannelStatus.CLOSED
        self._entries.clear()
        self._keys.clear()
        self._index.clear()

    def set_has_older(self, value: bool) -> None:
        if self.accepting:
            self._has_older = value

    # -- merge entry points --------------------------------------------------------

    def apply_history_page(self, messages: Iterable[Message]) -> int:
        """Insert every unseen message at its sorted position.

        Entries already present are left untouched. Returns the number inserted.
        """
        if not self.accepting:
            logger.debug("Ignoring history page for %s in state %s", self.channel_key, self._status.value)
            return 0
        inserted = 0
        for message in messages:
            if self._owns(message) and self._insert(message):
                inserted += 1
        return inserted

    def apply_live_event(self, event: ChangeEvent) -> bool:
        """Apply one live notification. Returns True if the log changed.

        Inserts of known ids are dropped; that is the expected echo of an
        optimistic send or a redelivery. Updates of unknown ids are discarded.
        """
        if not self.accepting:
            logger.debug("Ignoring live event for %s in state %s", self.channel_key, self._status.value)
            return False

        if event.operation is ChangeOperation.INSERT:
            if event.message is None or not self._owns(event.message):
                return False
            if not self._insert(event.message):
                logger.debug("Dropped duplicate insert %s on %s", event.message_id, self.channel_key)
                return False
            return True

        return self._merge_fields(event.message_id, event.changes)

    # -- optimistic entries --------------------------------------------------------

    def insert_pending(self, message: Message) -> bool:
        """Insert an optimistic entry under its temporary id."""
        if not message.is_temporary:
            raise ValueError("Pending entries must carry a temporary id")
        if not self.accepting or not self._owns(message):
            return False
        return self._insert(message.model_copy(update={"status": DeliveryStatus.PENDING}))

    def reconcile(self, temp_id: int, canonical: Message) -> Message:
        """Replace a temporary entry by its canonical record.

        If the canonical id is already in the log (its live echo won the race),
        the temporary entry is just dropped, so the message appears exactly once.
        """
        if not self.accepting:
            return canonical
        self._remove(temp_id)
        existing = self.get(canonical.id)
        if existing is not None:
            return existing
        confirmed = canonical.model_copy(update={"status": DeliveryStatus.CONFIRMED})
        self._insert(confirmed)
        return confirmed

    def set_delivery_status(self, temp_id: int, status: DeliveryStatus) -> Message | None:
        """Change the client-side status of a temporary entry in place."""
        key = self._index.get(temp_id)
        if key is None or not self.accepting:
            return None
        position = self._position(key)
        updated = self._entries[position].model_copy(update={"status": status})
        self._entries[position] = updated
        return updated

    def remove_temporary(self, temp_id: int) -> Message | None:
        if temp_id >= 0:
            raise ValueError("Only temporary entries can be removed")
        return self._remove(temp_id)

    # -- queries -------------------------------------------------------------------

    def get(self, message_id: int) -> Message | None:
        key = self._index.get(message_id)
        if key is None:
            return None
        return self._entries[self._position(key)]

    def oldest_cursor(self) -> HistoryCursor | None:
        """Cursor of the oldest canonical entry, used to page backwards."""
        for message in self._entries:
            if not message.is_temporary:
                return HistoryCursor.of(message)
        return None

    def newest_confirmed_sent_at(self) -> datetime | None:
        """Timestamp of the newest canonical entry, the start point for gap recovery."""
        for message in reversed(self._entries):
            if not message.is_temporary:
                return message.sent_at
        return None

    def snapshot(self) -> ChannelSnapshot:
        return ChannelSnapshot(
            channel_key=self.channel_key,
            status=self._status,
            messages=list(self._entries),
            error=self._error,
            has_older=self._has_older,
        )

    # -- internals -----------------------------------------------------------------

    def _owns(self, message: Message) -> bool:
        if message.channel_key != self.channel_key:
            logger.warning(
                "Refusing message %s for %s on channel %s",
                message.id,
                message.channel_key,
                self.channel_key,
            )
            return False
        return True

    def _position(self, key: SortKey) -> int:
        return bisect.bisect_left(self._keys, key)

    def _insert(self, message: Message) -> bool:
        if message.id in self._index:
            return False
        key = message.sort_key
        position = self._position(key)
        self._keys.insert(position, key)
        self._entries.insert(position, message)
        self._index[message.id] = key
        return True

    def _remove(self, message_id: int) -> Message | None:
        key = self._index.pop(message_id, None)
        if key is None:
            return None
        position = self._position(key)
        del self._keys[position]
        return self._entries.pop(position)

    def _merge_fields(self, message_id: int, changes: dict[str, object]) -> bool:
        key = self._index.get(message_id)
        if key is None:
            logger.debug("Discarding update for unknown message %s on %s", message_id, self.channel_key)
            return False
        position = self._position(key)
        current = self._entries[position]
        updates = {
            name: value
            for name, value in changes.items()
            if name in MUTABLE_FIELDS and getattr(current, name) != value
        }
        if not updates:
            return False
        self._entries[position] = current.model_copy(update=updates)
        return True
