# tests/conftest.py
from __future__ import annotations

import asyncio
import os
from collections.abc import Generator, Iterator
from datetime import UTC, datetime, timedelta
from itertools import count
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")

from chorus_chat.api.v1.dependencies import get_conversation_sync
from chorus_chat.core.settings import Settings
from chorus_chat.db.session import Base
from chorus_chat.db.time import as_utc
from chorus_chat.main import app as fastapi_app
from chorus_chat.schemas.message import HistoryCursor, Message
from chorus_chat.services.addressing import ChannelKey
from chorus_chat.services.codec import message_from_row
from chorus_chat.services.conversations import ConversationSync
from chorus_chat.services.errors import PersistenceWriteError
from chorus_chat.services.event_bus import InMemoryEventBus

TEST_DB_URL = "sqlite://"
BASE_TIME = datetime(2024, 1, 1, tzinfo=UTC)

_TEST_SETTINGS_INSTANCE = Settings()


def ts(seconds: float) -> datetime:
    """Return a timestamp ``seconds`` after a fixed base time."""
    return BASE_TIME + timedelta(seconds=seconds)


def make_row(
    message_id: int,
    seconds: float,
    *,
    community_id: int | None = 1,
    sender_id: str = "alice",
    receiver_id: str | None = None,
    content: str | None = None,
    message_type: str = "Text",
    file_url: str | None = None,
    is_read: bool = False,
) -> dict[str, Any]:
    return {
        "id": message_id,
        "sender_id": sender_id,
        "community_id": community_id,
        "receiver_id": receiver_id,
        "content": content if content is not None else f"message {message_id}",
        "message_type": message_type,
        "file_url": file_url,
        "sent_at": ts(seconds),
        "is_read": is_read,
    }


def make_dm_row(
    message_id: int,
    seconds: float,
    sender_id: str = "alice",
    receiver_id: str = "bob",
    **kwargs: Any,
) -> dict[str, Any]:
    return make_row(
        message_id,
        seconds,
        community_id=None,
        sender_id=sender_id,
        receiver_id=receiver_id,
        **kwargs,
    )


def make_message(
    message_id: int,
    seconds: float,
    channel_key: str = "community:1",
    **kwargs: Any,
) -> Message:
    if channel_key.startswith("dm:"):
        row = make_dm_row(message_id, seconds, **kwargs)
    else:
        community_id = int(channel_key.split(":", 1)[1])
        row = make_row(message_id, seconds, community_id=community_id, **kwargs)
    return message_from_row(row, channel_key)


def _row_key(row: dict[str, Any]) -> tuple[datetime, int]:
    return (as_utc(row["sent_at"]), row["id"])


def _is_before(row: dict[str, Any], cursor: HistoryCursor) -> bool:
    if cursor.id is None:
        return as_utc(row["sent_at"]) < cursor.sent_at
    return _row_key(row) < (cursor.sent_at, cursor.id)


def _is_after(row: dict[str, Any], cursor: HistoryCursor) -> bool:
    if cursor.id is None:
        return as_utc(row["sent_at"]) >= cursor.sent_at
    return _row_key(row) > (cursor.sent_at, cursor.id)


class FakeMessageStore:
    """In-memory message store with scriptable failures and gates.

    When ``bus`` is set, inserts and updates are published to it before the
    write call returns, so the live echo of a send arrives first.
    """

    def __init__(self, bus: InMemoryEventBus | None = None, *, next_id: int = 1) -> None:
        self.rows: dict[int, dict[str, Any]] = {}
        self.bus = bus
        self._ids = count(next_id)
        self.fetch_errors: list[Exception] = []
        self.insert_errors: list[Exception] = []
        self.update_errors: list[Exception] = []
        self.fetch_gate: asyncio.Event | None = None
        self.insert_gate: asyncio.Event | None = None
        self.fetch_calls: list[dict[str, Any]] = []
        self.inserted: list[dict[str, Any]] = []

    def seed(self, *rows: dict[str, Any]) -> None:
        for row in rows:
            self.rows[row["id"]] = dict(row)

    async def fetch_messages(
        self,
        channel: ChannelKey,
        *,
        before: HistoryCursor | None = None,
        after: HistoryCursor | None = None,
        limit: int,
    ) -> list[dict[str, Any]]:
        self.fetch_calls.append(
            {"channel": str(channel), "before": before, "after": after, "limit": limit}
        )
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)

        rows = sorted((row for row in self.rows.values() if channel.matches(row)), key=_row_key)
        if before is not None:
            rows = [row for row in rows if _is_before(row, before)]
        if after is not None:
            rows = [row for row in rows if _is_after(row, after)]
            return [dict(row) for row in rows[:limit]]
        return [dict(row) for row in rows[-limit:]]

    async def insert_message(self, record: dict[str, Any]) -> dict[str, Any]:
        if self.insert_gate is not None:
            await self.insert_gate.wait()
        if self.insert_errors:
            raise self.insert_errors.pop(0)
        row = {**record, "id": next(self._ids)}
        self.rows[row["id"]] = row
        self.inserted.append(dict(row))
        if self.bus is not None:
            self.bus.publish("insert", row)
        return dict(row)

    async def update_message(self, message_id: int, fields: dict[str, Any]) -> dict[str, Any]:
        if self.update_errors:
            raise self.update_errors.pop(0)
        row = self.rows.get(message_id)
        if row is None:
            raise PersistenceWriteError(f"Message {message_id} not found")
        row.update(fields)
        if self.bus is not None:
            self.bus.publish("update", row)
        return dict(row)


async def settle() -> None:
    """Let every ready task run until the loop goes idle."""
    for _ in range(10):
        await asyncio.sleep(0)


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> Iterator[sessionmaker[Session]]:
    factory = sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    try:
        yield factory
    finally:
        # Ensure each test sees a clean database even if commits occurred.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture()
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture()
def store() -> FakeMessageStore:
    return FakeMessageStore()


@pytest.fixture()
def sync(store: FakeMessageStore, bus: InMemoryEventBus) -> ConversationSync:
    return ConversationSync(store, bus, page_size=3, retry_delay_seconds=0.0)


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture()
def client(app: FastAPI, sync: ConversationSync) -> Iterator[TestClient]:
    app.dependency_overrides[get_conversation_sync] = lambda: sync
    try:
        with TestClient(app, base_url="http://test") as test_client:
            yield test_client
    finally:
        app.dependency_overrides.pop(get_conversation_sync, None)


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Provide a Settings instance aligned with runtime configuration."""
    return _TEST_SETTINGS_INSTANCE
