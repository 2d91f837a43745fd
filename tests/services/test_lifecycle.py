import asyncio
from unittest.mock import AsyncMock

import pytest

from chorus_chat.schemas.channel import ChannelStatus
from chorus_chat.services.addressing import resolve_community
from chorus_chat.services.errors import TransientFetchError
from chorus_chat.services.event_bus import InMemoryEventBus
from chorus_chat.services.history import HistoryLoader
from chorus_chat.services.lifecycle import SubscriptionLifecycleManager
from chorus_chat.services.merge import MergeEngine
from tests.conftest import FakeMessageStore, make_row, settle, ts

CHANNEL = resolve_community(1)


def _manager(bus: InMemoryEventBus, store: FakeMessageStore) -> SubscriptionLifecycleManager:
    history = HistoryLoader(store, page_size=3, max_retries=1, sleep=AsyncMock())
    return SubscriptionLifecycleManager(bus, history, gap_page_size=2)


def _engine() -> MergeEngine:
    engine = MergeEngine(str(CHANNEL), generation=1)
    engine.begin_loading()
    engine.mark_ready()
    return engine


@pytest.mark.asyncio
async def test_open_twice_keeps_a_single_subscription(
    bus: InMemoryEventBus, store: FakeMessageStore
) -> None:
    manager = _manager(bus, store)
    engine = _engine()
    first = await manager.open_channel(CHANNEL, engine)
    second = await manager.open_channel(CHANNEL, engine)

    assert first is second
    assert bus.subscription_count(CHANNEL) == 1

    bus.publish("insert", make_row(1, 1))
    assert [message.id for message in engine.messages] == [1]


@pytest.mark.asyncio
async def test_close_is_idempotent_and_stops_delivery(
    bus: InMemoryEventBus, store: FakeMessageStore
) -> None:
    manager = _manager(bus, store)
    engine = _engine()
    await manager.open_channel(CHANNEL, engine)

    await manager.close_channel(CHANNEL)
    await manager.close_channel(CHANNEL)
    bus.publish("insert", make_row(1, 1))

    assert len(engine) == 0
    assert bus.subscription_count() == 0
    assert manager.is_open(CHANNEL) is False


@pytest.mark.asyncio
async def test_gap_recovery_converges_to_the_no_drop_state(
    bus: InMemoryEventBus, store: FakeMessageStore
) -> None:
    store.seed(make_row(1, 1), make_row(2, 2), make_row(3, 3))
    manager = _manager(bus, store)
    engine = _engine()
    await manager.open_channel(CHANNEL, engine)
    engine.apply_history_page(await manager.history.fetch_page(CHANNEL))

    bus.drop(CHANNEL)
    # Written while the feed was down; never delivered live.
    store.seed(make_row(4, 4), make_row(5, 5), make_row(6, 5))
    await manager.wait_for_recovery(CHANNEL)

    reference = _engine()
    reference.apply_history_page(await manager.history.fetch_since(CHANNEL, ts(0)))
    assert engine.snapshot().messages == reference.snapshot().messages
    assert [message.id for message in engine.messages] == [1, 2, 3, 4, 5, 6]

    assert store.fetch_calls[1]["after"].sent_at == ts(3)
    assert bus.subscription_count(CHANNEL) == 1
    bus.publish("insert", make_row(7, 7))
    assert engine.get(7) is not None


@pytest.mark.asyncio
async def test_drop_before_any_history_reloads_latest_page(
    bus: InMemoryEventBus, store: FakeMessageStore
) -> None:
    store.seed(make_row(1, 1), make_row(2, 2))
    manager = _manager(bus, store)
    engine = _engine()
    await manager.open_channel(CHANNEL, engine)

    bus.drop(CHANNEL)
    await manager.wait_for_recovery(CHANNEL)

    assert [message.id for message in engine.messages] == [1, 2]
    assert store.fetch_calls[0]["after"] is None


@pytest.mark.asyncio
async def test_failed_gap_recovery_moves_channel_to_error(
    bus: InMemoryEventBus, store: FakeMessageStore
) -> None:
    manager = _manager(bus, store)
    engine = _engine()
    await manager.open_channel(CHANNEL, engine)
    store.fetch_errors = [TransientFetchError("down"), TransientFetchError("down")]

    bus.drop(CHANNEL)
    await manager.wait_for_recovery(CHANNEL)

    assert engine.status is ChannelStatus.ERROR


@pytest.mark.asyncio
async def test_recovery_results_are_discarded_after_close(
    bus: InMemoryEventBus, store: FakeMessageStore
) -> None:
    store.seed(make_row(1, 1))
    manager = _manager(bus, store)
    engine = _engine()
    await manager.open_channel(CHANNEL, engine)
    store.fetch_gate = asyncio.Event()

    bus.drop(CHANNEL)
    await settle()
    await manager.close_channel(CHANNEL)
    store.fetch_gate.set()
    await settle()

    assert len(engine) == 0
    assert bus.subscription_count() == 0


@pytest.mark.asyncio
async def test_drop_of_a_closed_channel_is_ignored(
    bus: InMemoryEventBus, store: FakeMessageStore
) -> None:
    manager = _manager(bus, store)
    engine = _engine()
    await manager.open_channel(CHANNEL, engine)
    await manager.close_channel(CHANNEL)

    assert bus.drop(CHANNEL) == 0
    await settle()

    assert store.fetch_calls == []


@pytest.mark.asyncio
async def test_drop_on_empty_channel_reopens_paging_when_page_is_full(
    bus: InMemoryEventBus, store: FakeMessageStore
) -> None:
    manager = _manager(bus, store)
    engine = _engine()
    engine.set_has_older(False)
    await manager.open_channel(CHANNEL, engine)

    bus.drop(CHANNEL)
    store.seed(*(make_row(i, i) for i in range(1, 6)))
    await manager.wait_for_recovery(CHANNEL)

    assert [message.id for message in engine.messages] == [3, 4, 5]
    assert engine.has_older is True


@pytest.mark.asyncio
async def test_unexpected_resubscribe_failure_moves_channel_to_error(
    bus: InMemoryEventBus, store: FakeMessageStore, mocker
) -> None:
    manager = _manager(bus, store)
    engine = _engine()
    await manager.open_channel(CHANNEL, engine)
    mocker.patch.object(bus, "subscribe", AsyncMock(side_effect=RuntimeError("transport gone")))

    bus.drop(CHANNEL)
    await manager.wait_for_recovery(CHANNEL)

    assert engine.status is ChannelStatus.ERROR
    assert "transport gone" in engine.error
    assert manager.subscription_for(CHANNEL) is None
