import asyncio

import pytest

from chorus_chat.schemas.channel import ChannelStatus
from chorus_chat.schemas.message import DeliveryStatus, MessageDraft, MessageKind
from chorus_chat.services.addressing import resolve_community, resolve_direct
from chorus_chat.services.errors import ChannelPermissionError, PersistenceWriteError
from chorus_chat.services.merge import MergeEngine
from chorus_chat.services.sender import OptimisticSender, next_temp_id
from tests.conftest import FakeMessageStore, settle, ts


def _sender(store: FakeMessageStore, channel=None) -> OptimisticSender:
    channel = channel or resolve_direct("alice", "bob")
    engine = MergeEngine(str(channel), generation=1)
    engine.begin_loading()
    engine.mark_ready()
    return OptimisticSender(channel, engine, store, clock=lambda: ts(30))


def test_temporary_ids_are_negative_and_unique() -> None:
    ids = {next_temp_id() for _ in range(100)}
    assert len(ids) == 100
    assert all(temp_id < 0 for temp_id in ids)


@pytest.mark.asyncio
async def test_pending_entry_is_visible_before_the_write_resolves() -> None:
    store = FakeMessageStore(next_id=101)
    store.insert_gate = asyncio.Event()
    sender = _sender(store)

    task = asyncio.create_task(sender.send(MessageDraft(sender_id="alice", content="hi")))
    await settle()

    [pending] = sender.engine.messages
    assert pending.is_temporary
    assert pending.status is DeliveryStatus.PENDING
    assert pending.receiver_id == "bob"
    assert sender.in_flight == {pending.id: None}

    store.insert_gate.set()
    confirmed = await task

    assert confirmed.id == 101
    assert confirmed.status is DeliveryStatus.CONFIRMED
    assert [message.id for message in sender.engine.messages] == [101]
    assert sender.in_flight == {}


@pytest.mark.asyncio
async def test_community_send_carries_community_id() -> None:
    store = FakeMessageStore()
    sender = _sender(store, resolve_community(7))
    await sender.send(MessageDraft(sender_id="alice", content="hello"))
    [row] = store.inserted
    assert row["community_id"] == 7
    assert row["receiver_id"] is None
    assert row["sent_at"] == ts(30)


@pytest.mark.asyncio
async def test_attachment_send_infers_kind() -> None:
    store = FakeMessageStore()
    sender = _sender(store)
    message = await sender.send(
        MessageDraft(sender_id="bob", file_url="https://cdn.example/cat.PNG?v=2")
    )
    assert message.message_type is MessageKind.IMAGE
    assert message.content == "Sent an attachment"
    assert store.inserted[0]["receiver_id"] == "alice"


@pytest.mark.asyncio
async def test_sender_outside_direct_channel_is_rejected() -> None:
    store = FakeMessageStore()
    sender = _sender(store)
    with pytest.raises(ValueError):
        await sender.send(MessageDraft(sender_id="carol", content="hi"))
    assert len(sender.engine) == 0
    assert store.inserted == []


@pytest.mark.asyncio
async def test_write_failure_marks_entry_failed() -> None:
    store = FakeMessageStore()
    store.insert_errors = [PersistenceWriteError("disk full")]
    sender = _sender(store)

    message = await sender.send(MessageDraft(sender_id="alice", content="hi"))

    assert message.status is DeliveryStatus.FAILED
    [entry] = sender.engine.messages
    assert entry.id == message.id
    assert entry.status is DeliveryStatus.FAILED
    assert sender.in_flight == {}


@pytest.mark.asyncio
async def test_retry_resends_failed_entry() -> None:
    store = FakeMessageStore(next_id=50)
    store.insert_errors = [PersistenceWriteError("timeout")]
    sender = _sender(store)
    failed = await sender.send(MessageDraft(sender_id="alice", content="hi"))

    confirmed = await sender.retry(failed.id)

    assert confirmed.id == 50
    assert confirmed.content == "hi"
    assert [message.id for message in sender.engine.messages] == [50]


@pytest.mark.asyncio
async def test_retry_and_discard_only_apply_to_failed_entries() -> None:
    store = FakeMessageStore(next_id=10)
    sender = _sender(store)
    await sender.send(MessageDraft(sender_id="alice", content="hi"))

    with pytest.raises(KeyError):
        await sender.retry(-999999)
    with pytest.raises(KeyError):
        sender.discard(10)

    store.insert_gate = asyncio.Event()
    task = asyncio.create_task(sender.send(MessageDraft(sender_id="alice", content="again")))
    await settle()
    pending_id = next(message.id for message in sender.engine.messages if message.is_temporary)
    with pytest.raises(ValueError):
        sender.discard(pending_id)
    store.insert_gate.set()
    await task


@pytest.mark.asyncio
async def test_discard_removes_failed_entry() -> None:
    store = FakeMessageStore()
    store.insert_errors = [PersistenceWriteError("timeout")]
    sender = _sender(store)
    failed = await sender.send(MessageDraft(sender_id="alice", content="hi"))

    removed = sender.discard(failed.id)

    assert removed.id == failed.id
    assert len(sender.engine) == 0


@pytest.mark.asyncio
async def test_permission_failure_fails_entry_and_channel() -> None:
    store = FakeMessageStore()
    store.insert_errors = [ChannelPermissionError("row level security")]
    sender = _sender(store)

    message = await sender.send(MessageDraft(sender_id="alice", content="hi"))

    assert message.status is DeliveryStatus.FAILED
    assert sender.engine.status is ChannelStatus.ERROR
