from typing import Any

from chorus_chat.services.errors import PersistenceWriteError, TransientFetchError
from tests.conftest import FakeMessageStore, make_dm_row, make_row


def test_open_community_channel_returns_loaded_state(client: Any, store: FakeMessageStore) -> None:
    store.seed(make_row(1, 1), make_row(2, 2))

    response = client.post("/api/v1/channels/", json={"community_id": 1})

    assert response.status_code == 200
    body = response.json()
    assert body["channel_key"] == "community:1"
    assert body["status"] == "ready"
    assert [message["id"] for message in body["messages"]] == [1, 2]


def test_open_direct_channel_normalizes_key(client: Any) -> None:
    response = client.post("/api/v1/channels/", json={"peer_ids": ["bob", "alice"]})
    assert response.status_code == 200
    assert response.json()["channel_key"] == "dm:alice:bob"


def test_open_requires_exactly_one_address(client: Any) -> None:
    response = client.post(
        "/api/v1/channels/",
        json={"community_id": 1, "peer_ids": ["alice", "bob"]},
    )
    assert response.status_code == 422


def test_unopened_channel_is_idle(client: Any) -> None:
    response = client.get("/api/v1/channels/community:5")
    assert response.status_code == 200
    assert response.json()["status"] == "idle"


def test_invalid_channel_key_is_rejected(client: Any) -> None:
    response = client.get("/api/v1/channels/group:5")
    assert response.status_code == 400


def test_send_message_round_trip(client: Any, store: FakeMessageStore) -> None:
    client.post("/api/v1/channels/", json={"peer_ids": ["alice", "bob"]})

    response = client.post(
        "/api/v1/channels/dm:alice:bob/messages",
        json={"sender_id": "alice", "content": "hi"},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "confirmed"
    assert body["message"]["id"] == 1
    assert store.inserted[0]["receiver_id"] == "bob"

    state = client.get("/api/v1/channels/dm:alice:bob").json()
    assert [message["content"] for message in state["messages"]] == ["hi"]


def test_send_to_unopened_channel_is_not_found(client: Any) -> None:
    response = client.post(
        "/api/v1/channels/community:1/messages",
        json={"sender_id": "alice", "content": "hi"},
    )
    assert response.status_code == 404


def test_send_rejects_empty_text(client: Any) -> None:
    client.post("/api/v1/channels/", json={"community_id": 1})
    response = client.post(
        "/api/v1/channels/community:1/messages",
        json={"sender_id": "alice", "content": "   "},
    )
    assert response.status_code == 422


def test_send_from_non_participant_is_bad_request(client: Any) -> None:
    client.post("/api/v1/channels/", json={"peer_ids": ["alice", "bob"]})
    response = client.post(
        "/api/v1/channels/dm:alice:bob/messages",
        json={"sender_id": "carol", "content": "hi"},
    )
    assert response.status_code == 400


def test_failed_send_retry_and_discard(client: Any, store: FakeMessageStore) -> None:
    client.post("/api/v1/channels/", json={"community_id": 1})
    store.insert_errors = [PersistenceWriteError("offline"), PersistenceWriteError("offline")]

    first = client.post(
        "/api/v1/channels/community:1/messages",
        json={"sender_id": "alice", "content": "one"},
    ).json()
    second = client.post(
        "/api/v1/channels/community:1/messages",
        json={"sender_id": "alice", "content": "two"},
    ).json()
    assert first["status"] == second["status"] == "failed"

    retried = client.post(f"/api/v1/channels/community:1/messages/{first['message']['id']}/retry")
    assert retried.status_code == 200
    assert retried.json()["status"] == "confirmed"

    discarded = client.delete(f"/api/v1/channels/community:1/messages/{second['message']['id']}")
    assert discarded.status_code == 204

    again = client.delete(f"/api/v1/channels/community:1/messages/{second['message']['id']}")
    assert again.status_code == 404

    state = client.get("/api/v1/channels/community:1").json()
    assert [message["content"] for message in state["messages"]] == ["one"]


def test_load_older(client: Any, store: FakeMessageStore) -> None:
    store.seed(*(make_row(i, i) for i in range(1, 6)))
    client.post("/api/v1/channels/", json={"community_id": 1})

    response = client.post("/api/v1/channels/community:1/older")

    assert response.status_code == 200
    assert response.json() == {"added": 2, "has_older": False, "status": "ready"}


def test_load_older_transient_failure_is_service_unavailable(
    client: Any, store: FakeMessageStore
) -> None:
    store.seed(*(make_row(i, i) for i in range(1, 6)))
    client.post("/api/v1/channels/", json={"community_id": 1})
    store.fetch_errors = [TransientFetchError("down") for _ in range(4)]

    response = client.post("/api/v1/channels/community:1/older")

    assert response.status_code == 503


def test_mark_read(client: Any, store: FakeMessageStore) -> None:
    store.seed(make_dm_row(4, 4, sender_id="bob", receiver_id="alice"))
    client.post("/api/v1/channels/", json={"peer_ids": ["alice", "bob"]})

    response = client.put("/api/v1/channels/dm:alice:bob/messages/4/read")

    assert response.status_code == 200
    assert response.json()["is_read"] is True


def test_mark_read_of_message_outside_channel_is_not_found(
    client: Any, store: FakeMessageStore
) -> None:
    store.seed(make_row(5, 5, community_id=2))
    client.post("/api/v1/channels/", json={"community_id": 1})
    client.post("/api/v1/channels/", json={"community_id": 2})

    response = client.put("/api/v1/channels/community:1/messages/5/read")

    assert response.status_code == 404
    assert store.rows[5]["is_read"] is False


def test_close_channel(client: Any) -> None:
    client.post("/api/v1/channels/", json={"community_id": 1})

    assert client.delete("/api/v1/channels/community:1").status_code == 204
    assert client.delete("/api/v1/channels/community:1").status_code == 204
    assert client.get("/api/v1/channels/community:1").json()["status"] == "idle"
