# tests/test_client.py
import random

import httpx
import pytest

from client import ChatMessage, RoomClient, decode_history, reconnect_delay, RECONNECT_MAX_DELAY
from models import MessageLine
from tests.conftest import OTHER_PASSPHRASE, PASSPHRASE


@pytest.fixture()
def alice(app):
    transport = httpx.ASGITransport(app=app)
    return RoomClient("http://test", PASSPHRASE, "alice",
                      http_client=httpx.AsyncClient(transport=transport, base_url="http://test"))


def test_reconnect_delay_is_bounded() -> None:
    rng = random.Random(7)
    for attempt in range(12):
        delay = reconnect_delay(attempt, rng)
        assert 0.0 <= delay <= RECONNECT_MAX_DELAY * 1.5
    assert reconnect_delay(0, random.Random(1)) <= 1.5
    assert min(reconnect_delay(10, rng) for _ in range(100)) >= RECONNECT_MAX_DELAY * 0.5


def test_ws_url_follows_the_http_scheme() -> None:
    assert RoomClient("https://chat.example.org/", PASSPHRASE, "a").ws_url == "wss://chat.example.org/ws"
    assert RoomClient("http://localhost:3001", PASSPHRASE, "a").ws_url == "ws://localhost:3001/ws"


def test_identity_is_stable_per_client() -> None:
    client = RoomClient("http://test", PASSPHRASE, "alice")
    first = client.build_envelope("one")
    second = client.build_envelope("two")
    assert first["encrypted_display_name"] == second["encrypted_display_name"] == client.identity
    assert first["iv"] != second["iv"]


def test_decode_event(alice: RoomClient) -> None:
    bob = RoomClient("http://test", PASSPHRASE, "bob")
    stranger = RoomClient("http://test", OTHER_PASSPHRASE, "eve")

    event = {"type": "message", "envelope": bob.build_envelope("hi alice")}
    decoded = alice.decode_event(event)
    assert decoded["message"].text == "hi alice"
    assert decoded["message"].display_name == "bob"
    assert stranger.decode_event(event) is None

    joined = alice.decode_event({"type": "user_joined", "identity": bob.identity})
    assert joined["display_name"] == "bob"
    assert stranger.decode_event({"type": "typing", "identity": bob.identity}) is None

    assert alice.decode_event({"type": "online_count", "count": 2}) == {"type": "online_count", "count": 2}


def test_file_envelope_carries_a_structured_payload(alice: RoomClient) -> None:
    envelope = alice.build_file_envelope("ab" * 16, "cat.png", "image/png", 123)
    message = alice.decode_event({"type": "message", "envelope": envelope})["message"]
    assert message.payload == {
        "type": "file",
        "file": {"file_id": "ab" * 16, "name": "cat.png", "mime": "image/png", "size": 123},
    }
    assert ChatMessage("plain", "alice", 1).payload == "plain"


@pytest.mark.asyncio
async def test_history_replay_over_http(alice: RoomClient, app) -> None:
    await app.state.hub.log.append(alice.room_id, MessageLine(**alice.build_envelope("first")))
    await app.state.hub.log.append(alice.room_id, MessageLine(**alice.build_envelope("second")))

    history = await alice.fetch_history()
    assert [m.text for m in history] == ["first", "second"]
    await alice.aclose()


@pytest.mark.asyncio
async def test_file_round_trip_over_http(alice: RoomClient, app) -> None:
    data = bytes(range(256)) * 40
    file_id = await alice.upload_file(data, "blob.bin")
    assert await alice.download_file(file_id) == data

    meta = await app.state.blobs.get_meta(alice.room_id, file_id)
    assert meta.size == len(data)
    assert meta.encrypted_display_name == alice.identity
    await alice.aclose()


@pytest.mark.asyncio
async def test_emit_requires_a_connection(alice: RoomClient) -> None:
    with pytest.raises(ConnectionError):
        await alice.send_text("nobody listening")
    await alice.aclose()


def test_decode_history_uses_only_this_room_key() -> None:
    alice = RoomClient("http://test", PASSPHRASE, "alice")
    stranger = RoomClient("http://test", OTHER_PASSPHRASE, "eve")
    lines = [MessageLine(**alice.build_envelope("secret")).model_dump_json()]
    assert [m.text for m in decode_history(alice.key, lines)] == ["secret"]
    assert decode_history(stranger.key, lines) == []
