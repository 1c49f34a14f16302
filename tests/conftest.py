# tests/conftest.py
from collections.abc import Iterator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from config import Settings
from crypto_utils import RoomKey, derive_key, derive_room_id
from main import create_app

PASSPHRASE = "correct horse battery staple"
OTHER_PASSPHRASE = "a completely different secret"


@pytest.fixture(scope="session")
def room_id() -> str:
    return derive_room_id(PASSPHRASE)


@pytest.fixture(scope="session")
def other_room_id() -> str:
    return derive_room_id(OTHER_PASSPHRASE)


@pytest.fixture(scope="session")
def room_key() -> RoomKey:
    return derive_key(PASSPHRASE)


@pytest.fixture(scope="session")
def other_room_key() -> RoomKey:
    return derive_key(OTHER_PASSPHRASE)


@pytest.fixture()
def test_settings(tmp_path) -> Settings:
    return Settings(DATA_DIR=str(tmp_path), MAX_UPLOAD_BYTES=2 * 1024 * 1024)


@pytest.fixture()
def app(test_settings: Settings) -> FastAPI:
    return create_app(test_settings)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    # The context manager keeps one event loop for every request and socket
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


def join(ws, room_id: str, identity: str) -> dict:
    """Send a join and return the online_count it triggers on the same socket."""
    ws.send_json({"type": "join", "room_id": room_id, "identity": identity})
    message = ws.receive_json()
    assert message["type"] == "online_count"
    return message
