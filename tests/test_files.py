# tests/test_files.py
import json
import os

import httpx
import pytest
from fastapi.testclient import TestClient

from crypto_utils import RoomKey, decrypt_bytes, encrypt_bytes, encrypt_display_name


def _meta(room_key: RoomKey, iv: str, size: int, **extra) -> dict:
    return {
        "iv": iv,
        "encrypted_display_name": encrypt_display_name(room_key, "alice"),
        "name": "report.pdf",
        "mime": "application/pdf",
        "size": size,
        **extra,
    }


def _upload(client: TestClient, room_id: str, blob: bytes, meta) -> httpx.Response:
    headers = {"x-file-meta": meta if isinstance(meta, str) else json.dumps(meta)}
    return client.post(
        f"/upload/{room_id}",
        files={"file": ("encrypted.bin", blob, "application/octet-stream")},
        headers=headers,
    )


def test_upload_download_round_trip(client: TestClient, room_id: str, room_key: RoomKey) -> None:
    data = os.urandom(300 * 1024)
    iv, blob = encrypt_bytes(room_key, data)

    response = _upload(client, room_id, blob, _meta(room_key, iv, len(data)))
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    file_id = body["file_id"]
    assert len(file_id) == 32

    meta = client.get(f"/files/{room_id}/{file_id}/meta")
    assert meta.status_code == 200
    assert meta.json()["room_id"] == room_id
    assert meta.json()["name"] == "report.pdf"
    assert meta.json()["size"] == len(data)

    download = client.get(f"/files/{room_id}/{file_id}")
    assert download.status_code == 200
    assert download.headers["content-type"] == "application/octet-stream"
    assert download.content == blob
    assert decrypt_bytes(room_key, meta.json()["iv"], download.content) == data


def test_each_upload_gets_a_fresh_id(client: TestClient, room_id: str, room_key: RoomKey) -> None:
    iv, blob = encrypt_bytes(room_key, b"same bytes")
    ids = {_upload(client, room_id, blob, _meta(room_key, iv, 10)).json()["file_id"] for _ in range(3)}
    assert len(ids) == 3


def test_blob_is_scoped_to_its_room(client: TestClient, room_id: str, other_room_id: str, room_key: RoomKey) -> None:
    iv, blob = encrypt_bytes(room_key, b"secret")
    file_id = _upload(client, room_id, blob, _meta(room_key, iv, 6)).json()["file_id"]

    assert client.get(f"/files/{other_room_id}/{file_id}").status_code == 403
    assert client.get(f"/files/{other_room_id}/{file_id}/meta").status_code == 403


def test_unknown_blob_is_404(client: TestClient, room_id: str) -> None:
    assert client.get(f"/files/{room_id}/{'0' * 32}").status_code == 404
    assert client.get(f"/files/{room_id}/{'0' * 32}/meta").status_code == 404


def test_missing_bytes_are_404(client: TestClient, app, room_id: str, room_key: RoomKey) -> None:
    iv, blob = encrypt_bytes(room_key, b"gone soon")
    file_id = _upload(client, room_id, blob, _meta(room_key, iv, 9)).json()["file_id"]
    (app.state.blobs.directory / f"{file_id}.enc").unlink()

    assert client.get(f"/files/{room_id}/{file_id}").status_code == 404
    # The sidecar survives, so metadata is still served
    assert client.get(f"/files/{room_id}/{file_id}/meta").status_code == 200


@pytest.mark.parametrize(
    "room,file_id",
    [("not-a-room", "0" * 32), ("0" * 64, "../../etc/passwd"), ("0" * 64, "A" * 32), ("0" * 64, "0" * 31)],
)
def test_malformed_ids_never_resolve(client: TestClient, room: str, file_id: str) -> None:
    assert client.get(f"/files/{room}/{file_id}").status_code in (400, 404)
    assert client.get(f"/files/{room}/{file_id}/meta").status_code in (400, 404)


def test_invalid_file_id_is_400(client: TestClient, room_id: str) -> None:
    assert client.get(f"/files/{room_id}/{'g' * 32}").status_code == 400
    assert client.get(f"/files/{'z' * 64}/{'0' * 32}/meta").status_code == 400


def test_upload_rejects_bad_requests(client: TestClient, room_id: str, room_key: RoomKey) -> None:
    iv, blob = encrypt_bytes(room_key, b"x")

    assert _upload(client, "short", blob, _meta(room_key, iv, 1)).status_code == 400
    assert _upload(client, room_id, blob, "{not json").status_code == 400
    assert _upload(client, room_id, blob, {"iv": iv}).status_code == 400
    assert _upload(client, room_id, blob, _meta(room_key, iv, 1, size=-1)).status_code == 400

    no_file = client.post(f"/upload/{room_id}", headers={"x-file-meta": json.dumps(_meta(room_key, iv, 1))})
    assert no_file.status_code == 400
    assert no_file.json() == {"detail": "No file"}


def test_upload_over_ceiling_is_413_and_leaves_nothing(client: TestClient, app, room_id: str, room_key: RoomKey) -> None:
    ceiling = app.state.settings.MAX_UPLOAD_BYTES
    blob = os.urandom(ceiling + 1)

    response = _upload(client, room_id, blob, _meta(room_key, "aXY=", len(blob)))
    assert response.status_code == 413

    files_dir = app.state.blobs.directory
    assert list(files_dir.glob("*")) == []


def test_upload_at_ceiling_is_accepted(client: TestClient, app, room_id: str, room_key: RoomKey) -> None:
    blob = os.urandom(app.state.settings.MAX_UPLOAD_BYTES)
    response = _upload(client, room_id, blob, _meta(room_key, "aXY=", len(blob)))
    assert response.status_code == 200
