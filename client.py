"""Client side of the relay.

Everything readable happens here: the passphrase never leaves this process,
the server only ever receives room ids, encrypted names and ciphertext.
"""
import asyncio
import json
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Union

import httpx
import websockets
from pydantic import ValidationError

from crypto_utils import (
    AuthenticationError,
    RoomKey,
    decode_payload,
    decrypt_bytes,
    decrypt_display_name,
    decrypt_envelope,
    derive_room_credentials,
    encrypt_bytes,
    encrypt_display_name,
    encrypt_text,
)
from models import MessageLine, SystemLine, parse_log_line
from utils import now_ms
from logging_config import logger

RECONNECT_BASE_DELAY = 1.0
RECONNECT_MAX_DELAY = 5.0
RECONNECT_JITTER = 0.5


@dataclass
class ChatMessage:
    text: str
    display_name: str
    timestamp: int

    @property
    def payload(self):
        return decode_payload(self.text)


@dataclass
class SystemNotice:
    subtype: str
    display_name: str
    timestamp: int
    message_timestamp: Optional[int] = None


ChatEvent = Union[ChatMessage, SystemNotice]


def decode_line(key: RoomKey, entry: Union[MessageLine, SystemLine]) -> Optional[ChatEvent]:
    """Decrypt one parsed log entry; None when it was not written with this key."""
    if isinstance(entry, MessageLine):
        plain = decrypt_envelope(key, entry.model_dump())
        return ChatMessage(**plain) if plain else None
    try:
        name = decrypt_display_name(key, entry.encrypted_display_name)
    except AuthenticationError:
        return None
    return SystemNotice(entry.subtype, name, entry.timestamp, entry.message_timestamp)


def decode_history(key: RoomKey, lines: List[str]) -> List[ChatEvent]:
    """Replay a room log in order, silently dropping anything unreadable."""
    events = []
    for line in lines:
        try:
            entry = parse_log_line(line)
        except ValidationError:
            continue
        event = decode_line(key, entry)
        if event is not None:
            events.append(event)
    return events


def reconnect_delay(attempt: int, rng: random.Random = random) -> float:
    """Exponential backoff capped at RECONNECT_MAX_DELAY, with +/-50% jitter."""
    delay = min(RECONNECT_BASE_DELAY * (2 ** attempt), RECONNECT_MAX_DELAY)
    spread = delay * RECONNECT_JITTER
    return max(0.0, delay + rng.uniform(-spread, spread))


EventHandler = Callable[[dict], Awaitable[None]]


class RoomClient:
    """A participant in one room.

    The display name is encrypted once, so every connection and every
    reconnect of this client joins under the same identity.
    """

    def __init__(self, base_url: str, passphrase: str, display_name: str,
                 http_client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.display_name = display_name.strip()
        self.room_id, self.key = derive_room_credentials(passphrase)
        self.identity = encrypt_display_name(self.key, self.display_name)
        self._http = http_client
        self._ws = None
        self._stopped = False

    @classmethod
    async def create(cls, base_url: str, passphrase: str, display_name: str, **kwargs) -> "RoomClient":
        # PBKDF2 runs 100k rounds; keep it off the event loop
        return await asyncio.to_thread(cls, base_url, passphrase, display_name, **kwargs)

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(base_url=self.base_url, timeout=30.0)
        return self._http

    async def aclose(self):
        self._stopped = True
        if self._ws is not None:
            await self._ws.close()
        if self._http is not None:
            await self._http.aclose()

    # Envelopes

    def build_envelope(self, text: str) -> dict:
        iv, ciphertext = encrypt_text(self.key, text)
        return MessageLine(
            iv=iv, ciphertext=ciphertext, timestamp=now_ms(),
            encrypted_display_name=self.identity,
        ).model_dump()

    def build_file_envelope(self, file_id: str, name: str, mime: str, size: int) -> dict:
        payload = {"type": "file", "file": {"file_id": file_id, "name": name, "mime": mime, "size": size}}
        return self.build_envelope(json.dumps(payload))

    def decode_event(self, event: dict) -> Optional[dict]:
        """Decrypt the encrypted parts of a server event.

        Returns None for events that cannot be read with this room's key.
        """
        kind = event.get("type")
        if kind == "message":
            plain = decrypt_envelope(self.key, event.get("envelope") or {})
            if plain is None:
                return None
            return {"type": "message", "message": ChatMessage(**plain)}
        if kind in ("user_joined", "user_left", "typing", "stop_typing", "read_by"):
            try:
                name = decrypt_display_name(self.key, event.get("identity"))
            except AuthenticationError:
                return None
            return {**event, "display_name": name}
        if kind == "pins_updated" and event.get("by"):
            try:
                return {**event, "display_name": decrypt_display_name(self.key, event["by"])}
            except AuthenticationError:
                return {**event, "display_name": None}
        return event

    # HTTP

    async def fetch_history(self) -> List[ChatEvent]:
        response = await self.http.get(f"/history/{self.room_id}")
        response.raise_for_status()
        return decode_history(self.key, response.json()["lines"])

    async def upload_file(self, data: bytes, name: str, mime: str = "application/octet-stream") -> str:
        """Encrypt and upload an attachment. Returns the server's file id."""
        iv, blob = await asyncio.to_thread(encrypt_bytes, self.key, data)
        meta = {
            "iv": iv,
            "encrypted_display_name": self.identity,
            "name": name,
            "mime": mime,
            "size": len(data),
            "timestamp": now_ms(),
        }
        response = await self.http.post(
            f"/upload/{self.room_id}",
            files={"file": ("encrypted.bin", blob, "application/octet-stream")},
            headers={"x-file-meta": json.dumps(meta)},
        )
        response.raise_for_status()
        return response.json()["file_id"]

    async def download_file(self, file_id: str) -> bytes:
        meta = await self.http.get(f"/files/{self.room_id}/{file_id}/meta")
        meta.raise_for_status()
        blob = await self.http.get(f"/files/{self.room_id}/{file_id}")
        blob.raise_for_status()
        return await asyncio.to_thread(decrypt_bytes, self.key, meta.json()["iv"], blob.content)

    # Realtime

    @property
    def ws_url(self) -> str:
        if self.base_url.startswith("https://"):
            return "wss://" + self.base_url[len("https://"):] + "/ws"
        return "ws://" + self.base_url.split("://", 1)[-1] + "/ws"

    async def emit(self, event_type: str, **fields):
        if self._ws is None:
            raise ConnectionError("Not connected")
        await self._ws.send(json.dumps({"type": event_type, "room_id": self.room_id, **fields}))

    async def send_text(self, text: str):
        await self.emit("message", envelope=self.build_envelope(text))

    async def send_file(self, data: bytes, name: str, mime: str = "application/octet-stream"):
        file_id = await self.upload_file(data, name, mime)
        await self.emit("message", envelope=self.build_file_envelope(file_id, name, mime, len(data)))
        return file_id

    async def send_typing(self, typing: bool = True):
        await self.emit("typing" if typing else "stop_typing", identity=self.identity)

    async def send_read(self, up_to_timestamp: int):
        await self.emit("read", identity=self.identity, up_to_timestamp=up_to_timestamp)

    async def like(self, message_timestamp: int):
        await self.emit("like", message_timestamp=message_timestamp, identity=self.display_name)

    async def unlike(self, message_timestamp: int):
        await self.emit("unlike", message_timestamp=message_timestamp, identity=self.display_name)

    async def pin(self, message_timestamp: int):
        await self.emit("pin", message_timestamp=message_timestamp, identity=self.identity)

    async def unpin(self, message_timestamp: int):
        await self.emit("unpin", message_timestamp=message_timestamp, identity=self.identity)

    async def run(self, handler: EventHandler):
        """Stay connected until aclose(), re-joining after every reconnect."""
        attempt = 0
        while not self._stopped:
            try:
                async with websockets.connect(self.ws_url) as ws:
                    self._ws = ws
                    attempt = 0
                    await self.emit("join", identity=self.identity)
                    logger.info(f"Joined room {self.room_id[:8]}")
                    async for raw in ws:
                        await self._dispatch(raw, handler)
            except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as exc:
                logger.warning(f"Realtime connection lost: {exc}")
            finally:
                self._ws = None
            if self._stopped:
                break
            delay = reconnect_delay(attempt)
            attempt += 1
            await asyncio.sleep(delay)

    async def _dispatch(self, raw, handler: EventHandler):
        try:
            event = json.loads(raw)
        except ValueError:
            return
        if not isinstance(event, dict):
            return
        if event.get("type") == "ping":
            await self._ws.send(json.dumps({"type": "pong"}))
            return
        decoded = self.decode_event(event)
        if decoded is not None:
            await handler(decoded)
