import json
import uuid
from typing import Dict, List, Optional, Set
from fastapi import WebSocket
from pydantic import ValidationError
from connection_manager import ConnectionManager
from models import SystemLine
from schemas import JoinEvent, MessageEvent, PinEvent, ReactionEvent, ReadEvent, TypingEvent
from storage import PersistenceLog, SnapshotFile, SnapshotWriter
from utils import now_ms
from logging_config import logger


class RoomHub:
    """Server-wide room state shared by every connection.

    Holds presence (via the ConnectionManager), read watermarks, reactions and
    pins. Rooms never interact; every mutation is synchronous.
    """

    def __init__(self, manager: ConnectionManager, log: PersistenceLog,
                 likes_file: SnapshotFile, pins_file: SnapshotFile,
                 max_message_bytes: int = 1_000_000):
        self.manager = manager
        self.log = log
        self.max_message_bytes = max_message_bytes
        self.likes_file = likes_file
        self.pins_file = pins_file
        # { room_id: { message_timestamp: {plain display names} } }
        self.likes: Dict[str, Dict[int, Set[str]]] = {}
        # { room_id: { message_timestamp: {"timestamp": ..., "pinned_at": ...} } }
        self.pins: Dict[str, Dict[int, dict]] = {}
        # { room_id: { identity: up_to_timestamp } }, memory only
        self.read_marks: Dict[str, Dict[str, int]] = {}
        self._likes_writer = SnapshotWriter(likes_file)
        self._pins_writer = SnapshotWriter(pins_file)

    def load(self):
        for room_id, messages in self.likes_file.load().items():
            self.likes[room_id] = {int(ts): set(nicks) for ts, nicks in messages.items() if nicks}
        for room_id, pins in self.pins_file.load().items():
            self.pins[room_id] = {int(ts): dict(pin) for ts, pin in pins.items()}
        logger.info(f"Loaded reactions for {len(self.likes)} rooms, pins for {len(self.pins)} rooms")

    async def close(self):
        await self._likes_writer.close()
        await self._pins_writer.close()

    async def flush(self):
        await self._likes_writer.flush()
        await self._pins_writer.flush()

    # Reactions

    def toggle_like(self, room_id: str, message_timestamp: int, nick: str, liked: bool) -> List[str]:
        room = self.likes.setdefault(room_id, {})
        nicks = room.setdefault(message_timestamp, set())
        if liked:
            nicks.add(nick)
        else:
            nicks.discard(nick)
        if not nicks:
            room.pop(message_timestamp, None)
        if not room:
            self.likes.pop(room_id, None)
        self._likes_writer.submit(self.likes_snapshot())
        return sorted(nicks)

    def room_likes(self, room_id: str) -> Dict[str, List[str]]:
        return {str(ts): sorted(nicks) for ts, nicks in self.likes.get(room_id, {}).items() if nicks}

    def likes_snapshot(self) -> dict:
        snapshot = {}
        for room_id in self.likes:
            likes = self.room_likes(room_id)
            if likes:
                snapshot[room_id] = likes
        return snapshot

    # Pins

    def toggle_pin(self, room_id: str, message_timestamp: int, pinned: bool) -> List[dict]:
        room = self.pins.setdefault(room_id, {})
        if pinned:
            room[message_timestamp] = {"timestamp": message_timestamp, "pinned_at": now_ms()}
        else:
            room.pop(message_timestamp, None)
        if not room:
            self.pins.pop(room_id, None)
        self._pins_writer.submit(self.pins_snapshot())
        return self.pin_list(room_id)

    def pin_list(self, room_id: str) -> List[dict]:
        return sorted(self.pins.get(room_id, {}).values(), key=lambda pin: pin["timestamp"])

    def pins_snapshot(self) -> dict:
        return {
            room_id: {str(ts): pin for ts, pin in pins.items()}
            for room_id, pins in self.pins.items() if pins
        }

    # Read watermarks

    def set_read_mark(self, room_id: str, identity: str, up_to_timestamp: int):
        # Last write wins, an older timestamp is accepted too
        self.read_marks.setdefault(room_id, {})[identity] = up_to_timestamp

    def drop_read_mark(self, room_id: str, identity: str):
        marks = self.read_marks.get(room_id)
        if marks is None:
            return
        marks.pop(identity, None)
        if not marks:
            self.read_marks.pop(room_id, None)


class RoomSession:
    """Protocol state of a single realtime connection.

    disconnected -> joined(room_id, identity) -> disconnected. The session
    owns its membership entry and releases it in leave().
    """

    EVENTS = {
        "join": JoinEvent,
        "message": MessageEvent,
        "typing": TypingEvent,
        "stop_typing": TypingEvent,
        "read": ReadEvent,
        "like": ReactionEvent,
        "unlike": ReactionEvent,
        "pin": PinEvent,
        "unpin": PinEvent,
    }

    def __init__(self, hub: RoomHub, websocket: WebSocket, connection_id: Optional[str] = None):
        self.hub = hub
        self.websocket = websocket
        self.connection_id = connection_id or uuid.uuid4().hex
        self.room_id: Optional[str] = None
        self.identity: Optional[str] = None

    async def send(self, message: dict):
        await self.websocket.send_json(message)

    async def send_error(self, message: str):
        await self.send({"type": "error", "message": message})

    async def handle(self, raw: str):
        """Validate one inbound frame and dispatch it. Invalid frames mutate nothing."""
        if len(raw.encode("utf-8")) > self.hub.max_message_bytes:
            await self.send_error("Message too large")
            return
        try:
            data = json.loads(raw)
        except ValueError:
            await self.send_error("Invalid JSON")
            return
        if not isinstance(data, dict):
            await self.send_error("Malformed event")
            return

        event_type = data.pop("type", None)
        if event_type == "ping":
            await self.send({"type": "pong"})
            return
        if event_type == "pong":
            return
        schema = self.EVENTS.get(event_type)
        if schema is None:
            await self.send_error(f"Unknown event type: {event_type}")
            return
        try:
            event = schema.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Rejected {event_type} from {self.connection_id}: {e.error_count()} validation errors")
            await self.send_error(f"Malformed {event_type} event")
            return

        handler = getattr(self, f"on_{event_type}")
        await handler(event)

    async def _append_system(self, room_id: str, subtype: str, identity: str,
                             message_timestamp: Optional[int] = None):
        entry = SystemLine(subtype=subtype, encrypted_display_name=identity,
                           timestamp=now_ms(), message_timestamp=message_timestamp)
        try:
            await self.hub.log.append(room_id, entry)
        except OSError as e:
            logger.error(f"Failed to persist {subtype} event for room {room_id[:8]}: {e}")

    async def _broadcast_count(self, room_id: str):
        await self.hub.manager.broadcast_to_room(
            room_id, {"type": "online_count", "count": self.hub.manager.online_count(room_id)}
        )

    async def on_join(self, event: JoinEvent):
        if self.room_id is not None:
            await self.leave()

        manager = self.hub.manager
        self.room_id, self.identity = event.room_id, event.identity
        first = manager.connect(event.room_id, event.identity, self.connection_id, self.websocket)
        logger.info(
            f"Join room {event.room_id[:8]}: {manager.online_count(event.room_id)} present, "
            f"{manager.connection_count(event.room_id)} connections"
        )

        await self._broadcast_count(event.room_id)
        if first:
            await self._append_system(event.room_id, "join", event.identity)
            await manager.broadcast_to_room(
                event.room_id,
                {"type": "user_joined", "identity": event.identity},
                exclude_connection=self.connection_id,
            )

        pins = self.hub.pin_list(event.room_id)
        if pins:
            await self.send({"type": "pins_updated", "pins": pins})
        likes = self.hub.room_likes(event.room_id)
        if likes:
            await self.send({"type": "likes_snapshot", "likes": likes})

    async def leave(self):
        if self.room_id is None:
            return
        room_id, identity = self.room_id, self.identity
        self.room_id = self.identity = None

        manager = self.hub.manager
        last = manager.disconnect(room_id, identity, self.connection_id)
        await self._broadcast_count(room_id)
        if last:
            logger.info(f"Leave room {room_id[:8]}: {manager.online_count(room_id)} present")
            self.hub.drop_read_mark(room_id, identity)
            await self._append_system(room_id, "leave", identity)
            await manager.broadcast_to_room(room_id, {"type": "user_left", "identity": identity})

    async def on_message(self, event: MessageEvent):
        try:
            await self.hub.log.append(event.room_id, event.envelope)
        except OSError as e:
            logger.error(f"Failed to persist message for room {event.room_id[:8]}: {e}")
            await self.send_error("Storage write failed")
            return
        await self.hub.manager.broadcast_to_room(
            event.room_id, {"type": "message", "envelope": event.envelope.model_dump()}
        )

    async def on_typing(self, event: TypingEvent):
        await self.hub.manager.broadcast_to_room(
            event.room_id, {"type": "typing", "identity": event.identity},
            exclude_connection=self.connection_id,
        )

    async def on_stop_typing(self, event: TypingEvent):
        await self.hub.manager.broadcast_to_room(
            event.room_id, {"type": "stop_typing", "identity": event.identity},
            exclude_connection=self.connection_id,
        )

    async def on_read(self, event: ReadEvent):
        # Watermarks only exist for present identities; leave() drops them
        if self.room_id != event.room_id or not self.hub.manager.is_present(event.room_id, event.identity):
            await self.send_error("Not joined to this room")
            return
        self.hub.set_read_mark(event.room_id, event.identity, event.up_to_timestamp)
        # Sender included: the same identity may be open on other devices
        await self.hub.manager.broadcast_to_room(
            event.room_id,
            {"type": "read_by", "identity": event.identity, "up_to_timestamp": event.up_to_timestamp},
        )

    async def _reaction(self, event: ReactionEvent, liked: bool):
        identities = self.hub.toggle_like(event.room_id, event.message_timestamp, event.identity, liked)
        await self.hub.manager.broadcast_to_room(
            event.room_id,
            {"type": "liked", "message_timestamp": event.message_timestamp, "identities": identities},
        )

    async def on_like(self, event: ReactionEvent):
        await self._reaction(event, True)

    async def on_unlike(self, event: ReactionEvent):
        await self._reaction(event, False)

    async def _pin(self, event: PinEvent, action: str):
        pins = self.hub.toggle_pin(event.room_id, event.message_timestamp, action == "pin")
        await self.hub.manager.broadcast_to_room(
            event.room_id,
            {"type": "pins_updated", "pins": pins, "action": action, "by": event.identity},
        )
        if event.identity:
            await self._append_system(event.room_id, action, event.identity, event.message_timestamp)

    async def on_pin(self, event: PinEvent):
        await self._pin(event, "pin")

    async def on_unpin(self, event: PinEvent):
        await self._pin(event, "unpin")
