from typing import Dict, Optional
from fastapi import WebSocket
from logging_config import logger

class ConnectionManager:
    """Room membership: which identities are present, over which sockets.

    An identity is present while it has at least one live connection; the
    online count is the number of present identities, not of sockets.
    All methods that mutate state are synchronous so each one completes
    between two network events.
    """

    def __init__(self):
        # Structure: { room_id: { identity: { connection_id: websocket } } }
        self.rooms: Dict[str, Dict[str, Dict[str, WebSocket]]] = {}

    def connect(self, room_id: str, identity: str, connection_id: str, websocket: WebSocket) -> bool:
        """Register a connection. Returns True on the identity's 0 -> 1 transition."""
        identities = self.rooms.setdefault(room_id, {})
        sockets = identities.setdefault(identity, {})
        first = not sockets
        sockets[connection_id] = websocket
        return first

    def disconnect(self, room_id: str, identity: str, connection_id: str) -> bool:
        """Drop a connection. Returns True on the identity's 1 -> 0 transition."""
        identities = self.rooms.get(room_id)
        if not identities or identity not in identities:
            return False
        sockets = identities[identity]
        if sockets.pop(connection_id, None) is None:
            return False
        last = not sockets
        if last:
            identities.pop(identity, None)
        if not identities:
            self.rooms.pop(room_id, None)
        return last

    def online_count(self, room_id: str) -> int:
        return sum(1 for sockets in self.rooms.get(room_id, {}).values() if sockets)

    def connection_count(self, room_id: str) -> int:
        return sum(len(sockets) for sockets in self.rooms.get(room_id, {}).values())

    def is_present(self, room_id: str, identity: str) -> bool:
        return bool(self.rooms.get(room_id, {}).get(identity))

    async def broadcast_to_room(self, room_id: str, message: dict, exclude_connection: Optional[str] = None):
        # Snapshot the sockets first: sends yield, and joins/leaves may land meanwhile
        targets = [
            (connection_id, ws)
            for sockets in self.rooms.get(room_id, {}).values()
            for connection_id, ws in sockets.items()
            if connection_id != exclude_connection
        ]
        for connection_id, ws in targets:
            try:
                await ws.send_json(message)
            except Exception as e:
                # The owning handler notices the dead socket and runs the leave logic
                logger.debug(f"Send to {connection_id} failed: {e}")
