"""
Real-time transport — WebSocket room hub.

Clients connect to /ws and authenticate with
``{"event": "authenticate", "user_id", "role", "company_id"}``;
they are then joined to ``general``, ``role:<role>``, ``company:<id>`` and
``user:<id>``. ``emit`` sends one copy per socket no matter how many of the
target rooms it sits in.
"""

from __future__ import annotations
import json
import logging
from collections import defaultdict

from fastapi import WebSocket

logger = logging.getLogger(__name__)

GENERAL_ROOM = "general"


def rooms_for_identity(user_id=None, role=None, company_id=None) -> set[str]:
    rooms = {GENERAL_ROOM}
    if role:
        rooms.add(f"role:{role}")
    if company_id:
        rooms.add(f"company:{company_id}")
    if user_id:
        rooms.add(f"user:{user_id}")
    return rooms


class RoomHub:
    def __init__(self):
        self._rooms: dict[str, set[WebSocket]] = defaultdict(set)
        self._memberships: dict[WebSocket, set[str]] = {}

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._memberships[ws] = set()

    def join(self, ws: WebSocket, rooms: set[str]) -> None:
        for room in rooms:
            self._rooms[room].add(ws)
        self._memberships.setdefault(ws, set()).update(rooms)
        logger.info("Socket joined rooms: %s", sorted(rooms))

    def disconnect(self, ws: WebSocket) -> None:
        for room in self._memberships.pop(ws, set()):
            members = self._rooms.get(room)
            if members is None:
                continue
            members.discard(ws)
            if not members:
                del self._rooms[room]

    def members(self, rooms) -> set[WebSocket]:
        targets: set[WebSocket] = set()
        for room in rooms:
            targets |= self._rooms.get(room, set())
        return targets

    async def emit(self, rooms, event: str, payload: dict) -> int:
        """Send ``{"event", "data"}`` to every socket in any of ``rooms``. Returns sockets reached."""
        message = json.dumps({"event": event, "data": payload}, default=str)
        delivered = 0
        for ws in self.members(rooms):
            try:
                await ws.send_text(message)
                delivered += 1
            except Exception as e:
                logger.warning("Dropping dead socket during emit: %s", e)
                self.disconnect(ws)
        return delivered


hub = RoomHub()
