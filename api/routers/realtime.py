"""WebSocket endpoint for live route notifications."""

import logging
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from services.realtime import GENERAL_ROOM, hub, rooms_for_identity

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def route_socket(ws: WebSocket):
    """
    Clients start in ``general`` and send
    {"event": "authenticate", "user_id", "role", "company_id"} to join scoped rooms.
    """
    await hub.connect(ws)
    hub.join(ws, {GENERAL_ROOM})
    try:
        while True:
            message = await ws.receive_json()
            if isinstance(message, dict) and message.get("event") == "authenticate":
                rooms = rooms_for_identity(
                    user_id=message.get("user_id"),
                    role=message.get("role"),
                    company_id=message.get("company_id"),
                )
                hub.join(ws, rooms)
                await ws.send_json({"event": "authenticated", "data": {"rooms": sorted(rooms)}})
    except WebSocketDisconnect:
        pass
    except ValueError as e:
        logger.warning("Closing socket after bad message: %s", e)
    finally:
        hub.disconnect(ws)
