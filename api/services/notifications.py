"""
Notification Service — fans route lifecycle events out to dispatchers,
admins, the owning company and the assigned driver.

publish() only enqueues; a single dispatcher task drains the queue and
emits through the WebSocket hub. Overflow and emit failures are logged
and dropped, never retried, and never affect the write that caused them.
"""

from __future__ import annotations
import asyncio
import logging
from datetime import datetime, timezone

from config import settings
from schemas import RouteEventType, RouteNotification
from services.realtime import hub

logger = logging.getLogger(__name__)

EVENT_NAME = "route_notification"
STAFF_ROOMS = ("role:dispatcher", "role:admin")

_queue: asyncio.Queue | None = None


def get_queue() -> asyncio.Queue:
    global _queue
    if _queue is None:
        _queue = asyncio.Queue(maxsize=settings.NOTIFICATION_QUEUE_SIZE)
    return _queue


def route_name(route_id) -> str:
    """'Route #A1B2C3' from the last six characters of the id."""
    return f"Route #{str(route_id).replace('-', '')[-6:].upper()}"


def target_rooms(route) -> list[str]:
    """Dispatcher + admin always; company and driver when set. Deduplicated, ordered."""
    rooms = list(STAFF_ROOMS)
    if route.company_id:
        rooms.append(f"company:{route.company_id}")
    if route.driver_id:
        rooms.append(f"user:{route.driver_id}")
    return list(dict.fromkeys(rooms))


def build_payload(route, event_type: RouteEventType, message: str) -> dict:
    return RouteNotification(
        type=event_type,
        message=message,
        route_id=str(route.id),
        route_name=route_name(route.id),
        status=route.status,
        timestamp=datetime.now(timezone.utc).isoformat(),
    ).model_dump(mode="json")


def publish(route, event_type: RouteEventType, message: str) -> bool:
    """
    Queue a route event for delivery. Never raises, never blocks.

    Returns:
        True if the event was queued
    """
    try:
        item = (target_rooms(route), build_payload(route, event_type, message))
        get_queue().put_nowait(item)
    except asyncio.QueueFull:
        logger.warning("Notification queue full, dropping %s for route %s", event_type.value, route.id)
        return False
    except Exception as e:
        logger.error("Failed to queue %s notification for route %s: %s", event_type.value, route.id, e)
        return False
    return True


async def deliver(rooms: list[str], payload: dict) -> None:
    try:
        reached = await hub.emit(rooms, EVENT_NAME, payload)
        logger.debug("Notified %d sockets: %s %s", reached, payload["type"], payload["route_name"])
    except Exception as e:
        logger.error("Notification emit failed for %s: %s", payload.get("route_id"), e)


async def dispatcher_loop():
    """Background task draining the notification queue."""
    queue = get_queue()
    logger.info("Notification dispatcher started (queue size=%d)", queue.maxsize)
    while True:
        rooms, payload = await queue.get()
        try:
            await deliver(rooms, payload)
        finally:
            queue.task_done()
