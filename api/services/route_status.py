"""Route lifecycle rules: draft → active → completed, cancel from any open state."""

from schemas import RouteEventType, RouteStatus

# "in-progress" is written by older dispatch clients; treat it as active.
_ALIASES = {"in-progress": RouteStatus.ACTIVE.value}

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "draft": {"active", "completed", "cancelled"},
    "active": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}

OPEN_STATUSES = ("draft", "active", "in-progress")


class InvalidStatusTransition(Exception):
    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move route from '{current}' to '{requested}'")


def canonical(status: str) -> str:
    return _ALIASES.get(status, status)


def check_transition(current: str, requested: str) -> str:
    """
    Validate a status change and return the status to store.

    Same-state requests are accepted as no-ops.

    Raises:
        InvalidStatusTransition: backwards moves or moves out of a terminal state
    """
    current, requested = canonical(current), canonical(requested)
    if current == requested:
        return current
    if requested not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidStatusTransition(current, requested)
    return requested


def event_for_status(status: str) -> RouteEventType:
    if canonical(status) == RouteStatus.COMPLETED.value:
        return RouteEventType.COMPLETION
    return RouteEventType.UPDATE
