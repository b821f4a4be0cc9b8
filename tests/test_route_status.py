"""Tests for route lifecycle transitions."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

import pytest

from schemas import RouteEventType
from services.route_status import InvalidStatusTransition, check_transition, event_for_status


@pytest.mark.parametrize("current, requested", [
    ("draft", "active"),
    ("draft", "completed"),
    ("draft", "cancelled"),
    ("active", "completed"),
    ("active", "cancelled"),
    ("in-progress", "completed"),
])
def test_forward_moves_allowed(current, requested):
    """Forward status moves are accepted."""
    assert check_transition(current, requested) == requested


@pytest.mark.parametrize("current, requested", [
    ("active", "draft"),
    ("completed", "active"),
    ("completed", "draft"),
    ("cancelled", "active"),
    ("completed", "cancelled"),
])
def test_backward_and_terminal_moves_rejected(current, requested):
    """Backward moves and moves out of closed states are refused."""
    with pytest.raises(InvalidStatusTransition):
        check_transition(current, requested)


def test_same_status_is_noop():
    """Re-sending the current status is a no-op."""
    assert check_transition("active", "active") == "active"
    assert check_transition("completed", "completed") == "completed"


def test_in_progress_is_active():
    """The legacy in-progress status is read as active."""
    assert check_transition("in-progress", "active") == "active"


def test_completion_event():
    """Completing a route maps to the completion event."""
    assert event_for_status("completed") == RouteEventType.COMPLETION
    assert event_for_status("active") == RouteEventType.UPDATE
