"""Tests for the routing advisor client: parsing, timeouts, tagged results."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from services.advisor import (
    AdvisorTimeout, AdvisorUnavailable, MalformedAdvisorResponse, Unusable, Verified,
    assess_conditions, build_route_prompt, check_health, extract_json, generate,
    parse_route_plan, request_route_plan,
)

STOPS = [
    {"address": "Connaught Place, Delhi", "priority": "normal", "time_window": "anytime"},
    {"address": "MI Road, Jaipur", "priority": "urgent", "time_window": "2 PM - 4 PM"},
]


def test_extract_json_bare():
    """A bare JSON reply parses directly."""
    assert extract_json('{"optimizedRoute": [2, 1]}') == {"optimizedRoute": [2, 1]}


def test_extract_json_fenced():
    """JSON inside a markdown fence is found."""
    text = 'Here you go:\n```json\n{"optimizedRoute": [1, 2]}\n```\nThanks'
    assert extract_json(text) == {"optimizedRoute": [1, 2]}


def test_extract_json_embedded():
    """JSON embedded in chatter is cut out."""
    text = 'Sure! The plan is {"optimizedRoute": [1], "reasoning": "only one"} hope it helps'
    assert extract_json(text)["reasoning"] == "only one"


def test_extract_json_garbage_raises():
    """Prose with no object is malformed."""
    with pytest.raises(MalformedAdvisorResponse):
        extract_json("I cannot help with that.")


def test_parse_route_plan_accepts_string_numbers():
    """Figures written as text with units are read as numbers."""
    plan = parse_route_plan(
        '{"optimizedRoute": [2, 1], "totalDistance": "270 km", '
        '"estimatedTime": "~330 minutes", "reasoning": "urgent first", "constraintsAlert": "null"}'
    )
    assert plan["order"] == [2, 1]
    assert plan["total_distance"] == 270.0
    assert plan["estimated_time"] == 330.0
    assert plan["reasoning"] == "urgent first"
    assert plan["constraints_alert"] is None


def test_parse_route_plan_missing_order_is_malformed():
    """A reply without a stop ordering is malformed."""
    with pytest.raises(MalformedAdvisorResponse):
        parse_route_plan('{"totalDistance": 10}')


def test_route_prompt_frames_vehicle_class():
    """The prompt carries truck or van economics and dispatcher notes."""
    truck = build_route_prompt(STOPS, {"type": "Heavy Truck", "capacity": 9000}, {})
    van = build_route_prompt(STOPS, {"type": "van", "capacity": 800}, {"notes": "avoid NH48"})
    assert "~4 km/L" in truck
    assert "~8 km/L" in van
    assert "avoid NH48" in van
    assert "2. Address: MI Road, Jaipur, Priority: urgent, Time Window: 2 PM - 4 PM" in van


@pytest.mark.asyncio
async def test_generate_times_out():
    """A slow completion is cut off at the configured timeout."""
    async def slow_completion(**kwargs):
        await asyncio.sleep(1)

    client = MagicMock()
    client.chat.completions.create = slow_completion
    with patch("services.advisor.get_client", return_value=client), \
         patch("services.advisor.settings.ADVISOR_TIMEOUT_SEC", 0.01):
        with pytest.raises(AdvisorTimeout):
            await generate("order these stops")


@pytest.mark.asyncio
async def test_generate_without_key_is_unavailable():
    """No API key means the advisor is unavailable."""
    with patch("services.advisor.settings.ADVISOR_API_KEY", None):
        with pytest.raises(AdvisorUnavailable):
            await generate("ping")


@pytest.mark.asyncio
async def test_request_route_plan_timeout_is_unusable():
    """A timeout becomes an Unusable result, not an exception."""
    with patch("services.advisor.generate", AsyncMock(side_effect=AdvisorTimeout("10s"))):
        result = await request_route_plan(STOPS, {"type": "van"}, {})
    assert isinstance(result, Unusable)
    assert "AdvisorTimeout" in result.reason


@pytest.mark.asyncio
async def test_request_route_plan_malformed_is_unusable():
    """Unparseable output becomes an Unusable result."""
    with patch("services.advisor.generate", AsyncMock(return_value="no json here")):
        result = await request_route_plan(STOPS, {"type": "van"}, {})
    assert isinstance(result, Unusable)


@pytest.mark.asyncio
async def test_request_route_plan_verified():
    """A clean reply is returned as Verified."""
    with patch("services.advisor.generate", AsyncMock(return_value='{"optimizedRoute": [2, 1]}')):
        result = await request_route_plan(STOPS, {"type": "van"}, {})
    assert isinstance(result, Verified)
    assert result.data["order"] == [2, 1]


@pytest.mark.asyncio
async def test_assess_conditions_string_verdict():
    """A "true" string verdict counts as yes."""
    reply = '{"shouldReoptimize": "true", "reasoning": "Major accident on NH48"}'
    with patch("services.advisor.generate", AsyncMock(return_value=reply)):
        result = await assess_conditions({"route": []}, {"congestion_level": "high"}, {})
    assert isinstance(result, Verified)
    assert result.data == {"should_reoptimize": True, "reasoning": "Major accident on NH48"}


@pytest.mark.asyncio
async def test_health_reports_missing_key():
    """Health is an error when no key is configured."""
    with patch("services.advisor.settings.ADVISOR_API_KEY", None):
        assert (await check_health())["status"] == "error"


@pytest.mark.asyncio
async def test_generate_wraps_unexpected_client_errors():
    """Errors outside the OpenAI hierarchy still surface as AdvisorUnavailable."""
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=KeyError("choices"))
    with patch("services.advisor.get_client", return_value=client):
        with pytest.raises(AdvisorUnavailable):
            await generate("order these stops")


@pytest.mark.parametrize("raw", [
    '{"optimizedRoute": [1], "totalDistance": NaN, "estimatedTime": Infinity}',
    '{"optimizedRoute": [1], "totalDistance": -12, "estimatedTime": "-45 minutes"}',
    '{"optimizedRoute": [1], "totalDistance": 0, "estimatedTime": {"min": 30}}',
])
def test_parse_route_plan_drops_unusable_figures(raw):
    """Non-finite, negative, zero or structured figures parse as missing."""
    plan = parse_route_plan(raw)
    assert plan["total_distance"] is None
    assert plan["estimated_time"] is None


def test_parse_route_plan_coerces_text_fields():
    """Reasoning and alerts always come back as text or None."""
    plan = parse_route_plan(
        '{"optimizedRoute": [1, 2], "reasoning": {"why": "closest"}, '
        '"constraintsAlert": ["window missed", "  "]}'
    )
    assert plan["reasoning"] is None
    assert plan["constraints_alert"] == "window missed"
