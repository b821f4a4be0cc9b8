"""Tests for the re-optimization decision engine and sweep."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

import uuid
import pytest
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

from sqlalchemy.orm.exc import StaleDataError

from models.route_plan import RoutePlan
from schemas import CostBreakdown, PricedRoute, RouteEventType, RouteStop, SynthesisPath
from services.advisor import Unusable, Verified
from services.reoptimizer import (
    Decision, ReoptimizationMonitor, assess_significance, next_stop,
    reoptimize_if_needed, should_reoptimize,
)

JAM = {"congestion_level": "high", "current_speed": 9, "free_flow_speed": 30}
CLEAR_ROAD = {"congestion_level": "low", "current_speed": 48, "free_flow_speed": 50}
CLEAR_SKY = {"condition": "Clear", "description": "clear sky"}


def make_route(**overrides) -> RoutePlan:
    stops = [
        {"address": "Koramangala", "coordinates": {"lat": 12.93, "lng": 77.62}, "priority": "normal",
         "time_window": "anytime", "package_details": {}},
        {"address": "Indiranagar", "coordinates": {"lat": 12.97, "lng": 77.64}, "priority": "high",
         "time_window": "anytime", "package_details": {}},
    ]
    data = dict(
        id=uuid.uuid4(),
        deliveries=[{"address": s["address"]} for s in stops],
        route=[{**s, "order": i} for i, s in enumerate(stops, start=1)],
        route_legs=[],
        vehicle_data={"type": "van"},
        total_distance=7.0,
        estimated_time=25,
        cost_breakdown={"fuel": 82, "time": 800, "maintenance": 11, "tolls": 0, "total": 893},
        traffic_analysis={"delay_min": 0, "avg_speed_kmh": 17},
        status="draft",
        active_leg=0,
        is_stationary=True,
        is_archived=False,
        generated_by="advisor",
    )
    data.update(overrides)
    return RoutePlan(**data)


def make_priced() -> PricedRoute:
    return PricedRoute(
        route=[
            RouteStop(address="Indiranagar", order=1, coordinates={"lat": 12.97, "lng": 77.64}),
            RouteStop(address="Koramangala", order=2, coordinates={"lat": 12.93, "lng": 77.62}),
        ],
        total_distance=9.5,
        estimated_time=40,
        fuel_required_litres=1.2,
        diesel_price_used=93.5,
        cost_breakdown=CostBreakdown(fuel=111, time=800, maintenance=14, tolls=0),
        reasoning="[advisor-verified] Avoids the Sony signal jam.",
        generated_by="advisor",
        synthesis_path=SynthesisPath.ADVISOR_VERIFIED,
        optimization_model="llama-3.1-8b-instant",
    )


def make_db() -> AsyncMock:
    db = AsyncMock()
    db.add = MagicMock()
    return db


# ── Significance & gate ────────────────────────────────────

def test_low_speed_ratio_is_significant_delay():
    """Traffic below 60% of free flow is a significant delay."""
    delay, weather = assess_significance({"current_speed": 15, "free_flow_speed": 50}, CLEAR_SKY)
    assert delay is True
    assert weather is False


def test_high_congestion_is_significant_without_speeds():
    """High congestion counts even without speeds."""
    assert assess_significance({"congestion_level": "high"}, {})[0] is True


def test_moderate_traffic_is_not_significant():
    """Moderate traffic above the ratio is not significant."""
    assert assess_significance({"congestion_level": "moderate", "current_speed": 35, "free_flow_speed": 50}, {})[0] is False


def test_unreadable_speeds_are_ignored():
    """Speeds that are not numbers leave the delay signal to congestion alone."""
    traffic = {"current_speed": "12", "free_flow_speed": "60", "congestion_level": "moderate"}
    assert assess_significance(traffic, {})[0] is False
    assert assess_significance({**traffic, "congestion_level": "high"}, {})[0] is True


@pytest.mark.parametrize("condition, description", [
    ("Thunderstorm", "thunderstorm with heavy rain"),
    ("Rain", "moderate rain"),
    ("Snow", "light snow"),
    ("Clouds", "storm clouds gathering"),
])
def test_severe_weather_keywords(condition, description):
    """Storm, rain, snow and thunder mark severe weather."""
    assert assess_significance({}, {"condition": condition, "description": description})[1] is True


def test_gate_requires_advisor_yes():
    """Nothing is recomputed unless the advisor says yes."""
    assert should_reoptimize(False, True, True, "critical closure") is False


def test_gate_requires_a_local_signal_or_escalation():
    """Advisor yes also needs a local signal or an escalation word."""
    assert should_reoptimize(True, False, False, "minor slowdown") is False
    assert should_reoptimize(True, True, False, "") is True
    assert should_reoptimize(True, False, True, "") is True
    assert should_reoptimize(True, False, False, "Major accident reported") is True


def test_gate_is_idempotent():
    """The gate gives the same answer for the same inputs."""
    args = (True, False, True, "rain expected")
    assert {should_reoptimize(*args) for _ in range(10)} == {True}


def test_next_stop_before_departure_is_first():
    """A parked vehicle is heading to the first stop."""
    assert next_stop(make_route())["address"] == "Koramangala"


def test_next_stop_after_departure_is_following_leg():
    """A moving vehicle is heading to the stop after its active leg."""
    route = make_route(is_stationary=False, last_departed_at=datetime.utcnow(), active_leg=0)
    assert next_stop(route)["address"] == "Indiranagar"


def test_next_stop_clamps_to_last():
    """The next stop never runs past the last one."""
    route = make_route(is_stationary=False, active_leg=5)
    assert next_stop(route)["address"] == "Indiranagar"


# ── Per-route decision ─────────────────────────────────────

@pytest.mark.asyncio
async def test_jam_with_advisor_no_does_not_recompute():
    """A jam alone does not trigger recomputation."""
    db = make_db()
    route = make_route()
    synth = AsyncMock()
    with patch("services.reoptimizer.assess_conditions",
               AsyncMock(return_value=Verified({"should_reoptimize": False, "reasoning": "Jam clears soon"}))), \
         patch("services.reoptimizer.synthesize", synth), \
         patch("services.reoptimizer.publish") as publish:
        decision = await reoptimize_if_needed(
            db, route,
            traffic={"congestion_level": "moderate", "current_speed": 15, "free_flow_speed": 50},
            weather=CLEAR_SKY,
        )

    assert decision.reoptimized is False
    assert decision.significant_delay is True
    synth.assert_not_called()
    db.add.assert_not_called()
    publish.assert_not_called()


@pytest.mark.asyncio
async def test_committed_reoptimization_updates_route_and_notifies():
    """A committed decision re-synthesizes, records and notifies."""
    db = make_db()
    route = make_route(status="draft")
    with patch("services.reoptimizer.assess_conditions",
               AsyncMock(return_value=Verified({"should_reoptimize": True, "reasoning": "Major jam on ORR"}))), \
         patch("services.reoptimizer.synthesize", AsyncMock(return_value=make_priced())), \
         patch("services.reoptimizer.publish") as publish:
        decision = await reoptimize_if_needed(db, route, traffic=JAM, weather=CLEAR_SKY)

    assert decision.reoptimized is True
    assert route.status == "active"
    assert route.total_distance == 9.5
    assert route.route[0]["address"] == "Indiranagar"
    assert route.cost_breakdown["total"] == 925
    update = db.add.call_args.args[0]
    assert update.decision == "reoptimized"
    assert update.should_reoptimize is True
    assert update.advisor_said_reoptimize is True
    db.commit.assert_awaited_once()
    assert publish.call_args.args[1] == RouteEventType.REOPTIMIZE


@pytest.mark.asyncio
async def test_unusable_verdict_counts_as_no():
    """An unusable verdict is treated as no."""
    db = make_db()
    with patch("services.reoptimizer.assess_conditions", AsyncMock(return_value=Unusable("AdvisorTimeout"))), \
         patch("services.reoptimizer.synthesize", AsyncMock()) as synth, \
         patch("services.reoptimizer.publish"):
        decision = await reoptimize_if_needed(db, make_route(), traffic=JAM, weather=CLEAR_SKY)
    assert decision.reoptimized is False
    assert decision.advisor_said_reoptimize is False
    synth.assert_not_called()


@pytest.mark.asyncio
async def test_manual_check_always_records_and_notifies():
    """Manual checks are recorded even when nothing changes."""
    db = make_db()
    with patch("services.reoptimizer.assess_conditions",
               AsyncMock(return_value=Verified({"should_reoptimize": False, "reasoning": ""}))), \
         patch("services.reoptimizer.publish") as publish:
        decision = await reoptimize_if_needed(
            db, make_route(), traffic=CLEAR_ROAD, weather=CLEAR_SKY, record_always=True,
        )

    assert decision.reoptimized is False
    assert decision.update.decision == "unchanged"
    assert "most efficient path" in decision.reasoning
    db.commit.assert_awaited_once()
    assert publish.call_args.args[1] == RouteEventType.UPDATE


@pytest.mark.asyncio
async def test_live_conditions_fetched_at_next_stop():
    """Live readings are taken at the next stop."""
    with patch("services.reoptimizer.get_traffic", AsyncMock(return_value=CLEAR_ROAD)) as traffic, \
         patch("services.reoptimizer.get_weather", AsyncMock(return_value=CLEAR_SKY)), \
         patch("services.reoptimizer.assess_conditions",
               AsyncMock(return_value=Verified({"should_reoptimize": False, "reasoning": "fine"}))):
        await reoptimize_if_needed(make_db(), make_route(is_stationary=False, active_leg=0))
    traffic.assert_awaited_once_with(12.97, 77.64)


# ── Sweep ──────────────────────────────────────────────────

class FakeSession:
    def __init__(self, routes):
        self.routes = routes

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def get(self, model, route_id):
        return self.routes.get(route_id)


def _decision(reoptimized):
    return Decision(reoptimized, reoptimized, True, False, "test")


@pytest.mark.asyncio
async def test_sweep_isolates_failing_candidates():
    """One failing route does not stop the sweep."""
    ok, broken, stale = make_route(), make_route(), make_route()
    routes = {r.id: r for r in (ok, broken, stale)}

    async def fake_decide(db, route, on_reoptimize=None):
        if route is broken:
            raise RuntimeError("provider exploded")
        if route is stale:
            raise StaleDataError("version mismatch")
        on_reoptimize()
        return _decision(True)

    monitor = ReoptimizationMonitor(concurrency=2, session_factory=lambda: FakeSession(routes))
    with patch.object(monitor, "candidate_ids", AsyncMock(return_value=list(routes))), \
         patch("services.reoptimizer.reoptimize_if_needed", AsyncMock(side_effect=fake_decide)):
        changed = await monitor.sweep()

    assert changed == 1
    assert monitor.state == {}


@pytest.mark.asyncio
async def test_route_already_in_flight_is_skipped():
    """Routes already being checked are skipped."""
    route = make_route()
    monitor = ReoptimizationMonitor(session_factory=lambda: FakeSession({route.id: route}))
    monitor.state[route.id] = "reoptimizing"

    with patch("services.reoptimizer.reoptimize_if_needed", AsyncMock()) as decide:
        assert await monitor.check_route(route.id) is None
    decide.assert_not_called()
    assert monitor.state[route.id] == "reoptimizing"


@pytest.mark.asyncio
async def test_archived_route_is_ignored():
    """Archived routes are left alone."""
    route = make_route(is_archived=True)
    monitor = ReoptimizationMonitor(session_factory=lambda: FakeSession({route.id: route}))
    with patch("services.reoptimizer.reoptimize_if_needed", AsyncMock()) as decide:
        assert await monitor.check_route(route.id) is None
    decide.assert_not_called()


@pytest.mark.asyncio
async def test_empty_sweep():
    """A sweep with no candidates does nothing."""
    monitor = ReoptimizationMonitor(session_factory=lambda: FakeSession({}))
    with patch.object(monitor, "candidate_ids", AsyncMock(return_value=[])):
        assert await monitor.sweep() == 0
