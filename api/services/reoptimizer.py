"""
Re-optimization Decision Engine — decides whether live conditions justify
recomputing a route, and runs the periodic sweep over open routes.

Decision per route:
  1. Traffic + weather at the next unvisited stop
  2. Local significance: speed ratio < 0.6 or "high" congestion; storm/rain/snow/thunder
  3. Advisor verdict (advisory only, unusable counts as "no")
  4. Gate: advisor yes AND (delay OR severe weather OR "critical"/"major" in its reasoning)

Per-route state (idle → checking → reoptimizing → idle) lives in the
monitor so overlapping sweeps skip routes already being handled.
Cross-process safety comes from the RoutePlan version column.
"""

from __future__ import annotations
import asyncio
import logging
import math
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from config import settings
from db.database import async_session
from models.realtime_update import RealTimeUpdate
from models.route_plan import RoutePlan
from schemas import DeliveryStop, RouteConstraints, RouteEventType, VehicleProfile
from services.advisor import Verified, assess_conditions
from services.conditions import get_traffic, get_weather
from services.notifications import publish, route_name
from services.route_status import OPEN_STATUSES, check_transition
from services.route_synthesis import synthesize, to_columns

logger = logging.getLogger(__name__)

DELAY_SPEED_RATIO = 0.6
SEVERE_WEATHER_RE = re.compile(r"storm|rain|snow|thunder", re.IGNORECASE)
ESCALATION_RE = re.compile(r"critical|major", re.IGNORECASE)

UNCHANGED_MESSAGE = "Current route is still the most efficient path."


@dataclass
class Decision:
    reoptimized: bool
    advisor_said_reoptimize: bool
    significant_delay: bool
    severe_weather: bool
    reasoning: str
    update: RealTimeUpdate | None = None


# ── Pure decision logic ────────────────────────────────────

def _speed(value) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if math.isfinite(value) else None


def assess_significance(traffic: dict, weather: dict) -> tuple[bool, bool]:
    """Return (significant_delay, severe_weather) from raw condition readings."""
    current = _speed(traffic.get("current_speed"))
    free_flow = _speed(traffic.get("free_flow_speed"))
    speed_ratio = current / free_flow if current is not None and free_flow else None

    significant_delay = (
        (speed_ratio is not None and speed_ratio < DELAY_SPEED_RATIO)
        or traffic.get("congestion_level") == "high"
    )
    text = f"{weather.get('condition', '')} {weather.get('description', '')}"
    severe_weather = bool(SEVERE_WEATHER_RE.search(text))
    return significant_delay, severe_weather


def should_reoptimize(
    advisor_yes: bool,
    significant_delay: bool,
    severe_weather: bool,
    advisor_reasoning: str = "",
) -> bool:
    escalated = bool(ESCALATION_RE.search(advisor_reasoning or ""))
    return advisor_yes and (significant_delay or severe_weather or escalated)


def next_stop(route: RoutePlan) -> dict | None:
    """The stop the vehicle is heading to: active_leg + 1 once moving, else the first."""
    stops = route.route or route.deliveries or []
    if not stops:
        return None
    moving = route.last_departed_at is not None or not route.is_stationary
    idx = (route.active_leg or 0) + 1 if moving else 0
    return stops[min(idx, len(stops) - 1)]


async def current_conditions(stop: dict | None) -> tuple[dict, dict]:
    if not stop:
        return {"congestion_level": "moderate"}, {}
    coords = stop.get("coordinates") or {}
    lat, lng = coords.get("lat"), coords.get("lng")
    if lat is None or lng is None:
        return {"congestion_level": "moderate"}, await get_weather(address=stop.get("address"))
    traffic, weather = await asyncio.gather(get_traffic(lat, lng), get_weather(lat=lat, lng=lng))
    return traffic, weather


# ── Per-route decision ─────────────────────────────────────

async def reoptimize_if_needed(
    db: AsyncSession,
    route: RoutePlan,
    traffic: dict | None = None,
    weather: dict | None = None,
    record_always: bool = False,
    on_reoptimize: Callable[[], None] | None = None,
) -> Decision:
    """
    Run one decision for ``route`` and commit the outcome.

    Args:
        traffic/weather: Simulated readings; live providers are queried when omitted
        record_always: Persist a RealTimeUpdate and notify even when unchanged

    Raises:
        StaleDataError: the route was modified concurrently
        InvalidStatusTransition: the route is already closed
        LocationUnresolvable: a stop no longer geocodes during recomputation
    """
    if traffic is None or weather is None:
        live_traffic, live_weather = await current_conditions(next_stop(route))
        traffic = traffic if traffic is not None else live_traffic
        weather = weather if weather is not None else live_weather

    significant_delay, severe_weather = assess_significance(traffic, weather)

    verdict = await assess_conditions(
        {
            "route": route.route,
            "total_distance": route.total_distance,
            "estimated_time": route.estimated_time,
        },
        traffic, weather,
    )
    if isinstance(verdict, Verified):
        advisor_yes = verdict.data["should_reoptimize"]
        advisor_reasoning = verdict.data["reasoning"]
    else:
        advisor_yes, advisor_reasoning = False, verdict.reason

    committed = should_reoptimize(advisor_yes, significant_delay, severe_weather, advisor_reasoning)
    logger.info(
        "Route %s decision: advisor=%s delay=%s weather=%s -> %s",
        route.id, advisor_yes, significant_delay, severe_weather,
        "reoptimize" if committed else "keep",
    )

    if committed:
        new_status = check_transition(route.status, "active")
        if on_reoptimize:
            on_reoptimize()
        priced = await synthesize(
            [DeliveryStop(**d) for d in route.deliveries],
            VehicleProfile(**(route.vehicle_data or {})),
            RouteConstraints(traffic=True, weather=True),
        )
        for column, value in to_columns(priced).items():
            setattr(route, column, value)
        route.status = new_status

    reasoning = advisor_reasoning or (UNCHANGED_MESSAGE if not committed else "")
    update = None
    if committed or record_always:
        update = RealTimeUpdate(
            route_plan_id=route.id,
            traffic_data=traffic,
            weather_data=weather,
            advisor_said_reoptimize=advisor_yes,
            should_reoptimize=committed,
            decision="reoptimized" if committed else "unchanged",
            reasoning=reasoning,
            timestamp=datetime.utcnow(),
        )
        db.add(update)
        await db.commit()

    if committed:
        publish(route, RouteEventType.REOPTIMIZE, f"{route_name(route.id)} re-optimized: {reasoning}")
    elif record_always:
        publish(route, RouteEventType.UPDATE, f"{route_name(route.id)}: {UNCHANGED_MESSAGE}")

    return Decision(
        reoptimized=committed,
        advisor_said_reoptimize=advisor_yes,
        significant_delay=significant_delay,
        severe_weather=severe_weather,
        reasoning=reasoning,
        update=update,
    )


# ── Background sweep ───────────────────────────────────────

class ReoptimizationMonitor:
    """Periodic sweep over open routes with per-route single flight."""

    def __init__(self, concurrency: int | None = None, session_factory=async_session):
        self.state: dict[uuid.UUID, str] = {}
        self._semaphore = asyncio.Semaphore(concurrency or settings.REOPTIMIZE_CONCURRENCY)
        self._session_factory = session_factory

    async def candidate_ids(self, db: AsyncSession) -> list[uuid.UUID]:
        since = datetime.utcnow() - timedelta(hours=settings.REOPTIMIZE_LOOKBACK_HOURS)
        result = await db.execute(
            select(RoutePlan.id).where(
                RoutePlan.status.in_(OPEN_STATUSES),
                RoutePlan.is_archived.is_(False),
                RoutePlan.created_at >= since,
            )
        )
        return list(result.scalars().all())

    async def check_route(self, route_id: uuid.UUID) -> Decision | None:
        if self.state.get(route_id, "idle") != "idle":
            logger.debug("Route %s already %s, skipping", route_id, self.state[route_id])
            return None

        self.state[route_id] = "checking"
        try:
            async with self._semaphore, self._session_factory() as db:
                route = await db.get(RoutePlan, route_id)
                if route is None or route.is_archived:
                    return None

                def mark_reoptimizing():
                    self.state[route_id] = "reoptimizing"

                return await reoptimize_if_needed(db, route, on_reoptimize=mark_reoptimizing)
        except StaleDataError:
            logger.warning("Route %s changed during re-optimization, skipping", route_id)
        except Exception as e:
            logger.error("Re-optimization check failed for route %s: %s", route_id, e)
        finally:
            self.state.pop(route_id, None)
        return None

    async def sweep(self) -> int:
        """Check every candidate once. Returns the number of routes re-optimized."""
        async with self._session_factory() as db:
            ids = await self.candidate_ids(db)
        if not ids:
            return 0
        logger.info("Re-optimization sweep: %d candidate routes", len(ids))
        decisions = await asyncio.gather(*(self.check_route(i) for i in ids))
        changed = sum(1 for d in decisions if d and d.reoptimized)
        logger.info("Re-optimization sweep done: %d/%d routes recomputed", changed, len(ids))
        return changed

    async def run_forever(self):
        interval = settings.REOPTIMIZE_INTERVAL_SEC
        logger.info("Re-optimization sweep started (interval=%ds)", interval)
        while True:
            try:
                await self.sweep()
            except Exception as e:
                logger.error("Re-optimization sweep error: %s", e)
            await asyncio.sleep(interval)


monitor = ReoptimizationMonitor()
