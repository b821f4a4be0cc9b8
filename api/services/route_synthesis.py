"""
Route Synthesis — turns delivery stops into a priced, ordered route.

Pipeline:
  1. Resolve coordinates for every stop (concurrently, cached)
  2. Ask the routing advisor for an ordering (untrusted, time-boxed)
  3. Repair the ordering into a permutation and stabilise by time window
  4. Plausibility-correct distance/time against great-circle geometry
  5. Price with the cost model, apportion legs, flag infeasible windows

The advisor never decides whether a route is produced. When it is slow,
down or talks nonsense, stops keep their input order and the same
geometry and cost model apply.
"""

from __future__ import annotations
import asyncio
import logging
import math
import re

from config import settings
from schemas import (
    CostBreakdown,
    DeliveryStop,
    PricedRoute,
    Priority,
    RouteConstraints,
    RouteLeg,
    RouteStop,
    SynthesisPath,
    TrafficAnalysis,
    VehicleProfile,
)
from services.advisor import Unusable, Verified, request_route_plan
from services.maps import geocode, get_route_stats, great_circle_km, haversine_km
from services.pricing import SHORT_HAUL_KM, calculate_route_cost

logger = logging.getLogger(__name__)

ROAD_FACTOR = 1.35                 # road km per great-circle km
MIN_PLAUSIBLE_RATIO = 0.9          # reported distance below this × great-circle is impossible
MAX_PLAUSIBLE_RATIO = 1.8          # advisor-only figures above this on long hauls are inflated
SHORT_HAUL_SPEED_KMH = 30.0
LONG_HAUL_SPEED_KMH = 50.0

MIN_SANE_SPEED_KMH = 5.0
MAX_SANE_SPEED_KMH = 130.0
DEFAULT_SPEED_KMH = 45.0

IMPOSSIBLE_SPEED_KMH = 90.0
IMPOSSIBLE_MIN_DISTANCE_KM = 10.0
WINDOW_CRUNCH_SPEED_KMH = 85.0
WINDOW_CRUNCH_RATIO = 0.7

FALLBACK_MODEL = "great-circle-heuristic"

PRIORITY_RANK = {
    Priority.URGENT: 4,
    Priority.HIGH: 3,
    Priority.MEDIUM: 2,
    Priority.NORMAL: 1,
    Priority.LOW: 0,
}

_TIME_RE = re.compile(r"(\d{1,2})(?::(\d{2}))?\s*([ap])?\.?\s*m?\.?", re.IGNORECASE)


class LocationUnresolvable(Exception):
    """An address could not be placed on the map."""

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Could not resolve location: {address}")


# ── Stop resolution ────────────────────────────────────────

async def resolve_stops(deliveries: list[DeliveryStop]) -> list[dict]:
    """
    Fill in coordinates for every stop. All lookups run concurrently.

    Raises:
        LocationUnresolvable: for the first stop (in input order) that cannot be placed
    """
    async def _resolve(stop: DeliveryStop) -> dict | None:
        if stop.coordinates is not None:
            return stop.coordinates.model_dump()
        return await geocode(stop.address)

    coords = await asyncio.gather(*(_resolve(s) for s in deliveries))

    resolved = []
    for stop, point in zip(deliveries, coords):
        if point is None:
            logger.warning("Unresolvable stop address: %s", stop.address)
            raise LocationUnresolvable(stop.address)
        data = stop.model_dump(mode="json")
        data["coordinates"] = {"lat": point["lat"], "lng": point["lng"]}
        resolved.append(data)
    return resolved


# ── Ordering ───────────────────────────────────────────────

def _as_int(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def normalize_order(raw_order: list, stops: list[dict]) -> list[int]:
    """
    Convert advisor indices into a 0-based permutation of ``stops``.

    Indices are 1-based unless a 0 appears. Entries may also be stop objects
    carrying an address. Anything out of range or unreadable is clamped to
    the first stop, then duplicates are dropped and missing stops appended
    in input order.
    """
    n = len(stops)
    addresses = [s["address"].strip().casefold() for s in stops]

    parsed: list[int | None] = []
    for item in raw_order:
        if isinstance(item, dict):
            address = str(item.get("address", "")).strip().casefold()
            if address in addresses:
                parsed.append(addresses.index(address) + 1)
                continue
            item = item.get("id", item.get("index"))
        parsed.append(_as_int(item))

    zero_based = any(v == 0 for v in parsed)

    clamped = []
    for raw, value in zip(raw_order, parsed):
        idx = None if value is None else (value if zero_based else value - 1)
        if idx is None or not 0 <= idx < n:
            logger.warning("Advisor index out of range, clamping to first stop: %r (stops=%d)", raw, n)
            idx = 0
        clamped.append(idx)

    order = list(dict.fromkeys(clamped))
    if len(order) < n:
        missing = [i for i in range(n) if i not in order]
        logger.info("Advisor ordering incomplete, appending stops %s", missing)
        order.extend(missing)
    return order


def window_start_minutes(time_window: str | None) -> int | None:
    """'9 AM - 12 PM' → 540, '14:30-16:00' → 870, 'anytime' → None."""
    if not time_window or time_window.strip().lower() == "anytime":
        return None
    match = _TIME_RE.search(time_window)
    if not match:
        return None
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    meridiem = (match.group(3) or "").lower()
    if meridiem == "p" and hour < 12:
        hour += 12
    elif meridiem == "a" and hour == 12:
        hour = 0
    if hour > 23 or minute > 59:
        return None
    return hour * 60 + minute


def stabilise_by_window(stops: list[dict]) -> list[dict]:
    """Stable sort by window start, priority breaks ties. No-op without explicit windows."""
    starts = [window_start_minutes(s.get("time_window")) for s in stops]
    if all(s is None for s in starts):
        return stops

    def key(pair):
        start, stop = pair
        rank = PRIORITY_RANK.get(Priority(stop.get("priority", "normal")), 1)
        return (start if start is not None else math.inf, -rank)

    return [stop for _, stop in sorted(zip(starts, stops), key=key)]


# ── Geometry & correction ──────────────────────────────────

def _time_at(distance_km: float, short_haul: bool) -> float:
    speed = SHORT_HAUL_SPEED_KMH if short_haul else LONG_HAUL_SPEED_KMH
    return distance_km / speed * 60


def _usable(value: float | None) -> bool:
    return value is not None and math.isfinite(value) and value > 0


def correct_distance(
    reported_km: float | None,
    reported_min: float | None,
    great_circle: float,
    advisor_only: bool,
) -> tuple[float, float, bool]:
    """
    Apply the plausibility floor/ceiling.

    Returns:
        (distance_km, time_min, corrected)
    """
    short_haul = great_circle < SHORT_HAUL_KM

    if not _usable(reported_km):
        reported_km = None
    if not _usable(reported_min):
        reported_min = None

    if reported_km is None:
        distance = great_circle * ROAD_FACTOR
        return distance, _time_at(distance, short_haul), True

    implausible = reported_km < MIN_PLAUSIBLE_RATIO * great_circle
    inflated = (
        advisor_only
        and great_circle > SHORT_HAUL_KM
        and reported_km > MAX_PLAUSIBLE_RATIO * great_circle
    )
    if implausible or inflated:
        distance = great_circle * ROAD_FACTOR
        logger.warning(
            "Implausible route distance %.1f km vs %.1f km great-circle, corrected to %.1f km",
            reported_km, great_circle, distance,
        )
        return distance, _time_at(distance, short_haul), True

    time_min = reported_min if reported_min is not None else _time_at(reported_km, short_haul)
    return reported_km, time_min, False


def apportion_legs(stops: list[dict], distance_km: float, time_min: float) -> list[RouteLeg]:
    """Split the final totals across legs by each leg's great-circle share."""
    if len(stops) < 2:
        return []
    pairs = list(zip(stops, stops[1:]))
    spans = [
        haversine_km(
            a["coordinates"]["lat"], a["coordinates"]["lng"],
            b["coordinates"]["lat"], b["coordinates"]["lng"],
        )
        for a, b in pairs
    ]
    whole = sum(spans)
    legs = []
    for (a, b), span in zip(pairs, spans):
        share = span / whole if whole > 0 else 1 / len(pairs)
        legs.append(RouteLeg(
            origin=a["address"],
            destination=b["address"],
            distance_km=round(distance_km * share, 1),
            time_min=round(time_min * share),
        ))
    return legs


def feasibility_alert(stops: list[dict], distance_km: float, time_min: float) -> str | None:
    """Flag physically impossible speeds and time-window crunches."""
    if time_min > 0 and distance_km > IMPOSSIBLE_MIN_DISTANCE_KM:
        speed = distance_km / (time_min / 60)
        if speed > IMPOSSIBLE_SPEED_KMH:
            return (
                f"Physically impossible: {distance_km:.0f} km in {time_min:.0f} min "
                f"needs {speed:.0f} km/h average."
            )

    starts = [m for m in (window_start_minutes(s.get("time_window")) for s in stops) if m is not None]
    if len(starts) >= 2:
        span = starts[-1] - starts[0]
        if span > 0:
            required = distance_km / (span / 60)
            if required > WINDOW_CRUNCH_SPEED_KMH or span < WINDOW_CRUNCH_RATIO * time_min:
                return (
                    f"Time windows too tight: {span} min between first and last stop "
                    f"for {distance_km:.0f} km (~{time_min:.0f} min of driving)."
                )
    return None


# ── Synthesis ──────────────────────────────────────────────

async def synthesize(
    deliveries: list[DeliveryStop],
    vehicle: VehicleProfile | None = None,
    constraints: RouteConstraints | None = None,
) -> PricedRoute:
    """
    Build a priced route for a list of stops.

    Raises:
        LocationUnresolvable: when a stop address cannot be geocoded.
            Advisor and provider failures are absorbed.
    """
    vehicle = vehicle or VehicleProfile()
    constraints = constraints or RouteConstraints()

    stops = await resolve_stops(deliveries)

    advice = await request_route_plan(
        stops, vehicle.model_dump(), constraints.model_dump(),
    )

    if isinstance(advice, Verified):
        plan = advice.data
        ordered = [stops[i] for i in normalize_order(plan["order"], stops)]
        ordered = stabilise_by_window(ordered)
    else:
        plan = {}
        ordered = stops
        logger.info("Synthesizing without advisor (%s), keeping input order", advice.reason)

    points = [s["coordinates"] for s in ordered]
    great_circle = great_circle_km(points)
    short_haul = great_circle < SHORT_HAUL_KM

    road = await get_route_stats(points, "truck" if vehicle.is_heavy else "car")
    if road:
        reported_km, reported_min = road["distance_km"], road["time_min"]
    else:
        reported_km, reported_min = plan.get("total_distance"), plan.get("estimated_time")

    distance, time_min, corrected = correct_distance(
        reported_km, reported_min, great_circle, advisor_only=road is None and bool(plan),
    )

    if isinstance(advice, Unusable):
        path = SynthesisPath.FALLBACK
    elif corrected:
        path = SynthesisPath.PLAUSIBILITY_OVERRIDE
    else:
        path = SynthesisPath.ADVISOR_VERIFIED

    has_tolls = bool(road and road.get("has_tolls"))
    cost = calculate_route_cost(
        distance, time_min,
        is_heavy=vehicle.is_heavy, short_haul=short_haul, has_tolls=has_tolls,
    )

    avg_speed = distance / (time_min / 60) if time_min > 0 else 0.0
    if not MIN_SANE_SPEED_KMH <= avg_speed <= MAX_SANE_SPEED_KMH:
        avg_speed = DEFAULT_SPEED_KMH

    advisor_alert = plan.get("constraints_alert")
    alert = (advisor_alert if isinstance(advisor_alert, str) else None) or feasibility_alert(ordered, distance, time_min)

    if path is SynthesisPath.FALLBACK:
        base = "Advisor unavailable; stops kept in submitted order."
    else:
        base = str(plan.get("reasoning") or "") or "Stops sequenced by priority and time window."
    if corrected and _usable(reported_km):
        base += (
            f" Reported {reported_km:.1f} km was implausible against "
            f"{great_circle:.1f} km great-circle; using {distance:.1f} km."
        )
    reasoning = f"[{path.value}] {base}"

    logger.info(
        "Synthesized route: stops=%d, distance=%.1f km, time=%.0f min, path=%s",
        len(ordered), distance, time_min, path.value,
    )

    return PricedRoute(
        route=[RouteStop(**stop, order=i) for i, stop in enumerate(ordered, start=1)],
        route_legs=apportion_legs(ordered, distance, time_min),
        total_distance=round(distance, 1),
        estimated_time=round(time_min),
        fuel_required_litres=cost.fuel_required_litres,
        diesel_price_used=cost.diesel_price_used,
        cost_breakdown=CostBreakdown(
            fuel=cost.fuel, time=cost.time, maintenance=cost.maintenance, tolls=cost.tolls,
        ),
        traffic_analysis=TrafficAnalysis(
            delay_min=round(road.get("traffic_delay_min", 0)) if road else 0,
            avg_speed_kmh=round(avg_speed),
        ),
        reasoning=reasoning,
        constraints_alert=alert,
        generated_by="fallback" if path is SynthesisPath.FALLBACK else "advisor",
        synthesis_path=path,
        optimization_model=FALLBACK_MODEL if path is SynthesisPath.FALLBACK else settings.ADVISOR_MODEL,
    )


def to_columns(priced: PricedRoute) -> dict:
    """Flatten a priced route into RoutePlan column values."""
    return priced.model_dump(mode="json")
