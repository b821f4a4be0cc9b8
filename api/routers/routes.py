"""Route planning API endpoints — optimize, lifecycle, re-optimization, provider lookups."""

import uuid
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from db.database import get_db
from models.route_plan import RoutePlan
from models.realtime_update import RealTimeUpdate
from schemas import (
    RealTimeUpdateResponse,
    ReoptimizeRequest,
    ReoptimizeResponse,
    RouteEdit,
    RouteEventType,
    RouteOptimizeRequest,
    RouteResponse,
    RouteUpdate,
    DeliveryStop,
    VehicleProfile,
    RouteConstraints,
)
from services.advisor import check_health
from services.conditions import get_weather
from services.maps import reverse_geocode, search_address
from services.notifications import publish, route_name
from services.rate_limit import ai_quota
from services.reoptimizer import reoptimize_if_needed
from services.route_status import InvalidStatusTransition, check_transition, event_for_status
from services.route_synthesis import LocationUnresolvable, synthesize, to_columns

router = APIRouter()

TERMINAL_STATUSES = ("completed", "cancelled")
OPERATOR_FIELDS = {"driver_id", "active_leg", "is_stationary", "last_departed_at"}


async def _get_route(db: AsyncSession, route_id: uuid.UUID) -> RoutePlan:
    result = await db.execute(
        select(RoutePlan).where(RoutePlan.id == route_id, RoutePlan.is_archived.is_(False))
    )
    route = result.scalar_one_or_none()
    if not route:
        raise HTTPException(status_code=404, detail="Route not found")
    return route


async def _commit(db: AsyncSession) -> None:
    try:
        await db.commit()
    except StaleDataError:
        await db.rollback()
        raise HTTPException(status_code=409, detail="Route was modified concurrently. Reload and retry.")


async def _synthesize(deliveries, vehicle, constraints=None):
    try:
        return await synthesize(deliveries, vehicle, constraints)
    except LocationUnresolvable as e:
        raise HTTPException(status_code=400, detail=f"Could not resolve location: {e.address}")


# ── Provider lookups ───────────────────────────────────────

@router.get("/weather")
async def weather(
    address: str | None = None,
    lat: float | None = Query(None, ge=-90, le=90),
    lng: float | None = Query(None, ge=-180, le=180),
):
    """Current weather for an address or coordinates."""
    if address is None and (lat is None or lng is None):
        raise HTTPException(status_code=400, detail="Provide an address or lat and lng")
    return await get_weather(address=address, lat=lat, lng=lng)


@router.get("/location-search")
async def location_search(q: str = Query(..., min_length=2), limit: int = Query(5, ge=1, le=10)):
    """Address autocomplete for the dispatch form."""
    return await search_address(q, limit=limit)


@router.get("/reverse-geocode")
async def reverse_geocode_point(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
):
    return await reverse_geocode(lat, lng)


@router.get("/ai-health")
async def ai_health():
    return await check_health()


# ── Create / list ──────────────────────────────────────────

@router.post("/optimize", response_model=RouteResponse, dependencies=[Depends(ai_quota)])
async def optimize_route(data: RouteOptimizeRequest, db: AsyncSession = Depends(get_db)):
    """Synthesize a priced route and save it as a draft."""
    priced = await _synthesize(data.deliveries, data.vehicle_data, data.constraints)

    route = RoutePlan(
        id=uuid.uuid4(),
        user_id=data.user_id,
        company_id=data.company_id,
        deliveries=[d.model_dump(mode="json") for d in data.deliveries],
        vehicle_data=data.vehicle_data.model_dump(mode="json"),
        status="draft",
        active_leg=0,
        is_stationary=True,
        is_archived=False,
        **to_columns(priced),
    )
    db.add(route)
    await db.commit()
    await db.refresh(route)

    publish(
        route, RouteEventType.CREATE,
        f"New route {route_name(route.id)} created with {len(route.route)} stops",
    )
    return route


@router.get("/", response_model=list[RouteResponse])
async def list_routes(
    status: str | None = None,
    driver_id: uuid.UUID | None = None,
    company_id: uuid.UUID | None = None,
    db: AsyncSession = Depends(get_db),
):
    """List non-archived routes, newest first."""
    query = select(RoutePlan).where(RoutePlan.is_archived.is_(False))
    if status:
        query = query.where(RoutePlan.status == status)
    if driver_id:
        query = query.where(RoutePlan.driver_id == driver_id)
    if company_id:
        query = query.where(RoutePlan.company_id == company_id)
    query = query.order_by(RoutePlan.created_at.desc())
    result = await db.execute(query)
    return result.scalars().all()


# ── Single route ───────────────────────────────────────────

@router.get("/{route_id}", response_model=RouteResponse)
async def get_route(route_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    return await _get_route(db, route_id)


@router.patch("/{route_id}", response_model=RouteResponse)
async def update_route(route_id: uuid.UUID, data: RouteUpdate, db: AsyncSession = Depends(get_db)):
    """Assign/unassign a driver, move status forward, or record movement."""
    route = await _get_route(db, route_id)
    fields = data.model_fields_set
    event = RouteEventType.UPDATE
    message = f"{route_name(route.id)} updated"

    if route.status in TERMINAL_STATUSES and fields & OPERATOR_FIELDS:
        raise HTTPException(
            status_code=409,
            detail=f"Route is {route.status}; driver and movement fields are locked",
        )

    if "status" in fields and data.status is not None:
        try:
            new_status = check_transition(route.status, data.status.value)
        except InvalidStatusTransition as e:
            raise HTTPException(status_code=409, detail=str(e))
        if new_status != route.status:
            route.status = new_status
            event = event_for_status(new_status)
            message = f"{route_name(route.id)} is now {new_status}"

    if "driver_id" in fields and data.driver_id != route.driver_id:
        route.driver_id = data.driver_id
        # completion outranks assignment when both arrive together
        if event is not RouteEventType.COMPLETION:
            if data.driver_id is not None:
                event = RouteEventType.ASSIGNMENT
                message = f"{route_name(route.id)} assigned to a driver"
            else:
                message = f"{route_name(route.id)} driver unassigned"

    for field in ("active_leg", "is_stationary", "last_departed_at"):
        if field in fields:
            setattr(route, field, getattr(data, field))

    await _commit(db)
    publish(route, event, message)
    return route


@router.put("/{route_id}", response_model=RouteResponse, dependencies=[Depends(ai_quota)])
async def edit_route(route_id: uuid.UUID, data: RouteEdit, db: AsyncSession = Depends(get_db)):
    """Full edit. Changing stops or vehicle re-synthesizes the route."""
    route = await _get_route(db, route_id)

    if data.status is not None:
        try:
            route.status = check_transition(route.status, data.status.value)
        except InvalidStatusTransition as e:
            raise HTTPException(status_code=409, detail=str(e))

    if data.deliveries is not None or data.vehicle_data is not None:
        deliveries = data.deliveries or [DeliveryStop(**d) for d in route.deliveries]
        vehicle = data.vehicle_data or VehicleProfile(**(route.vehicle_data or {}))
        priced = await _synthesize(deliveries, vehicle, RouteConstraints(traffic=True, weather=True))
        route.deliveries = [d.model_dump(mode="json") for d in deliveries]
        route.vehicle_data = vehicle.model_dump(mode="json")
        for column, value in to_columns(priced).items():
            setattr(route, column, value)

    await _commit(db)
    publish(route, RouteEventType.UPDATE, f"{route_name(route.id)} was edited")
    return route


@router.post("/{route_id}/reoptimize", response_model=ReoptimizeResponse, dependencies=[Depends(ai_quota)])
async def reoptimize_route(
    route_id: uuid.UUID,
    data: ReoptimizeRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Run the re-optimization decision now, optionally with simulated conditions."""
    route = await _get_route(db, route_id)
    data = data or ReoptimizeRequest()
    try:
        decision = await reoptimize_if_needed(
            db, route,
            traffic=data.traffic_data.model_dump(exclude_none=True) if data.traffic_data else None,
            weather=data.weather_data.model_dump(exclude_none=True) if data.weather_data else None,
            record_always=True,
        )
    except LocationUnresolvable as e:
        raise HTTPException(status_code=400, detail=f"Could not resolve location: {e.address}")
    except InvalidStatusTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except StaleDataError:
        await db.rollback()
        raise HTTPException(status_code=409, detail="Route was modified concurrently. Reload and retry.")

    return ReoptimizeResponse(
        route=RouteResponse.model_validate(route),
        reoptimized=decision.reoptimized,
        advisor_said_reoptimize=decision.advisor_said_reoptimize,
        significant_delay=decision.significant_delay,
        severe_weather=decision.severe_weather,
        reasoning=decision.reasoning,
    )


@router.delete("/{route_id}")
async def archive_route(route_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    """Soft delete: the route disappears from listings but is kept."""
    route = await _get_route(db, route_id)
    route.is_archived = True
    await _commit(db)
    publish(route, RouteEventType.UPDATE, f"{route_name(route.id)} was archived")
    return {"id": str(route.id), "archived": True}


@router.get("/{route_id}/updates", response_model=list[RealTimeUpdateResponse])
async def route_updates(route_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    """Live-condition check history, newest first."""
    await _get_route(db, route_id)
    result = await db.execute(
        select(RealTimeUpdate)
        .where(RealTimeUpdate.route_plan_id == route_id)
        .order_by(RealTimeUpdate.timestamp.desc())
    )
    return result.scalars().all()
