"""
Maps Service — Geocoding, address search and road-routing stats with caching.

Optimization strategy:
  1. Geocode cache in Redis (24h TTL, normalized + region-qualified keys)
  2. Route stats cached per point set and vehicle class (10 min TTL)
  3. Truck routing falls back to passenger-car routing once
  4. Nominatim (OSM) fallback when TomTom is down or unconfigured
"""

from __future__ import annotations
import logging
import math
import re
from urllib.parse import quote

import httpx

from config import settings
from services.cache import Capability, provider_cache

logger = logging.getLogger(__name__)

_http: httpx.AsyncClient | None = None

TOMTOM_GEOCODE_URL = "https://api.tomtom.com/search/2/geocode/{query}.json"
TOMTOM_SEARCH_URL = "https://api.tomtom.com/search/2/search/{query}.json"
TOMTOM_REVERSE_URL = "https://api.tomtom.com/search/2/reverseGeocode/{lat},{lng}.json"
TOMTOM_ROUTING_URL = "https://api.tomtom.com/routing/1/calculateRoute/{locations}/json"

# Fallback provider: Nominatim (OpenStreetMap)
NOMINATIM_URL = "https://nominatim.openstreetmap.org/search"
NOMINATIM_HEADERS = {"User-Agent": "FleetFlow/2.0 (routing@fleetflow.app)"}

GEOCODE_TIMEOUT = 3.0
ROUTING_TIMEOUT = 5.0

EARTH_RADIUS_KM = 6371.0
HEAVY_VEHICLE_WEIGHT_KG = 12000


async def get_http() -> httpx.AsyncClient:
    global _http
    if _http is None:
        _http = httpx.AsyncClient(timeout=10.0)
    return _http


# ── Great-circle geometry ──────────────────────────────────

def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Straight-line (great-circle) distance in km. No road factor applied."""
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def great_circle_km(points: list[dict]) -> float:
    """Sum of great-circle distances across consecutive {"lat", "lng"} points."""
    total = 0.0
    for p1, p2 in zip(points, points[1:]):
        total += haversine_km(p1["lat"], p1["lng"], p2["lat"], p2["lng"])
    return total


# ── Query normalization ────────────────────────────────────

def normalize_address(address: str) -> str:
    """Case-fold, trim, collapse whitespace and region-qualify an address."""
    normalized = re.sub(r"\s+", " ", address.strip().casefold())
    region = settings.GEOCODE_REGION.casefold()
    if region and region not in normalized:
        normalized = f"{normalized}, {region}"
    return normalized


def _parse_lat_lng(text: str) -> tuple[float, float] | None:
    """Parse 'lat,lng' format (e.g. from a dropped map pin)."""
    if not text or "," not in text:
        return None
    parts = text.strip().split(",", 1)
    try:
        lat, lng = float(parts[0].strip()), float(parts[1].strip())
        if -90 <= lat <= 90 and -180 <= lng <= 180:
            return (lat, lng)
    except ValueError:
        pass
    return None


def _geocode_candidates(query: str) -> list[str]:
    """Full address first, then the trailing area + city parts."""
    candidates = [query]
    parts = [p.strip() for p in query.split(",") if p.strip()]
    if len(parts) >= 3:
        area_city = ", ".join(parts[-3:])
        if area_city not in candidates:
            candidates.append(area_city)
    return candidates


def _require_tomtom_key() -> str:
    if not settings.TOMTOM_API_KEY:
        raise RuntimeError("TOMTOM_API_KEY not configured")
    return settings.TOMTOM_API_KEY


# ── Geocoding ──────────────────────────────────────────────

async def _tomtom_geocode(query: str) -> dict | None:
    http = await get_http()
    resp = await http.get(
        TOMTOM_GEOCODE_URL.format(query=quote(query, safe="")),
        params={
            "key": _require_tomtom_key(),
            "limit": 1,
            "countrySet": settings.GEOCODE_COUNTRY_SET,
        },
        timeout=GEOCODE_TIMEOUT,
    )
    resp.raise_for_status()
    results = resp.json().get("results") or []
    if not results:
        return None
    pos = results[0].get("position") or {}
    if pos.get("lat") is None or pos.get("lon") is None:
        return None
    return {"lat": float(pos["lat"]), "lng": float(pos["lon"])}


async def _nominatim_geocode(query: str) -> dict | None:
    http = await get_http()
    resp = await http.get(
        NOMINATIM_URL,
        params={"q": query, "format": "json", "limit": 1},
        headers=NOMINATIM_HEADERS,
        timeout=GEOCODE_TIMEOUT,
    )
    resp.raise_for_status()
    hits = resp.json()
    if not hits:
        return None
    return {"lat": float(hits[0]["lat"]), "lng": float(hits[0]["lon"])}


async def _fetch_geocode(query: str) -> dict | None:
    candidates = _geocode_candidates(query)

    if settings.TOMTOM_API_KEY:
        try:
            for q in candidates:
                result = await _tomtom_geocode(q)
                if result:
                    return result
        except Exception as e:
            logger.warning("TomTom geocode failed, trying Nominatim: query=%s, error=%s", query, e)

    for q in candidates:
        result = await _nominatim_geocode(q)
        if result:
            return result
    return None


async def geocode(address: str) -> dict | None:
    """
    Geocode an address to lat/lng. Uses the provider cache first,
    then TomTom, then Nominatim (OSM) as free fallback.
    Handles "lat,lng" pins directly.

    Returns:
        {"lat": float, "lng": float} or None when the address cannot be placed
    """
    coords = _parse_lat_lng(address)
    if coords is not None:
        return {"lat": coords[0], "lng": coords[1]}

    query = normalize_address(address)
    result, from_cache = await provider_cache.lookup(
        Capability.GEOCODE, query, lambda: _fetch_geocode(query),
    )
    if result is None:
        logger.warning("Geocode returned no results: %s", query)
    else:
        logger.debug("Geocoded %s -> %s,%s (cache=%s)", query, result["lat"], result["lng"], from_cache)
    return result


async def reverse_geocode(lat: float, lng: float) -> dict:
    """Coordinates → {"address": str}. Falls back to the coordinate string."""
    query = f"{lat:.5f},{lng:.5f}"

    async def fetch() -> dict | None:
        http = await get_http()
        resp = await http.get(
            TOMTOM_REVERSE_URL.format(lat=lat, lng=lng),
            params={"key": _require_tomtom_key()},
            timeout=GEOCODE_TIMEOUT,
        )
        resp.raise_for_status()
        addresses = resp.json().get("addresses") or []
        if not addresses:
            return None
        return {"address": addresses[0].get("address", {}).get("freeformAddress") or query}

    result, _ = await provider_cache.lookup(
        Capability.REVERSE_GEOCODE, query, fetch, fallback={"address": query},
    )
    return result


async def search_address(text: str, limit: int = 5) -> list[dict]:
    """Address autocomplete. Returns [] when the provider is unavailable."""
    if not text or not text.strip():
        return []
    query = re.sub(r"\s+", " ", text.strip().casefold())

    async def fetch() -> list[dict]:
        http = await get_http()
        resp = await http.get(
            TOMTOM_SEARCH_URL.format(query=quote(query, safe="")),
            params={
                "key": _require_tomtom_key(),
                "typeahead": "true",
                "limit": limit,
                "countrySet": settings.GEOCODE_COUNTRY_SET,
            },
            timeout=GEOCODE_TIMEOUT,
        )
        resp.raise_for_status()
        hits = []
        for item in resp.json().get("results") or []:
            pos = item.get("position") or {}
            if pos.get("lat") is None or pos.get("lon") is None:
                continue
            hits.append({
                "address": (item.get("address") or {}).get("freeformAddress", ""),
                "lat": float(pos["lat"]),
                "lng": float(pos["lon"]),
            })
        return hits

    result, _ = await provider_cache.lookup(
        Capability.ADDRESS_SEARCH, f"{query}|{limit}", fetch, fallback=[],
    )
    return result


# ── Road routing ───────────────────────────────────────────

def _points_key(points: list[dict], vehicle_class: str) -> str:
    coords = ":".join(f"{p['lat']:.4f},{p['lng']:.4f}" for p in points)
    return f"{vehicle_class}|{coords}"


async def _calculate_route(points: list[dict], vehicle_class: str) -> dict:
    locations = ":".join(f"{p['lat']},{p['lng']}" for p in points)
    params = {
        "key": _require_tomtom_key(),
        "traffic": "true",
        "routeType": "fastest",
        "sectionType": "tollRoad",
    }
    if vehicle_class == "truck":
        params["travelMode"] = "truck"
        params["vehicleWeight"] = HEAVY_VEHICLE_WEIGHT_KG

    http = await get_http()
    resp = await http.get(
        TOMTOM_ROUTING_URL.format(locations=locations),
        params=params,
        timeout=ROUTING_TIMEOUT,
    )
    resp.raise_for_status()
    route = resp.json()["routes"][0]
    summary = route["summary"]
    sections = route.get("sections") or []
    return {
        "distance_km": summary["lengthInMeters"] / 1000.0,
        "time_min": summary["travelTimeInSeconds"] / 60.0,
        "traffic_delay_min": summary.get("trafficDelayInSeconds", 0) / 60.0,
        "has_tolls": any(s.get("sectionType") in ("TOLL_ROAD", "TOLL") for s in sections),
    }


async def _fetch_route_stats(points: list[dict], vehicle_class: str) -> dict:
    if vehicle_class == "truck":
        try:
            return await _calculate_route(points, "truck")
        except Exception as e:
            logger.warning("Truck routing failed, retrying as car: %s", e)
    return await _calculate_route(points, "car")


async def get_route_stats(points: list[dict], vehicle_class: str = "car") -> dict | None:
    """
    Road distance/time for an ordered list of {"lat", "lng"} points.

    Returns:
        {"distance_km", "time_min", "traffic_delay_min", "has_tolls"} or None
    """
    if len(points) < 2:
        return None
    result, from_cache = await provider_cache.lookup(
        Capability.ROUTE_STATS,
        _points_key(points, vehicle_class),
        lambda: _fetch_route_stats(points, vehicle_class),
    )
    if result:
        logger.info(
            "Route stats: %.1f km in %.0f min (vehicle=%s, cache=%s)",
            result["distance_km"], result["time_min"], vehicle_class, from_cache,
        )
    return result
