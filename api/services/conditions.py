"""
Live Conditions Service — current weather (OpenWeather) and traffic flow (TomTom).

Both are short-lived lookups (5–10 min cache). Provider errors never reach
callers: the last cached reading or a neutral fallback is returned instead.
"""

from __future__ import annotations
import logging

from config import settings
from services.cache import Capability, provider_cache
from services.maps import get_http

logger = logging.getLogger(__name__)

OPENWEATHER_URL = "https://api.openweathermap.org/data/2.5/weather"
TOMTOM_FLOW_URL = "https://api.tomtom.com/traffic/services/4/flowSegmentData/absolute/10/json"

CONDITIONS_TIMEOUT = 5.0

FALLBACK_WEATHER = {
    "condition": "Clouds",
    "description": "cloudy",
    "temperature": 18.0,
    "wind_speed": None,
    "humidity": None,
    "pressure": None,
    "visibility": None,
}

FALLBACK_TRAFFIC = {
    "congestion_level": "moderate",
    "current_speed": None,
    "free_flow_speed": None,
    "confidence": None,
}


def classify_congestion(current_speed: float, free_flow_speed: float) -> str:
    """Bucket a flow reading by current/free-flow speed ratio."""
    if not free_flow_speed:
        return "moderate"
    ratio = current_speed / free_flow_speed
    if ratio < 0.4:
        return "high"
    if ratio < 0.7:
        return "moderate"
    return "low"


# ── Weather ────────────────────────────────────────────────

async def get_weather(
    address: str | None = None,
    lat: float | None = None,
    lng: float | None = None,
) -> dict:
    """
    Current weather for coordinates (preferred) or an address/city.

    Returns:
        {"condition", "description", "temperature", "wind_speed",
         "humidity", "pressure", "visibility"}
    """
    if lat is not None and lng is not None:
        params = {"lat": lat, "lon": lng}
        query = f"{lat:.3f},{lng:.3f}"
    elif address:
        params = {"q": address}
        query = address.strip().casefold()
    else:
        return dict(FALLBACK_WEATHER)

    async def fetch() -> dict:
        if not settings.OPENWEATHER_API_KEY:
            raise RuntimeError("OPENWEATHER_API_KEY not configured")
        http = await get_http()
        resp = await http.get(
            OPENWEATHER_URL,
            params={**params, "appid": settings.OPENWEATHER_API_KEY, "units": "metric"},
            timeout=CONDITIONS_TIMEOUT,
        )
        resp.raise_for_status()
        data = resp.json()
        weather = (data.get("weather") or [{}])[0]
        main = data.get("main") or {}
        return {
            "condition": weather.get("main", "unknown"),
            "description": weather.get("description", ""),
            "temperature": main.get("temp"),
            "wind_speed": (data.get("wind") or {}).get("speed"),
            "humidity": main.get("humidity"),
            "pressure": main.get("pressure"),
            "visibility": data.get("visibility"),
        }

    result, _ = await provider_cache.lookup(
        Capability.WEATHER, query, fetch, fallback=dict(FALLBACK_WEATHER),
    )
    return result


# ── Traffic ────────────────────────────────────────────────

async def get_traffic(lat: float, lng: float) -> dict:
    """
    Traffic flow at the road segment nearest to a point.

    Returns:
        {"congestion_level": "low"|"moderate"|"high", "current_speed",
         "free_flow_speed", "confidence"}
    """
    query = f"{lat:.4f},{lng:.4f}"

    async def fetch() -> dict:
        if not settings.TOMTOM_API_KEY:
            raise RuntimeError("TOMTOM_API_KEY not configured")
        http = await get_http()
        resp = await http.get(
            TOMTOM_FLOW_URL,
            params={"key": settings.TOMTOM_API_KEY, "point": query},
            timeout=CONDITIONS_TIMEOUT,
        )
        resp.raise_for_status()
        flow = resp.json()["flowSegmentData"]
        current, free_flow = flow["currentSpeed"], flow["freeFlowSpeed"]
        return {
            "congestion_level": classify_congestion(current, free_flow),
            "current_speed": current,
            "free_flow_speed": free_flow,
            "confidence": flow.get("confidence"),
        }

    result, _ = await provider_cache.lookup(
        Capability.TRAFFIC, query, fetch, fallback=dict(FALLBACK_TRAFFIC),
    )
    return result
