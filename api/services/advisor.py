"""
Routing Advisor — OpenAI-compatible chat model (Groq by default) that suggests
stop orderings and re-optimization verdicts.

The advisor is untrusted: every call is raced against a hard timeout and every
response is parsed defensively. Callers receive a tagged result,
``Verified(data)`` or ``Unusable(reason)``, and never see an exception.
"""

from __future__ import annotations
import asyncio
import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any

import openai

from config import settings

logger = logging.getLogger(__name__)

_client: openai.AsyncOpenAI | None = None

SYSTEM_PROMPT = "You are a logistics expert. Return only JSON."


# ── Errors & tagged results ────────────────────────────────

class AdvisorError(Exception):
    """Base class for recoverable advisor failures."""


class AdvisorTimeout(AdvisorError):
    pass


class AdvisorUnavailable(AdvisorError):
    pass


class MalformedAdvisorResponse(AdvisorError):
    pass


@dataclass
class Verified:
    data: dict


@dataclass
class Unusable:
    reason: str


AdvisorResult = Verified | Unusable


def get_client() -> openai.AsyncOpenAI:
    global _client
    if not settings.ADVISOR_API_KEY:
        raise AdvisorUnavailable("ADVISOR_API_KEY not configured")
    if _client is None:
        _client = openai.AsyncOpenAI(
            api_key=settings.ADVISOR_API_KEY,
            base_url=settings.ADVISOR_BASE_URL,
            max_retries=0,
        )
    return _client


async def generate(prompt: str, max_tokens: int = 1024) -> str:
    """Send one prompt and return the raw completion text."""
    client = get_client()
    try:
        response = await asyncio.wait_for(
            client.chat.completions.create(
                model=settings.ADVISOR_MODEL,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.1,
                max_tokens=max_tokens,
            ),
            timeout=settings.ADVISOR_TIMEOUT_SEC,
        )
    except asyncio.TimeoutError as e:
        raise AdvisorTimeout(f"no response within {settings.ADVISOR_TIMEOUT_SEC}s") from e
    except openai.OpenAIError as e:
        raise AdvisorUnavailable(str(e)) from e
    except Exception as e:
        raise AdvisorUnavailable(f"{type(e).__name__}: {e}") from e

    try:
        content = response.choices[0].message.content if response.choices else None
    except (AttributeError, IndexError, TypeError) as e:
        raise MalformedAdvisorResponse(f"unexpected completion shape: {e}") from e
    if not content or not isinstance(content, str):
        raise MalformedAdvisorResponse("empty completion")
    return content


# ── Response parsing ───────────────────────────────────────

_FENCED_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


def extract_json(text: str) -> dict:
    """Pull the first JSON object out of free text (bare, fenced or embedded)."""
    candidates = [text.strip()]
    fenced = _FENCED_RE.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    raise MalformedAdvisorResponse("no JSON object in advisor output")


def _to_number(value: Any) -> float | None:
    """Accept 42, "42", "42 km", "~42.5 minutes". Only positive finite values survive."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        match = re.search(r"-?\d+(?:\.\d+)?", value.replace(",", ""))
        if not match:
            return None
        number = float(match.group())
    else:
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number


def _to_text(value: Any) -> str | None:
    """Free-text fields: strings as-is, lists joined, anything else dropped."""
    if isinstance(value, list):
        value = "; ".join(str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip())
    if not isinstance(value, str):
        return None
    value = value.strip()
    if value.lower() in ("", "null", "none"):
        return None
    return value


def parse_route_plan(text: str) -> dict:
    """
    Normalize an advisor route answer.

    Returns:
        {"order": list, "total_distance": float|None, "estimated_time": float|None,
         "reasoning": str|None, "constraints_alert": str|None}
    """
    data = extract_json(text)
    order = data.get("optimizedRoute") or data.get("route") or data.get("stops")
    if not isinstance(order, list) or not order:
        raise MalformedAdvisorResponse("missing stop ordering")

    return {
        "order": order,
        "total_distance": _to_number(data.get("totalDistance")),
        "estimated_time": _to_number(data.get("estimatedTime")),
        "reasoning": _to_text(data.get("reasoning")),
        "constraints_alert": _to_text(data.get("constraintsAlert") or data.get("constraints_alert")),
    }


# ── Prompts ────────────────────────────────────────────────

def build_route_prompt(deliveries: list[dict], vehicle: dict, constraints: dict) -> str:
    stops = "\n".join(
        f"{i}. Address: {d['address']}, Priority: {d.get('priority', 'normal')}, "
        f"Time Window: {d.get('time_window', 'anytime')}"
        for i, d in enumerate(deliveries, start=1)
    )

    vehicle_type = str(vehicle.get("type", "van"))
    heavy = any(w in vehicle_type.lower() for w in ("truck", "lorry", "trailer", "heavy"))
    if heavy:
        economics = "Heavy truck: ~4 km/L diesel, highway average 40-50 km/h, city 20 km/h."
    else:
        economics = "Light van: ~8 km/L diesel, city average 25-30 km/h."

    extra = []
    if constraints.get("traffic"):
        extra.append("- Account for current traffic congestion.")
    if constraints.get("weather"):
        extra.append("- Account for current weather conditions.")
    if constraints.get("notes"):
        extra.append(f"- Dispatcher notes: {constraints['notes']}")
    extra_block = "\n".join(extra) or "- None"

    return f"""You are a route optimization expert for Indian road networks.
Order the following deliveries for one vehicle.

DELIVERIES:
{stops}

VEHICLE:
- Type: {vehicle_type}
- Capacity: {vehicle.get('capacity', 'unlimited')}
- {economics}

RULES:
1. Feasibility first: a stop cannot be visited outside its time window.
2. Within the same or overlapping windows visit by priority: Urgent > High > Medium > Normal > Low.
3. If distance / available time exceeds 80 km/h the plan is physically impossible; explain it in constraintsAlert.

ADDITIONAL CONSTRAINTS:
{extra_block}

Respond with EXACTLY this JSON:
{{"optimizedRoute": [1-based delivery numbers in visiting order],
  "totalDistance": km as number,
  "estimatedTime": minutes as number,
  "reasoning": "one or two sentences",
  "constraintsAlert": null or "what is infeasible"}}"""


def build_conditions_prompt(route: dict, traffic: dict, weather: dict) -> str:
    return f"""A delivery vehicle is on this route:
- Stops: {len(route.get('route') or [])}
- Planned distance: {route.get('total_distance')} km
- Planned time: {route.get('estimated_time')} min

Current conditions at the next stop:
- Traffic: {json.dumps(traffic)}
- Weather: {json.dumps(weather)}

Should the route be recomputed? Respond with EXACTLY this JSON:
{{"shouldReoptimize": true or false, "reasoning": "one sentence"}}"""


# ── Public API ─────────────────────────────────────────────

async def request_route_plan(deliveries: list[dict], vehicle: dict, constraints: dict) -> AdvisorResult:
    """Ask for a stop ordering. Never raises."""
    prompt = build_route_prompt(deliveries, vehicle, constraints)
    try:
        text = await generate(prompt)
        plan = parse_route_plan(text)
    except AdvisorError as e:
        logger.warning("Advisor route plan unusable: %s: %s", type(e).__name__, e)
        return Unusable(f"{type(e).__name__}: {e}")
    return Verified(plan)


async def assess_conditions(route: dict, traffic: dict, weather: dict) -> AdvisorResult:
    """Ask whether live conditions warrant recomputation. Never raises."""
    prompt = build_conditions_prompt(route, traffic, weather)
    try:
        text = await generate(prompt, max_tokens=256)
        data = extract_json(text)
    except AdvisorError as e:
        logger.warning("Advisor verdict unusable: %s: %s", type(e).__name__, e)
        return Unusable(f"{type(e).__name__}: {e}")

    verdict = data.get("shouldReoptimize")
    if isinstance(verdict, str):
        verdict = verdict.strip().lower() == "true"
    return Verified({
        "should_reoptimize": bool(verdict),
        "reasoning": str(data.get("reasoning") or ""),
    })


async def check_health() -> dict:
    """Cheap round-trip used by the /ai-health probe."""
    if not settings.ADVISOR_API_KEY:
        return {"status": "error", "message": "Advisor API key missing"}
    try:
        await generate("ping", max_tokens=5)
    except AdvisorError as e:
        return {"status": "degraded", "model": settings.ADVISOR_MODEL, "message": str(e)}
    return {"status": "healthy", "model": settings.ADVISOR_MODEL}
