"""
Provider Cache — time-boxed Redis cache in front of every external lookup.

Strategy:
  1. Fresh key per (capability, normalized query) with a per-capability TTL
  2. "Last known good" key with a long TTL, served when the provider fails
  3. Hard-coded neutral fallback when neither exists

Expiry is Redis TTL (checked on read); writes are last-writer-wins.
A Redis outage degrades to "always miss", never to a user-facing error.
"""

from __future__ import annotations
import hashlib
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable

import redis.asyncio as aioredis

from config import settings

logger = logging.getLogger(__name__)

_redis: aioredis.Redis | None = None


class Capability(str, Enum):
    GEOCODE = "geocode"
    REVERSE_GEOCODE = "reverse_geocode"
    ADDRESS_SEARCH = "address_search"
    WEATHER = "weather"
    TRAFFIC = "traffic"
    ROUTE_STATS = "route_stats"


CAPABILITY_TTL = {
    Capability.GEOCODE: settings.GEOCODE_CACHE_TTL,
    Capability.REVERSE_GEOCODE: settings.GEOCODE_CACHE_TTL,
    Capability.ADDRESS_SEARCH: settings.SEARCH_CACHE_TTL,
    Capability.WEATHER: settings.WEATHER_CACHE_TTL,
    Capability.TRAFFIC: settings.TRAFFIC_CACHE_TTL,
    Capability.ROUTE_STATS: settings.ROUTE_STATS_CACHE_TTL,
}


async def get_redis() -> aioredis.Redis:
    """Singleton Redis connection."""
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis


def _query_hash(query: str) -> str:
    return hashlib.sha256(query.encode()).hexdigest()[:16]


def cache_key(capability: Capability, query: str) -> str:
    return f"provider:{capability.value}:{_query_hash(query)}"


def stale_key(capability: Capability, query: str) -> str:
    return f"provider-stale:{capability.value}:{_query_hash(query)}"


class ProviderCache:
    """Per-capability TTL cache with stale-on-error semantics."""

    def __init__(self, stale_ttl: int | None = None):
        self.stale_ttl = stale_ttl or settings.STALE_CACHE_TTL

    async def _read(self, key: str) -> tuple[bool, Any]:
        try:
            r = await get_redis()
            raw = await r.get(key)
        except Exception as e:
            logger.warning("Provider cache read failed: key=%s, error=%s", key, e)
            return False, None
        if raw is None:
            return False, None
        try:
            return True, json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Provider cache entry corrupt, ignoring: key=%s", key)
            return False, None

    async def _write(self, capability: Capability, query: str, value: Any) -> None:
        payload = json.dumps(value)
        try:
            r = await get_redis()
            await r.set(cache_key(capability, query), payload, ex=CAPABILITY_TTL[capability])
            await r.set(stale_key(capability, query), payload, ex=self.stale_ttl)
        except Exception as e:
            logger.warning(
                "Provider cache write failed: capability=%s, query=%s, error=%s",
                capability.value, query, e,
            )

    async def get(self, capability: Capability, query: str) -> tuple[bool, Any]:
        return await self._read(cache_key(capability, query))

    async def lookup(
        self,
        capability: Capability,
        query: str,
        fetch: Callable[[], Awaitable[Any]],
        fallback: Any = None,
    ) -> tuple[Any, bool]:
        """
        Resolve a provider lookup through the cache.

        Args:
            capability: Which provider capability is being queried
            query: Normalized query string (already case-folded etc.)
            fetch: Coroutine factory that calls the provider; may raise
            fallback: Neutral value used when nothing better is available

        Returns:
            (value, from_cache)
        """
        hit, cached = await self.get(capability, query)
        if hit:
            return cached, True

        try:
            value = await fetch()
        except Exception as e:
            logger.warning(
                "Provider lookup failed: capability=%s, query=%s, error=%s",
                capability.value, query, e,
            )
            hit, last_good = await self._read(stale_key(capability, query))
            if hit:
                logger.info("Serving last known value: capability=%s, query=%s", capability.value, query)
                return last_good, True
            return fallback, False

        if value is None or value == []:
            return fallback, False

        await self._write(capability, query, value)
        return value, False


provider_cache = ProviderCache()
