"""AI quota — fixed daily window per client, counted in Redis."""

import logging
from datetime import datetime, timezone

from fastapi import HTTPException, Request

from config import settings
from services.cache import get_redis

logger = logging.getLogger(__name__)

WINDOW_SEC = 24 * 3600


def quota_key(client_id: str) -> str:
    day = datetime.now(timezone.utc).strftime("%Y%m%d")
    return f"ai-quota:{client_id}:{day}"


async def ai_quota(request: Request) -> None:
    """
    FastAPI dependency guarding advisor-backed endpoints.
    Fails open when Redis is unavailable.
    """
    client_id = request.client.host if request.client else "anonymous"
    key = quota_key(client_id)
    try:
        r = await get_redis()
        used = await r.incr(key)
        if used == 1:
            await r.expire(key, WINDOW_SEC)
    except Exception as e:
        logger.warning("AI quota check skipped, Redis unavailable: %s", e)
        return

    if used > settings.AI_DAILY_QUOTA:
        logger.info("AI quota exceeded: client=%s, used=%d", client_id, used)
        raise HTTPException(
            status_code=429,
            detail="Daily AI optimization limit reached. Please try again tomorrow.",
        )
