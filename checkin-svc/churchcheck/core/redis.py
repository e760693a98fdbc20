from __future__ import annotations
import logging
import redis.asyncio as redis
from .config import get_settings

logger = logging.getLogger(__name__)

_settings = get_settings()
_r: redis.Redis | None = None

def get_redis() -> redis.Redis:
    global _r
    if _r is None:
        _r = redis.from_url(_settings.redis_url, decode_responses=True)
    return _r

async def ping_redis() -> bool:
    if not _settings.rl_enabled:
        return False
    try:
        r = get_redis()
        pong = await r.ping()
        return bool(pong)
    except redis.RedisError as e:
        logger.warning("redis unreachable at start-up: %s", e)
        return False

# ---- Fixed-window rate limit per client/route (PIN lookups are guessable) ----
async def allow_request(client_key: str, route_key: str) -> bool:
    """
    Fixed window: increment a counter key; allow if <= max.
    An unreachable Redis fails open so an offline kiosk can still look people up.
    """
    if not _settings.rl_enabled:
        return True
    key = f"rl:{route_key}:{client_key}"
    try:
        pipe = get_redis().pipeline()
        pipe.incr(key)
        pipe.expire(key, _settings.rl_window_seconds)
        count, _ = await pipe.execute()
    except redis.RedisError as e:
        logger.warning("rate limit skipped for %s: %s", route_key, e)
        return True
    return int(count) <= _settings.rl_max_reqs
