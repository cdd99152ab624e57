import json

from loguru import logger
from redis.asyncio import Redis

from app.settings import EXCHANGE_RATES_TTL, REDIS_URL

_redis: Redis | None = None
RATES_KEY = "currency:rates"


def get_redis() -> Redis:
    global _redis
    if _redis is None:
        _redis = Redis.from_url(REDIS_URL, decode_responses=True)
    return _redis


async def get_rates_cache() -> dict | None:
    try:
        data = await get_redis().get(RATES_KEY)
        return json.loads(data) if data else None
    except Exception:
        logger.opt(exception=True).warning("Redis get failed, skipping exchange rates cache")
        return None


async def set_rates_cache(rates: dict) -> None:
    try:
        await get_redis().setex(RATES_KEY, EXCHANGE_RATES_TTL, json.dumps(rates))
    except Exception:
        logger.opt(exception=True).warning("Redis set failed, skipping exchange rates cache")

