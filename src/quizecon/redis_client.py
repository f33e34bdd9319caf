"""Redis connection pool for balance-change pub/sub.

Redis is optional: with an empty URL the pool is never created and
publishers skip notification.
"""

import redis.asyncio as redis

_pool: redis.Redis | None = None


async def init_redis(url: str) -> redis.Redis | None:
    """Create the pool, or leave pub/sub disabled when ``url`` is empty."""
    global _pool  # noqa: PLW0603
    if not url:
        _pool = None
        return None
    _pool = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
        health_check_interval=30,
    )
    return _pool


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _pool  # noqa: PLW0603
    if _pool:
        await _pool.aclose()
        _pool = None


async def redis_status() -> str:
    """``ok``, ``disabled`` or ``error: ...`` for the readiness probe."""
    if _pool is None:
        return "disabled"
    try:
        await _pool.ping()
    except redis.RedisError as exc:
        return f"error: {exc}"
    return "ok"
