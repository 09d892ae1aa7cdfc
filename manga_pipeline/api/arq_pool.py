"""ARQ Redis pool management.

The API process publishes pipeline events by enqueueing them on this pool.
The pool is created in the application lifespan and closed on shutdown.
"""

from typing import Optional

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings

from .config import REDIS_URL

# ARQ Redis pool (set during API startup)
_pool: Optional[ArqRedis] = None


def redis_settings() -> RedisSettings:
    """Redis settings shared by the API and the worker."""
    return RedisSettings.from_dsn(REDIS_URL)


async def open_pool() -> ArqRedis:
    """Create the ARQ pool and register it. Called during API startup."""
    pool = await create_pool(redis_settings())
    set_pool(pool)
    return pool


def set_pool(pool: ArqRedis) -> None:
    global _pool
    _pool = pool


def get_pool() -> ArqRedis:
    """Get the ARQ Redis pool. Raises if not initialized."""
    if _pool is None:
        raise RuntimeError(
            "ARQ pool not initialized. Ensure the API server is running."
        )
    return _pool


async def close_pool() -> None:
    """Close the ARQ pool. Called during API shutdown."""
    global _pool
    if _pool is not None:
        await _pool.aclose()
        _pool = None
