"""
Shared Redis connection pool.

Rate counters and the position cache live in the same Redis so that
every process syncing a store sees the same budget and the same
position. One pool is created per URL and reused by all callers.
"""

import logging
from typing import Optional

from redis import ConnectionPool, Redis

logger = logging.getLogger(__name__)

_pools: dict[str, ConnectionPool] = {}


def get_redis_pool(url: str, socket_timeout: float = 2.0) -> ConnectionPool:
    """
    Get the shared connection pool for a Redis URL.

    Creates the pool on first call. Connecting is lazy: an unreachable
    server surfaces as a RedisError on first use, which callers degrade on.
    """
    pool = _pools.get(url)
    if pool is None:
        pool = ConnectionPool.from_url(
            url,
            max_connections=10,
            socket_connect_timeout=socket_timeout,
            socket_timeout=socket_timeout,
            decode_responses=True,
        )
        _pools[url] = pool
        logger.info(f"Redis connection pool initialized ({url.rsplit('@', 1)[-1]})")
    return pool


def get_redis_client(config) -> Redis:
    """Get a Redis client for a RedisConfig, backed by the shared pool."""
    return Redis(connection_pool=get_redis_pool(config.url, config.socket_timeout))


def close_redis_pools() -> None:
    """Disconnect every pool (used on shutdown)."""
    for url, pool in list(_pools.items()):
        try:
            pool.disconnect()
        except Exception as e:
            logger.warning(f"Error closing Redis pool: {e}")
        _pools.pop(url, None)


def ping(client: Optional[Redis]) -> bool:
    """Check whether Redis answers."""
    if client is None:
        return False
    try:
        return bool(client.ping())
    except Exception as e:
        logger.debug(f"Redis ping failed: {e}")
        return False
