"""
Multi-window rate governor backed by a shared Redis request log.

Every upstream request for a store is recorded in one Redis sorted set,
scored by request time. A request proceeds only when each trailing
window (second, minute, hour, day) holds fewer requests than its
budget, so no sliding window ever exceeds it. The log lives in Redis so
the budget holds across processes and restarts. Callers are delayed,
never failed: when Redis is down the governor falls back to a fixed
delay.
"""

import logging
import time
import uuid
from typing import Callable

from redis.exceptions import RedisError, WatchError

logger = logging.getLogger(__name__)


# (window name, length in seconds, margin added to a wait)
WINDOWS = (
    ("second", 1, 0.1),
    ("minute", 60, 1.0),
    ("hour", 3600, 5.0),
    ("day", 86400, 10.0),
)

KEY_PREFIX = "ordersync:rate"

# Entries older than the longest window are never counted again
LOG_RETENTION_SECONDS = WINDOWS[-1][1]
LOG_TTL_SECONDS = LOG_RETENTION_SECONDS + int(WINDOWS[-1][2])


class RateGovernor:
    """
    Enforces per-store request budgets.

    Usage:
        governor = RateGovernor(redis_client, settings.rate_limit)
        governor.acquire("natu")   # blocks until a request may proceed
        client.fetch(...)
    """

    def __init__(
        self,
        redis_client,
        config,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the governor.

        Args:
            redis_client: Redis client (decoded responses)
            config: RateLimitConfig with budgets, spacing and fallback delay
            clock: Wall clock in seconds, shared by every process
            sleep: Sleep function
        """
        self._redis = redis_client
        self.limits = {
            "second": config.per_second,
            "minute": config.per_minute,
            "hour": config.per_hour,
            "day": config.per_day,
        }
        self.min_interval = config.min_interval_seconds
        self.fallback_delay = config.fallback_delay_seconds
        self._clock = clock
        self._sleep = sleep

    @staticmethod
    def log_key(store_id: str) -> str:
        return f"{KEY_PREFIX}:log:{store_id}"

    @staticmethod
    def spacing_key(store_id: str) -> str:
        return f"{KEY_PREFIX}:last:{store_id}"

    def acquire(self, store_id: str) -> float:
        """
        Block until a request for store_id may proceed.

        Returns:
            Total seconds spent waiting
        """
        waited = 0.0
        try:
            waited += self._wait_for_spacing(store_id)
            while True:
                wait = self._charge(store_id)
                if wait <= 0:
                    break
                logger.info(f"{store_id}: request budget exhausted, waiting {wait:.1f}s")
                self._sleep(wait)
                waited += wait
        except RedisError as e:
            logger.warning(
                f"{store_id}: rate counter store unavailable ({e}), "
                f"falling back to {self.fallback_delay:.1f}s delay"
            )
            self._sleep(self.fallback_delay)
            waited += self.fallback_delay
        return waited

    def defer(self, store_id: str, seconds: float) -> None:
        """
        Back off after an upstream 429.

        Pushes the shared spacing key out by `seconds` so other processes
        syncing the same store also wait, then sleeps.
        """
        if seconds <= 0:
            return
        try:
            self._redis.set(self.spacing_key(store_id), "1", px=max(1, int(seconds * 1000)))
        except RedisError as e:
            logger.warning(f"{store_id}: could not share back-off with other workers: {e}")
        self._sleep(seconds)

    def status(self, store_id: str) -> dict:
        """
        Requests made in each trailing window, for monitoring.

        Returns:
            {"second", "minute", "hour", "day", "limits"}; counts are zero
            when Redis is unavailable
        """
        now = self._clock()
        key = self.log_key(store_id)
        try:
            pipe = self._redis.pipeline(transaction=False)
            for _, length, _ in WINDOWS:
                pipe.zcount(key, _after(now - length), "+inf")
            values = pipe.execute()
        except RedisError as e:
            logger.warning(f"{store_id}: could not read rate counters: {e}")
            values = [0] * len(WINDOWS)

        result = {name: int(value or 0) for (name, _, _), value in zip(WINDOWS, values)}
        result["limits"] = dict(self.limits)
        return result

    def _wait_for_spacing(self, store_id: str) -> float:
        """Enforce the minimum interval between requests to one store."""
        if self.min_interval <= 0:
            return 0.0

        key = self.spacing_key(store_id)
        interval_ms = max(1, int(self.min_interval * 1000))
        waited = 0.0
        while not self._redis.set(key, "1", nx=True, px=interval_ms):
            remaining_ms = self._redis.pttl(key)
            if remaining_ms is None or remaining_ms < 0:
                # Key vanished or has no expiry; wait one interval and retry
                remaining_ms = interval_ms
            delay = remaining_ms / 1000.0
            self._sleep(delay)
            waited += delay
        return waited

    def _charge(self, store_id: str) -> float:
        """
        Record one request if every trailing window has room for it.

        The log is watched while the windows are counted, so two
        processes cannot both take the last slot.

        Returns:
            0 if the request was recorded, else the seconds until enough
            old requests age out of the fullest window (plus its margin)
        """
        key = self.log_key(store_id)

        with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    pipe.watch(key)
                    now = self._clock()
                    wait = 0.0
                    for name, length, margin in WINDOWS:
                        limit = self.limits[name]
                        count = int(pipe.zcount(key, _after(now - length), "+inf"))
                        if count < limit:
                            continue
                        # This request fits once the entry `count - limit` from the
                        # oldest in the window has aged out
                        blocking = pipe.zrangebyscore(
                            key, _after(now - length), "+inf",
                            start=count - limit, num=1, withscores=True,
                        )
                        ages_out = blocking[0][1] + length if blocking else now + length
                        wait = max(wait, ages_out - now + margin)
                        logger.debug(f"{store_id}: {name} budget exhausted ({count}/{limit})")

                    if wait > 0:
                        pipe.unwatch()
                        return wait

                    pipe.multi()
                    pipe.zremrangebyscore(key, "-inf", now - LOG_RETENTION_SECONDS)
                    pipe.zadd(key, {f"{now:.6f}:{uuid.uuid4().hex}": now})
                    pipe.expire(key, LOG_TTL_SECONDS)
                    pipe.execute()
                    return 0.0
                except WatchError:
                    logger.debug(f"{store_id}: concurrent request recorded, recounting")
                    continue


def _after(score: float) -> str:
    """Exclusive lower score bound."""
    return f"({score!r}"
