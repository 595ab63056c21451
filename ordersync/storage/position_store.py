"""
Two-tier store for per-store sync positions.

Positions are kept in Redis for fast access and shared across
processes, and in one JSON file per store on disk as a fallback that
survives a Redis reset. Saves are last-writer-wins by capture time in
both tiers, so an older pass can never overwrite a newer position.
"""

import json
import logging
import os
import tempfile
from datetime import timedelta
from pathlib import Path
from typing import Optional

from redis.exceptions import RedisError, WatchError

from .models import PositionSource, SyncPosition

logger = logging.getLogger(__name__)


class PositionStoreError(Exception):
    """Raised when neither tier can persist a position."""
    pass


class PositionStore:
    """
    Redis + JSON file position store.

    Usage:
        positions = PositionStore(redis_client, Path("data/sync-positions"))

        position = positions.load("natu")
        positions.save("natu", new_position)
    """

    KEY_PREFIX = "ordersync:position"
    MAX_WATCH_RETRIES = 3

    def __init__(
        self,
        redis_client,
        directory: Path,
        ttl_seconds: int = 86400 * 7,
        stale_after: timedelta = timedelta(hours=72),
    ):
        """
        Initialize position store.

        Args:
            redis_client: Redis client (decoded responses)
            directory: Directory holding the per-store JSON files
            ttl_seconds: Expiry of the Redis copy
            stale_after: Age after which a position is considered stale
        """
        self._redis = redis_client
        self.directory = Path(directory)
        self.ttl_seconds = ttl_seconds
        self.stale_after = stale_after

        self.directory.mkdir(parents=True, exist_ok=True)

    def key(self, store_id: str) -> str:
        return f"{self.KEY_PREFIX}:{store_id}"

    def path(self, store_id: str) -> Path:
        return self.directory / f"{store_id}.json"

    def load(self, store_id: str) -> Optional[SyncPosition]:
        """
        Load the position for a store.

        Tries Redis first, then the JSON file. A position found only on
        disk is written back into Redis and tagged restored.

        Returns:
            SyncPosition, or None if neither tier has one
        """
        try:
            raw = self._redis.get(self.key(store_id))
            if raw:
                position = self._parse(raw, f"cache for {store_id}")
                if position is not None:
                    return position
        except RedisError as e:
            logger.warning(f"{store_id}: position cache unavailable, reading disk: {e}")

        position = self._read_file(store_id)
        if position is None:
            logger.debug(f"{store_id}: no saved position")
            return None

        position = position.with_source(PositionSource.RESTORED)
        try:
            self._redis.set(self.key(store_id), json.dumps(position.to_dict()), ex=self.ttl_seconds)
            logger.info(f"{store_id}: position restored from disk (page {position.last_page})")
        except RedisError as e:
            logger.warning(f"{store_id}: could not write restored position back to cache: {e}")
        return position

    def save(self, store_id: str, position: SyncPosition) -> bool:
        """
        Save a position to both tiers, last writer wins.

        Returns:
            False if either tier already holds a newer position

        Raises:
            PositionStoreError: If neither tier could be written
        """
        on_disk = self._read_file(store_id)
        if on_disk is not None and on_disk.captured_at > position.captured_at:
            logger.warning(f"{store_id}: newer position already on disk, keeping it")
            return False

        payload = json.dumps(position.to_dict())

        cache_ok: Optional[bool]
        try:
            cache_ok = self._save_cache(store_id, position, payload)
        except RedisError as e:
            logger.warning(f"{store_id}: position cache unavailable, saving to disk only: {e}")
            cache_ok = None

        if cache_ok is False:
            logger.warning(f"{store_id}: newer position already cached, keeping it")
            return False

        try:
            disk_ok = self._save_file(store_id, position, payload)
        except OSError as e:
            if cache_ok is None:
                raise PositionStoreError(f"{store_id}: could not save position: {e}") from e
            logger.error(f"{store_id}: could not write position file: {e}")
            disk_ok = True

        if not disk_ok:
            logger.warning(f"{store_id}: newer position already on disk, keeping it")
            return False

        logger.debug(
            f"{store_id}: position saved (page {position.last_page}, "
            f"ids {position.last_id}-{position.first_id}, {position.source.value})"
        )
        return True

    def restore_all(self) -> int:
        """
        Copy every on-disk position missing from Redis back into Redis.

        Used after a Redis reset.

        Returns:
            Number of positions restored
        """
        restored = 0
        for path in sorted(self.directory.glob("*.json")):
            store_id = path.stem
            try:
                if self._redis.exists(self.key(store_id)):
                    continue
            except RedisError as e:
                logger.error(f"Position cache unavailable, cannot restore: {e}")
                return restored

            position = self._read_file(store_id)
            if position is None:
                continue

            position = position.with_source(PositionSource.RESTORED)
            try:
                self._redis.set(self.key(store_id), json.dumps(position.to_dict()), ex=self.ttl_seconds)
            except RedisError as e:
                logger.error(f"Position cache unavailable, cannot restore: {e}")
                return restored

            restored += 1
            logger.info(f"{store_id}: position restored to cache (page {position.last_page})")

        return restored

    def health(self, store_ids) -> dict:
        """
        Report the position state of each store.

        Status values:
            healthy: cached, fresh, read from a live scan
            recovered: came from recovery or a disk restore
            stale: older than the staleness horizon
            missing: no position in either tier

        Returns:
            {store_id: {"status", "cached", "on_disk", "position"}}
        """
        report = {}
        for store_id in store_ids:
            cached = None
            try:
                raw = self._redis.get(self.key(store_id))
                if raw:
                    cached = self._parse(raw, f"cache for {store_id}")
            except RedisError as e:
                logger.warning(f"{store_id}: position cache unavailable: {e}")

            on_disk = self._read_file(store_id)
            position = cached or on_disk

            if position is None:
                status = "missing"
            elif position.is_stale(self.stale_after):
                status = "stale"
            elif cached is None or position.source != PositionSource.LIVE_SCAN:
                status = "recovered"
            else:
                status = "healthy"

            report[store_id] = {
                "status": status,
                "cached": cached is not None,
                "on_disk": on_disk is not None,
                "position": position.to_dict() if position else None,
            }
        return report

    def _save_cache(self, store_id: str, position: SyncPosition, payload: str) -> bool:
        """Optimistic compare-and-set on the Redis copy."""
        key = self.key(store_id)
        with self._redis.pipeline() as pipe:
            for _ in range(self.MAX_WATCH_RETRIES):
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    current = self._parse(raw, f"cache for {store_id}") if raw else None
                    if current is not None and current.captured_at > position.captured_at:
                        pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.set(key, payload, ex=self.ttl_seconds)
                    pipe.execute()
                    return True
                except WatchError:
                    logger.debug(f"{store_id}: concurrent position write, retrying")
                    continue
        logger.warning(f"{store_id}: position cache kept changing, giving up on cache write")
        return False

    def _save_file(self, store_id: str, position: SyncPosition, payload: str) -> bool:
        """Compare with the file copy, then replace it atomically."""
        current = self._read_file(store_id)
        if current is not None and current.captured_at > position.captured_at:
            return False

        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{store_id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(payload)
            os.replace(tmp_path, self.path(store_id))
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        return True

    def _read_file(self, store_id: str) -> Optional[SyncPosition]:
        path = self.path(store_id)
        if not path.exists():
            return None
        try:
            return self._parse(path.read_text(), str(path))
        except OSError as e:
            logger.warning(f"Could not read {path}: {e}")
            return None

    @staticmethod
    def _parse(raw: str, origin: str) -> Optional[SyncPosition]:
        try:
            return SyncPosition.from_dict(json.loads(raw))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable position in {origin}: {e}")
            return None
