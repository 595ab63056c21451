"""
Background sync worker.

Runs sync cycles over all active stores from an asyncio event loop.
Each pass is blocking (network calls gated by the rate governor), so
it runs in a worker thread. Stores are synced one at a time, with a
cooldown between them, and never twice at once.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from .engine import SyncStats

logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    """Outcome of one cycle over all stores."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    results: dict = field(default_factory=dict)
    cancelled: bool = False

    @property
    def skipped(self) -> list[str]:
        return [s for s, stats in self.results.items() if stats.skipped]

    @property
    def failed(self) -> list[str]:
        return [s for s, stats in self.results.items() if stats.failed]

    def __str__(self) -> str:
        created = sum(s.created for s in self.results.values())
        updated = sum(s.updated for s in self.results.values())
        return (
            f"Cycle complete: {len(self.results)} stores, {created} created, "
            f"{updated} updated, {len(self.failed)} failed, {len(self.skipped)} skipped"
            + (" (cancelled)" if self.cancelled else "")
        )


class SyncWorker:
    """
    Schedules sync passes for every active store.

    Usage:
        worker = SyncWorker(settings.active_stores, build_engine, settings.scheduler)

        result = await worker.run_cycle()     # one cycle
        await worker.run_forever()            # hourly, inside the active window
        worker.cancel()                       # stop between stores
    """

    def __init__(
        self,
        stores,
        engine_factory: Callable,
        scheduler_config,
        now: Callable[[], datetime] = datetime.now,
        sleep: Callable = asyncio.sleep,
    ):
        """
        Args:
            stores: StoreCredentials to sync (inactive ones are ignored)
            engine_factory: Builds a SyncEngine for a StoreCredential
            scheduler_config: SchedulerConfig (interval, window, cooldown)
            now: Local clock for the active-hours window
            sleep: Coroutine function used for the cooldown between stores
        """
        self.stores = [s for s in stores if s.active]
        self._engine_factory = engine_factory
        self.config = scheduler_config
        self._now = now
        self._sleep = sleep
        self._in_flight: set[str] = set()
        self._cancelled = asyncio.Event()

    @property
    def in_flight(self) -> set[str]:
        return set(self._in_flight)

    def cancel(self) -> None:
        """Stop after the pass currently running."""
        logger.info("Sync worker cancellation requested")
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def sync_store(self, store) -> SyncStats:
        """
        Run one pass for a store unless one is already running.

        The store stays in flight until its pass thread finishes, even
        if the task awaiting it is cancelled first.

        Returns:
            SyncStats; skipped=True if the store was already syncing
        """
        if store.identifier in self._in_flight:
            logger.warning(f"{store.identifier}: previous sync still running, skipping")
            return SyncStats(store_id=store.identifier, skipped=True)

        self._in_flight.add(store.identifier)
        try:
            engine = self._engine_factory(store)
        except Exception as e:
            self._in_flight.discard(store.identifier)
            return self._crashed(store, e)

        running = asyncio.ensure_future(asyncio.to_thread(engine.sync))
        running.add_done_callback(lambda _: self._in_flight.discard(store.identifier))
        try:
            return await asyncio.shield(running)
        except Exception as e:
            return self._crashed(store, e)

    @staticmethod
    def _crashed(store, error: Exception) -> SyncStats:
        logger.error(f"{store.identifier}: sync crashed: {error}", exc_info=error)
        return SyncStats(store_id=store.identifier, failed=True, error=f"{type(error).__name__}: {error}")

    async def run_cycle(self) -> CycleResult:
        """
        Sync every active store once, sequentially.

        Cancellation is checked before each store.
        """
        result = CycleResult(started_at=self._now())
        logger.info(f"Starting sync cycle for {len(self.stores)} stores")

        for index, store in enumerate(self.stores):
            if self.cancelled:
                logger.info("Sync cycle cancelled")
                result.cancelled = True
                break

            if index > 0 and self.config.cycle_cooldown_seconds > 0:
                await self._sleep(self.config.cycle_cooldown_seconds)

            result.results[store.identifier] = await self.sync_store(store)

        result.finished_at = self._now()
        logger.info(str(result))
        return result

    def in_active_window(self, moment: Optional[datetime] = None) -> bool:
        """Check whether cycles may run at this local time (hours inclusive)."""
        hour = (moment or self._now()).hour
        start, end = self.config.active_from_hour, self.config.active_until_hour
        if start <= end:
            return start <= hour <= end
        return hour >= start or hour <= end

    async def run_forever(self) -> None:
        """
        Run a cycle every interval inside the active window until cancelled.
        """
        interval = self.config.interval_minutes * 60
        logger.info(
            f"Sync worker started: every {self.config.interval_minutes} min, "
            f"{self.config.active_from_hour:02d}:00-{self.config.active_until_hour:02d}:59"
        )

        while not self.cancelled:
            if self.in_active_window():
                await self.run_cycle()
            else:
                logger.debug("Outside active hours, skipping cycle")

            try:
                await asyncio.wait_for(self._cancelled.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Sync worker stopped")
