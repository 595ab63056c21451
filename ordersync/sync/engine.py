"""
Order sync engine.

Runs one synchronization pass for one store:

    IDLE -> FORWARD_SCAN -> BACKWARD_SCAN -> RECONCILE -> IDLE

The forward scan walks from the newest page towards older pages until
it reaches the orders already imported (the floor), picking up new
importable orders. The backward scan re-reads a bounded window of
pages at that frontier to catch older orders whose status changed.
Reconcile hands the merged deltas to the persister and only then
saves the position, so a saved position never runs ahead of the data.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Callable, Optional, Union

from redis.exceptions import RedisError

from ..storage.models import PositionSource, SyncPosition, utcnow
from ..storage.position_store import PositionStoreError
from ..upstream.client import (
    AuthenticationFailedError,
    MalformedPageError,
    RateLimitedError,
    TransientNetworkError,
    UpstreamAPIError,
)
from ..upstream.models import Page
from .delta import backward_delta, forward_delta, merge_deltas
from .persister import Persister
from .recovery import PositionRecovery, RecoveryError

logger = logging.getLogger(__name__)


SUMMARY_KEY_PREFIX = "ordersync:sync"
SUMMARY_TTL_SECONDS = 86400


class SyncState(str, Enum):
    """Phases of a sync pass."""
    IDLE = "idle"
    FORWARD_SCAN = "forward_scan"
    BACKWARD_SCAN = "backward_scan"
    RECONCILE = "reconcile"


class PassAbortedError(Exception):
    """Raised when too many malformed pages make a pass untrustworthy."""
    pass


@dataclass
class SyncStats:
    """Statistics from a sync pass."""
    store_id: str
    forward_pages: int = 0
    backward_pages: int = 0
    emitted: int = 0
    created: int = 0
    updated: int = 0
    errors: int = 0
    page_errors: int = 0
    malformed_pages: int = 0
    recovery_probes: int = 0
    degraded: bool = False
    forward_complete: bool = False
    skipped: bool = False
    failed: bool = False
    error: Optional[str] = None
    state: SyncState = SyncState.IDLE
    position: Optional[SyncPosition] = None
    duration_seconds: float = 0.0

    def __str__(self) -> str:
        return (
            f"Sync {self.store_id}: {self.forward_pages}+{self.backward_pages} pages, "
            f"{self.emitted} emitted, {self.created} created, {self.updated} updated, "
            f"{self.errors} errors, {self.malformed_pages} malformed"
            + (f", FAILED: {self.error}" if self.failed else "")
        )

    def to_dict(self) -> dict:
        return {
            "storeId": self.store_id,
            "forwardPages": self.forward_pages,
            "backwardPages": self.backward_pages,
            "emitted": self.emitted,
            "created": self.created,
            "updated": self.updated,
            "errors": self.errors,
            "malformedPages": self.malformed_pages,
            "forwardComplete": self.forward_complete,
            "degraded": self.degraded,
            "failed": self.failed,
            "error": self.error,
            "position": self.position.to_dict() if self.position else None,
            "durationSeconds": round(self.duration_seconds, 3),
            "finishedAt": utcnow().isoformat(),
        }


@dataclass
class _PassPlan:
    """Where a pass starts and what it compares against."""
    start_token: Union[int, str, None]
    floor: Optional[int]
    empty_tolerance: int
    anchor: Optional[Page] = None
    anchor_token: Union[int, str, None] = None
    first_page: Optional[Page] = None
    degraded: bool = False


@dataclass
class _PassProgress:
    """What a pass has gathered so far."""
    forward: list = field(default_factory=list)
    backward: list = field(default_factory=list)
    frontier: Optional[Page] = None
    furthest: Optional[Page] = None
    furthest_at: Optional[object] = None
    complete: bool = False


class SyncEngine:
    """
    Synchronizes one store's orders into the persister.

    Core principles:
    - Every pass is idempotent; a repeated pass emits nothing new
    - An order is emitted at most once per pass
    - Page errors stop a scan, never the pass
    - The position is saved only after the deltas are persisted

    Usage:
        engine = SyncEngine(
            store_id="natu",
            client=client,
            persister=order_store,
            positions=position_store,
            config=settings.sync,
        )

        stats = engine.sync()
        print(stats)
    """

    def __init__(
        self,
        store_id: str,
        client,
        persister: Persister,
        positions,
        config,
        redis_client=None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize sync engine.

        Args:
            store_id: Store identifier
            client: EcoManagerClient for the store
            persister: Persister receiving the deltas
            positions: PositionStore
            config: SyncConfig (window sizes, thresholds, retries)
            redis_client: Optional Redis for the last-sync summary
            sleep: Sleep function used between retries
        """
        self.store_id = store_id
        self.client = client
        self.persister = persister
        self.positions = positions
        self.config = config
        self._redis = redis_client
        self._sleep = sleep

        self.recovery = PositionRecovery(
            fetch=lambda number: self._retry_operation(
                lambda: self.client.fetch(number),
                f"probe page {number}",
            ),
            max_probes=config.max_recovery_probes,
            pagination=client.pagination,
        )

        self._state = SyncState.IDLE
        self._malformed = 0

    @property
    def state(self) -> SyncState:
        return self._state

    def sync(self) -> SyncStats:
        """
        Execute one synchronization pass.

        Authentication failures and aborted passes do not raise; they
        are reported through SyncStats.failed and SyncStats.error.

        Returns:
            SyncStats for the pass
        """
        stats = SyncStats(store_id=self.store_id)
        started = time.monotonic()
        self._malformed = 0

        if self.config.dry_run:
            logger.info("DRY RUN MODE - No changes will be made")

        logger.info(f"Starting sync for {self.store_id}...")

        try:
            if not self._check_connection(stats):
                return stats
            self._run(stats)
        except AuthenticationFailedError as e:
            logger.error(f"{self.store_id}: authentication failed, check the store token: {e}")
            stats.failed = True
            stats.error = f"AuthenticationFailedError: {e}"
        except PassAbortedError as e:
            logger.error(f"{self.store_id}: pass aborted: {e}")
            stats.failed = True
            stats.error = f"PassAbortedError: {e}"
        finally:
            stats.state = self._state
            self._state = SyncState.IDLE
            stats.duration_seconds = time.monotonic() - started
            self._record_summary(stats)
            logger.info(str(stats))

        return stats

    def _check_connection(self, stats: SyncStats) -> bool:
        """
        Check the store answers before scanning, with the usual retries.

        Returns:
            False if the store could not be reached; the pass then ends
            early without touching the position, like a scan whose first
            page failed

        Raises:
            AuthenticationFailedError: If the store rejects the token
        """
        try:
            self._retry_operation(self.client.check_connection, "connection test")
            return True
        except AuthenticationFailedError:
            raise
        except UpstreamAPIError as e:
            logger.error(f"{self.store_id}: connection test failed, skipping this pass: {e}")
            stats.page_errors += 1
            return False

    def _run(self, stats: SyncStats) -> None:
        latest = self.persister.latest_external_id(self.store_id)
        plan = self._plan(latest, stats)
        progress = _PassProgress()
        fatal: Optional[Exception] = None

        try:
            self._state = SyncState.FORWARD_SCAN
            self._forward_scan(plan, progress, stats)

            self._state = SyncState.BACKWARD_SCAN
            self._backward_scan(plan, progress, stats)
        except (AuthenticationFailedError, PassAbortedError) as e:
            fatal = e

        self._state = SyncState.RECONCILE
        self._reconcile(plan, progress, stats)

        if fatal is not None:
            raise fatal

    def _plan(self, latest: Optional[int], stats: SyncStats) -> _PassPlan:
        """
        Decide where the forward scan starts and what its floor is.

        - nothing imported yet: newest page, no floor
        - previous sweep cut short: resume where it stopped
        - otherwise: newest page, floor = newest imported ID
        """
        head = self.client.head_token
        tolerance = self.config.max_empty_pages
        position = self.positions.load(self.store_id)
        stale_after = timedelta(hours=self.config.position_stale_after_hours)

        if position is not None and position.sweep_pending:
            floor = position.floor_id or None
            logger.info(
                f"{self.store_id}: resuming unfinished sweep at page {position.last_page} "
                f"(down to order {position.floor_id})"
            )
            if not position.is_stale(stale_after):
                page = self._probe(position.last_page)
                if page is not None and page.brackets(position.last_id):
                    return _PassPlan(start_token=position.last_page, floor=floor,
                                     empty_tolerance=tolerance, first_page=page)
                logger.warning(f"{self.store_id}: saved page {position.last_page} has drifted")

            try:
                located = self.recovery.locate(self.store_id, position.last_id)
            except RecoveryError as e:
                logger.warning(f"{self.store_id}: {e}; restarting sweep from the newest page")
                return _PassPlan(start_token=head, floor=floor, empty_tolerance=tolerance)

            stats.recovery_probes += located.probes
            return _PassPlan(
                start_token=located.page,
                floor=floor,
                empty_tolerance=tolerance if located.exact else tolerance * 2,
                first_page=located.snapshot,
                degraded=not located.exact,
            )

        if latest is None:
            logger.info(f"{self.store_id}: no imported orders, starting from the newest page")
            return _PassPlan(start_token=head, floor=None, empty_tolerance=tolerance)

        plan = _PassPlan(start_token=head, floor=latest, empty_tolerance=tolerance)

        if position is not None and not position.is_stale(stale_after):
            plan.anchor_token = position.last_page
            return plan

        logger.info(f"{self.store_id}: saved position missing or stale, locating order {latest}")
        try:
            located = self.recovery.locate(self.store_id, latest)
        except RecoveryError as e:
            logger.warning(f"{self.store_id}: {e}; scanning from the newest page")
            return plan

        stats.recovery_probes += located.probes
        plan.anchor = located.snapshot
        plan.anchor_token = located.page
        if not located.exact:
            plan.degraded = True
            plan.empty_tolerance = tolerance * 2
        return plan

    def _forward_scan(self, plan: _PassPlan, progress: _PassProgress, stats: SyncStats) -> None:
        """
        Walk towards older pages collecting new importable orders.

        Stops at the floor, at the end of history, or at the horizon.
        """
        token = plan.start_token
        prefetched = plan.first_page
        empty_run = 0
        stats.degraded = plan.degraded

        while True:
            if stats.forward_pages >= self.config.forward_max_pages:
                logger.info(
                    f"{self.store_id}: forward horizon of {self.config.forward_max_pages} pages "
                    f"reached, sweep continues next pass"
                )
                return

            if prefetched is not None:
                page, prefetched = prefetched, None
            else:
                try:
                    page = self._fetch_page(token)
                except UpstreamAPIError as e:
                    if isinstance(e, AuthenticationFailedError):
                        raise
                    logger.error(f"{self.store_id}: forward scan stopped at page {token}: {e}")
                    stats.page_errors += 1
                    return

            stats.forward_pages += 1

            if page is None:
                # Malformed, skipped
                if isinstance(token, int):
                    token += 1
                    continue
                return

            if page.is_empty:
                empty_run += 1
                if empty_run >= plan.empty_tolerance:
                    logger.debug(f"{self.store_id}: {empty_run} empty pages, end of history")
                    progress.complete = True
                    return
            else:
                empty_run = 0
                self._collect_new(page, plan.floor, progress)
                progress.furthest = page
                progress.furthest_at = utcnow()

                if plan.floor is not None and page.last_id <= plan.floor:
                    logger.debug(f"{self.store_id}: frontier reached on page {page.token}")
                    progress.frontier = page
                    progress.complete = True
                    return

            if page.next_token is None:
                progress.complete = True
                return
            token = page.next_token

    def _collect_new(self, page: Page, floor: Optional[int], progress: _PassProgress) -> None:
        candidates = [o.id for o in page.orders if floor is None or o.id > floor]
        known = self.persister.exists(self.store_id, candidates) if candidates else set()
        for order in page.orders:
            delta = forward_delta(order, floor, known, self.config.importable_status)
            if delta is not None:
                progress.forward.append(delta)

    def _backward_scan(self, plan: _PassPlan, progress: _PassProgress, stats: SyncStats) -> None:
        """
        Re-read a bounded window of pages at the frontier.

        Catches orders skipped earlier that became importable, and
        imported orders whose status changed.
        """
        window = self.config.backward_window_pages
        if progress.frontier is not None:
            token, page = progress.frontier.token, progress.frontier
        elif plan.anchor_token is not None:
            token, page = plan.anchor_token, plan.anchor
        else:
            logger.debug(f"{self.store_id}: no frontier known, skipping backward scan")
            return

        emitted = {d.order_id for d in progress.forward}

        while stats.backward_pages < window:
            if page is None:
                try:
                    page = self._fetch_page(token)
                except UpstreamAPIError as e:
                    if isinstance(e, AuthenticationFailedError):
                        raise
                    logger.error(f"{self.store_id}: backward scan stopped at page {token}: {e}")
                    stats.page_errors += 1
                    return

            stats.backward_pages += 1

            if page is None:
                if isinstance(token, int):
                    token += 1
                    continue
                return

            if page.is_empty:
                return

            ids = [o.id for o in page.orders]
            recorded = self.persister.recorded_statuses(self.store_id, ids)
            for order in page.orders:
                if order.id in emitted:
                    continue
                delta = backward_delta(order, recorded, self.config.importable_status)
                if delta is not None:
                    progress.backward.append(delta)

            if page.next_token is None:
                return
            token, page = page.next_token, None

    def _reconcile(self, plan: _PassPlan, progress: _PassProgress, stats: SyncStats) -> None:
        """
        Persist the merged deltas, then the position.
        """
        merged = merge_deltas(progress.forward, progress.backward)
        stats.emitted = len(merged)
        stats.forward_complete = progress.complete
        stats.malformed_pages = self._malformed

        position = self._next_position(plan, progress)
        stats.position = position

        if merged:
            logger.info(
                f"{self.store_id}: {len(progress.forward)} new, "
                f"{len(merged) - len(progress.forward)} changed"
            )

        if self.config.dry_run:
            for delta in merged:
                logger.info(f"DRY RUN: Would upsert {delta}")
            return

        for delta in merged:
            try:
                result = self.persister.upsert(self.store_id, delta.snapshot)
            except Exception as e:
                logger.error(f"{self.store_id}: failed to persist order {delta.order_id}: {e}", exc_info=True)
                stats.errors += 1
                continue
            if result == "created":
                stats.created += 1
            else:
                stats.updated += 1

        if position is None:
            return

        if stats.errors:
            logger.warning(f"{self.store_id}: {stats.errors} orders not persisted, position not advanced")
            return

        try:
            self.positions.save(self.store_id, position)
        except PositionStoreError as e:
            logger.error(f"{self.store_id}: {e}")
            stats.errors += 1

    def _next_position(self, plan: _PassPlan, progress: _PassProgress) -> Optional[SyncPosition]:
        """
        Position to save for this pass, None to keep the saved one.

        A finished sweep records its frontier page. An unfinished sweep
        records the furthest page read and keeps the floor it was
        walking towards, so the next pass resumes there.
        """
        page = progress.frontier or progress.furthest
        if page is None:
            return None

        source = PositionSource.RECOVERED if plan.degraded else PositionSource.LIVE_SCAN
        floor_id = None
        if not progress.complete:
            # 0: an unfinished first import walks down to the oldest order
            floor_id = plan.floor if plan.floor is not None else 0

        return SyncPosition(
            last_page=page.token,
            first_id=page.first_id,
            last_id=page.last_id,
            captured_at=progress.furthest_at or utcnow(),
            source=source,
            floor_id=floor_id,
        )

    def _probe(self, token) -> Optional[Page]:
        """Fetch one page for validation; None if it cannot be read."""
        try:
            return self._retry_operation(lambda: self.client.fetch(token), f"validate page {token}")
        except AuthenticationFailedError:
            raise
        except UpstreamAPIError as e:
            logger.warning(f"{self.store_id}: could not read saved page {token}: {e}")
            return None

    def _fetch_page(self, token) -> Optional[Page]:
        """
        Fetch one page with retries.

        Returns:
            The page, or None if it was malformed and skipped

        Raises:
            PassAbortedError: If malformed pages exceed the threshold
            UpstreamAPIError: If the page could not be fetched
        """
        try:
            return self._retry_operation(lambda: self.client.fetch(token), f"fetch page {token}")
        except MalformedPageError as e:
            self._malformed += 1
            logger.warning(
                f"{self.store_id}: skipping malformed page {token} "
                f"({self._malformed}/{self.config.max_malformed_pages}): {e}"
            )
            if self._malformed > self.config.max_malformed_pages:
                raise PassAbortedError(
                    f"{self._malformed} malformed pages, last at page {token}"
                ) from e
            return None

    def _retry_operation(self, operation, description: str):
        """
        Execute an upstream call with retry logic.

        Rate limited calls are retried right away (the client has
        already waited out the hint); transient failures back off
        exponentially. Other errors are not retried.

        Args:
            operation: Callable to execute
            description: Human-readable description for logging

        Returns:
            Result of operation

        Raises:
            Last exception if all retries failed
        """
        last_error = None

        for attempt in range(self.config.max_retries):
            try:
                return operation()
            except RateLimitedError as e:
                last_error = e
                logger.warning(
                    f"Retry {attempt + 1}/{self.config.max_retries} for {description}: rate limited"
                )
            except TransientNetworkError as e:
                last_error = e
                if attempt < self.config.max_retries - 1:
                    delay = self.config.retry_delay_seconds * (2 ** attempt)
                    logger.warning(
                        f"Retry {attempt + 1}/{self.config.max_retries} for {description}: {e}. "
                        f"Waiting {delay}s..."
                    )
                    self._sleep(delay)

        logger.error(f"All retries failed for {description}: {last_error}")
        raise last_error

    def _record_summary(self, stats: SyncStats) -> None:
        """Keep the last pass summary in Redis for the status view."""
        if self._redis is None:
            return
        try:
            self._redis.set(
                f"{SUMMARY_KEY_PREFIX}:{self.store_id}",
                json.dumps(stats.to_dict()),
                ex=SUMMARY_TTL_SECONDS,
            )
        except RedisError as e:
            logger.warning(f"{self.store_id}: could not record sync summary: {e}")


def load_last_summary(redis_client, store_id: str) -> Optional[dict]:
    """Read the last pass summary recorded for a store."""
    try:
        raw = redis_client.get(f"{SUMMARY_KEY_PREFIX}:{store_id}")
    except RedisError as e:
        logger.warning(f"{store_id}: could not read sync summary: {e}")
        return None
    return json.loads(raw) if raw else None
