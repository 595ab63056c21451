#!/usr/bin/env python3
"""
EcoManager Order Sync - Main Entry Point

Incrementally imports orders from every configured EcoManager store
into the local order store.

Usage:
    python -m ordersync.main                      # One cycle over all active stores
    python -m ordersync.main --store natu         # One pass for one store
    python -m ordersync.main --daemon             # Hourly cycles inside the active window
    python -m ordersync.main --status             # Positions, rate counters, order counts
    python -m ordersync.main --restore-positions  # Warm the position cache from disk

Environment Variables Required:
    ORDERSYNC_STORES_FILE   - Stores JSON file (default: config/stores.json)
    <STORE>_API_TOKEN       - One token per store, named by the store's token_env
    REDIS_URL               - Shared Redis (default: redis://localhost:6379/0)

See .env.example for all configuration options.
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

# Add project root to path for imports if running as script
if __name__ == "__main__" and __package__ is None:
    PROJECT_ROOT = Path(__file__).parent.parent
    sys.path.insert(0, str(PROJECT_ROOT))

from config.settings import load_settings, ConfigurationError, Settings
from ordersync.ratelimit.governor import RateGovernor
from ordersync.ratelimit.redis_pool import close_redis_pools, get_redis_client, ping
from ordersync.storage.order_store import OrderStore
from ordersync.storage.position_store import PositionStore
from ordersync.sync.engine import SyncEngine, load_last_summary
from ordersync.sync.worker import SyncWorker
from ordersync.upstream.client import EcoManagerClient


def setup_logging(verbose: bool = False) -> None:
    """
    Configure logging for the application.

    Args:
        verbose: If True, enable DEBUG level logging
    """
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    # Reduce noise from external libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Import EcoManager orders into the local order store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python -m ordersync.main                    # Sync all active stores once
    python -m ordersync.main --store natu       # Sync one store
    python -m ordersync.main --dry-run          # Preview changes
    python -m ordersync.main --daemon           # Run on a schedule
    python -m ordersync.main --env .env.local   # Use custom env file
        """,
    )

    parser.add_argument(
        "--store",
        metavar="ID",
        help="Sync a single store by identifier",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Preview changes without persisting orders or positions",
    )

    parser.add_argument(
        "--daemon",
        action="store_true",
        help="Run sync cycles on the configured schedule until interrupted",
    )

    parser.add_argument(
        "--status",
        action="store_true",
        help="Show sync status without performing sync",
    )

    parser.add_argument(
        "--restore-positions",
        action="store_true",
        help="Copy on-disk sync positions back into the Redis cache",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose/debug logging",
    )

    parser.add_argument(
        "--env",
        type=Path,
        help="Path to .env file (default: .env in current directory)",
    )

    return parser.parse_args(argv)


class Application:
    """Wires settings into clients, stores and engines."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.redis = get_redis_client(settings.redis)
        self.governor = RateGovernor(self.redis, settings.rate_limit)
        self.orders = OrderStore(settings.storage.database_path)
        self.positions = PositionStore(
            self.redis,
            settings.storage.positions_dir,
            ttl_seconds=settings.storage.position_cache_ttl_seconds,
            stale_after=timedelta(hours=settings.sync.position_stale_after_hours),
        )
        self._clients: dict[str, EcoManagerClient] = {}

    def client_for(self, store) -> EcoManagerClient:
        client = self._clients.get(store.identifier)
        if client is None:
            client = EcoManagerClient(
                store,
                self.governor,
                page_size=self.settings.sync.page_size,
                timeout=self.settings.sync.request_timeout_seconds,
            )
            self._clients[store.identifier] = client
        return client

    def build_engine(self, store) -> SyncEngine:
        return SyncEngine(
            store_id=store.identifier,
            client=self.client_for(store),
            persister=self.orders,
            positions=self.positions,
            config=self.settings.sync,
            redis_client=self.redis,
        )

    def build_worker(self) -> SyncWorker:
        return SyncWorker(self.settings.active_stores, self.build_engine, self.settings.scheduler)

    def close(self) -> None:
        for client in self._clients.values():
            client.close()
        close_redis_pools()


def show_status(app: Application) -> None:
    """
    Display current sync status.

    Args:
        app: Wired application
    """
    logger = logging.getLogger(__name__)
    stores = [s.identifier for s in app.settings.stores]

    logger.info("=" * 50)
    logger.info("Sync Status")
    logger.info("=" * 50)
    logger.info(f"Redis reachable:           {ping(app.redis)}")
    logger.info(f"Total imported orders:     {app.orders.count()}")

    health = app.positions.health(stores)
    for store in app.settings.stores:
        report = health[store.identifier]
        position = report["position"] or {}
        rate = app.governor.status(store.identifier)
        summary = load_last_summary(app.redis, store.identifier)

        logger.info("-" * 50)
        logger.info(f"{store.name} ({store.identifier}){'' if store.active else ' [inactive]'}")
        logger.info(f"  Orders:                  {app.orders.count(store.identifier)}")
        for status, count in sorted(app.orders.counts_by_status(store.identifier).items()):
            logger.info(f"    {status:<22}{count}")
        logger.info(f"  Position:                {report['status']}")
        if position:
            logger.info(
                f"    page {position['lastPage']}, ids {position['lastId']}-{position['firstId']}, "
                f"{position['source']} at {position['timestamp']}"
            )
        logger.info(
            f"  Requests:                {rate['second']}/s {rate['minute']}/min "
            f"{rate['hour']}/h {rate['day']}/day"
        )
        if summary:
            logger.info(
                f"  Last sync:               {summary['finishedAt']} "
                f"({summary['created']} created, {summary['updated']} updated"
                f"{', FAILED' if summary['failed'] else ''})"
            )

    logger.info("=" * 50)


def main(argv=None) -> int:
    """
    Main entry point.

    Returns:
        Exit code (0 for success, 1 for error, 130 if interrupted)
    """
    args = parse_args(argv)
    setup_logging(verbose=args.verbose)

    logger = logging.getLogger(__name__)

    logger.info("EcoManager Order Sync")
    logger.info("=" * 50)

    # Load configuration
    try:
        settings = load_settings(env_file=args.env)

        if args.dry_run:
            settings = replace(settings, sync=replace(settings.sync, dry_run=True))

        if args.store:
            store = settings.get_store(args.store)

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        logger.error("Please check your .env file, environment variables and stores file")
        logger.error("See .env.example for required configuration")
        return 1

    app = Application(settings)

    try:
        if args.status:
            show_status(app)
            return 0

        if args.restore_positions:
            restored = app.positions.restore_all()
            logger.info(f"Restored {restored} positions to cache")
            return 0

        if args.store:
            if not store.active:
                logger.warning(f"Store {store.identifier} is inactive, syncing anyway")
            stats = app.build_engine(store).sync()
            return 1 if stats.failed or stats.errors else 0

        worker = app.build_worker()

        if args.daemon:
            asyncio.run(worker.run_forever())
            return 0

        result = asyncio.run(worker.run_cycle())

        logger.info("=" * 50)
        logger.info("Sync Summary")
        logger.info("=" * 50)
        for store_id, stats in result.results.items():
            logger.info(str(stats))
        logger.info(str(result))
        logger.info("=" * 50)

        if result.failed or any(s.errors for s in result.results.values()):
            logger.warning("Some stores failed or had errors. Check logs above.")
            return 1

        logger.info("Sync completed successfully!")
        return 0

    except KeyboardInterrupt:
        logger.info("Sync interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        return 1
    finally:
        app.close()


if __name__ == "__main__":
    sys.exit(main())
