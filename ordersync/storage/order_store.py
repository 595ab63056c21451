"""
SQLite-based local order store.

Reference persister for imported orders: idempotent upsert keyed by
(store, external order ID), plus the membership and status queries the
sync engine uses for deduplication.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Optional

from .models import StoredOrder, utcnow

logger = logging.getLogger(__name__)


class OrderStoreError(Exception):
    """Raised when order store operations fail."""
    pass


class OrderStore:
    """
    SQLite-based order store.

    Features:
    - Idempotent upsert by external order ID
    - Batched membership and status lookups
    - Automatic schema migration
    - WAL mode, safe for a scheduler and a CLI sharing the file

    Usage:
        store = OrderStore(Path("data/orders.db"))

        result = store.upsert("natu", snapshot)   # "created" or "updated"
        known = store.exists("natu", {101, 102})
    """

    SCHEMA_VERSION = 1

    # SQLite's default limit on bound parameters is 999
    QUERY_CHUNK_SIZE = 500

    CREATE_TABLE_SQL = """
        CREATE TABLE IF NOT EXISTS orders (
            store_id TEXT NOT NULL,
            external_id INTEGER NOT NULL,
            reference TEXT,
            upstream_status TEXT NOT NULL,
            status TEXT NOT NULL,
            customer_name TEXT,
            telephone TEXT,
            wilaya TEXT,
            commune TEXT,
            total REAL DEFAULT 0,
            items_json TEXT DEFAULT '[]',
            imported_at TEXT,
            updated_at TEXT,
            PRIMARY KEY (store_id, external_id)
        )
    """

    CREATE_INDEXES_SQL = [
        "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(store_id, status)",
    ]

    CREATE_METADATA_TABLE_SQL = """
        CREATE TABLE IF NOT EXISTS _metadata (
            key TEXT PRIMARY KEY,
            value TEXT
        )
    """

    SELECT_COLUMNS = """
        store_id,
        external_id,
        reference,
        upstream_status,
        status,
        customer_name,
        telephone,
        wilaya,
        commune,
        total,
        items_json,
        imported_at,
        updated_at
    """

    def __init__(self, database_path: Path):
        """
        Initialize order store.

        Args:
            database_path: Path to SQLite database file
        """
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

        self._initialize_database()

        logger.info(f"Order store initialized at {self.database_path}")

    def _initialize_database(self) -> None:
        """Create tables and run migrations."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute(self.CREATE_METADATA_TABLE_SQL)

            cursor.execute("SELECT value FROM _metadata WHERE key = 'schema_version'")
            row = cursor.fetchone()
            current_version = int(row[0]) if row else 0

            if current_version < self.SCHEMA_VERSION:
                logger.info(f"Upgrading schema from v{current_version} to v{self.SCHEMA_VERSION}")
                cursor.execute(
                    "INSERT OR REPLACE INTO _metadata (key, value) VALUES (?, ?)",
                    ("schema_version", str(self.SCHEMA_VERSION)),
                )

            cursor.execute(self.CREATE_TABLE_SQL)
            for index_sql in self.CREATE_INDEXES_SQL:
                cursor.execute(index_sql)

            conn.commit()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """
        Get a database connection with proper settings.

        Yields:
            SQLite connection with WAL mode enabled
        """
        conn = sqlite3.connect(
            self.database_path,
            timeout=30.0,
            isolation_level="DEFERRED",
        )

        try:
            conn.execute("PRAGMA journal_mode=WAL")
            yield conn
        finally:
            conn.close()

    def upsert(self, store_id: str, snapshot) -> str:
        """
        Insert or update one order.

        Args:
            store_id: Store identifier
            snapshot: OrderSnapshot observed upstream

        Returns:
            "created" if the order was new, "updated" otherwise

        Raises:
            OrderStoreError: If the write fails
        """
        now = utcnow().isoformat()
        items_json = json.dumps([item.to_dict() for item in snapshot.items])

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "SELECT 1 FROM orders WHERE store_id = ? AND external_id = ?",
                    (store_id, snapshot.id),
                )
                existed = cursor.fetchone() is not None

                cursor.execute(
                    """
                    INSERT INTO orders (
                        store_id,
                        external_id,
                        reference,
                        upstream_status,
                        status,
                        customer_name,
                        telephone,
                        wilaya,
                        commune,
                        total,
                        items_json,
                        imported_at,
                        updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(store_id, external_id) DO UPDATE SET
                        reference = excluded.reference,
                        upstream_status = excluded.upstream_status,
                        status = excluded.status,
                        customer_name = excluded.customer_name,
                        telephone = excluded.telephone,
                        wilaya = excluded.wilaya,
                        commune = excluded.commune,
                        total = excluded.total,
                        items_json = excluded.items_json,
                        updated_at = excluded.updated_at
                    """,
                    (
                        store_id,
                        snapshot.id,
                        snapshot.reference,
                        snapshot.status,
                        snapshot.internal_status,
                        snapshot.full_name,
                        snapshot.telephone,
                        snapshot.wilaya,
                        snapshot.commune,
                        snapshot.total,
                        items_json,
                        now,
                        now,
                    ),
                )
                conn.commit()
        except sqlite3.Error as e:
            raise OrderStoreError(f"Failed to save order {store_id}:{snapshot.id}: {e}") from e

        result = "updated" if existed else "created"
        logger.debug(f"Order {store_id}:{snapshot.id} {result} ({snapshot.status})")
        return result

    def exists(self, store_id: str, external_ids: Iterable[int]) -> set[int]:
        """
        Return the subset of external_ids already stored for a store.
        """
        return set(self.recorded_statuses(store_id, external_ids))

    def recorded_statuses(self, store_id: str, external_ids: Iterable[int]) -> dict[int, str]:
        """
        Get the last recorded upstream status of each stored order.

        Args:
            store_id: Store identifier
            external_ids: Order IDs to look up

        Returns:
            {external_id: upstream status label} for IDs that are stored
        """
        ids = sorted(set(external_ids))
        statuses = {}
        if not ids:
            return statuses

        with self._get_connection() as conn:
            cursor = conn.cursor()
            for start in range(0, len(ids), self.QUERY_CHUNK_SIZE):
                chunk = ids[start:start + self.QUERY_CHUNK_SIZE]
                placeholders = ",".join("?" * len(chunk))
                cursor.execute(
                    f"""
                    SELECT external_id, upstream_status
                    FROM orders
                    WHERE store_id = ? AND external_id IN ({placeholders})
                    """,
                    (store_id, *chunk),
                )
                statuses.update({row[0]: row[1] for row in cursor.fetchall()})

        return statuses

    def latest_external_id(self, store_id: str) -> Optional[int]:
        """Highest stored external order ID for a store, None if empty."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT MAX(external_id) FROM orders WHERE store_id = ?", (store_id,))
            row = cursor.fetchone()
            return row[0] if row else None

    def get(self, store_id: str, external_id: int) -> Optional[StoredOrder]:
        """
        Get one stored order.

        Returns:
            StoredOrder if found, None otherwise
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT {self.SELECT_COLUMNS}
                FROM orders
                WHERE store_id = ? AND external_id = ?
                """,
                (store_id, external_id),
            )

            row = cursor.fetchone()
            if row:
                return StoredOrder.from_row(row)
            return None

    def count(self, store_id: Optional[str] = None) -> int:
        """
        Count stored orders.

        Args:
            store_id: Restrict to one store if given

        Returns:
            Total record count
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()

            if store_id is None:
                cursor.execute("SELECT COUNT(*) FROM orders")
            else:
                cursor.execute("SELECT COUNT(*) FROM orders WHERE store_id = ?", (store_id,))

            return cursor.fetchone()[0]

    def counts_by_status(self, store_id: str) -> dict[str, int]:
        """Count a store's orders per internal status."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT status, COUNT(*) FROM orders WHERE store_id = ? GROUP BY status",
                (store_id,),
            )
            return {row[0]: row[1] for row in cursor.fetchall()}
