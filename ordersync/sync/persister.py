"""
Persistence contract consumed by the sync engine.

The engine never owns imported orders. Whatever stores them (the
bundled SQLite OrderStore, or an application database) implements
this protocol.
"""

from typing import Iterable, Optional, Protocol


class Persister(Protocol):
    """Idempotent order sink keyed by (store, external order ID)."""

    def upsert(self, store_id: str, snapshot) -> str:
        """Insert or update one order; return "created" or "updated"."""
        ...

    def exists(self, store_id: str, external_ids: Iterable[int]) -> set[int]:
        """Return the subset of external_ids already persisted."""
        ...

    def latest_external_id(self, store_id: str) -> Optional[int]:
        """Highest persisted external order ID, None if the store has none."""
        ...

    def recorded_statuses(self, store_id: str, external_ids: Iterable[int]) -> dict[int, str]:
        """Last recorded upstream status label of each persisted ID."""
        ...
