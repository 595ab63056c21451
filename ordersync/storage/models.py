"""
Persistent storage models.

These models track where each store's sync left off and what has been
imported locally.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Union


class PositionSource(str, Enum):
    """How a sync position was obtained."""
    LIVE_SCAN = "live_scan"
    RECOVERED = "recovered"
    RESTORED = "restored"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SyncPosition:
    """
    Per-store record of the frontier a sync pass reached.

    The position is advisory: before use it is validated against a
    concrete order ID (the page must still bracket last_id).

    Attributes:
        last_page: Page number, or continuation cursor in cursor mode
        first_id: Highest order ID on that page
        last_id: Lowest order ID on that page
        captured_at: When the page was read
        source: live_scan, recovered or restored
        floor_id: Set while a forward sweep is unfinished; the ID the
            sweep is still walking down to
    """
    last_page: Union[int, str]
    first_id: int
    last_id: int
    captured_at: datetime
    source: PositionSource = PositionSource.LIVE_SCAN
    floor_id: Optional[int] = None

    def __post_init__(self):
        if self.first_id < self.last_id:
            raise ValueError(
                f"first_id ({self.first_id}) must not be below last_id ({self.last_id})"
            )
        if self.captured_at.tzinfo is None:
            object.__setattr__(self, "captured_at", self.captured_at.replace(tzinfo=timezone.utc))

    @property
    def sweep_pending(self) -> bool:
        """True if the forward sweep that wrote this position was cut short."""
        return self.floor_id is not None

    def is_stale(self, max_age: timedelta, now: Optional[datetime] = None) -> bool:
        """Check if the position is older than max_age."""
        now = now or utcnow()
        return now - self.captured_at > max_age

    def with_source(self, source: PositionSource) -> "SyncPosition":
        return replace(self, source=source)

    def to_dict(self) -> dict:
        """Convert to the JSON cache format."""
        return {
            "lastPage": self.last_page,
            "firstId": self.first_id,
            "lastId": self.last_id,
            "timestamp": self.captured_at.isoformat(),
            "source": self.source.value,
            "floorId": self.floor_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SyncPosition":
        """
        Create from the JSON cache format.

        Raises:
            KeyError, TypeError, ValueError: If the record is malformed
        """
        last_page = data["lastPage"]
        if isinstance(last_page, str) and last_page.isdigit():
            last_page = int(last_page)

        floor_id = data.get("floorId")

        return cls(
            last_page=last_page,
            first_id=int(data["firstId"]),
            last_id=int(data["lastId"]),
            captured_at=datetime.fromisoformat(str(data["timestamp"]).replace("Z", "+00:00")),
            source=PositionSource(data.get("source", PositionSource.LIVE_SCAN.value)),
            floor_id=int(floor_id) if floor_id is not None else None,
        )


@dataclass
class StoredOrder:
    """
    An order as recorded in the local order store.

    Attributes:
        store_id: Store the order belongs to
        external_id: Upstream order ID
        reference: Upstream reference code
        upstream_status: Last observed upstream status label
        status: Internal order status
        customer_name: Customer name
        telephone: Customer phone
        wilaya: Customer province
        commune: Customer municipality
        total: Order total amount
        items_json: Line items as JSON text
        imported_at: When the order was first imported
        updated_at: When the order was last written
    """
    store_id: str
    external_id: int
    reference: str
    upstream_status: str
    status: str
    customer_name: str = ""
    telephone: str = ""
    wilaya: str = ""
    commune: str = ""
    total: float = 0.0
    items_json: str = "[]"
    imported_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: tuple) -> "StoredOrder":
        """Create from SQLite row tuple."""
        (
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
            updated_at,
        ) = row

        return cls(
            store_id=store_id,
            external_id=external_id,
            reference=reference or "",
            upstream_status=upstream_status,
            status=status,
            customer_name=customer_name or "",
            telephone=telephone or "",
            wilaya=wilaya or "",
            commune=commune or "",
            total=total or 0.0,
            items_json=items_json or "[]",
            imported_at=datetime.fromisoformat(imported_at) if imported_at else None,
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
        )
