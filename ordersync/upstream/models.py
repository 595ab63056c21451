"""
EcoManager order data models.

These models represent the order records returned by the upstream
order API. The external order ID is the primary identity; the list is
served newest-first, so higher IDs are newer orders.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union


# Upstream status label -> internal order status
STATUS_MAP = {
    "En dispatch": "PENDING",
    "Confirmé": "CONFIRMED",
    "En cours": "IN_PROGRESS",
    "Expédié": "SHIPPED",
    "Livré": "DELIVERED",
    "Annulé": "CANCELLED",
    "Retourné": "RETURNED",
}

DEFAULT_INTERNAL_STATUS = "PENDING"


def map_status(label: str) -> str:
    """Map an upstream status label to the internal order status."""
    return STATUS_MAP.get(label, DEFAULT_INTERNAL_STATUS)


def _parse_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_amount(value) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


@dataclass(frozen=True)
class OrderItem:
    """One line item of an upstream order."""
    product_id: str
    title: str
    quantity: int
    sku: Optional[str] = None
    unit_price: Optional[float] = None
    total_price: Optional[float] = None

    @classmethod
    def from_api_response(cls, data: dict) -> "OrderItem":
        """Create OrderItem from EcoManager API response."""
        return cls(
            product_id=str(data.get("product_id", "")),
            title=data.get("title", ""),
            quantity=int(data.get("quantity", 1)),
            sku=data.get("sku"),
            unit_price=_parse_amount(data.get("unit_price")),
            total_price=_parse_amount(data.get("total_price")),
        )

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "title": self.title,
            "quantity": self.quantity,
            "sku": self.sku,
            "unit_price": self.unit_price,
            "total_price": self.total_price,
        }


@dataclass(frozen=True)
class OrderSnapshot:
    """
    Represents one order as observed on an upstream page.

    Snapshots are transient: produced per fetched order and handed to
    the persister. The status is the raw upstream label; use
    ``internal_status`` for the mapped value.

    Attributes:
        id: Unique external order ID
        reference: Upstream reference code
        status: Upstream status label (e.g. "En dispatch")
        full_name: Customer name
        telephone: Customer phone number
        wilaya: Customer province
        commune: Customer municipality
        items: Ordered line items
        total: Order total amount
        created_at: Upstream creation time, if parseable
        updated_at: Upstream update time, if parseable
        confirmation_state: Upstream confirmation label, if any
    """
    id: int
    reference: str
    status: str
    full_name: str = ""
    telephone: str = ""
    wilaya: str = ""
    commune: str = ""
    items: tuple = field(default_factory=tuple)
    total: float = 0.0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    confirmation_state: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.id, int) or self.id <= 0:
            raise ValueError(f"Order ID must be a positive integer, got {self.id}")

    @property
    def internal_status(self) -> str:
        return map_status(self.status)

    @classmethod
    def from_api_response(cls, data: dict) -> "OrderSnapshot":
        """
        Create OrderSnapshot from EcoManager API response.

        Raises:
            KeyError, TypeError, ValueError: If the record is malformed
        """
        return cls(
            id=int(data["id"]),
            reference=str(data.get("reference") or ""),
            status=str(data["order_state_name"]),
            full_name=data.get("full_name") or "",
            telephone=data.get("telephone") or "",
            wilaya=data.get("wilaya") or "",
            commune=data.get("commune") or "",
            items=tuple(OrderItem.from_api_response(i) for i in data.get("items") or []),
            total=_parse_amount(data.get("total")) or 0.0,
            created_at=_parse_timestamp(data.get("created_at")),
            updated_at=_parse_timestamp(data.get("updated_at")),
            confirmation_state=data.get("confirmation_state_name"),
        )


@dataclass(frozen=True)
class Page:
    """
    One normalized page of upstream orders.

    Attributes:
        token: The page number (page mode) or cursor (cursor mode) fetched;
            None is the head in cursor mode
        orders: Orders on the page, newest first
        next_token: Token of the next (older) page, None at the end
    """
    token: Union[int, str, None]
    orders: tuple
    next_token: Union[int, str, None] = None
    skipped: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.orders

    @property
    def first_id(self) -> Optional[int]:
        """Highest order ID on the page."""
        return max((o.id for o in self.orders), default=None)

    @property
    def last_id(self) -> Optional[int]:
        """Lowest order ID on the page."""
        return min((o.id for o in self.orders), default=None)

    def brackets(self, order_id: int) -> bool:
        """Check whether order_id falls inside this page's ID range."""
        if self.is_empty:
            return False
        return self.last_id <= order_id <= self.first_id
