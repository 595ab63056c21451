"""
Delta detection for the sync engine.

Compares observed upstream orders against what the persister already
holds to decide which orders a pass must hand over.
"""

from dataclasses import dataclass
from enum import Enum, auto
from typing import Iterable, Optional

from ..upstream.models import OrderSnapshot


class DeltaReason(Enum):
    """Why an order is emitted by a pass."""

    # Newer than the floor, importable, not persisted yet
    NEW_ORDER = auto()

    # Persisted, but its upstream status has changed since
    STATUS_CHANGED = auto()

    # Older than the floor, skipped before, importable now
    NEWLY_IMPORTABLE = auto()


@dataclass(frozen=True)
class OrderDelta:
    """
    One order to hand to the persister.

    Attributes:
        snapshot: The order as observed now
        reason: Why it is emitted
        recorded_status: Status the persister held, for STATUS_CHANGED
    """
    snapshot: OrderSnapshot
    reason: DeltaReason
    recorded_status: Optional[str] = None

    @property
    def order_id(self) -> int:
        return self.snapshot.id

    def __repr__(self) -> str:
        return f"OrderDelta(order={self.snapshot.id}, reason={self.reason.name})"


def forward_delta(
    order: OrderSnapshot,
    floor: Optional[int],
    known_ids: set[int],
    importable_status: str,
) -> Optional[OrderDelta]:
    """
    Decide whether an order met by the forward scan is new.

    Rules:
    - ID must be above the floor (any ID when there is no floor)
    - status must be the importable status
    - ID must not be persisted already

    Returns:
        OrderDelta or None
    """
    if floor is not None and order.id <= floor:
        return None
    if order.status != importable_status:
        return None
    if order.id in known_ids:
        return None
    return OrderDelta(snapshot=order, reason=DeltaReason.NEW_ORDER)


def backward_delta(
    order: OrderSnapshot,
    recorded_statuses: dict[int, str],
    importable_status: str,
) -> Optional[OrderDelta]:
    """
    Decide whether an order met by the backward scan changed.

    Rules:
    - persisted with a different recorded status -> STATUS_CHANGED
    - not persisted and importable now -> NEWLY_IMPORTABLE

    Returns:
        OrderDelta or None
    """
    recorded = recorded_statuses.get(order.id)
    if recorded is not None:
        if recorded != order.status:
            return OrderDelta(snapshot=order, reason=DeltaReason.STATUS_CHANGED, recorded_status=recorded)
        return None
    if order.status == importable_status:
        return OrderDelta(snapshot=order, reason=DeltaReason.NEWLY_IMPORTABLE)
    return None


def merge_deltas(*delta_lists: Iterable[OrderDelta]) -> list[OrderDelta]:
    """
    Merge delta lists, keeping the first occurrence of each order ID.
    """
    merged = []
    seen = set()
    for deltas in delta_lists:
        for delta in deltas:
            if delta.order_id in seen:
                continue
            seen.add(delta.order_id)
            merged.append(delta)
    return merged
