"""Persistent storage module."""

from .order_store import OrderStore
from .position_store import PositionStore
from .models import PositionSource, SyncPosition

__all__ = ["OrderStore", "PositionStore", "PositionSource", "SyncPosition"]
