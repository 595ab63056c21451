"""Order sync engine module."""

from .engine import SyncEngine, SyncState, SyncStats
from .delta import DeltaReason, OrderDelta
from .worker import SyncWorker

__all__ = ["SyncEngine", "SyncState", "SyncStats", "DeltaReason", "OrderDelta", "SyncWorker"]
