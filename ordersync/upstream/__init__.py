"""EcoManager order API integration module."""

from .client import EcoManagerClient
from .models import OrderItem, OrderSnapshot, Page

__all__ = ["EcoManagerClient", "OrderItem", "OrderSnapshot", "Page"]
