"""Shared rate governance module."""

from .governor import RateGovernor

__all__ = ["RateGovernor"]
