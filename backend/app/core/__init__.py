"""Core utilities for the portal chat backend."""

from .clock import as_utc, utcnow

__all__ = ["as_utc", "utcnow"]
