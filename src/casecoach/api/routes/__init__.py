"""API route modules."""

from . import health, realtime

__all__ = ["health", "realtime"]
