"""Descriptive analytics over stored electric balance records."""

from . import service, stats

__all__ = ["service", "stats"]
