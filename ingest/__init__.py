"""Ingestion pipeline modules for the REE electric balance project."""

from . import client, config, errors, load, run, scheduler, transform, validate

__all__ = ["client", "config", "errors", "load", "run", "scheduler", "transform", "validate"]
