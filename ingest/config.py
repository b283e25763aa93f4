"""
ingest/config.py

Runtime settings for the ingestion pipeline and scheduler.

Responsibilities
----------------
- Hold every tunable (REE endpoint, timeouts, retry/backoff, chunking,
  scheduler cadence and backfill windows) in one validated pydantic model.
- Build that model from environment variables via `Settings.from_env`.

Environment Variables
---------------------
DB_URL                          SQLAlchemy URL for the balance store.
REE_API_BASE_URL                Defaults to "https://apidatos.ree.es".
REE_API_LANG                    Path language segment, "en" or "es".
REE_API_TIMEOUT                 Per-request timeout in seconds.
REE_API_RETRY_ATTEMPTS          Total fetch attempts per chunk.
REE_API_BACKOFF_SECONDS         Base of the 2**n backoff.
INGEST_CHUNK_DAYS               Day span of one backfill chunk.
INGEST_CHUNK_DELAY              Pause between chunks, in seconds.
SCHEDULER_TIME_SCOPES           Comma separated scopes to schedule.
SCHEDULER_INTERVAL_<SCOPE>      Interval expression, e.g. "1h" or "30m".
SCHEDULER_HISTORY_DAYS_<SCOPE>  Startup backfill lookback in days.
SCHEDULER_RETRY_DELAY           Seconds before retrying a failed tick.
SCHEDULER_MAX_RETRIES           Retries per failure streak.
SCHEDULER_INITIAL_FETCH         "true"/"false".
SCHEDULER_FORCE_UPDATE          "true"/"false".

Notes
-----
- Values are injected into the pipeline and scheduler as plain attributes;
  nothing else in the codebase reads the environment.
"""

from __future__ import annotations

import os
import re

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

TIME_SCOPES = ("hour", "day", "month", "year")

DEFAULT_INTERVALS = {"hour": "1h", "day": "6h", "month": "1d", "year": "7d"}
DEFAULT_HISTORY_DAYS = {"hour": 2, "day": 60, "month": 365, "year": 1825}

_INTERVAL_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$")
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_interval(expr: str | int | float) -> float:
    """Convert an interval expression into seconds.

    Accepts bare numbers (seconds) or a number followed by one of
    ``s``, ``m``, ``h``, ``d``.

    Raises:
        ValueError: If the expression is not understood or not positive.
    """
    if isinstance(expr, (int, float)):
        seconds = float(expr)
    else:
        match = _INTERVAL_RE.match(expr.lower())
        if not match:
            raise ValueError(f"Invalid interval expression: {expr!r}")
        seconds = float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
    if seconds <= 0:
        raise ValueError(f"Interval must be positive, got {expr!r}")
    return seconds


class Settings(BaseModel):
    """Validated runtime configuration."""

    db_url: str | None = None

    # REE data source
    base_url: str = "https://apidatos.ree.es"
    lang: str = "en"
    http_timeout: float = 10.0
    source_timezone: str = "Europe/Madrid"
    user_agent: str = "ree-electric-balance/0.1"

    # Fetch / ingest
    max_retries: int = Field(default=3, ge=1)
    backoff_base: float = Field(default=1.0, ge=0)
    chunk_days: int = Field(default=30, ge=1)
    chunk_delay: float = Field(default=0.5, ge=0)

    # Scheduler
    time_scopes: list[str] = Field(default_factory=lambda: ["hour", "day"])
    intervals: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_INTERVALS))
    history_days: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_HISTORY_DAYS))
    retry_delay: float = Field(default=300.0, ge=0)
    scheduler_max_retries: int = Field(default=3, ge=0)
    initial_fetch: bool = True
    retry_on_failure: bool = True
    force_update: bool = False

    @field_validator("time_scopes")
    @classmethod
    def check_scopes(cls, v):
        bad = [s for s in v if s not in TIME_SCOPES]
        if bad:
            raise ValueError(f"Unknown time scopes: {bad}")
        return v

    @field_validator("intervals")
    @classmethod
    def check_intervals(cls, v):
        for expr in v.values():
            parse_interval(expr)
        return v

    def interval_seconds(self, time_scope: str) -> float:
        return parse_interval(self.intervals.get(time_scope, DEFAULT_INTERVALS[time_scope]))

    def lookback_days(self, time_scope: str) -> int:
        return self.history_days.get(time_scope, DEFAULT_HISTORY_DAYS[time_scope])

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (and a local `.env`)."""
        load_dotenv()

        values: dict = {}
        env_map = {
            "db_url": "DB_URL",
            "base_url": "REE_API_BASE_URL",
            "lang": "REE_API_LANG",
            "http_timeout": "REE_API_TIMEOUT",
            "max_retries": "REE_API_RETRY_ATTEMPTS",
            "backoff_base": "REE_API_BACKOFF_SECONDS",
            "chunk_days": "INGEST_CHUNK_DAYS",
            "chunk_delay": "INGEST_CHUNK_DELAY",
            "retry_delay": "SCHEDULER_RETRY_DELAY",
            "scheduler_max_retries": "SCHEDULER_MAX_RETRIES",
            "initial_fetch": "SCHEDULER_INITIAL_FETCH",
            "force_update": "SCHEDULER_FORCE_UPDATE",
        }
        for field, var in env_map.items():
            raw = os.getenv(var)
            if raw not in (None, ""):
                # pydantic coerces "3", "0.5", "false" into the declared types.
                values[field] = raw

        scopes = os.getenv("SCHEDULER_TIME_SCOPES")
        if scopes:
            values["time_scopes"] = [s.strip() for s in scopes.split(",") if s.strip()]

        intervals = dict(DEFAULT_INTERVALS)
        history = dict(DEFAULT_HISTORY_DAYS)
        for scope in TIME_SCOPES:
            interval = os.getenv(f"SCHEDULER_INTERVAL_{scope.upper()}")
            if interval:
                intervals[scope] = interval
            days = os.getenv(f"SCHEDULER_HISTORY_DAYS_{scope.upper()}")
            if days:
                history[scope] = days
        values["intervals"] = intervals
        values["history_days"] = history

        return cls(**values)
