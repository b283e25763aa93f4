"""Tests for settings loading and the error type."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from ingest import config
from ingest.errors import BalanceError, ErrorKind


@pytest.mark.parametrize(
    "expr, seconds",
    [("30m", 1800.0), ("1h", 3600.0), ("1d", 86400.0), ("45", 45.0), (" 2H ", 7200.0), (10, 10.0)],
)
def test_parse_interval(expr, seconds):
    assert config.parse_interval(expr) == seconds


@pytest.mark.parametrize("expr", ["", "0 * * * *", "1w", "0", -5])
def test_parse_interval_rejects(expr):
    with pytest.raises(ValueError):
        config.parse_interval(expr)


def test_defaults():
    s = config.Settings()

    assert s.max_retries == 3
    assert s.backoff_base == 1.0
    assert s.chunk_days == 30
    assert s.chunk_delay == 0.5
    assert s.retry_delay == 300.0
    assert s.lookback_days("hour") == 2
    assert s.lookback_days("year") == 1825
    assert s.interval_seconds("hour") == 3600.0


def test_from_env(monkeypatch):
    monkeypatch.setenv("DB_URL", "sqlite:///x.db")
    monkeypatch.setenv("REE_API_RETRY_ATTEMPTS", "5")
    monkeypatch.setenv("INGEST_CHUNK_DELAY", "0")
    monkeypatch.setenv("SCHEDULER_TIME_SCOPES", "day, month")
    monkeypatch.setenv("SCHEDULER_INTERVAL_DAY", "2h")
    monkeypatch.setenv("SCHEDULER_HISTORY_DAYS_MONTH", "90")
    monkeypatch.setenv("SCHEDULER_INITIAL_FETCH", "false")

    s = config.Settings.from_env()

    assert s.db_url == "sqlite:///x.db"
    assert s.max_retries == 5
    assert s.chunk_delay == 0.0
    assert s.time_scopes == ["day", "month"]
    assert s.interval_seconds("day") == 7200.0
    assert s.interval_seconds("hour") == 3600.0
    assert s.lookback_days("month") == 90
    assert s.initial_fetch is False


@pytest.mark.parametrize(
    "var, value",
    [
        ("SCHEDULER_TIME_SCOPES", "hour,week"),
        ("SCHEDULER_INTERVAL_HOUR", "every hour"),
        ("REE_API_RETRY_ATTEMPTS", "0"),
        ("INGEST_CHUNK_DAYS", "many"),
    ],
)
def test_from_env_rejects_invalid(monkeypatch, var, value):
    monkeypatch.setenv(var, value)

    with pytest.raises(ValidationError):
        config.Settings.from_env()


def test_transient_classification():
    assert BalanceError(ErrorKind.NETWORK, "x").transient
    assert BalanceError(ErrorKind.RESPONSE, "x", status_code=502).transient
    assert BalanceError(ErrorKind.REQUEST, "x", status_code=408).transient
    assert not BalanceError(ErrorKind.REQUEST, "x", status_code=400).transient
    assert not BalanceError(ErrorKind.INVALID_RANGE, "x").transient
    assert not BalanceError(ErrorKind.FETCH_EXHAUSTED, "x").transient


def test_error_to_dict():
    cause = RuntimeError("socket closed")
    err = BalanceError(
        ErrorKind.FETCH_EXHAUSTED, "gave up", cause=cause, attempts=3, details={"scope": "day"}
    )

    assert err.to_dict() == {
        "kind": "fetch_exhausted",
        "message": "gave up",
        "attempts": 3,
        "cause": "socket closed",
        "details": {"scope": "day"},
    }
    assert str(err) == "gave up"
    assert BalanceError(ErrorKind.NETWORK_TIMEOUT, "slow").is_timeout is True
