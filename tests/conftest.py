"""Pytest configuration and fakes shared across the test suite."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure the project root is on sys.path so ``import ingest`` works when running
# the test suite without installing the package.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ingest.errors import BalanceError, ErrorKind  # noqa: E402
from ingest.validate import parse_utc  # noqa: E402


def make_payload(
    when="2024-03-01T00:00:00.000+01:00",
    generation=(("Wind", 100.0), ("Coal", 300.0)),
    demand=(("Total", 380.0),),
    time_trunc="day",
):
    """Build a single-point REE balance payload."""

    def _content(items):
        return [
            {
                "type": name,
                "attributes": {
                    "color": "#000000",
                    "values": [{"value": value, "percentage": 0.0, "datetime": when}],
                },
            }
            for name, value in items
        ]

    renewable = [g for g in generation if g[0] in ("Wind", "Hydro", "Solar-PV")]
    fossil = [g for g in generation if g not in renewable]
    included = [
        {"type": "Renewable", "attributes": {"content": _content(renewable)}},
        {"type": "Non-renewable", "attributes": {"content": _content(fossil)}},
        {"type": "Demand", "attributes": {"content": _content(demand)}},
    ]
    return {
        "data": {
            "type": "Balance",
            "attributes": {"title": "Balance eléctrico", "last-update": when, "time-trunc": time_trunc},
        },
        "included": included,
    }


class FakeClient:
    """Returns queued payloads or raises queued errors, recording each call."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def fetch_range(self, start, end, time_scope="day", extra_params=None):
        self.calls.append((start, end, time_scope))
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(start, end, time_scope)
        return outcome


class FakeStore:
    """In-memory store keyed like the real table."""

    def __init__(self):
        self.records = {}
        self.fail_bulk = False
        self.fail_count = False
        self.fail_keys = set()
        self.upsert_calls = 0
        self.bulk_calls = 0

    def _check(self, record):
        if record.key in self.fail_keys:
            raise BalanceError(ErrorKind.STORE, f"cannot write {record.key}")

    def upsert(self, record):
        self.upsert_calls += 1
        self._check(record)
        self.records[record.key] = record
        return 1

    def upsert_many(self, records):
        self.bulk_calls += 1
        if self.fail_bulk:
            raise BalanceError(ErrorKind.STORE, "bulk write failed")
        for r in records:
            self._check(r)
        for r in records:
            self.records[r.key] = r
        return len(records)

    def exists_for_key(self, timestamp, time_scope):
        return (parse_utc(timestamp), time_scope) in self.records

    def count_in_range(self, start, end, time_scope=None):
        if self.fail_count:
            raise BalanceError(ErrorKind.STORE, "count failed")
        return len(self.find_in_range(start, end, time_scope))

    def find_in_range(self, start, end, time_scope="day", **_):
        start, end = parse_utc(start), parse_utc(end)
        return sorted(
            (
                r
                for (ts, scope), r in self.records.items()
                if start <= ts <= end and (time_scope is None or scope == time_scope)
            ),
            key=lambda r: r.timestamp,
        )

    def stats_in_range(self, start, end, time_scope="day"):
        records = self.find_in_range(start, end, time_scope)
        out = {"is_empty": not records, "count": len(records)}
        for name in ("total_generation", "total_demand", "renewable_percentage"):
            values = [getattr(r, name) for r in records] or [0.0]
            out[name] = {"avg": sum(values) / len(values), "min": min(values), "max": max(values)}
        return out

    def time_series(self, indicator, start, end, time_scope="day"):
        return [
            (r.timestamp, getattr(r, indicator))
            for r in self.find_in_range(start, end, time_scope)
        ]


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def sleeps():
    """Collects the delays passed to an injected sleep."""
    return []
