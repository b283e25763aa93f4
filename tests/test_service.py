"""Tests for `BalanceAnalytics`, backed by the in-memory fake store."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from analytics.service import BalanceAnalytics
from ingest.errors import BalanceError, ErrorKind
from ingest.validate import BalanceRecord, LineItem

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)
MAR = datetime(2024, 3, 1, tzinfo=timezone.utc)


def _record(ts, wind=100.0, coal=300.0, nuclear=0.0, demand=380.0):
    generation = [LineItem(type="Wind", value=wind), LineItem(type="Coal", value=coal)]
    if nuclear:
        generation.append(LineItem(type="Nuclear", value=nuclear))
    return BalanceRecord.build(
        timestamp=ts,
        generation=generation,
        demand=[LineItem(type="Total", value=demand)],
    )


@pytest.fixture
def analytics(store):
    return BalanceAnalytics(store, clock=lambda: NOW)


def _fill(store, records):
    for r in records:
        store.upsert(r)


def test_analyze_range_summary(store, analytics):
    _fill(store, [_record(MAR), _record(MAR + timedelta(days=1), wind=300.0, coal=100.0)])

    res = analytics.analyze_range(MAR, MAR + timedelta(days=1))

    assert res["is_empty"] is False
    assert res["summary"] == {
        "total_generation": 800.0,
        "total_demand": 760.0,
        "net_balance": 40.0,
        "average_renewable_percentage": 50.0,
        "data_points": 2,
    }
    assert res["generation_distribution"]["Wind"]["percentage"] == 50.0
    assert [p["renewable_percentage"] for p in res["time_series"]] == [25.0, 75.0]
    assert res["trends"]["renewable_percentage"]["trend"] == "upward"
    assert res["trends"]["generation"]["trend"] == "stable"


def test_empty_range_is_flagged_not_raised(analytics):
    res = analytics.analyze_range("2024-01-01", "2024-01-31", "month")

    assert res["is_empty"] is True
    assert res["period"]["time_scope"] == "month"
    assert "No data" in res["message"]


@pytest.mark.parametrize(
    "method", ["analyze_range", "sustainability_metrics", "patterns_and_anomalies"]
)
@pytest.mark.parametrize(
    "start, end",
    [
        ("2024-01-10", "2024-01-01"),
        ("2023-01-01", "2024-02-05"),
        ("2024-05-20", "2024-06-20"),
    ],
)
def test_invalid_query_ranges(analytics, method, start, end):
    with pytest.raises(BalanceError) as exc:
        getattr(analytics, method)(start, end)

    assert exc.value.kind is ErrorKind.INVALID_RANGE


def test_invalid_scope(analytics):
    with pytest.raises(BalanceError) as exc:
        analytics.analyze_range("2024-01-01", "2024-01-02", "week")

    assert exc.value.kind is ErrorKind.INVALID_TIME_SCOPE


def test_compare_periods_doubling(store, analytics):
    prev = MAR - timedelta(days=30)
    _fill(
        store,
        [
            _record(MAR, wind=500.0, coal=500.0, demand=800.0),
            _record(prev, wind=100.0, coal=400.0, demand=800.0),
        ],
    )

    res = analytics.compare_periods(MAR, MAR + timedelta(days=1), prev, prev + timedelta(days=1))

    gen = res["changes"]["generation"]
    assert (gen["current"], gen["previous"]) == (1000.0, 500.0)
    assert gen["percentage_change"] == 100.0
    assert gen["trend"] == "increase"
    assert res["changes"]["demand"]["trend"] == "stable"
    assert res["changes"]["renewable_percentage"]["trend"] == "increase"
    assert res["current_period"]["data_points"] == 1
    assert {c["type"] for c in res["changes"]["generation_types"]} == {"Wind", "Coal"}


def test_compare_periods_both_empty(analytics):
    res = analytics.compare_periods("2024-03-01", "2024-03-02", "2024-02-01", "2024-02-02")

    assert res["is_empty"] is True


def test_sustainability_metrics(store, analytics):
    _fill(store, [_record(MAR, wind=100.0, coal=200.0, nuclear=100.0)])

    res = analytics.sustainability_metrics(MAR, MAR + timedelta(days=1))

    m = res["metrics"]
    assert m["total_generation"] == 400.0
    assert m["renewable_percentage"] == 25.0
    assert m["low_carbon_percentage"] == 50.0
    assert m["sustainability_score"] == pytest.approx(25 * 0.7 + 25 * 0.3)
    # 100 MW renewable over a 24 h range at 0.5 t/MWh.
    assert m["co2_avoided_tonnes"] == pytest.approx(1.2)
    assert res["trend"][0]["low_carbon_generation"] == 200.0


def test_patterns_and_anomalies(store, analytics):
    demands = [380.0] * 13 + [5000.0]
    _fill(
        store,
        [_record(MAR + timedelta(days=i), demand=d) for i, d in enumerate(demands)],
    )

    res = analytics.patterns_and_anomalies(MAR, MAR + timedelta(days=13))

    assert [a["value"] for a in res["anomalies"]["demand"]] == [5000.0]
    assert res["anomalies"]["generation"] == []
    assert "weekly" in res["patterns"]["cyclical"]
    pairs = [tuple(c["between"]) for c in res["patterns"]["correlations"]]
    assert pairs == [
        ("demand", "generation"),
        ("demand", "renewable_percentage"),
        ("generation", "renewable_percentage"),
    ]


def test_time_series_passthrough(store, analytics):
    _fill(store, [_record(MAR), _record(MAR + timedelta(days=1), demand=100.0)])

    series = analytics.time_series("balance", MAR, MAR + timedelta(days=1))

    assert series == [
        {"timestamp": MAR.isoformat(), "value": 20.0},
        {"timestamp": (MAR + timedelta(days=1)).isoformat(), "value": 300.0},
    ]


def test_range_stats(store, analytics):
    _fill(
        store,
        [_record(MAR), _record(MAR + timedelta(days=1), wind=300.0, coal=100.0, demand=200.0)],
    )

    res = analytics.range_stats(MAR, MAR + timedelta(days=1))

    assert res["is_empty"] is False
    assert res["count"] == 2
    assert res["total_demand"] == {"avg": 290.0, "min": 200.0, "max": 380.0}
    assert res["renewable_percentage"]["max"] == 75.0
    assert res["period"]["time_scope"] == "day"


def test_range_stats_empty_and_validated(analytics):
    assert analytics.range_stats("2024-03-01", "2024-03-02")["is_empty"] is True

    with pytest.raises(BalanceError) as exc:
        analytics.range_stats("2024-03-02", "2024-03-01")

    assert exc.value.kind is ErrorKind.INVALID_RANGE
