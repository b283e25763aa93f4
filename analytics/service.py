"""
analytics/service.py

Range-level analytics over the balance store.

Responsibilities
----------------
- Validate analytics queries (ordered range, at most 366 days, end not in the
  future, known time scope) before touching the store.
- Load the records for a range and hand them to the pure functions in
  `analytics.stats`.
- Shape results as plain dicts. An empty record set yields
  ``{"is_empty": True, ...}`` rather than an error.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import Any

from ingest.validate import (
    LOW_CARBON_TYPES,
    RENEWABLE_TYPES,
    BalanceRecord,
    finite,
    share_of,
    validate_query_range,
    validate_time_scope,
)

from . import stats

logger = logging.getLogger(__name__)

NO_DATA_MESSAGE = "No data available for the specified date range"


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def _mean(values: Sequence[float]) -> float:
    return finite(sum(values) / len(values)) if values else 0.0


def _type_total(record: BalanceRecord, types: frozenset[str]) -> float:
    return finite(sum(i.value for i in record.generation if i.type in types))


def summarize(records: Sequence[BalanceRecord]) -> dict[str, Any]:
    total_generation = finite(sum(r.total_generation for r in records))
    total_demand = finite(sum(r.total_demand for r in records))
    return {
        "total_generation": total_generation,
        "total_demand": total_demand,
        "net_balance": finite(total_generation - total_demand),
        "average_renewable_percentage": _mean([r.renewable_percentage for r in records]),
        "data_points": len(records),
    }


def time_series_view(records: Sequence[BalanceRecord]) -> list[dict[str, Any]]:
    """One row per record with its totals and per-type generation."""
    return [
        {
            "timestamp": _iso(r.timestamp),
            "total_generation": r.total_generation,
            "total_demand": r.total_demand,
            "balance": r.balance,
            "renewable_percentage": r.renewable_percentage,
            "generation_by_type": {i.type: i.value for i in r.generation},
        }
        for r in records
    ]


def _change(current: float, previous: float) -> dict[str, Any]:
    pct = stats.percentage_change(current, previous)
    return {
        "current": current,
        "previous": previous,
        "percentage_change": pct,
        "trend": stats.change_label(pct),
    }


class BalanceAnalytics:
    """Analytics entry points backed by a `BalanceStore`.

    Args:
        store: Object exposing ``find_in_range``, ``stats_in_range`` and
            ``time_series``.
        clock: Returns the current aware UTC datetime (for the future-date
            check).
    """

    def __init__(self, store, clock: Callable[[], datetime] | None = None):
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _validated(self, start: Any, end: Any, time_scope: str) -> tuple[datetime, datetime, str]:
        start_dt, end_dt = validate_query_range(start, end, now=self.clock())
        return start_dt, end_dt, validate_time_scope(time_scope)

    def _load(self, start: datetime, end: datetime, time_scope: str) -> list[BalanceRecord]:
        records = self.store.find_in_range(start, end, time_scope)
        logger.debug("Loaded %d %s records for %s -> %s", len(records), time_scope, start, end)
        return sorted(records, key=lambda r: r.timestamp)

    @staticmethod
    def _period(start: datetime, end: datetime, time_scope: str) -> dict[str, str]:
        return {"start": _iso(start), "end": _iso(end), "time_scope": time_scope}

    def _empty(self, start: datetime, end: datetime, time_scope: str) -> dict[str, Any]:
        return {
            "is_empty": True,
            "period": self._period(start, end, time_scope),
            "message": NO_DATA_MESSAGE,
        }

    # ---------------------------
    # Queries
    # ---------------------------

    def analyze_range(self, start: Any, end: Any, time_scope: str = "day") -> dict[str, Any]:
        """Totals, distribution, time series and trends for one range."""
        start, end, time_scope = self._validated(start, end, time_scope)
        records = self._load(start, end, time_scope)
        if not records:
            return self._empty(start, end, time_scope)

        return {
            "is_empty": False,
            "period": self._period(start, end, time_scope),
            "summary": summarize(records),
            "generation_distribution": stats.generation_distribution(records),
            "time_series": time_series_view(records),
            "trends": {
                "generation": stats.trend([r.total_generation for r in records]),
                "demand": stats.trend([r.total_demand for r in records]),
                "renewable_percentage": stats.trend([r.renewable_percentage for r in records]),
            },
        }

    def compare_periods(
        self,
        current_start: Any,
        current_end: Any,
        previous_start: Any,
        previous_end: Any,
        time_scope: str = "day",
    ) -> dict[str, Any]:
        """Change in generation, demand and renewable share between two periods.

        Each `trend` is "increase", "decrease" or "stable" by the sign of
        its percentage change.
        """
        cur_start, cur_end, time_scope = self._validated(current_start, current_end, time_scope)
        prev_start, prev_end, _ = self._validated(previous_start, previous_end, time_scope)

        current = self._load(cur_start, cur_end, time_scope)
        previous = self._load(prev_start, prev_end, time_scope)

        result: dict[str, Any] = {
            "current_period": {**self._period(cur_start, cur_end, time_scope), "data_points": len(current)},
            "previous_period": {
                **self._period(prev_start, prev_end, time_scope),
                "data_points": len(previous),
            },
        }
        if not current and not previous:
            return {"is_empty": True, **result, "message": NO_DATA_MESSAGE}

        cur_sum = summarize(current)
        prev_sum = summarize(previous)
        result["is_empty"] = False
        result["changes"] = {
            "generation": _change(cur_sum["total_generation"], prev_sum["total_generation"]),
            "demand": _change(cur_sum["total_demand"], prev_sum["total_demand"]),
            "renewable_percentage": _change(
                cur_sum["average_renewable_percentage"],
                prev_sum["average_renewable_percentage"],
            ),
            "generation_types": stats.compare_distributions(
                stats.generation_distribution(current),
                stats.generation_distribution(previous),
            ),
        }
        return result

    def sustainability_metrics(self, start: Any, end: Any, time_scope: str = "day") -> dict[str, Any]:
        """Renewable and low-carbon shares, CO2 avoided and a blended score."""
        start, end, time_scope = self._validated(start, end, time_scope)
        records = self._load(start, end, time_scope)
        if not records:
            return self._empty(start, end, time_scope)

        total = finite(sum(r.total_generation for r in records))
        renewable = finite(sum(_type_total(r, RENEWABLE_TYPES) for r in records))
        low_carbon = finite(sum(_type_total(r, LOW_CARBON_TYPES) for r in records))
        renewable_pct = finite(renewable / total * 100) if total > 0 else 0.0
        low_carbon_pct = finite(low_carbon / total * 100) if total > 0 else 0.0
        hours = (end - start).total_seconds() / 3600

        return {
            "is_empty": False,
            "period": self._period(start, end, time_scope),
            "metrics": {
                "total_generation": total,
                "renewable_generation": renewable,
                "low_carbon_generation": low_carbon,
                "renewable_percentage": renewable_pct,
                "low_carbon_percentage": low_carbon_pct,
                "co2_avoided_tonnes": stats.co2_avoided(renewable, hours),
                "sustainability_score": stats.sustainability_score(renewable_pct, low_carbon_pct),
            },
            "trend": [
                {
                    "timestamp": _iso(r.timestamp),
                    "total_generation": r.total_generation,
                    "renewable_generation": _type_total(r, RENEWABLE_TYPES),
                    "low_carbon_generation": _type_total(r, LOW_CARBON_TYPES),
                    "renewable_percentage": share_of(
                        r.generation, RENEWABLE_TYPES, r.total_generation
                    ),
                    "low_carbon_percentage": share_of(
                        r.generation, LOW_CARBON_TYPES, r.total_generation
                    ),
                }
                for r in records
            ],
        }

    def patterns_and_anomalies(self, start: Any, end: Any, time_scope: str = "day") -> dict[str, Any]:
        """Anomalies per indicator, demand cyclicality and cross-correlations."""
        start, end, time_scope = self._validated(start, end, time_scope)
        records = self._load(start, end, time_scope)
        if not records:
            return self._empty(start, end, time_scope)

        generation = [(r.timestamp, r.total_generation) for r in records]
        demand = [(r.timestamp, r.total_demand) for r in records]
        renewable = [(r.timestamp, r.renewable_percentage) for r in records]

        gen_values = [v for _, v in generation]
        dem_values = [v for _, v in demand]
        ren_values = [v for _, v in renewable]

        return {
            "is_empty": False,
            "period": self._period(start, end, time_scope),
            "anomalies": {
                "generation": stats.detect_anomalies(generation),
                "demand": stats.detect_anomalies(demand),
                "renewable_percentage": stats.detect_anomalies(renewable),
            },
            "patterns": {
                "cyclical": stats.cyclical_patterns(demand),
                "correlations": [
                    stats.describe_correlation("demand", dem_values, "generation", gen_values),
                    stats.describe_correlation(
                        "demand", dem_values, "renewable_percentage", ren_values
                    ),
                    stats.describe_correlation(
                        "generation", gen_values, "renewable_percentage", ren_values
                    ),
                ],
            },
        }

    def range_stats(self, start: Any, end: Any, time_scope: str = "day") -> dict[str, Any]:
        """Record count and avg/min/max of the derived indicators, computed by the store."""
        start, end, time_scope = self._validated(start, end, time_scope)
        res = self.store.stats_in_range(start, end, time_scope)
        if res["is_empty"]:
            return self._empty(start, end, time_scope)
        return {**res, "period": self._period(start, end, time_scope)}

    def time_series(
        self, indicator: str, start: Any, end: Any, time_scope: str = "day"
    ) -> list[dict[str, Any]]:
        """Validated passthrough to the store's indicator series."""
        start, end, time_scope = self._validated(start, end, time_scope)
        return [
            {"timestamp": _iso(ts), "value": value}
            for ts, value in self.store.time_series(indicator, start, end, time_scope)
        ]
