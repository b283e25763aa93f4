"""
ingest/validate.py

Validation and typing layer for electric balance records.

Responsibilities
----------------
- Define the `LineItem` and `BalanceRecord` models.
- Provide `recompute`, the only place derived totals are produced.
- Parse and validate dates, date ranges, and time scopes for both the
  ingestion path (lenient) and the analytics query path (strict).

Conventions
-----------
- Timestamps are timezone-aware UTC. Naive inputs are taken as UTC.
- Numeric fields are always finite floats: blanks, garbage, NaN and Inf
  collapse to 0.0.
- `BalanceRecord` is frozen. Derived fields change only through `recompute`,
  which returns a new record.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import date, datetime, timedelta, timezone
from typing import Any

from dateutil import parser as dtp
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import TIME_SCOPES
from .errors import BalanceError, ErrorKind

RENEWABLE_TYPES = frozenset(
    {"Hydro", "Wind", "Solar-PV", "Solar-thermal", "Other-renewables", "Hydro-wind"}
)
LOW_CARBON_TYPES = RENEWABLE_TYPES | {"Nuclear"}

PLACEHOLDER_TYPE = "unavailable"

# Longest range an analytics query may span.
MAX_QUERY_DAYS = 366


def finite(v: Any) -> float:
    """Coerce `v` to a finite float, mapping anything unusable to 0.0."""
    if v in (None, ""):
        return 0.0
    try:
        f = float(v)
    except (TypeError, ValueError):
        return 0.0
    return f if math.isfinite(f) else 0.0


class LineItem(BaseModel):
    """One categorised reading (e.g. Wind generation) within a record."""

    model_config = ConfigDict(frozen=True)

    type: str
    value: float = 0.0
    percentage: float = 0.0
    color: str | None = None
    unit: str = "MW"

    @field_validator("value", "percentage", mode="before")
    @classmethod
    def coerce_number(cls, v):
        return finite(v)


def placeholder_item() -> LineItem:
    return LineItem(type=PLACEHOLDER_TYPE, value=0.0, percentage=0.0)


class BalanceRecord(BaseModel):
    """Balance of generation, demand and interchange at one timestamp.

    Attributes:
        timestamp: Instant the reading represents (aware UTC).
        time_scope: Granularity tag, one of hour/day/month/year.
        generation: Generation line items, in source order.
        demand: Demand line items, in source order.
        interchange: International interchange line items.
        total_generation: Derived; sum of generation values.
        total_demand: Derived; sum of demand values.
        balance: Derived; total_generation - total_demand.
        renewable_percentage: Derived; renewable share of generation.
        metadata: Provenance (title, description, source).
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    time_scope: str = "day"
    generation: list[LineItem] = Field(default_factory=list)
    demand: list[LineItem] = Field(default_factory=list)
    interchange: list[LineItem] = Field(default_factory=list)
    total_generation: float = 0.0
    total_demand: float = 0.0
    balance: float = 0.0
    renewable_percentage: float = 0.0
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_ts(cls, v):
        """Normalise ISO-8601 strings and datetimes to aware UTC."""
        return parse_utc(v)

    @field_validator("time_scope")
    @classmethod
    def check_scope(cls, v):
        return validate_time_scope(v)

    @property
    def key(self) -> tuple[datetime, str]:
        """Idempotency key used by the store."""
        return (self.timestamp, self.time_scope)

    @classmethod
    def build(cls, **fields: Any) -> "BalanceRecord":
        """Construct a record and fill in its derived fields."""
        return recompute(cls(**fields))

    def to_row(self) -> dict[str, Any]:
        """Flatten to the column layout of the `electric_balance` table."""
        return {
            "timestamp_utc": self.timestamp,
            "time_scope": self.time_scope,
            "generation": [i.model_dump() for i in self.generation],
            "demand": [i.model_dump() for i in self.demand],
            "interchange": [i.model_dump() for i in self.interchange],
            "total_generation": self.total_generation,
            "total_demand": self.total_demand,
            "balance": self.balance,
            "renewable_percentage": self.renewable_percentage,
            "source_metadata": dict(self.metadata),
        }

    @classmethod
    def from_row(cls, row: Any) -> "BalanceRecord":
        """Rebuild a record from a table row mapping."""
        return cls(
            timestamp=row["timestamp_utc"],
            time_scope=row["time_scope"],
            generation=row["generation"] or [],
            demand=row["demand"] or [],
            interchange=row["interchange"] or [],
            total_generation=row["total_generation"],
            total_demand=row["total_demand"],
            balance=row["balance"],
            renewable_percentage=row["renewable_percentage"],
            metadata=row["source_metadata"] or {},
        )


def _sum_values(items: Iterable[LineItem]) -> float:
    return finite(sum(finite(i.value) for i in items))


def share_of(items: Iterable[LineItem], types: frozenset[str], total: float) -> float:
    """Percentage of `total` contributed by items whose type is in `types`."""
    if total <= 0:
        return 0.0
    part = _sum_values(i for i in items if i.type in types)
    return finite(part / total * 100)


def generation_distribution(records: Iterable[BalanceRecord]) -> dict[str, dict]:
    """Total generation per type with its share of the overall total.

    Returns:
        ``{type: {"total_value": float, "percentage": float, "color": str | None}}``
        in first-seen type order.
    """
    out: dict[str, dict] = {}
    for record in records:
        for item in record.generation:
            entry = out.setdefault(
                item.type, {"total_value": 0.0, "percentage": 0.0, "color": item.color}
            )
            entry["total_value"] += item.value
            if entry["color"] is None:
                entry["color"] = item.color

    overall = sum(e["total_value"] for e in out.values())
    for entry in out.values():
        entry["total_value"] = finite(entry["total_value"])
        entry["percentage"] = finite(entry["total_value"] / overall * 100) if overall else 0.0
    return out


def recompute(record: BalanceRecord) -> BalanceRecord:
    """Return a copy of `record` with every derived field recomputed."""
    total_gen = _sum_values(record.generation)
    total_dem = _sum_values(record.demand)
    return record.model_copy(
        update={
            "total_generation": total_gen,
            "total_demand": total_dem,
            "balance": finite(total_gen - total_dem),
            "renewable_percentage": share_of(record.generation, RENEWABLE_TYPES, total_gen),
        }
    )


# ---------------------------
# Dates, ranges and scopes
# ---------------------------


def parse_utc(v: Any) -> datetime:
    """Parse a date/datetime/ISO string into an aware UTC datetime.

    Raises:
        BalanceError: ``INVALID_RANGE`` if the value cannot be parsed.
    """
    if isinstance(v, datetime):
        dt = v
    elif isinstance(v, date):
        dt = datetime(v.year, v.month, v.day)
    elif isinstance(v, str) and v.strip():
        try:
            dt = dtp.isoparse(v.strip().replace("Z", "+00:00"))
        except (ValueError, OverflowError) as e:
            raise BalanceError(ErrorKind.INVALID_RANGE, f"Invalid date: {v!r}", cause=e) from e
    else:
        raise BalanceError(ErrorKind.INVALID_RANGE, f"Invalid date: {v!r}")

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def validate_time_scope(time_scope: Any) -> str:
    if time_scope not in TIME_SCOPES:
        raise BalanceError(
            ErrorKind.INVALID_TIME_SCOPE,
            f"Invalid time scope: {time_scope!r}. Valid values: {', '.join(TIME_SCOPES)}",
        )
    return time_scope


def validate_range(start: Any, end: Any) -> tuple[datetime, datetime]:
    """Parse an ingestion range; only order is enforced."""
    start_dt, end_dt = parse_utc(start), parse_utc(end)
    if start_dt > end_dt:
        raise BalanceError(
            ErrorKind.INVALID_RANGE,
            "Start date must be before end date",
            details={"start": start_dt.isoformat(), "end": end_dt.isoformat()},
        )
    return start_dt, end_dt


def validate_query_range(
    start: Any,
    end: Any,
    now: datetime | None = None,
    max_days: int = MAX_QUERY_DAYS,
) -> tuple[datetime, datetime]:
    """Parse an analytics range: ordered, bounded in length, not in the future."""
    start_dt, end_dt = validate_range(start, end)
    if end_dt - start_dt > timedelta(days=max_days):
        raise BalanceError(
            ErrorKind.INVALID_RANGE, f"Date range cannot exceed {max_days} days"
        )
    now = now or datetime.now(timezone.utc)
    if end_dt > now:
        raise BalanceError(ErrorKind.INVALID_RANGE, "End date cannot be in the future")
    return start_dt, end_dt
