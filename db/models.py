"""
db/models.py

SQLAlchemy table definitions for the balance store.

Responsibilities
----------------
- Provide a programmatic (SQLAlchemy Core) representation of the
  `electric_balance` table used by `ingest.load`.
- Encode the idempotency key `(timestamp_utc, time_scope)` as the composite
  primary key so concurrent upserts are resolved by the database.

Conventions
-----------
- `timestamp_utc` is timezone-aware UTC where the backend supports it.
- Line items (generation / demand / interchange) are stored as JSON arrays
  of `{type, value, percentage, color, unit}` objects.
- Derived scalars are stored alongside for range queries and time series;
  they are written from `recompute`d records only.
"""

from sqlalchemy import JSON, TIMESTAMP, Column, Float, Index, MetaData, String, Table, func

metadata = MetaData()

# One balance reading per (timestamp, granularity).
electric_balance = Table(
    "electric_balance",
    metadata,
    Column("timestamp_utc", TIMESTAMP(timezone=True), primary_key=True),
    Column("time_scope", String(8), primary_key=True),
    # Line items
    Column("generation", JSON, nullable=False),
    Column("demand", JSON, nullable=False),
    Column("interchange", JSON, nullable=False),
    # Derived values
    Column("total_generation", Float, nullable=False, default=0.0),
    Column("total_demand", Float, nullable=False, default=0.0),
    Column("balance", Float, nullable=False, default=0.0),
    Column("renewable_percentage", Float, nullable=False, default=0.0),
    # Provenance
    Column("source_metadata", JSON),
    Column("ingested_at", TIMESTAMP(timezone=True), server_default=func.now()),
    Column(
        "updated_at",
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    ),
)

Index("ix_electric_balance_scope_ts", electric_balance.c.time_scope, electric_balance.c.timestamp_utc)

# Scalar columns exposed as time-series indicators.
INDICATOR_COLUMNS = ("total_generation", "total_demand", "balance", "renewable_percentage")
