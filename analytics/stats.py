"""
analytics/stats.py

Descriptive statistics over electric balance records and value series.

Responsibilities
----------------
- Aggregate generation by type and compare two distributions.
- Trend (endpoint slope), z-score anomaly detection, weekday cyclicality,
  Pearson correlation with a qualitative label.
- Sustainability helpers: weighted score and CO2-avoided estimate.

Conventions
-----------
- Every function is pure and returns plain dicts/lists/floats.
- Series are sequences of ``(timestamp, value)`` pairs or plain floats.
- Results never contain NaN or Inf; degenerate inputs yield 0 or an
  "insufficient"/"not detected" marker instead.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from datetime import datetime

import numpy as np
import pandas as pd

from ingest.validate import finite, generation_distribution  # noqa: F401

# Tonnes of CO2 per MWh displaced by renewable output (flat approximation).
EMISSION_FACTOR_T_PER_MWH = 0.5

RENEWABLE_WEIGHT = 0.7
LOW_CARBON_WEIGHT = 0.3

ANOMALY_Z_THRESHOLD = 2.0
MIN_ANOMALY_POINTS = 3
MIN_PATTERN_POINTS = 7
WEEKLY_PATTERN_THRESHOLD = 0.1

WEEKDAY_LABELS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")

Point = tuple[datetime, float]


def percentage_change(current: float, previous: float) -> float:
    """Relative change from `previous` to `current`, in percent.

    Both zero gives 0; a zero baseline gives 100.
    """
    if current == 0 and previous == 0:
        return 0.0
    if previous == 0:
        return 100.0
    return finite((current - previous) / abs(previous) * 100)


def change_label(change: float) -> str:
    if change > 0:
        return "increase"
    if change < 0:
        return "decrease"
    return "stable"


# ---------------------------
# Distributions
# ---------------------------


def compare_distributions(
    current: Mapping[str, Mapping], previous: Mapping[str, Mapping]
) -> list[dict]:
    """Per-type change between two `generation_distribution` results.

    Sorted by the magnitude of the relative change in share, largest first.
    """
    empty = {"total_value": 0.0, "percentage": 0.0, "color": None}
    types = list(dict.fromkeys([*current.keys(), *previous.keys()]))

    changes = []
    for t in types:
        cur = current.get(t, empty)
        prev = previous.get(t, empty)
        changes.append(
            {
                "type": t,
                "current_value": cur["total_value"],
                "previous_value": prev["total_value"],
                "current_percentage": cur["percentage"],
                "previous_percentage": prev["percentage"],
                "value_change": finite(cur["total_value"] - prev["total_value"]),
                "percentage_change": finite(cur["percentage"] - prev["percentage"]),
                "percentage_change_relative": percentage_change(
                    cur["percentage"], prev["percentage"]
                ),
                "color": cur.get("color") or prev.get("color"),
            }
        )
    changes.sort(key=lambda c: abs(c["percentage_change_relative"]), reverse=True)
    return changes


# ---------------------------
# Series statistics
# ---------------------------


def slope(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.0
    return finite((values[-1] - values[0]) / (len(values) - 1))


def trend(values: Sequence[float]) -> dict:
    """Endpoint trend of a time-ordered series."""
    if len(values) < 2:
        return {"insufficient": True, "message": "Insufficient data points to analyze trends"}

    s = slope(values)
    return {
        "insufficient": False,
        "trend": "upward" if s > 0 else "downward" if s < 0 else "stable",
        "slope": s,
        "start_value": values[0],
        "end_value": values[-1],
        "change_percentage": percentage_change(values[-1], values[0]),
    }


def detect_anomalies(points: Sequence[Point], threshold: float = ANOMALY_Z_THRESHOLD) -> list[dict]:
    """Flag points whose absolute z-score reaches `threshold`.

    Mean and standard deviation are taken over the whole series using the
    population variance. Fewer than three points, or a flat series, yield
    no anomalies.
    """
    if len(points) < MIN_ANOMALY_POINTS:
        return []

    values = np.array([finite(v) for _, v in points], dtype=float)
    mean = float(values.mean())
    std = float(values.std(ddof=0))
    if std == 0 or not math.isfinite(std):
        return []

    anomalies = []
    for (ts, _), v in zip(points, values):
        z = abs(v - mean) / std
        if z >= threshold:
            anomalies.append(
                {
                    "timestamp": ts,
                    "value": float(v),
                    "mean": mean,
                    "deviation": float(v - mean),
                    "z_score": float(z),
                    "type": "high" if v > mean else "low",
                }
            )
    return anomalies


def weekday_pattern(points: Sequence[Point]) -> dict:
    """Average by weekday and whether the spread between weekdays is material.

    Weekdays with no observations count as a zero average, matching a
    seven-bucket mean. The pattern is detected when the coefficient of
    variation of the seven averages exceeds 10%.
    """
    series = pd.Series(
        [finite(v) for _, v in points],
        index=pd.DatetimeIndex([ts for ts, _ in points]),
        dtype=float,
    )
    averages = series.groupby(series.index.dayofweek).mean().reindex(range(7), fill_value=0.0)

    mean_of_avgs = float(averages.mean())
    spread = float(averages.std(ddof=0))
    strength = finite(spread / mean_of_avgs) if mean_of_avgs else 0.0

    return {
        "detected": strength > WEEKLY_PATTERN_THRESHOLD,
        "strength": strength,
        "averages_by_day": [
            {"day": WEEKDAY_LABELS[i], "average": float(avg)} for i, avg in averages.items()
        ],
        "highest_day": WEEKDAY_LABELS[int(averages.idxmax())],
        "lowest_day": WEEKDAY_LABELS[int(averages.idxmin())],
    }


def daily_pattern(points: Sequence[Point]) -> dict:
    # Intra-day cycles need hour-level analysis, which is not implemented.
    return {"detected": False, "message": "Daily pattern detection requires hourly data"}


def cyclical_patterns(points: Sequence[Point]) -> dict:
    if len(points) < MIN_PATTERN_POINTS:
        return {"detected": False, "reason": "Insufficient data points"}

    daily = daily_pattern(points)
    weekly = weekday_pattern(points)
    return {"detected": daily["detected"] or weekly["detected"], "daily": daily, "weekly": weekly}


def pearson(a: Sequence[float], b: Sequence[float]) -> float:
    """Pearson correlation coefficient, 0 when undefined."""
    if len(a) != len(b) or len(a) < 2:
        return 0.0

    x = np.array([finite(v) for v in a], dtype=float)
    y = np.array([finite(v) for v in b], dtype=float)
    dx = x - x.mean()
    dy = y - y.mean()
    var_x = float((dx * dx).sum())
    var_y = float((dy * dy).sum())
    if var_x == 0 or var_y == 0:
        return 0.0

    r = float((dx * dy).sum()) / math.sqrt(var_x * var_y)
    return max(-1.0, min(1.0, finite(r)))


def correlation_strength(r: float) -> str:
    a = abs(r)
    if a < 0.2:
        return "very-weak"
    if a < 0.4:
        return "weak"
    if a < 0.6:
        return "moderate"
    if a < 0.8:
        return "strong"
    return "very-strong"


def describe_correlation(name_a: str, a: Sequence[float], name_b: str, b: Sequence[float]) -> dict:
    r = pearson(a, b)
    return {
        "between": [name_a, name_b],
        "correlation": r,
        "strength": correlation_strength(r),
        "direction": "positive" if r > 0 else "negative" if r < 0 else "none",
    }


# ---------------------------
# Sustainability
# ---------------------------


def sustainability_score(renewable_pct: float, low_carbon_pct: float) -> float:
    """Weighted blend of renewable share and the extra low-carbon share."""
    return finite(
        renewable_pct * RENEWABLE_WEIGHT + (low_carbon_pct - renewable_pct) * LOW_CARBON_WEIGHT
    )


def co2_avoided(renewable_generation: float, hours: float) -> float:
    """Tonnes of CO2 avoided, using a flat emission factor."""
    return finite(renewable_generation * hours * EMISSION_FACTOR_T_PER_MWH / 1000)
