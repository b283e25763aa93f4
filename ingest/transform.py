"""
ingest/transform.py

Mapping layer from REE "balance eléctrico" payloads to `BalanceRecord`s.

Responsibilities
----------------
- Define `CATEGORY_MAP`, routing REE content groups to record sections.
- Provide `to_record` for a single data point and `to_records` for payloads
  whose values span several datetimes.

Payload shape (abridged)
------------------------
::

    {
      "data": {"type": "Balance", "attributes": {"title": ..., "last-update": ...}},
      "included": [
        {"type": "Renewable", "attributes": {"content": [
            {"type": "Wind", "attributes": {"color": "#...", "values": [
                {"value": 100.0, "percentage": 0.25, "datetime": "2024-03-01T00:00:00.000+01:00"}
            ]}}
        ]}},
        ...
      ]
    }

Notes
-----
- Functions here are pure: no I/O and no clock reads.
- A payload with no usable timestamp is rejected rather than stamped "now".
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from .errors import BalanceError, ErrorKind
from .validate import BalanceRecord, LineItem, finite, parse_utc, placeholder_item

# REE content group (lower-cased) -> record section.
CATEGORY_MAP = {
    "renewable": "generation",
    "non-renewable": "generation",
    "demand": "demand",
    "international interchange": "interchange",
    "storage": "storage",
}

# Attribute keys holding the point-in-time of a payload, in priority order.
TIMESTAMP_KEYS = ("datetime", "last-update", "date")

DEFAULT_SOURCE = "REE API"


def item_category(name: Any) -> str | None:
    """Return the record section for an REE group name, or None if unknown."""
    if not isinstance(name, str):
        return None
    return CATEGORY_MAP.get(name.strip().lower())


def _data_section(payload: Any) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping) or not isinstance(payload.get("data"), Mapping):
        raise BalanceError(ErrorKind.MALFORMED_PAYLOAD, "Payload has no 'data' section")
    return payload["data"]


def _attributes(obj: Any) -> Mapping[str, Any]:
    attrs = obj.get("attributes") if isinstance(obj, Mapping) else None
    return attrs if isinstance(attrs, Mapping) else {}


def _same_instant(raw: Any, at: datetime) -> bool:
    try:
        return parse_utc(raw) == at
    except BalanceError:
        return False


def _pick_value(entry: Mapping[str, Any], at: datetime | None) -> tuple[float, float]:
    """Return (value, percentage) for a content entry.

    With `at` set, the entry's value list is searched for a matching datetime;
    entries without such a point contribute zero. Otherwise the first value
    is used, falling back to inline ``value``/``percentage`` keys.
    """
    values = _attributes(entry).get("values")
    if isinstance(values, list) and values:
        if at is None:
            point = values[0]
        else:
            point = next(
                (
                    v
                    for v in values
                    if isinstance(v, Mapping) and _same_instant(v.get("datetime"), at)
                ),
                None,
            )
            if point is None:
                return 0.0, 0.0
        if not isinstance(point, Mapping):
            return 0.0, 0.0
        return finite(point.get("value")), finite(point.get("percentage"))

    if "value" in entry:
        return finite(entry.get("value")), finite(entry.get("percentage"))
    return 0.0, 0.0


def _line_item(entry: Mapping[str, Any], value: float, percentage: float) -> LineItem:
    color = _attributes(entry).get("color") or entry.get("color")
    return LineItem(
        type=str(entry["type"]),
        value=value,
        percentage=percentage,
        color=str(color) if color else None,
    )


def _resolve_timestamp(attrs: Mapping[str, Any]) -> datetime:
    for key in TIMESTAMP_KEYS:
        raw = attrs.get(key)
        if raw:
            try:
                return parse_utc(raw)
            except BalanceError as e:
                raise BalanceError(
                    ErrorKind.MALFORMED_PAYLOAD,
                    f"Unparseable {key!r} timestamp: {raw!r}",
                    cause=e,
                ) from e
    raise BalanceError(
        ErrorKind.MALFORMED_PAYLOAD,
        f"Payload carries none of the timestamp fields {TIMESTAMP_KEYS}",
    )


def to_record(
    payload: Mapping[str, Any],
    at: Any = None,
    time_scope: str | None = None,
) -> BalanceRecord:
    """Map one REE payload (or one data point of it) to a `BalanceRecord`.

    Args:
        payload: Parsed JSON body returned by the REE API.
        at: Optional instant selecting which value of each content entry to
            use. When given it is also the record timestamp.
        time_scope: Optional scope overriding the payload's ``time-trunc``.

    Returns:
        A record with derived fields already computed.

    Raises:
        BalanceError: ``MALFORMED_PAYLOAD`` when the data section or a usable
            timestamp is missing, ``INVALID_TIME_SCOPE`` for an unknown scope.
    """
    data = _data_section(payload)
    attrs = _attributes(data)

    if at is not None:
        try:
            timestamp = parse_utc(at)
        except BalanceError as e:
            raise BalanceError(
                ErrorKind.MALFORMED_PAYLOAD, f"Unparseable data point datetime: {at!r}", cause=e
            ) from e
    else:
        timestamp = _resolve_timestamp(attrs)
    scope = time_scope or attrs.get("time-trunc") or "day"

    sections: dict[str, list[LineItem]] = {"generation": [], "demand": [], "interchange": []}

    included = payload.get("included")
    for group in included if isinstance(included, list) else []:
        if not isinstance(group, Mapping):
            continue
        category = item_category(group.get("type"))
        content = _attributes(group).get("content")
        if category is None or not isinstance(content, list):
            continue

        for entry in content:
            if not isinstance(entry, Mapping) or not entry.get("type"):
                continue
            value, percentage = _pick_value(entry, timestamp if at is not None else None)
            if category == "storage":
                # Charging storage draws from the grid; discharging feeds it.
                target = "demand" if value < 0 else "generation"
                sections[target].append(_line_item(entry, abs(value), percentage))
            else:
                sections[category].append(_line_item(entry, value, percentage))

    for name in ("generation", "demand"):
        if not sections[name]:
            sections[name].append(placeholder_item())

    metadata = {
        "title": str(attrs.get("title") or "Electric balance"),
        "description": str(attrs.get("description") or ""),
        "source": DEFAULT_SOURCE,
    }

    return BalanceRecord.build(
        timestamp=timestamp,
        time_scope=scope,
        generation=sections["generation"],
        demand=sections["demand"],
        interchange=sections["interchange"],
        metadata=metadata,
    )


def data_point_times(payload: Mapping[str, Any]) -> list[Any]:
    """List the distinct raw datetimes a payload carries, in first-seen order.

    ``data.attributes.values`` wins when present; otherwise the datetimes of
    every content value under ``included`` are collected.
    """
    data = _data_section(payload)
    seen: list[Any] = []
    keys: set[str] = set()

    def _add(raw: Any) -> None:
        if not raw:
            return
        try:
            k = parse_utc(raw).isoformat()
        except BalanceError:
            # Keep unparseable points so they are reported as transform errors.
            k = f"raw:{raw}"
        if k not in keys:
            keys.add(k)
            seen.append(raw)

    top_values = _attributes(data).get("values")
    if isinstance(top_values, list) and top_values:
        for point in top_values:
            if isinstance(point, Mapping):
                _add(point.get("datetime") or point.get("date"))
        return seen

    included = payload.get("included")
    for group in included if isinstance(included, list) else []:
        content = _attributes(group).get("content")
        if not isinstance(content, list):
            continue
        for entry in content:
            values = _attributes(entry).get("values")
            if not isinstance(values, list):
                continue
            for point in values:
                if isinstance(point, Mapping):
                    _add(point.get("datetime"))
    return seen


def to_records(
    payload: Mapping[str, Any],
    time_scope: str | None = None,
) -> tuple[list[BalanceRecord], list[BalanceError]]:
    """Split a (possibly multi-point) payload into one record per datetime.

    Per-point failures do not abort the batch; they are returned alongside
    the successfully built records.

    Returns:
        ``(records, errors)`` with records in payload order.

    Raises:
        BalanceError: ``MALFORMED_PAYLOAD`` if the payload has no data section.
    """
    times = data_point_times(payload)
    if not times:
        try:
            return [to_record(payload, time_scope=time_scope)], []
        except BalanceError as e:
            return [], [e]

    records: list[BalanceRecord] = []
    errors: list[BalanceError] = []
    for raw in times:
        try:
            records.append(to_record(payload, at=raw, time_scope=time_scope))
        except BalanceError as e:
            errors.append(e)
    return records, errors
