"""
ingest/run.py

End-to-end ingestion orchestrator for REE electric balance data.

Responsibilities
----------------
- Validate the requested range and granularity before any network call.
- Skip ranges the store already holds (unless forced), using an approximate
  expected-count heuristic.
- Fetch from REE with bounded exponential backoff, split multi-point payloads
  into one record per datetime, and save them idempotently.
- Split long historical loads into fixed-size day chunks processed in order,
  continuing past a failed chunk.
- Expose a CLI for ad-hoc runs and backfills.

Conventions
-----------
- All timestamps are handled in UTC.
- Ranges are closed: [start, end].
- The sleep used for backoff and inter-chunk delays is injected, so tests
  never wait on the wall clock.
"""

from __future__ import annotations

import argparse
import logging
import math
import time
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

from .client import REEClient
from .config import Settings
from .errors import BalanceError, ErrorKind
from .load import BalanceStore, get_engine
from .transform import to_records
from .validate import BalanceRecord, recompute, validate_range, validate_time_scope

logger = logging.getLogger(__name__)


def iso(dt: datetime) -> str:
    """Return an ISO-8601 string in UTC for a given datetime.

    Args:
        dt: A timezone-aware datetime.

    Returns:
        str: ISO-8601 string (e.g., "2024-01-01T00:00:00+00:00").
    """
    return dt.astimezone(timezone.utc).isoformat()


def expected_record_count(start: datetime, end: datetime, time_scope: str) -> int:
    """Approximate number of records a complete range should hold.

    Day span scaled by granularity (hour x24, day x1, month /30, year /365),
    rounded up. Months and years are treated as fixed 30 and 365 days, so the
    figure is an estimate rather than a calendar-exact count. A zero-length
    range still expects one record.
    """
    days = (end - start).total_seconds() / 86400
    if time_scope == "hour":
        expected = math.ceil(days * 24)
    elif time_scope == "month":
        expected = math.ceil(days / 30)
    elif time_scope == "year":
        expected = math.ceil(days / 365)
    else:
        expected = math.ceil(days)
    return max(1, expected)


def chunk_ranges(start: datetime, end: datetime, chunk_days: int) -> list[tuple[datetime, datetime]]:
    """Split ``[start, end]`` into consecutive, non-overlapping chunks.

    Each chunk spans ``chunk_days`` days minus one minute, so the next chunk
    starts exactly ``chunk_days`` after the previous one. The last chunk is
    clamped to `end`.
    """
    if chunk_days < 1:
        raise ValueError("chunk_days must be >= 1")
    span = timedelta(days=chunk_days)
    out = []
    cur = start
    while cur <= end:
        out.append((cur, min(cur + span - timedelta(minutes=1), end)))
        cur += span
    return out


class IngestionPipeline:
    """Fetch → transform → store, for one range or a chunked backfill.

    Args:
        client: Anything with ``fetch_range(start, end, time_scope)``.
        store: A `BalanceStore` (or an object with the same methods).
        max_retries: Total fetch attempts per range.
        backoff_base: Seconds multiplied by ``2**attempt`` between attempts.
        chunk_days: Default chunk size for `backfill`.
        chunk_delay: Pause between consecutive backfill chunks, in seconds.
        sleep: Blocking sleep used for backoff and chunk delays.
    """

    def __init__(
        self,
        client,
        store,
        *,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        chunk_days: int = 30,
        chunk_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.client = client
        self.store = store
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.chunk_days = chunk_days
        self.chunk_delay = chunk_delay
        self.sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client=None,
        store=None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "IngestionPipeline":
        return cls(
            client or REEClient.from_settings(settings),
            store or BalanceStore(get_engine(settings.db_url)),
            max_retries=settings.max_retries,
            backoff_base=settings.backoff_base,
            chunk_days=settings.chunk_days,
            chunk_delay=settings.chunk_delay,
            sleep=sleep,
        )

    # ---------------------------
    # Fetch
    # ---------------------------

    def fetch_with_retry(
        self,
        start: datetime,
        end: datetime,
        time_scope: str,
        extra_params: dict | None = None,
    ) -> dict:
        """Call the client until it succeeds or attempts run out.

        After failed attempt ``n`` (1-based), if another attempt remains,
        waits ``2**n * backoff_base`` seconds. Errors that retrying cannot
        fix (4xx other than 408/429) end the loop early.

        Raises:
            BalanceError: ``FETCH_EXHAUSTED`` with the last error as `cause`.
        """
        last_error: BaseException | None = None
        attempts = 0

        while attempts < self.max_retries:
            attempts += 1
            try:
                if extra_params:
                    return self.client.fetch_range(start, end, time_scope, extra_params)
                return self.client.fetch_range(start, end, time_scope)
            except BalanceError as e:
                last_error = e
                logger.warning(
                    "Attempt %d/%d failed: %s", attempts, self.max_retries, e.message
                )
                if not e.transient:
                    break
            except Exception as e:
                # Unclassified client failures are retried like network errors.
                last_error = e
                logger.warning("Attempt %d/%d failed: %s", attempts, self.max_retries, e)

            if attempts < self.max_retries:
                delay = (2**attempts) * self.backoff_base
                logger.info("Retrying in %.1fs...", delay)
                self.sleep(delay)

        raise BalanceError(
            ErrorKind.FETCH_EXHAUSTED,
            f"Failed to fetch data after {attempts} attempts: {last_error}",
            cause=last_error,
            attempts=attempts,
            details={"start": iso(start), "end": iso(end), "time_scope": time_scope},
        )

    # ---------------------------
    # Save
    # ---------------------------

    def _is_complete(self, start: datetime, end: datetime, time_scope: str) -> bool:
        expected = expected_record_count(start, end, time_scope)
        try:
            existing = self.store.count_in_range(start, end, time_scope)
        except BalanceError as e:
            logger.warning("Error checking existing data: %s", e.message)
            return False
        logger.debug("Existing %d / expected %d records", existing, expected)
        return existing >= expected

    def save(self, records: Sequence[BalanceRecord], force_update: bool = False) -> tuple[int, int]:
        """Store records idempotently.

        Not forced: records whose key already exists are left untouched and
        the rest go through one bulk upsert, falling back to per-record
        upserts if the bulk call fails. Forced: every record is upserted
        individually.

        Returns:
            ``(saved_count, error_count)``.
        """
        records = [recompute(r) for r in records]
        if not records:
            return 0, 0

        if force_update:
            return self._save_each(records)

        new_records = []
        errors = 0
        for record in records:
            try:
                if not self.store.exists_for_key(record.timestamp, record.time_scope):
                    new_records.append(record)
            except BalanceError as e:
                logger.error("Existence check failed for %s: %s", iso(record.timestamp), e.message)
                errors += 1

        if not new_records:
            logger.info("All %d records already stored", len(records))
            return 0, errors

        try:
            return self.store.upsert_many(new_records), errors
        except BalanceError as e:
            logger.warning("Bulk upsert failed (%s); falling back to per-record upserts", e.message)
            saved, failed = self._save_each(new_records)
            return saved, errors + failed

    def _save_each(self, records: Sequence[BalanceRecord]) -> tuple[int, int]:
        saved = errors = 0
        for record in records:
            try:
                self.store.upsert(record)
                saved += 1
            except BalanceError as e:
                logger.error("Error saving record %s: %s", iso(record.timestamp), e.message)
                errors += 1
        return saved, errors

    # ---------------------------
    # Entry points
    # ---------------------------

    def ingest(
        self,
        start_date: Any,
        end_date: Any,
        time_scope: str = "day",
        force_update: bool = False,
    ) -> dict[str, Any]:
        """Ingest one range at one granularity.

        Args:
            start_date: Inclusive lower bound (datetime, date or ISO string).
            end_date: Inclusive upper bound.
            time_scope: One of hour/day/month/year.
            force_update: Re-fetch and overwrite even if the range is complete.

        Returns:
            dict: ``{"status": "success"|"skipped", "saved_count", "errors",
            "fetched", "time_scope", "start", "end"}``.

        Raises:
            BalanceError: INVALID_RANGE / INVALID_TIME_SCOPE on bad input,
                FETCH_EXHAUSTED when the source keeps failing, and
                MALFORMED_PAYLOAD when the body has no data section.
        """
        start, end = validate_range(start_date, end_date)
        time_scope = validate_time_scope(time_scope)
        result: dict[str, Any] = {
            "status": "success",
            "saved_count": 0,
            "errors": 0,
            "fetched": 0,
            "time_scope": time_scope,
            "start": iso(start),
            "end": iso(end),
        }

        logger.info("Fetching REE data from %s to %s with time scope %s", iso(start), iso(end), time_scope)

        if not force_update and self._is_complete(start, end, time_scope):
            logger.info("Data already exists for this range and will not be updated")
            result["status"] = "skipped"
            return result

        payload = self.fetch_with_retry(start, end, time_scope)
        records, transform_errors = to_records(payload, time_scope=time_scope)
        for e in transform_errors:
            logger.warning("Skipping data point: %s", e.message)

        saved, save_errors = self.save(records, force_update=force_update)
        result.update(
            saved_count=saved,
            errors=len(transform_errors) + save_errors,
            fetched=len(records) + len(transform_errors),
        )
        logger.info("Saved %d records (%d errors)", saved, result["errors"])
        return result

    def backfill(
        self,
        start_date: Any,
        end_date: Any,
        time_scope: str = "day",
        force_update: bool = False,
        chunk_days: int | None = None,
    ) -> dict[str, Any]:
        """Ingest a long range as sequential day chunks.

        A failing chunk is logged and counted; the remaining chunks still run.

        Returns:
            dict: ``{"status", "chunks", "saved_count", "skipped_chunks",
            "failed_chunks", "errors", "fetched", "time_scope", "start", "end"}``.
        """
        start, end = validate_range(start_date, end_date)
        time_scope = validate_time_scope(time_scope)
        chunks = chunk_ranges(start, end, chunk_days or self.chunk_days)

        totals: dict[str, Any] = {
            "status": "success",
            "chunks": len(chunks),
            "saved_count": 0,
            "skipped_chunks": 0,
            "failed_chunks": 0,
            "errors": 0,
            "fetched": 0,
            "time_scope": time_scope,
            "start": iso(start),
            "end": iso(end),
        }
        logger.info("Backfilling %s -> %s (%s) in %d chunks", iso(start), iso(end), time_scope, len(chunks))

        for i, (chunk_start, chunk_end) in enumerate(chunks, start=1):
            try:
                res = self.ingest(chunk_start, chunk_end, time_scope, force_update)
            except BalanceError as e:
                logger.error(
                    "Chunk %d/%d (%s -> %s) failed: %s",
                    i,
                    len(chunks),
                    iso(chunk_start),
                    iso(chunk_end),
                    e.message,
                )
                totals["failed_chunks"] += 1
                totals["errors"] += 1
            except Exception:
                logger.exception(
                    "Chunk %d/%d (%s -> %s) failed unexpectedly",
                    i,
                    len(chunks),
                    iso(chunk_start),
                    iso(chunk_end),
                )
                totals["failed_chunks"] += 1
                totals["errors"] += 1
            else:
                if res["status"] == "skipped":
                    totals["skipped_chunks"] += 1
                totals["saved_count"] += res["saved_count"]
                totals["errors"] += res["errors"]
                totals["fetched"] += res["fetched"]

            if i < len(chunks) and self.chunk_delay > 0:
                self.sleep(self.chunk_delay)

        logger.info(
            "Backfill finished: %d saved, %d skipped chunks, %d failed chunks",
            totals["saved_count"],
            totals["skipped_chunks"],
            totals["failed_chunks"],
        )
        return totals


def main(argv=None):
    """CLI entry point for running the ingestion.

    Args:
        argv: Optional list of CLI arguments (useful for testing).

    Returns:
        int: Exit code (0 on success, 1 when the run raised a `BalanceError`).
    """
    parser = argparse.ArgumentParser()
    parser.add_argument("--days", type=int, default=7, help="How many days back to fetch")
    parser.add_argument("--start-date")
    parser.add_argument("--end-date")
    parser.add_argument("--time-scope", default="day", help="hour, day, month or year")
    parser.add_argument("--force", action="store_true", help="Overwrite existing records")
    parser.add_argument("--backfill", action="store_true", help="Split the range into chunks")
    parser.add_argument("--chunk-days", type=int, help="Chunk size in days for --backfill")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    # Align "now" to the current UTC hour so repeated runs share boundaries.
    now = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)
    # Explicit dates are parsed (and rejected) by the pipeline itself.
    start = args.start_date or now - timedelta(days=args.days)
    end = args.end_date or now

    pipeline = IngestionPipeline.from_settings(Settings.from_env())
    try:
        if args.backfill:
            stats = pipeline.backfill(start, end, args.time_scope, args.force, args.chunk_days)
        else:
            stats = pipeline.ingest(start, end, args.time_scope, args.force)
    except BalanceError as e:
        print(f"Failed. Error: {e.to_dict()}")
        return 1
    print(f"Done. Stats: {stats}")
    return 0


if __name__ == "__main__":
    # Convert the `main()` return value into a process exit status.
    raise SystemExit(main())
