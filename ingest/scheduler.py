"""
ingest/scheduler.py

Recurring ingestion per granularity.

Responsibilities
----------------
- On start, optionally backfill a configured lookback window per scope.
- Arm one recurring `threading.Timer` chain per scope at its configured
  interval; each tick ingests a short trailing window.
- Guarantee that runs for the same scope never overlap (single flight):
  a tick that finds its scope busy is logged and dropped, not queued.
- Retry a failed tick after `retry_delay` seconds, up to
  `scheduler_max_retries` consecutive times.
- Report status and run manual fetches under the same guard.

Notes
-----
- `stop()` cancels pending timers only; an in-flight run completes.
- The timer factory and clock are injected so tests can drive ticks
  synchronously.
"""

from __future__ import annotations

import argparse
import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from dateutil.relativedelta import relativedelta

from .config import Settings
from .errors import BalanceError
from .run import IngestionPipeline, iso
from .validate import validate_time_scope

logger = logging.getLogger(__name__)

# Trailing window each recurring tick re-ingests, per scope.
FETCH_WINDOWS = {
    "hour": relativedelta(hours=24),
    "day": relativedelta(days=7),
    "month": relativedelta(months=3),
    "year": relativedelta(years=1),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _unexpected(e: Exception) -> dict[str, Any]:
    """Shape a non-`BalanceError` failure like `BalanceError.to_dict`."""
    return {"kind": "unexpected", "message": f"{type(e).__name__}: {e}"}


class _ScopeState:
    """Mutable bookkeeping for one scheduled granularity."""

    def __init__(self, time_scope: str, interval: float):
        self.time_scope = time_scope
        self.interval = interval
        self.lock = threading.Lock()
        self.retry_count = 0
        self.last_fetch_time: datetime | None = None
        self.last_result: dict | None = None
        self.last_error: dict | None = None
        self.timer = None
        self.retry_timer = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "interval_seconds": self.interval,
            "fetch_in_progress": self.lock.locked(),
            "last_fetch_time": iso(self.last_fetch_time) if self.last_fetch_time else None,
            "retry_count": self.retry_count,
            "last_result": self.last_result,
            "last_error": self.last_error,
        }


class Scheduler:
    """Drives `IngestionPipeline` on a per-scope cadence.

    Args:
        pipeline: The ingestion pipeline to call.
        settings: Scopes, intervals, lookbacks and retry policy.
        timer_factory: Callable with the `threading.Timer` signature
            ``(interval, function)`` returning an object with ``start``,
            ``cancel`` and a writable ``daemon`` attribute.
        clock: Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        pipeline: IngestionPipeline,
        settings: Settings,
        timer_factory: Callable[..., Any] = threading.Timer,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.pipeline = pipeline
        self.settings = settings
        self.timer_factory = timer_factory
        self.clock = clock
        self.running = False
        self._guard = threading.Lock()
        self._scopes = {
            scope: _ScopeState(scope, settings.interval_seconds(scope))
            for scope in settings.time_scopes
        }

    # ---------------------------
    # Lifecycle
    # ---------------------------

    def start(self) -> None:
        """Run the startup backfill (if enabled) and arm recurring timers."""
        with self._guard:
            if self.running:
                logger.warning("Scheduler already running")
                return
            self.running = True

        logger.info("Starting scheduler for scopes: %s", ", ".join(self._scopes))

        if self.settings.initial_fetch:
            for scope in self._scopes:
                self._initial_backfill(scope)

        for state in self._scopes.values():
            self._arm(state)

    def stop(self) -> None:
        """Cancel every pending timer. In-flight runs finish on their own."""
        with self._guard:
            self.running = False
            for state in self._scopes.values():
                for t in (state.timer, state.retry_timer):
                    if t is not None:
                        t.cancel()
                state.timer = state.retry_timer = None
        logger.info("Scheduler stopped")

    def _initial_backfill(self, scope: str) -> None:
        state = self._scopes[scope]
        end = self.clock()
        start = end - timedelta(days=self.settings.lookback_days(scope))
        logger.info("Initial backfill for %s: %s -> %s", scope, iso(start), iso(end))

        with state.lock:
            try:
                res = self.pipeline.backfill(
                    start, end, scope, force_update=self.settings.force_update
                )
            except BalanceError as e:
                logger.error("Initial backfill for %s failed: %s", scope, e.message)
                state.last_error = e.to_dict()
                return
            except Exception as e:
                logger.exception("Initial backfill for %s failed unexpectedly", scope)
                state.last_error = _unexpected(e)
                return
            state.last_fetch_time = self.clock()
            state.last_result = res

    def _arm(self, state: _ScopeState) -> None:
        with self._guard:
            if not self.running:
                return
            t = self.timer_factory(state.interval, self._tick, args=(state.time_scope,))
            t.daemon = True
            state.timer = t
        t.start()

    def _arm_retry(self, state: _ScopeState) -> None:
        with self._guard:
            if not self.running:
                return
            t = self.timer_factory(
                self.settings.retry_delay, self._retry, args=(state.time_scope,)
            )
            t.daemon = True
            state.retry_timer = t
        t.start()

    # ---------------------------
    # Ticks
    # ---------------------------

    def fetch_window(self, time_scope: str) -> tuple[datetime, datetime]:
        end = self.clock()
        return end - FETCH_WINDOWS[time_scope], end

    def _tick(self, time_scope: str) -> None:
        state = self._scopes[time_scope]
        # Re-arm first so a slow run does not stretch the cadence.
        self._arm(state)
        start, end = self.fetch_window(time_scope)
        self._run_guarded(state, start, end, self.settings.force_update, from_schedule=True)

    def _retry(self, time_scope: str) -> None:
        state = self._scopes[time_scope]
        with self._guard:
            state.retry_timer = None
            if not self.running:
                return
        logger.info(
            "Retrying %s fetch (attempt %d/%d)",
            time_scope,
            state.retry_count,
            self.settings.scheduler_max_retries,
        )
        start, end = self.fetch_window(time_scope)
        self._run_guarded(state, start, end, self.settings.force_update, from_schedule=True)

    def _run_guarded(
        self,
        state: _ScopeState,
        start: Any,
        end: Any,
        force_update: bool,
        from_schedule: bool,
    ) -> dict[str, Any]:
        if not state.lock.acquire(blocking=False):
            logger.warning("Fetch for %s already in progress, skipping", state.time_scope)
            return {"success": False, "message": "Fetch already in progress"}

        try:
            res = self.pipeline.ingest(start, end, state.time_scope, force_update)
        except BalanceError as e:
            logger.error("Scheduled %s fetch failed: %s", state.time_scope, e.message)
            state.last_error = e.to_dict()
            if from_schedule:
                self._on_failure(state)
            return {"success": False, "error": e.to_dict()}
        except Exception as e:
            logger.exception("Scheduled %s fetch failed unexpectedly", state.time_scope)
            state.last_error = _unexpected(e)
            if from_schedule:
                self._on_failure(state)
            return {"success": False, "error": state.last_error}
        finally:
            state.lock.release()

        state.last_fetch_time = self.clock()
        state.last_result = res
        state.last_error = None
        state.retry_count = 0
        logger.info("%s fetch finished: %s", state.time_scope, res)
        return {"success": True, "result": res}

    def _on_failure(self, state: _ScopeState) -> None:
        if not self.settings.retry_on_failure:
            return
        if state.retry_timer is not None:
            logger.info("A %s retry is already pending", state.time_scope)
            return
        if state.retry_count >= self.settings.scheduler_max_retries:
            logger.error(
                "Giving up on %s after %d retries; waiting for the next tick",
                state.time_scope,
                state.retry_count,
            )
            return
        state.retry_count += 1
        logger.info(
            "Scheduling %s retry %d in %.0fs",
            state.time_scope,
            state.retry_count,
            self.settings.retry_delay,
        )
        self._arm_retry(state)

    # ---------------------------
    # Introspection / manual runs
    # ---------------------------

    def status(self) -> dict[str, Any]:
        scopes = {name: s.as_dict() for name, s in self._scopes.items()}
        times = [s.last_fetch_time for s in self._scopes.values() if s.last_fetch_time]
        return {
            "running": self.running,
            "fetch_in_progress": any(s["fetch_in_progress"] for s in scopes.values()),
            "last_fetch_time": iso(max(times)) if times else None,
            "retry_count": sum(s.retry_count for s in self._scopes.values()),
            "scopes": scopes,
        }

    def fetch_now(
        self,
        start_date: Any = None,
        end_date: Any = None,
        time_scope: str = "day",
        force_update: bool = False,
    ) -> dict[str, Any]:
        """Run one ingestion immediately, honouring the single-flight guard.

        Missing bounds default to the scope's trailing fetch window. Manual
        failures are reported in the result and never schedule a retry.
        """
        try:
            time_scope = validate_time_scope(time_scope)
        except BalanceError as e:
            return {"success": False, "error": e.to_dict()}

        state = self._scopes.get(time_scope)
        if state is None:
            # Manual fetches may target a scope that is not scheduled.
            state = _ScopeState(time_scope, self.settings.interval_seconds(time_scope))
            self._scopes[time_scope] = state

        default_start, default_end = self.fetch_window(time_scope)
        return self._run_guarded(
            state,
            start_date or default_start,
            end_date or default_end,
            force_update,
            from_schedule=False,
        )


def main(argv=None):
    """Run the scheduler in the foreground until interrupted.

    Args:
        argv: Optional list of CLI arguments (useful for testing).

    Returns:
        int: Exit code (0 on a clean shutdown).
    """
    parser = argparse.ArgumentParser()
    parser.add_argument("--no-initial-fetch", action="store_true", help="Skip the startup backfill")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    settings = Settings.from_env()
    if args.no_initial_fetch:
        settings = settings.model_copy(update={"initial_fetch": False})

    scheduler = Scheduler(IngestionPipeline.from_settings(settings), settings)
    scheduler.start()
    try:
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop()
    print(f"Done. Status: {scheduler.status()}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
