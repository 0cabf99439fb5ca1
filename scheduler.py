#!/usr/bin/env python3
"""
Periodic auto-refresh scheduler.

Re-runs the whole refresh pipeline every REFRESH_INTERVAL_MINUTES. A tick
that arrives while a refresh is still running is a no-op (the aggregator's
in-progress guard reports it as skipped). Errors in one run are logged and
the loop keeps going.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from config import config, get_logger
from telemetry import trace_span

logger = get_logger("scheduler")

ERROR_RETRY_SECONDS = 60


class RefreshScheduler:
    """Drive NewsAggregator.refresh_all on a fixed interval."""

    def __init__(
        self,
        aggregator,
        interval_minutes: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize scheduler.

        Args:
            aggregator: Object exposing ``async refresh_all()``
            interval_minutes: Minutes between runs (default: REFRESH_INTERVAL_MINUTES)
            sleep: Awaitable sleep function, replaceable in tests
        """
        self.aggregator = aggregator
        self.interval_minutes = interval_minutes or config.REFRESH_INTERVAL_MINUTES
        self._sleep = sleep
        self.last_run: Optional[datetime] = None
        self.next_run: Optional[datetime] = None
        self.runs = 0
        self.failures = 0

    @property
    def interval_seconds(self) -> float:
        return self.interval_minutes * 60.0

    def get_status(self) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        seconds_until = (self.next_run - now).total_seconds() if self.next_run else None
        return {
            "current_time": now.isoformat(),
            "interval_minutes": self.interval_minutes,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "minutes_until_next_run": round(seconds_until / 60, 1) if seconds_until is not None else None,
            "runs": self.runs,
            "failures": self.failures,
        }

    @trace_span("scheduler.refresh_run", tracer_name="scheduler")
    async def run_once(self) -> bool:
        """Run a single refresh; returns False if it raised or every feed failed."""
        start = datetime.now(timezone.utc)
        self.last_run = start
        self.runs += 1
        try:
            report = await self.aggregator.refresh_all()
        except Exception as e:
            self.failures += 1
            logger.error(f"Error in scheduled refresh: {e}")
            return False

        duration = (datetime.now(timezone.utc) - start).total_seconds()
        if getattr(report, "skipped", False):
            logger.info("Scheduled refresh skipped: previous run still in progress")
            return True
        if getattr(report, "all_failed", False):
            self.failures += 1
            logger.error(f"Scheduled refresh failed for every feed after {duration:.1f}s")
            return False
        logger.info(f"Scheduled refresh completed in {duration:.1f}s")
        return True

    @trace_span(
        "scheduler.sleep",
        tracer_name="scheduler",
        attr_from_args=lambda self, seconds: {"sleep.seconds": float(seconds)},
    )
    async def _sleep_for(self, seconds: float) -> None:
        await self._sleep(seconds)

    async def run(self, run_immediately: bool = True, max_runs: Optional[int] = None) -> None:
        """Loop until cancelled (or until max_runs refreshes have run)."""
        logger.info(f"Starting auto-refresh every {self.interval_minutes} minutes")
        completed = 0
        if run_immediately:
            await self.run_once()
            completed += 1

        while max_runs is None or completed < max_runs:
            try:
                self.next_run = datetime.now(timezone.utc) + timedelta(seconds=self.interval_seconds)
                logger.info(f"Sleeping {self.interval_minutes} minutes until next refresh")
                await self._sleep_for(self.interval_seconds)
                ok = await self.run_once()
                completed += 1
                if not ok and max_runs is None:
                    await self._sleep_for(ERROR_RETRY_SECONDS)
            except asyncio.CancelledError:
                logger.info("Scheduler cancelled - shutting down")
                break
