#!/usr/bin/env python3
"""
Periodic Feed Refresh Scheduler

Runs FeedFetcher.fetch_all on a fixed interval read from the settings table.
The interval is re-read at the start of every cycle, so changing the
``update_interval`` setting takes effect on the next wait, never the current
one. After each refresh (and once at startup) an article cleanup task is
launched when ``auto_cleanup_enabled`` is set.

The scheduler owns a single asyncio task. ``stop()`` sets the stop event and
cancels the task; the loop exits without a final refresh.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional, Set

from config import config, get_logger
from telemetry import trace_span

# Module-specific logger
logger = get_logger("scheduler")

TRUE_VALUES = {'1', 'true', 'yes', 'on'}


def parse_interval_minutes(value: Any) -> int:
    """Return a positive interval in minutes, falling back to the default."""
    try:
        minutes = int(str(value).strip())
    except (TypeError, ValueError):
        return config.DEFAULT_UPDATE_INTERVAL
    if minutes <= 0:
        return config.DEFAULT_UPDATE_INTERVAL
    return minutes


class FeedScheduler:
    """Interval scheduler for feed refreshes."""

    def __init__(self, fetcher, db=None, minute_seconds: float = 60.0):
        """Initialize scheduler.

        Args:
            fetcher: FeedFetcher whose fetch_all runs every cycle
            db: DatabaseQueue holding the settings (default: the fetcher's)
            minute_seconds: Length of one interval minute, shrunk in tests
        """
        self.fetcher = fetcher
        self.db = db if db is not None else fetcher.db
        self.minute_seconds = minute_seconds
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._cleanup_tasks: Set[asyncio.Task] = set()
        self.cycles = 0
        self.last_run: Optional[datetime] = None
        self.current_interval: Optional[int] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the scheduler task; calling it while running does nothing."""
        if self.running:
            logger.debug("Scheduler already running")
            return
        self._task = asyncio.create_task(self._run(), name="feed-scheduler")
        logger.info("Scheduler started")

    def request_stop(self) -> None:
        """Ask the loop to exit after its current step (signal handler safe).

        A request made before start() makes the next run exit immediately.
        """
        self._stop_event.set()

    async def stop(self) -> None:
        """Signal the loop to exit and wait for it and any cleanup to finish."""
        self._stop_event.set()
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for cleanup in list(self._cleanup_tasks):
            cleanup.cancel()
        if self._cleanup_tasks:
            await asyncio.gather(*self._cleanup_tasks, return_exceptions=True)
        # Allow a later start()
        self._stop_event.clear()
        logger.info("Scheduler stopped")

    async def wait_closed(self) -> None:
        """Block until the scheduler task ends (used by the CLI run mode)."""
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    def get_status(self):
        return {
            'running': self.running,
            'cycles': self.cycles,
            'interval_minutes': self.current_interval,
            'last_run': self.last_run.isoformat() if self.last_run else None,
            'fetch_progress': self.fetcher.get_progress(),
        }

    @trace_span("scheduler.main_loop", tracer_name="scheduler")
    async def _run(self) -> None:
        self._launch_cleanup()
        while not self._stop_event.is_set():
            try:
                minutes = await self._read_interval()
                self.current_interval = minutes
                logger.info(f"😴 Sleeping {minutes} minutes until next refresh")
                if await self._wait(minutes * self.minute_seconds):
                    break
                await self._run_cycle()
            except asyncio.CancelledError:
                logger.info("📶 Scheduler cancelled - shutting down")
                raise
            except Exception as e:
                # One bad cycle must not end the loop
                logger.error(f"💥 Error in scheduled refresh: {e}")

    async def _read_interval(self) -> int:
        value = await self.db.execute(
            'get_setting', key='update_interval', default=str(config.DEFAULT_UPDATE_INTERVAL)
        )
        return parse_interval_minutes(value)

    @trace_span(
        "scheduler.sleep",
        tracer_name="scheduler",
        attr_from_args=lambda self, seconds: {"sleep.seconds": float(seconds)},
    )
    async def _wait(self, seconds: float) -> bool:
        """Wait for the interval or the stop event. Returns True when stopped."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    @trace_span("scheduler.run_cycle", tracer_name="scheduler")
    async def _run_cycle(self) -> None:
        start_time = datetime.now(timezone.utc)
        logger.info("⏰ Starting scheduled feed refresh")
        results = await self.fetcher.fetch_all()
        duration = (datetime.now(timezone.utc) - start_time).total_seconds()
        failed = sum(1 for error in results.values() if error)
        self.cycles += 1
        self.last_run = start_time
        logger.info(f"✅ Scheduled refresh of {len(results)} feeds finished in {duration:.1f}s ({failed} failed)")
        self._launch_cleanup()

    def _launch_cleanup(self) -> None:
        task = asyncio.create_task(self._maybe_cleanup())
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    async def _maybe_cleanup(self) -> Optional[int]:
        """Delete old articles when auto cleanup is enabled at this moment."""
        try:
            settings = await self.db.execute(
                'get_settings', keys=['auto_cleanup_enabled', 'max_article_age_days']
            )
            if str(settings.get('auto_cleanup_enabled', '')).strip().lower() not in TRUE_VALUES:
                return None
            try:
                max_age = int(settings.get('max_article_age_days') or 30)
            except ValueError:
                max_age = 30
            if max_age <= 0:
                logger.warning(f"Ignoring non-positive max_article_age_days ({max_age})")
                return None
            removed = await self.db.execute('cleanup_old_articles', max_age_days=max_age)
            logger.info(f"Auto cleanup removed {removed} articles older than {max_age} days")
            return removed
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Auto cleanup failed: {e}")
            return None


def create_scheduler(fetcher, db=None, minute_seconds: float = 60.0) -> FeedScheduler:
    """Factory function to create a scheduler instance."""
    return FeedScheduler(fetcher, db=db, minute_seconds=minute_seconds)
