#!/usr/bin/env python3
"""
New Works Scheduler

Drives the batch runner on a fixed interval and exposes the control surface
used by the CLI:

- start/stop/restart of the periodic check (Stopped/Running)
- a one-shot bootstrap run shortly after the first start when no check was
  ever recorded
- manual checks that work in any state, report progress after every
  subscription and can be cancelled
- a run-level lock so a manual check and a scheduled tick never overlap
"""

import asyncio
from asyncio import create_task, shield, Lock, CancelledError
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from batch import BatchRunner, ProgressCallback
from collector import NewWorksCollector
from config import config, get_logger, LIBRARY_STATUSES
from errors import ConfigError, NewWorksError, PersistenceError
from models import CheckResult, GlobalConfig, Subscription
from notifier import NotificationDispatcher, LogNotifier
from telemetry import trace_span
from utils import CancellationToken, utc_now, format_duration

# Module-specific logger
logger = get_logger("scheduler")

SECONDS_PER_HOUR = 3600


class NewWorksScheduler:
    """Periodic and manual new works checks over all subscriptions.

    Args:
        db: started DatabaseQueue
        fetcher: page fetcher handed to the collector
        notifier: NotificationDispatcher informed after runs with new works
        clock: callable returning an aware datetime
        bootstrap_delay: seconds before the first-ever run after start()
        runner: optional BatchRunner (built from fetcher and db when omitted)
    """

    def __init__(self, db, fetcher=None, notifier: Optional[NotificationDispatcher] = None,
                 clock: Callable = utc_now, bootstrap_delay: Optional[float] = None,
                 runner: Optional[BatchRunner] = None) -> None:
        self.db = db
        self.fetcher = fetcher
        self.notifier = notifier or LogNotifier()
        self.clock = clock
        self.bootstrap_delay = config.BOOTSTRAP_DELAY_SECONDS if bootstrap_delay is None else bootstrap_delay
        if runner is None:
            runner = BatchRunner(NewWorksCollector(fetcher, db, clock=clock), db, clock=clock)
        self.runner = runner

        self.interval_seconds: Optional[float] = None
        self._initialized = False
        self._running = False
        self._timer_task: Optional[asyncio.Task] = None
        self._bootstrap_task: Optional[asyncio.Task] = None
        self._run_lock = Lock()
        self._manual_token: Optional[CancellationToken] = None

    @property
    def running(self) -> bool:
        return self._running

    async def initialize(self) -> None:
        """Load the configuration once and start if automatic checks are on.

        Raises:
            ConfigError: the configuration could not be read.
        """
        if self._initialized:
            return
        cfg = await self._load_config()
        self._initialized = True
        logger.info("🕐 New works scheduler initialized")
        if cfg.auto_check_enabled:
            await self.start()

    async def start(self) -> bool:
        """Arm the periodic check. Returns True when the scheduler is running.

        Raises:
            ConfigError: the configuration could not be read; nothing is armed.
        """
        if self._running:
            return True

        cfg = await self._load_config()
        if not cfg.auto_check_enabled:
            logger.info("Automatic checks are disabled; scheduler stays stopped")
            return False

        self.interval_seconds = cfg.check_interval_hours * SECONDS_PER_HOUR
        self._timer_task = create_task(self._timer_loop(self.interval_seconds))
        self._running = True
        logger.info(f"🚀 Scheduler started, checking every {format_duration(self.interval_seconds)}")

        if cfg.last_global_check is None:
            logger.info(f"No previous check recorded, bootstrap run in {self.bootstrap_delay}s")
            self._bootstrap_task = create_task(self._bootstrap(self.bootstrap_delay))
        return True

    def stop(self) -> None:
        """Cancel the timer and any pending bootstrap run. A run already in progress finishes."""
        for task in (self._timer_task, self._bootstrap_task):
            if task and not task.done():
                task.cancel()
        self._timer_task = None
        self._bootstrap_task = None
        if self._running:
            logger.info("📴 Scheduler stopped")
        self._running = False

    async def restart(self) -> bool:
        self.stop()
        return await self.start()

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "initialized": self._initialized,
            "manual_check_in_progress": self._manual_token is not None,
        }

    async def close(self) -> None:
        """Stop and wait for a run in progress to finish."""
        self.stop()
        async with self._run_lock:
            pass
        await self.notifier.close()

    async def _timer_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await shield(self.run_scheduled_check())
            except CancelledError:
                raise
            except Exception as e:
                logger.error(f"💥 Error in scheduled check: {e}")

    async def _bootstrap(self, delay: float) -> None:
        await asyncio.sleep(delay)
        logger.info("🎬 Running bootstrap check")
        await shield(self.run_scheduled_check())

    async def run_scheduled_check(self) -> Optional[CheckResult]:
        """Run one scheduled pass. Skipped (None) when another run holds the lock."""
        if self._run_lock.locked():
            logger.info("⏭️ A check is already running, skipping this scheduled tick")
            return None
        async with self._run_lock:
            return await self._run(manual=False)

    async def manual_check(self, progress_callback: Optional[ProgressCallback] = None) -> CheckResult:
        """Check all enabled subscriptions now, excluding every library status.

        Waits for a scheduled run in progress to finish first.
        """
        if self._manual_token is not None:
            return CheckResult(errors=["A manual check is already in progress"])

        token = CancellationToken()
        self._manual_token = token
        try:
            async with self._run_lock:
                return await self._run(manual=True, token=token, progress=progress_callback)
        finally:
            self._manual_token = None

    def manual_cancel(self) -> bool:
        """Cancel the manual check in progress. Returns False when there is none."""
        if self._manual_token is None:
            return False
        self._manual_token.cancel()
        return True

    async def _load_config(self) -> GlobalConfig:
        try:
            return await self.db.execute('get_global_config')
        except PersistenceError as e:
            raise ConfigError(f"Cannot read global config: {e}") from e

    async def _load_subscriptions(self) -> List[Subscription]:
        try:
            return await self.db.execute('list_subscriptions')
        except PersistenceError as e:
            raise ConfigError(f"Cannot read subscriptions: {e}") from e

    @trace_span(
        "scheduler.run",
        tracer_name="scheduler",
        attr_from_args=lambda self, manual=False, token=None, progress=None: {"run.manual": bool(manual)},
    )
    async def _run(self, manual: bool = False, token: Optional[CancellationToken] = None,
                   progress: Optional[ProgressCallback] = None) -> CheckResult:
        kind = "manual" if manual else "scheduled"
        result = CheckResult()
        started = self.clock()
        logger.info(f"⏰ Starting {kind} new works check")

        try:
            cfg = await self._load_config()
            subscriptions = await self._load_subscriptions()
        except ConfigError as e:
            logger.error(f"❌ {kind.capitalize()} check aborted: {e}")
            result.errors.append(str(e))
            return result

        if manual:
            # Manual checks only surface works the user has not touched yet
            cfg = replace(cfg, filters=cfg.filters.excluding(LIBRARY_STATUSES))
            if not subscriptions:
                result.errors.append("No subscriptions to check")
                return result
            if not any(s.enabled for s in subscriptions):
                result.errors.append(f"All {len(subscriptions)} subscriptions are disabled")
                return result

        try:
            batch = await self.runner.run_all(subscriptions, cfg, token, progress)
        except PersistenceError as e:
            logger.error(f"❌ {kind.capitalize()} check failed: {e}")
            result.errors.append(f"Check failed, will retry on the next run: {e}")
            return result

        result.identified_count = batch.identified_total
        result.effective_count = batch.effective_total
        result.discovered_items = batch.new_items
        result.errors.extend(batch.errors)
        result.cancelled = batch.cancelled

        now = int(self.clock().timestamp())
        try:
            if batch.new_items:
                await self.db.execute('bulk_insert_items', items=batch.new_items)
            await self.db.execute('update_global_config', patch={'last_global_check': now})
            if cfg.auto_cleanup:
                await self.db.execute('cleanup_old_items', cleanup_days=cfg.cleanup_days, now=now)
        except PersistenceError as e:
            logger.error(f"❌ Saving {kind} check results failed: {e}")
            result.errors.append(f"Saving results failed, will retry on the next run: {e}")
            return result

        elapsed = (self.clock() - started).total_seconds()
        logger.info(
            f"✅ {kind.capitalize()} check {'cancelled' if result.cancelled else 'completed'} in "
            f"{format_duration(elapsed)}: {result.discovered_count} new, {len(result.errors)} errors"
        )

        if not result.cancelled and result.discovered_count > 0:
            try:
                await self.notifier.notify(result.discovered_count)
            except NewWorksError as e:
                logger.warning(f"Notification failed: {e}")
                result.errors.append(str(e))
        return result
