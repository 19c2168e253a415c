#!/usr/bin/env python3
"""
Batch runner: checks many subscriptions with bounded concurrency.

Enabled subscriptions are processed in chunks of `concurrency`. Each chunk is
checked concurrently, then the runner waits `request_interval_seconds` before
starting the next one. Cancellation is honoured between chunks and during the
wait; checks already started always finish.
"""

from asyncio import gather
from dataclasses import replace
from inspect import isawaitable
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union

from config import get_logger
from errors import PersistenceError
from models import BatchResult, CheckResult, GlobalConfig, ProgressUpdate, Subscription
from telemetry import trace_span
from utils import CancellationToken, utc_now

# Module-specific logger
logger = get_logger("batch")

ProgressCallback = Callable[[ProgressUpdate], Union[None, Awaitable[None]]]


class BatchRunner:
    """Runs a collector over a list of subscriptions.

    Args:
        collector: NewWorksCollector (or anything with the same `collect`)
        db: DatabaseQueue used for the status snapshot and last check times
        clock: callable returning an aware datetime
        sleep: optional coroutine function replacing the interruptible
            inter-chunk wait (used by tests)
    """

    def __init__(self, collector, db, clock: Callable = utc_now,
                 sleep: Optional[Callable[[float], Awaitable[None]]] = None) -> None:
        self.collector = collector
        self.db = db
        self.clock = clock
        self.sleep = sleep

    @trace_span(
        "batch.run_all",
        tracer_name="batch",
        attr_from_args=lambda self, subscriptions, cfg, token=None, progress=None: {
            "subscriptions.count": len(subscriptions),
            "batch.concurrency": cfg.concurrency,
        },
    )
    async def run_all(self, subscriptions: List[Subscription], cfg: GlobalConfig,
                      token: Optional[CancellationToken] = None,
                      progress: Optional[ProgressCallback] = None) -> BatchResult:
        """Check every enabled subscription and aggregate the results.

        A failing subscription adds an entry to `errors` and never stops its
        siblings. PersistenceError is raised once the current chunk is done.
        """
        token = token or CancellationToken()
        result = BatchResult()
        active = [s for s in subscriptions if s.enabled]
        if not active:
            logger.info("No enabled subscriptions to check")
            return result

        # One library snapshot for the whole run
        status_of = await self.db.execute('status_snapshot')
        concurrency = max(1, cfg.concurrency)
        chunks = [active[i:i + concurrency] for i in range(0, len(active), concurrency)]
        seen: Set[str] = set()
        logger.info(f"Checking {len(active)} subscriptions in {len(chunks)} batches of up to {concurrency}")

        for index, chunk in enumerate(chunks):
            if token.cancelled:
                result.cancelled = True
                break

            outcomes = await gather(
                *(self._check_one(sub, cfg, status_of, result, seen, len(active), progress) for sub in chunk),
                return_exceptions=True,
            )
            for outcome in outcomes:
                if isinstance(outcome, PersistenceError):
                    raise outcome

            if index == len(chunks) - 1:
                break
            if token.cancelled or await self._pause(token, cfg.request_interval_seconds):
                result.cancelled = True
                break

        if result.cancelled:
            logger.info(f"Batch cancelled after {len(result.processed)} of {len(active)} subscriptions")

        if result.processed:
            await self.db.execute(
                'update_last_check_times',
                ids=[s.id for s in result.processed],
                timestamp=int(self.clock().timestamp()),
            )
        return result

    async def _check_one(self, subscription: Subscription, cfg: GlobalConfig, status_of: Dict[str, str],
                         result: BatchResult, seen: Set[str], total: int,
                         progress: Optional[ProgressCallback]) -> Optional[CheckResult]:
        check: Optional[CheckResult] = None
        try:
            check = await self.collector.collect(subscription, cfg, status_of)
        except PersistenceError:
            raise
        except Exception as e:
            logger.error(f"Checking {subscription.name} failed: {e}")
            result.errors.append(f"Checking {subscription.name} failed: {e}")
        finally:
            result.processed.append(subscription)

        if check is not None:
            result.identified_total += check.identified_count
            result.effective_total += check.effective_count
            result.errors.extend(check.errors)
            # Stamped on append so discovered_at never goes down across the run
            stamp = int(self.clock().timestamp())
            if result.new_items:
                stamp = max(stamp, result.new_items[-1].discovered_at)
            for item in check.discovered_items:
                # The same work can show up under several actors; the first one keeps it
                if item.id in seen:
                    continue
                seen.add(item.id)
                result.new_items.append(replace(item, discovered_at=stamp))
            result.discovered_total = len(result.new_items)

        if progress is not None:
            await self._report(progress, ProgressUpdate(
                processed=len(result.processed),
                total=total,
                discovered=result.discovered_total,
                identified_total=result.identified_total,
                effective_total=result.effective_total,
                subscription_id=subscription.id,
                subscription_name=subscription.name,
            ), result)
        return check

    async def _pause(self, token: CancellationToken, seconds: float) -> bool:
        """Wait between chunks. Returns True if the run was cancelled meanwhile."""
        logger.debug(f"Waiting {seconds}s before the next batch")
        if self.sleep is not None:
            await self.sleep(seconds)
            return token.cancelled
        return await token.sleep(seconds)

    async def _report(self, progress: ProgressCallback, update: ProgressUpdate, result: BatchResult) -> None:
        try:
            outcome = progress(update)
            if isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning(f"Progress callback failed for {update.subscription_name}: {e}")
            result.errors.append(f"Progress callback failed for {update.subscription_name}: {e}")
