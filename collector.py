#!/usr/bin/env python3
"""
New works collector.

Checks one subscription: crawls the actor's listing page by page (newest
first) until a page is empty or a work older than the configured date range
shows up, filters the works against the user's library, caps the candidates
and keeps only ids not discovered before.
"""

import asyncio
from asyncio import wait_for, TimeoutError
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from config import config, get_logger
from errors import NetworkError, ParseError
from fetcher import build_actor_url, page_url
from filters import apply_filters, date_threshold, is_older_than, summarize_counts
from models import CheckResult, DiscoveredItem, GlobalConfig, RawItem, Subscription
from telemetry import trace_span
from utils import utc_now

# Module-specific logger
logger = get_logger("collector")

DEFAULT_PAGE_TIMEOUT = 30


class NewWorksCollector:
    """Runs the paginated early-stop crawl and dedup for one subscription.

    Args:
        fetcher: object with `async fetch(url) -> List[RawItem]`
        db: DatabaseQueue (or anything with the same `execute` operations)
        base_url: site root used to build listing URLs
        clock: callable returning an aware datetime
        page_delay: seconds to wait between two pages of the same actor
        page_timeout: overall timeout for fetching and parsing one page
        sleep: coroutine function used for the page delay
    """

    def __init__(self, fetcher, db, base_url: Optional[str] = None, clock: Callable = utc_now,
                 page_delay: Optional[float] = None, page_timeout: Optional[float] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
        self.fetcher = fetcher
        self.db = db
        self.base_url = base_url or config.SITE_BASE_URL
        self.clock = clock
        self.page_delay = config.PAGE_DELAY_SECONDS if page_delay is None else page_delay
        self.page_timeout = page_timeout or config.HTTP_TIMEOUT or DEFAULT_PAGE_TIMEOUT
        self.sleep = sleep

    @trace_span(
        "collect",
        tracer_name="collector",
        attr_from_args=lambda self, subscription, cfg, status_of=None: {
            "subscription.id": subscription.id,
            "subscription.name": subscription.name,
        },
    )
    async def collect(self, subscription: Subscription, cfg: GlobalConfig,
                      status_of: Optional[Dict[str, str]] = None) -> CheckResult:
        """Check one subscription for new works.

        Page failures end the crawl for this subscription and are reported in
        `errors`; works collected before the failure are still used.
        Store failures raise PersistenceError.
        """
        now = self.clock()
        logger.info(f"Checking {subscription.name} ({subscription.id}) for new works")

        first_url = build_actor_url(self.base_url, subscription.id, cfg.filters.category_filters)
        threshold = date_threshold(cfg.filters.date_range_months, now)
        raw_items, errors = await self._crawl(subscription, first_url, threshold)

        result = CheckResult(identified_count=len(raw_items), errors=errors)

        if status_of is None:
            status_of = await self.db.execute('status_snapshot')
        outcome = apply_filters(raw_items, status_of, cfg.filters, now)
        result.effective_count = len(outcome.accepted)
        result.filter_counts = summarize_counts(outcome.counts)
        if outcome.excluded:
            logger.debug(f"{subscription.name}: excluded {result.filter_counts}")

        candidates = outcome.accepted[:cfg.max_items_per_check]
        discovered_at = int(self.clock().timestamp())
        for item in candidates:
            if await self.db.execute('item_exists', item_id=item.id):
                continue
            result.discovered_items.append(DiscoveredItem.from_raw(item, subscription, discovered_at))

        logger.info(
            f"{subscription.name}: identified {result.identified_count}, effective {result.effective_count}, "
            f"new {result.discovered_count}"
        )
        return result

    async def _crawl(self, subscription: Subscription, first_url: str,
                     threshold: Optional[datetime]) -> Tuple[List[RawItem], List[str]]:
        """Fetch pages in order until an empty page, an out-of-range work or a failure."""
        items: List[RawItem] = []
        errors: List[str] = []
        page = 1
        while True:
            url = page_url(first_url, page)
            logger.debug(f"Fetching page {page} for {subscription.name}: {url}")
            try:
                page_items = await wait_for(self.fetcher.fetch(url), timeout=self.page_timeout)
            except TimeoutError:
                errors.append(f"{subscription.name}: page {page} timed out after {self.page_timeout}s")
                logger.warning(errors[-1])
                break
            except ParseError as e:
                logger.warning(f"{subscription.name}: page {page} unreadable, treating as last page: {e}")
                break
            except NetworkError as e:
                errors.append(f"{subscription.name}: page {page} failed: {e}")
                logger.warning(errors[-1])
                break

            if not page_items:
                logger.debug(f"{subscription.name}: page {page} is empty, stopping")
                break

            reached_cutoff = False
            for item in page_items:
                if is_older_than(item, threshold):
                    logger.debug(
                        f"{subscription.name}: {item.id} released {item.release_date} "
                        f"is before {threshold:%Y-%m-%d %H:%M}, stopping"
                    )
                    reached_cutoff = True
                    break
                items.append(item)
            if reached_cutoff:
                break

            page += 1
            await self.sleep(self.page_delay)

        return items, errors
