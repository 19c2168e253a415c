#!/usr/bin/env python3
"""
Filter pipeline for raw listing items.

A pure function: given raw items, a snapshot of the user's library statuses
and the filter settings, it returns the accepted items and how many were
excluded for each reason. Each excluded item is counted exactly once, under
the first rule that matched (date range before library status).
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, time
from typing import Dict, List, Mapping, Optional, Sequence

from dateutil.relativedelta import relativedelta

from models import FilterConfig, RawItem

DATE_RANGE = "dateRange"


@dataclass
class FilterOutcome:
    accepted: List[RawItem] = field(default_factory=list)
    counts: Counter = field(default_factory=Counter)

    @property
    def excluded(self) -> int:
        return sum(self.counts.values())


def date_threshold(date_range_months: int, now: datetime) -> Optional[datetime]:
    """Oldest release moment still in range, or None when the range is unlimited."""
    if date_range_months <= 0:
        return None
    return now - relativedelta(months=date_range_months)


def is_older_than(item: RawItem, threshold: Optional[datetime]) -> bool:
    """True when the item was released (at midnight) strictly before the threshold."""
    if threshold is None or item.release_date is None:
        return False
    released = datetime.combine(item.release_date, time.min, tzinfo=threshold.tzinfo)
    return released < threshold


def apply_filters(raw: Sequence[RawItem], status_of: Mapping[str, str], cfg: FilterConfig,
                  now: datetime) -> FilterOutcome:
    """Run the date range and library status filters over raw items, keeping order."""
    outcome = FilterOutcome()
    threshold = date_threshold(cfg.date_range_months, now)
    for item in raw:
        if is_older_than(item, threshold):
            outcome.counts[DATE_RANGE] += 1
            continue
        status = status_of.get(item.id)
        if status is not None and status in cfg.exclude_statuses:
            outcome.counts[status] += 1
            continue
        outcome.accepted.append(item)
    return outcome


def summarize_counts(counts: Mapping[str, int]) -> Dict[str, int]:
    """Plain dict of non-zero exclusion counts, for results and logs."""
    return {reason: n for reason, n in counts.items() if n}
