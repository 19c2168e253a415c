#!/usr/bin/env python3
"""
Utility classes and functions shared by the collector and the scheduler.

Includes the cooperative cancellation token, release date parsing and
duration formatting.
"""

from asyncio import Event, wait_for, TimeoutError
from datetime import date, datetime, timezone
from typing import Optional
import re

from config import get_logger

# Module-specific logger
logger = get_logger("utils")

_DATE_RE = re.compile(r"(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})")


class CancellationToken:
    """A cooperative cancellation signal.

    Workers check `cancelled` at their checkpoints; nothing in flight is
    interrupted. `sleep()` waits for a delay but returns early once the token
    is cancelled.
    """

    def __init__(self):
        self._event = Event()

    def cancel(self) -> None:
        """Request cancellation."""
        if not self._event.is_set():
            logger.info("Cancellation requested")
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for up to `seconds`.

        Returns:
            True if the token was cancelled before or during the wait.
        """
        if self.cancelled:
            return True
        if seconds <= 0:
            return False
        try:
            await wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True


def utc_now() -> datetime:
    """Default clock: the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_release_date(text: Optional[str]) -> Optional[date]:
    """Extract the first YYYY-MM-DD (or / . separated) date from text.

    Returns None when no valid date is found.
    """
    if not text:
        return None
    match = _DATE_RE.search(text)
    if not match:
        return None
    try:
        return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    except ValueError:
        logger.debug(f"Ignoring invalid release date '{match.group(0)}'")
        return None


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:  # Always show seconds if nothing else
        parts.append(f"{secs}s")

    return " ".join(parts)
