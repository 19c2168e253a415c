import os

# Must be set before telemetry is initialised by any module import
os.environ["DISABLE_TELEMETRY"] = "true"

from datetime import date, datetime, timezone

import pytest
import pytest_asyncio

from config import config
from models import DatabaseQueue, RawItem, Subscription


NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    """Keep a developer's subscriptions.yaml out of the tests."""
    monkeypatch.setattr(config, 'DEFAULT_SETTINGS', {})
    monkeypatch.setattr(config, 'SUBSCRIPTION_SOURCES', [])


@pytest_asyncio.fixture
async def db(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "test.db"))
    await queue.start()
    yield queue
    await queue.stop()


def make_item(item_id: str, released: date = date(2024, 6, 1), **kwargs) -> RawItem:
    return RawItem(id=item_id, title=f"{item_id} Title", release_date=released,
                   url=f"https://example.com/v/{item_id.lower()}", **kwargs)


def make_sub(sub_id: str, name: str = "", enabled: bool = True) -> Subscription:
    return Subscription(id=sub_id, name=name or f"Actor {sub_id}", enabled=enabled)


class FakeFetcher:
    """Serves canned pages keyed by URL and records every request."""

    def __init__(self, pages=None, errors=None):
        self.pages = pages or {}
        self.errors = errors or {}
        self.requested = []

    async def fetch(self, url):
        self.requested.append(url)
        if url in self.errors:
            raise self.errors[url]
        return list(self.pages.get(url, []))


def fixed_clock():
    return NOW


async def no_sleep(_seconds):
    return None
