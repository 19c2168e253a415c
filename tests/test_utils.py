import asyncio
from datetime import date

import pytest

from utils import CancellationToken, format_duration, parse_release_date


@pytest.mark.asyncio
async def test_token_sleep_runs_full_delay_when_not_cancelled():
    token = CancellationToken()
    assert await token.sleep(0.01) is False
    assert token.cancelled is False


@pytest.mark.asyncio
async def test_token_sleep_wakes_up_on_cancel():
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    loop.call_later(0.02, token.cancel)

    started = loop.time()
    assert await token.sleep(30) is True
    assert loop.time() - started < 5


@pytest.mark.asyncio
async def test_cancelled_token_does_not_sleep():
    token = CancellationToken()
    token.cancel()
    token.cancel()
    assert await token.sleep(30) is True


@pytest.mark.parametrize("text,expected", [
    ("2024-05-20", date(2024, 5, 20)),
    ("Released 2024/5/2, 120 min", date(2024, 5, 2)),
    ("2023.12.31", date(2023, 12, 31)),
    ("2024-02-30", None),
    ("coming soon", None),
    ("", None),
    (None, None),
])
def test_parse_release_date(text, expected):
    assert parse_release_date(text) == expected


def test_format_duration():
    assert format_duration(0) == "0s"
    assert format_duration(3725) == "1h 2m 5s"
    assert format_duration(86400) == "24h"
