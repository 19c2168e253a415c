import asyncio

import pytest

from batch import BatchRunner
from collector import NewWorksCollector
from conftest import FakeFetcher, fixed_clock, make_item, no_sleep
from errors import ConfigError, NetworkError, PersistenceError
from notifier import NotificationDispatcher
from scheduler import NewWorksScheduler

BASE = "https://example.com"


class RecordingNotifier(NotificationDispatcher):
    def __init__(self, fail=False):
        self.counts = []
        self.fail = fail

    async def notify(self, discovered_count):
        self.counts.append(discovered_count)
        if self.fail:
            raise NetworkError("Webhook notification failed: 500")


def make_scheduler(db, pages=None, notifier=None, bootstrap_delay=0):
    fetcher = FakeFetcher(pages or {})
    collector = NewWorksCollector(fetcher, db, base_url=BASE, clock=fixed_clock, page_delay=0, sleep=no_sleep)
    runner = BatchRunner(collector, db, clock=fixed_clock, sleep=no_sleep)
    return NewWorksScheduler(db, fetcher, notifier=notifier or RecordingNotifier(), clock=fixed_clock,
                             bootstrap_delay=bootstrap_delay, runner=runner)


async def subscribe(db, *actors, enabled=True):
    for actor_id in actors:
        await db.execute('register_subscription', id=actor_id, name=f"Actor {actor_id}", enabled=enabled)


@pytest.mark.asyncio
async def test_start_stays_stopped_when_auto_check_disabled(db):
    scheduler = make_scheduler(db)

    assert await scheduler.start() is False
    assert scheduler.status() == {"running": False, "initialized": False, "manual_check_in_progress": False}


@pytest.mark.asyncio
async def test_first_start_arms_timer_and_bootstrap_run(db):
    await db.execute('update_global_config', patch={"auto_check_enabled": True, "check_interval_hours": 6})
    scheduler = make_scheduler(db, bootstrap_delay=3600)

    await scheduler.initialize()

    assert scheduler.status()["running"] is True
    assert scheduler.status()["initialized"] is True
    assert scheduler.interval_seconds == 6 * 3600
    assert scheduler._timer_task is not None
    assert scheduler._bootstrap_task is not None
    scheduler.stop()


@pytest.mark.asyncio
async def test_no_bootstrap_once_a_check_was_recorded(db):
    await db.execute('update_global_config', patch={"auto_check_enabled": True, "last_global_check": 1700000000})
    scheduler = make_scheduler(db)

    assert await scheduler.start() is True
    assert scheduler._bootstrap_task is None
    scheduler.stop()


@pytest.mark.asyncio
async def test_bootstrap_run_discovers_and_records(db):
    await db.execute('update_global_config', patch={"auto_check_enabled": True})
    await subscribe(db, "a1")
    notifier = RecordingNotifier()
    scheduler = make_scheduler(db, {f"{BASE}/actors/a1": [make_item("ABC-001"), make_item("ABC-002")]}, notifier)

    await scheduler.start()
    await scheduler._bootstrap_task

    assert (await db.execute('get_stats'))['total_new_works'] == 2
    assert notifier.counts == [2]
    cfg = await db.execute('get_global_config')
    assert cfg.last_global_check == int(fixed_clock().timestamp())
    await scheduler.close()


@pytest.mark.asyncio
async def test_start_is_a_noop_when_running_and_stop_is_idempotent(db):
    await db.execute('update_global_config', patch={"auto_check_enabled": True, "last_global_check": 1})
    scheduler = make_scheduler(db)

    await scheduler.start()
    timer = scheduler._timer_task
    assert await scheduler.start() is True
    assert scheduler._timer_task is timer

    scheduler.stop()
    scheduler.stop()
    with pytest.raises(asyncio.CancelledError):
        await timer
    assert timer.cancelled()
    assert scheduler.status()["running"] is False

    assert await scheduler.restart() is True
    assert scheduler._timer_task is not timer
    scheduler.stop()


@pytest.mark.asyncio
async def test_initialize_is_idempotent(db):
    scheduler = make_scheduler(db)
    await scheduler.initialize()
    await db.execute('update_global_config', patch={"auto_check_enabled": True})
    await scheduler.initialize()

    assert scheduler.status()["running"] is False


@pytest.mark.asyncio
async def test_config_failure_is_reported_to_the_caller(db):
    scheduler = make_scheduler(db)
    await db.stop()

    with pytest.raises(ConfigError):
        await scheduler.start()
    assert scheduler.status()["running"] is False
    assert scheduler._timer_task is None


@pytest.mark.asyncio
async def test_manual_check_excludes_every_library_status(db):
    await subscribe(db, "a1")
    await db.execute('set_library_status', id="ABC-001", status="browsed")
    await db.execute('set_library_status', id="ABC-002", status="want")
    pages = {f"{BASE}/actors/a1": [make_item("ABC-001"), make_item("ABC-002"), make_item("ABC-003")]}
    notifier = RecordingNotifier()
    scheduler = make_scheduler(db, pages, notifier)

    result = await scheduler.manual_check()

    assert [i.id for i in result.discovered_items] == ["ABC-003"]
    assert result.identified_count == 3
    assert result.effective_count == 1
    assert notifier.counts == [1]
    # The stored filters are left alone
    cfg = await db.execute('get_global_config')
    assert cfg.filters.exclude_statuses == frozenset({"viewed"})


@pytest.mark.asyncio
async def test_manual_check_without_subscriptions_explains_why(db):
    scheduler = make_scheduler(db)
    assert (await scheduler.manual_check()).errors == ["No subscriptions to check"]

    await subscribe(db, "a1", "a2", enabled=False)
    assert (await scheduler.manual_check()).errors == ["All 2 subscriptions are disabled"]


@pytest.mark.asyncio
async def test_manual_cancel_stops_after_current_subscription(db):
    await subscribe(db, "a1", "a2", "a3")
    pages = {f"{BASE}/actors/{a}": [make_item(f"{a.upper()}-001")] for a in ("a1", "a2", "a3")}
    notifier = RecordingNotifier()
    scheduler = make_scheduler(db, pages, notifier)
    progress = []

    def on_progress(update):
        progress.append(update)
        assert scheduler.status()["manual_check_in_progress"] is True
        scheduler.manual_cancel()

    result = await scheduler.manual_check(on_progress)

    assert result.cancelled is True
    assert [i.id for i in result.discovered_items] == ["A1-001"]
    assert len(progress) == 1
    assert notifier.counts == []
    assert (await db.execute('get_stats'))['total_new_works'] == 1
    cfg = await db.execute('get_global_config')
    assert cfg.last_global_check == int(fixed_clock().timestamp())
    assert scheduler.manual_cancel() is False


@pytest.mark.asyncio
async def test_repeated_manual_check_finds_nothing_new(db):
    await subscribe(db, "a1")
    notifier = RecordingNotifier()
    scheduler = make_scheduler(db, {f"{BASE}/actors/a1": [make_item("ABC-001")]}, notifier)

    first = await scheduler.manual_check()
    second = await scheduler.manual_check()

    assert first.discovered_count == 1
    assert second.discovered_count == 0
    assert notifier.counts == [1]


@pytest.mark.asyncio
async def test_scheduled_tick_is_skipped_while_a_run_holds_the_lock(db):
    scheduler = make_scheduler(db)

    async with scheduler._run_lock:
        assert await scheduler.run_scheduled_check() is None

    result = await scheduler.run_scheduled_check()
    assert result is not None
    assert result.errors == []


@pytest.mark.asyncio
async def test_notification_failure_is_reported_in_errors(db):
    await subscribe(db, "a1")
    scheduler = make_scheduler(db, {f"{BASE}/actors/a1": [make_item("ABC-001")]}, RecordingNotifier(fail=True))

    result = await scheduler.manual_check()

    assert result.discovered_count == 1
    assert result.errors == ["Webhook notification failed: 500"]
    assert (await db.execute('get_stats'))['total_new_works'] == 1


async def wait_until(condition, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        assert loop.time() < deadline, "condition not met in time"
        await asyncio.sleep(0.005)


@pytest.mark.asyncio
async def test_timer_runs_a_check_on_every_tick(db):
    await subscribe(db, "a1")
    url = f"{BASE}/actors/a1"
    notifier = RecordingNotifier()
    scheduler = make_scheduler(db, {url: [make_item("ABC-001")]}, notifier)

    timer = asyncio.create_task(scheduler._timer_loop(0.01))
    try:
        await wait_until(lambda: scheduler.fetcher.requested.count(url) >= 2)
    finally:
        timer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await timer
    await scheduler.close()

    # Only the first tick finds something new
    assert notifier.counts == [1]
    assert (await db.execute('get_stats'))['total_new_works'] == 1


class FlakyConfigDb:
    """Fails the first global config read, then behaves like the wrapped queue."""

    def __init__(self, db):
        self.db = db
        self.config_reads = 0

    async def execute(self, operation, **params):
        if operation == 'get_global_config':
            self.config_reads += 1
            if self.config_reads == 1:
                raise PersistenceError("get_global_config failed: database is locked")
        return await self.db.execute(operation, **params)


@pytest.mark.asyncio
async def test_tick_after_a_config_failure_retries(db):
    await subscribe(db, "a1")
    url = f"{BASE}/actors/a1"
    notifier = RecordingNotifier()
    flaky = FlakyConfigDb(db)
    fetcher = FakeFetcher({url: [make_item("ABC-001"), make_item("ABC-002")]})
    collector = NewWorksCollector(fetcher, db, base_url=BASE, clock=fixed_clock, page_delay=0, sleep=no_sleep)
    runner = BatchRunner(collector, db, clock=fixed_clock, sleep=no_sleep)
    scheduler = NewWorksScheduler(flaky, fetcher, notifier=notifier, clock=fixed_clock, runner=runner)

    first = await scheduler.run_scheduled_check()
    assert first.errors == ["Cannot read global config: get_global_config failed: database is locked"]
    assert fetcher.requested == []

    timer = asyncio.create_task(scheduler._timer_loop(0.01))
    try:
        await wait_until(lambda: url in fetcher.requested)
        await wait_until(lambda: notifier.counts == [2])
    finally:
        timer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await timer
    await scheduler.close()

    assert flaky.config_reads >= 2
    assert (await db.execute('get_stats'))['total_new_works'] == 2
    cfg = await db.execute('get_global_config')
    assert cfg.last_global_check == int(fixed_clock().timestamp())
