#!/usr/bin/env python3
"""
New Works Watcher

Command line entry point. Opens the database, registers the subscriptions
listed in subscriptions.yaml and runs one of the operation modes:

- check: one manual check with progress output (Ctrl-C cancels cooperatively)
- scheduled: start the periodic scheduler and keep running
- status, subscriptions, list: inspect the store
- subscribe, unsubscribe, enable, disable: manage subscriptions
- mark-read, delete, cleanup, set-status: maintain discovered works and the library
- config: show or change the stored check settings
"""

import asyncio
import signal
import sys
import argparse
from datetime import datetime
from typing import Any, Dict, List, Optional

import yaml

from config import config, get_logger, LIBRARY_STATUSES
from errors import NewWorksError
from fetcher import ActorPageFetcher
from models import DatabaseQueue, ProgressUpdate, SORT_COLUMNS, LIST_FILTERS
from notifier import create_notifier
from scheduler import NewWorksScheduler
from telemetry import init_telemetry, trace_span

# Module-specific logger
logger = get_logger("main")
init_telemetry("new-works-watcher")

SORT_CHOICES = [f"{field}_{order}" for field in SORT_COLUMNS for order in ("desc", "asc")]


def _format_ts(ts: Optional[int]) -> str:
    if not ts:
        return "never"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")


def parse_setting(assignment: str) -> Dict[str, Any]:
    """Turn `key=value` (dotted keys allowed) into an update_global_config patch.

    Values are read as YAML scalars or lists, so `true`, `3` and `[a, b]` keep
    their types.
    """
    key, sep, raw_value = assignment.partition("=")
    if not sep or not key.strip():
        raise ValueError(f"Expected key=value, got '{assignment}'")
    value = yaml.safe_load(raw_value) if raw_value.strip() else None
    parts = key.strip().split(".")
    patch: Dict[str, Any] = {parts[-1]: value}
    for part in reversed(parts[:-1]):
        patch = {part: patch}
    return patch


class NewWorksApp:
    """Owns the database queue, fetcher and scheduler for one CLI invocation."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = db_path or config.DATABASE_PATH
        self.db = DatabaseQueue(self.db_path)
        self.fetcher: Optional[ActorPageFetcher] = None
        self.scheduler: Optional[NewWorksScheduler] = None

    async def initialize(self) -> None:
        await self.db.start()
        await self.register_seed_subscriptions()

    async def close(self) -> None:
        if self.scheduler:
            await self.scheduler.close()
        if self.fetcher:
            await self.fetcher.close()
        await self.db.stop()

    async def register_seed_subscriptions(self) -> int:
        """Insert subscriptions from subscriptions.yaml that the store does not have yet."""
        added = 0
        for source in config.SUBSCRIPTION_SOURCES:
            if await self.db.execute('register_subscription', id=source['id'], name=source['name'],
                                     enabled=source['enabled']):
                added += 1
        if added:
            logger.info(f"Registered {added} subscriptions from {config.SUBSCRIPTIONS_CONFIG_PATH}")
        return added

    def get_scheduler(self) -> NewWorksScheduler:
        if self.scheduler is None:
            self.fetcher = ActorPageFetcher()
            self.scheduler = NewWorksScheduler(self.db, self.fetcher, notifier=create_notifier())
        return self.scheduler

    async def add_subscription(self, actor_id: str, name: str) -> None:
        """Subscribe to an actor.

        Raises:
            ValueError: the actor is already subscribed.
        """
        if not await self.db.execute('register_subscription', id=actor_id, name=name):
            raise ValueError(f"Already subscribed to {actor_id}")
        logger.info(f"➕ Subscribed to {name} ({actor_id})")

    @trace_span("cli.check", tracer_name="main")
    async def run_check(self) -> int:
        scheduler = self.get_scheduler()
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, scheduler.manual_cancel)
        except NotImplementedError:
            logger.debug("Signal handlers not supported; Ctrl-C will abort instead of cancelling")

        def print_progress(update: ProgressUpdate) -> None:
            print(f"   [{update.processed}/{update.total}] {update.subscription_name}: "
                  f"{update.discovered} new so far ({update.effective_total}/{update.identified_total} effective)")

        try:
            result = await scheduler.manual_check(print_progress)
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except NotImplementedError:
                pass

        state = "cancelled" if result.cancelled else "done"
        print(f"\n🔎 Check {state}: {result.discovered_count} new works "
              f"(identified {result.identified_count}, effective {result.effective_count})")
        for item in result.discovered_items:
            print(f"   🆕 {item.id}  {item.title}  [{item.subscription_name}, {item.release_date or '?'}]")
        for error in result.errors:
            print(f"   ⚠️ {error}")
        # Partial failures are normal; only a check that saw nothing at all fails
        return 1 if result.errors and not result.identified_count else 0

    async def run_scheduled(self) -> int:
        scheduler = self.get_scheduler()
        await scheduler.initialize()
        if not scheduler.running:
            logger.error("❌ Automatic checks are disabled (set auto_check_enabled=true with `config --set`)")
            return 1
        logger.info("🕐 Running in scheduled mode, press Ctrl-C to stop")
        await asyncio.Event().wait()
        return 0

    async def print_status(self) -> int:
        stats = await self.db.execute('get_stats')
        cfg = await self.db.execute('get_global_config')
        print("\n📊 New Works Status")
        print(f"👤 Subscriptions: {stats['total_subscriptions']} ({stats['active_subscriptions']} active)")
        print(f"🆕 Works: {stats['total_new_works']} ({stats['unread_works']} unread, {stats['today_discovered']} today)")
        print(f"⏰ Last check: {_format_ts(stats['last_check_time'])}")
        print(f"🔁 Automatic checks: {'on' if cfg.auto_check_enabled else 'off'}, every {cfg.check_interval_hours}h")

        summary = config.get_config_summary()
        print("\n⚙️ Runtime")
        print(f"🌐 Site: {summary['site_base_url']} (timeout {summary['http_timeout']}s, "
              f"{summary['page_delay_seconds']}s between pages, proxy {'on' if summary['has_proxy'] else 'off'})")
        print(f"🗄️ Database: {self.db_path}")
        print(f"🌱 Seed subscriptions: {summary['seed_subscriptions']}")
        print(f"🔔 Notifications: {'webhook' if summary['has_webhook'] else 'log only'}")
        return 0

    async def print_subscriptions(self) -> int:
        subscriptions = await self.db.execute('list_subscriptions')
        if not subscriptions:
            print("No subscriptions")
        for sub in subscriptions:
            flag = "✅" if sub.enabled else "⏸️"
            print(f"{flag} {sub.id}  {sub.name}  (last check: {_format_ts(sub.last_check_time)})")
        return 0

    async def print_works(self, search: str, filter: str, sort: str, page: int, page_size: int) -> int:
        listing = await self.db.execute('query_discovered_items', search=search, filter=filter, sort=sort,
                                        page=page, page_size=page_size)
        for item in listing['items']:
            marker = " " if item.is_read else "*"
            print(f"{marker} {item.id}  {item.title}  [{item.subscription_name}, "
                  f"{item.release_date or '?'}, found {_format_ts(item.discovered_at)}]")
        more = ", more available" if listing['has_more'] else ""
        print(f"\nPage {listing['page']}: {len(listing['items'])} of {listing['total']} works{more}")
        return 0

    async def show_config(self, assignments: List[str]) -> int:
        cfg = await self.db.execute('get_global_config')
        for assignment in assignments:
            cfg = await self.db.execute('update_global_config', patch=parse_setting(assignment))
        print(yaml.safe_dump(cfg.to_dict(), sort_keys=False), end="")
        return 0


async def run_command(args: argparse.Namespace) -> int:
    app = NewWorksApp(args.database)
    await app.initialize()
    try:
        if args.mode == 'check':
            return await app.run_check()
        if args.mode == 'scheduled':
            return await app.run_scheduled()
        if args.mode == 'status':
            return await app.print_status()
        if args.mode == 'subscriptions':
            return await app.print_subscriptions()
        if args.mode == 'subscribe':
            await app.add_subscription(args.id, args.name)
            return 0
        if args.mode == 'unsubscribe':
            removed = await app.db.execute('remove_subscription', id=args.id)
            print(f"Removed {args.id}" if removed else f"Not subscribed to {args.id}")
            return 0 if removed else 1
        if args.mode in ('enable', 'disable'):
            changed = await app.db.execute('set_subscription_enabled', id=args.id, enabled=args.mode == 'enable')
            print(f"{args.mode.capitalize()}d {args.id}" if changed else f"Not subscribed to {args.id}")
            return 0 if changed else 1
        if args.mode == 'list':
            return await app.print_works(args.search, args.filter, args.sort, args.page, args.page_size)
        if args.mode == 'mark-read':
            count = await app.db.execute('mark_as_read', ids=args.ids)
            print(f"Marked {count} works as read")
            return 0
        if args.mode == 'delete':
            count = await app.db.execute('delete_items', ids=args.ids)
            print(f"Deleted {count} works")
            return 0
        if args.mode == 'cleanup':
            cfg = await app.db.execute('get_global_config')
            count = await app.db.execute('cleanup_old_items', cleanup_days=cfg.cleanup_days)
            print(f"Removed {count} read works older than {cfg.cleanup_days} days")
            return 0
        if args.mode == 'set-status':
            await app.db.execute('set_library_status', id=args.id, status=args.status)
            print(f"{args.id} marked as {args.status}")
            return 0
        if args.mode == 'config':
            return await app.show_config(args.set or [])
        return 1
    finally:
        await app.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='New Works Watcher')
    parser.add_argument('--database', type=str, help='SQLite database path (default: DATABASE_PATH)')
    sub = parser.add_subparsers(dest='mode', required=True, metavar='mode')

    sub.add_parser('check', help='Run one manual check now')
    sub.add_parser('scheduled', help='Run periodic checks until interrupted')
    sub.add_parser('status', help='Show store statistics')
    sub.add_parser('subscriptions', help='List subscriptions')

    p = sub.add_parser('subscribe', help='Subscribe to an actor')
    p.add_argument('id')
    p.add_argument('name')
    for mode in ('unsubscribe', 'enable', 'disable'):
        p = sub.add_parser(mode, help=f'{mode.capitalize()} a subscription')
        p.add_argument('id')

    p = sub.add_parser('list', help='List discovered works')
    p.add_argument('--search', default='')
    p.add_argument('--filter', choices=LIST_FILTERS, default='all')
    p.add_argument('--sort', choices=SORT_CHOICES, default='discovered_at_desc')
    p.add_argument('--page', type=int, default=1)
    p.add_argument('--page-size', type=int, default=20)

    for mode, help_text in (('mark-read', 'Mark works as read'), ('delete', 'Delete discovered works')):
        p = sub.add_parser(mode, help=help_text)
        p.add_argument('ids', nargs='+')

    sub.add_parser('cleanup', help='Delete read works older than cleanup_days')

    p = sub.add_parser('set-status', help='Record a library status for a work')
    p.add_argument('id')
    p.add_argument('status', choices=LIBRARY_STATUSES)

    p = sub.add_parser('config', help='Show or change check settings')
    p.add_argument('--set', action='append', metavar='KEY=VALUE',
                   help='e.g. auto_check_enabled=true or filters.date_range_months=6')
    return parser


def main():
    """Main entry point."""
    args = build_parser().parse_args()
    try:
        sys.exit(asyncio.run(run_command(args)))
    except KeyboardInterrupt:
        logger.info("👋 New works watcher shutting down")
    except (NewWorksError, ValueError) as e:
        logger.error(f"❌ {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
