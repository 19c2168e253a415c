#!/usr/bin/env python3
"""
Data model and database operations for the new works watcher.

The dataclasses describe subscriptions, check settings, raw listing items and
discovered works. DatabaseQueue serializes every SQLite operation through a
single worker so concurrent subscription checks can share one store.
"""

from dataclasses import dataclass, field, asdict, replace
from datetime import date, datetime
from os import path, access, R_OK
from time import time
import json
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any, FrozenSet, Tuple, Iterable

from config import config, get_logger, LIBRARY_STATUSES
from errors import PersistenceError
from telemetry import trace_span

# Module-specific logger
logger = get_logger("models")

GLOBAL_CONFIG_KEY = "global_config"
SECONDS_PER_DAY = 24 * 60 * 60

# Listing sort fields exposed to callers, mapped to SQL expressions
SORT_COLUMNS = {
    "discovered_at": "discovered_at",
    "release_date": "COALESCE(release_date, '')",
    "subscription_name": "LOWER(COALESCE(subscription_name, ''))",
}
LIST_FILTERS = ("all", "unread", "today", "week")


def _as_int(value: Any, default: int, min_val: Optional[int] = None) -> int:
    try:
        result = int(value)
    except (TypeError, ValueError):
        return default
    if min_val is not None and result < min_val:
        return default
    return result


def _as_float(value: Any, default: float, min_val: float = 0.0) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    return result if result >= min_val else default


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@dataclass
class Subscription:
    """A subscribed actor whose listing is polled for new works."""
    id: str
    name: str
    enabled: bool = True
    avatar_url: Optional[str] = None
    subscribed_at: int = 0
    last_check_time: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> "Subscription":
        return cls(
            id=row["id"],
            name=row["name"],
            enabled=bool(row["enabled"]),
            avatar_url=row["avatar_url"],
            subscribed_at=row["subscribed_at"] or 0,
            last_check_time=row["last_check_time"],
        )


@dataclass(frozen=True)
class FilterConfig:
    """Inputs of the filter pipeline."""
    date_range_months: int = 3
    exclude_statuses: FrozenSet[str] = frozenset({"viewed"})
    category_filters: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FilterConfig":
        data = data or {}
        statuses = data.get("exclude_statuses")
        if statuses is None:
            # Older settings stored one boolean per status
            statuses = [s for s in LIBRARY_STATUSES if _as_bool(data.get(f"exclude_{s}"), False)]
            if not any(f"exclude_{s}" in data for s in LIBRARY_STATUSES):
                statuses = cls.exclude_statuses
        if isinstance(statuses, str):
            statuses = [s.strip() for s in statuses.split(",")]
        categories = data.get("category_filters") or ()
        if isinstance(categories, str):
            categories = [c.strip() for c in categories.split(",")]
        return cls(
            date_range_months=_as_int(data.get("date_range_months"), cls.date_range_months),
            exclude_statuses=frozenset(s for s in statuses if s),
            category_filters=tuple(str(c) for c in categories if c),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date_range_months": self.date_range_months,
            "exclude_statuses": sorted(self.exclude_statuses),
            "category_filters": list(self.category_filters),
        }

    def excluding(self, statuses: Iterable[str]) -> "FilterConfig":
        """Return a copy that additionally excludes the given statuses."""
        return replace(self, exclude_statuses=self.exclude_statuses | frozenset(statuses))


@dataclass
class GlobalConfig:
    """Run-wide settings, read at the start of every run."""
    check_interval_hours: float = 24.0
    auto_check_enabled: bool = False
    max_items_per_check: int = 50
    concurrency: int = 1
    request_interval_seconds: float = 3.0
    filters: FilterConfig = field(default_factory=FilterConfig)
    auto_cleanup: bool = True
    cleanup_days: int = 30
    last_global_check: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "GlobalConfig":
        data = data or {}
        return cls(
            check_interval_hours=_as_float(data.get("check_interval_hours"), cls.check_interval_hours, 0.01),
            auto_check_enabled=_as_bool(data.get("auto_check_enabled"), cls.auto_check_enabled),
            max_items_per_check=_as_int(data.get("max_items_per_check"), cls.max_items_per_check, 1),
            concurrency=_as_int(data.get("concurrency"), 1, 1),
            request_interval_seconds=_as_float(data.get("request_interval_seconds"), cls.request_interval_seconds),
            filters=FilterConfig.from_dict(data.get("filters")),
            auto_cleanup=_as_bool(data.get("auto_cleanup"), cls.auto_cleanup),
            cleanup_days=_as_int(data.get("cleanup_days"), cls.cleanup_days, 1),
            last_global_check=_as_int(data.get("last_global_check"), 0) or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["filters"] = self.filters.to_dict()
        return data


@dataclass
class RawItem:
    """One listing entry as parsed from a page, before filtering."""
    id: str
    title: str
    release_date: Optional[date] = None
    url: str = ""
    cover_image: str = ""
    tags: List[str] = field(default_factory=list)
    source_id: Optional[str] = None


@dataclass
class DiscoveredItem:
    """A work that passed filtering and was not known before."""
    id: str
    subscription_id: str
    subscription_name: str
    title: str
    release_date: Optional[str]
    url: str
    cover_image: str
    tags: List[str]
    discovered_at: int
    is_read: bool = False
    status: str = "new"

    @classmethod
    def from_raw(cls, raw: RawItem, subscription: Subscription, discovered_at: int) -> "DiscoveredItem":
        return cls(
            id=raw.id,
            subscription_id=subscription.id,
            subscription_name=subscription.name,
            title=raw.title,
            release_date=raw.release_date.isoformat() if raw.release_date else None,
            url=raw.url,
            cover_image=raw.cover_image,
            tags=list(raw.tags),
            discovered_at=discovered_at,
        )

    @classmethod
    def from_row(cls, row) -> "DiscoveredItem":
        return cls(
            id=row["id"],
            subscription_id=row["subscription_id"],
            subscription_name=row["subscription_name"] or "",
            title=row["title"] or "",
            release_date=row["release_date"],
            url=row["url"] or "",
            cover_image=row["cover_image"] or "",
            tags=json.loads(row["tags"]) if row["tags"] else [],
            discovered_at=row["discovered_at"],
            is_read=bool(row["is_read"]),
            status=row["status"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CheckResult:
    """Outcome of checking one subscription, or of a whole run."""
    identified_count: int = 0
    effective_count: int = 0
    discovered_items: List[DiscoveredItem] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    cancelled: bool = False
    filter_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def discovered_count(self) -> int:
        return len(self.discovered_items)


@dataclass
class BatchResult:
    """Aggregate of a BatchRunner pass over many subscriptions."""
    discovered_total: int = 0
    new_items: List[DiscoveredItem] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    identified_total: int = 0
    effective_total: int = 0
    processed: List[Subscription] = field(default_factory=list)
    cancelled: bool = False


@dataclass
class ProgressUpdate:
    """Reported after every processed subscription, success or failure."""
    processed: int
    total: int
    discovered: int
    identified_total: int
    effective_total: int
    subscription_id: str
    subscription_name: str


def initialize_database(conn) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='subscriptions'")
        if cursor.fetchone() is None:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.debug("Database already exists with proper schema")
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH
    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")
    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")
    with open(schema_path, 'r') as f:
        return f.read()


class DatabaseQueue:
    """A queue for database operations to ensure thread safety.

    Operations are public methods of this class, invoked by name through
    execute(). Failures are raised to the caller as PersistenceError.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the database and start the worker."""
        if self.running:
            return

        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            initialize_database(self.conn)
        except (Error, OSError, ValueError) as e:
            if self.conn:
                self.conn.close()
                self.conn = None
            raise PersistenceError(f"Cannot open database {self.db_path}: {e}", {"db_path": self.db_path}) from e

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release any waiter so nothing hangs on a stopped queue
        for operation_id, event in self.events.items():
            self.results.setdefault(operation_id, {"error": "Database worker stopped"})
            event.set()
        self.events.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
            except TimeoutError:
                continue

            try:
                method = getattr(self, operation_name, None)
                if operation_name.startswith("_") or not callable(method):
                    self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                else:
                    self.results[operation_id] = {"result": method(**params)}
            except Exception as e:
                logger.error(f"Database operation error in {operation_name}: {e}")
                if self.conn:
                    self.conn.rollback()
                self.results[operation_id] = {"error": str(e)}
            finally:
                if operation_id in self.events:
                    self.events[operation_id].set()
                self.queue.task_done()

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation by name.

        Raises:
            PersistenceError: if the worker is not running or the operation failed.
        """
        if not self.running:
            raise PersistenceError("Database worker is not running", {"operation": operation_name})

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id, {"error": "No result recorded"})
            if "error" in result:
                raise PersistenceError(
                    f"{operation_name} failed: {result['error']}",
                    {"operation": operation_name},
                )
            return result["result"]
        finally:
            self.events.pop(operation_id, None)
            self.results.pop(operation_id, None)

    # Subscription operations
    def register_subscription(self, id: str, name: str, enabled: bool = True,
                              avatar_url: Optional[str] = None) -> bool:
        """Add a subscription unless it already exists. Returns True if added."""
        cursor = self.conn.cursor()
        cursor.execute(
            "INSERT OR IGNORE INTO subscriptions (id, name, avatar_url, subscribed_at, enabled) VALUES (?, ?, ?, ?, ?)",
            (id, name, avatar_url, int(time()), 1 if enabled else 0)
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def remove_subscription(self, id: str) -> bool:
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM subscriptions WHERE id = ?", (id,))
        self.conn.commit()
        return cursor.rowcount > 0

    def set_subscription_enabled(self, id: str, enabled: bool) -> bool:
        cursor = self.conn.cursor()
        cursor.execute("UPDATE subscriptions SET enabled = ? WHERE id = ?", (1 if enabled else 0, id))
        self.conn.commit()
        return cursor.rowcount > 0

    def list_subscriptions(self) -> List[Subscription]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM subscriptions ORDER BY subscribed_at, id")
        return [Subscription.from_row(row) for row in cursor.fetchall()]

    def update_last_check_times(self, ids: List[str], timestamp: int) -> int:
        """Stamp last_check_time on every given subscription in one statement."""
        if not ids:
            return 0
        cursor = self.conn.cursor()
        placeholders = ','.join('?' for _ in ids)
        cursor.execute(
            f"UPDATE subscriptions SET last_check_time = ? WHERE id IN ({placeholders})",
            [timestamp] + list(ids)
        )
        self.conn.commit()
        return cursor.rowcount

    # Global configuration operations
    def _stored_config(self) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT value FROM settings WHERE key = ?", (GLOBAL_CONFIG_KEY,))
        row = cursor.fetchone()
        return json.loads(row[0]) if row else None

    def get_global_config(self) -> GlobalConfig:
        """Return the stored GlobalConfig, falling back to configured defaults."""
        stored = self._stored_config()
        if stored is None:
            return config.default_global_config()
        merged = config.default_global_config().to_dict()
        merged.update(stored)
        return GlobalConfig.from_dict(merged)

    def update_global_config(self, patch: Dict[str, Any]) -> GlobalConfig:
        """Merge a partial update into the stored configuration and return the result."""
        current = self.get_global_config().to_dict()
        for key, value in patch.items():
            if key == "filters" and isinstance(value, dict):
                current["filters"] = {**current["filters"], **value}
            else:
                current[key] = value
        updated = GlobalConfig.from_dict(current)
        cursor = self.conn.cursor()
        cursor.execute(
            "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
            (GLOBAL_CONFIG_KEY, json.dumps(updated.to_dict()))
        )
        self.conn.commit()
        return updated

    # Library status operations
    def status_snapshot(self) -> Dict[str, str]:
        """Return every library status keyed by work id in one read."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT id, status FROM library_status")
        return {row[0]: row[1] for row in cursor.fetchall()}

    def set_library_status(self, id: str, status: str) -> bool:
        if status not in LIBRARY_STATUSES:
            raise ValueError(f"Unknown library status '{status}' (expected one of {', '.join(LIBRARY_STATUSES)})")
        cursor = self.conn.cursor()
        cursor.execute(
            "INSERT OR REPLACE INTO library_status (id, status, updated_at) VALUES (?, ?, ?)",
            (id, status, int(time()))
        )
        self.conn.commit()
        return True

    # Discovered item operations
    def item_exists(self, item_id: str) -> bool:
        cursor = self.conn.cursor()
        cursor.execute("SELECT 1 FROM discovered_items WHERE id = ?", (item_id,))
        return cursor.fetchone() is not None

    def bulk_insert_items(self, items: List[DiscoveredItem]) -> int:
        """Insert discovered works; ids already present are left untouched."""
        if not items:
            return 0
        before = self.conn.total_changes
        cursor = self.conn.cursor()
        cursor.executemany(
            '''
            INSERT OR IGNORE INTO discovered_items
                (id, subscription_id, subscription_name, title, release_date, url,
                 cover_image, tags, discovered_at, is_read, status)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''',
            [
                (
                    item.id, item.subscription_id, item.subscription_name, item.title,
                    item.release_date, item.url, item.cover_image, json.dumps(item.tags),
                    item.discovered_at, 1 if item.is_read else 0, item.status,
                )
                for item in items
            ]
        )
        self.conn.commit()
        return self.conn.total_changes - before

    def query_discovered_items(self, search: str = "", filter: str = "all", sort: str = "discovered_at_desc",
                               page: int = 1, page_size: int = 20, now: Optional[int] = None) -> Dict[str, Any]:
        """Search, filter, sort and paginate discovered works."""
        if filter not in LIST_FILTERS:
            raise ValueError(f"Unknown filter '{filter}' (expected one of {', '.join(LIST_FILTERS)})")
        field_name, _, order = sort.rpartition("_")
        if field_name not in SORT_COLUMNS or order not in ("asc", "desc"):
            raise ValueError(f"Unknown sort '{sort}'")
        page = max(1, int(page))
        page_size = max(1, int(page_size))
        now = now if now is not None else int(time())

        clauses: List[str] = []
        params: List[Any] = []
        if search.strip():
            needle = f"%{search.strip().lower()}%"
            clauses.append("(LOWER(title) LIKE ? OR LOWER(subscription_name) LIKE ? OR LOWER(id) LIKE ?)")
            params.extend([needle, needle, needle])
        if filter == "unread":
            clauses.append("is_read = 0")
        elif filter == "today":
            clauses.append("discovered_at >= ?")
            params.append(_start_of_day(now))
        elif filter == "week":
            clauses.append("discovered_at >= ?")
            params.append(now - 7 * SECONDS_PER_DAY)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        cursor = self.conn.cursor()
        cursor.execute(f"SELECT COUNT(*) FROM discovered_items {where}", params)
        total = cursor.fetchone()[0]
        offset = (page - 1) * page_size
        cursor.execute(
            f"SELECT * FROM discovered_items {where} ORDER BY {SORT_COLUMNS[field_name]} {order.upper()}, id "
            f"LIMIT ? OFFSET ?",
            params + [page_size, offset]
        )
        items = [DiscoveredItem.from_row(row) for row in cursor.fetchall()]
        return {
            "items": items,
            "total": total,
            "page": page,
            "page_size": page_size,
            "has_more": offset + page_size < total,
            "stats": self.get_stats(now=now),
        }

    def mark_as_read(self, ids: List[str]) -> int:
        if not ids:
            return 0
        cursor = self.conn.cursor()
        placeholders = ','.join('?' for _ in ids)
        cursor.execute(
            f"UPDATE discovered_items SET is_read = 1 WHERE is_read = 0 AND id IN ({placeholders})",
            list(ids)
        )
        self.conn.commit()
        return cursor.rowcount

    def delete_items(self, ids: List[str]) -> int:
        if not ids:
            return 0
        cursor = self.conn.cursor()
        placeholders = ','.join('?' for _ in ids)
        cursor.execute(f"DELETE FROM discovered_items WHERE id IN ({placeholders})", list(ids))
        self.conn.commit()
        return cursor.rowcount

    def cleanup_old_items(self, cleanup_days: int, now: Optional[int] = None) -> int:
        """Delete read works discovered more than cleanup_days ago."""
        now = now if now is not None else int(time())
        cutoff = now - cleanup_days * SECONDS_PER_DAY
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM discovered_items WHERE is_read = 1 AND discovered_at < ?", (cutoff,))
        self.conn.commit()
        if cursor.rowcount:
            logger.info(f"Cleaned up {cursor.rowcount} read works older than {cleanup_days} days")
        return cursor.rowcount

    def get_stats(self, now: Optional[int] = None) -> Dict[str, Any]:
        now = now if now is not None else int(time())
        cursor = self.conn.cursor()
        cursor.execute("SELECT COUNT(*), COALESCE(SUM(enabled), 0) FROM subscriptions")
        total_subs, active_subs = cursor.fetchone()
        cursor.execute(
            "SELECT COUNT(*), COALESCE(SUM(CASE WHEN is_read = 0 THEN 1 ELSE 0 END), 0), "
            "COALESCE(SUM(CASE WHEN discovered_at >= ? THEN 1 ELSE 0 END), 0) FROM discovered_items",
            (_start_of_day(now),)
        )
        total_items, unread, today = cursor.fetchone()
        return {
            "total_subscriptions": total_subs,
            "active_subscriptions": active_subs,
            "total_new_works": total_items,
            "unread_works": unread,
            "today_discovered": today,
            "last_check_time": self.get_global_config().last_global_check,
        }


def _start_of_day(timestamp: int) -> int:
    """Local midnight of the day containing timestamp."""
    local = datetime.fromtimestamp(timestamp)
    return int(local.replace(hour=0, minute=0, second=0, microsecond=0).timestamp())
