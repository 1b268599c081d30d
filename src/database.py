"""SQLite store shared by all booking components."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, TypeVar

import aiosqlite

from config import CFG
from sqlite_lock_logger import log_sqlite_lock_event


logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """CREATE TABLE IF NOT EXISTS shops (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        address TEXT NOT NULL DEFAULT '',
        work_mode_on INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT DEFAULT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS time_slots (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        shop_id INTEGER NOT NULL,
        start_time TEXT NOT NULL,
        end_time TEXT NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY (shop_id) REFERENCES shops(id)
    )""",
    "CREATE INDEX IF NOT EXISTS idx_time_slots_shop ON time_slots (shop_id, start_time)",
    """CREATE TABLE IF NOT EXISTS services (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        shop_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        price REAL NOT NULL,
        duration_min INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY (shop_id) REFERENCES shops(id)
    )""",
    "CREATE INDEX IF NOT EXISTS idx_services_shop ON services (shop_id)",
    # slot_id/service_id are plain references: history may outlive the slot.
    """CREATE TABLE IF NOT EXISTS bookings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        shop_id INTEGER NOT NULL,
        slot_id INTEGER NOT NULL,
        service_id INTEGER NOT NULL,
        customer_id TEXT NOT NULL,
        booking_date TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        payment_status TEXT NOT NULL DEFAULT 'unpaid',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY (shop_id) REFERENCES shops(id)
    )""",
    # Capacity: one live booking per (slot, date).
    """CREATE UNIQUE INDEX IF NOT EXISTS ux_bookings_live_slot_date
        ON bookings (slot_id, booking_date) WHERE status != 'canceled'""",
    "CREATE INDEX IF NOT EXISTS idx_bookings_shop ON bookings (shop_id, id)",
    "CREATE INDEX IF NOT EXISTS idx_bookings_customer ON bookings (customer_id, id)",
    """CREATE TABLE IF NOT EXISTS notifications (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        target_type TEXT NOT NULL,
        target_id TEXT NOT NULL,
        type TEXT NOT NULL,
        title TEXT NOT NULL DEFAULT '',
        message TEXT NOT NULL,
        booking_id INTEGER DEFAULT NULL,
        chat_room_id INTEGER DEFAULT NULL,
        is_read INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS idx_notifications_target ON notifications (target_type, target_id, is_read)",
    """CREATE TABLE IF NOT EXISTS chat_rooms (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        booking_id INTEGER NOT NULL UNIQUE,
        shop_id INTEGER NOT NULL,
        customer_id TEXT NOT NULL,
        shop_read_message_id INTEGER NOT NULL DEFAULT 0,
        customer_read_message_id INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        room_id INTEGER NOT NULL,
        sender_role TEXT NOT NULL,
        sender_id TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY (room_id) REFERENCES chat_rooms(id)
    )""",
    "CREATE INDEX IF NOT EXISTS idx_messages_room ON messages (room_id, created_at, id)",
    # One review per customer and shop; edits go through update.
    """CREATE TABLE IF NOT EXISTS reviews (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        shop_id INTEGER NOT NULL,
        customer_id TEXT NOT NULL,
        rating INTEGER NOT NULL CHECK (rating BETWEEN 1 AND 5),
        comment TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL,
        updated_at TEXT DEFAULT NULL,
        UNIQUE (shop_id, customer_id),
        FOREIGN KEY (shop_id) REFERENCES shops(id)
    )""",
    "CREATE INDEX IF NOT EXISTS idx_shops_owner ON shops (owner_id, id)",
)


def utc_now_iso() -> str:
    """Current UTC timestamp in fixed-width ISO-8601 (sortable as text)."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def utc_today() -> date:
    """Current UTC calendar day, on the same clock as stored timestamps."""
    return datetime.now(timezone.utc).date()


def is_sqlite_locked_error(exc: BaseException) -> bool:
    if not isinstance(exc, (sqlite3.OperationalError, aiosqlite.OperationalError)):
        return False
    msg = str(exc).lower()
    return "database is locked" in msg or "database table is locked" in msg


class Store:
    """Explicit handle to the booking database.

    Components never open connections on their own: they receive a Store and
    go through ``connect`` for reads and ``transaction`` for writes. Writes
    run under ``BEGIN IMMEDIATE`` so that a check and the write depending on
    it are never interleaved with another writer.
    """

    def __init__(
        self,
        db_path: str | None = None,
        *,
        busy_timeout_ms: int | None = None,
        retries: int | None = None,
        retry_base_delay: float | None = None,
    ) -> None:
        self.db_path = str(db_path or CFG.db_path)
        self.busy_timeout_ms = CFG.sqlite_busy_timeout_ms if busy_timeout_ms is None else int(busy_timeout_ms)
        self.retries = CFG.sqlite_write_retries if retries is None else int(retries)
        self.retry_base_delay = CFG.sqlite_retry_base_delay_sec if retry_base_delay is None else float(retry_base_delay)

    async def _apply_pragmas(self, db: aiosqlite.Connection) -> None:
        await db.execute(f"PRAGMA busy_timeout={self.busy_timeout_ms};")
        await db.execute("PRAGMA journal_mode=WAL;")
        await db.execute("PRAGMA synchronous=NORMAL;")
        await db.execute("PRAGMA foreign_keys=ON;")

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await self._apply_pragmas(db)
            yield db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield a connection inside an immediate write transaction."""
        async with self.connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            await db.commit()

    async def run(self, fn: Callable[[], Awaitable[T]], *, where: str) -> T:
        """Run ``fn``, retrying the whole unit on lock contention."""
        attempt = 0
        while True:
            try:
                return await fn()
            except (sqlite3.OperationalError, aiosqlite.OperationalError) as exc:
                if not is_sqlite_locked_error(exc) or attempt >= self.retries:
                    raise
                delay = self.retry_base_delay * (2**attempt)
                logger.warning("SQLite locked in %s; retry %s/%s in %.2fs", where, attempt + 1, self.retries, delay)
                log_sqlite_lock_event(
                    where=where,
                    exc=exc,
                    attempt=attempt + 1,
                    retries=self.retries,
                    delay_sec=delay,
                    db_path=self.db_path,
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def fetch_one(self, query: str, params: Sequence[Any] = ()) -> aiosqlite.Row | None:
        async with self.connect() as db:
            async with db.execute(query, params) as cur:
                return await cur.fetchone()

    async def fetch_all(self, query: str, params: Sequence[Any] = ()) -> list[aiosqlite.Row]:
        async with self.connect() as db:
            async with db.execute(query, params) as cur:
                return list(await cur.fetchall())

    async def init(self) -> None:
        """Create tables and indexes."""
        async with self.connect() as db:
            for statement in SCHEMA_STATEMENTS:
                await db.execute(statement)
            await db.commit()
        logger.info("Database schema ready at %s", self.db_path)
