from __future__ import annotations

import asyncio
import logging
import operator
import os
import sqlite3
import threading
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import aiosqlite

from .errors import (
    ConstraintViolation,
    MalformedInput,
    QueryFailed,
    SchemaSetupError,
    StoreUnavailable,
)


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS schema_migrations (
    name TEXT PRIMARY KEY,
    applied_at TEXT DEFAULT (datetime('now'))
);
"""


@dataclass(frozen=True)
class Migration:
    name: str
    statements: Tuple[str, ...]


# Applied in order; each one runs in its own transaction and is recorded by name.
MIGRATIONS: Tuple[Migration, ...] = (
    Migration(
        "0001_create_items",
        (
            """
            CREATE TABLE IF NOT EXISTS items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                path TEXT NOT NULL UNIQUE,
                title TEXT NOT NULL,
                extension TEXT NOT NULL DEFAULT '',
                description TEXT,
                thumbnail TEXT,
                added DATETIME NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                last_verified DATETIME NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_items_added ON items(added DESC)",
        ),
    ),
    Migration(
        "0002_create_tags",
        (
            """
            CREATE TABLE IF NOT EXISTS tag_categories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS tags (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                category INTEGER NOT NULL,
                UNIQUE(name, category),
                FOREIGN KEY(category) REFERENCES tag_categories(id) ON DELETE CASCADE
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_tags_category ON tags(category)",
        ),
    ),
)

DEFAULT_POOL_SIZE = 10
DEFAULT_POOL_TIMEOUT_S = 30.0
# Stays below SQLITE_MAX_VARIABLE_NUMBER on old builds (999).
IN_BATCH_SIZE = 900
SQLITE_INT_MIN = -(2 ** 63)
SQLITE_INT_MAX = 2 ** 63 - 1

ITEM_COLUMNS = "id, path, title, extension, description, thumbnail, added, last_verified"


class StoredTimestamp(str):
    """Raw text of a value read from a column declared DATETIME."""


def _convert_datetime(raw: bytes) -> StoredTimestamp:
    return StoredTimestamp(raw.decode("utf-8", errors="replace"))


# Only consulted by connections opened with PARSE_DECLTYPES (the pool below).
sqlite3.register_converter("DATETIME", _convert_datetime)


@dataclass(frozen=True)
class SQLQuery:
    text: str
    params: Tuple[Any, ...]


@dataclass(frozen=True)
class StatementResult:
    columns: List[str]
    rows: List[Tuple[Any, ...]]
    rowcount: int


def build_in_query(prefix_sql: str, values: Sequence[Any], suffix_sql: str = "") -> SQLQuery:
    placeholders = ",".join(["?"] * len(values))
    sql = prefix_sql + "(" + placeholders + ")" + suffix_sql
    return SQLQuery(sql, tuple(values))


def iter_batches(values: Sequence[Any], size: int = IN_BATCH_SIZE) -> Iterator[Sequence[Any]]:
    for i in range(0, len(values), size):
        yield values[i:i + size]


def normalize_ids(ids: Iterable[Any]) -> List[int]:
    """Return the distinct ids in ascending order, rejecting non-integers.

    Ids outside SQLite's signed 64-bit range cannot name a row and are dropped.
    """
    out: set[int] = set()
    for value in ids:
        if isinstance(value, bool):
            raise MalformedInput(f"Invalid item id: {value!r}")
        try:
            item_id = operator.index(value)
        except TypeError as exc:
            raise MalformedInput(f"Invalid item id: {value!r}") from exc
        if SQLITE_INT_MIN <= item_id <= SQLITE_INT_MAX:
            out.add(item_id)
    return sorted(out)


class _ConnectionPool:
    """Bounded set of autocommit connections to one catalog file.

    Connections run in WAL mode, so readers holding one never wait on a
    writer; concurrent writers are serialised by SQLite's own busy timeout
    (set to the acquire timeout), not by a lock here.
    """

    def __init__(self, db_path: str, maxsize: int = DEFAULT_POOL_SIZE, timeout_s: float = DEFAULT_POOL_TIMEOUT_S) -> None:
        self.db_path = db_path
        self.maxsize = maxsize
        self.timeout_s = timeout_s
        self._queue: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue(maxsize)
        self._created = 0
        self._lock = asyncio.Lock()
        self._all: set[aiosqlite.Connection] = set()
        self._semaphore = asyncio.Semaphore(maxsize)
        self._closing = False

    async def acquire(self) -> aiosqlite.Connection:
        if self._closing:
            raise StoreUnavailable("Connection pool is closing")
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self.timeout_s)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable("Timed out waiting for database connection") from exc

        # A failed connect must give its semaphore slot back, otherwise the
        # pool deadlocks after maxsize failures.
        try:
            try:
                return self._queue.get_nowait()
            except asyncio.QueueEmpty:
                should_create = False
                async with self._lock:
                    if self._created < self.maxsize:
                        self._created += 1
                        should_create = True
                if should_create:
                    try:
                        conn = await aiosqlite.connect(
                            self.db_path,
                            isolation_level=None,
                            detect_types=sqlite3.PARSE_DECLTYPES,
                            timeout=self.timeout_s,
                        )
                        await conn.execute("PRAGMA foreign_keys=ON;")
                        await conn.execute("PRAGMA journal_mode=WAL;")
                        self._all.add(conn)
                        return conn
                    except Exception:
                        async with self._lock:
                            self._created -= 1
                        raise
                return await self._queue.get()
        except BaseException:
            self._semaphore.release()
            raise

    async def release(self, conn: aiosqlite.Connection) -> None:
        try:
            if conn.in_transaction:
                await conn.rollback()
            await self._queue.put(conn)
        except Exception:
            logging.warning("Failed to rollback or return pooled connection; closing.", exc_info=True)
            try:
                await conn.close()
            except Exception:
                logging.warning("Failed to close connection during release", exc_info=True)
            self._all.discard(conn)
            if self._created > 0:
                self._created -= 1
        finally:
            self._semaphore.release()

    async def close(self) -> None:
        self._closing = True
        for _ in range(self.maxsize):
            await self._semaphore.acquire()
        conns = list(self._all)
        self._all.clear()
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        for conn in conns:
            await conn.close()


_pools: Dict[str, _ConnectionPool] = {}
_pool_lock = threading.Lock()


def _pool_key(db_path: str) -> str:
    return os.path.abspath(db_path)


def _get_pool(
    db_path: str,
    *,
    maxsize: int = DEFAULT_POOL_SIZE,
    timeout_s: float = DEFAULT_POOL_TIMEOUT_S,
) -> _ConnectionPool:
    key = _pool_key(db_path)
    with _pool_lock:
        pool = _pools.get(key)
        if pool is None:
            ensure_db_permissions(key)
            pool = _ConnectionPool(db_path=key, maxsize=maxsize, timeout_s=timeout_s)
            _pools[key] = pool
        return pool


def ensure_db_permissions(db_path: str) -> None:
    """Create the catalog file (and its data directory) readable by the owner only."""
    db_path = os.path.abspath(db_path)
    db_dir = os.path.dirname(db_path)
    os.makedirs(db_dir, exist_ok=True)
    if not os.path.exists(db_path):
        flags = os.O_CREAT | os.O_EXCL | os.O_WRONLY
        try:
            fd = os.open(db_path, flags, 0o600)
            os.close(fd)
        except FileExistsError:
            pass
        except OSError:
            logging.warning("Failed to create database file %s securely.", db_path, exc_info=True)
    if os.name != "nt":
        try:
            os.chmod(db_path, 0o600)
        except OSError:
            logging.warning("Failed to chmod database file %s", db_path, exc_info=True)


async def close_db_pool(db_path: Optional[str] = None) -> None:
    with _pool_lock:
        if db_path is None:
            pools = list(_pools.values())
            _pools.clear()
        else:
            pool = _pools.pop(_pool_key(db_path), None)
            pools = [pool] if pool else []
    for pool in pools:
        await pool.close()


@asynccontextmanager
async def get_connection(db_path: str) -> AsyncIterator[aiosqlite.Connection]:
    try:
        pool = _get_pool(db_path)
        conn = await pool.acquire()
    except StoreUnavailable:
        raise
    except (aiosqlite.Error, OSError) as exc:
        raise StoreUnavailable(f"Cannot open database {db_path}: {exc}") from exc
    try:
        yield conn
    finally:
        await pool.release(conn)


@contextmanager
def translate_errors() -> Iterator[None]:
    """Map driver exceptions onto the catalog error kinds."""
    try:
        yield
    except aiosqlite.IntegrityError as exc:
        raise ConstraintViolation(str(exc)) from exc
    except (aiosqlite.Error, sqlite3.Warning) as exc:
        raise QueryFailed(str(exc)) from exc
    except UnicodeEncodeError as exc:
        # Lone surrogates (undecodable file names) cannot be stored as TEXT.
        raise MalformedInput(f"Value is not valid UTF-8: {exc.reason}") from exc


async def init_db(
    db_path: str,
    *,
    pool_size: int = DEFAULT_POOL_SIZE,
    timeout_s: float = DEFAULT_POOL_TIMEOUT_S,
) -> None:
    try:
        ensure_db_permissions(db_path)
        _get_pool(db_path, maxsize=pool_size, timeout_s=timeout_s)
        async with get_connection(db_path) as db:
            await db.executescript(SCHEMA_SQL)
            for migration in MIGRATIONS:
                await _apply_migration(db, migration)
    except (OSError, aiosqlite.Error, StoreUnavailable) as exc:
        logging.critical("Database schema setup failed for %s", db_path, exc_info=True)
        raise SchemaSetupError(f"Failed to set up database at {db_path}: {exc}") from exc


async def _apply_migration(db: aiosqlite.Connection, migration: Migration) -> None:
    async with db.execute(
        "SELECT 1 FROM schema_migrations WHERE name = ?", (migration.name,)
    ) as cursor:
        if await cursor.fetchone():
            return
    await db.execute("BEGIN IMMEDIATE")
    try:
        # Another connection may have applied it while we waited for the lock.
        async with db.execute(
            "SELECT 1 FROM schema_migrations WHERE name = ?", (migration.name,)
        ) as cursor:
            already_applied = await cursor.fetchone() is not None
        if not already_applied:
            for statement in migration.statements:
                await db.execute(statement)
            await db.execute(
                "INSERT INTO schema_migrations(name) VALUES(?)",
                (migration.name,),
            )
    except BaseException:
        await db.rollback()
        raise
    await db.commit()
    if not already_applied:
        logging.info("Applied migration %s", migration.name)


async def list_applied_migrations(db_path: str) -> List[str]:
    return [str(name) for name in await fetch_scalars(db_path, "SELECT name FROM schema_migrations ORDER BY name")]


async def execute(db_path: str, sql: str, params: Sequence[Any] = ()) -> int:
    async with get_connection(db_path) as db:
        with translate_errors():
            cursor = await db.execute(sql, tuple(params))
            rowcount = cursor.rowcount
            await cursor.close()
            await db.commit()
    return rowcount


async def fetch_scalars(db_path: str, sql: str, params: Sequence[Any] = ()) -> List[Any]:
    async with get_connection(db_path) as db:
        with translate_errors():
            rows = await db.execute_fetchall(sql, tuple(params))
    return [r[0] for r in rows]


async def fetch_rows(db_path: str, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
    async with get_connection(db_path) as db:
        with translate_errors():
            async with db.execute(sql, tuple(params)) as cursor:
                rows = await cursor.fetchall()
                columns = [c[0] for c in cursor.description or ()]
    return [dict(zip(columns, row)) for row in rows]


async def insert_returning_id(db_path: str, sql: str, params: Sequence[Any]) -> int:
    async with get_connection(db_path) as db:
        with translate_errors():
            rows = await db.execute_fetchall(sql, tuple(params))
            await db.commit()
    if not rows:
        raise QueryFailed("Insert did not return an id")
    return int(rows[0][0])


async def execute_statement(db_path: str, sql: str) -> StatementResult:
    """Run *sql* exactly as given, with no bound parameters."""
    async with get_connection(db_path) as db:
        with translate_errors():
            async with db.execute(sql) as cursor:
                rows = list(await cursor.fetchall())
                columns = [c[0] for c in cursor.description or ()]
                rowcount = cursor.rowcount
            await db.commit()
    return StatementResult(columns=columns, rows=rows, rowcount=rowcount)


async def fetch_existing_paths(db_path: str, paths: Sequence[str]) -> set[str]:
    if not paths:
        return set()
    existing: set[str] = set()
    async with get_connection(db_path) as db:
        with translate_errors():
            for batch in iter_batches(paths):
                query = build_in_query("SELECT path FROM items WHERE path IN ", batch)
                rows = await db.execute_fetchall(query.text, query.params)
                existing.update(str(r[0]) for r in rows)
    return existing


async def insert_item(db_path: str, *, path: str, title: str, extension: str) -> int:
    return await insert_returning_id(
        db_path,
        "INSERT INTO items(path, title, extension) VALUES(?,?,?) RETURNING id",
        (path, title, extension),
    )


async def fetch_item_rows(db_path: str, ids: Sequence[int]) -> List[Dict[str, Any]]:
    if not ids:
        return []
    out: List[Dict[str, Any]] = []
    async with get_connection(db_path) as db:
        with translate_errors():
            for batch in iter_batches(ids):
                query = build_in_query(
                    f"SELECT {ITEM_COLUMNS} FROM items WHERE id IN ",
                    batch,
                    " ORDER BY id ASC",
                )
                async with db.execute(query.text, query.params) as cursor:
                    columns = [c[0] for c in cursor.description]
                    out.extend(dict(zip(columns, row)) for row in await cursor.fetchall())
    return out


async def delete_items(db_path: str, ids: Iterable[Any]) -> List[int]:
    """Delete the given items and return the ids that were actually removed."""
    unique_ids = normalize_ids(ids)
    if not unique_ids:
        return []
    deleted: List[int] = []
    async with get_connection(db_path) as db:
        with translate_errors():
            for batch in iter_batches(unique_ids):
                query = build_in_query("DELETE FROM items WHERE id IN ", batch, " RETURNING id")
                rows = await db.execute_fetchall(query.text, query.params)
                deleted.extend(int(r[0]) for r in rows)
            await db.commit()
    logging.info(
        "delete_items",
        extra={"operation": "delete", "requested": len(unique_ids), "deleted": len(deleted)},
    )
    return sorted(deleted)
