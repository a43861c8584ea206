"""Async driver adapters.

Each supported database gets a pool adapter with the same small surface, so
the agent never branches on the database type:

    pool = await open_pool(config)
    async with pool.acquire() as conn:
        result = await conn.execute("UPDATE t SET a = ?", (1,))
        rows = await conn.fetch_all("SELECT * FROM t", ())
    await pool.close()

Drivers:
    - postgresql: asyncpg pool, ``$n`` placeholders, parameters become
      server_settings
    - mysql: aiomysql pool, ``?`` placeholders rewritten to ``%s``, parameters
      charset / autocommit / time_zone / connect_timeout
    - sqlite: one aiosqlite connection behind an asyncio.Lock, parameters are
      applied as PRAGMAs

Notes:
    - Rows are returned as dicts
    - Transactions are explicit: begin() / commit() / rollback()
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple, Type

import aiomysql
import aiosqlite
import asyncpg

from sqlagent.config import DatabaseConfig, DatabaseType
from sqlagent.errors import ConfigError, DatabaseConnectionError

logger = logging.getLogger(__name__)

_PRAGMA_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
_QMARK_RE = re.compile(r"\?\??")
_SQL_ISOLATION = {
    "read_uncommitted": "READ UNCOMMITTED",
    "read_committed": "READ COMMITTED",
    "repeatable_read": "REPEATABLE READ",
    "serializable": "SERIALIZABLE",
}
_SQLITE_BEGIN = {
    "deferred": "BEGIN DEFERRED",
    "immediate": "BEGIN IMMEDIATE",
    "exclusive": "BEGIN EXCLUSIVE",
}


@dataclass(frozen=True)
class ExecResult:
    """Outcome of an INSERT/UPDATE/DELETE."""

    rows_affected: int
    last_insert_id: Optional[int] = None
    status: str = ""


def normalize_isolation(isolation: Optional[str]) -> Optional[str]:
    """'Read Committed' / 'read-committed' -> 'read_committed'."""
    if isolation is None:
        return None
    return re.sub(r"[\s\-]+", "_", isolation.strip().lower())


class DriverConnection(ABC):
    """One acquired connection."""

    @abstractmethod
    async def execute(self, sql: str, params: Sequence[Any]) -> ExecResult: ...

    @abstractmethod
    async def fetch_one(self, sql: str, params: Sequence[Any]) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    async def fetch_all(self, sql: str, params: Sequence[Any]) -> List[Dict[str, Any]]: ...

    @abstractmethod
    async def begin(self, isolation: Optional[str] = None, readonly: bool = False) -> None: ...

    @abstractmethod
    async def commit(self) -> None: ...

    @abstractmethod
    async def rollback(self) -> None: ...


class DriverPool(ABC):
    """Pool adapter around a driver's own pool object."""

    database_type: DatabaseType
    # Exceptions the driver raises for database failures
    errors: Tuple[Type[BaseException], ...] = ()

    def __init__(self, raw: Any):
        self.raw = raw

    @classmethod
    @abstractmethod
    async def open(cls, config: DatabaseConfig) -> "DriverPool": ...

    @abstractmethod
    def acquire(self) -> "AsyncIterator[DriverConnection]": ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def server_version(self) -> str: ...

    @abstractmethod
    def stats(self) -> Dict[str, int]:
        """Pool size and idle connection count."""


# ============================================================================
# POSTGRESQL (asyncpg)
# ============================================================================

def _status_count(status: str) -> int:
    # "INSERT 0 3" / "UPDATE 2" / "DELETE 1"
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


class PostgresConnection(DriverConnection):
    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn
        self._tx = None

    async def execute(self, sql, params):
        status = await self.conn.execute(sql, *params)
        return ExecResult(rows_affected=_status_count(status), status=status)

    async def fetch_one(self, sql, params):
        row = await self.conn.fetchrow(sql, *params)
        return dict(row) if row else None

    async def fetch_all(self, sql, params):
        rows = await self.conn.fetch(sql, *params)
        return [dict(row) for row in rows]

    async def begin(self, isolation=None, readonly=False):
        kwargs = {"readonly": readonly}
        isolation = normalize_isolation(isolation)
        if isolation is not None:
            if isolation not in _SQL_ISOLATION:
                raise ConfigError(f"Unsupported isolation level: {isolation}")
            kwargs["isolation"] = isolation
        self._tx = self.conn.transaction(**kwargs)
        await self._tx.start()

    async def commit(self):
        tx, self._tx = self._tx, None
        await tx.commit()

    async def rollback(self):
        tx, self._tx = self._tx, None
        if tx is not None:
            await tx.rollback()


class PostgresPool(DriverPool):
    database_type = DatabaseType.POSTGRESQL
    errors = (asyncpg.PostgresError, asyncpg.InterfaceError)

    @classmethod
    async def open(cls, config):
        raw = await asyncpg.create_pool(
            host=config.host,
            port=config.port,
            user=config.user or None,
            password=config.password or None,
            database=config.name,
            min_size=config.min_pool_size,
            max_size=config.max_pool_size,
            command_timeout=config.command_timeout,
            max_inactive_connection_lifetime=config.max_inactive_connection_lifetime,
            server_settings=dict(config.parameters) or None,
        )
        return cls(raw)

    @asynccontextmanager
    async def acquire(self):
        async with self.raw.acquire() as conn:
            yield PostgresConnection(conn)

    async def close(self):
        await self.raw.close()

    async def server_version(self):
        async with self.raw.acquire() as conn:
            version = await conn.fetchval("SELECT version()")
        return version.split(",")[0]

    def stats(self):
        return {"pool_size": self.raw.get_size(), "free_connections": self.raw.get_idle_size()}


# ============================================================================
# MYSQL (aiomysql)
# ============================================================================

def to_pyformat(sql: str) -> str:
    """Rewrite ``?`` placeholders into PyMySQL's ``%s`` and escape ``%``.

    An escaped ``??`` becomes a literal ``?``.
    """
    return _QMARK_RE.sub(lambda m: "?" if m.group() == "??" else "%s", sql.replace("%", "%%"))


def mysql_connect_kwargs(config: DatabaseConfig) -> Dict[str, Any]:
    """aiomysql connect() keyword arguments for a mysql config."""
    kwargs: Dict[str, Any] = {
        "host": config.host,
        "port": config.port,
        "user": config.user,
        "password": config.password,
        "db": config.name,
    }
    for key, value in config.parameters.items():
        if key == "charset":
            kwargs["charset"] = value.split(",")[0]
        elif key == "autocommit":
            kwargs["autocommit"] = value.lower() in ("1", "true", "yes", "on")
        elif key == "time_zone":
            kwargs["init_command"] = f"SET time_zone = '{value}'"
        elif key == "connect_timeout":
            kwargs["connect_timeout"] = float(value)
        else:
            logger.warning(f"Ignoring unsupported mysql parameter: {key}")
    return kwargs


class MySQLConnection(DriverConnection):
    def __init__(self, conn):
        self.conn = conn

    async def execute(self, sql, params):
        async with self.conn.cursor() as cur:
            rows = await cur.execute(to_pyformat(sql), tuple(params))
            return ExecResult(rows_affected=rows, last_insert_id=cur.lastrowid or None)

    async def fetch_one(self, sql, params):
        async with self.conn.cursor(aiomysql.DictCursor) as cur:
            await cur.execute(to_pyformat(sql), tuple(params))
            return await cur.fetchone()

    async def fetch_all(self, sql, params):
        async with self.conn.cursor(aiomysql.DictCursor) as cur:
            await cur.execute(to_pyformat(sql), tuple(params))
            return list(await cur.fetchall())

    async def begin(self, isolation=None, readonly=False):
        async with self.conn.cursor() as cur:
            isolation = normalize_isolation(isolation)
            if isolation is not None:
                if isolation not in _SQL_ISOLATION:
                    raise ConfigError(f"Unsupported isolation level: {isolation}")
                await cur.execute(f"SET TRANSACTION ISOLATION LEVEL {_SQL_ISOLATION[isolation]}")
            await cur.execute("START TRANSACTION READ ONLY" if readonly else "START TRANSACTION")

    async def commit(self):
        await self.conn.commit()

    async def rollback(self):
        await self.conn.rollback()


class MySQLPool(DriverPool):
    database_type = DatabaseType.MYSQL
    errors = (aiomysql.Error,)

    @classmethod
    async def open(cls, config):
        kwargs = mysql_connect_kwargs(config)
        raw = await aiomysql.create_pool(
            minsize=config.min_pool_size,
            maxsize=config.max_pool_size,
            pool_recycle=int(config.max_inactive_connection_lifetime),
            **kwargs,
        )
        return cls(raw)

    @asynccontextmanager
    async def acquire(self):
        async with self.raw.acquire() as conn:
            yield MySQLConnection(conn)

    async def close(self):
        self.raw.close()
        await self.raw.wait_closed()

    async def server_version(self):
        async with self.raw.acquire() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT VERSION()")
                row = await cur.fetchone()
        return f"MySQL {row[0]}"

    def stats(self):
        return {"pool_size": self.raw.size, "free_connections": self.raw.freesize}


# ============================================================================
# SQLITE (aiosqlite)
# ============================================================================

class SQLiteConnection(DriverConnection):
    def __init__(self, conn: aiosqlite.Connection):
        self.conn = conn

    async def execute(self, sql, params):
        cursor = await self.conn.execute(sql, tuple(params))
        try:
            return ExecResult(rows_affected=cursor.rowcount, last_insert_id=cursor.lastrowid or None)
        finally:
            await cursor.close()

    async def fetch_one(self, sql, params):
        cursor = await self.conn.execute(sql, tuple(params))
        try:
            row = await cursor.fetchone()
        finally:
            await cursor.close()
        return dict(row) if row else None

    async def fetch_all(self, sql, params):
        cursor = await self.conn.execute(sql, tuple(params))
        try:
            rows = await cursor.fetchall()
        finally:
            await cursor.close()
        return [dict(row) for row in rows]

    async def begin(self, isolation=None, readonly=False):
        statement = "BEGIN"
        isolation = normalize_isolation(isolation)
        if isolation is not None:
            if isolation not in _SQLITE_BEGIN:
                raise ConfigError(f"Unsupported sqlite transaction mode: {isolation}")
            statement = _SQLITE_BEGIN[isolation]
        if readonly:
            logger.debug("sqlite has no read-only transactions, starting a normal one")
        await self.conn.execute(statement)

    async def commit(self):
        await self.conn.execute("COMMIT")

    async def rollback(self):
        if self.conn.in_transaction:
            await self.conn.execute("ROLLBACK")


class SQLitePool(DriverPool):
    """A single shared connection; callers queue on a lock."""

    database_type = DatabaseType.SQLITE
    errors = (aiosqlite.Error,)

    def __init__(self, raw: aiosqlite.Connection):
        super().__init__(raw)
        self._lock = asyncio.Lock()

    @classmethod
    async def open(cls, config):
        for key in config.parameters:
            if not _PRAGMA_RE.match(key):
                raise ConfigError(f"Invalid sqlite pragma name: {key!r}")

        raw = await aiosqlite.connect(config.name, isolation_level=None)
        raw.row_factory = aiosqlite.Row
        try:
            for key, value in config.parameters.items():
                await raw.execute(f"PRAGMA {key} = {value}")
        except aiosqlite.Error:
            await raw.close()
            raise
        return cls(raw)

    @asynccontextmanager
    async def acquire(self):
        async with self._lock:
            yield SQLiteConnection(self.raw)

    async def close(self):
        await self.raw.close()

    async def server_version(self):
        async with self.acquire() as conn:
            row = await conn.fetch_one("SELECT sqlite_version() AS version", ())
        return f"SQLite {row['version']}"

    def stats(self):
        return {"pool_size": 1, "free_connections": 0 if self._lock.locked() else 1}


POOL_CLASSES: Dict[DatabaseType, Type[DriverPool]] = {
    DatabaseType.POSTGRESQL: PostgresPool,
    DatabaseType.MYSQL: MySQLPool,
    DatabaseType.SQLITE: SQLitePool,
}


async def open_pool(config: DatabaseConfig) -> DriverPool:
    """
    Open the driver pool for a config.

    Raises:
        DatabaseConnectionError: If the driver cannot connect or authenticate
    """
    pool_cls = POOL_CLASSES[config.type]
    try:
        return await pool_cls.open(config)
    except (OSError, asyncio.TimeoutError, *pool_cls.errors) as e:
        logger.error(f"✗ Failed to open {config.type.value} pool: {e}", exc_info=True)
        raise DatabaseConnectionError(f"Cannot connect to {config!r}: {e}") from e
