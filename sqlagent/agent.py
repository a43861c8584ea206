"""SqlAgent: one pooled database handle plus query helpers.

Usage:
    agent = await SqlAgent.connect(load_config("database.yaml"))

    await agent.execute(agent.insert_builder("users").columns("name").values("alice"))
    user = await agent.get(agent.select_builder("*").from_("users").where(Eq({"id": 1})))

    async def transfer(tx):
        await tx.execute(agent.update_builder("accounts").set("balance", Expr("balance - ?", 10)).where("id = ?", 1))
        await tx.execute(agent.update_builder("accounts").set("balance", Expr("balance + ?", 10)).where("id = ?", 2))

    await agent.transaction(transfer)
    await agent.close()

Notes:
    - Builders handed out by the agent already carry the placeholder style of
      its database ($n for postgresql, ? otherwise)
    - Every execution helper accepts ``timeout`` (seconds); task cancellation
      propagates unchanged
    - The sqlite adapter has a single connection: do not call pool level
      helpers from inside a transaction on the same agent, use the
      transaction's own helpers
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Type, TypeVar

from sqlagent.config import DatabaseConfig, DatabaseType
from sqlagent.drivers import DriverConnection, DriverPool, ExecResult, open_pool
from sqlagent.errors import ConfigError, DatabaseConnectionError, ExecutionError
from sqlagent.mapper import DEFAULT_MAPPER, ColumnMapper, split_columns
from sqlagent.query_builders import (
    DeleteQuery,
    InsertQuery,
    PlaceholderFormat,
    Query,
    SelectQuery,
    UpdateQuery,
    delete,
    insert,
    render,
    select,
    update,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _with_timeout(coro: Awaitable[T], timeout: Optional[float]) -> T:
    if timeout is None:
        return await coro
    return await asyncio.wait_for(coro, timeout)


def _scan(mapper: ColumnMapper, row: Optional[Dict[str, Any]], into: Optional[type]):
    if row is None or into is None:
        return row
    return mapper.from_row(into, row)


class Transaction:
    """An open transaction on one connection.

    Obtained from SqlAgent.transaction() or SqlAgent.begin(); not to be shared
    between tasks.
    """

    def __init__(self, agent: "SqlAgent", conn: DriverConnection):
        self.agent = agent
        self.conn = conn
        self.closed = False

    async def _run(self, op: str, query, into=None, timeout=None):
        if self.closed:
            raise ExecutionError("Transaction is already finished")
        sql, params = render(query)
        if op == "execute":
            coro = self.conn.execute(sql, params)
        elif op == "get":
            coro = self.conn.fetch_one(sql, params)
        else:
            coro = self.conn.fetch_all(sql, params)
        return await self.agent._guard(f"tx_{op}", sql, coro, timeout)

    async def execute(self, query, timeout: Optional[float] = None) -> ExecResult:
        """Run an INSERT/UPDATE/DELETE builder inside the transaction."""
        return await self._run("execute", query, timeout=timeout)

    async def get(self, query, into: Optional[Type[T]] = None, timeout: Optional[float] = None):
        """Fetch one row (dict or ``into`` instance) or None."""
        row = await self._run("get", query, timeout=timeout)
        return _scan(self.agent.mapper, row, into)

    async def select(self, query, into: Optional[Type[T]] = None, timeout: Optional[float] = None) -> List[Any]:
        """Fetch all rows as dicts or ``into`` instances."""
        rows = await self._run("select", query, timeout=timeout)
        return [_scan(self.agent.mapper, row, into) for row in rows]


class SqlAgent:
    """Owns one driver pool and hands out builders and execution helpers."""

    def __init__(self, pool: DriverPool, config: DatabaseConfig, mapper: ColumnMapper = DEFAULT_MAPPER):
        self._pool = pool
        self.config = config
        self.mapper = mapper
        self.closed = False
        if config.type == DatabaseType.POSTGRESQL:
            self.placeholder = PlaceholderFormat.DOLLAR
        else:
            self.placeholder = PlaceholderFormat.QUESTION

    @classmethod
    async def connect(cls, config: Optional[DatabaseConfig]) -> "SqlAgent":
        """
        Open a pool for ``config`` and verify it with one round trip.

        Args:
            config: Database config

        Returns:
            SqlAgent: A connected agent

        Raises:
            ConfigError: If config is None or invalid
            DatabaseConnectionError: If the driver cannot connect
        """
        if config is None:
            raise ConfigError("Database config is required")
        if not isinstance(config, DatabaseConfig):
            raise ConfigError(f"Expected DatabaseConfig, got {type(config).__name__}")
        config.validate()

        logger.info(f"Initializing connection pool with config: {config}")
        pool = await open_pool(config)
        try:
            version = await pool.server_version()
        except (OSError, asyncio.TimeoutError, *pool.errors) as e:
            logger.error(f"✗ Database ping failed: {e}", exc_info=True)
            await pool.close()
            raise DatabaseConnectionError(f"Cannot reach database {config!r}: {e}") from e

        logger.info(f"✓ Database pool initialized: {version}")
        return cls(pool, config)

    def __repr__(self) -> str:
        return f"SqlAgent({self.config!r})"

    @property
    def pool(self) -> DriverPool:
        return self._pool

    @property
    def raw_pool(self) -> Any:
        """The driver's own pool (asyncpg.Pool, aiomysql.Pool or aiosqlite.Connection)."""
        return self._pool.raw

    @property
    def database_type(self) -> DatabaseType:
        return self.config.type

    async def close(self) -> None:
        """Close the pool. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        logger.info("Closing database connection pool...")
        await self._pool.close()
        logger.info("✓ Database pool closed")

    # ------------------------------------------------------------------
    # Builders
    # ------------------------------------------------------------------

    def insert_builder(self, into: str) -> InsertQuery:
        return insert(into, self.placeholder)

    def update_builder(self, table: str) -> UpdateQuery:
        return update(table, self.placeholder)

    def delete_builder(self, table: str) -> DeleteQuery:
        return delete(table, self.placeholder)

    def select_builder(self, *columns: str) -> SelectQuery:
        return select(*columns, fmt=self.placeholder)

    # ------------------------------------------------------------------
    # Model reflection
    # ------------------------------------------------------------------

    def set_mapper(self, mapper: ColumnMapper) -> None:
        """Replace the column mapper (default: ``db`` metadata, lower-cased names)."""
        self.mapper = mapper

    def model_columns(self, model: Any, *ignore_columns: str) -> List[str]:
        """
        Column names of a dataclass type or instance.

        ignore_columns are compared against mapped column names.
        """
        return self.mapper.columns(model, ignore_columns)

    def insert_model_builder(self, into: str, model: Any, *ignore_columns: str) -> InsertQuery:
        """INSERT builder with one row taken from the fields of ``model``."""
        columns, values = split_columns(self.mapper.values(model, ignore_columns))
        builder = self.insert_builder(into)
        if columns:
            builder = builder.columns(*columns).values(*values)
        return builder

    def set_update_columns(self, update_builder: UpdateQuery, model: Any, *ignore_columns: str) -> UpdateQuery:
        """Add ``SET column = value`` for every mapped field of ``model``."""
        return update_builder.set_map(self.mapper.values(model, ignore_columns))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _guard(self, op: str, sql: str, coro: Awaitable[T], timeout: Optional[float]) -> T:
        try:
            return await _with_timeout(coro, timeout)
        except self._pool.errors as e:
            logger.error(f"Error in {op}: {e}", exc_info=True)
            logger.error(f"Query: {sql}")
            raise ExecutionError(f"{op} failed: {e}", sql=sql) from e

    async def _on_pool(self, op: str, query: Query, timeout: Optional[float]):
        sql, params = render(query)

        async def run():
            async with self._pool.acquire() as conn:
                if op == "execute":
                    return await conn.execute(sql, params)
                if op == "get":
                    return await conn.fetch_one(sql, params)
                return await conn.fetch_all(sql, params)

        return await self._guard(op, sql, run(), timeout)

    async def execute(self, query: Query, timeout: Optional[float] = None) -> ExecResult:
        """
        Execute an INSERT/UPDATE/DELETE builder.

        Returns:
            ExecResult with rows_affected and last_insert_id

        Raises:
            QueryBuildError: If the builder cannot render
            ExecutionError: If the database reports a failure
        """
        return await self._on_pool("execute", query, timeout)

    async def get(self, query: Query, into: Optional[Type[T]] = None, timeout: Optional[float] = None):
        """
        Fetch one row.

        Returns:
            dict, an ``into`` dataclass instance, or None when no row matches
        """
        row = await self._on_pool("get", query, timeout)
        return _scan(self.mapper, row, into)

    async def select(self, query: Query, into: Optional[Type[T]] = None, timeout: Optional[float] = None) -> List[Any]:
        """Fetch all rows as dicts or ``into`` instances (empty list if none)."""
        rows = await self._on_pool("select", query, timeout)
        return [_scan(self.mapper, row, into) for row in rows]

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def _rollback(self, conn: DriverConnection) -> None:
        try:
            await conn.rollback()
        except self._pool.errors as e:
            logger.error(f"Rollback failed: {e}", exc_info=True)

    @asynccontextmanager
    async def begin(self, isolation: Optional[str] = None, readonly: bool = False) -> AsyncIterator[Transaction]:
        """
        Async context manager for database transactions.

        Example:
            async with agent.begin() as tx:
                await tx.execute(agent.insert_builder("logs").columns("msg").values("hi"))
            # Commits automatically on success

        Notes:
            - Commits on normal exit
            - Rolls back on any exception, cancellation, or failed commit
        """
        async with self._pool.acquire() as conn:
            try:
                await conn.begin(isolation, readonly)
            except self._pool.errors as e:
                raise ExecutionError(f"Cannot begin transaction: {e}") from e

            tx = Transaction(self, conn)
            committed = False
            try:
                yield tx
                try:
                    await conn.commit()
                except self._pool.errors as e:
                    raise ExecutionError(f"Commit failed: {e}") from e
                committed = True
            except Exception as e:
                logger.error(f"Transaction failed: {e}", exc_info=True)
                raise
            finally:
                tx.closed = True
                if not committed:
                    await self._rollback(conn)

    async def transaction(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        isolation: Optional[str] = None,
        readonly: bool = False,
        timeout: Optional[float] = None,
    ) -> T:
        """
        Run ``fn(tx)`` in a transaction.

        Commits only when fn returns normally; any exception (including a
        failed commit) rolls back and propagates.

        Returns:
            Whatever fn returned
        """
        async with self.begin(isolation=isolation, readonly=readonly) as tx:
            return await _with_timeout(fn(tx), timeout)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def check_health(self) -> Dict[str, Any]:
        """
        Check the health and status of the pool.

        Returns:
            dict: status ("healthy", "degraded" or "unavailable") plus pool stats
        """
        if self.closed:
            return {"status": "unavailable", "error": "Pool is closed"}

        try:
            async with self._pool.acquire() as conn:
                await conn.fetch_one("SELECT 1 AS ok", ())
            return {
                "status": "healthy",
                "database": self.config.type.value,
                **self._pool.stats(),
                "min_size": self.config.min_pool_size,
                "max_size": self.config.max_pool_size,
            }
        except (OSError, asyncio.TimeoutError, *self._pool.errors) as e:
            logger.error(f"Pool health check failed: {e}", exc_info=True)
            return {"status": "degraded", "error": str(e), **self._pool.stats()}


async def create_agent(config: Optional[DatabaseConfig]) -> SqlAgent:
    """Shorthand for SqlAgent.connect(config)."""
    return await SqlAgent.connect(config)


# ============================================================================
# TRANSACTION-SCOPED HELPERS
# ============================================================================

async def tx_execute(tx: Transaction, query: Query, timeout: Optional[float] = None) -> ExecResult:
    """Execute an INSERT/UPDATE/DELETE builder inside ``tx``."""
    return await tx.execute(query, timeout=timeout)


async def tx_get(tx: Transaction, query: Query, into: Optional[type] = None, timeout: Optional[float] = None):
    """Fetch one row inside ``tx``."""
    return await tx.get(query, into=into, timeout=timeout)


async def tx_select(tx: Transaction, query: Query, into: Optional[type] = None, timeout: Optional[float] = None):
    """Fetch all rows inside ``tx``."""
    return await tx.select(query, into=into, timeout=timeout)
