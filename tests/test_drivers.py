"""Unit tests for driver adapters (sqlagent/drivers.py).

This module tests:
- Placeholder and parameter translation helpers
- Pool construction arguments for asyncpg and aiomysql
- Connection failures surfacing as DatabaseConnectionError
- The sqlite adapter against a real database file
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from sqlagent.config import DatabaseConfig
from sqlagent.drivers import (
    MySQLPool,
    PostgresPool,
    SQLitePool,
    _status_count,
    mysql_connect_kwargs,
    normalize_isolation,
    open_pool,
    to_pyformat,
)
from sqlagent.errors import ConfigError, DatabaseConnectionError
from sqlagent.query_builders import update


# ==================== Helper Tests ====================


@pytest.mark.unit
def test_to_pyformat():
    assert to_pyformat("SELECT * FROM t WHERE a = ? AND b = ?") == "SELECT * FROM t WHERE a = %s AND b = %s"
    assert to_pyformat("SELECT * FROM t WHERE name LIKE ?") == "SELECT * FROM t WHERE name LIKE %s"
    assert to_pyformat("SELECT '100%' FROM t WHERE a = ?") == "SELECT '100%%' FROM t WHERE a = %s"


@pytest.mark.unit
def test_to_pyformat_escaped_question_mark():
    assert to_pyformat("SELECT * FROM t WHERE doc ?? 'k' AND id = ?") == "SELECT * FROM t WHERE doc ? 'k' AND id = %s"

    sql, params = update("docs").set("body", "x").where("meta ?? 'draft' AND id = ?", 7).build()
    rewritten = to_pyformat(sql)

    assert rewritten == "UPDATE docs SET body = %s WHERE (meta ? 'draft' AND id = %s)"
    assert rewritten.count("%s") == len(params)


@pytest.mark.unit
@pytest.mark.parametrize("status,expected", [
    ("INSERT 0 3", 3),
    ("UPDATE 2", 2),
    ("DELETE 0", 0),
    ("CREATE TABLE", 0),
    ("", 0),
])
def test_status_count(status, expected):
    assert _status_count(status) == expected


@pytest.mark.unit
def test_normalize_isolation():
    assert normalize_isolation(None) is None
    assert normalize_isolation("Read Committed") == "read_committed"
    assert normalize_isolation("repeatable-read") == "repeatable_read"
    assert normalize_isolation(" SERIALIZABLE ") == "serializable"


@pytest.mark.unit
def test_mysql_connect_kwargs_defaults():
    config = DatabaseConfig(
        type="mysql", name="dbName", host="localhost", user="user", password="passwd",
    ).with_default_parameters()

    kwargs = mysql_connect_kwargs(config)

    assert kwargs["host"] == "localhost"
    assert kwargs["port"] == 3306
    assert kwargs["db"] == "dbName"
    assert kwargs["charset"] == "utf8mb4"
    assert kwargs["autocommit"] is True
    assert kwargs["init_command"] == "SET time_zone = '+08:00'"


@pytest.mark.unit
def test_mysql_connect_kwargs_overrides_and_unknown():
    config = DatabaseConfig(
        type="mysql", name="db", host="h",
        parameters={"charset": "latin1,utf8", "autocommit": False, "connect_timeout": "5", "parseTime": "true"},
    )

    kwargs = mysql_connect_kwargs(config)

    assert kwargs["charset"] == "latin1"
    assert kwargs["autocommit"] is False
    assert kwargs["connect_timeout"] == 5.0
    assert "parseTime" not in kwargs
    assert "init_command" not in kwargs


# ==================== Pool Construction Tests ====================


@pytest.mark.asyncio
@pytest.mark.unit
async def test_postgres_pool_arguments():
    config = DatabaseConfig(
        type="postgresql", name="app", host="db.internal", user="svc", password="pw",
        parameters={"application_name": "sqlagent"}, min_pool_size=2, max_pool_size=8, command_timeout=30.0,
    )
    raw = MagicMock()

    with patch("sqlagent.drivers.asyncpg.create_pool", AsyncMock(return_value=raw)) as mock_create:
        pool = await PostgresPool.open(config)

    assert pool.raw is raw
    kwargs = mock_create.await_args.kwargs
    assert kwargs["host"] == "db.internal"
    assert kwargs["port"] == 5432
    assert kwargs["database"] == "app"
    assert kwargs["min_size"] == 2
    assert kwargs["max_size"] == 8
    assert kwargs["command_timeout"] == 30.0
    assert kwargs["server_settings"] == {"application_name": "sqlagent"}


@pytest.mark.asyncio
@pytest.mark.unit
async def test_mysql_pool_arguments():
    config = DatabaseConfig(type="mysql", name="app", host="localhost", max_pool_size=4)

    with patch("sqlagent.drivers.aiomysql.create_pool", AsyncMock(return_value=MagicMock())) as mock_create:
        pool = await MySQLPool.open(config)

    assert isinstance(pool, MySQLPool)
    kwargs = mock_create.await_args.kwargs
    assert kwargs["minsize"] == 1
    assert kwargs["maxsize"] == 4
    assert kwargs["pool_recycle"] == 300
    assert kwargs["db"] == "app"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_open_pool_wraps_connection_errors():
    config = DatabaseConfig(type="postgresql", name="app", host="localhost")

    with patch("sqlagent.drivers.asyncpg.create_pool", AsyncMock(side_effect=OSError("Connection refused"))):
        with pytest.raises(DatabaseConnectionError, match="Connection refused"):
            await open_pool(config)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_sqlite_rejects_bad_pragma_name(tmp_path):
    config = DatabaseConfig(type="sqlite", name=str(tmp_path / "x.db"), parameters={"foreign_keys; DROP": "1"})

    with pytest.raises(ConfigError, match="pragma"):
        await open_pool(config)


# ==================== sqlite Adapter Tests ====================


@pytest.mark.asyncio
@pytest.mark.integration
async def test_sqlite_pool_round_trip(sqlite_config):
    pool = await open_pool(sqlite_config)
    try:
        assert isinstance(pool, SQLitePool)
        assert (await pool.server_version()).startswith("SQLite ")

        async with pool.acquire() as conn:
            pragma = await conn.fetch_one("PRAGMA foreign_keys", ())
            assert pragma == {"foreign_keys": 1}

            await conn.execute("CREATE TABLE kv (k TEXT PRIMARY KEY, v INTEGER)", ())
            result = await conn.execute("INSERT INTO kv (k, v) VALUES (?, ?)", ("a", 1))
            assert result.rows_affected == 1
            assert result.last_insert_id == 1

            await conn.begin(isolation="immediate")
            await conn.execute("INSERT INTO kv (k, v) VALUES (?, ?)", ("b", 2))
            await conn.rollback()

            rows = await conn.fetch_all("SELECT k, v FROM kv ORDER BY k", ())
            assert rows == [{"k": "a", "v": 1}]

            # No open transaction: rollback is a no-op
            await conn.rollback()

        assert pool.stats() == {"pool_size": 1, "free_connections": 1}
    finally:
        await pool.close()


@pytest.mark.asyncio
@pytest.mark.integration
async def test_sqlite_rejects_unknown_transaction_mode(sqlite_config):
    pool = await open_pool(sqlite_config)
    try:
        async with pool.acquire() as conn:
            with pytest.raises(ConfigError):
                await conn.begin(isolation="serializable")
    finally:
        await pool.close()
