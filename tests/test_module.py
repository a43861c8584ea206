"""Tests for the process-wide agent (sqlagent/module.py).

This module tests:
- Once-only initialization, including concurrent first callers
- Retry after a failed initialization
- init_from_config / init_from_env
- Module-level helpers before and after init
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

import sqlagent
from sqlagent import module
from sqlagent.config import DatabaseConfig
from sqlagent.errors import ConfigError, ConfigNotFoundError, DatabaseConnectionError, NotInitializedError
from tests.fixtures.fake_driver import FakePool


def mysql_config() -> DatabaseConfig:
    return DatabaseConfig(type="mysql", name="dbName", host="localhost", user="user", password="passwd")


# ==================== Not Initialized ====================


@pytest.mark.unit
def test_get_agent_not_initialized():
    with pytest.raises(NotInitializedError, match="not initialized"):
        module.get_agent()
    assert not module.is_initialized()


@pytest.mark.unit
def test_helpers_require_init():
    with pytest.raises(NotInitializedError):
        sqlagent.insert_builder("t")
    with pytest.raises(NotInitializedError):
        sqlagent.db()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_async_helpers_require_init():
    with pytest.raises(NotInitializedError):
        await sqlagent.execute(sqlagent.delete("t"))

    health = await sqlagent.check_health()
    assert health["status"] == "unavailable"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_close_when_not_initialized():
    await module.close()
    await module.close()


# ==================== Once-only Init ====================


@pytest.mark.asyncio
@pytest.mark.unit
async def test_concurrent_init_constructs_once():
    """N concurrent first callers open exactly one pool."""
    async def slow_open(config):
        await asyncio.sleep(0.01)
        return FakePool()

    with patch("sqlagent.agent.open_pool", AsyncMock(side_effect=slow_open)) as mock_open:
        agents = await asyncio.gather(*(module.init(mysql_config()) for _ in range(20)))

    mock_open.assert_awaited_once()
    assert all(agent is agents[0] for agent in agents)
    assert module.get_agent() is agents[0]


@pytest.mark.unit
def test_concurrent_init_across_event_loops():
    """Init, close and init again under separate asyncio.run() calls."""
    async def slow_open(config):
        await asyncio.sleep(0.01)
        return FakePool()

    async def cycle():
        agents = await asyncio.gather(*(module.init(mysql_config()) for _ in range(3)))
        assert all(agent is agents[0] for agent in agents)
        await module.close()
        return agents[0]

    with patch("sqlagent.agent.open_pool", AsyncMock(side_effect=slow_open)) as mock_open:
        first = asyncio.run(cycle())
        second = asyncio.run(cycle())

    assert first is not second
    assert mock_open.await_count == 2
    assert not module.is_initialized()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_second_init_is_noop():
    with patch("sqlagent.agent.open_pool", AsyncMock(side_effect=[FakePool(), FakePool()])) as mock_open:
        first = await module.init(mysql_config())
        second = await module.init(DatabaseConfig(type="postgresql", name="other", host="h"))

    assert first is second
    assert mock_open.await_count == 1
    assert second.database_type.value == "mysql"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_init_merges_mysql_defaults():
    with patch("sqlagent.agent.open_pool", AsyncMock(return_value=FakePool())) as mock_open:
        agent = await module.init(mysql_config())

    opened_config = mock_open.await_args.args[0]
    assert opened_config.parameters["charset"] == "utf8mb4"
    assert opened_config.parameters["autocommit"] == "true"
    assert agent.config is opened_config


@pytest.mark.asyncio
@pytest.mark.unit
async def test_failed_init_can_be_retried():
    failing = AsyncMock(side_effect=DatabaseConnectionError("refused"))
    with patch("sqlagent.agent.open_pool", failing):
        with pytest.raises(DatabaseConnectionError):
            await module.init(mysql_config())

    assert not module.is_initialized()

    with patch("sqlagent.agent.open_pool", AsyncMock(return_value=FakePool())):
        agent = await module.init(mysql_config())

    assert module.get_agent() is agent


@pytest.mark.asyncio
@pytest.mark.unit
async def test_init_none_config():
    with pytest.raises(ConfigError):
        await module.init(None)
    assert not module.is_initialized()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_close_resets_agent():
    pool = FakePool()
    with patch("sqlagent.agent.open_pool", AsyncMock(return_value=pool)):
        await module.init(mysql_config())

    await module.close()

    assert pool.closed
    assert not module.is_initialized()


# ==================== Config File Init ====================


@pytest.mark.asyncio
@pytest.mark.integration
async def test_init_from_config_and_helpers(tmp_path, config_writer):
    path = config_writer(tmp_path, "database", {"type": "sqlite", "name": str(tmp_path / "app.db")}, suffix=".yaml")

    agent = await sqlagent.init_from_config(path)
    try:
        assert sqlagent.get_agent() is agent
        assert sqlagent.db() is agent.raw_pool

        async with agent.pool.acquire() as conn:
            await conn.execute("CREATE TABLE notes (id INTEGER PRIMARY KEY, body TEXT)", ())

        await sqlagent.execute(sqlagent.insert_builder("notes").columns("body").values("hello"))

        async def add_and_fail(tx):
            await tx.execute(sqlagent.insert_builder("notes").columns("body").values("lost"))
            raise RuntimeError("nope")

        with pytest.raises(RuntimeError):
            await sqlagent.transaction(add_and_fail)

        rows = await sqlagent.select(sqlagent.select_builder("body").from_("notes"))
        assert rows == [{"body": "hello"}]
        assert (await sqlagent.check_health())["status"] == "healthy"
    finally:
        await sqlagent.close()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_init_from_env_not_found(in_tmp_cwd):
    with pytest.raises(ConfigNotFoundError):
        await sqlagent.init_from_env()


@pytest.mark.asyncio
@pytest.mark.integration
async def test_init_from_env_uses_db_config(in_tmp_cwd, monkeypatch, config_writer):
    path = config_writer(in_tmp_cwd / "config", "database-test", {"type": "sqlite", "name": str(in_tmp_cwd / "env.db")})
    monkeypatch.setenv("DB_LABEL", "test")

    agent = await sqlagent.init_from_env()
    try:
        assert agent.config.name == str(in_tmp_cwd / "env.db")
        assert path.exists()
    finally:
        await sqlagent.close()
