"""Process-wide SqlAgent and module-level helpers.

The first successful init*() call builds the agent; later calls are no-ops
that return it. Concurrent first callers are serialized on a lock, so only
one pool is ever opened. A failed init leaves nothing behind and may be
retried.

Usage:
    # On startup
    await sqlagent.init_from_env()

    # Anywhere
    rows = await sqlagent.select(sqlagent.select_builder("*").from_("users"))

    # On shutdown
    await sqlagent.close()

Code that can take the agent as an argument should prefer an explicit
SqlAgent over these helpers.

Pool limits are fixed when the agent is built: set min_pool_size,
max_pool_size and max_inactive_connection_lifetime on the DatabaseConfig.
"""

import asyncio
import logging
import os
from typing import Any, Awaitable, Callable, List, Optional, Type, TypeVar, Union

from sqlagent.agent import SqlAgent, Transaction
from sqlagent.config import DatabaseConfig, detect_config, load_config
from sqlagent.drivers import ExecResult
from sqlagent.errors import ConfigNotFoundError, NotInitializedError
from sqlagent.mapper import ColumnMapper
from sqlagent.query_builders import DeleteQuery, InsertQuery, Query, SelectQuery, UpdateQuery

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Global agent singleton
_agent: Optional[SqlAgent] = None
_init_lock: Optional[asyncio.Lock] = None
_init_lock_loop: Optional[asyncio.AbstractEventLoop] = None


def _get_init_lock() -> asyncio.Lock:
    # A lock is bound to the loop it first waits on; asyncio.run() makes a new one each time
    global _init_lock, _init_lock_loop

    loop = asyncio.get_running_loop()
    if _init_lock is None or _init_lock_loop is not loop:
        _init_lock = asyncio.Lock()
        _init_lock_loop = loop
    return _init_lock


async def init(config: Optional[DatabaseConfig]) -> SqlAgent:
    """
    Initialize the module agent with a database config.

    mysql configs get their default parameters merged in first.

    Returns:
        SqlAgent: The module agent (the existing one if already initialized)

    Raises:
        ConfigError: If config is None or invalid
        DatabaseConnectionError: If the database cannot be reached
    """
    global _agent

    if _agent is not None:
        return _agent

    async with _get_init_lock():
        if _agent is not None:
            logger.info("SqlAgent already initialized, returning existing agent")
            return _agent
        if config is not None and isinstance(config, DatabaseConfig):
            config = config.with_default_parameters()
        _agent = await SqlAgent.connect(config)
        return _agent


async def init_from_config(cfg_file: Union[str, os.PathLike]) -> SqlAgent:
    """
    Initialize the module agent from a config file.

    Args:
        cfg_file: Config file path; .yaml/.yml decode as YAML, anything else JSON
    """
    if _agent is not None:
        return _agent
    return await init(load_config(cfg_file))


async def init_from_env() -> SqlAgent:
    """
    Initialize the module agent from the first config file found.

    DB_CONFIG names the file directly; otherwise ``database.[json|yaml|yml]``
    (``database-$DB_LABEL.*`` when DB_LABEL is set) is searched for in
    ./ ./config ./../ ./../config ./../../ ./../../config

    Raises:
        ConfigNotFoundError: If no config file is found
    """
    if _agent is not None:
        return _agent
    cfg_file = detect_config()
    if cfg_file is None:
        raise ConfigNotFoundError()
    return await init_from_config(cfg_file)


def get_agent() -> SqlAgent:
    """
    Get the module agent.

    Raises:
        NotInitializedError: If init() has not completed yet
    """
    if _agent is None:
        raise NotInitializedError("SqlAgent not initialized. Call sqlagent.init() on startup.")
    return _agent


def is_initialized() -> bool:
    return _agent is not None


async def close() -> None:
    """Close the module agent. Safe to call multiple times."""
    global _agent

    if _agent is None:
        logger.info("SqlAgent already closed or not initialized")
        return
    agent, _agent = _agent, None
    await agent.close()


# ============================================================================
# MODULE-LEVEL HELPERS
# ============================================================================

def db() -> Any:
    """The driver pool held by the module agent."""
    return get_agent().raw_pool


async def transaction(
    fn: Callable[[Transaction], Awaitable[T]],
    isolation: Optional[str] = None,
    readonly: bool = False,
    timeout: Optional[float] = None,
) -> T:
    return await get_agent().transaction(fn, isolation=isolation, readonly=readonly, timeout=timeout)


def begin(isolation: Optional[str] = None, readonly: bool = False):
    return get_agent().begin(isolation=isolation, readonly=readonly)


def insert_builder(into: str) -> InsertQuery:
    return get_agent().insert_builder(into)


def update_builder(table: str) -> UpdateQuery:
    return get_agent().update_builder(table)


def delete_builder(table: str) -> DeleteQuery:
    return get_agent().delete_builder(table)


def select_builder(*columns: str) -> SelectQuery:
    return get_agent().select_builder(*columns)


def insert_model_builder(into: str, model: Any, *ignore_columns: str) -> InsertQuery:
    return get_agent().insert_model_builder(into, model, *ignore_columns)


def set_update_columns(update_builder: UpdateQuery, model: Any, *ignore_columns: str) -> UpdateQuery:
    return get_agent().set_update_columns(update_builder, model, *ignore_columns)


def set_mapper(mapper: ColumnMapper) -> None:
    get_agent().set_mapper(mapper)


def model_columns(model: Any, *ignore_columns: str) -> List[str]:
    return get_agent().model_columns(model, *ignore_columns)


async def execute(query: Query, timeout: Optional[float] = None) -> ExecResult:
    return await get_agent().execute(query, timeout=timeout)


async def get(query: Query, into: Optional[Type[T]] = None, timeout: Optional[float] = None):
    return await get_agent().get(query, into=into, timeout=timeout)


async def select(query: Query, into: Optional[Type[T]] = None, timeout: Optional[float] = None) -> List[Any]:
    return await get_agent().select(query, into=into, timeout=timeout)


async def check_health() -> dict:
    """Health of the module agent's pool; "unavailable" before init."""
    if _agent is None:
        return {"status": "unavailable", "error": "SqlAgent not initialized"}
    return await _agent.check_health()
