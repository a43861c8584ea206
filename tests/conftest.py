"""Pytest configuration and shared fixtures for sqlagent tests.

This module provides:
- Environment isolation between tests
- Reset of the process-wide agent
- sqlite configs and agents backed by a temporary database file
"""

import json
import os
import sys
from pathlib import Path

import pytest
import pytest_asyncio
import yaml

# Add project root to Python path so tests run from a plain checkout
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from sqlagent import module  # noqa: E402
from sqlagent.agent import SqlAgent  # noqa: E402
from sqlagent.config import DatabaseConfig, DatabaseType  # noqa: E402


JSON_CONFIG = {
    "host": "localhost",
    "port": 3306,
    "name": "dbName",
    "type": "mysql",
    "user": "user",
    "password": "passwd",
}

USERS_TABLE = """
CREATE TABLE testuser (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name VARCHAR(64) NOT NULL DEFAULT '',
    uid BIGINT NOT NULL DEFAULT 0
)
"""


# ==================== Environment Fixtures ====================

@pytest.fixture(scope="function", autouse=True)
def isolate_environment(monkeypatch):
    """Keep DB_CONFIG / DB_LABEL and the working directory from leaking between tests."""
    monkeypatch.delenv("DB_CONFIG", raising=False)
    monkeypatch.delenv("DB_LABEL", raising=False)
    original_env = os.environ.copy()

    yield

    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture(autouse=True)
def reset_module_agent():
    """Reset the process-wide agent so tests never share a pool."""
    module._agent = None
    yield
    module._agent = None


@pytest.fixture
def in_tmp_cwd(tmp_path, monkeypatch) -> Path:
    """Run the test with an empty temporary working directory."""
    workdir = tmp_path / "a" / "b" / "work"
    workdir.mkdir(parents=True)
    monkeypatch.chdir(workdir)
    return workdir


def write_config(directory: Path, file_name: str, data=None, suffix: str = ".json") -> Path:
    """Write a config file and return its path."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{file_name}{suffix}"
    data = JSON_CONFIG if data is None else data
    if suffix == ".json":
        path.write_text(json.dumps(data))
    else:
        path.write_text(yaml.safe_dump(data))
    return path


@pytest.fixture
def config_writer():
    """Provide write_config() to tests."""
    return write_config


# ==================== sqlite Fixtures ====================

@pytest.fixture
def sqlite_config(tmp_path) -> DatabaseConfig:
    """Config for a fresh sqlite database file."""
    return DatabaseConfig(
        type=DatabaseType.SQLITE,
        name=str(tmp_path / "test.db"),
        parameters={"foreign_keys": "ON"},
    )


@pytest_asyncio.fixture
async def sqlite_agent(sqlite_config):
    """Connected agent with an empty ``testuser`` table."""
    agent = await SqlAgent.connect(sqlite_config)
    async with agent.pool.acquire() as conn:
        await conn.execute(USERS_TABLE, ())
    yield agent
    await agent.close()
