"""sqlagent: database config loading, a pooled agent, and query builders.

Main exports:
- DatabaseConfig / load_config / detect_config: config files and discovery
- SqlAgent: one pool plus builders, execution and transaction helpers
- init / init_from_config / init_from_env / close: the process-wide agent
- execute, get, select, transaction, *_builder: helpers backed by that agent
- insert, update, delete, select_query, Eq, Expr: standalone query builders
"""

from .agent import SqlAgent, Transaction, create_agent, tx_execute, tx_get, tx_select
from .config import (
    DatabaseConfig,
    DatabaseType,
    config_file_prefix,
    detect_config,
    find_config,
    find_in_dir,
    load_config,
)
from .drivers import ExecResult
from .errors import (
    ConfigDecodeError,
    ConfigError,
    ConfigNotFoundError,
    DatabaseConnectionError,
    ExecutionError,
    NotInitializedError,
    QueryBuildError,
    SqlAgentError,
)
from .mapper import ColumnMapper
from .module import (
    begin,
    check_health,
    close,
    db,
    delete_builder,
    execute,
    get,
    get_agent,
    init,
    init_from_config,
    init_from_env,
    insert_builder,
    insert_model_builder,
    is_initialized,
    model_columns,
    select,
    select_builder,
    set_mapper,
    set_update_columns,
    transaction,
    update_builder,
)
from .query_builders import (
    DeleteQuery,
    Eq,
    Expr,
    InsertQuery,
    PlaceholderFormat,
    SelectQuery,
    UpdateQuery,
    delete,
    insert,
    update,
    validate_identifier,
)
from .query_builders import select as select_query

__all__ = [
    # Config
    "DatabaseConfig",
    "DatabaseType",
    "load_config",
    "detect_config",
    "find_config",
    "find_in_dir",
    "config_file_prefix",
    # Agent
    "SqlAgent",
    "Transaction",
    "ExecResult",
    "ColumnMapper",
    "create_agent",
    "tx_execute",
    "tx_get",
    "tx_select",
    # Process-wide agent
    "init",
    "init_from_config",
    "init_from_env",
    "get_agent",
    "is_initialized",
    "close",
    "db",
    "transaction",
    "begin",
    "insert_builder",
    "update_builder",
    "delete_builder",
    "select_builder",
    "insert_model_builder",
    "set_update_columns",
    "set_mapper",
    "model_columns",
    "execute",
    "get",
    "select",
    "check_health",
    # Query builders
    "InsertQuery",
    "UpdateQuery",
    "DeleteQuery",
    "SelectQuery",
    "PlaceholderFormat",
    "Eq",
    "Expr",
    "insert",
    "update",
    "delete",
    "select_query",
    "validate_identifier",
    # Errors
    "SqlAgentError",
    "ConfigError",
    "ConfigDecodeError",
    "ConfigNotFoundError",
    "DatabaseConnectionError",
    "QueryBuildError",
    "ExecutionError",
    "NotInitializedError",
]
