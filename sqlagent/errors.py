"""Exception hierarchy for sqlagent.

Every error raised by the package derives from SqlAgentError, so callers can
catch one type at the boundary. Errors coming out of a database driver are
wrapped and chained (``raise ... from err``) so the original driver exception
stays available on ``__cause__``.
"""


class SqlAgentError(Exception):
    """Base class for all sqlagent errors."""


class ConfigError(SqlAgentError):
    """Raised when a database config is missing or invalid."""


class ConfigDecodeError(ConfigError):
    """Raised when a config file cannot be read or decoded."""

    def __init__(self, path, reason: str):
        super().__init__(f"Cannot decode database config {path}: {reason}")
        self.path = path
        self.reason = reason


class ConfigNotFoundError(SqlAgentError, FileNotFoundError):
    """Raised when no database config file can be discovered."""

    def __init__(self, message: str = "Database config file not found"):
        super().__init__(message)


class DatabaseConnectionError(SqlAgentError):
    """Raised when the driver fails to open a connection or pool."""


class QueryBuildError(SqlAgentError, ValueError):
    """Raised when a query builder cannot render valid SQL."""


class ExecutionError(SqlAgentError):
    """Raised when the driver reports a failure while running SQL."""

    def __init__(self, message: str, sql: str = ""):
        super().__init__(message)
        self.sql = sql


class NotInitializedError(SqlAgentError, RuntimeError):
    """Raised when module-level helpers are used before init()."""
