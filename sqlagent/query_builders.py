"""Immutable query builders for INSERT, UPDATE, DELETE and SELECT.

Builders accumulate clauses and render SQL text plus a parameter tuple only
when build() is called, so the same builder value can be shared and extended
freely.

Architecture:
    - Fluent interface (each method returns a new instance)
    - Clauses are written with ``?`` placeholders
    - Placeholders are rewritten at build() time for the target database
      (``?`` for mysql/sqlite, ``$1, $2, ...`` for postgresql)
    - Validation happens at build() time and raises QueryBuildError

Usage Examples:
    query, params = (select("id", "name")
        .from_("users")
        .where("active = ?", True)
        .where(Eq({"role": "admin"}))
        .order_by("created_at DESC")
        .limit(10)
        .build())

    query, params = insert("users").columns("name").values("alice").build()
    # INSERT INTO users (name) VALUES (?)  ('alice',)

    query, params = (update("users")
        .set("name", "bob")
        .where("id = ?", 7)
        .placeholder_format(PlaceholderFormat.DOLLAR)
        .build())
    # UPDATE users SET name = $1 WHERE (id = $2)  ('bob', 7)

Notes:
    - ``??`` in a clause is a literal ``?``: unescaped under the dollar format
      here, and by the mysql driver when it rewrites ``?`` to ``%s``
    - Values wrapped in Expr are inlined as SQL instead of bound
"""

import logging
import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

from sqlagent.errors import QueryBuildError

logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)?$")


class PlaceholderFormat(str, Enum):
    """Bind parameter syntax of the target database."""

    QUESTION = "?"
    DOLLAR = "$"

    def apply(self, sql: str) -> str:
        """Rewrite ``?`` placeholders into this format."""
        if self is PlaceholderFormat.QUESTION:
            return sql

        out = []
        n = 0
        i = 0
        while i < len(sql):
            ch = sql[i]
            if ch == "?":
                if sql.startswith("??", i):
                    out.append("?")
                    i += 2
                    continue
                n += 1
                out.append(f"${n}")
            else:
                out.append(ch)
            i += 1
        return "".join(out)


def count_placeholders(sql: str) -> int:
    """Count ``?`` placeholders, ignoring escaped ``??``."""
    return len(re.findall(r"\?", sql.replace("??", "")))


def validate_identifier(identifier: str) -> bool:
    """
    Validate that a string is a safe SQL identifier.

    Args:
        identifier: Table or column name, optionally schema qualified

    Returns:
        bool: True if valid, False otherwise

    Notes:
        - Allows alphanumeric characters and underscores
        - Must start with a letter or underscore
        - One ``schema.name`` qualification is allowed
        - Maximum length 63 characters per part (PostgreSQL limit)
    """
    if not identifier or not _IDENTIFIER_RE.match(identifier):
        return False
    return all(len(part) <= 63 for part in identifier.split("."))


@dataclass(frozen=True)
class Expr:
    """Raw SQL fragment usable as a value, e.g. Expr("NOW()")."""

    sql: str
    params: Tuple[Any, ...] = ()

    def __init__(self, sql: str, *params: Any):
        object.__setattr__(self, "sql", sql)
        object.__setattr__(self, "params", params)


class Eq(dict):
    """
    Equality condition built from a mapping.

    Eq({"name": "x", "uid": 1})     -> name = ? AND uid = ?
    Eq({"deleted_at": None})         -> deleted_at IS NULL
    Eq({"id": [1, 2, 3]})            -> id IN (?,?,?)
    """

    def to_sql(self) -> Tuple[str, Tuple[Any, ...]]:
        if not self:
            raise QueryBuildError("Eq condition needs at least one column")
        parts = []
        params = []
        for column, value in self.items():
            if value is None:
                parts.append(f"{column} IS NULL")
            elif isinstance(value, (list, tuple, set, frozenset)):
                values = list(value)
                if not values:
                    # Empty IN list never matches
                    parts.append("(1=0)")
                    continue
                parts.append(f"{column} IN ({','.join('?' * len(values))})")
                params.extend(values)
            elif isinstance(value, Expr):
                parts.append(f"{column} = {value.sql}")
                params.extend(value.params)
            else:
                parts.append(f"{column} = ?")
                params.append(value)
        return " AND ".join(parts), tuple(params)


Condition = Union[str, Eq, Mapping[str, Any]]


def _value_sql(value: Any) -> Tuple[str, Tuple[Any, ...]]:
    if isinstance(value, Expr):
        return value.sql, value.params
    return "?", (value,)


def _check_table(table: str, statement: str) -> None:
    if not table:
        raise QueryBuildError(f"{statement} requires a table name")
    if not validate_identifier(table):
        raise QueryBuildError(f"Invalid table name: {table!r}")


def _check_columns(columns: Iterable[str]) -> None:
    for column in columns:
        if not validate_identifier(column):
            raise QueryBuildError(f"Invalid column name: {column!r}")


# ============================================================================
# BASE BUILDER
# ============================================================================

@dataclass(frozen=True)
class _Query:
    _table: str = ""
    _where_clauses: Tuple[str, ...] = ()
    _where_params: Tuple[Any, ...] = ()
    _format: PlaceholderFormat = PlaceholderFormat.QUESTION

    def placeholder_format(self, fmt: PlaceholderFormat):
        """Return a copy rendering placeholders in ``fmt``."""
        return replace(self, _format=PlaceholderFormat(fmt))

    def where(self, condition: Condition, *params: Any):
        """
        Add WHERE condition.

        Args:
            condition: SQL condition with ``?`` placeholders, or an Eq / mapping
            *params: Parameter values for a string condition

        Returns:
            New builder instance with the condition added

        Notes:
            - Multiple where() calls are combined with AND
            - A mapping condition is treated like Eq(mapping)
        """
        if isinstance(condition, Mapping):
            if params:
                raise QueryBuildError("Params are not allowed with a mapping condition")
            sql, params = Eq(condition).to_sql()
        else:
            sql = condition
        return replace(
            self,
            _where_clauses=self._where_clauses + (sql,),
            _where_params=self._where_params + tuple(params),
        )

    def _where_sql(self) -> str:
        if not self._where_clauses:
            return ""
        return "WHERE " + " AND ".join(f"({clause})" for clause in self._where_clauses)

    def _to_sql(self) -> Tuple[str, Tuple[Any, ...]]:
        raise NotImplementedError

    def build(self) -> Tuple[str, Tuple[Any, ...]]:
        """
        Build the final SQL query and parameters.

        Returns:
            Tuple of (query_string, parameters_tuple)

        Raises:
            QueryBuildError: If the query is incomplete or placeholders and
                parameters do not line up
        """
        sql, params = self._to_sql()
        expected = count_placeholders(sql)
        if expected != len(params):
            raise QueryBuildError(
                f"Placeholder count ({expected}) does not match parameter count "
                f"({len(params)}) in: {sql}"
            )
        return self._format.apply(sql), params

    def __str__(self) -> str:
        return self.build()[0]


# ============================================================================
# INSERT
# ============================================================================

@dataclass(frozen=True)
class InsertQuery(_Query):
    """
    Fluent builder for INSERT statements.

    Example:
        query, params = (insert("users")
            .columns("name", "uid")
            .values("alice", 1)
            .values("bob", 2)
            .build())
        # INSERT INTO users (name, uid) VALUES (?, ?), (?, ?)
    """

    _columns: Tuple[str, ...] = ()
    _rows: Tuple[Tuple[Any, ...], ...] = ()
    _suffix: str = ""
    _suffix_params: Tuple[Any, ...] = ()

    def into(self, table: str) -> "InsertQuery":
        return replace(self, _table=table)

    def columns(self, *cols: str) -> "InsertQuery":
        """Append insert columns."""
        return replace(self, _columns=self._columns + cols)

    def values(self, *vals: Any) -> "InsertQuery":
        """Append one row of values."""
        return replace(self, _rows=self._rows + (vals,))

    def set_map(self, data: Mapping[str, Any]) -> "InsertQuery":
        """Replace columns and rows with a single row taken from ``data``."""
        return replace(self, _columns=tuple(data.keys()), _rows=(tuple(data.values()),))

    def suffix(self, sql: str, *params: Any) -> "InsertQuery":
        """Append trailing SQL, e.g. ``RETURNING id``."""
        return replace(self, _suffix=sql, _suffix_params=params)

    def where(self, condition, *params):
        raise QueryBuildError("INSERT does not support WHERE")

    def _to_sql(self) -> Tuple[str, Tuple[Any, ...]]:
        _check_table(self._table, "INSERT")
        if not self._columns:
            raise QueryBuildError("INSERT requires at least one column")
        if not self._rows:
            raise QueryBuildError("INSERT requires at least one row of values")
        _check_columns(self._columns)

        params = []
        row_sql = []
        for row in self._rows:
            if len(row) != len(self._columns):
                raise QueryBuildError(
                    f"INSERT has {len(self._columns)} columns but a row of {len(row)} values"
                )
            placeholders = []
            for value in row:
                sql, value_params = _value_sql(value)
                placeholders.append(sql)
                params.extend(value_params)
            row_sql.append(f"({', '.join(placeholders)})")

        query = (
            f"INSERT INTO {self._table} ({', '.join(self._columns)}) "
            f"VALUES {', '.join(row_sql)}"
        )
        if self._suffix:
            query += f" {self._suffix}"
            params.extend(self._suffix_params)
        return query, tuple(params)


# ============================================================================
# UPDATE
# ============================================================================

@dataclass(frozen=True)
class UpdateQuery(_Query):
    """
    Fluent builder for UPDATE statements.

    Example:
        query, params = (update("users")
            .set("name", "bob")
            .set("updated_at", Expr("NOW()"))
            .where("id = ?", 7)
            .build())
        # UPDATE users SET name = ?, updated_at = NOW() WHERE (id = ?)
    """

    _set_clauses: Tuple[Tuple[str, Any], ...] = ()
    _suffix: str = ""
    _suffix_params: Tuple[Any, ...] = ()

    def table(self, table: str) -> "UpdateQuery":
        return replace(self, _table=table)

    def set(self, column: str, value: Any) -> "UpdateQuery":
        """Add one ``column = value`` assignment."""
        return replace(self, _set_clauses=self._set_clauses + ((column, value),))

    def set_map(self, data: Mapping[str, Any]) -> "UpdateQuery":
        """Add assignments for every key of ``data``, in sorted key order."""
        clauses = tuple((column, data[column]) for column in sorted(data))
        return replace(self, _set_clauses=self._set_clauses + clauses)

    def suffix(self, sql: str, *params: Any) -> "UpdateQuery":
        return replace(self, _suffix=sql, _suffix_params=params)

    def _to_sql(self) -> Tuple[str, Tuple[Any, ...]]:
        _check_table(self._table, "UPDATE")
        if not self._set_clauses:
            raise QueryBuildError("UPDATE requires at least one SET clause")
        _check_columns(column for column, _ in self._set_clauses)

        params = []
        assignments = []
        for column, value in self._set_clauses:
            sql, value_params = _value_sql(value)
            assignments.append(f"{column} = {sql}")
            params.extend(value_params)

        parts = [f"UPDATE {self._table} SET {', '.join(assignments)}"]
        where_sql = self._where_sql()
        if where_sql:
            parts.append(where_sql)
            params.extend(self._where_params)
        if self._suffix:
            parts.append(self._suffix)
            params.extend(self._suffix_params)
        return " ".join(parts), tuple(params)


# ============================================================================
# DELETE
# ============================================================================

@dataclass(frozen=True)
class DeleteQuery(_Query):
    """
    Fluent builder for DELETE statements.

    Example:
        query, params = delete("users").where("name = ?", "bob").build()
        # DELETE FROM users WHERE (name = ?)
    """

    _suffix: str = ""
    _suffix_params: Tuple[Any, ...] = ()

    def from_(self, table: str) -> "DeleteQuery":
        return replace(self, _table=table)

    def suffix(self, sql: str, *params: Any) -> "DeleteQuery":
        return replace(self, _suffix=sql, _suffix_params=params)

    def _to_sql(self) -> Tuple[str, Tuple[Any, ...]]:
        _check_table(self._table, "DELETE")
        parts = [f"DELETE FROM {self._table}"]
        params = []
        where_sql = self._where_sql()
        if where_sql:
            parts.append(where_sql)
            params.extend(self._where_params)
        if self._suffix:
            parts.append(self._suffix)
            params.extend(self._suffix_params)
        return " ".join(parts), tuple(params)


# ============================================================================
# SELECT
# ============================================================================

@dataclass(frozen=True)
class SelectQuery(_Query):
    """
    Fluent builder for SELECT queries.

    Example:
        query, params = (select("id", "name", "email")
            .from_("users")
            .where("active = ?", True)
            .where("role = ?", "admin")
            .order_by("created_at DESC")
            .limit(10)
            .build())

    Notes:
        - No columns selects ``*``
        - order_by() may be called repeatedly; clauses are joined with commas
    """

    _columns: Tuple[str, ...] = ()
    _order_by_clauses: Tuple[str, ...] = ()
    _limit_value: Optional[int] = None
    _offset_value: Optional[int] = None
    _distinct: bool = False

    def columns(self, *cols: str) -> "SelectQuery":
        """Append selected columns."""
        return replace(self, _columns=self._columns + cols)

    def from_(self, table: str) -> "SelectQuery":
        return replace(self, _table=table)

    def order_by(self, *orders: str) -> "SelectQuery":
        """Add ORDER BY terms (e.g. "date DESC")."""
        return replace(self, _order_by_clauses=self._order_by_clauses + orders)

    def limit(self, n: int) -> "SelectQuery":
        return replace(self, _limit_value=n)

    def offset(self, n: int) -> "SelectQuery":
        return replace(self, _offset_value=n)

    def distinct(self) -> "SelectQuery":
        return replace(self, _distinct=True)

    def _to_sql(self) -> Tuple[str, Tuple[Any, ...]]:
        _check_table(self._table, "SELECT")
        for value, label in ((self._limit_value, "LIMIT"), (self._offset_value, "OFFSET")):
            if value is not None and (not isinstance(value, int) or value < 0):
                raise QueryBuildError(f"{label} must be a non-negative integer, got {value!r}")

        distinct_keyword = "DISTINCT " if self._distinct else ""
        columns = ", ".join(self._columns) if self._columns else "*"
        parts = [f"SELECT {distinct_keyword}{columns} FROM {self._table}"]

        where_sql = self._where_sql()
        if where_sql:
            parts.append(where_sql)
        if self._order_by_clauses:
            parts.append(f"ORDER BY {', '.join(self._order_by_clauses)}")
        if self._limit_value is not None:
            parts.append(f"LIMIT {self._limit_value}")
        if self._offset_value is not None:
            parts.append(f"OFFSET {self._offset_value}")

        return " ".join(parts), self._where_params


Query = Union[InsertQuery, UpdateQuery, DeleteQuery, SelectQuery]


# ============================================================================
# FACTORIES
# ============================================================================

def insert(table: str, fmt: PlaceholderFormat = PlaceholderFormat.QUESTION) -> InsertQuery:
    return InsertQuery(_table=table, _format=fmt)


def update(table: str, fmt: PlaceholderFormat = PlaceholderFormat.QUESTION) -> UpdateQuery:
    return UpdateQuery(_table=table, _format=fmt)


def delete(table: str, fmt: PlaceholderFormat = PlaceholderFormat.QUESTION) -> DeleteQuery:
    return DeleteQuery(_table=table, _format=fmt)


def select(*columns: str, fmt: PlaceholderFormat = PlaceholderFormat.QUESTION) -> SelectQuery:
    return SelectQuery(_columns=columns, _format=fmt)


def render(query: Union[Query, Tuple[str, Tuple[Any, ...]]]) -> Tuple[str, Tuple[Any, ...]]:
    """
    Render a builder, or pass through an already built (sql, params) pair.

    Raises:
        QueryBuildError: If the builder cannot render
    """
    if isinstance(query, tuple):
        sql, params = query
        return sql, tuple(params)
    if not isinstance(query, _Query):
        raise QueryBuildError(f"Expected a query builder, got {type(query).__name__}")
    sql, params = query.build()
    logger.debug(f"Rendered SQL: {sql}")
    return sql, params
