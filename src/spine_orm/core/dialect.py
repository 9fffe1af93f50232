"""SQL dialect abstraction for the statement assembler.

Everything the mapping core must know about a particular database lives
behind the ``Dialect`` protocol: identifier quoting, the native bind
placeholder, column types for field descriptors, LIMIT/OFFSET syntax, how the
generated primary key comes back after an INSERT, and schema introspection.
The assembler itself only ever emits dialect-neutral SQL.

Manifesto:
    Statement assembly must be portable across SQLite, PostgreSQL and MySQL.
    Without a dialect layer the assembler is littered with backend-specific
    syntax that breaks when switching databases.

    - **One interface:** Dialect protocol for every backend-specific fragment
    - **Stateless:** dialects hold no connection; introspection takes an executor
    - **Testable:** SQLiteDialect for tests, PostgreSQLDialect for prod

Architecture::

    ┌──────────────────────────────────────────────────────────────────┐
    │                     Dialect Abstraction Layer                     │
    └──────────────────────────────────────────────────────────────────┘

    Statement assembler:
    ┌────────────────────────────────────────────────────────────────┐
    │  INSERT INTO "users" ("name") VALUES (¤)    (neutral markers)  │
    │  Statement.finalize(dialect)                                   │
    └────────────────────────────────────────────────────────────────┘
                              │
                              ▼
    ┌──────────────┐ ┌──────────────────┐ ┌──────────────────┐
    │ SQLite       │ │ PostgreSQL       │ │ MySQL            │
    │ ? / "name"   │ │ %s / "name"      │ │ %s / `name`      │
    │ lastrowid    │ │ RETURNING t.id   │ │ lastrowid        │
    └──────────────┘ └──────────────────┘ └──────────────────┘

Features:
    - **SQLiteDialect:** ``?`` placeholders, ``integer primary key autoincrement``
    - **PostgreSQLDialect:** ``%s`` placeholders, ``serial``, ``RETURNING`` suffix
    - **MySQLDialect:** ``%s`` placeholders, backtick quoting, ``AUTO_INCREMENT``
    - **get_dialect():** lookup by name, ``register_dialect()`` for extensions

Examples:
    >>> from spine_orm.core.dialect import get_dialect
    >>> d = get_dialect("sqlite")
    >>> d.quote("users")
    '"users"'
    >>> d.limit_and_offset_sql(10, 20)
    ' LIMIT 10 OFFSET 20'

Guardrails:
    ❌ DON'T: Write backend-specific SQL in the assembler or hooks
    ✅ DO: Ask the dialect for quoting, placeholders and column types

Tags:
    dialect, sql, abstraction, portability, database, spine-orm

Doc-Types:
    - API Reference
    - Database Portability Guide
"""

from __future__ import annotations

import datetime as dt
import decimal
import enum
import re
import uuid
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from spine_orm.core.errors import ConfigError

if TYPE_CHECKING:
    from spine_orm.core.protocols import Executor
    from spine_orm.model.descriptor import FieldDescriptor


@runtime_checkable
class Dialect(Protocol):
    """SQL dialect contract.

    Every method returns a SQL fragment (string) valid for the target
    database, or answers an introspection question through an executor.
    """

    @property
    def name(self) -> str:
        """Human-readable dialect name (e.g. ``'sqlite'``)."""
        ...

    # -- Placeholders and values -------------------------------------------

    def placeholder(self, index: int) -> str:
        """Native bind placeholder for the argument at ``index`` (0-based)."""
        ...

    def adapt_value(self, value: Any) -> Any:
        """Convert a Python value into something the driver can bind."""
        ...

    # -- Identifiers and types ---------------------------------------------

    def quote(self, identifier: str) -> str:
        """Quote a single identifier (no dotted paths)."""
        ...

    def data_type_of(self, field: FieldDescriptor) -> str:
        """Column type (with NOT NULL / UNIQUE / DEFAULT) for a field."""
        ...

    def primary_key_sql(self, quoted_columns: list[str]) -> str:
        """Table-level primary key constraint."""
        ...

    # -- Statement fragments -----------------------------------------------

    def limit_and_offset_sql(self, limit: Any, offset: Any) -> str:
        """`` LIMIT n OFFSET m`` with either part omitted when unset."""
        ...

    def select_from_dummy_table(self) -> str:
        """``FROM`` clause for a SELECT without a real table ("" if none needed)."""
        ...

    def last_insert_id_returning_suffix(self, table: str, column: str) -> str:
        """Suffix appended to an INSERT to return the generated key ("" for lastrowid)."""
        ...

    def remove_index_sql(self, table: str, index_name: str) -> str:
        ...

    def build_foreign_key_name(self, table: str, field: str, dest: str) -> str:
        ...

    # -- Introspection -----------------------------------------------------

    def has_table(self, executor: Executor, table: str) -> bool:
        ...

    def has_column(self, executor: Executor, table: str, column: str) -> bool:
        ...

    def has_index(self, executor: Executor, table: str, index_name: str) -> bool:
        ...

    def has_foreign_key(self, executor: Executor, table: str, key_name: str) -> bool:
        ...

    def current_database(self, executor: Executor) -> str:
        ...


# =========================================================================
# Column type helpers
# =========================================================================

_DEFAULT_SIZE = 255

_FOREIGN_KEY_NAME_RE = re.compile(r"(_*[^a-zA-Z]+_*|_+)")


def _kind_of(tp: Any) -> str | None:
    """Map a field's Python type onto a small set of storage kinds."""
    if not isinstance(tp, type):
        return None
    if issubclass(tp, enum.Enum):
        member = next(iter(tp), None)
        return _kind_of(type(member.value)) if member is not None else "str"
    # bool before int: bool is an int subclass
    for base, kind in (
        (bool, "bool"),
        (int, "int"),
        (float, "float"),
        (decimal.Decimal, "decimal"),
        (str, "str"),
        (bytes, "bytes"),
        (dt.datetime, "datetime"),
        (dt.date, "date"),
        (dt.time, "time"),
        (uuid.UUID, "uuid"),
    ):
        if issubclass(tp, base):
            return kind
    return None


def _size_of(field: FieldDescriptor) -> int:
    raw = field.tag_settings.get("SIZE", "")
    return int(raw) if raw.isdigit() else _DEFAULT_SIZE


def _is_auto_increment(field: FieldDescriptor) -> bool:
    setting = field.tag_settings.get("AUTO_INCREMENT", "")
    if setting and setting.upper() == "FALSE":
        return False
    return bool(setting) or (field.is_primary_key and _kind_of(field.base_type) == "int")


def _additional_type(field: FieldDescriptor) -> str:
    parts = []
    if "NOT NULL" in field.tag_settings:
        parts.append("NOT NULL")
    if "UNIQUE" in field.tag_settings:
        parts.append("UNIQUE")
    default = field.tag_settings.get("DEFAULT")
    if default and default != "DEFAULT":
        parts.append(f"DEFAULT {default}")
    return " ".join(parts)


def _join_type(sql_type: str, field: FieldDescriptor) -> str:
    return f"{sql_type} {_additional_type(field)}".strip()


class _CommonDialect:
    """Behaviour shared by every bundled dialect."""

    _name = "common"
    _placeholder = "?"
    _quote_char = '"'

    @property
    def name(self) -> str:
        return self._name

    # -- Placeholders ------------------------------------------------------

    def placeholder(self, index: int) -> str:  # noqa: ARG002
        return self._placeholder

    def adapt_value(self, value: Any) -> Any:
        if hasattr(value, "db_value") and callable(value.db_value):
            return value.db_value()
        if isinstance(value, enum.Enum):
            return value.value
        return value

    # -- Identifiers -------------------------------------------------------

    def quote(self, identifier: str) -> str:
        return f"{self._quote_char}{identifier}{self._quote_char}"

    def primary_key_sql(self, quoted_columns: list[str]) -> str:
        return f"PRIMARY KEY ({','.join(quoted_columns)})"

    # -- Types -------------------------------------------------------------

    def data_type_of(self, field: FieldDescriptor) -> str:
        explicit = field.tag_settings.get("TYPE")
        if explicit and explicit != "TYPE":
            return _join_type(explicit, field)
        kind = _kind_of(field.base_type)
        sql_type = self._sql_type(kind, field) if kind else None
        if not sql_type:
            raise ConfigError(
                f"Invalid sql type {getattr(field.base_type, '__name__', field.base_type)} "
                f"for field {field.name!r} in {self.name}"
            ).with_context(field=field.name)
        return _join_type(sql_type, field)

    def _sql_type(self, kind: str, field: FieldDescriptor) -> str | None:
        raise NotImplementedError

    # -- Statement fragments -----------------------------------------------

    def limit_and_offset_sql(self, limit: Any, offset: Any) -> str:
        sql = ""
        if isinstance(limit, int) and not isinstance(limit, bool) and limit > 0:
            sql += f" LIMIT {limit}"
        if isinstance(offset, int) and not isinstance(offset, bool) and offset > 0:
            sql += f" OFFSET {offset}"
        return sql

    def select_from_dummy_table(self) -> str:
        return ""

    def last_insert_id_returning_suffix(self, table: str, column: str) -> str:  # noqa: ARG002
        return ""

    def remove_index_sql(self, table: str, index_name: str) -> str:  # noqa: ARG002
        return f"DROP INDEX {self.quote(index_name)}"

    def build_foreign_key_name(self, table: str, field: str, dest: str) -> str:
        key_name = f"{table}_{field}_{dest}_foreign"
        return _FOREIGN_KEY_NAME_RE.sub("_", key_name)

    # -- Introspection -----------------------------------------------------

    def _count(self, executor: Executor, sql: str, *args: Any) -> int:
        row = executor.query_row(sql, args)
        return int(row[0]) if row else 0

    def has_foreign_key(self, executor: Executor, table: str, key_name: str) -> bool:  # noqa: ARG002
        return False


# =========================================================================
# Concrete Dialect Implementations
# =========================================================================


class SQLiteDialect(_CommonDialect):
    """SQLite dialect: ``?`` placeholders, ISO-text timestamps."""

    _name = "sqlite"
    _placeholder = "?"

    def adapt_value(self, value: Any) -> Any:
        value = super().adapt_value(value)
        if isinstance(value, dt.datetime):
            return value.isoformat(sep=" ")
        if isinstance(value, (dt.date, dt.time)):
            return value.isoformat()
        if isinstance(value, (decimal.Decimal, uuid.UUID)):
            return str(value)
        return value

    def _sql_type(self, kind: str, field: FieldDescriptor) -> str | None:
        if kind == "int":
            if field.is_primary_key and _is_auto_increment(field):
                return "integer primary key autoincrement"
            return "integer"
        if kind == "str":
            return f"varchar({_size_of(field)})"
        return {
            "bool": "bool",
            "float": "real",
            "decimal": "decimal",
            "bytes": "blob",
            "datetime": "datetime",
            "date": "date",
            "time": "time",
            "uuid": "varchar(36)",
        }.get(kind)

    def has_table(self, executor: Executor, table: str) -> bool:
        return self._count(
            executor, "SELECT count(*) FROM sqlite_master WHERE type='table' AND name = ?", table
        ) > 0

    def has_column(self, executor: Executor, table: str, column: str) -> bool:
        return self._count(
            executor, "SELECT count(*) FROM pragma_table_info(?) WHERE name = ?", table, column
        ) > 0

    def has_index(self, executor: Executor, table: str, index_name: str) -> bool:
        return self._count(
            executor,
            "SELECT count(*) FROM sqlite_master WHERE tbl_name = ? AND type = 'index' AND name = ?",
            table,
            index_name,
        ) > 0

    def current_database(self, executor: Executor) -> str:
        rows = executor.query("PRAGMA database_list", ())
        for row in rows:
            if row[1] == "main":
                return str(row[1])
        return ""


class PostgreSQLDialect(_CommonDialect):
    """PostgreSQL dialect: ``%s`` placeholders (psycopg), ``RETURNING`` for keys."""

    _name = "postgresql"
    _placeholder = "%s"

    def _sql_type(self, kind: str, field: FieldDescriptor) -> str | None:
        if kind == "int":
            if field.is_primary_key and _is_auto_increment(field):
                return "serial"
            return "integer"
        if kind == "str":
            size = _size_of(field)
            return f"varchar({size})" if 0 < size < 65532 else "text"
        return {
            "bool": "boolean",
            "float": "numeric",
            "decimal": "numeric",
            "bytes": "bytea",
            "datetime": "timestamp with time zone",
            "date": "date",
            "time": "time",
            "uuid": "uuid",
        }.get(kind)

    def last_insert_id_returning_suffix(self, table: str, column: str) -> str:
        return f"RETURNING {table}.{column}"

    def has_table(self, executor: Executor, table: str) -> bool:
        return self._count(
            executor,
            "SELECT count(*) FROM INFORMATION_SCHEMA.tables WHERE table_name = %s "
            "AND table_type = 'BASE TABLE' AND table_schema = CURRENT_SCHEMA()",
            table,
        ) > 0

    def has_column(self, executor: Executor, table: str, column: str) -> bool:
        return self._count(
            executor,
            "SELECT count(*) FROM INFORMATION_SCHEMA.columns WHERE table_schema = CURRENT_SCHEMA() "
            "AND table_name = %s AND column_name = %s",
            table,
            column,
        ) > 0

    def has_index(self, executor: Executor, table: str, index_name: str) -> bool:
        return self._count(
            executor,
            "SELECT count(*) FROM pg_indexes WHERE tablename = %s AND indexname = %s "
            "AND schemaname = CURRENT_SCHEMA()",
            table,
            index_name,
        ) > 0

    def has_foreign_key(self, executor: Executor, table: str, key_name: str) -> bool:
        return self._count(
            executor,
            "SELECT count(con.conname) FROM pg_constraint con "
            "WHERE con.conrelid = CAST(%s AS regclass) AND con.conname = %s AND con.contype = 'f'",
            table,
            key_name,
        ) > 0

    def current_database(self, executor: Executor) -> str:
        row = executor.query_row("SELECT CURRENT_DATABASE()", ())
        return str(row[0]) if row else ""


class MySQLDialect(_CommonDialect):
    """MySQL dialect: ``%s`` placeholders, backtick quoting."""

    _name = "mysql"
    _placeholder = "%s"
    _quote_char = "`"

    def adapt_value(self, value: Any) -> Any:
        value = super().adapt_value(value)
        if isinstance(value, uuid.UUID):
            return str(value)
        return value

    def _sql_type(self, kind: str, field: FieldDescriptor) -> str | None:
        if kind == "int":
            if field.is_primary_key and _is_auto_increment(field):
                return "int AUTO_INCREMENT"
            return "int"
        if kind == "str":
            size = _size_of(field)
            return f"varchar({size})" if 0 < size < 65532 else "longtext"
        return {
            "bool": "boolean",
            "float": "double",
            "decimal": "decimal(20,6)",
            "bytes": "longblob",
            "datetime": "DATETIME",
            "date": "DATE",
            "time": "TIME",
            "uuid": "varchar(36)",
        }.get(kind)

    def limit_and_offset_sql(self, limit: Any, offset: Any) -> str:
        has_limit = isinstance(limit, int) and not isinstance(limit, bool) and limit > 0
        has_offset = isinstance(offset, int) and not isinstance(offset, bool) and offset > 0
        if has_offset and not has_limit:
            # MySQL has no OFFSET without LIMIT
            return f" LIMIT 18446744073709551615 OFFSET {offset}"
        return super().limit_and_offset_sql(limit, offset)

    def select_from_dummy_table(self) -> str:
        return "FROM DUAL"

    def remove_index_sql(self, table: str, index_name: str) -> str:
        return f"DROP INDEX {self.quote(index_name)} ON {table}"

    def has_table(self, executor: Executor, table: str) -> bool:
        return self._count(
            executor,
            "SELECT count(*) FROM INFORMATION_SCHEMA.TABLES WHERE table_schema = DATABASE() "
            "AND table_name = %s",
            table,
        ) > 0

    def has_column(self, executor: Executor, table: str, column: str) -> bool:
        return self._count(
            executor,
            "SELECT count(*) FROM INFORMATION_SCHEMA.COLUMNS WHERE table_schema = DATABASE() "
            "AND table_name = %s AND column_name = %s",
            table,
            column,
        ) > 0

    def has_index(self, executor: Executor, table: str, index_name: str) -> bool:
        return self._count(
            executor,
            "SELECT count(*) FROM INFORMATION_SCHEMA.STATISTICS WHERE table_schema = DATABASE() "
            "AND table_name = %s AND index_name = %s",
            table,
            index_name,
        ) > 0

    def has_foreign_key(self, executor: Executor, table: str, key_name: str) -> bool:
        return self._count(
            executor,
            "SELECT count(*) FROM INFORMATION_SCHEMA.TABLE_CONSTRAINTS WHERE "
            "CONSTRAINT_SCHEMA = DATABASE() AND TABLE_NAME = %s AND CONSTRAINT_NAME = %s "
            "AND CONSTRAINT_TYPE = 'FOREIGN KEY'",
            table,
            key_name,
        ) > 0

    def current_database(self, executor: Executor) -> str:
        row = executor.query_row("SELECT DATABASE()", ())
        return str(row[0]) if row else ""


# =========================================================================
# Registry / Factory
# =========================================================================

# Pre-instantiated singletons (dialects are stateless)
_DIALECTS: dict[str, Dialect] = {
    "sqlite": SQLiteDialect(),
    "sqlite3": SQLiteDialect(),  # alias
    "postgresql": PostgreSQLDialect(),
    "postgres": PostgreSQLDialect(),  # alias
    "mysql": MySQLDialect(),
}

_ALIASES = {"sqlite3", "postgres"}


def get_dialect(db_type: str) -> Dialect:
    """Get a dialect by database type name.

    Raises:
        ValueError: If ``db_type`` is not recognised.
    """
    key = db_type.lower()
    if key not in _DIALECTS:
        raise ValueError(
            f"Unknown dialect '{db_type}'. "
            f"Supported: {sorted(set(_DIALECTS) - _ALIASES)}"
        )
    return _DIALECTS[key]


def register_dialect(name: str, dialect: Dialect) -> None:
    """Register a custom dialect implementation (lower-cased key)."""
    _DIALECTS[name.lower()] = dialect


__all__ = [
    # Protocol
    "Dialect",
    # Implementations
    "SQLiteDialect",
    "PostgreSQLDialect",
    "MySQLDialect",
    # Factory
    "get_dialect",
    "register_dialect",
]
