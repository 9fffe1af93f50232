"""
Schema migration.

Generates and runs DDL from model descriptors: CREATE TABLE (plus join tables
for many-to-many fields and indexes declared with ``index`` /
``unique_index``), DROP TABLE, column additions for ``automigrate``, index
management, column changes and foreign keys.

Every operation has a ``*_sql`` builder returning the statement text and a
runner that executes it against the scope's executor, so the generated DDL
can be inspected without touching a database.

Manifesto:
    - **Descriptors in, DDL out:** no second source of schema truth
    - **Additive automigrate:** missing tables, columns and indexes are
      created; nothing is ever dropped or altered implicitly
    - **Dialect owns types:** column types come from ``Dialect.data_type_of``

Architecture:
    ::

        create_table(scope)
          ├── CREATE TABLE "users" ("id" integer primary key autoincrement, ...)
          ├── CREATE TABLE "user_languages" (... , PRIMARY KEY (...))   per many2many
          └── CREATE INDEX idx_users_deleted_at ON "users"("deleted_at") per index tag

        automigrate(scope)
          ├── table missing  → create_table
          └── table present  → ALTER TABLE ADD <missing columns> + missing indexes

Examples:
    >>> scope = db.new_scope(User)
    >>> create_table_sql(scope)
    'CREATE TABLE "users" ("id" integer primary key autoincrement,"name" varchar(255))'

Tags:
    migration, ddl, schema, create-table, index, spine-orm

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from dataclasses import dataclass, field

from spine_orm.core.errors import ConfigError
from spine_orm.core.logging import get_logger
from spine_orm.model.descriptor import FieldDescriptor, JoinTableHandler, RelationKind
from spine_orm.query.scope import TABLE_OPTIONS, Scope

logger = get_logger(__name__)


@dataclass
class MigrationResult:
    """What one automigrate run did."""

    created_tables: list[str] = field(default_factory=list)
    added_columns: list[str] = field(default_factory=list)
    added_indexes: list[str] = field(default_factory=list)
    statements: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created_tables or self.added_columns or self.added_indexes)


def _run(scope: Scope, sql: str, result: MigrationResult | None = None) -> None:
    scope.executor.execute(sql, ())
    if result is not None:
        result.statements.append(sql)


def _table_options(scope: Scope) -> str:
    option = scope.get(TABLE_OPTIONS)
    return f" {option}" if option else ""


# =============================================================================
# Tables
# =============================================================================


def _columns(scope: Scope) -> list[FieldDescriptor]:
    return [f for f in scope.describe().fields if f.is_normal and not f.is_ignored]


def create_table_sql(scope: Scope) -> str:
    columns = []
    primary_keys = []
    inline_primary_key = False
    for f in _columns(scope):
        sql_type = scope.dialect.data_type_of(f)
        columns.append(f"{scope.quote(f.db_name)} {sql_type}")
        if f.is_primary_key:
            primary_keys.append(scope.quote(f.db_name))
        if "primary key" in sql_type.lower():
            inline_primary_key = True
    if primary_keys and not inline_primary_key:
        columns.append(scope.dialect.primary_key_sql(primary_keys))
    return f"CREATE TABLE {scope.quoted_table_name} ({','.join(columns)}){_table_options(scope)}"


def _join_column(scope: Scope, model_type: type, db_name: str) -> FieldDescriptor:
    source = scope.cache.describe(model_type).field_by_name(db_name)
    if source is None:
        raise ConfigError(f"join key {db_name!r} not found on {model_type.__name__}")
    settings = {k: v for k, v in source.tag_settings.items() if k not in ("AUTO_INCREMENT", "PRIMARY_KEY")}
    return source.clone(is_primary_key=False, tag_settings=settings)


def create_join_table_sql(scope: Scope, handler: JoinTableHandler) -> str:
    columns = []
    keys = []
    for side in (handler.source, handler.destination):
        for fk in side.foreign_keys:
            column = _join_column(scope, side.model_type, fk.association_db_name)
            columns.append(f"{scope.quote(fk.db_name)} {scope.dialect.data_type_of(column)}")
            keys.append(scope.quote(fk.db_name))
    return (
        f"CREATE TABLE {scope.quote(handler.table_name)} "
        f"({','.join(columns)},{scope.dialect.primary_key_sql(keys)}){_table_options(scope)}"
    )


def _join_tables(scope: Scope) -> list[JoinTableHandler]:
    return [
        f.relationship.join_table
        for f in scope.describe().fields
        if f.relationship is not None
        and f.relationship.kind is RelationKind.MANY_TO_MANY
        and f.relationship.join_table is not None
    ]


def has_table(scope: Scope, table: str | None = None) -> bool:
    return scope.dialect.has_table(scope.executor, table or scope.table_name)


def create_table(scope: Scope, result: MigrationResult | None = None) -> None:
    """CREATE TABLE for the scope's record type, its join tables and declared indexes."""
    _run(scope, create_table_sql(scope), result)
    if result is not None:
        result.created_tables.append(scope.table_name)
    logger.info("table_created", table=scope.table_name)
    for handler in _join_tables(scope):
        if not has_table(scope, handler.table_name):
            _run(scope, create_join_table_sql(scope, handler), result)
            if result is not None:
                result.created_tables.append(handler.table_name)
            logger.info("join_table_created", table=handler.table_name)
    auto_index(scope, result)


def drop_table_sql(scope: Scope, table: str | None = None) -> str:
    return f"DROP TABLE {scope.quote(table) if table else scope.quoted_table_name}"


def drop_table(scope: Scope, table: str | None = None) -> None:
    _run(scope, drop_table_sql(scope, table))
    logger.info("table_dropped", table=table or scope.table_name)


def drop_table_if_exists(scope: Scope, table: str | None = None) -> bool:
    if not has_table(scope, table):
        return False
    drop_table(scope, table)
    return True


# =============================================================================
# Columns
# =============================================================================


def add_column_sql(scope: Scope, f: FieldDescriptor) -> str:
    return (
        f"ALTER TABLE {scope.quoted_table_name} "
        f"ADD {scope.quote(f.db_name)} {scope.dialect.data_type_of(f)}"
    )


def modify_column_sql(scope: Scope, column: str, sql_type: str) -> str:
    return f"ALTER TABLE {scope.quoted_table_name} MODIFY {scope.quote(column)} {sql_type}"


def modify_column(scope: Scope, column: str, sql_type: str) -> None:
    _run(scope, modify_column_sql(scope, column, sql_type))


def drop_column_sql(scope: Scope, column: str) -> str:
    return f"ALTER TABLE {scope.quoted_table_name} DROP COLUMN {scope.quote(column)}"


def drop_column(scope: Scope, column: str) -> None:
    _run(scope, drop_column_sql(scope, column))
    logger.info("column_dropped", table=scope.table_name, column=column)


def automigrate(scope: Scope, result: MigrationResult | None = None) -> MigrationResult:
    """Create the table if missing, otherwise add missing columns and indexes."""
    result = result if result is not None else MigrationResult()
    if not has_table(scope):
        create_table(scope, result)
        return result

    table = scope.table_name
    for f in _columns(scope):
        if not scope.dialect.has_column(scope.executor, table, f.db_name):
            _run(scope, add_column_sql(scope, f), result)
            result.added_columns.append(f"{table}.{f.db_name}")
            logger.info("column_added", table=table, column=f.db_name)
    for handler in _join_tables(scope):
        if not has_table(scope, handler.table_name):
            _run(scope, create_join_table_sql(scope, handler), result)
            result.created_tables.append(handler.table_name)
    auto_index(scope, result)
    return result


# =============================================================================
# Indexes and keys
# =============================================================================


def add_index_sql(scope: Scope, unique: bool, index_name: str, *columns: str) -> str:
    if not columns:
        raise ConfigError(f"index {index_name!r} needs at least one column")
    create = "CREATE UNIQUE INDEX" if unique else "CREATE INDEX"
    quoted = ", ".join(scope.quote(c) for c in columns)
    return f"{create} {index_name} ON {scope.quoted_table_name}({quoted})"


def add_index(scope: Scope, unique: bool, index_name: str, *columns: str) -> None:
    """Create an index unless one with this name already exists."""
    if scope.dialect.has_index(scope.executor, scope.table_name, index_name):
        return
    _run(scope, add_index_sql(scope, unique, index_name, *columns))
    logger.info("index_added", table=scope.table_name, index=index_name, unique=unique)


def remove_index(scope: Scope, index_name: str) -> None:
    _run(scope, scope.dialect.remove_index_sql(scope.table_name, index_name))
    logger.info("index_removed", table=scope.table_name, index=index_name)


def declared_indexes(scope: Scope) -> tuple[dict[str, list[str]], dict[str, list[str]]]:
    """Index name -> columns for ``index`` and ``unique_index`` annotations."""
    indexes: dict[str, list[str]] = {}
    unique_indexes: dict[str, list[str]] = {}
    table = scope.table_name
    for f in scope.describe().fields:
        if f.is_ignored:
            continue
        for key, prefix, target in (("INDEX", "idx", indexes), ("UNIQUE_INDEX", "uix", unique_indexes)):
            value = f.tag_settings.get(key)
            if value is None:
                continue
            names = [n.strip() for n in value.split(",")] if value != key else [""]
            for name in names:
                target.setdefault(name or f"{prefix}_{table}_{f.db_name}", []).append(f.db_name)
    return indexes, unique_indexes


def auto_index(scope: Scope, result: MigrationResult | None = None) -> None:
    indexes, unique_indexes = declared_indexes(scope)
    for unique, declared in ((False, indexes), (True, unique_indexes)):
        for name, columns in declared.items():
            if scope.dialect.has_index(scope.executor, scope.table_name, name):
                continue
            _run(scope, add_index_sql(scope, unique, name, *columns), result)
            if result is not None:
                result.added_indexes.append(name)


def add_foreign_key_sql(scope: Scope, field_name: str, dest: str, on_delete: str, on_update: str) -> str:
    key_name = scope.dialect.build_foreign_key_name(scope.table_name, field_name, dest)
    return (
        f"ALTER TABLE {scope.quoted_table_name} ADD CONSTRAINT {key_name} "
        f"FOREIGN KEY ({scope.quote(field_name)}) REFERENCES {dest} "
        f"ON DELETE {on_delete} ON UPDATE {on_update}"
    )


def add_foreign_key(scope: Scope, field_name: str, dest: str, on_delete: str, on_update: str) -> None:
    """Add a foreign key constraint unless the dialect reports it already exists."""
    key_name = scope.dialect.build_foreign_key_name(scope.table_name, field_name, dest)
    if scope.dialect.has_foreign_key(scope.executor, scope.table_name, key_name):
        return
    _run(scope, add_foreign_key_sql(scope, field_name, dest, on_delete, on_update))
    logger.info("foreign_key_added", table=scope.table_name, key=key_name)


__all__ = [
    "MigrationResult",
    "create_table_sql",
    "create_join_table_sql",
    "create_table",
    "has_table",
    "drop_table_sql",
    "drop_table",
    "drop_table_if_exists",
    "add_column_sql",
    "modify_column_sql",
    "modify_column",
    "drop_column_sql",
    "drop_column",
    "automigrate",
    "add_index_sql",
    "add_index",
    "remove_index",
    "declared_indexes",
    "auto_index",
    "add_foreign_key_sql",
    "add_foreign_key",
]
