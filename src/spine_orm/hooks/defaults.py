"""
Default hook steps.

The four stock pipelines a fresh :class:`HookBook` is loaded with. Steps are
plain functions with the ``step(book, scope) -> Flow | None`` signature and
stable names (the ``*_HOOK`` constants below) so callers can replace or
insert around any of them.

Manifesto:
    - **Steps sequence, builders build:** SQL text comes from the assembler,
      values come from bound fields, steps only glue them together
    - **Lifecycle methods are optional:** a record's ``before_save`` etc. is
      called when it exists, skipped otherwise
    - **Errors surface:** a failing step aborts its pipeline; nothing is
      swallowed

Architecture:
    ::

        create: before_save → before_create → save_before_associations
                → update_timestamp → create_sql → create_exec
                → reload_defaults → save_after_associations
                → after_create → after_save

        query:  query_sql → query_exec → preload → after_find

        update: require_conditions → assign_updating_attrs
                → before_save → before_update → save_before_associations
                → update_timestamp → update_sql → update_exec
                → save_after_associations → after_update → after_save

        delete: require_conditions → before_delete → delete_sql
                → delete_exec → after_delete

Examples:
    >>> book = default_book()
    >>> book.create.names[:3]
    ['before_save', 'before_create', 'save_before_associations']

Guardrails:
    ❌ DON'T: Mutate a cached descriptor inside a step
    ✅ DO: Work through BoundField / Scope.set_column

Tags:
    hooks, callbacks, create, query, update, delete, preload, spine-orm

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from spine_orm.association import (
    add_join_relation,
    column_values,
    columns_condition,
    field_value,
    flatten,
    join_with,
    key_of,
    query_marks,
    records_of,
)
from spine_orm.core.errors import (
    MissingWhereError,
    OrmError,
    PreconditionError,
    ScanError,
    UnsettableFieldError,
)
from spine_orm.core.logging import get_logger
from spine_orm.core.protocols import Rows
from spine_orm.hooks.book import Flow, HookBook
from spine_orm.model.descriptor import (
    BoundField,
    FieldDescriptor,
    ModelDescriptor,
    RelationKind,
    new_record,
)
from spine_orm.query.assembler import create_sql, delete_sql, query_sql, update_sql
from spine_orm.query.scope import (
    BLANK_COLUMNS_WITH_DEFAULT,
    IGNORE_PROTECTED_ATTRS,
    ORDER_BY_PRIMARY_KEY,
    UPDATE_ATTRS,
    UPDATE_COLUMN,
    UPDATE_INTERFACE,
    Scope,
    is_record,
)
from spine_orm.query.search import Preload
from spine_orm.query.statement import ArgCollector, Expr, Statement

logger = get_logger(__name__)

# -- hook names ----------------------------------------------------------------

BEFORE_SAVE_HOOK = "before_save"
BEFORE_CREATE_HOOK = "before_create"
SAVE_BEFORE_ASSOCIATIONS_HOOK = "save_before_associations"
UPDATE_TIMESTAMP_HOOK = "update_timestamp"
CREATE_SQL_HOOK = "create_sql"
CREATE_EXEC_HOOK = "create_exec"
RELOAD_DEFAULTS_HOOK = "reload_defaults"
SAVE_AFTER_ASSOCIATIONS_HOOK = "save_after_associations"
AFTER_CREATE_HOOK = "after_create"
AFTER_SAVE_HOOK = "after_save"

QUERY_SQL_HOOK = "query_sql"
QUERY_EXEC_HOOK = "query_exec"
PRELOAD_HOOK = "preload"
AFTER_FIND_HOOK = "after_find"

REQUIRE_CONDITIONS_HOOK = "require_conditions"
ASSIGN_UPDATING_ATTRS_HOOK = "assign_updating_attrs"
BEFORE_UPDATE_HOOK = "before_update"
UPDATE_SQL_HOOK = "update_sql"
UPDATE_EXEC_HOOK = "update_exec"
AFTER_UPDATE_HOOK = "after_update"

BEFORE_DELETE_HOOK = "before_delete"
DELETE_SQL_HOOK = "delete_sql"
DELETE_EXEC_HOOK = "delete_exec"
AFTER_DELETE_HOOK = "after_delete"


# =============================================================================
# Lifecycle methods
# =============================================================================


def call_method(scope: Scope, method: str) -> None:
    """Call ``method()`` on the scope record, or on every record of a list."""
    for record in records_of(scope.value):
        fn = getattr(record, method, None)
        if callable(fn):
            fn()


def _lifecycle(method: str, *, skip_on_update_column: bool = False):
    def step(book: HookBook, scope: Scope) -> None:
        if skip_on_update_column and scope.get(UPDATE_COLUMN):
            return
        call_method(scope, method)

    step.__name__ = method
    step.__qualname__ = method
    return step


# =============================================================================
# Scanning
# =============================================================================


def column_fields(descriptor: ModelDescriptor, columns: list[str]) -> list[FieldDescriptor | None]:
    """Field for each result column; a repeated column maps to the next field with that name."""
    mapped: list[FieldDescriptor | None] = []
    last_index: dict[str, int] = {}
    for column in columns:
        start = last_index.get(column, -1) + 1
        found = None
        for index in range(start, len(descriptor.fields)):
            f = descriptor.fields[index]
            if f.db_name == column and not f.is_ignored:
                found = f
                last_index[column] = index
                break
        mapped.append(found)
    return mapped


def scan_row(descriptor: ModelDescriptor, fields: list[FieldDescriptor | None], row: tuple, record: Any) -> Any:
    """Assign ``row`` onto ``record`` field by field.

    Raises:
        ScanError: when a stored value cannot be converted to its field type.
    """
    for f, value in zip(fields, row):
        if f is None:
            continue
        try:
            BoundField(f, record).set(value)
        except UnsettableFieldError as e:
            raise ScanError(
                f"Cannot scan column {f.db_name!r} into {descriptor.name}.{f.name}: {e.message}",
                cause=e,
            ).with_context(table=descriptor.default_table_name, field=f.name) from e
    return record


def scan_rows(scope: Scope, rows: Rows) -> None:
    """Scan ``rows`` into the scope destination (a list is emptied first)."""
    descriptor = scope.describe()
    fields = column_fields(descriptor, rows.columns)
    destination = scope.value
    if isinstance(destination, list):
        destination.clear()
        for row in rows:
            destination.append(scan_row(descriptor, fields, row, new_record(descriptor.model_type)))
    elif is_record(destination):
        for row in rows:
            scan_row(descriptor, fields, row, destination)
    else:
        raise PreconditionError(
            f"Unsupported destination {type(destination).__name__}; pass a record or a list"
        )
    scope.rows_affected = len(rows)


# =============================================================================
# Create / update helpers
# =============================================================================


def save_record(book: HookBook, scope: Scope, record: Any) -> Scope:
    """Create ``record`` when its key is blank, otherwise update it (create if the row is gone)."""
    sub = scope.new(record)
    if sub.primary_key_zero():
        book.run("create", sub)
        return sub
    book.run("update", sub)
    if sub.rows_affected == 0 and not record_exists(scope, record):
        sub = scope.new(record)
        book.run("create", sub)
    return sub


def record_exists(scope: Scope, record: Any) -> bool:
    probe = scope.new([], model_type=type(record))
    probe.search.set_unscoped()
    for f in probe.describe().bind(record):
        if f.is_primary_key:
            probe.search.where({f.db_name: f.value})
    probe.search.select("count(*)")
    stmt = probe.finalize(query_sql(probe))
    row = probe.executor.query_row(stmt.sql, stmt.args)
    return bool(row and row[0])


def _association_fields(scope: Scope) -> list[BoundField]:
    if scope.model_type is None or not scope.should_save_associations():
        return []
    fields = []
    for f in scope.fields():
        if f.relationship is None or f.is_ignored or f.is_blank:
            continue
        if not scope.changeable_field(f):
            continue
        if f.tag_settings.get("SAVE_ASSOCIATIONS", "").lower() == "false":
            continue
        fields.append(f)
    return fields


def save_before_associations(book: HookBook, scope: Scope) -> None:
    """Save belongs_to targets first and copy their keys onto the owner."""
    for f in _association_fields(scope):
        relation = f.relationship
        if relation.kind is not RelationKind.BELONGS_TO:
            continue
        save_record(book, scope, f.value)
        for foreign_name, association_name in zip(
            relation.foreign_field_names, relation.association_foreign_field_names
        ):
            scope.set_column(foreign_name, field_value(scope.cache, f.value, association_name))


def save_after_associations(book: HookBook, scope: Scope) -> None:
    """Save has_one / has_many children and many-to-many links after the owner."""
    owner = scope.record
    for f in _association_fields(scope):
        relation = f.relationship
        if relation.kind is RelationKind.BELONGS_TO:
            continue
        for element in records_of(f.value):
            if relation.kind is RelationKind.MANY_TO_MANY:
                save_record(book, scope, element)
                stmt = scope.finalize(add_join_relation(scope, relation.join_table, owner, element))
                scope.executor.execute(stmt.sql, stmt.args)
                continue
            child = scope.new(element)
            for foreign_name, association_name in zip(
                relation.foreign_field_names, relation.association_foreign_field_names
            ):
                child.set_column(foreign_name, field_value(scope.cache, owner, association_name))
            if relation.polymorphic_type:
                child.set_column(relation.polymorphic_type, relation.polymorphic_value)
            save_record(book, scope, element)


def update_timestamp_for_create(book: HookBook, scope: Scope) -> None:
    now = datetime.now(UTC)
    for name in ("created_at", "updated_at"):
        f = scope.field_by_name(name)
        if f is not None and f.is_blank:
            f.set(now)


def update_timestamp_for_update(book: HookBook, scope: Scope) -> None:
    if scope.get(UPDATE_COLUMN):
        return
    if scope.model_type is not None and scope.has_column("updated_at"):
        scope.set_column("updated_at", datetime.now(UTC))


# =============================================================================
# Create
# =============================================================================


def create_sql_step(book: HookBook, scope: Scope) -> None:
    scope.finalize(create_sql(scope))


def create_exec(book: HookBook, scope: Scope) -> None:
    stmt = scope.statement
    primary = scope.primary_field()
    returning = scope.dialect.last_insert_id_returning_suffix(
        scope.quoted_table_name, scope.quote(primary.db_name) if primary is not None else "*"
    )
    if returning and primary is not None:
        row = scope.executor.query_row(stmt.sql, stmt.args)
        if row:
            primary.set(row[0])
        scope.rows_affected = 1 if row else 0
    else:
        result = scope.executor.execute(stmt.sql, stmt.args)
        scope.rows_affected = result.rows_affected
        if primary is not None and primary.is_blank and result.last_insert_id is not None:
            primary.set(result.last_insert_id)
    logger.debug(
        "record_created",
        table=scope.table_name,
        rows_affected=scope.rows_affected,
    )


def reload_defaults(book: HookBook, scope: Scope) -> None:
    """Read back columns the store filled from their declared defaults."""
    columns = scope.get(BLANK_COLUMNS_WITH_DEFAULT) or []
    if not columns or scope.primary_key_zero():
        return
    collector = ArgCollector()
    conditions = " AND ".join(
        f"{scope.quote(f.db_name)} = {collector.add(f.value)}" for f in scope.primary_fields()
    )
    stmt = Statement(
        f"SELECT {','.join(columns)} FROM {scope.quoted_table_name} WHERE {conditions}",
        collector.args,
    ).finalize(scope.dialect)
    rows = scope.executor.query(stmt.sql, stmt.args)
    descriptor = scope.describe()
    fields = column_fields(descriptor, rows.columns)
    for row in rows:
        scan_row(descriptor, fields, row, scope.value)


# =============================================================================
# Query
# =============================================================================


def query_sql_step(book: HookBook, scope: Scope) -> None:
    direction = scope.get(ORDER_BY_PRIMARY_KEY)
    if direction and scope.primary_key:
        scope.search.order(f"{scope.quoted_table_name}.{scope.quote(scope.primary_key)} {direction}")
    scope.finalize(query_sql(scope))


def query_exec(book: HookBook, scope: Scope) -> None:
    stmt = scope.statement
    rows = scope.executor.query(stmt.sql, stmt.args)
    scan_rows(scope, rows)


def preload_step(book: HookBook, scope: Scope) -> None:
    if not scope.search.preloads or scope.rows_affected == 0:
        return
    loaded: set[str] = set()
    for preload in scope.search.preloads:
        preload_path(book, scope, preload, loaded)


def preload_path(book: HookBook, scope: Scope, preload: Preload, loaded: set[str] | None = None) -> None:
    """Load ``preload.schema`` (``"a.b.c"``) into the scope records, level by level.

    ``loaded`` collects the path prefixes already fetched so shared
    prefixes of several preloads are queried once.
    """
    if loaded is None:
        loaded = set()
    current = scope
    parts = preload.schema.split(".")
    for depth, name in enumerate(parts):
        last = depth == len(parts) - 1
        descriptor = current.describe()
        f = descriptor.field_by_name(name)
        if f is None or f.relationship is None:
            raise PreconditionError(f"can't preload field {name} for {descriptor.name}")
        owners = records_of(current.value)
        if not owners:
            return
        prefix = ".".join(parts[: depth + 1])
        if prefix not in loaded:
            conditions = preload.conditions if last else ()
            _PRELOADERS[f.relationship.kind](book, current, f, owners, conditions)
            loaded.add(prefix)
        if last:
            return
        # descend into the values just loaded
        children = []
        for owner in owners:
            children.extend(records_of(BoundField(f, owner).value))
        current = current.new(children, model_type=f.base_type)


def _related_scope(book: HookBook, scope: Scope, f: FieldDescriptor, conditions: tuple) -> Scope:
    sub = scope.new([], model_type=f.base_type)
    if conditions:
        sub.search.where(conditions[0], *conditions[1:])
    return sub


def _run_query(book: HookBook, sub: Scope) -> list:
    book.run("query", sub)
    return sub.value


def preload_has(book: HookBook, scope: Scope, f: FieldDescriptor, owners: list, conditions: tuple) -> None:
    relation = f.relationship
    keys = column_values(scope.cache, owners, relation.association_foreign_field_names)
    if not keys:
        return
    sub = _related_scope(book, scope, f, conditions)
    columns = [sub.quote(name) for name in relation.foreign_db_names]
    sub.search.where(f"{columns_condition(columns)} IN ({query_marks(keys)})", *flatten(keys))
    if relation.polymorphic_type:
        sub.search.where(f"{sub.quote(relation.polymorphic_db_name)} = ?", relation.polymorphic_value)
    results = _run_query(book, sub)

    by_key: dict[tuple, list] = {}
    for result in results:
        by_key.setdefault(
            key_of(field_value(scope.cache, result, n) for n in relation.foreign_field_names), []
        ).append(result)
    for owner in owners:
        matched = by_key.get(
            key_of(field_value(scope.cache, owner, n) for n in relation.association_foreign_field_names), []
        )
        bound = BoundField(f, owner)
        if relation.kind is RelationKind.HAS_MANY:
            bound.set(list(matched))
        elif matched:
            bound.set(matched[-1])


def preload_belongs_to(book: HookBook, scope: Scope, f: FieldDescriptor, owners: list, conditions: tuple) -> None:
    relation = f.relationship
    keys = column_values(scope.cache, owners, relation.foreign_field_names)
    if not keys:
        return
    sub = _related_scope(book, scope, f, conditions)
    columns = [sub.quote(name) for name in relation.association_foreign_db_names]
    sub.search.where(f"{columns_condition(columns)} IN ({query_marks(keys)})", *flatten(keys))
    results = _run_query(book, sub)

    by_key = {
        key_of(field_value(scope.cache, result, n) for n in relation.association_foreign_field_names): result
        for result in results
    }
    for owner in owners:
        found = by_key.get(key_of(field_value(scope.cache, owner, n) for n in relation.foreign_field_names))
        if found is not None:
            BoundField(f, owner).set(found)


def preload_many_to_many(book: HookBook, scope: Scope, f: FieldDescriptor, owners: list, conditions: tuple) -> None:
    relation = f.relationship
    handler = relation.join_table
    sub = _related_scope(book, scope, f, conditions)
    join_with(sub, handler, owners)

    # the join columns come back with each row so results can be matched to owners
    join_table = sub.quote(handler.table_name)
    join_columns = [fk.db_name for fk in handler.source.foreign_keys]
    selected = [f"{sub.quoted_table_name}.*"] + [f"{join_table}.{sub.quote(c)}" for c in join_columns]
    sub.search.select(", ".join(selected))
    sub.finalize(query_sql(sub))
    rows = sub.executor.query(sub.statement.sql, sub.statement.args)

    descriptor = sub.describe()
    width = len(rows.columns) - len(join_columns)
    fields = column_fields(descriptor, rows.columns[:width])
    grouped: dict[tuple, list] = {}
    for row in rows:
        record = scan_row(descriptor, fields, row[:width], new_record(descriptor.model_type))
        grouped.setdefault(key_of(row[width:]), []).append(record)

    source_descriptor = scope.cache.describe(handler.source.model_type)
    owner_names = []
    for fk in handler.source.foreign_keys:
        owner_field = source_descriptor.field_by_name(fk.association_db_name)
        owner_names.append(owner_field.name if owner_field is not None else fk.association_db_name)
    for owner in owners:
        key = key_of(field_value(scope.cache, owner, n) for n in owner_names)
        BoundField(f, owner).set(list(grouped.get(key, [])))


_PRELOADERS = {
    RelationKind.HAS_ONE: preload_has,
    RelationKind.HAS_MANY: preload_has,
    RelationKind.BELONGS_TO: preload_belongs_to,
    RelationKind.MANY_TO_MANY: preload_many_to_many,
}


# =============================================================================
# Update
# =============================================================================


def require_conditions(action: str):
    def step(book: HookBook, scope: Scope) -> None:
        if not scope.has_conditions():
            raise MissingWhereError(action)

    step.__name__ = f"require_{action}_conditions"
    return step


def assign_updating_attrs(book: HookBook, scope: Scope) -> Flow | None:
    """Turn the requested update mapping into column -> value pairs.

    With a record as the target only fields that exist, are writable and
    actually change are kept (and assigned onto the record). Stops the
    pipeline when nothing would change.
    """
    attrs = scope.get(UPDATE_INTERFACE)
    if attrs is None:
        return None
    if not isinstance(attrs, Mapping):
        raise PreconditionError(f"update attributes must be a mapping, got {type(attrs).__name__}")

    updates: dict[str, Any] = {}
    if is_record(scope.value):
        ignore_protected = bool(scope.get(IGNORE_PROTECTED_ATTRS))
        for key, value in attrs.items():
            f = scope.field_by_name(key)
            if f is None or not f.is_normal:
                continue
            if not ignore_protected and not scope.changeable_field(f):
                continue
            if isinstance(value, Expr):
                updates[f.db_name] = value
                continue
            if f.value == value:
                continue
            f.set(value)
            updates[f.db_name] = value
    else:
        descriptor = scope.describe() if scope.model_type is not None else None
        for key, value in attrs.items():
            f = descriptor.field_by_name(key) if descriptor is not None else None
            updates[f.db_name if f is not None else key] = value

    if not updates:
        return Flow.STOP
    scope.set(UPDATE_ATTRS, updates)
    return None


def update_sql_step(book: HookBook, scope: Scope) -> Flow | None:
    stmt = update_sql(scope)
    if not stmt:
        return Flow.STOP
    scope.finalize(stmt)
    return None


def _exec_statement(book: HookBook, scope: Scope) -> None:
    stmt = scope.statement
    result = scope.executor.execute(stmt.sql, stmt.args)
    scope.rows_affected = result.rows_affected


def _with_table(step):
    def wrapped(book: HookBook, scope: Scope) -> None:
        try:
            step(book, scope)
        except OrmError as e:
            if e.context.table is None and scope.model_type is not None:
                e.with_context(table=scope.table_name)
            raise

    wrapped.__name__ = step.__name__
    return wrapped


# =============================================================================
# Delete
# =============================================================================


def delete_sql_step(book: HookBook, scope: Scope) -> None:
    scope.finalize(delete_sql(scope))


# =============================================================================
# Registration
# =============================================================================


def register_defaults(book: HookBook) -> HookBook:
    """Load the stock steps into ``book``."""
    book.create.register(BEFORE_SAVE_HOOK, _lifecycle("before_save"))
    book.create.register(BEFORE_CREATE_HOOK, _lifecycle("before_create"))
    book.create.register(SAVE_BEFORE_ASSOCIATIONS_HOOK, save_before_associations)
    book.create.register(UPDATE_TIMESTAMP_HOOK, update_timestamp_for_create)
    book.create.register(CREATE_SQL_HOOK, create_sql_step)
    book.create.register(CREATE_EXEC_HOOK, _with_table(create_exec))
    book.create.register(RELOAD_DEFAULTS_HOOK, reload_defaults)
    book.create.register(SAVE_AFTER_ASSOCIATIONS_HOOK, save_after_associations)
    book.create.register(AFTER_CREATE_HOOK, _lifecycle("after_create"))
    book.create.register(AFTER_SAVE_HOOK, _lifecycle("after_save"))

    book.query.register(QUERY_SQL_HOOK, query_sql_step)
    book.query.register(QUERY_EXEC_HOOK, _with_table(query_exec))
    book.query.register(PRELOAD_HOOK, preload_step)
    book.query.register(AFTER_FIND_HOOK, _lifecycle("after_find"))

    book.update.register(REQUIRE_CONDITIONS_HOOK, require_conditions("update"))
    book.update.register(ASSIGN_UPDATING_ATTRS_HOOK, assign_updating_attrs)
    book.update.register(BEFORE_SAVE_HOOK, _lifecycle("before_save", skip_on_update_column=True))
    book.update.register(BEFORE_UPDATE_HOOK, _lifecycle("before_update", skip_on_update_column=True))
    book.update.register(SAVE_BEFORE_ASSOCIATIONS_HOOK, save_before_associations)
    book.update.register(UPDATE_TIMESTAMP_HOOK, update_timestamp_for_update)
    book.update.register(UPDATE_SQL_HOOK, update_sql_step)
    book.update.register(UPDATE_EXEC_HOOK, _with_table(_exec_statement))
    book.update.register(SAVE_AFTER_ASSOCIATIONS_HOOK, save_after_associations)
    book.update.register(AFTER_UPDATE_HOOK, _lifecycle("after_update", skip_on_update_column=True))
    book.update.register(AFTER_SAVE_HOOK, _lifecycle("after_save", skip_on_update_column=True))

    book.delete.register(REQUIRE_CONDITIONS_HOOK, require_conditions("delete"))
    book.delete.register(BEFORE_DELETE_HOOK, _lifecycle("before_delete"))
    book.delete.register(DELETE_SQL_HOOK, delete_sql_step)
    book.delete.register(DELETE_EXEC_HOOK, _with_table(_exec_statement))
    book.delete.register(AFTER_DELETE_HOOK, _lifecycle("after_delete"))
    return book


def default_book() -> HookBook:
    """A new HookBook with the stock pipelines."""
    return register_defaults(HookBook())


__all__ = [
    "BEFORE_SAVE_HOOK",
    "BEFORE_CREATE_HOOK",
    "SAVE_BEFORE_ASSOCIATIONS_HOOK",
    "UPDATE_TIMESTAMP_HOOK",
    "CREATE_SQL_HOOK",
    "CREATE_EXEC_HOOK",
    "RELOAD_DEFAULTS_HOOK",
    "SAVE_AFTER_ASSOCIATIONS_HOOK",
    "AFTER_CREATE_HOOK",
    "AFTER_SAVE_HOOK",
    "QUERY_SQL_HOOK",
    "QUERY_EXEC_HOOK",
    "PRELOAD_HOOK",
    "AFTER_FIND_HOOK",
    "REQUIRE_CONDITIONS_HOOK",
    "ASSIGN_UPDATING_ATTRS_HOOK",
    "BEFORE_UPDATE_HOOK",
    "UPDATE_SQL_HOOK",
    "UPDATE_EXEC_HOOK",
    "AFTER_UPDATE_HOOK",
    "BEFORE_DELETE_HOOK",
    "DELETE_SQL_HOOK",
    "DELETE_EXEC_HOOK",
    "AFTER_DELETE_HOOK",
    "call_method",
    "column_fields",
    "scan_row",
    "scan_rows",
    "save_record",
    "record_exists",
    "save_before_associations",
    "save_after_associations",
    "preload_path",
    "register_defaults",
    "default_book",
]
