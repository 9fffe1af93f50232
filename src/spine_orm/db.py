"""
DB front end.

``DB`` is an immutable, chainable handle: every chain method (``where``,
``order``, ``limit``, ``model``...) returns a new ``DB`` carrying a cloned
:class:`Search`, so a base handle can be shared between threads and branched
freely. Terminal methods (``find``, ``create``, ``update``...) build a
:class:`Scope` from the accumulated state and run the matching hook pipeline.

Manifesto:
    - **Immutable chaining:** ``db.where(...)`` never changes ``db``
    - **One pipeline per verb:** reads run ``query``, writes run
      ``create``/``update``/``delete`` inside a transaction
    - **Not-found is the caller's policy:** list reads return ``[]``; only
      single-record reads raise :class:`RecordNotFoundError`

Architecture:
    ::

        open_db(settings)
          └── DB(executor, dialect, cache, hooks)
                │  chain: where/or_/not_/select/omit/order/limit/offset/
                │         group/having/joins/table/unscoped/preload/set/model
                ▼
              new_scope(value) ──► Scope ──► HookBook.run(action, scope)
                                                │
                                   assembler ◄──┴──► executor

Examples:
    >>> db = open_db(database_url="sqlite:///:memory:")
    >>> db.automigrate(User)
    >>> user = db.create(User(name="gernest"))
    >>> db.where({"name": "gernest"}).first(User).id == user.id
    True
    >>> db.model(user).update("name", "ngorm")
    1

Guardrails:
    ❌ DON'T: db.model(User).update(...)          # no WHERE, rejected
    ✅ DO:    db.model(User).where("age > ?", 18).update(...)

Tags:
    db, front-end, fluent, crud, transaction, spine-orm

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from spine_orm import migration
from spine_orm.association import Association
from spine_orm.core.dialect import Dialect, get_dialect
from spine_orm.core.errors import (
    InvalidAssociationError,
    MissingModelError,
    MissingWhereError,
    RecordNotFoundError,
)
from spine_orm.core.executor import (
    DBAPIExecutor,
    SQLAlchemyExecutor,
    connect_sqlite,
    create_engine,
    session_factory,
)
from spine_orm.core.logging import get_logger
from spine_orm.core.protocols import Executor
from spine_orm.core.settings import OrmSettings, get_settings
from spine_orm.hooks.book import Flow, HookBook
from spine_orm.hooks.defaults import (
    REQUIRE_CONDITIONS_HOOK,
    assign_updating_attrs,
    default_book,
    record_exists,
)
from spine_orm.model.cache import DescriptorCache
from spine_orm.model.descriptor import BoundField, new_record
from spine_orm.query.assembler import combined_condition, create_sql, delete_sql, query_sql, update_sql
from spine_orm.query.conditions import MappingFilter, RecordFilter
from spine_orm.query.scope import (
    IGNORE_PROTECTED_ATTRS,
    ORDER_BY_PRIMARY_KEY,
    SAVE_ASSOCIATIONS,
    UPDATE_COLUMN,
    UPDATE_INTERFACE,
    Scope,
    is_record,
    model_type_of,
)
from spine_orm.query.search import Search
from spine_orm.query.statement import Statement

logger = get_logger(__name__)


def attrs_to_dict(attrs: tuple, cache: DescriptorCache) -> dict[str, Any]:
    """``("name", "x")`` / ``({"name": "x"},)`` / ``(record,)`` -> ``{"name": "x"}``."""
    if len(attrs) == 1:
        value = attrs[0]
        if isinstance(value, Mapping):
            return dict(value)
        if is_record(value):
            return {
                f.name: f.value
                for f in cache.describe(type(value)).bind(value)
                if f.is_normal and not f.is_ignored and not f.is_blank
            }
        raise TypeError(f"Expected a mapping or a record, got {type(value).__name__}")
    if len(attrs) % 2:
        raise TypeError("Expected column/value pairs")
    return {str(attrs[i]): attrs[i + 1] for i in range(0, len(attrs), 2)}


class DB:
    """Chainable database handle."""

    def __init__(
        self,
        executor: Executor,
        dialect: Dialect,
        *,
        cache: DescriptorCache | None = None,
        hooks: HookBook | None = None,
        search: Search | None = None,
        value: Any = None,
        aux: dict[str, Any] | None = None,
    ) -> None:
        self.executor = executor
        self.dialect = dialect
        self.cache = cache if cache is not None else DescriptorCache()
        self.hooks = hooks if hooks is not None else default_book()
        self.search = search if search is not None else Search()
        self.value = value
        self.aux: dict[str, Any] = dict(aux or {})

    def _clone(self, **changes: Any) -> DB:
        clone = DB(
            self.executor,
            self.dialect,
            cache=self.cache,
            hooks=self.hooks,
            search=self.search.clone(),
            value=self.value,
            aux=self.aux,
        )
        for key, value in changes.items():
            setattr(clone, key, value)
        return clone

    def _chain(self, method: str, *args: Any, **kwargs: Any) -> DB:
        clone = self._clone()
        getattr(clone.search, method)(*args, **kwargs)
        return clone

    # =========================================================================
    # Chain
    # =========================================================================

    def where(self, query: Any, *args: Any) -> DB:
        return self._chain("where", query, *args)

    def or_(self, query: Any, *args: Any) -> DB:
        return self._chain("or_", query, *args)

    def not_(self, query: Any, *args: Any) -> DB:
        return self._chain("not_", query, *args)

    def having(self, query: Any, *args: Any) -> DB:
        return self._chain("having", query, *args)

    def joins(self, query: str, *args: Any) -> DB:
        return self._chain("joins", query, *args)

    def select(self, query: Any, *args: Any) -> DB:
        return self._chain("select", query, *args)

    def omit(self, *columns: str) -> DB:
        return self._chain("omit", *columns)

    def order(self, value: Any, reorder: bool = False) -> DB:
        return self._chain("order", value, reorder)

    def limit(self, limit: int | None) -> DB:
        return self._chain("set_limit", limit)

    def offset(self, offset: int | None) -> DB:
        return self._chain("set_offset", offset)

    def group(self, group: str) -> DB:
        return self._chain("set_group", group)

    def table(self, name: str) -> DB:
        return self._chain("table", name)

    def preload(self, schema: str, *conditions: Any) -> DB:
        return self._chain("preload", schema, *conditions)

    def attrs(self, *attrs: Any) -> DB:
        return self._chain("attrs", *attrs)

    def assign(self, *attrs: Any) -> DB:
        return self._chain("assign", *attrs)

    def unscoped(self) -> DB:
        return self._chain("set_unscoped", True)

    def raw(self, sql: str, *args: Any) -> DB:
        """Use ``sql`` verbatim as the next query."""
        clone = self._clone()
        clone.search.set_raw(True).where(sql, *args)
        return clone

    def model(self, value: Any) -> DB:
        """Target ``value`` (a record type or a record) with later operations."""
        return self._clone(value=value)

    def set(self, key: str, value: Any) -> DB:
        """Pass a setting (e.g. ``INSERT_OPTION``) through to the hook scopes."""
        clone = self._clone()
        clone.aux[key] = value
        return clone

    def get(self, key: str, default: Any = None) -> Any:
        return self.aux.get(key, default)

    # =========================================================================
    # Scopes
    # =========================================================================

    def new_scope(self, value: Any, *, model_type: type | None = None) -> Scope:
        """A scope for ``value`` carrying this handle's search state."""
        return Scope(
            value,
            dialect=self.dialect,
            cache=self.cache,
            executor=self.executor,
            search=self.search.clone(),
            model_type=model_type or model_type_of(value) or model_type_of(self.value),
            aux=self.aux,
        )

    def run(self, action: str, scope: Scope) -> Flow:
        return self.hooks.run(action, scope)

    def _write(self, action: str, scope: Scope) -> Scope:
        pipeline = self.hooks.pipeline(action)
        if pipeline.names[:1] == [REQUIRE_CONDITIONS_HOOK] and not scope.has_conditions():
            raise MissingWhereError(action)
        with self.executor.begin() as tx:
            scope.executor = tx
            self.run(action, scope)
        return scope

    # =========================================================================
    # Reads
    # =========================================================================

    @staticmethod
    def _destination(target: Any) -> tuple[Any, type | None]:
        if isinstance(target, type):
            return [], target
        return target, None

    def _query(self, target: Any, where: tuple, *, single: bool, order: str | None = None) -> Scope:
        dest, model_type = self._destination(target)
        if single and isinstance(dest, list):
            dest = new_record(model_type or self._model_type())
        scope = self.new_scope(dest, model_type=model_type)
        scope.search.inline(*where)
        if order:
            scope.search.set_limit(1)
            scope.set(ORDER_BY_PRIMARY_KEY, order)
        self.run("query", scope)
        if is_record(scope.value) and scope.rows_affected == 0:
            raise RecordNotFoundError().with_context(operation="query", table=scope.table_name)
        return scope

    def _model_type(self) -> type:
        model_type = model_type_of(self.value)
        if model_type is None:
            raise MissingModelError("No record type; pass a type or use model()")
        return model_type

    def first(self, target: Any, *where: Any) -> Any:
        """First record by primary key; ``target`` is a record type or a record to fill.

        Raises:
            RecordNotFoundError: when no row matches.
        """
        return self._query(target, where, single=True, order="ASC").value

    def last(self, target: Any, *where: Any) -> Any:
        """Last record by primary key.

        Raises:
            RecordNotFoundError: when no row matches.
        """
        return self._query(target, where, single=True, order="DESC").value

    def find(self, target: Any, *where: Any) -> Any:
        """Every matching record.

        ``target`` is a record type (a new list is returned), a list (filled
        in place) or a record (filled; raises RecordNotFoundError when no row
        matches).
        """
        return self._query(target, where, single=False).value

    def count(self, *where: Any) -> int:
        scope = self.new_scope(self.value)
        scope.search.inline(*where)
        return self.count_scope(scope)

    def count_scope(self, scope: Scope) -> int:
        if scope.search.selects is None:
            scope.search.select("count(*)")
        scope.search.ignore_order_query = True
        stmt = scope.finalize(query_sql(scope))
        row = scope.executor.query_row(stmt.sql, stmt.args)
        return int(row[0]) if row else 0

    def pluck(self, column: str, *where: Any) -> list[Any]:
        """Values of one column for every matching row."""
        scope = self.new_scope(self.value)
        scope.search.inline(*where).select(column)
        stmt = scope.finalize(query_sql(scope))
        return [row[0] for row in scope.executor.query(stmt.sql, stmt.args)]

    def _initialize(self, record: Any, where: tuple) -> Any:
        scope = self.new_scope(record)
        scope.search.inline(*where)
        for clause in scope.search.where_conditions:
            match clause.query:
                case MappingFilter(items=items):
                    self._assign_attrs(scope, dict(items))
                case RecordFilter(record=source):
                    self._assign_attrs(scope, attrs_to_dict((source,), self.cache))
        for attrs in scope.search.init_attrs:
            self._assign_attrs(scope, attrs_to_dict(attrs, self.cache))
        return record

    @staticmethod
    def _assign_attrs(scope: Scope, attrs: Mapping[str, Any]) -> None:
        for key, value in attrs.items():
            f = scope.field_by_name(key)
            if f is not None:
                f.set(value)

    def first_or_init(self, target: Any, *where: Any) -> Any:
        """First match, or a new unsaved record built from the conditions and ``attrs``."""
        try:
            record = self.first(target, *where)
        except RecordNotFoundError:
            record = new_record(target) if isinstance(target, type) else target
            self._initialize(record, where)
        scope = self.new_scope(record)
        for attrs in self.search.assign_attrs:
            self._assign_attrs(scope, attrs_to_dict(attrs, self.cache))
        return record

    def first_or_create(self, target: Any, *where: Any) -> Any:
        """First match, or a new record built from the conditions and ``attrs`` and saved."""
        try:
            record = self.first(target, *where)
        except RecordNotFoundError:
            record = new_record(target) if isinstance(target, type) else target
            self._initialize(record, where)
            scope = self.new_scope(record)
            for attrs in self.search.assign_attrs:
                self._assign_attrs(scope, attrs_to_dict(attrs, self.cache))
            return self._clean().create(record)
        for attrs in self.search.assign_attrs:
            self._clean().model(record).updates(attrs_to_dict(attrs, self.cache))
        return record

    def _clean(self) -> DB:
        """Same connection and settings, no search state."""
        return DB(self.executor, self.dialect, cache=self.cache, hooks=self.hooks, aux=self.aux)

    # =========================================================================
    # Writes
    # =========================================================================

    def create(self, record: Any) -> Any:
        """INSERT ``record`` (and its associations); the generated key is set on it."""
        self._write("create", self.new_scope(record))
        return record

    def save(self, record: Any) -> Any:
        """Create when the primary key is blank, otherwise update every column."""
        scope = self.new_scope(record)
        if scope.primary_key_zero():
            self._write("create", scope)
            return record
        with self.executor.begin() as tx:
            scope.executor = tx
            self.run("update", scope)
            if scope.rows_affected == 0 and not record_exists(scope, record):
                created = self.new_scope(record)
                created.executor = tx
                self.run("create", created)
        return record

    def _update_scope(self, values: Mapping[str, Any], **aux: Any) -> Scope:
        if self.value is None and not self.search.table_name:
            raise MissingModelError("update needs model() or table()")
        scope = self.new_scope(self.value)
        scope.set(UPDATE_INTERFACE, dict(values))
        for key, value in aux.items():
            scope.set(key, value)
        return scope

    def update(self, *attrs: Any) -> int:
        """Update columns given as pairs or a mapping; returns rows affected."""
        return self.updates(attrs_to_dict(attrs, self.cache), ignore_protected_attrs=True)

    def updates(self, values: Any, ignore_protected_attrs: bool = False) -> int:
        """Update columns from a mapping or a record's non-blank fields; returns rows affected."""
        if not isinstance(values, Mapping):
            values = attrs_to_dict((values,), self.cache)
        scope = self._update_scope(values, **{IGNORE_PROTECTED_ATTRS: ignore_protected_attrs})
        return self._write("update", scope).rows_affected

    def update_column(self, *attrs: Any) -> int:
        """Like ``update`` but skips lifecycle methods, timestamps and associations."""
        return self.update_columns(attrs_to_dict(attrs, self.cache))

    def update_columns(self, values: Any) -> int:
        if not isinstance(values, Mapping):
            values = attrs_to_dict((values,), self.cache)
        scope = self._update_scope(
            values,
            **{UPDATE_COLUMN: True, SAVE_ASSOCIATIONS: False, IGNORE_PROTECTED_ATTRS: True},
        )
        return self._write("update", scope).rows_affected

    def delete(self, target: Any = None, *where: Any) -> int:
        """Delete ``target`` (or the model), soft when it has ``deleted_at``; returns rows affected."""
        value = target if target is not None else self.value
        if value is None and not self.search.table_name:
            raise MissingModelError("delete needs a record, a record type, model() or table()")
        scope = self.new_scope(value)
        scope.search.inline(*where)
        return self._write("delete", scope).rows_affected

    def exec(self, sql: str, *args: Any) -> int:
        """Run a raw statement; ``?`` placeholders are bound from ``args``."""
        scope = self.new_scope(self.value)
        scope.search.set_raw(True).where(sql, *args)
        stmt = scope.finalize(combined_condition(scope))
        return scope.executor.execute(stmt.sql, stmt.args).rows_affected

    # =========================================================================
    # Statements without execution
    # =========================================================================

    def create_sql(self, record: Any) -> Statement:
        scope = self.new_scope(record)
        return scope.finalize(create_sql(scope))

    def find_sql(self, target: Any, *where: Any) -> Statement:
        dest, model_type = self._destination(target)
        scope = self.new_scope(dest, model_type=model_type)
        scope.search.inline(*where)
        return scope.finalize(query_sql(scope))

    def first_sql(self, target: Any, *where: Any) -> Statement:
        return self._ordered_sql(target, where, "ASC")

    def last_sql(self, target: Any, *where: Any) -> Statement:
        return self._ordered_sql(target, where, "DESC")

    def _ordered_sql(self, target: Any, where: tuple, direction: str) -> Statement:
        dest, model_type = self._destination(target)
        scope = self.new_scope(dest, model_type=model_type)
        scope.search.inline(*where).set_limit(1)
        if scope.primary_key:
            scope.search.order(f"{scope.quoted_table_name}.{scope.quote(scope.primary_key)} {direction}")
        return scope.finalize(query_sql(scope))

    def _update_statement(self, scope: Scope) -> Statement:
        if not scope.has_conditions():
            raise MissingWhereError("update")
        if assign_updating_attrs(self.hooks, scope) is Flow.STOP:
            return Statement()
        return scope.finalize(update_sql(scope))

    def update_sql(self, *attrs: Any) -> Statement:
        """The UPDATE ``update`` would run (the record is assigned, nothing executes)."""
        return self.updates_sql(attrs_to_dict(attrs, self.cache), ignore_protected_attrs=True)

    def updates_sql(self, values: Any, ignore_protected_attrs: bool = False) -> Statement:
        if not isinstance(values, Mapping):
            values = attrs_to_dict((values,), self.cache)
        return self._update_statement(
            self._update_scope(values, **{IGNORE_PROTECTED_ATTRS: ignore_protected_attrs})
        )

    def delete_sql(self, target: Any = None, *where: Any) -> Statement:
        scope = self.new_scope(target if target is not None else self.value)
        scope.search.inline(*where)
        if not scope.has_conditions():
            raise MissingWhereError("delete")
        return scope.finalize(delete_sql(scope))

    # =========================================================================
    # Associations
    # =========================================================================

    def association(self, column: str) -> Association:
        """count / find / append for relationship ``column`` of the ``model()`` record."""
        return Association(self, column)

    def related(self, target: Any, *foreign_keys: str) -> Any:
        """Load records related to the ``model()`` record into ``target``.

        ``foreign_keys`` name relationship or key fields on the owner; when
        none match, ``<Target>Id`` and ``<Owner>Id`` are tried.
        """
        owner = self.value
        if not is_record(owner):
            raise InvalidAssociationError("related() needs model(record)")
        dest, target_type = self._destination(target)
        target_type = target_type or model_type_of(dest)
        if target_type is None:
            raise MissingModelError("related() needs a record type, a record or a non-empty list")
        owner_descriptor = self.cache.describe(type(owner))
        target_descriptor = self.cache.describe(target_type)
        owner_scope = self.new_scope(owner)

        candidates = [*foreign_keys, f"{target_type.__name__}Id", f"{type(owner).__name__}Id"]
        for name in candidates:
            from_field = owner_descriptor.field_by_name(name)
            to_field = target_descriptor.field_by_name(name)
            if from_field is not None:
                if from_field.relationship is not None:
                    return Association(self, name).find(dest)
                value = BoundField(from_field, owner).value
                found = self._clean().model(target_type).where(
                    f"{owner_scope.quote(target_descriptor.primary_field.db_name)} = ?", value
                )
                return found.first(dest) if is_record(dest) else found.find(dest)
            if to_field is not None:
                return self._clean().model(target_type).where(
                    f"{owner_scope.quote(to_field.db_name)} = ?",
                    BoundField(owner_descriptor.primary_field, owner).value,
                ).find(dest)
        raise InvalidAssociationError(f"invalid association {list(foreign_keys)}")

    # =========================================================================
    # Transactions
    # =========================================================================

    @contextmanager
    def transaction(self) -> Iterator[DB]:
        """A handle bound to one transaction: commit on success, roll back on error."""
        with self.executor.begin() as tx:
            yield self._clone(executor=tx)

    def close(self) -> None:
        closer = getattr(self.executor, "close", None)
        if callable(closer):
            closer()

    # =========================================================================
    # Migration
    # =========================================================================

    def _migration_scopes(self, models: tuple) -> list[Scope]:
        if not models:
            models = (self.value,)
        return [self.new_scope(m, model_type=model_type_of(m)) for m in models]

    def create_table(self, *models: Any) -> DB:
        for scope in self._migration_scopes(models):
            migration.create_table(scope)
        return self

    def drop_table(self, *values: Any) -> DB:
        """Drop tables given as record types, records or table names."""
        for value in values:
            if isinstance(value, str):
                migration.drop_table(self.new_scope(None), value)
            else:
                migration.drop_table(self.new_scope(value))
        return self

    def drop_table_if_exists(self, *values: Any) -> DB:
        for value in values:
            if isinstance(value, str):
                migration.drop_table_if_exists(self.new_scope(None), value)
            else:
                migration.drop_table_if_exists(self.new_scope(value))
        return self

    def has_table(self, value: Any) -> bool:
        if isinstance(value, str):
            return migration.has_table(self.new_scope(None), value)
        return migration.has_table(self.new_scope(value))

    def automigrate(self, *models: Any) -> migration.MigrationResult:
        """Create missing tables, columns and indexes for ``models``."""
        result = migration.MigrationResult()
        for scope in self._migration_scopes(models):
            migration.automigrate(scope, result)
        return result

    def _model_scope(self) -> Scope:
        if self.value is None:
            raise MissingModelError("use model() before schema changes")
        return self.new_scope(self.value)

    def add_index(self, index_name: str, *columns: str) -> DB:
        migration.add_index(self._model_scope(), False, index_name, *columns)
        return self

    def add_unique_index(self, index_name: str, *columns: str) -> DB:
        migration.add_index(self._model_scope(), True, index_name, *columns)
        return self

    def remove_index(self, index_name: str) -> DB:
        migration.remove_index(self._model_scope(), index_name)
        return self

    def drop_column(self, column: str) -> DB:
        migration.drop_column(self._model_scope(), column)
        return self

    def modify_column(self, column: str, sql_type: str) -> DB:
        migration.modify_column(self._model_scope(), column, sql_type)
        return self

    def add_foreign_key(self, field_name: str, dest: str, on_delete: str, on_update: str) -> DB:
        migration.add_foreign_key(self._model_scope(), field_name, dest, on_delete, on_update)
        return self


# =============================================================================
# Opening
# =============================================================================


def open_db(settings: OrmSettings | None = None, **overrides: Any) -> DB:
    """Open a handle from settings (environment by default, keyword overrides win).

    ``sqlite:///`` URLs use the sqlite3 driver through :class:`DBAPIExecutor`;
    every other URL goes through a SQLAlchemy session.
    """
    if settings is None:
        settings = get_settings(**overrides)
    elif overrides:
        settings = settings.model_copy(update=overrides)
    dialect = get_dialect(settings.resolved_dialect)
    path = settings.sqlite_path
    if path is not None:
        executor: Executor = DBAPIExecutor(connect_sqlite(path), echo=settings.echo_sql)
    else:
        engine = create_engine(settings.database_url)
        executor = SQLAlchemyExecutor(session_factory(engine)(), dialect, echo=settings.echo_sql)
    logger.info(
        "db_opened",
        dialect=dialect.name,
        driver="sqlite3" if path is not None else "sqlalchemy",
    )
    return DB(executor, dialect, cache=DescriptorCache(singular_table=settings.singular_table))


__all__ = ["DB", "open_db", "attrs_to_dict"]
