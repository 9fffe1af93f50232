"""
Operation scope.

A ``Scope`` is the per-operation context every hook sees: the target value
(one record, or a list being filled by a query), the resolved record type,
the accumulated :class:`Search`, the dialect, descriptor cache and executor,
a free-form auxiliary map hooks use to talk to each other, and the finalized
statement plus rows-affected count once a statement has run.

Scopes are cheap and short-lived. A new scope is created for every call on
the front end and discarded afterwards; nothing on a scope is shared with
another operation except the immutable descriptors.

Architecture:
    ::

        DB.first(user)
          └── Scope(value=user, search=..., dialect, cache, executor)
                ├── describe()        → ModelDescriptor (cached)
                ├── fields()          → BoundField per field (fresh)
                ├── aux               → hook-to-hook settings
                └── statement / rows_affected  (set by exec hooks)

Tags:
    scope, context, hooks, spine-orm

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import dataclasses
from typing import Any

from spine_orm.core.dialect import Dialect
from spine_orm.core.errors import MissingModelError, UnsettableFieldError
from spine_orm.core.protocols import Executor
from spine_orm.model.cache import DescriptorCache
from spine_orm.model.descriptor import BoundField, ModelDescriptor, new_record
from spine_orm.query.conditions import RenderContext
from spine_orm.query.search import Search
from spine_orm.query.statement import Statement

# -- auxiliary keys ------------------------------------------------------------

ORDER_BY_PRIMARY_KEY = "orm:order_by_primary_key"
UPDATE_INTERFACE = "orm:update_interface"
UPDATE_ATTRS = "orm:update_attrs"
UPDATE_COLUMN = "orm:update_column"
IGNORE_PROTECTED_ATTRS = "orm:ignore_protected_attrs"
SAVE_ASSOCIATIONS = "orm:save_associations"
STARTED_TRANSACTION = "orm:started_transaction"
BLANK_COLUMNS_WITH_DEFAULT = "orm:blank_columns_with_default"
INSERT_OPTION = "orm:insert_option"
UPDATE_OPTION = "orm:update_option"
DELETE_OPTION = "orm:delete_option"
QUERY_OPTION = "orm:query_option"
TABLE_OPTIONS = "orm:table_options"


def is_record(value: Any) -> bool:
    return dataclasses.is_dataclass(value) and not isinstance(value, type)


def model_type_of(value: Any) -> type | None:
    """Record type behind ``value``: a record, a record type or a non-empty list of records."""
    if isinstance(value, type) and dataclasses.is_dataclass(value):
        return value
    if is_record(value):
        return type(value)
    if isinstance(value, list) and value and is_record(value[0]):
        return type(value[0])
    return None


class Scope:
    """Context for one front-end operation."""

    def __init__(
        self,
        value: Any,
        *,
        dialect: Dialect,
        cache: DescriptorCache,
        executor: Executor,
        search: Search | None = None,
        model_type: type | None = None,
        aux: dict[str, Any] | None = None,
    ) -> None:
        self.value = value
        self.dialect = dialect
        self.cache = cache
        self.executor = executor
        self.search = search if search is not None else Search()
        self.model_type = model_type or model_type_of(value)
        self.aux: dict[str, Any] = dict(aux or {})
        self.statement = Statement()
        self.rows_affected = 0

    def new(self, value: Any, *, model_type: type | None = None) -> Scope:
        """A fresh scope for another value, on the same connection and cache."""
        return Scope(
            value,
            dialect=self.dialect,
            cache=self.cache,
            executor=self.executor,
            model_type=model_type,
        )

    def get(self, key: str, default: Any = None) -> Any:
        return self.aux.get(key, default)

    def set(self, key: str, value: Any) -> Scope:
        self.aux[key] = value
        return self

    # -- metadata -----------------------------------------------------------

    def describe(self) -> ModelDescriptor:
        if self.model_type is None:
            raise MissingModelError("No record type for this operation; pass a record or use model()")
        return self.cache.describe(self.model_type)

    @property
    def record(self) -> Any:
        """The single record the scope operates on (a zero record for list targets)."""
        if is_record(self.value):
            return self.value
        return new_record(self.describe().model_type)

    def fields(self) -> list[BoundField]:
        return self.describe().bind(self.record)

    def field_by_name(self, name: str) -> BoundField | None:
        descriptor = self.describe().field_by_name(name)
        return BoundField(descriptor, self.record) if descriptor is not None else None

    def primary_fields(self) -> list[BoundField]:
        return [f for f in self.fields() if f.is_primary_key]

    def primary_field(self) -> BoundField | None:
        descriptor = self.describe().primary_field
        return BoundField(descriptor, self.record) if descriptor is not None else None

    @property
    def primary_key(self) -> str:
        field = self.describe().primary_field
        return field.db_name if field is not None else ""

    def primary_key_zero(self) -> bool:
        field = self.primary_field()
        return field is None or field.is_blank

    def has_column(self, column: str) -> bool:
        return self.describe().has_column(column)

    # -- naming -------------------------------------------------------------

    def quote(self, name: str) -> str:
        """Quote an identifier; dotted paths are quoted segment by segment."""
        return ".".join(self.dialect.quote(part) for part in name.split("."))

    @property
    def table_name(self) -> str:
        if self.search.table_name:
            return self.search.table_name
        return self.describe().default_table_name

    @property
    def quoted_table_name(self) -> str:
        # "users u" style aliases are passed through untouched
        if self.search.table_name and " " in self.search.table_name:
            return self.search.table_name
        return self.quote(self.table_name)

    def render_context(self) -> RenderContext:
        # raw statements may run without a record type
        if self.model_type is None:
            table = self.search.table_name
            return RenderContext(
                table=self.quote(table) if table and " " not in table else table,
                primary_key=self.quote("id"),
                quote=self.quote,
                bind_fields=lambda record: self.cache.describe(record).bind(record),
            )
        return RenderContext(
            table=self.quoted_table_name,
            primary_key=self.quote(self.primary_key or "id"),
            quote=self.quote,
            bind_fields=lambda record: self.cache.describe(record).bind(record),
        )

    # -- values -------------------------------------------------------------

    def set_column(self, column: str, value: Any) -> None:
        """Assign ``value`` to the field named ``column`` on the scope record.

        Raises:
            UnsettableFieldError: when no such field exists or it cannot be assigned.
        """
        field = self.field_by_name(column)
        if field is None:
            raise UnsettableFieldError(column)
        attrs = self.aux.get(UPDATE_ATTRS)
        if isinstance(attrs, dict):
            attrs[field.db_name] = value
        field.set(value)

    def select_attrs(self) -> list[str]:
        sql = self.search.select_sql
        return [part.strip() for part in sql.split(",") if part.strip()] if sql else []

    def changeable_field(self, field: BoundField) -> bool:
        """Whether ``select``/``omit`` allow writing ``field``."""
        selected = self.select_attrs()
        if selected:
            return field.name in selected or field.db_name in selected
        return field.name not in self.search.omits and field.db_name not in self.search.omits

    def should_save_associations(self) -> bool:
        setting = self.aux.get(SAVE_ASSOCIATIONS)
        return not (setting is False or setting == "skip")

    def has_conditions(self) -> bool:
        if is_record(self.value) and not self.primary_key_zero():
            return True
        return self.search.has_conditions()

    # -- execution ----------------------------------------------------------

    def finalize(self, statement: Statement) -> Statement:
        self.statement = statement.finalize(self.dialect)
        return self.statement


__all__ = [
    "Scope",
    "is_record",
    "model_type_of",
    "ORDER_BY_PRIMARY_KEY",
    "UPDATE_INTERFACE",
    "UPDATE_ATTRS",
    "UPDATE_COLUMN",
    "IGNORE_PROTECTED_ATTRS",
    "SAVE_ASSOCIATIONS",
    "STARTED_TRANSACTION",
    "BLANK_COLUMNS_WITH_DEFAULT",
    "INSERT_OPTION",
    "UPDATE_OPTION",
    "DELETE_OPTION",
    "QUERY_OPTION",
    "TABLE_OPTIONS",
]
