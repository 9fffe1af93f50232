"""
Association resolver.

``Association`` answers three questions about one relationship field of a
saved record: how many related rows exist (``count``), what they are
(``find``), and how to attach more (``append``). The join-table helpers
below it build the SQL many-to-many links need; they are shared with the
preload and save-association hook steps.

Manifesto:
    - **Dispatch on kind:** has_one / has_many / belongs_to / many_to_many
      each filter differently, nothing else varies
    - **Idempotent links:** join rows are inserted with
      ``INSERT ... SELECT ... WHERE NOT EXISTS``, so linking twice is a no-op
    - **Atomic attach:** append always runs inside one transaction

Architecture:
    ::

        db.model(post).association("comments")
          │
          ├── count()   SELECT count(*) FROM comments WHERE post_id = ?
          ├── find()    SELECT * FROM comments WHERE post_id = ?
          └── append(c) BEGIN; save(post with comments + [c]); COMMIT

        many_to_many (users ⟷ languages via user_languages)

          SELECT ... FROM languages
            INNER JOIN user_languages
              ON user_languages.language_id = languages.id
            WHERE user_languages.user_id IN (?)

          INSERT INTO user_languages (user_id,language_id)
            SELECT ?,? WHERE NOT EXISTS
              (SELECT * FROM user_languages WHERE user_id = ? AND language_id = ?)

Examples:
    >>> assoc = db.model(user).association("languages")
    >>> assoc.append(Language(name="ZH"))
    >>> assoc.count()
    1

Tags:
    association, relationship, join-table, many-to-many, spine-orm

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any

from spine_orm.core.errors import InvalidAssociationError
from spine_orm.core.logging import get_logger
from spine_orm.model.cache import DescriptorCache
from spine_orm.model.descriptor import (
    BoundField,
    FieldDescriptor,
    JoinTableHandler,
    RelationKind,
    is_blank,
)
from spine_orm.query.scope import Scope, is_record
from spine_orm.query.statement import ArgCollector, Statement

if TYPE_CHECKING:
    from spine_orm.db import DB

logger = get_logger(__name__)


# =============================================================================
# Column helpers
# =============================================================================


def field_value(cache: DescriptorCache, record: Any, name: str) -> Any:
    """Value of the field called ``name`` (in-language or storage name) on ``record``."""
    descriptor = cache.describe(type(record)).field_by_name(name)
    if descriptor is None:
        return getattr(record, name)
    return BoundField(descriptor, record).value


def key_of(values: Iterable[Any]) -> tuple[str, ...]:
    """Compare keys as text so ``1`` from a row matches ``1`` on a record."""
    out = []
    for value in values:
        if hasattr(value, "db_value") and callable(value.db_value):
            value = value.db_value()
        if isinstance(value, (bytes, bytearray)):
            value = bytes(value).decode("utf-8", "replace")
        out.append(str(value))
    return tuple(out)


def column_values(cache: DescriptorCache, records: Iterable[Any], names: Sequence[str]) -> list[tuple]:
    """One tuple of ``names`` values per record that has at least one non-blank value."""
    results = []
    for record in records:
        values = tuple(field_value(cache, record, name) for name in names)
        if any(not is_blank(v) for v in values):
            results.append(values)
    return results


def query_marks(keys: Sequence[tuple]) -> str:
    marks = []
    for key in keys:
        if len(key) > 1:
            marks.append("(" + ",".join("?" for _ in key) + ")")
        else:
            marks.append("?")
    return ",".join(marks)


def columns_condition(quoted_columns: Sequence[str]) -> str:
    if len(quoted_columns) > 1:
        return "(" + ",".join(quoted_columns) + ")"
    return ",".join(quoted_columns)


def flatten(keys: Sequence[tuple]) -> list[Any]:
    return [value for key in keys for value in key]


def records_of(value: Any) -> list[Any]:
    if isinstance(value, list):
        return [v for v in value if is_record(v)]
    if is_record(value):
        return [value]
    return []


# =============================================================================
# Join tables
# =============================================================================


def search_map(cache: DescriptorCache, handler: JoinTableHandler, source: Any, destination: Any) -> dict[str, Any]:
    """Join-table column -> value for a (source, destination) pair."""
    values: dict[str, Any] = {}
    for side, record in ((handler.source, source), (handler.destination, destination)):
        for foreign_key in side.foreign_keys:
            values[foreign_key.db_name] = field_value(cache, record, foreign_key.association_db_name)
    return values


def add_join_relation(scope: Scope, handler: JoinTableHandler, source: Any, destination: Any) -> Statement:
    """INSERT a join row for ``source``/``destination`` unless it already exists."""
    pairs = search_map(scope.cache, handler, source, destination)
    collector = ArgCollector()
    columns = [scope.quote(column) for column in pairs]
    markers = [collector.add(value) for value in pairs.values()]
    conditions = [f"{scope.quote(column)} = {collector.add(value)}" for column, value in pairs.items()]
    table = scope.quote(handler.table_name)
    dummy = scope.dialect.select_from_dummy_table()
    sql = (
        f"INSERT INTO {table} ({','.join(columns)}) "
        f"SELECT {','.join(markers)}{' ' + dummy if dummy else ''} "
        f"WHERE NOT EXISTS (SELECT * FROM {table} WHERE {' AND '.join(conditions)})"
    )
    return Statement(sql, collector.args)


def join_with(scope: Scope, handler: JoinTableHandler, sources: Sequence[Any]) -> None:
    """Restrict ``scope`` (over the destination type) to rows linked to ``sources``."""
    table = scope.quote(handler.table_name)
    destination_table = scope.quoted_table_name
    on = " AND ".join(
        f"{table}.{scope.quote(fk.db_name)} = {destination_table}.{scope.quote(fk.association_db_name)}"
        for fk in handler.destination.foreign_keys
    )
    source_descriptor = scope.cache.describe(handler.source.model_type)
    names = []
    for fk in handler.source.foreign_keys:
        owner_field = source_descriptor.field_by_name(fk.association_db_name)
        if owner_field is not None:
            names.append(owner_field.name)
    keys = column_values(scope.cache, sources, names)

    scope.search.joins(f"INNER JOIN {table} ON {on}")
    if keys:
        columns = [f"{table}.{scope.quote(fk.db_name)}" for fk in handler.source.foreign_keys]
        scope.search.where(f"{columns_condition(columns)} IN ({query_marks(keys)})", *flatten(keys))
    else:
        scope.search.where("1 <> 1")


# =============================================================================
# Association
# =============================================================================


class Association:
    """count / find / append for one relationship field of a saved record."""

    def __init__(self, db: DB, column: str) -> None:
        owner = db.value
        if not is_record(owner):
            raise InvalidAssociationError(
                f"association({column!r}) needs a record; use model(record) first"
            )
        descriptor = db.cache.describe(type(owner))
        primary = descriptor.primary_field
        if primary is None or BoundField(primary, owner).is_blank:
            raise InvalidAssociationError(f"primary key of {descriptor.name} can not be blank")
        field = descriptor.field_by_name(column)
        if field is None or field.relationship is None or not field.relationship.foreign_field_names:
            raise InvalidAssociationError(f"invalid association {column} for {descriptor.name}")
        self.db = db
        self.owner = owner
        self.column = column
        self.field: FieldDescriptor = field

    @property
    def kind(self) -> RelationKind:
        return self.field.relationship.kind

    def _scope(self, value: Any) -> Scope:
        scope = self.db.new_scope(value, model_type=self.field.base_type)
        relation = self.field.relationship
        cache = self.db.cache
        match relation.kind:
            case RelationKind.MANY_TO_MANY:
                join_with(scope, relation.join_table, [self.owner])
            case RelationKind.HAS_ONE | RelationKind.HAS_MANY:
                for foreign_db_name, owner_name in zip(
                    relation.foreign_db_names, relation.association_foreign_field_names
                ):
                    scope.search.where(
                        f"{scope.quote(foreign_db_name)} = ?", field_value(cache, self.owner, owner_name)
                    )
                if relation.polymorphic_type:
                    scope.search.where(
                        f"{scope.quote(relation.polymorphic_db_name)} = ?", relation.polymorphic_value
                    )
            case RelationKind.BELONGS_TO:
                for association_db_name, owner_name in zip(
                    relation.association_foreign_db_names, relation.foreign_field_names
                ):
                    scope.search.where(
                        f"{scope.quote(association_db_name)} = ?", field_value(cache, self.owner, owner_name)
                    )
        return scope

    def count(self) -> int:
        scope = self._scope([])
        scope.search.select("count(*)")
        scope.search.ignore_order_query = True
        return self.db.count_scope(scope)

    def find(self, dest: Any = None) -> Any:
        """Load related records into ``dest`` (a list by default) and return it."""
        if dest is None:
            dest = []
        scope = self._scope(dest)
        self.db.run("query", scope)
        return dest

    def append(self, *values: Any) -> None:
        """Attach ``values`` and persist the owner, atomically."""
        if not values:
            return
        bound = BoundField(self.field, self.owner)
        with self.db.transaction() as tx:
            if self.kind in (RelationKind.HAS_MANY, RelationKind.MANY_TO_MANY):
                current = list(bound.value or [])
                bound.set(current + list(values))
            else:
                bound.set(self._overlay(tx, bound.value, values[0]))
            tx.save(self.owner)
        logger.debug(
            "association_appended",
            model=type(self.owner).__name__,
            column=self.column,
            kind=self.kind.value,
            count=len(values),
        )

    def _overlay(self, tx: DB, current: Any, value: Any) -> Any:
        """The stored related record with ``value``'s non-blank columns laid over it."""
        target = self._stored(tx, current)
        if target is None:
            return value
        descriptor = tx.cache.describe(type(target))
        for f in descriptor.bind(value):
            if f.is_normal and not f.is_primary_key and not f.is_blank:
                BoundField(f.descriptor, target).set(f.value)
        return target

    def _stored(self, tx: DB, current: Any) -> Any:
        """The related row as stored: by ``current``'s key, else through the relationship keys."""
        if is_record(current):
            descriptor = tx.cache.describe(type(current))
            primary = descriptor.primary_field
            if primary is not None and not BoundField(primary, current).is_blank:
                found = tx._clean().find(type(current), {primary.db_name: BoundField(primary, current).value})
                if found:
                    return found[0]
        rows: list[Any] = []
        scope = self._scope(rows)
        scope.executor = tx.executor
        scope.search.set_limit(1)
        tx.run("query", scope)
        return rows[0] if rows else None


__all__ = [
    "Association",
    "field_value",
    "key_of",
    "column_values",
    "query_marks",
    "columns_condition",
    "flatten",
    "records_of",
    "search_map",
    "add_join_relation",
    "join_with",
]
