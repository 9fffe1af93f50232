"""Per-operation search state.

``Search`` accumulates everything a fluent call chain says about the next
statement: conditions, joins, selected/omitted columns, ordering, grouping,
limit/offset, preloads and flags. It is copied (``clone``) whenever a chain
branches, so two statements never share one instance.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from spine_orm.query.conditions import Clause, RawFilter


@dataclass
class Preload:
    """A relation path to load after the main query, with optional conditions."""

    schema: str
    conditions: tuple = ()


@dataclass
class Search:
    """Mutable query-building state for one statement."""

    where_conditions: list[Clause] = field(default_factory=list)
    or_conditions: list[Clause] = field(default_factory=list)
    not_conditions: list[Clause] = field(default_factory=list)
    having_conditions: list[Clause] = field(default_factory=list)
    join_conditions: list[Clause] = field(default_factory=list)
    init_attrs: list[tuple] = field(default_factory=list)
    assign_attrs: list[tuple] = field(default_factory=list)
    selects: Clause | None = None
    omits: list[str] = field(default_factory=list)
    orders: list[Any] = field(default_factory=list)
    preloads: list[Preload] = field(default_factory=list)
    offset: int | None = None
    limit: int | None = None
    group: str = ""
    table_name: str = ""
    raw: bool = False
    unscoped: bool = False
    ignore_order_query: bool = False

    def clone(self) -> Search:
        # Clause values (records, lists) are shared; the containers are not.
        return copy.copy(self)._copy_lists()

    def _copy_lists(self) -> Search:
        for name in (
            "where_conditions", "or_conditions", "not_conditions", "having_conditions",
            "join_conditions", "init_attrs", "assign_attrs", "omits", "orders", "preloads",
        ):
            setattr(self, name, list(getattr(self, name)))
        return self

    # -- conditions --------------------------------------------------------

    def where(self, query: Any, *args: Any) -> Search:
        self.where_conditions.append(Clause.of(query, *args))
        return self

    def or_(self, query: Any, *args: Any) -> Search:
        self.or_conditions.append(Clause.of(query, *args))
        return self

    def not_(self, query: Any, *args: Any) -> Search:
        self.not_conditions.append(Clause.of(query, *args))
        return self

    def having(self, query: Any, *args: Any) -> Search:
        self.having_conditions.append(Clause.of(query, *args))
        return self

    def joins(self, query: str, *args: Any) -> Search:
        self.join_conditions.append(Clause(RawFilter(query), tuple(args)))
        return self

    def inline(self, *where: Any) -> Search:
        """Add ``where[0]`` with ``where[1:]`` as its arguments, if given."""
        if where:
            self.where(where[0], *where[1:])
        return self

    def has_conditions(self) -> bool:
        return bool(self.where_conditions or self.or_conditions or self.not_conditions)

    # -- attributes ----------------------------------------------------------

    def attrs(self, *attrs: Any) -> Search:
        self.init_attrs.append(attrs)
        return self

    def assign(self, *attrs: Any) -> Search:
        self.assign_attrs.append(attrs)
        return self

    # -- selection -----------------------------------------------------------

    def select(self, query: Any, *args: Any) -> Search:
        if isinstance(query, (list, tuple)):
            query = ", ".join(str(q) for q in query)
        self.selects = Clause(RawFilter(str(query)), tuple(args))
        return self

    def omit(self, *columns: str) -> Search:
        self.omits.extend(columns)
        return self

    def order(self, value: Any, reorder: bool = False) -> Search:
        if reorder:
            self.orders = []
        if value is not None and value != "":
            self.orders.append(value)
        return self

    def set_limit(self, limit: int | None) -> Search:
        self.limit = limit
        return self

    def set_offset(self, offset: int | None) -> Search:
        self.offset = offset
        return self

    def set_group(self, group: str) -> Search:
        self.group = group
        return self

    def table(self, name: str) -> Search:
        self.table_name = name
        return self

    def preload(self, schema: str, *conditions: Any) -> Search:
        preloads = [p for p in self.preloads if p.schema != schema]
        preloads.append(Preload(schema, tuple(conditions)))
        self.preloads = preloads
        return self

    def set_raw(self, raw: bool = True) -> Search:
        self.raw = raw
        return self

    def set_unscoped(self, unscoped: bool = True) -> Search:
        self.unscoped = unscoped
        return self

    @property
    def select_sql(self) -> str:
        if self.selects is None or not isinstance(self.selects.query, RawFilter):
            return ""
        return self.selects.query.sql


__all__ = ["Preload", "Search"]
