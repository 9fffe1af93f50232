"""
Statement assembler.

Composes SELECT / INSERT / UPDATE / DELETE statements from a :class:`Scope`.
Every builder returns a :class:`Statement` with neutral markers, its
arguments recorded in the same order the markers appear in the text;
fragments are concatenated left to right so the two can never drift apart.
Native placeholders are substituted later, once, by ``Scope.finalize``.

Manifesto:
    - **Fixed clause order:** JOIN, WHERE, GROUP BY, HAVING, ORDER BY,
      LIMIT/OFFSET, always in that sequence
    - **Text order is argument order:** fragments carry their own args
    - **No I/O:** builders never touch the executor

Architecture:
    ::

        query_sql(scope)
          SELECT <select_sql> FROM <table> <combined_condition>
                                             │
           join_sql ─ where_sql ─ group_sql ─ having_sql ─ order_sql ─ limit/offset

        where_sql(scope)
          WHERE <soft-delete AND pk>  AND (<where AND not> OR <or>)

Examples:
    >>> scope = Scope(User(name="hello"), dialect=SQLiteDialect(), cache=cache, executor=ex)
    >>> stmt = scope.finalize(create_sql(scope))
    >>> stmt.sql, stmt.args
    ('INSERT INTO "users" ("name") VALUES (?)', ['hello'])

Guardrails:
    ❌ DON'T: Build SQL with string formatting of values
    ✅ DO: Route every value through an ArgCollector

Tags:
    sql, assembler, select, insert, update, delete, spine-orm

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any

from spine_orm.model.descriptor import RelationKind
from spine_orm.query.conditions import negate, render
from spine_orm.query.scope import (
    BLANK_COLUMNS_WITH_DEFAULT,
    DELETE_OPTION,
    INSERT_OPTION,
    QUERY_OPTION,
    UPDATE_ATTRS,
    UPDATE_OPTION,
    Scope,
    is_record,
)
from spine_orm.query.statement import ArgCollector, Expr, Statement, substitute

# only plain column references like `name` or `users.name` get quoted
COLUMN_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


def _with_option(stmt: Statement, option: Any) -> Statement:
    if option:
        return stmt + f" {option}"
    return stmt


# =============================================================================
# Clauses
# =============================================================================


def where_sql(scope: Scope) -> Statement:
    """The WHERE clause, or an empty statement when nothing filters."""
    ctx = scope.render_context()
    search = scope.search
    primary: list[Statement] = []

    if scope.model_type is not None and not search.raw:
        if not search.unscoped and scope.has_column("deleted_at"):
            primary.append(Statement(f"{ctx.table}.{scope.quote('deleted_at')} IS NULL"))
        if is_record(scope.value) and not scope.primary_key_zero():
            for field in scope.primary_fields():
                collector = ArgCollector()
                marker = collector.add(field.value)
                primary.append(
                    Statement(f"{ctx.table}.{scope.quote(field.db_name)} = {marker}", collector.args)
                )

    and_parts = [render(c, ctx) for c in search.where_conditions]
    and_parts += [negate(c, ctx) for c in search.not_conditions]
    or_parts = [render(c, ctx) for c in search.or_conditions]
    and_sql = Statement.join(" AND ", [p for p in and_parts if p])
    or_sql = Statement.join(" OR ", [p for p in or_parts if p])

    if and_sql and or_sql:
        combined = and_sql + " OR " + or_sql
    else:
        combined = and_sql or or_sql

    if primary:
        stmt = "WHERE " + Statement.join(" AND ", primary)
        if combined:
            stmt = stmt + " AND (" + combined + ")"
        return stmt
    if combined:
        return "WHERE " + combined
    return Statement()


def select_sql(scope: Scope) -> Statement:
    search = scope.search
    if search.selects is None:
        if search.join_conditions:
            return Statement(f"{scope.render_context().table}.*")
        return Statement("*")
    collector = ArgCollector()
    text = substitute(search.select_sql, search.selects.args, collector)
    return Statement(text, collector.args)


def join_sql(scope: Scope) -> Statement:
    ctx = scope.render_context()
    parts = []
    for clause in scope.search.join_conditions:
        stmt = render(clause, ctx)
        text = stmt.sql
        if text.startswith("("):
            text = text[1:]
        if text.endswith(")"):
            text = text[:-1]
        parts.append(Statement(text, stmt.args))
    return Statement.join(" ", parts)


def order_sql(scope: Scope) -> Statement:
    search = scope.search
    if not search.orders or search.ignore_order_query:
        return Statement()
    parts = []
    for order in search.orders:
        if isinstance(order, Expr):
            collector = ArgCollector()
            parts.append(Statement(substitute(order.sql, order.args, collector), collector.args))
        else:
            text = str(order)
            parts.append(Statement(scope.quote(text) if COLUMN_RE.match(text) else text))
    return " ORDER BY " + Statement.join(",", parts)


def group_sql(scope: Scope) -> str:
    if not scope.search.group:
        return ""
    return " GROUP BY " + scope.search.group


def having_sql(scope: Scope) -> Statement:
    conditions = scope.search.having_conditions
    if not conditions:
        return Statement()
    ctx = scope.render_context()
    return " HAVING " + Statement.join(" AND ", [render(c, ctx) for c in conditions])


def limit_and_offset_sql(scope: Scope) -> str:
    return scope.dialect.limit_and_offset_sql(scope.search.limit, scope.search.offset)


def combined_condition(scope: Scope) -> Statement:
    """JOIN + WHERE + GROUP BY + HAVING + ORDER BY + LIMIT/OFFSET, in that order."""
    where = where_sql(scope)
    if scope.search.raw:
        text = where.sql
        if text.startswith("WHERE ("):
            text = text[len("WHERE ("):]
            if text.endswith(")"):
                text = text[:-1]
        where = Statement(text, where.args)
    head = Statement.join(" ", [p for p in (join_sql(scope), where) if p])
    stmt = head + group_sql(scope) + having_sql(scope) + order_sql(scope) + limit_and_offset_sql(scope)
    return Statement(stmt.sql.lstrip(), stmt.args)


# =============================================================================
# Statements
# =============================================================================


def query_sql(scope: Scope) -> Statement:
    """SELECT statement, or the caller's SQL in raw mode."""
    combined = combined_condition(scope)
    if scope.search.raw:
        return combined
    stmt = "SELECT " + select_sql(scope) + f" FROM {scope.quoted_table_name}"
    if combined:
        stmt = stmt + " " + combined
    return _with_option(stmt, scope.get(QUERY_OPTION))


def create_sql(scope: Scope) -> Statement:
    """INSERT statement for the scope record.

    Blank columns that declare a default are left out so the store fills
    them in; their quoted names are recorded under
    ``BLANK_COLUMNS_WITH_DEFAULT`` so they can be read back afterwards.
    """
    collector = ArgCollector()
    columns: list[str] = []
    markers: list[str] = []
    blank_with_default: list[str] = []

    for field in scope.fields():
        if not scope.changeable_field(field) or field.is_ignored:
            continue
        if field.is_normal:
            if field.is_blank and field.has_default_value:
                blank_with_default.append(scope.quote(field.db_name))
            elif not (field.is_primary_key and field.is_blank):
                columns.append(scope.quote(field.db_name))
                markers.append(collector.add(field.value))
        elif field.relationship is not None and field.relationship.kind is RelationKind.BELONGS_TO:
            # owner-side keys of an omitted relation still have to be written
            for name in field.relationship.foreign_field_names:
                foreign = scope.field_by_name(name)
                if foreign is not None and not scope.changeable_field(foreign):
                    columns.append(scope.quote(foreign.db_name))
                    markers.append(collector.add(foreign.value))
    scope.set(BLANK_COLUMNS_WITH_DEFAULT, blank_with_default)

    table = scope.quoted_table_name
    primary = scope.primary_field()
    returning = scope.quote(primary.db_name) if primary is not None else "*"
    suffix = scope.dialect.last_insert_id_returning_suffix(table, returning)

    if columns:
        stmt = Statement(
            f"INSERT INTO {table} ({','.join(columns)}) VALUES ({','.join(markers)})",
            collector.args,
        )
    else:
        stmt = Statement(f"INSERT INTO {table} DEFAULT VALUES")
    stmt = _with_option(stmt, scope.get(INSERT_OPTION))
    if suffix:
        stmt = stmt + f" {suffix}"
    return stmt


def update_sql(scope: Scope) -> Statement:
    """UPDATE statement, or an empty statement when there is nothing to set."""
    collector = ArgCollector()
    sets: list[str] = []
    attrs = scope.get(UPDATE_ATTRS)

    if isinstance(attrs, dict):
        for column, value in attrs.items():
            sets.append(f"{scope.quote(column)} = {collector.add(value)}")
    else:
        for field in scope.fields():
            if not scope.changeable_field(field) or field.is_ignored:
                continue
            if field.is_normal and not field.is_primary_key:
                sets.append(f"{scope.quote(field.db_name)} = {collector.add(field.value)}")
            elif field.relationship is not None and field.relationship.kind is RelationKind.BELONGS_TO:
                for name in field.relationship.foreign_field_names:
                    foreign = scope.field_by_name(name)
                    if foreign is not None and not scope.changeable_field(foreign):
                        sets.append(f"{scope.quote(foreign.db_name)} = {collector.add(foreign.value)}")

    if not sets:
        return Statement()
    stmt = Statement(f"UPDATE {scope.quoted_table_name} SET {', '.join(sets)}", collector.args)
    combined = combined_condition(scope)
    if combined:
        stmt = stmt + " " + combined
    return _with_option(stmt, scope.get(UPDATE_OPTION))


def delete_sql(scope: Scope, now: datetime | None = None) -> Statement:
    """DELETE statement; a soft delete (UPDATE of ``deleted_at``) when the model supports it."""
    combined = combined_condition(scope)
    table = scope.quoted_table_name
    if not scope.search.unscoped and scope.has_column("deleted_at"):
        collector = ArgCollector()
        marker = collector.add(now or datetime.now(UTC))
        stmt = Statement(f"UPDATE {table} SET {scope.quote('deleted_at')}={marker}", collector.args)
    else:
        stmt = Statement(f"DELETE FROM {table}")
    if combined:
        stmt = stmt + " " + combined
    return _with_option(stmt, scope.get(DELETE_OPTION))


_BUILDERS = {
    "query": query_sql,
    "create": create_sql,
    "update": update_sql,
    "delete": delete_sql,
}


def build_statement(action: str, scope: Scope) -> Statement:
    """Assemble the un-finalized statement for ``action`` (create/query/update/delete)."""
    try:
        builder = _BUILDERS[action]
    except KeyError:
        raise ValueError(f"Unknown action {action!r}; expected one of {sorted(_BUILDERS)}") from None
    return builder(scope)


__all__ = [
    "COLUMN_RE",
    "where_sql",
    "select_sql",
    "join_sql",
    "order_sql",
    "group_sql",
    "having_sql",
    "limit_and_offset_sql",
    "combined_condition",
    "query_sql",
    "create_sql",
    "update_sql",
    "delete_sql",
    "build_statement",
]
