"""
Condition builder.

A filter handed to ``where``/``or_``/``not_``/``having`` can be a raw SQL
string, a primary-key value, a list of primary keys, a column mapping, or a
record. ``to_filter`` classifies it once into one case of the ``Filter`` sum
type; ``render`` and ``negate`` dispatch exhaustively over that type and
return a :class:`Statement` whose neutral markers match its arguments
one-to-one. In the diagrams below ``¤`` stands for ``BIND_MARKER``.

Manifesto:
    - **One dispatch:** the shape of a filter is decided in ``to_filter`` only
    - **Balanced output:** every rendered fragment binds exactly one argument
      per marker
    - **Unknown shapes fail:** an unsupported filter is a ConfigError, not an
      empty condition

Architecture:
    ::

        where("name = ?", "x")   ─┐
        where(1)                  │   to_filter()      render() / negate()
        where([1, 2])             ├──► Filter  ─────────► Statement(sql, args)
        where({"name": None})     │   (sum type)         ("(... = ¤)", [...])
        where(User(name="x"))    ─┘

    Rendering by case::

        RawFilter("age > ?"), (18,)   →  (age > ¤)                 [18]
        PrimaryKeyFilter(7)           →  ("users"."id" = ¤)        [7]
        InFilter((1, 2))              →  ("users"."id" IN (¤,¤))   [1, 2]
        MappingFilter(name=None)      →  ("users"."name" IS NULL)  []
        RecordFilter(User(name="x"))  →  ("users"."name" = ¤)      ["x"]

Examples:
    >>> clause = Clause.of({"name": "gernest"})
    >>> stmt = render(clause, ctx)
    >>> stmt.sql, stmt.args
    ('("users"."name" = ¤)', ['gernest'])

Guardrails:
    ❌ DON'T: Interpolate values into SQL text
    ✅ DO: Bind through ArgCollector so values travel as arguments

Tags:
    conditions, where-clause, sum-type, sql, spine-orm

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import dataclasses
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Union

from spine_orm.core.errors import UnsupportedFilterError
from spine_orm.model.descriptor import BoundField
from spine_orm.query.statement import ArgCollector, Statement, substitute

NUMBER_RE = re.compile(r"^\s*\d+\s*$")
COMPARISON_RE = re.compile(r"(?i) (=|<>|>|<|LIKE|IS|IN) ")


# =============================================================================
# Filter sum type
# =============================================================================


@dataclass(frozen=True)
class RawFilter:
    """A SQL fragment with ``?`` placeholders."""

    sql: str


@dataclass(frozen=True)
class PrimaryKeyFilter:
    """Primary-key equality shortcut (an int or a purely numeric string)."""

    value: Any


@dataclass(frozen=True)
class InFilter:
    """Primary key in a list of values."""

    values: tuple


@dataclass(frozen=True)
class MappingFilter:
    """Column/value pairs, conjoined with AND."""

    items: tuple[tuple[str, Any], ...]


@dataclass(frozen=True)
class RecordFilter:
    """Equality over every non-blank column of a record."""

    record: Any


Filter = Union[RawFilter, PrimaryKeyFilter, InFilter, MappingFilter, RecordFilter]

_FILTER_TYPES = (RawFilter, PrimaryKeyFilter, InFilter, MappingFilter, RecordFilter)


def to_filter(value: Any) -> Filter:
    """Classify a caller-supplied filter value.

    Raises:
        UnsupportedFilterError: for any other shape (floats, None, sets...).
    """
    if isinstance(value, _FILTER_TYPES):
        return value
    if isinstance(value, str):
        if NUMBER_RE.match(value):
            return PrimaryKeyFilter(value.strip())
        return RawFilter(value)
    if isinstance(value, bool):
        raise UnsupportedFilterError(value)
    if isinstance(value, int):
        return PrimaryKeyFilter(value)
    if isinstance(value, (list, tuple)):
        return InFilter(tuple(value))
    if isinstance(value, Mapping):
        return MappingFilter(tuple(value.items()))
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return RecordFilter(value)
    raise UnsupportedFilterError(value)


@dataclass(frozen=True)
class Clause:
    """A filter plus its positional arguments."""

    query: Filter
    args: tuple = ()

    @classmethod
    def of(cls, query: Any, *args: Any) -> Clause:
        return cls(to_filter(query), tuple(args))


@dataclass(frozen=True)
class RenderContext:
    """What the builder needs to know about the target table."""

    table: str
    primary_key: str
    quote: Callable[[str], str]
    bind_fields: Callable[[Any], list[BoundField]]


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


def _record_columns(record: Any, ctx: RenderContext) -> list[BoundField]:
    return [
        f for f in ctx.bind_fields(record)
        if f.is_normal and not f.is_ignored and not f.is_blank
    ]


# =============================================================================
# Rendering
# =============================================================================


def render(clause: Clause, ctx: RenderContext) -> Statement:
    """Render a clause as a positive predicate."""
    collector = ArgCollector()
    args = clause.args
    match clause.query:
        case RawFilter(sql=sql):
            if not sql:
                return Statement()
            text = f"({sql})"
        case PrimaryKeyFilter(value=value):
            text = f"({ctx.table}.{ctx.primary_key} = {collector.add(value)})"
        case InFilter(values=values):
            text = f"({ctx.table}.{ctx.primary_key} IN (?))"
            args = (list(values),)
        case MappingFilter(items=items):
            parts = []
            for key, value in items:
                column = f"{ctx.table}.{ctx.quote(key)}"
                if value is None:
                    parts.append(f"({column} IS NULL)")
                else:
                    parts.append(f"({column} = {collector.add(value)})")
            return Statement(" AND ".join(parts), collector.args)
        case RecordFilter(record=record):
            parts = [
                f"({ctx.table}.{ctx.quote(f.db_name)} = {collector.add(f.value)})"
                for f in _record_columns(record, ctx)
            ]
            return Statement(" AND ".join(parts), collector.args)
        case _:
            raise UnsupportedFilterError(clause.query)

    text = substitute(text, args, collector)
    return Statement(text, collector.args)


def negate(clause: Clause, ctx: RenderContext) -> Statement:
    """Render the logical complement of a clause."""
    collector = ArgCollector()
    args = clause.args
    match clause.query:
        case RawFilter(sql=sql):
            if not sql:
                return Statement()
            if COMPARISON_RE.search(sql):
                text = f"NOT ({sql})"
            elif not args:
                raise UnsupportedFilterError(sql)
            elif _is_sequence(args[0]):
                text = f"({ctx.table}.{ctx.quote(sql)} NOT IN (?))"
            else:
                text = f"({ctx.table}.{ctx.quote(sql)} <> ?)"
        case PrimaryKeyFilter(value=value):
            text = f"({ctx.table}.{ctx.primary_key} <> {collector.add(value)})"
        case InFilter(values=values):
            if not values:
                return Statement()
            text = f"({ctx.table}.{ctx.primary_key} NOT IN (?))"
            args = (list(values),)
        case MappingFilter(items=items):
            parts = []
            for key, value in items:
                column = f"{ctx.table}.{ctx.quote(key)}"
                if value is None:
                    parts.append(f"({column} IS NOT NULL)")
                else:
                    parts.append(f"({column} <> {collector.add(value)})")
            return Statement(" AND ".join(parts), collector.args)
        case RecordFilter(record=record):
            parts = [
                f"({ctx.table}.{ctx.quote(f.db_name)} <> {collector.add(f.value)})"
                for f in _record_columns(record, ctx)
            ]
            return Statement(" AND ".join(parts), collector.args)
        case _:
            raise UnsupportedFilterError(clause.query)

    text = substitute(text, args, collector)
    return Statement(text, collector.args)


__all__ = [
    "NUMBER_RE",
    "COMPARISON_RE",
    "RawFilter",
    "PrimaryKeyFilter",
    "InFilter",
    "MappingFilter",
    "RecordFilter",
    "Filter",
    "to_filter",
    "Clause",
    "RenderContext",
    "render",
    "negate",
]
