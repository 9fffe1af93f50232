"""Generated statements and dialect-neutral bind markers.

Every SQL fragment the assembler produces uses the neutral marker
``BIND_MARKER`` for each bound argument, and carries its arguments alongside
in textual order. The marker is a control character, so SQL text (PostgreSQL
dollar quoting included) never collides with it. Fragments concatenate with
``+`` and the marker is rewritten to the dialect's native placeholder
exactly once, in ``Statement.finalize``.

Examples:
    >>> stmt = Statement('"users"."name" = ' + BIND_MARKER, ["gernest"])
    >>> stmt.finalize(SQLiteDialect()).sql
    '"users"."name" = ?'
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from spine_orm.core.errors import OrmError

if TYPE_CHECKING:
    from spine_orm.core.dialect import Dialect

BIND_MARKER = "\x1a"


@dataclass(frozen=True, init=False)
class Expr:
    """A raw SQL expression with its own ``?`` arguments.

    Used wherever a value would be bound, to inline SQL instead::

        db.model(user).update("age", Expr("age + ?", 1))
    """

    sql: str
    args: tuple = ()

    def __init__(self, sql: str, *args: Any) -> None:
        object.__setattr__(self, "sql", sql)
        object.__setattr__(self, "args", tuple(args))


@dataclass
class Statement:
    """SQL text plus its bound arguments in order.

    Until ``finalize`` runs, ``sql`` holds neutral markers. A finalized
    statement has ``dialect`` set and native placeholders in ``sql``.
    """

    sql: str = ""
    args: list[Any] = field(default_factory=list)
    dialect: str | None = None

    def __add__(self, other: Statement | str) -> Statement:
        if isinstance(other, str):
            return Statement(self.sql + other, list(self.args))
        return Statement(self.sql + other.sql, self.args + other.args)

    def __radd__(self, other: str) -> Statement:
        return Statement(other + self.sql, list(self.args))

    def __bool__(self) -> bool:
        return bool(self.sql)

    @property
    def is_finalized(self) -> bool:
        return self.dialect is not None

    @classmethod
    def join(cls, separator: str, parts: Iterable[Statement]) -> Statement:
        sql: list[str] = []
        args: list[Any] = []
        for part in parts:
            sql.append(part.sql)
            args.extend(part.args)
        return cls(separator.join(sql), args)

    def finalize(self, dialect: Dialect) -> Statement:
        """Rewrite neutral markers to ``dialect`` placeholders and adapt values."""
        if self.is_finalized:
            raise OrmError("Statement already finalized").with_context(sql=self.sql)
        pieces = self.sql.split(BIND_MARKER)
        if len(pieces) - 1 != len(self.args):
            raise OrmError(
                f"Statement has {len(pieces) - 1} placeholders for {len(self.args)} arguments"
            ).with_context(sql=self.sql)
        out = [pieces[0]]
        for index, piece in enumerate(pieces[1:]):
            out.append(dialect.placeholder(index))
            out.append(piece)
        return Statement(
            "".join(out),
            [dialect.adapt_value(a) for a in self.args],
            dialect=dialect.name,
        )


class ArgCollector:
    """Accumulates arguments for one fragment and hands out neutral markers."""

    def __init__(self) -> None:
        self.args: list[Any] = []

    def add(self, value: Any) -> str:
        """Bind ``value``; an :class:`Expr` is inlined with its own args bound."""
        if isinstance(value, Expr):
            return substitute(value.sql, value.args, self)
        self.args.append(value)
        return BIND_MARKER


def _render_arg(arg: Any, collector: ArgCollector) -> str:
    if isinstance(arg, (bytes, bytearray)):
        return collector.add(arg)
    if isinstance(arg, (list, tuple, set, frozenset)):
        values = list(arg)
        if not values:
            return "NULL"
        return ",".join(collector.add(v) for v in values)
    if hasattr(arg, "db_value") and callable(arg.db_value):
        return collector.add(arg.db_value())
    return collector.add(arg)


def substitute(sql: str, args: Sequence[Any], collector: ArgCollector) -> str:
    """Replace ``?`` placeholders in ``sql`` left to right with rendered args.

    Sequence args expand to comma-separated markers; an empty sequence
    renders ``NULL``. Arguments without a remaining ``?`` are not bound.
    """
    out: list[str] = []
    pos = 0
    for arg in args:
        found = sql.find("?", pos)
        if found < 0:
            break
        out.append(sql[pos:found])
        out.append(_render_arg(arg, collector))
        pos = found + 1
    out.append(sql[pos:])
    return "".join(out)


__all__ = ["BIND_MARKER", "Expr", "Statement", "ArgCollector", "substitute"]
