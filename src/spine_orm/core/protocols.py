"""
Canonical protocol definitions for spine-orm.

The mapping core never touches a database driver. Everything it needs from
the store is expressed by the ``Executor`` protocol defined here: run a
parameterized statement, return rows or an affected-row count, and open a
(possibly nested) transaction.

Manifesto:
    Protocols define contracts without inheritance.

    - **Decoupling:** hooks and the association resolver depend on shape only
    - **Testability:** any object matching the protocol works, including fakes
    - **Portability:** sqlite3, psycopg or a SQLAlchemy session behind one shape

Architecture:
    ::

        protocols.py
        ├── ExecResult   — rows affected + generated key
        ├── Rows         — column names + row tuples
        ├── Executor     — execute / query / query_row / begin
        └── Transaction  — Executor + commit / rollback, context manager

    Implementations:
        core/executor.py (DBAPIExecutor, SQLAlchemyExecutor)

Guardrails:
    ❌ DON'T: Call driver APIs from hooks or the assembler
    ✅ DO: Go through Executor so tests can swap the store

    ❌ DON'T: Leave a Transaction open past the operation that began it
    ✅ DO: Use it as a context manager (commit on success, rollback on error)

Tags:
    protocol, executor, transaction, database, spine-orm, contracts

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class ExecResult:
    """Outcome of a data-modifying statement."""

    rows_affected: int = 0
    last_insert_id: Any = None


@dataclass
class Rows:
    """Materialized query result.

    Rows are plain tuples in ``columns`` order. Iteration yields the tuples.
    """

    columns: list[str] = field(default_factory=list)
    rows: list[tuple] = field(default_factory=list)

    def __iter__(self) -> Iterator[tuple]:
        return iter(self.rows)

    def __len__(self) -> int:
        return len(self.rows)

    def as_dicts(self) -> list[dict[str, Any]]:
        return [dict(zip(self.columns, row)) for row in self.rows]


@runtime_checkable
class Executor(Protocol):
    """
    Minimal statement-execution contract.

    SQL passed to an executor already carries the dialect's native
    placeholders; ``args`` are bound positionally.

    Examples:
        >>> result = executor.execute('DELETE FROM "users" WHERE "id" = ?', (1,))
        >>> result.rows_affected
        1
        >>> executor.query_row("SELECT count(*) FROM users", ())
        (0,)
    """

    def execute(self, sql: str, args: Sequence[Any] = ()) -> ExecResult:
        """Run a statement that returns no rows."""
        ...

    def query(self, sql: str, args: Sequence[Any] = ()) -> Rows:
        """Run a statement and fetch every row."""
        ...

    def query_row(self, sql: str, args: Sequence[Any] = ()) -> tuple | None:
        """Run a statement and fetch the first row (``None`` when empty)."""
        ...

    def begin(self) -> Transaction:
        """Open a transaction; nested calls open savepoints."""
        ...


@runtime_checkable
class Transaction(Executor, Protocol):
    """An open transaction. Usable as a context manager."""

    def commit(self) -> None:
        ...

    def rollback(self) -> None:
        ...

    def __enter__(self) -> Transaction:
        ...

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        ...


__all__ = [
    "ExecResult",
    "Rows",
    "Executor",
    "Transaction",
]
