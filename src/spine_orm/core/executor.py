"""Executors: the bridge between generated statements and a real database.

Two implementations of :class:`~spine_orm.core.protocols.Executor` ship with
spine-orm:

* ``DBAPIExecutor``      -- wraps an autocommit DB-API connection (sqlite3 by
  default). Transactions are explicit ``BEGIN`` / ``SAVEPOINT`` statements.
* ``SQLAlchemyExecutor`` -- wraps a SQLAlchemy ``Session``. Dialect
  placeholders are rewritten to named binds for ``text()``; nested
  transactions use ``begin_nested()``.

Both wrap driver exceptions in :class:`QueryError` / :class:`IntegrityError`
with the failing SQL attached, and log each statement at debug level when
``echo`` is enabled.

Manifesto:
    Statement execution is the only place the mapping core blocks on the
    store. Keeping it behind one small class per driver means the rest of
    the code base never imports a driver.

Tags:
    spine-orm, executor, sqlite, sqlalchemy, session, transaction

Doc-Types:
    api-reference
"""

from __future__ import annotations

import sqlite3
import threading
import time
from collections.abc import Sequence
from typing import Any

from sqlalchemy import create_engine as _sa_create_engine
from sqlalchemy import event, text
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from spine_orm.core.dialect import Dialect, SQLiteDialect
from spine_orm.core.errors import (
    DatabaseConnectionError,
    DatabaseError,
    IntegrityError,
    QueryError,
)
from spine_orm.core.logging import get_logger
from spine_orm.core.protocols import ExecResult, Rows

logger = get_logger(__name__)


def _log_statement(echo: bool, sql: str, args: Sequence[Any], started: float, **extra: Any) -> None:
    if echo:
        logger.debug(
            "statement_executed",
            sql=sql,
            arg_count=len(args),
            duration_ms=round((time.perf_counter() - started) * 1000, 3),
            **extra,
        )


# =============================================================================
# DB-API
# =============================================================================


def connect_sqlite(path: str = ":memory:", *, timeout: float = 5.0) -> sqlite3.Connection:
    """Open a sqlite3 connection suitable for :class:`DBAPIExecutor`.

    The connection runs in autocommit mode (``isolation_level=None``) so the
    executor controls transactions explicitly, and enforces foreign keys.
    """
    uri = path.startswith("file:")
    try:
        conn = sqlite3.connect(
            path,
            timeout=timeout,
            check_same_thread=False,
            isolation_level=None,
            uri=uri,
        )
        conn.execute("PRAGMA foreign_keys = ON")
    except sqlite3.Error as e:
        raise DatabaseConnectionError(
            f"Failed to connect to SQLite: {e}",
            cause=e,
        ) from e
    return conn


class DBAPIExecutor:
    """Executor over an autocommit DB-API 2.0 connection.

    The connection must not open implicit transactions; ``begin()`` issues
    ``BEGIN`` for the outermost transaction and ``SAVEPOINT`` for nested ones.
    Statements are serialized with a re-entrant lock so a single connection
    can be shared between threads. An open transaction keeps the lock until it
    commits or rolls back; statements from other threads wait for it.
    """

    def __init__(self, conn: Any, *, echo: bool = False) -> None:
        self._conn = conn
        self._echo = echo
        self._lock = threading.RLock()
        self._depth = 0
        driver_error = getattr(conn, "Error", None)
        self._driver_errors: tuple[type[BaseException], ...] = (
            (driver_error,) if isinstance(driver_error, type) else (Exception,)
        )
        self._integrity_error = getattr(conn, "IntegrityError", None)

    @property
    def connection(self) -> Any:
        return self._conn

    # --- statement execution ---

    def _wrap(self, error: BaseException, sql: str) -> DatabaseError:
        cls = IntegrityError if (
            self._integrity_error is not None and isinstance(error, self._integrity_error)
        ) else QueryError
        wrapped = cls(str(error), cause=error if isinstance(error, Exception) else None)
        wrapped.with_context(sql=sql)
        return wrapped

    def _cursor(self, sql: str, args: Sequence[Any]) -> Any:
        cursor = self._conn.cursor()
        try:
            cursor.execute(sql, tuple(args))
        except self._driver_errors as e:
            cursor.close()
            raise self._wrap(e, sql) from e
        return cursor

    def execute(self, sql: str, args: Sequence[Any] = ()) -> ExecResult:
        started = time.perf_counter()
        with self._lock:
            cursor = self._cursor(sql, args)
            try:
                rows_affected = cursor.rowcount if cursor.rowcount and cursor.rowcount > 0 else 0
                result = ExecResult(rows_affected, getattr(cursor, "lastrowid", None))
            finally:
                cursor.close()
        _log_statement(self._echo, sql, args, started, rows_affected=result.rows_affected)
        return result

    def query(self, sql: str, args: Sequence[Any] = ()) -> Rows:
        started = time.perf_counter()
        with self._lock:
            cursor = self._cursor(sql, args)
            try:
                columns = [d[0] for d in cursor.description or ()]
                rows = [tuple(r) for r in cursor.fetchall()]
            except self._driver_errors as e:
                raise self._wrap(e, sql) from e
            finally:
                cursor.close()
        _log_statement(self._echo, sql, args, started, rows=len(rows))
        return Rows(columns, rows)

    def query_row(self, sql: str, args: Sequence[Any] = ()) -> tuple | None:
        rows = self.query(sql, args)
        return rows.rows[0] if rows.rows else None

    # --- transactions ---

    def _control(self, sql: str) -> None:
        self.execute(sql)

    def begin(self) -> DBAPITransaction:
        # Held until the matching _finish, so other threads wait for the
        # whole transaction instead of running inside it.
        self._lock.acquire()
        depth = self._depth
        try:
            self._control("BEGIN" if depth == 0 else f"SAVEPOINT sp_{depth}")
        except BaseException:
            self._lock.release()
            raise
        self._depth += 1
        return DBAPITransaction(self, depth)

    def _finish(self, depth: int, commit: bool) -> None:
        try:
            if depth == 0:
                self._control("COMMIT" if commit else "ROLLBACK")
            elif commit:
                self._control(f"RELEASE SAVEPOINT sp_{depth}")
            else:
                self._control(f"ROLLBACK TO SAVEPOINT sp_{depth}")
                self._control(f"RELEASE SAVEPOINT sp_{depth}")
        finally:
            self._depth = depth
            self._lock.release()

    def close(self) -> None:
        self._conn.close()


class DBAPITransaction:
    """An open transaction (or savepoint) on a :class:`DBAPIExecutor`."""

    def __init__(self, executor: DBAPIExecutor, depth: int) -> None:
        self._executor = executor
        self._depth = depth
        self._done = False

    @property
    def depth(self) -> int:
        return self._depth

    def execute(self, sql: str, args: Sequence[Any] = ()) -> ExecResult:
        return self._executor.execute(sql, args)

    def query(self, sql: str, args: Sequence[Any] = ()) -> Rows:
        return self._executor.query(sql, args)

    def query_row(self, sql: str, args: Sequence[Any] = ()) -> tuple | None:
        return self._executor.query_row(sql, args)

    def begin(self) -> DBAPITransaction:
        return self._executor.begin()

    def commit(self) -> None:
        if self._done:
            raise QueryError("Transaction already finished")
        self._done = True
        self._executor._finish(self._depth, commit=True)

    def rollback(self) -> None:
        if self._done:
            return
        self._done = True
        self._executor._finish(self._depth, commit=False)

    def __enter__(self) -> DBAPITransaction:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is not None:
            self.rollback()
        elif not self._done:
            self.commit()


# =============================================================================
# SQLAlchemy
# =============================================================================


def create_engine(url: str, *, echo: bool = False, **kwargs: Any) -> Engine:
    """Create a SQLAlchemy engine with sane defaults.

    SQLite engines get ``check_same_thread=False`` and foreign keys enabled.
    """
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        engine = _sa_create_engine(url, echo=echo, **kwargs)

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return _sa_create_engine(url, echo=echo, **kwargs)


def session_factory(engine: Engine) -> sessionmaker[Session]:
    """Return a ``sessionmaker`` bound to *engine* with ``expire_on_commit=False``."""
    return sessionmaker(bind=engine, expire_on_commit=False)


class SQLAlchemyExecutor:
    """Executor that runs statements through a SQLAlchemy ``Session``.

    Statements arrive with the dialect's native placeholders; they are
    rewritten left to right into ``:p0, :p1, ...`` for ``text()``.
    Outside a transaction every statement is committed immediately. As with
    :class:`DBAPIExecutor`, an open transaction owns the session until it ends.
    """

    def __init__(self, session: Session, dialect: Dialect | None = None, *, echo: bool = False) -> None:
        self._session = session
        self._dialect = dialect or SQLiteDialect()
        self._echo = echo
        self._lock = threading.RLock()
        self._depth = 0

    @property
    def session(self) -> Session:
        """Access the underlying SA session (e.g., for ORM queries)."""
        return self._session

    def _statement(self, sql: str, args: Sequence[Any]) -> tuple[Any, dict[str, Any]]:
        params: dict[str, Any] = {}
        parts: list[str] = []
        pos = 0
        for i, value in enumerate(args):
            marker = self._dialect.placeholder(i)
            found = sql.find(marker, pos)
            if found < 0:
                break
            parts.append(sql[pos:found])
            parts.append(f":p{i}")
            params[f"p{i}"] = value
            pos = found + len(marker)
        parts.append(sql[pos:])
        return text("".join(parts)), params

    def _run(self, sql: str, args: Sequence[Any]) -> Any:
        stmt, params = self._statement(sql, args)
        try:
            return self._session.execute(stmt, params)
        except sa_exc.SQLAlchemyError as e:
            if self._depth == 0:
                self._session.rollback()
            cls = IntegrityError if isinstance(e, sa_exc.IntegrityError) else QueryError
            raise cls(str(e), cause=e).with_context(sql=sql) from e

    def _autocommit(self) -> None:
        if self._depth == 0:
            self._session.commit()

    def execute(self, sql: str, args: Sequence[Any] = ()) -> ExecResult:
        started = time.perf_counter()
        with self._lock:
            result = self._run(sql, args)
            rows_affected = max(getattr(result, "rowcount", 0) or 0, 0)
            last_id = getattr(result, "lastrowid", None)
            self._autocommit()
        _log_statement(self._echo, sql, args, started, rows_affected=rows_affected)
        return ExecResult(rows_affected, last_id)

    def query(self, sql: str, args: Sequence[Any] = ()) -> Rows:
        started = time.perf_counter()
        with self._lock:
            result = self._run(sql, args)
            columns = list(result.keys())
            rows = [tuple(r) for r in result.fetchall()]
            self._autocommit()
        _log_statement(self._echo, sql, args, started, rows=len(rows))
        return Rows(columns, rows)

    def query_row(self, sql: str, args: Sequence[Any] = ()) -> tuple | None:
        rows = self.query(sql, args)
        return rows.rows[0] if rows.rows else None

    def begin(self) -> SQLAlchemyTransaction:
        self._lock.acquire()
        depth = self._depth
        try:
            savepoint = self._session.begin_nested() if depth > 0 else None
        except BaseException:
            self._lock.release()
            raise
        self._depth += 1
        return SQLAlchemyTransaction(self, depth, savepoint)

    def _finish(self, depth: int, savepoint: Any, commit: bool) -> None:
        try:
            target = savepoint if savepoint is not None else self._session
            if commit:
                target.commit()
            else:
                target.rollback()
        finally:
            self._depth = depth
            self._lock.release()

    def close(self) -> None:
        self._session.close()


class SQLAlchemyTransaction:
    """An open transaction (or savepoint) on a :class:`SQLAlchemyExecutor`."""

    def __init__(self, executor: SQLAlchemyExecutor, depth: int, savepoint: Any) -> None:
        self._executor = executor
        self._depth = depth
        self._savepoint = savepoint
        self._done = False

    def execute(self, sql: str, args: Sequence[Any] = ()) -> ExecResult:
        return self._executor.execute(sql, args)

    def query(self, sql: str, args: Sequence[Any] = ()) -> Rows:
        return self._executor.query(sql, args)

    def query_row(self, sql: str, args: Sequence[Any] = ()) -> tuple | None:
        return self._executor.query_row(sql, args)

    def begin(self) -> SQLAlchemyTransaction:
        return self._executor.begin()

    def commit(self) -> None:
        if self._done:
            raise QueryError("Transaction already finished")
        self._done = True
        self._executor._finish(self._depth, self._savepoint, commit=True)

    def rollback(self) -> None:
        if self._done:
            return
        self._done = True
        self._executor._finish(self._depth, self._savepoint, commit=False)

    def __enter__(self) -> SQLAlchemyTransaction:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is not None:
            self.rollback()
        elif not self._done:
            self.commit()


__all__ = [
    "connect_sqlite",
    "DBAPIExecutor",
    "DBAPITransaction",
    "create_engine",
    "session_factory",
    "SQLAlchemyExecutor",
    "SQLAlchemyTransaction",
]
