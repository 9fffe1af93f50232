"""An executor wrapper that records every statement it forwards."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from spine_orm.core.protocols import ExecResult, Executor, Rows


class RecordingExecutor:
    """Forwards to ``inner`` and appends each SQL string to ``statements``.

    Transaction control shows up as ``BEGIN`` / ``COMMIT`` / ``ROLLBACK``
    entries, whatever the inner executor actually sends.
    """

    def __init__(self, inner: Executor) -> None:
        self.inner = inner
        self.statements: list[str] = []

    def execute(self, sql: str, args: Sequence[Any] = ()) -> ExecResult:
        self.statements.append(sql)
        return self.inner.execute(sql, args)

    def query(self, sql: str, args: Sequence[Any] = ()) -> Rows:
        self.statements.append(sql)
        return self.inner.query(sql, args)

    def query_row(self, sql: str, args: Sequence[Any] = ()) -> tuple | None:
        self.statements.append(sql)
        return self.inner.query_row(sql, args)

    def begin(self) -> RecordingTransaction:
        tx = self.inner.begin()
        self.statements.append("BEGIN")
        return RecordingTransaction(self, tx)

    def reset(self) -> None:
        self.statements.clear()

    def matching(self, prefix: str) -> list[str]:
        return [s for s in self.statements if s.lstrip().upper().startswith(prefix.upper())]


class RecordingTransaction:
    def __init__(self, recorder: RecordingExecutor, tx: Any) -> None:
        self._recorder = recorder
        self._tx = tx
        self._done = False

    def execute(self, sql: str, args: Sequence[Any] = ()) -> ExecResult:
        self._recorder.statements.append(sql)
        return self._tx.execute(sql, args)

    def query(self, sql: str, args: Sequence[Any] = ()) -> Rows:
        self._recorder.statements.append(sql)
        return self._tx.query(sql, args)

    def query_row(self, sql: str, args: Sequence[Any] = ()) -> tuple | None:
        self._recorder.statements.append(sql)
        return self._tx.query_row(sql, args)

    def begin(self) -> RecordingTransaction:
        tx = self._tx.begin()
        self._recorder.statements.append("BEGIN")
        return RecordingTransaction(self._recorder, tx)

    def commit(self) -> None:
        self._done = True
        self._recorder.statements.append("COMMIT")
        self._tx.commit()

    def rollback(self) -> None:
        if self._done:
            return
        self._done = True
        self._recorder.statements.append("ROLLBACK")
        self._tx.rollback()

    def __enter__(self) -> RecordingTransaction:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is not None:
            self.rollback()
        elif not self._done:
            self.commit()
