"""
Hook pipelines.

A ``HookBook`` holds one :class:`Pipeline` per CRUD action. A pipeline is an
ordered list of named steps; each step receives the book and the operation
:class:`Scope` and returns a :class:`Flow`. Returning ``Flow.STOP`` ends the
current pipeline only; ``None`` is read as ``Flow.CONTINUE``. Raising aborts
the pipeline and the exception reaches the caller unchanged (OrmErrors get
the action and step name attached to their context).

Manifesto:
    - **Named steps:** every step has a stable name so it can be replaced,
      removed or have neighbours inserted around it
    - **Explicit continuation:** steps return continue/stop instead of
      flipping a shared flag
    - **No SQL here:** pipelines only sequence; builders and executors do
      the work

Architecture:
    ::

        HookBook
        ├── create: before_save → before_create → ... → after_save
        ├── query:  query_sql → query_exec → preload → after_find
        ├── update: require_conditions → ... → after_save
        └── delete: require_conditions → ... → after_delete

        Pipeline.run(book, scope)
            for step in steps:
                STOP  → return STOP   (siblings unaffected)
                error → propagate

Examples:
    >>> book = default_book()
    >>> book.create.register("audit", audit_step, after="create_exec")
    >>> book.query.replace("after_find", my_after_find)
    >>> book.delete.remove("before_delete")

Tags:
    hooks, pipeline, callbacks, lifecycle, spine-orm

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from spine_orm.core.errors import OrmError
from spine_orm.core.logging import get_logger

if TYPE_CHECKING:
    from spine_orm.query.scope import Scope

logger = get_logger(__name__)

ACTIONS = ("create", "query", "update", "delete")


class Flow(str, Enum):
    """What a pipeline does after a step returns."""

    CONTINUE = "continue"
    STOP = "stop"


Step = Callable[["HookBook", "Scope"], "Flow | None"]


@dataclass(frozen=True)
class Hook:
    """A named pipeline step."""

    name: str
    step: Step


class Pipeline:
    """Ordered, named steps for one action."""

    def __init__(self, action: str) -> None:
        self.action = action
        self._hooks: list[Hook] = []

    def _index(self, name: str) -> int:
        for index, hook in enumerate(self._hooks):
            if hook.name == name:
                return index
        raise KeyError(f"No hook named {name!r} in {self.action} pipeline. Available: {self.names}")

    def register(
        self,
        name: str,
        step: Step,
        *,
        before: str | None = None,
        after: str | None = None,
    ) -> Pipeline:
        """Add a step at the end, or just before/after an existing one."""
        if name in self:
            raise ValueError(f"Hook {name!r} is already registered in {self.action} pipeline")
        if before is not None and after is not None:
            raise ValueError("Pass either before= or after=, not both")
        hook = Hook(name, step)
        if before is not None:
            self._hooks.insert(self._index(before), hook)
        elif after is not None:
            self._hooks.insert(self._index(after) + 1, hook)
        else:
            self._hooks.append(hook)
        return self

    def replace(self, name: str, step: Step) -> Pipeline:
        self._hooks[self._index(name)] = Hook(name, step)
        return self

    def remove(self, name: str) -> Pipeline:
        del self._hooks[self._index(name)]
        return self

    def get(self, name: str) -> Step | None:
        for hook in self._hooks:
            if hook.name == name:
                return hook.step
        return None

    @property
    def names(self) -> list[str]:
        return [hook.name for hook in self._hooks]

    def __contains__(self, name: object) -> bool:
        return any(hook.name == name for hook in self._hooks)

    def __len__(self) -> int:
        return len(self._hooks)

    def run(self, book: HookBook, scope: Scope) -> Flow:
        for hook in list(self._hooks):
            try:
                flow = hook.step(book, scope)
            except OrmError as e:
                if e.context.operation is None:
                    e.with_context(operation=self.action, hook=hook.name)
                raise
            if flow is Flow.STOP:
                logger.debug("hook_pipeline_stopped", action=self.action, hook=hook.name)
                return Flow.STOP
        return Flow.CONTINUE

    def copy(self) -> Pipeline:
        clone = Pipeline(self.action)
        clone._hooks = list(self._hooks)
        return clone

    def __repr__(self) -> str:
        return f"Pipeline({self.action!r}, {self.names})"


class HookBook:
    """One pipeline per CRUD action."""

    def __init__(self) -> None:
        self.create = Pipeline("create")
        self.query = Pipeline("query")
        self.update = Pipeline("update")
        self.delete = Pipeline("delete")

    def pipeline(self, action: str) -> Pipeline:
        if action not in ACTIONS:
            raise ValueError(f"Unknown action {action!r}; expected one of {ACTIONS}")
        return getattr(self, action)

    def run(self, action: str, scope: Scope) -> Flow:
        """Run the ``action`` pipeline against ``scope``."""
        return self.pipeline(action).run(self, scope)

    def copy(self) -> HookBook:
        clone = HookBook()
        for action in ACTIONS:
            setattr(clone, action, self.pipeline(action).copy())
        return clone


__all__ = ["ACTIONS", "Flow", "Step", "Hook", "Pipeline", "HookBook"]
