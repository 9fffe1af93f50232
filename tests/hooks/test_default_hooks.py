"""
Tests for the stock hook steps.

Tests verify:
- The default pipelines run their steps in a fixed order
- Update and delete refuse to run without conditions, before any SQL
- Lifecycle methods, timestamps, default reload and scanning
- Custom steps can veto or extend an operation
"""

from dataclasses import dataclass

import pytest
from _support.models import User

from spine_orm import Model, column
from spine_orm.core.errors import MissingWhereError, PreconditionError, ScanError
from spine_orm.core.protocols import Rows
from spine_orm.db import DB
from spine_orm.hooks.book import Flow
from spine_orm.hooks.defaults import (
    CREATE_EXEC_HOOK,
    CREATE_SQL_HOOK,
    column_fields,
    default_book,
    save_record,
    scan_rows,
)
from spine_orm.query.scope import UPDATE_INTERFACE, Scope


@dataclass(kw_only=True)
class Note(Model):
    title: str = ""
    calls: list = column("-", default_factory=list)

    def before_save(self):
        self.calls.append("before_save")

    def before_create(self):
        self.calls.append("before_create")

    def after_create(self):
        self.calls.append("after_create")

    def before_update(self):
        self.calls.append("before_update")

    def after_update(self):
        self.calls.append("after_update")

    def after_save(self):
        self.calls.append("after_save")

    def before_delete(self):
        self.calls.append("before_delete")

    def after_delete(self):
        self.calls.append("after_delete")

    def after_find(self):
        self.calls.append("after_find")


@dataclass(kw_only=True)
class Setting(Model):
    key: str = ""
    theme: str = column("default:'dark'", default="")


@pytest.fixture
def notes_db(db):
    db.automigrate(Note, Setting)
    return db


@pytest.fixture
def spy_scope(recorder, cache, sqlite):
    def factory(value, **kwargs):
        return Scope(value, dialect=sqlite, cache=cache, executor=recorder, **kwargs)

    return factory


# =============================================================================
# Pipeline shape
# =============================================================================


class TestDefaultPipelines:
    def test_create_order(self):
        assert default_book().create.names == [
            "before_save",
            "before_create",
            "save_before_associations",
            "update_timestamp",
            "create_sql",
            "create_exec",
            "reload_defaults",
            "save_after_associations",
            "after_create",
            "after_save",
        ]

    def test_query_order(self):
        assert default_book().query.names == ["query_sql", "query_exec", "preload", "after_find"]

    def test_update_order(self):
        assert default_book().update.names == [
            "require_conditions",
            "assign_updating_attrs",
            "before_save",
            "before_update",
            "save_before_associations",
            "update_timestamp",
            "update_sql",
            "update_exec",
            "save_after_associations",
            "after_update",
            "after_save",
        ]

    def test_delete_order(self):
        assert default_book().delete.names == [
            "require_conditions",
            "before_delete",
            "delete_sql",
            "delete_exec",
            "after_delete",
        ]

    def test_books_are_independent(self):
        book = default_book()
        book.create.remove("after_save")
        assert "after_save" in default_book().create


# =============================================================================
# Preconditions
# =============================================================================


class TestMissingWhere:
    @pytest.mark.parametrize("action", ["update", "delete"])
    def test_rejected_before_any_sql(self, spy_scope, recorder, action):
        scope = spy_scope(User, aux={UPDATE_INTERFACE: {"name": "x"}})
        with pytest.raises(MissingWhereError) as info:
            default_book().run(action, scope)
        assert info.value.context.operation == action
        assert recorder.statements == []

    def test_blank_record_has_no_conditions(self, spy_scope, recorder):
        with pytest.raises(MissingWhereError):
            default_book().run("delete", spy_scope(User(name="x")))
        assert recorder.statements == []

    def test_unchanged_update_stops_quietly(self, spy_scope, recorder):
        scope = spy_scope(User(id=1, name="same"), aux={UPDATE_INTERFACE: {"name": "same"}})
        assert default_book().run("update", scope) is Flow.STOP
        assert recorder.statements == []

    def test_update_attrs_must_be_a_mapping(self, spy_scope):
        scope = spy_scope(User(id=1), aux={UPDATE_INTERFACE: ["name", "x"]})
        with pytest.raises(PreconditionError, match="mapping"):
            default_book().run("update", scope)


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycleMethods:
    def test_create(self, notes_db):
        note = notes_db.create(Note(title="a"))
        assert note.calls == ["before_save", "before_create", "after_create", "after_save"]

    def test_update(self, notes_db):
        note = notes_db.create(Note(title="a"))
        note.calls.clear()
        assert notes_db.model(note).update("title", "b") == 1
        assert note.calls == ["before_save", "before_update", "after_update", "after_save"]

    def test_update_column_skips_methods(self, notes_db):
        note = notes_db.create(Note(title="a"))
        note.calls.clear()
        notes_db.model(note).update_column("title", "b")
        assert note.calls == []
        assert notes_db.first(Note).title == "b"

    def test_delete(self, notes_db):
        note = notes_db.create(Note(title="a"))
        note.calls.clear()
        notes_db.delete(note)
        assert note.calls == ["before_delete", "after_delete"]

    def test_after_find(self, notes_db):
        notes_db.create(Note(title="a"))
        notes_db.create(Note(title="b"))
        assert notes_db.first(Note).calls == ["after_find"]
        assert [n.calls for n in notes_db.find(Note)] == [["after_find"], ["after_find"]]


class TestTimestamps:
    def test_create_sets_both(self, notes_db):
        note = notes_db.create(Note(title="a"))
        assert note.created_at is not None
        assert note.updated_at == note.created_at

    def test_update_keeps_created_at(self, notes_db):
        note = notes_db.create(Note(title="a"))
        before = notes_db.first(Note)
        notes_db.model(note).update("title", "b")
        after = notes_db.first(Note)
        assert after.created_at == before.created_at
        assert after.updated_at is not None

    def test_update_column_leaves_updated_at(self, notes_db):
        note = notes_db.create(Note(title="a"))
        before = notes_db.first(Note).updated_at
        notes_db.model(note).update_column("title", "b")
        assert notes_db.first(Note).updated_at == before


class TestReloadDefaults:
    def test_store_defaults_are_read_back(self, notes_db):
        setting = notes_db.create(Setting(key="ui"))
        assert setting.theme == "dark"

    def test_explicit_value_kept(self, notes_db):
        setting = notes_db.create(Setting(key="ui", theme="light"))
        assert setting.theme == "light"


# =============================================================================
# Scanning
# =============================================================================


class TestScanning:
    def test_column_fields(self, cache):
        fields = column_fields(cache.describe(User), ["id", "name", "nickname"])
        assert [f.name if f else None for f in fields] == ["id", "name", None]

    def test_scan_into_list(self, make_scope):
        dest = [User(name="stale")]
        scope = make_scope(dest, model_type=User)
        scan_rows(scope, Rows(["id", "name", "age"], [(1, "a", "3"), (2, "b", None)]))
        assert [(u.id, u.name, u.age) for u in dest] == [(1, "a", 3), (2, "b", 0)]
        assert scope.rows_affected == 2

    def test_scan_into_record(self, make_scope):
        user = User()
        scan_rows(make_scope(user), Rows(["id", "name"], [(7, "x")]))
        assert (user.id, user.name) == (7, "x")

    def test_unconvertible_value(self, make_scope):
        with pytest.raises(ScanError) as info:
            scan_rows(make_scope([], model_type=User), Rows(["age"], [("old",)]))
        assert info.value.context.table == "users"
        assert info.value.context.field == "age"

    def test_unsupported_destination(self, make_scope):
        with pytest.raises(PreconditionError, match="Unsupported destination"):
            scan_rows(make_scope({}, model_type=User), Rows(["id"], [(1,)]))


# =============================================================================
# Extension
# =============================================================================


class TestCustomSteps:
    def test_veto_before_insert(self, recorder, cache, sqlite):
        handle = DB(recorder, sqlite, cache=cache)
        handle.automigrate(Note)
        handle.hooks.create.register("veto", lambda book, scope: Flow.STOP, before=CREATE_SQL_HOOK)
        recorder.reset()
        handle.create(Note(title="a"))
        assert recorder.matching("INSERT") == []
        assert handle.model(Note).count() == 0

    def test_step_sees_executed_statement(self, notes_db):
        seen = []
        notes_db.hooks.create.register(
            "audit",
            lambda book, scope: seen.append((scope.statement.sql, scope.rows_affected)),
            after=CREATE_EXEC_HOOK,
        )
        notes_db.create(Note(title="a"))
        assert seen == [('INSERT INTO "notes" ("created_at","updated_at","deleted_at","title") VALUES (?,?,?,?)', 1)]

    def test_failing_step_rolls_back(self, notes_db):
        def boom(book, scope):
            raise RuntimeError("audit failed")

        notes_db.hooks.create.register("boom", boom, after=CREATE_EXEC_HOOK)
        with pytest.raises(RuntimeError):
            notes_db.create(Note(title="a"))
        assert notes_db.model(Note).count() == 0


class TestSaveRecord:
    def test_creates_then_updates(self, notes_db):
        book = notes_db.hooks
        scope = notes_db.new_scope(Note)
        note = Note(title="a")
        save_record(book, scope, note)
        assert note.id == 1
        note.title = "b"
        save_record(book, scope, note)
        assert notes_db.first(Note).title == "b"
        assert notes_db.model(Note).count() == 1

    def test_recreates_missing_row(self, notes_db):
        note = Note(id=40, title="ghost")
        save_record(notes_db.hooks, notes_db.new_scope(Note), note)
        assert notes_db.first(Note, 40).title == "ghost"
