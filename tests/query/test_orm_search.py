"""Tests for Search state and Scope helpers."""

import pytest
from _support.models import Email, User

from spine_orm.core.dialect import SQLiteDialect
from spine_orm.core.errors import MissingModelError, UnsettableFieldError
from spine_orm.query.conditions import InFilter, RawFilter
from spine_orm.query.scope import SAVE_ASSOCIATIONS, UPDATE_ATTRS, Scope, model_type_of
from spine_orm.query.search import Preload, Search


@pytest.fixture
def scope_for(cache):
    def factory(value, search=None):
        return Scope(value, dialect=SQLiteDialect(), cache=cache, executor=None, search=search)

    return factory


class TestSearch:
    def test_chaining_records_clauses(self):
        search = Search().where("age > ?", 1).or_([1, 2]).not_({"name": "x"})
        assert search.where_conditions[0].query == RawFilter("age > ?")
        assert search.or_conditions[0].query == InFilter((1, 2))
        assert search.has_conditions()

    def test_having_and_joins_are_not_conditions(self):
        assert not Search().having("count(*) > ?", 1).joins("JOIN x ON 1=1").has_conditions()

    def test_clone_is_independent(self):
        base = Search().where("a = ?", 1)
        branch = base.clone().where("b = ?", 2).omit("name")
        assert len(base.where_conditions) == 1
        assert len(branch.where_conditions) == 2
        assert base.omits == []

    def test_preload_replaces_same_path(self):
        search = Search().preload("emails").preload("company").preload("emails", "email like ?", "%@x")
        assert [p.schema for p in search.preloads] == ["company", "emails"]
        assert search.preloads[-1] == Preload("emails", ("email like ?", "%@x"))

    def test_inline(self):
        search = Search().inline("name = ?", "x")
        assert search.where_conditions[0].args == ("x",)
        assert not Search().inline().has_conditions()

    def test_select_sql(self):
        assert Search().select_sql == ""
        assert Search().select(["id", "name"]).select_sql == "id, name"

    def test_blank_order_ignored(self):
        assert Search().order("").order(None).orders == []


class TestModelTypeOf:
    def test_variants(self):
        assert model_type_of(User) is User
        assert model_type_of(User()) is User
        assert model_type_of([Email()]) is Email
        assert model_type_of([]) is None
        assert model_type_of(3) is None


class TestScope:
    def test_quote_dotted(self, scope_for):
        assert scope_for(User).quote("users.name") == '"users"."name"'

    def test_aliased_table_left_alone(self, scope_for):
        assert scope_for(User, Search().table("users u")).quoted_table_name == "users u"

    def test_record_of_list_target_is_zero_record(self, scope_for):
        scope = scope_for([], search=None)
        scope.model_type = User
        assert scope.record == User()

    def test_missing_model(self, scope_for):
        with pytest.raises(MissingModelError):
            scope_for(None).describe()

    def test_set_column_tracks_update_attrs(self, scope_for):
        user = User()
        scope = scope_for(user).set(UPDATE_ATTRS, {})
        scope.set_column("age", "30")
        assert user.age == 30
        assert scope.get(UPDATE_ATTRS) == {"age": "30"}

    def test_set_unknown_column(self, scope_for):
        with pytest.raises(UnsettableFieldError, match="nickname"):
            scope_for(User()).set_column("nickname", "x")

    def test_changeable_fields(self, scope_for):
        selected = scope_for(User(), Search().select("name"))
        fields = {f.name: f for f in selected.fields()}
        assert selected.changeable_field(fields["name"])
        assert not selected.changeable_field(fields["age"])

        omitted = scope_for(User(), Search().omit("age"))
        fields = {f.name: f for f in omitted.fields()}
        assert omitted.changeable_field(fields["name"])
        assert not omitted.changeable_field(fields["age"])

    def test_save_associations_setting(self, scope_for):
        scope = scope_for(User())
        assert scope.should_save_associations()
        assert not scope.set(SAVE_ASSOCIATIONS, False).should_save_associations()
        assert not scope.set(SAVE_ASSOCIATIONS, "skip").should_save_associations()

    def test_has_conditions(self, scope_for):
        assert not scope_for(User()).has_conditions()
        assert scope_for(User(id=1)).has_conditions()
        assert scope_for(User(), Search().where("age > ?", 1)).has_conditions()

    def test_new_scope_shares_connection_only(self, scope_for):
        scope = scope_for(User(), Search().where("age > ?", 1)).set("k", 1)
        child = scope.new([], model_type=Email)
        assert child.model_type is Email
        assert child.cache is scope.cache
        assert child.aux == {}
        assert not child.search.has_conditions()
