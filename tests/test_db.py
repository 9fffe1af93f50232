"""
End-to-end tests for the DB handle against in-memory sqlite.

Tests verify:
- Create / read / update / delete through the hook pipelines
- Soft delete and unscoped access
- Preloading every relationship kind
- Update and delete never run without conditions
- Statement previews, transactions, raw SQL and open_db
"""

import threading

import pytest
from _support.models import Cat, Company, CreditCard, Dog, Email, Language, Toy, User

from spine_orm import open_db
from spine_orm.core.errors import (
    IntegrityError,
    MissingWhereError,
    PreconditionError,
    RecordNotFoundError,
)
from spine_orm.core.settings import OrmSettings
from spine_orm.db import attrs_to_dict


@pytest.fixture
def people(migrated_db):
    return [migrated_db.create(User(name=name, age=age)) for name, age in (("a", 10), ("b", 20), ("c", 30))]


def _names(users):
    return [u.name for u in users]


# =============================================================================
# Create / read
# =============================================================================


class TestCreate:
    def test_key_and_timestamps_set(self, migrated_db):
        user = migrated_db.create(User(name="a"))
        assert user.id == 1
        assert user.created_at is not None
        assert migrated_db.create(User(name="b")).id == 2

    def test_associations_saved(self, migrated_db):
        user = migrated_db.create(
            User(
                name="a",
                emails=[Email(email="a@x.io")],
                company=Company(name="acme"),
                credit_card=CreditCard(number="111"),
                languages=[Language(name="en")],
            )
        )
        assert user.company_id == user.company.id != 0
        assert migrated_db.first(Email).user_id == user.id
        assert migrated_db.first(CreditCard).user_id == user.id
        row = migrated_db.executor.query_row('SELECT "user_id", "language_id" FROM "user_languages"')
        assert row == (user.id, user.languages[0].id)

    def test_failure_rolls_back_everything(self, migrated_db):
        with pytest.raises(IntegrityError):
            migrated_db.create(User(name="a", emails=[Email(email="d@x.io"), Email(email="d@x.io")]))
        assert migrated_db.model(User).count() == 0
        assert migrated_db.model(Email).count() == 0

    def test_only_one_insert_reaches_the_store(self, spy_db, recorder):
        spy_db.create(User(name="a"))
        assert recorder.matching("INSERT") == [
            'INSERT INTO "users" ("created_at","updated_at","deleted_at","name","age","company_id") '
            "VALUES (?,?,?,?,?,?)"
        ]


class TestRead:
    def test_first_and_last(self, people, migrated_db):
        assert migrated_db.first(User).name == "a"
        assert migrated_db.last(User).name == "c"

    def test_by_primary_key(self, people, migrated_db):
        assert migrated_db.first(User, 2).name == "b"

    def test_not_found(self, people, migrated_db):
        with pytest.raises(RecordNotFoundError) as info:
            migrated_db.first(User, {"name": "zzz"})
        assert info.value.context.table == "users"

    def test_into_a_record(self, people, migrated_db):
        user = User()
        assert migrated_db.first(user, {"name": "b"}) is user
        assert user.age == 20

    def test_find(self, people, migrated_db):
        assert _names(migrated_db.find(User)) == ["a", "b", "c"]
        assert _names(migrated_db.find(User, "age > ?", 15)) == ["b", "c"]

    def test_find_into_list(self, people, migrated_db):
        dest = [User(name="stale")]
        migrated_db.model(User).find(dest, {"age": 10})
        assert _names(dest) == ["a"]

    def test_chained_conditions(self, people, migrated_db):
        assert _names(migrated_db.where("age > ?", 15).order("age desc").find(User)) == ["c", "b"]
        assert _names(migrated_db.where({"name": "a"}).or_({"name": "c"}).find(User)) == ["a", "c"]
        assert _names(migrated_db.not_({"name": "a"}).find(User)) == ["b", "c"]
        assert _names(migrated_db.where("name IN (?)", ["a", "b"]).find(User)) == ["a", "b"]

    def test_limit_and_offset(self, people, migrated_db):
        assert _names(migrated_db.order("age").limit(1).offset(1).find(User)) == ["b"]

    def test_select(self, people, migrated_db):
        users = migrated_db.select("name").find(User)
        assert [(u.name, u.age) for u in users] == [("a", 0), ("b", 0), ("c", 0)]

    def test_count_and_pluck(self, people, migrated_db):
        assert migrated_db.model(User).count() == 3
        assert migrated_db.model(User).count({"name": "a"}) == 1
        assert migrated_db.model(User).where("age > ?", 15).count() == 2
        assert migrated_db.model(User).order("age desc").pluck("name") == ["c", "b", "a"]

    def test_raw(self, people, migrated_db):
        users = migrated_db.raw('SELECT * FROM "users" WHERE "age" > ?', 15).find(User)
        assert _names(users) == ["b", "c"]


class TestFirstOrInit:
    def test_init_from_conditions(self, migrated_db):
        user = migrated_db.attrs({"age": 20}).first_or_init(User, {"name": "new"})
        assert (user.id, user.name, user.age) == (0, "new", 20)
        assert migrated_db.model(User).count() == 0

    def test_found_with_assign(self, people, migrated_db):
        user = migrated_db.assign("age", 99).first_or_init(User, {"name": "a"})
        assert (user.id, user.age) == (1, 99)
        assert migrated_db.first(User, 1).age == 10

    def test_first_or_create(self, migrated_db):
        created = migrated_db.attrs("age", 5).first_or_create(User, {"name": "new"})
        assert created.id == 1
        again = migrated_db.first_or_create(User, {"name": "new"})
        assert (again.id, again.age) == (1, 5)
        assert migrated_db.model(User).count() == 1

    def test_first_or_create_assigns_existing(self, people, migrated_db):
        migrated_db.assign({"age": 77}).first_or_create(User, {"name": "b"})
        assert migrated_db.first(User, {"name": "b"}).age == 77


# =============================================================================
# Update
# =============================================================================


class TestUpdate:
    def test_record_update(self, people, migrated_db):
        user = people[0]
        assert migrated_db.model(user).update("name", "z") == 1
        assert user.name == "z"
        assert migrated_db.first(User, user.id).name == "z"

    def test_updates_mapping(self, people, migrated_db):
        migrated_db.model(people[1]).updates({"name": "y", "age": 21})
        stored = migrated_db.first(User, 2)
        assert (stored.name, stored.age) == ("y", 21)

    def test_batch_update(self, people, migrated_db):
        assert migrated_db.model(User).where("age > ?", 15).update("age", 99) == 2
        assert migrated_db.model(User).order("id").pluck("age") == [10, 99, 99]

    def test_update_columns(self, people, migrated_db):
        migrated_db.model(people[2]).update_columns({"age": 31})
        assert migrated_db.first(User, 3).age == 31

    def test_save(self, people, migrated_db):
        user = people[0]
        user.name = "renamed"
        migrated_db.save(user)
        assert migrated_db.first(User, user.id).name == "renamed"
        assert migrated_db.save(User(name="d")).id == 4

    def test_save_recreates_missing_row(self, migrated_db):
        migrated_db.save(User(id=9, name="ghost"))
        assert migrated_db.first(User, 9).name == "ghost"

    def test_without_conditions(self, spy_db, recorder):
        with pytest.raises(MissingWhereError):
            spy_db.model(User).update("name", "x")
        assert recorder.statements == []

    def test_update_runs_inside_one_transaction(self, spy_db, recorder):
        user = spy_db.create(User(name="a"))
        recorder.reset()
        spy_db.model(user).update("name", "b")
        assert recorder.statements[0] == "BEGIN"
        assert recorder.statements[-1] == "COMMIT"
        assert len(recorder.matching("UPDATE")) == 1


# =============================================================================
# Delete
# =============================================================================


class TestDelete:
    def test_soft_delete(self, people, migrated_db):
        assert migrated_db.delete(people[1]) == 1
        assert _names(migrated_db.find(User)) == ["a", "c"]
        hidden = migrated_db.unscoped().first(User, {"name": "b"})
        assert hidden.deleted_at is not None
        assert migrated_db.unscoped().model(User).count() == 3

    def test_unscoped_delete_is_permanent(self, people, migrated_db):
        migrated_db.unscoped().delete(people[1])
        assert migrated_db.unscoped().model(User).count() == 2

    def test_delete_by_conditions(self, people, migrated_db):
        assert migrated_db.delete(User, "age < ?", 25) == 2
        assert _names(migrated_db.find(User)) == ["c"]

    def test_without_conditions(self, spy_db, recorder):
        spy_db.create(User(name="a"))
        recorder.reset()
        with pytest.raises(MissingWhereError):
            spy_db.model(User).delete()
        assert recorder.statements == []
        assert spy_db.model(User).count() == 1


# =============================================================================
# Preload
# =============================================================================


class TestPreload:
    @pytest.fixture
    def family(self, migrated_db):
        english, german = Language(name="en"), Language(name="de")
        migrated_db.create(
            User(
                name="a",
                emails=[Email(email="a1@x.io"), Email(email="a2@x.io")],
                company=Company(name="acme"),
                credit_card=CreditCard(number="111"),
                languages=[english, german],
            )
        )
        migrated_db.create(User(name="b", emails=[Email(email="b1@x.io")], languages=[german]))
        migrated_db.create(User(name="c"))

    def test_has_many(self, family, migrated_db):
        users = migrated_db.preload("emails").find(User)
        assert [sorted(e.email for e in u.emails) for u in users] == [["a1@x.io", "a2@x.io"], ["b1@x.io"], []]

    def test_has_one(self, family, migrated_db):
        users = migrated_db.preload("credit_card").find(User)
        assert [u.credit_card.number if u.credit_card else None for u in users] == ["111", None, None]

    def test_belongs_to(self, family, migrated_db):
        user = migrated_db.preload("company").first(User)
        assert user.company.name == "acme"

    def test_many_to_many(self, family, migrated_db):
        users = migrated_db.preload("languages").find(User)
        assert [sorted(lang.name for lang in u.languages) for u in users] == [["de", "en"], ["de"], []]

    def test_conditions(self, family, migrated_db):
        user = migrated_db.preload("emails", "email LIKE ?", "%2@%").first(User)
        assert [e.email for e in user.emails] == ["a2@x.io"]

    def test_several_paths(self, family, migrated_db):
        user = migrated_db.preload("emails").preload("company").first(User)
        assert len(user.emails) == 2
        assert user.company.name == "acme"

    def test_polymorphic(self, migrated_db):
        migrated_db.create(Dog(name="rex", toys=[Toy(name="ball"), Toy(name="bone")]))
        migrated_db.create(Cat(name="tom", toy=Toy(name="mouse")))
        dog = migrated_db.preload("toys").first(Dog)
        cat = migrated_db.preload("toy").first(Cat)
        assert sorted(t.name for t in dog.toys) == ["ball", "bone"]
        assert cat.toy.name == "mouse"

    def test_unknown_field(self, family, migrated_db):
        with pytest.raises(PreconditionError, match="can't preload field nope"):
            migrated_db.preload("nope").find(User)


# =============================================================================
# Statement previews
# =============================================================================


class TestStatementPreviews:
    def test_create_sql(self, migrated_db):
        stmt = migrated_db.create_sql(User(name="a"))
        assert stmt.sql.startswith('INSERT INTO "users" ("created_at",')
        assert stmt.args == [None, None, None, "a", 0, 0]

    def test_find_sql(self, migrated_db):
        stmt = migrated_db.find_sql(User, {"name": "a"})
        assert stmt.sql == 'SELECT * FROM "users" WHERE "users"."deleted_at" IS NULL AND (("users"."name" = ?))'
        assert stmt.args == ["a"]

    def test_first_and_last_sql(self, migrated_db):
        assert migrated_db.first_sql(User).sql == (
            'SELECT * FROM "users" WHERE "users"."deleted_at" IS NULL ORDER BY "users"."id" ASC LIMIT 1'
        )
        assert migrated_db.last_sql(User).sql.endswith('ORDER BY "users"."id" DESC LIMIT 1')

    def test_update_sql(self, spy_db, recorder):
        user = User(id=2, name="x")
        stmt = spy_db.model(user).update_sql("name", "y")
        assert stmt.sql == 'UPDATE "users" SET "name" = ? WHERE "users"."deleted_at" IS NULL AND "users"."id" = ?'
        assert stmt.args == ["y", 2]
        assert user.name == "y"
        assert recorder.statements == []

    def test_update_sql_without_changes(self, migrated_db):
        assert not migrated_db.model(User(id=2, name="x")).update_sql("name", "x")

    def test_update_sql_without_conditions(self, migrated_db):
        with pytest.raises(MissingWhereError):
            migrated_db.model(User).update_sql("name", "x")

    def test_delete_sql(self, migrated_db):
        soft = migrated_db.delete_sql(User(id=2))
        assert soft.sql == 'UPDATE "users" SET "deleted_at"=? WHERE "users"."deleted_at" IS NULL AND "users"."id" = ?'
        assert soft.args[1] == 2
        hard = migrated_db.unscoped().delete_sql(User(id=2))
        assert (hard.sql, hard.args) == ('DELETE FROM "users" WHERE "users"."id" = ?', [2])

    def test_delete_sql_without_conditions(self, migrated_db):
        with pytest.raises(MissingWhereError):
            migrated_db.delete_sql(User)


# =============================================================================
# Transactions and raw statements
# =============================================================================


class TestTransactions:
    def test_rollback(self, migrated_db):
        with pytest.raises(RuntimeError):
            with migrated_db.transaction() as tx:
                tx.create(User(name="a"))
                raise RuntimeError("abort")
        assert migrated_db.model(User).count() == 0

    def test_commit(self, migrated_db):
        with migrated_db.transaction() as tx:
            tx.create(User(name="a"))
            tx.create(User(name="b"))
        assert migrated_db.model(User).count() == 2

    def test_concurrent_creates_on_one_handle(self, migrated_db):
        errors = []

        def worker(n):
            try:
                for i in range(25):
                    migrated_db.create(User(name=f"w{n}-{i}"))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert errors == []
        assert migrated_db.model(User).count() == 150

    def test_rollback_keeps_other_threads_writes(self, migrated_db):
        started = threading.Event()

        def writer():
            started.wait()
            migrated_db.create(User(name="kept"))

        thread = threading.Thread(target=writer)
        thread.start()
        with pytest.raises(RuntimeError):
            with migrated_db.transaction() as tx:
                tx.create(User(name="dropped"))
                started.set()
                thread.join(0.1)
                raise RuntimeError("abort")
        thread.join(5)
        assert _names(migrated_db.find(User)) == ["kept"]


class TestExec:
    def test_exec_binds_arguments(self, people, migrated_db):
        assert migrated_db.exec('UPDATE "users" SET "age" = ? WHERE "name" IN (?)', 1, ["a", "b"]) == 2
        assert migrated_db.model(User).order("id").pluck("age") == [1, 1, 30]

    def test_dollar_signs_in_raw_sql(self, people, migrated_db):
        assert migrated_db.exec("UPDATE users SET name = '$$' WHERE age > ?", 25) == 1
        assert _names(migrated_db.where("name = '$$' OR age < ?", 15).order("id").find(User)) == ["a", "$$"]


class TestAttrsToDict:
    def test_shapes(self, cache):
        assert attrs_to_dict(("name", "x", "age", 3), cache) == {"name": "x", "age": 3}
        assert attrs_to_dict(({"name": "x"},), cache) == {"name": "x"}
        assert attrs_to_dict((User(name="x", age=3),), cache) == {"name": "x", "age": 3}

    def test_rejects_odd_pairs(self, cache):
        with pytest.raises(TypeError):
            attrs_to_dict(("name",), cache)


# =============================================================================
# Opening
# =============================================================================


class TestOpenDB:
    def test_memory_sqlite(self):
        db = open_db(database_url="sqlite://")
        try:
            assert db.dialect.name == "sqlite"
            db.automigrate(Company)
            assert db.create(Company(name="acme")).id == 1
        finally:
            db.close()

    def test_settings_and_overrides(self):
        db = open_db(OrmSettings(_env_file=None, database_url="sqlite://"), singular_table=True)
        try:
            assert db.cache.describe(Company).default_table_name == "company"
        finally:
            db.close()
