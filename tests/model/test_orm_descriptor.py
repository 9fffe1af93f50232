"""Tests for field descriptors, bound fields and value conversion."""

import datetime as dt
import decimal
import enum
from dataclasses import dataclass

import pytest
from _support.models import User

from spine_orm.core.errors import UnsettableFieldError
from spine_orm.model.cache import DescriptorCache
from spine_orm.model.descriptor import convert_value, is_blank, is_scanner_type, new_record


class Level(enum.Enum):
    LOW = 1
    HIGH = 2


class Money:
    def __init__(self, cents):
        self.cents = cents

    @classmethod
    def from_db_value(cls, value):
        return cls(int(value))

    def db_value(self):
        return self.cents


@dataclass
class Account:
    id: int = 0
    level: Level = Level.LOW
    balance: Money | None = None
    opened: dt.date | None = None
    rate: decimal.Decimal = decimal.Decimal("0")


@dataclass
class NeedsArgs:
    id: int
    name: str = "n"


class TestBlank:
    @pytest.mark.parametrize("value", [None, 0, "", False, 0.0, [], b""])
    def test_zero_values(self, value):
        assert is_blank(value)

    @pytest.mark.parametrize("value", [1, "x", True, [0], Level.LOW])
    def test_set_values(self, value):
        assert not is_blank(value)

    def test_dataclass_is_blank_when_every_field_is(self):
        assert is_blank(User())
        assert not is_blank(User(name="jinzhu"))


class TestZero:
    def test_field_zero_values(self, cache):
        d = cache.describe(User)
        assert d.field_by_name("age").zero() == 0
        assert d.field_by_name("name").zero() == ""
        assert d.field_by_name("emails").zero() == []
        assert d.field_by_name("credit_card").zero() is None


class TestBoundField:
    def test_values_and_blankness(self, cache):
        fields = {f.name: f for f in cache.describe(User).bind(User(name="jinzhu"))}
        assert fields["name"].value == "jinzhu"
        assert not fields["name"].is_blank
        assert fields["age"].is_blank
        assert fields["name"].db_name == "name"

    def test_set_converts(self, cache):
        user = User()
        age = next(f for f in cache.describe(User).bind(user) if f.name == "age")
        age.set("42")
        assert user.age == 42
        assert age.value == 42
        assert not age.is_blank

    def test_set_none_assigns_zero(self, cache):
        user = User(age=5)
        age = next(f for f in cache.describe(User).bind(user) if f.name == "age")
        age.set(None)
        assert user.age == 0

    def test_unconvertible_value(self, cache):
        user = User()
        age = next(f for f in cache.describe(User).bind(user) if f.name == "age")
        with pytest.raises(UnsettableFieldError, match="age"):
            age.set("not a number")

    def test_bindings_are_fresh(self, cache):
        d = cache.describe(User)
        assert d.bind(User())[0] is not d.bind(User())[0]


class TestConvertValue:
    def test_enum_and_scanner(self, cache):
        d = cache.describe(Account)
        assert convert_value(2, d.field_by_name("level")) is Level.HIGH
        money = convert_value("125", d.field_by_name("balance"))
        assert isinstance(money, Money) and money.cents == 125
        assert d.field_by_name("balance").is_scanner

    def test_dates_and_decimals(self, cache):
        d = cache.describe(Account)
        assert convert_value("2024-03-01", d.field_by_name("opened")) == dt.date(2024, 3, 1)
        assert convert_value("1.50", d.field_by_name("rate")) == decimal.Decimal("1.50")

    def test_datetime_text(self, cache):
        created = cache.describe(User).field_by_name("created_at")
        assert convert_value("2024-01-02 03:04:05", created) == dt.datetime(2024, 1, 2, 3, 4, 5)

    def test_bools_from_storage(self):
        @dataclass
        class Flag:
            id: int = 0
            on: bool = False

        on = DescriptorCache().describe(Flag).field_by_name("on")
        assert convert_value(1, on) is True
        assert convert_value("false", on) is False

    def test_scanner_detection(self):
        assert is_scanner_type(Money)
        assert not is_scanner_type(int)


class TestNewRecord:
    def test_default_constructor(self):
        assert new_record(User) == User()

    def test_falls_back_to_field_defaults(self):
        record = new_record(NeedsArgs)
        assert record.id is None
        assert record.name == "n"
