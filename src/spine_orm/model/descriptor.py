"""
Field and model descriptors.

A ``ModelDescriptor`` is the static, immutable mapping between a dataclass
record type and its table: ordered ``FieldDescriptor`` objects, the subset
that forms the primary key, and the default table name. Descriptors are built
once per type by :mod:`spine_orm.model.cache` and shared by every operation on
that type, so nothing here may be mutated after construction. Per-call
customization goes through ``FieldDescriptor.clone()``.

A ``BoundField`` pairs a descriptor with one live record instance. Bound
fields are created fresh for every operation and never cached.

Manifesto:
    - **Immutable metadata:** frozen dataclasses, read-only annotation maps
    - **Fresh bindings:** values live in BoundField, never in descriptors
    - **Zero-value semantics:** a field is blank when it equals its type's zero

Architecture:
    ::

        ModelDescriptor (one per record type, cached)
        ├── fields: tuple[FieldDescriptor, ...]
        │     ├── name / names / db_name / base_type
        │     ├── is_primary_key / is_normal / is_ignored / is_scanner
        │     ├── tag_settings (read-only)
        │     └── relationship: Relationship | None
        │              ├── kind (has_one | has_many | belongs_to | many_to_many)
        │              ├── foreign / association key names (in-language + storage)
        │              ├── polymorphic type / db name / value
        │              └── join_table: JoinTableHandler | None
        ├── primary_fields
        └── default_table_name

        BoundField (one per field per operation)
        └── descriptor + record + value + is_blank

Tags:
    metadata, descriptor, reflection, dataclasses, spine-orm

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import decimal
import enum
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Protocol, runtime_checkable

from spine_orm.core.errors import UnsettableFieldError
from spine_orm.model.naming import to_db_name


# =============================================================================
# Custom column types
# =============================================================================


@runtime_checkable
class Valuer(Protocol):
    """A value that knows its own storage representation."""

    def db_value(self) -> Any:
        ...


def is_scanner_type(tp: Any) -> bool:
    """True for types that build themselves from a stored value (``from_db_value``)."""
    return isinstance(tp, type) and callable(getattr(tp, "from_db_value", None))


# =============================================================================
# Relationships
# =============================================================================


class RelationKind(str, Enum):
    """Relationship kinds."""

    HAS_ONE = "has_one"
    HAS_MANY = "has_many"
    BELONGS_TO = "belongs_to"
    MANY_TO_MANY = "many_to_many"


@dataclass(frozen=True)
class JoinTableForeignKey:
    """One join-table column and the record column it mirrors."""

    db_name: str
    association_db_name: str


@dataclass(frozen=True)
class JoinTableSource:
    """One side of a join table."""

    model_type: type
    foreign_keys: tuple[JoinTableForeignKey, ...]


@dataclass(frozen=True)
class JoinTableHandler:
    """Join table for a many-to-many relationship."""

    table_name: str
    source: JoinTableSource
    destination: JoinTableSource


@dataclass(frozen=True)
class Relationship:
    """
    How a relationship field links two tables.

    For ``has_one``/``has_many`` the foreign keys live on the associated
    record and point at the owner's association keys. For ``belongs_to`` the
    foreign keys live on the owner. For ``many_to_many`` the foreign keys are
    join-table columns: ``foreign_*`` pair owner columns with join columns,
    ``association_foreign_*`` pair associated columns with join columns.
    """

    kind: RelationKind
    foreign_field_names: tuple[str, ...] = ()
    foreign_db_names: tuple[str, ...] = ()
    association_foreign_field_names: tuple[str, ...] = ()
    association_foreign_db_names: tuple[str, ...] = ()
    polymorphic_type: str = ""
    polymorphic_db_name: str = ""
    polymorphic_value: str = ""
    join_table: JoinTableHandler | None = None


# =============================================================================
# Field descriptor
# =============================================================================


def _frozen(settings: Mapping[str, str]) -> Mapping[str, str]:
    return MappingProxyType(dict(settings))


@dataclass(frozen=True)
class FieldDescriptor:
    """Static metadata about one declared field of a record type."""

    name: str
    names: tuple[str, ...]
    db_name: str
    base_type: Any = Any
    is_list: bool = False
    optional: bool = False
    is_primary_key: bool = False
    is_normal: bool = False
    is_ignored: bool = False
    is_scanner: bool = False
    is_foreign_key: bool = False
    has_default_value: bool = False
    tag_settings: Mapping[str, str] = field(default_factory=lambda: _frozen({}))
    relationship: Relationship | None = None

    def clone(self, **changes: Any) -> FieldDescriptor:
        """Copy with ``changes`` applied; the annotation map is copied too."""
        settings = changes.pop("tag_settings", self.tag_settings)
        return dataclasses.replace(self, tag_settings=_frozen(settings), **changes)

    def zero(self) -> Any:
        """Zero value for this field's type."""
        if self.is_list:
            return []
        if self.optional:
            return None
        return zero_of(self.base_type)


def zero_of(tp: Any) -> Any:
    if tp is bool:
        return False
    if isinstance(tp, type):
        if issubclass(tp, bool):
            return False
        if issubclass(tp, (int, float, str, bytes, decimal.Decimal)) and not issubclass(tp, Enum):
            return tp()
        if dataclasses.is_dataclass(tp):
            try:
                return tp()
            except TypeError:
                return None
    return None


def is_blank(value: Any) -> bool:
    """True when ``value`` equals the zero value of its type."""
    if value is None:
        return True
    if isinstance(value, Enum):
        return False
    if isinstance(value, (bool, int, float, decimal.Decimal, str, bytes, bytearray, list, tuple, dict, set)):
        return not value
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return all(is_blank(getattr(value, f.name)) for f in dataclasses.fields(value))
    return False


def get_foreign_field(column: str, fields: tuple[FieldDescriptor, ...] | list[FieldDescriptor]) -> FieldDescriptor | None:
    """Find a field by in-language name, storage name, or the storage form of ``column``."""
    db_column = to_db_name(column)
    for f in fields:
        if f.name == column or f.db_name == column or f.db_name == db_column:
            return f
    return None


# =============================================================================
# Value conversion
# =============================================================================


def _to_datetime(value: Any) -> dt.datetime:
    if isinstance(value, dt.datetime):
        return value
    if isinstance(value, dt.date):
        return dt.datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)):
        return dt.datetime.fromtimestamp(value, tz=dt.timezone.utc)
    if isinstance(value, bytes):
        value = value.decode()
    return dt.datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _to_date(value: Any) -> dt.date:
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if isinstance(value, bytes):
        value = value.decode()
    return dt.date.fromisoformat(str(value)[:10])


def _to_bool(value: Any) -> bool:
    if isinstance(value, (bytes, str)):
        text = value.decode() if isinstance(value, bytes) else value
        return text.strip().lower() in ("1", "t", "true", "y", "yes")
    return bool(value)


def convert_value(value: Any, descriptor: FieldDescriptor) -> Any:
    """Convert a stored (or caller-supplied) value into the field's type.

    Raises:
        TypeError / ValueError: when the value cannot be converted.
    """
    if value is None:
        return descriptor.zero()
    tp = descriptor.base_type
    if descriptor.relationship is not None or descriptor.is_list or not isinstance(tp, type):
        return value
    if descriptor.is_scanner:
        return value if isinstance(value, tp) else tp.from_db_value(value)
    if tp is bool:
        return value if isinstance(value, bool) else _to_bool(value)
    if isinstance(value, tp) and not (tp is dt.date and isinstance(value, dt.datetime)):
        return value
    if issubclass(tp, Enum):
        return tp(value)
    if tp is int:
        return int(value)
    if tp is float:
        return float(value)
    if tp is decimal.Decimal:
        return decimal.Decimal(str(value))
    if tp is str:
        return value.decode("utf-8") if isinstance(value, (bytes, bytearray, memoryview)) else str(value)
    if tp is bytes:
        if isinstance(value, str):
            return value.encode("utf-8")
        return bytes(value)
    if tp is dt.datetime:
        return _to_datetime(value)
    if tp is dt.date:
        return _to_date(value)
    if tp is dt.time:
        return value if isinstance(value, dt.time) else dt.time.fromisoformat(str(value))
    if tp is uuid.UUID:
        return uuid.UUID(bytes=bytes(value)) if isinstance(value, (bytes, bytearray)) else uuid.UUID(str(value))
    return tp(value)


# =============================================================================
# Bound field
# =============================================================================


def _get_path(record: Any, names: tuple[str, ...]) -> Any:
    value = record
    for name in names:
        if value is None:
            return None
        value = getattr(value, name)
    return value


class BoundField:
    """A FieldDescriptor combined with a live value from one record instance.

    Descriptor attributes (``name``, ``db_name``, ``relationship``...) are
    readable directly on the bound field.
    """

    __slots__ = ("descriptor", "record", "value", "is_blank")

    def __init__(self, descriptor: FieldDescriptor, record: Any) -> None:
        self.descriptor = descriptor
        self.record = record
        self.value = _get_path(record, descriptor.names)
        self.is_blank = is_blank(self.value)

    def __getattr__(self, name: str) -> Any:
        if name in BoundField.__slots__:
            raise AttributeError(name)
        return getattr(self.descriptor, name)

    def set(self, value: Any) -> None:
        """Convert ``value`` to the field type and assign it on the record."""
        try:
            converted = convert_value(value, self.descriptor)
        except (TypeError, ValueError) as e:
            raise UnsettableFieldError(
                self.descriptor.name,
                f"Cannot assign {value!r} to field {self.descriptor.name!r}: {e}",
            ) from e
        owner = _get_path(self.record, self.descriptor.names[:-1])
        if owner is None:
            raise UnsettableFieldError(
                self.descriptor.name,
                f"Field {'.'.join(self.descriptor.names)!r} has no containing record",
            )
        try:
            setattr(owner, self.descriptor.names[-1], converted)
        except AttributeError as e:
            raise UnsettableFieldError(
                self.descriptor.name,
                f"Field {self.descriptor.name!r} is not settable: {e}",
            ) from e
        self.value = converted
        self.is_blank = is_blank(converted)

    def __repr__(self) -> str:
        return f"BoundField({self.descriptor.name!r}, value={self.value!r})"


# =============================================================================
# Model descriptor
# =============================================================================


@dataclass(frozen=True)
class ModelDescriptor:
    """The full set of field descriptors plus table-level metadata for a type."""

    model_type: type
    fields: tuple[FieldDescriptor, ...]
    primary_fields: tuple[FieldDescriptor, ...]
    default_table_name: str

    @property
    def name(self) -> str:
        return self.model_type.__name__

    @property
    def primary_field(self) -> FieldDescriptor | None:
        """The primary key field; ``id`` wins when the key is composite."""
        if len(self.primary_fields) > 1:
            for f in self.primary_fields:
                if f.db_name == "id":
                    return f
        return self.primary_fields[0] if self.primary_fields else None

    def field_by_name(self, name: str) -> FieldDescriptor | None:
        return get_foreign_field(name, self.fields)

    def has_column(self, column: str) -> bool:
        return any(
            f.is_normal and (f.name == column or f.db_name == column) for f in self.fields
        )

    def bind(self, record: Any) -> list[BoundField]:
        """Bound fields for ``record`` (fresh every call)."""
        return [BoundField(f, record) for f in self.fields]


def new_record(model_type: type) -> Any:
    """Allocate a record, falling back to field defaults when ``__init__`` needs arguments."""
    try:
        return model_type()
    except TypeError:
        record = object.__new__(model_type)
        for f in dataclasses.fields(model_type):
            if f.default is not dataclasses.MISSING:
                value = f.default
            elif f.default_factory is not dataclasses.MISSING:
                value = f.default_factory()
            else:
                value = None
            object.__setattr__(record, f.name, value)
        return record


__all__ = [
    "Valuer",
    "is_scanner_type",
    "RelationKind",
    "JoinTableForeignKey",
    "JoinTableSource",
    "JoinTableHandler",
    "Relationship",
    "FieldDescriptor",
    "ModelDescriptor",
    "BoundField",
    "zero_of",
    "is_blank",
    "get_foreign_field",
    "convert_value",
    "new_record",
]
