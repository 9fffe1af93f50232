"""
Metadata extractor and descriptor cache.

``DescriptorCache.describe(type)`` derives a :class:`ModelDescriptor` from a
dataclass record type the first time it is asked, and returns the same
object on every later call. The cache is an explicit dependency: each
:class:`~spine_orm.db.DB` handle owns one, tests create their own.

Manifesto:
    - **Derive once:** introspection is expensive; it runs once per type
    - **Many readers, rare writers:** reads take a shared lock, a build takes
      the exclusive lock and re-checks before building
    - **Fail loudly:** a relationship annotation that cannot be satisfied is a
      ConfigError at describe time, not a silent non-relationship

Architecture:
    ::

        describe(User)
            │
            ├── read lock ── hit ──────────────────────────► ModelDescriptor
            │
            └── miss ── write lock ── re-check ── _Builder.build(User)
                                                     │
                        phase 1: shape (columns, keys, embedded flattening)
                        phase 2: relationships (uses shapes of related types)

Conventions:
    - has_one / has_many: the associated type carries ``<owner>_<pk>``
      (``user_id``), or ``<polymorphic>_id`` plus ``<polymorphic>_type``
    - belongs_to: the owner carries ``<field>_<pk>`` (``company_id``)
    - many_to_many: ``many2many:<join table>`` with ``<owner>_<pk>`` and
      ``<associated>_<pk>`` join columns

Examples:
    >>> cache = DescriptorCache()
    >>> d = cache.describe(User)
    >>> d.default_table_name
    'users'
    >>> cache.describe(User) is d
    True

Guardrails:
    ❌ DON'T: Mutate a descriptor returned by describe()
    ✅ DO: Use FieldDescriptor.clone() for per-call tweaks

Tags:
    metadata, cache, reflection, rwlock, spine-orm

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import decimal
import threading
import typing
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from types import UnionType
from typing import Any

from spine_orm.core.errors import ConfigError, RelationshipConfigError
from spine_orm.core.logging import get_logger
from spine_orm.model.descriptor import (
    FieldDescriptor,
    JoinTableForeignKey,
    JoinTableHandler,
    JoinTableSource,
    ModelDescriptor,
    RelationKind,
    Relationship,
    get_foreign_field,
    is_scanner_type,
)
from spine_orm.model.naming import pluralize, to_db_name
from spine_orm.model.tags import tag_settings_of

logger = get_logger(__name__)

_SCALAR_TYPES = (
    bool, int, float, str, bytes, decimal.Decimal,
    dt.datetime, dt.date, dt.time, uuid.UUID,
)


class ReadWriteLock:
    """Single-writer / multi-reader lock."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


# =============================================================================
# Builder
# =============================================================================


def _unwrap_optional(tp: Any) -> tuple[Any, bool]:
    origin = typing.get_origin(tp)
    if origin is typing.Union or origin is UnionType:
        args = [a for a in typing.get_args(tp) if a is not type(None)]
        if len(args) == 1:
            return args[0], True
        return Any, True
    return tp, False


def _split(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class _Shape:
    """Columns and keys of a type, without relationships."""

    model_type: type
    table_name: str
    fields: list[FieldDescriptor] = field(default_factory=list)
    # field name -> (associated type, is_list)
    candidates: dict[str, tuple[type, bool]] = field(default_factory=dict)

    @property
    def primary_fields(self) -> list[FieldDescriptor]:
        return [f for f in self.fields if f.is_primary_key]


class _Builder:
    """Builds one ModelDescriptor; not thread-safe, used under the write lock."""

    def __init__(self, singular_table: bool) -> None:
        self._singular_table = singular_table
        self._shapes: dict[type, _Shape] = {}

    def table_name_of(self, model_type: type) -> str:
        explicit = getattr(model_type, "__tablename__", None)
        if isinstance(explicit, str) and explicit:
            return explicit
        name = to_db_name(model_type.__name__)
        return name if self._singular_table else pluralize(name)

    # -- phase 1 -----------------------------------------------------------

    def shape(self, model_type: type) -> _Shape:
        cached = self._shapes.get(model_type)
        if cached is not None:
            return cached
        if not (isinstance(model_type, type) and dataclasses.is_dataclass(model_type)):
            raise ConfigError(
                f"{getattr(model_type, '__name__', model_type)!s} is not a dataclass record type"
            )
        try:
            hints = typing.get_type_hints(model_type)
        except (NameError, TypeError) as e:
            raise ConfigError(
                f"Cannot resolve field types of {model_type.__name__}: {e}", cause=e
            ) from e

        shape = _Shape(model_type, self.table_name_of(model_type))
        self._shapes[model_type] = shape
        for f in dataclasses.fields(model_type):
            if f.name.startswith("_"):
                continue
            self._add_field(shape, f, hints.get(f.name, f.type))

        if not shape.primary_fields:
            id_field = get_foreign_field("id", shape.fields)
            if id_field is not None:
                index = shape.fields.index(id_field)
                shape.fields[index] = id_field.clone(is_primary_key=True)
        return shape

    def _add_field(self, shape: _Shape, f: dataclasses.Field, hint: Any) -> None:
        settings = tag_settings_of(f)
        base, optional = _unwrap_optional(hint)
        column = settings.get("COLUMN")
        descriptor = FieldDescriptor(
            name=f.name,
            names=(f.name,),
            db_name=column if column and column != "COLUMN" else to_db_name(f.name),
            base_type=base,
            optional=optional,
            tag_settings=settings,
        )

        if settings.get("-") == "-":
            shape.fields.append(descriptor.clone(is_ignored=True))
            return

        is_pk = "PRIMARY_KEY" in settings
        has_default = "DEFAULT" in settings or ("AUTO_INCREMENT" in settings and not is_pk)
        descriptor = descriptor.clone(is_primary_key=is_pk, has_default_value=has_default)

        origin = typing.get_origin(base)
        if is_scanner_type(base):
            shape.fields.append(descriptor.clone(is_normal=True, is_scanner=True))
        elif isinstance(base, type) and issubclass(base, _SCALAR_TYPES):
            shape.fields.append(descriptor.clone(is_normal=True))
        elif "EMBEDDED" in settings and dataclasses.is_dataclass(base):
            self._embed(shape, descriptor, base, settings.get("EMBEDDED_PREFIX", ""))
        elif origin in (list, tuple) or base in (list, tuple):
            args = typing.get_args(base)
            elem = args[0] if args else Any
            if isinstance(elem, type) and dataclasses.is_dataclass(elem):
                shape.fields.append(descriptor.clone(base_type=elem, is_list=True))
                shape.candidates[f.name] = (elem, True)
            else:
                shape.fields.append(descriptor.clone(is_normal=True))
        elif isinstance(base, type) and dataclasses.is_dataclass(base):
            shape.fields.append(descriptor)
            shape.candidates[f.name] = (base, False)
        else:
            shape.fields.append(descriptor.clone(is_normal=True))

    def _embed(self, shape: _Shape, parent: FieldDescriptor, embedded: type, prefix: str) -> None:
        sub = self.shape(embedded)
        for sub_field in sub.fields:
            shape.fields.append(
                sub_field.clone(
                    names=parent.names + sub_field.names,
                    db_name=prefix + sub_field.db_name,
                )
            )
        for name, candidate in sub.candidates.items():
            shape.candidates[name] = candidate

    # -- phase 2 -----------------------------------------------------------

    def build(self, model_type: type) -> ModelDescriptor:
        shape = self.shape(model_type)
        fields = list(shape.fields)
        owner_fk_names: set[str] = set()

        for index, fd in enumerate(fields):
            candidate = shape.candidates.get(fd.name)
            if candidate is None or fd.is_normal or fd.is_ignored:
                continue
            target, is_list = candidate
            target_shape = self.shape(target)
            if is_list:
                relationship = self._slice_relationship(shape, fd, target_shape)
            else:
                relationship = self._struct_relationship(shape, fd, target_shape)
                if relationship is not None and relationship.kind is RelationKind.BELONGS_TO:
                    owner_fk_names.update(relationship.foreign_field_names)

            if relationship is None:
                if "FOREIGNKEY" in fd.tag_settings:
                    raise RelationshipConfigError(
                        shape.model_type.__name__,
                        fd.name,
                        f"foreign key {fd.tag_settings['FOREIGNKEY']!r} not found",
                    )
                fields[index] = fd.clone(is_ignored=True)
            else:
                fields[index] = fd.clone(relationship=relationship)

        if owner_fk_names:
            fields = [
                f.clone(is_foreign_key=True) if f.name in owner_fk_names else f for f in fields
            ]

        return ModelDescriptor(
            model_type=model_type,
            fields=tuple(fields),
            primary_fields=tuple(f for f in fields if f.is_primary_key),
            default_table_name=shape.table_name,
        )

    def _slice_relationship(self, owner: _Shape, fd: FieldDescriptor, target: _Shape) -> Relationship | None:
        settings = fd.tag_settings
        join_table = settings.get("MANY2MANY")
        if join_table and join_table != "MANY2MANY":
            return self._many_to_many(owner, fd, target, join_table)
        return self._has(owner, fd, target, RelationKind.HAS_MANY)

    def _struct_relationship(self, owner: _Shape, fd: FieldDescriptor, target: _Shape) -> Relationship | None:
        relationship = self._has(owner, fd, target, RelationKind.HAS_ONE)
        if relationship is not None:
            return relationship
        return self._belongs_to(owner, fd, target)

    def _has(self, owner: _Shape, fd: FieldDescriptor, target: _Shape, kind: RelationKind) -> Relationship | None:
        settings = fd.tag_settings
        foreign_keys = _split(settings.get("FOREIGNKEY"))
        association_keys = _split(settings.get("ASSOCIATION_FOREIGNKEY"))
        association_type = owner.model_type.__name__
        polymorphic_type = polymorphic_db_name = polymorphic_value = ""

        polymorphic = settings.get("POLYMORPHIC")
        if polymorphic and polymorphic != "POLYMORPHIC":
            discriminator = get_foreign_field(f"{polymorphic}Type", target.fields)
            if discriminator is None:
                raise RelationshipConfigError(
                    owner.model_type.__name__,
                    fd.name,
                    f"polymorphic discriminator '{to_db_name(polymorphic)}_type' "
                    f"not found on {target.model_type.__name__}",
                )
            association_type = polymorphic
            polymorphic_type = discriminator.name
            polymorphic_db_name = discriminator.db_name
            value = settings.get("POLYMORPHIC_VALUE")
            polymorphic_value = value if value and value != "POLYMORPHIC_VALUE" else owner.table_name

        prefix = to_db_name(association_type) + "_"
        if not foreign_keys:
            if association_keys:
                foreign_keys = [prefix + to_db_name(key) for key in association_keys]
            else:
                for pk in owner.primary_fields:
                    foreign_keys.append(prefix + to_db_name(pk.name))
                    association_keys.append(pk.name)
        elif not association_keys:
            for key in foreign_keys:
                db_key = to_db_name(key)
                if db_key.startswith(prefix):
                    rest = db_key[len(prefix):]
                    if get_foreign_field(rest, owner.fields) is not None:
                        association_keys.append(rest)
            if not association_keys and len(foreign_keys) == 1:
                association_keys = [pk.name for pk in owner.primary_fields]

        if len(foreign_keys) != len(association_keys):
            raise RelationshipConfigError(
                owner.model_type.__name__, fd.name, "invalid foreign keys, should have same length"
            )

        pairs = []
        for key, association_key in zip(foreign_keys, association_keys):
            foreign = get_foreign_field(key, target.fields)
            association = get_foreign_field(association_key, owner.fields)
            if foreign is not None and association is not None:
                pairs.append((foreign, association))
        if not pairs:
            return None
        return Relationship(
            kind=kind,
            foreign_field_names=tuple(f.name for f, _ in pairs),
            foreign_db_names=tuple(f.db_name for f, _ in pairs),
            association_foreign_field_names=tuple(a.name for _, a in pairs),
            association_foreign_db_names=tuple(a.db_name for _, a in pairs),
            polymorphic_type=polymorphic_type,
            polymorphic_db_name=polymorphic_db_name,
            polymorphic_value=polymorphic_value,
        )

    def _belongs_to(self, owner: _Shape, fd: FieldDescriptor, target: _Shape) -> Relationship | None:
        settings = fd.tag_settings
        foreign_keys = _split(settings.get("FOREIGNKEY"))
        association_keys = _split(settings.get("ASSOCIATION_FOREIGNKEY"))
        prefix = to_db_name(fd.name) + "_"

        if not foreign_keys:
            if association_keys:
                foreign_keys = [prefix + to_db_name(key) for key in association_keys]
            else:
                for pk in target.primary_fields:
                    foreign_keys.append(prefix + to_db_name(pk.name))
                    association_keys.append(pk.name)
        elif not association_keys:
            for key in foreign_keys:
                db_key = to_db_name(key)
                if db_key.startswith(prefix):
                    rest = db_key[len(prefix):]
                    if get_foreign_field(rest, target.fields) is not None:
                        association_keys.append(rest)
            if not association_keys and len(foreign_keys) == 1:
                association_keys = [pk.name for pk in target.primary_fields]

        if len(foreign_keys) != len(association_keys):
            raise RelationshipConfigError(
                owner.model_type.__name__, fd.name, "invalid foreign keys, should have same length"
            )

        pairs = []
        for key, association_key in zip(foreign_keys, association_keys):
            foreign = get_foreign_field(key, owner.fields)
            association = get_foreign_field(association_key, target.fields)
            if foreign is not None and association is not None:
                pairs.append((foreign, association))
        if not pairs:
            return None
        return Relationship(
            kind=RelationKind.BELONGS_TO,
            foreign_field_names=tuple(f.name for f, _ in pairs),
            foreign_db_names=tuple(f.db_name for f, _ in pairs),
            association_foreign_field_names=tuple(a.name for _, a in pairs),
            association_foreign_db_names=tuple(a.db_name for _, a in pairs),
        )

    def _many_to_many(self, owner: _Shape, fd: FieldDescriptor, target: _Shape, table_name: str) -> Relationship:
        settings = fd.tag_settings
        foreign_keys = _split(settings.get("FOREIGNKEY")) or [f.db_name for f in owner.primary_fields]
        association_keys = (
            _split(settings.get("ASSOCIATION_FOREIGNKEY")) or [f.db_name for f in target.primary_fields]
        )
        join_keys = _split(settings.get("JOINTABLE_FOREIGNKEY"))
        association_join_keys = _split(settings.get("ASSOCIATION_JOINTABLE_FOREIGNKEY"))

        def _side(shape: _Shape, keys: list[str], overrides: list[str]) -> list[tuple[FieldDescriptor, str]]:
            side = []
            for i, key in enumerate(keys):
                found = get_foreign_field(key, shape.fields)
                if found is None:
                    raise RelationshipConfigError(
                        owner.model_type.__name__,
                        fd.name,
                        f"key {key!r} not found on {shape.model_type.__name__}",
                    )
                column = overrides[i] if i < len(overrides) else (
                    f"{to_db_name(shape.model_type.__name__)}_{found.db_name}"
                )
                side.append((found, column))
            return side

        source = _side(owner, foreign_keys, join_keys)
        destination = _side(target, association_keys, association_join_keys)
        if {c for _, c in source} & {c for _, c in destination}:
            raise RelationshipConfigError(
                owner.model_type.__name__,
                fd.name,
                "join table columns collide; set jointable_foreignkey / association_jointable_foreignkey",
            )

        handler = JoinTableHandler(
            table_name=table_name,
            source=JoinTableSource(
                owner.model_type,
                tuple(JoinTableForeignKey(column, f.db_name) for f, column in source),
            ),
            destination=JoinTableSource(
                target.model_type,
                tuple(JoinTableForeignKey(column, f.db_name) for f, column in destination),
            ),
        )
        return Relationship(
            kind=RelationKind.MANY_TO_MANY,
            foreign_field_names=tuple(f.name for f, _ in source),
            foreign_db_names=tuple(c for _, c in source),
            association_foreign_field_names=tuple(f.name for f, _ in destination),
            association_foreign_db_names=tuple(c for _, c in destination),
            join_table=handler,
        )


# =============================================================================
# Cache
# =============================================================================


class DescriptorCache:
    """Process-scoped cache of model descriptors keyed by type identity.

    Populated on first use, never evicted. Pass it explicitly to the
    components that need metadata.
    """

    def __init__(self, *, singular_table: bool = False) -> None:
        self._singular_table = singular_table
        self._descriptors: dict[type, ModelDescriptor] = {}
        self._lock = ReadWriteLock()

    @property
    def singular_table(self) -> bool:
        return self._singular_table

    def describe(self, model: Any) -> ModelDescriptor:
        """Return the descriptor for a record type (or the type of a record)."""
        model_type = model if isinstance(model, type) else type(model)
        with self._lock.read():
            found = self._descriptors.get(model_type)
        if found is not None:
            return found

        with self._lock.write():
            found = self._descriptors.get(model_type)
            if found is None:
                found = _Builder(self._singular_table).build(model_type)
                self._descriptors[model_type] = found
                logger.debug(
                    "model_described",
                    model=model_type.__name__,
                    table=found.default_table_name,
                    fields=len(found.fields),
                )
        return found

    def __contains__(self, model_type: object) -> bool:
        with self._lock.read():
            return model_type in self._descriptors

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._descriptors)


_default_cache = DescriptorCache()


def describe(model: Any) -> ModelDescriptor:
    """Describe ``model`` using the process-wide default cache."""
    return _default_cache.describe(model)


def default_cache() -> DescriptorCache:
    return _default_cache


__all__ = [
    "ReadWriteLock",
    "DescriptorCache",
    "describe",
    "default_cache",
]
