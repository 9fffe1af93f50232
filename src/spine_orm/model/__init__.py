"""Record metadata: naming, annotations, descriptors and the descriptor cache."""

from spine_orm.model.base import Model
from spine_orm.model.cache import DescriptorCache, ReadWriteLock, default_cache, describe
from spine_orm.model.descriptor import (
    BoundField,
    FieldDescriptor,
    JoinTableForeignKey,
    JoinTableHandler,
    JoinTableSource,
    ModelDescriptor,
    RelationKind,
    Relationship,
    Valuer,
    is_blank,
    new_record,
)
from spine_orm.model.naming import pluralize, to_db_name
from spine_orm.model.tags import TAG_KEY, column, parse_tag_settings

__all__ = [
    "Model",
    "DescriptorCache",
    "ReadWriteLock",
    "default_cache",
    "describe",
    "BoundField",
    "FieldDescriptor",
    "JoinTableForeignKey",
    "JoinTableHandler",
    "JoinTableSource",
    "ModelDescriptor",
    "RelationKind",
    "Relationship",
    "Valuer",
    "is_blank",
    "new_record",
    "pluralize",
    "to_db_name",
    "TAG_KEY",
    "column",
    "parse_tag_settings",
]
