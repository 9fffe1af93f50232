"""Query building: statements, conditions, search state, scopes and the assembler."""

from spine_orm.query.assembler import (
    build_statement,
    combined_condition,
    create_sql,
    delete_sql,
    query_sql,
    update_sql,
    where_sql,
)
from spine_orm.query.conditions import (
    Clause,
    Filter,
    InFilter,
    MappingFilter,
    PrimaryKeyFilter,
    RawFilter,
    RecordFilter,
    RenderContext,
    negate,
    render,
    to_filter,
)
from spine_orm.query.scope import Scope
from spine_orm.query.search import Preload, Search
from spine_orm.query.statement import BIND_MARKER, ArgCollector, Expr, Statement

__all__ = [
    "build_statement",
    "combined_condition",
    "create_sql",
    "delete_sql",
    "query_sql",
    "update_sql",
    "where_sql",
    "Clause",
    "Filter",
    "InFilter",
    "MappingFilter",
    "PrimaryKeyFilter",
    "RawFilter",
    "RecordFilter",
    "RenderContext",
    "negate",
    "render",
    "to_filter",
    "Scope",
    "Preload",
    "Search",
    "BIND_MARKER",
    "ArgCollector",
    "Expr",
    "Statement",
]
