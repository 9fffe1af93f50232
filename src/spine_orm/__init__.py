"""Spine ORM -- Record mapping over any DB-API or SQLAlchemy connection.

Manifesto:
    Application code works with plain dataclass records; the ORM turns a
    chain of filters, orders and limits into parameterized SQL, runs it
    through an ordered pipeline of hook steps, and scans rows back into
    records. Relationships (has_one, has_many, belongs_to, many_to_many)
    are inferred from field names and ``column(...)`` annotations.

    - **Records stay plain:** no metaclass, no base class required
    - **Immutable chains:** every chain method returns a new handle
    - **Hooks are data:** create/query/update/delete are named step lists
    - **SQL is inspectable:** every write has a ``*_sql`` twin

Architecture::

    Layer 1 -- Core
        core/errors.py       OrmError hierarchy (config, precondition, database)
        core/logging.py      structlog setup + context binding
        core/settings.py     OrmSettings (SPINE_ORM_* environment)
        core/protocols.py    Executor / Transaction protocols
        core/dialect.py      Quoting, placeholders, types (sqlite/postgres/mysql)
        core/executor.py     DB-API and SQLAlchemy executors

    Layer 2 -- Metadata
        model/naming.py      Snake-case storage names + table pluralization
        model/tags.py        column("...") annotations
        model/descriptor.py  Field / relationship / record descriptors
        model/cache.py       Thread-safe descriptor cache
        model/base.py        Model base (id, timestamps, soft delete)

    Layer 3 -- Query
        query/statement.py   Neutral bind marker, Statement, Expr
        query/conditions.py  Filter sum type -> SQL fragments
        query/search.py      Accumulated query state
        query/scope.py       Per-operation context
        query/assembler.py   SELECT / INSERT / UPDATE / DELETE assembly

    Layer 4 -- Behaviour
        hooks/book.py        Ordered, named step pipelines
        hooks/defaults.py    Default create/query/update/delete steps
        association.py       count / find / append over relationships
        migration.py         DDL from descriptors, automigrate

    Layer 5 -- Front end
        db.py                DB handle and open_db()

Examples:
    >>> from spine_orm import open_db
    >>> db = open_db(database_url="sqlite:///:memory:")
    >>> db.create_table(User)
    >>> db.create(User(name="gernest"))
    >>> db.where("name = ?", "gernest").first(User).name
    'gernest'
"""

__version__ = "0.1.0"

# -- Front end ----------------------------------------------------------------
from spine_orm.db import DB, attrs_to_dict, open_db

# -- Behaviour ----------------------------------------------------------------
from spine_orm.association import Association
from spine_orm.hooks import Flow, HookBook, Pipeline, default_book
from spine_orm.migration import MigrationResult

# -- Metadata -----------------------------------------------------------------
from spine_orm.model import (
    DescriptorCache,
    FieldDescriptor,
    Model,
    ModelDescriptor,
    RelationKind,
    Relationship,
    Valuer,
    column,
    describe,
)

# -- Query --------------------------------------------------------------------
from spine_orm.query import Clause, Expr, Scope, Search, Statement

# -- Core ---------------------------------------------------------------------
from spine_orm.core import (
    ConfigError,
    DatabaseError,
    InvalidAssociationError,
    MissingWhereError,
    OrmError,
    OrmSettings,
    PreconditionError,
    RecordNotFoundError,
    configure_from_settings,
    configure_logging,
    get_dialect,
    get_logger,
    get_settings,
)

__all__ = [
    "__version__",
    # front end
    "DB",
    "open_db",
    "attrs_to_dict",
    # behaviour
    "Association",
    "Flow",
    "HookBook",
    "Pipeline",
    "default_book",
    "MigrationResult",
    # metadata
    "DescriptorCache",
    "FieldDescriptor",
    "Model",
    "ModelDescriptor",
    "RelationKind",
    "Relationship",
    "Valuer",
    "column",
    "describe",
    # query
    "Clause",
    "Expr",
    "Scope",
    "Search",
    "Statement",
    # core
    "OrmError",
    "ConfigError",
    "PreconditionError",
    "MissingWhereError",
    "InvalidAssociationError",
    "DatabaseError",
    "RecordNotFoundError",
    "OrmSettings",
    "get_settings",
    "configure_from_settings",
    "configure_logging",
    "get_logger",
    "get_dialect",
]
