"""Core infrastructure: errors, logging, settings, dialects and executors.

Nothing in ``spine_orm.core`` knows about records or statements; it is the
layer the mapping code sits on.
"""

from spine_orm.core.dialect import (
    Dialect,
    MySQLDialect,
    PostgreSQLDialect,
    SQLiteDialect,
    get_dialect,
    register_dialect,
)
from spine_orm.core.errors import (
    ConfigError,
    DatabaseConnectionError,
    DatabaseError,
    ErrorCategory,
    ErrorContext,
    IntegrityError,
    InvalidAssociationError,
    MissingModelError,
    MissingWhereError,
    OrmError,
    PreconditionError,
    QueryError,
    RecordNotFoundError,
    RelationshipConfigError,
    ScanError,
    TransientError,
    UnsettableFieldError,
    UnsupportedFilterError,
    categorize_error,
    is_retryable,
)
from spine_orm.core.executor import (
    DBAPIExecutor,
    DBAPITransaction,
    SQLAlchemyExecutor,
    SQLAlchemyTransaction,
    connect_sqlite,
    create_engine,
    session_factory,
)
from spine_orm.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_from_settings,
    configure_logging,
    get_logger,
    unbind_context,
)
from spine_orm.core.protocols import ExecResult, Executor, Rows, Transaction
from spine_orm.core.settings import OrmSettings, clear_settings_cache, get_settings

__all__ = [
    # dialects
    "Dialect",
    "SQLiteDialect",
    "PostgreSQLDialect",
    "MySQLDialect",
    "get_dialect",
    "register_dialect",
    # errors
    "OrmError",
    "ErrorCategory",
    "ErrorContext",
    "ConfigError",
    "RelationshipConfigError",
    "UnsupportedFilterError",
    "PreconditionError",
    "MissingWhereError",
    "UnsettableFieldError",
    "MissingModelError",
    "InvalidAssociationError",
    "DatabaseError",
    "QueryError",
    "IntegrityError",
    "ScanError",
    "TransientError",
    "DatabaseConnectionError",
    "RecordNotFoundError",
    "is_retryable",
    "categorize_error",
    # executors
    "Executor",
    "Transaction",
    "ExecResult",
    "Rows",
    "DBAPIExecutor",
    "DBAPITransaction",
    "SQLAlchemyExecutor",
    "SQLAlchemyTransaction",
    "connect_sqlite",
    "create_engine",
    "session_factory",
    # logging
    "configure_from_settings",
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
    # settings
    "OrmSettings",
    "get_settings",
    "clear_settings_cache",
]
