"""
Structured error types for spine-orm.

Every failure the mapping core can produce is an ``OrmError``. Errors carry a
category, a retry flag, an ``ErrorContext`` (operation, table, model, SQL) and
the chained driver exception, so a failed statement can be diagnosed from a
single log line.

Manifesto:
    - **Typed taxonomy:** configuration, precondition, store and not-found
      failures are distinct classes, never bare ``Exception``
    - **Fail fast:** configuration and precondition errors are never retryable
    - **Context travels with the error:** table and SQL are attached where the
      failure is detected
    - **Error chaining:** driver exceptions are preserved as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                          OrmError                                │
        │  (category, retryable, context, cause)                          │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  ConfigError            PreconditionError     DatabaseError      │
        │  (CONFIG)               (PRECONDITION)        (DATABASE)         │
        │       │                       │                     │            │
        │  RelationshipConfig..   MissingWhereError     QueryError         │
        │  UnsupportedFilter..    UnsettableFieldError  IntegrityError     │
        │                         MissingModelError     ScanError          │
        │                         InvalidAssociation..                     │
        │                                                                  │
        │  TransientError         RecordNotFoundError                      │
        │  (retryable=True)       (NOT_FOUND)                              │
        │       │                                                          │
        │  DatabaseConnectionError                                         │
        └─────────────────────────────────────────────────────────────────┘

Examples:
    >>> err = MissingWhereError("update")
    >>> err.category
    <ErrorCategory.PRECONDITION: 'PRECONDITION'>
    >>> err.retryable
    False

    >>> QueryError("no such table: users").with_context(table="users").context.table
    'users'

Guardrails:
    ❌ DON'T: Swallow the driver exception when wrapping it
    ✅ DO: Pass it as cause= for error chaining

    ❌ DON'T: Raise RecordNotFoundError from the statement assembler
    ✅ DO: Leave not-found policy to the front end (empty result is not an error)

Tags:
    error-handling, exception-hierarchy, orm, spine-orm

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Standard error categories for classification.

    Categories follow the failure taxonomy of the mapping core:
    configuration problems are fixed in code, preconditions are fixed by the
    caller, database errors come from the store.
    """

    # Caller / code errors (never retryable)
    CONFIG = "CONFIG"                # Bad annotations, unsupported filters
    PRECONDITION = "PRECONDITION"    # Missing WHERE, unsettable fields
    VALIDATION = "VALIDATION"        # Bad values handed to the API

    # Store errors
    DATABASE = "DATABASE"            # Executor and scan failures
    NOT_FOUND = "NOT_FOUND"          # Single-record read returned no row

    # Internal errors
    INTERNAL = "INTERNAL"            # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"              # Uncategorized errors


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Only set what is relevant; ``to_dict()`` drops unset fields so the result
    can be passed straight to a structlog call.

    Attributes:
        operation: CRUD action or front-end call ("create", "update", ...)
        table: Table the statement targeted
        model: Record type name
        field: Field or column name involved
        sql: Statement text (after placeholder substitution)
        metadata: Additional key-value pairs
    """

    operation: str | None = None
    table: str | None = None
    model: str | None = None
    field: str | None = None
    sql: str | None = None

    # Additional metadata
    metadata: dict[str, Any] = dataclasses.field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["operation", "table", "model", "field", "sql"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class OrmError(Exception):
    """
    Base exception for all spine-orm errors.

    Subclasses set ``default_category`` and ``default_retryable``. The
    ``with_context`` method returns ``self`` so context can be attached in the
    ``raise`` expression.

    Examples:
        >>> error = OrmError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.to_dict()["retryable"]
        False
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> OrmError:
        """
        Add context to this error (fluent API).

        Usage:
            raise QueryError("insert failed").with_context(
                operation="create",
                table="users",
            )
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(OrmError):
    """
    Configuration error.

    Raised for mistakes in record declarations or settings. Never retryable;
    the declaration must be fixed.
    """

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class RelationshipConfigError(ConfigError):
    """A relationship annotation cannot be satisfied by the declared fields."""

    def __init__(self, model: str, field_name: str, message: str):
        self.model = model
        self.field_name = field_name
        super().__init__(f"{model}.{field_name}: {message}")
        self.with_context(model=model, field=field_name)


class UnsupportedFilterError(ConfigError):
    """Filter value has a shape the condition builder does not understand."""

    def __init__(self, value: Any):
        self.value = value
        super().__init__(f"Unsupported filter value of type {type(value).__name__}: {value!r}")


# =============================================================================
# PRECONDITION ERRORS
# =============================================================================


class PreconditionError(OrmError):
    """The operation cannot run in the current state; the pipeline stops."""

    default_category = ErrorCategory.PRECONDITION
    default_retryable = False


class MissingWhereError(PreconditionError):
    """Update or delete was requested without any WHERE-producing condition."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Missing WHERE condition for {operation}")
        self.with_context(operation=operation)


class UnsettableFieldError(PreconditionError):
    """A column could not be mapped to a settable field."""

    def __init__(self, column: str, message: str | None = None):
        self.column = column
        super().__init__(message or f"Could not convert column {column!r} to a field")
        self.with_context(field=column)


class MissingModelError(PreconditionError):
    """No record type could be determined for the operation."""

    pass


class InvalidAssociationError(PreconditionError):
    """Association requested on a field without a usable relationship."""

    pass


# =============================================================================
# STORE ERRORS
# =============================================================================


class DatabaseError(OrmError):
    """Database query or transaction error."""

    default_category = ErrorCategory.DATABASE
    default_retryable = False


class QueryError(DatabaseError):
    """The executor rejected a statement."""

    pass


class IntegrityError(DatabaseError):
    """Database integrity constraint violation."""

    pass


class ScanError(DatabaseError):
    """A returned value could not be converted into its field type."""

    pass


class TransientError(OrmError):
    """Temporary error that may succeed on retry."""

    default_category = ErrorCategory.DATABASE
    default_retryable = True


class DatabaseConnectionError(TransientError):
    """Database connection could not be opened."""

    pass


class RecordNotFoundError(OrmError):
    """A single-record read matched no rows."""

    default_category = ErrorCategory.NOT_FOUND
    default_retryable = False

    def __init__(self, message: str = "record not found", **kwargs: Any):
        super().__init__(message, **kwargs)


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, OrmError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError))


def categorize_error(error: Exception) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, OrmError):
        return error.category
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorCategory.DATABASE
    if isinstance(error, (TypeError, ValueError)):
        return ErrorCategory.VALIDATION
    if isinstance(error, (KeyError, AttributeError)):
        return ErrorCategory.CONFIG
    return ErrorCategory.UNKNOWN


__all__ = [
    # Category enum
    "ErrorCategory",
    # Context
    "ErrorContext",
    # Base
    "OrmError",
    # Config
    "ConfigError",
    "RelationshipConfigError",
    "UnsupportedFilterError",
    # Precondition
    "PreconditionError",
    "MissingWhereError",
    "UnsettableFieldError",
    "MissingModelError",
    "InvalidAssociationError",
    # Validation
    # Store
    "DatabaseError",
    "QueryError",
    "IntegrityError",
    "ScanError",
    "TransientError",
    "DatabaseConnectionError",
    "RecordNotFoundError",
    # Utilities
    "is_retryable",
    "categorize_error",
]
