"""Tests for spine_orm.core.errors module."""

import pytest

from spine_orm.core.errors import (
    ConfigError,
    DatabaseConnectionError,
    DatabaseError,
    ErrorCategory,
    ErrorContext,
    IntegrityError,
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


class TestErrorContext:
    """Test ErrorContext dataclass."""

    def test_empty_context_has_no_keys(self):
        assert ErrorContext().to_dict() == {}

    def test_to_dict_includes_set_fields_and_metadata(self):
        ctx = ErrorContext(operation="update", table="users", metadata={"hook": "update_exec"})
        d = ctx.to_dict()
        assert d == {"operation": "update", "table": "users", "hook": "update_exec"}

    def test_field_attribute_and_fresh_metadata(self):
        first = ErrorContext(field="age")
        second = ErrorContext()
        first.metadata["hook"] = "query_exec"
        assert first.to_dict() == {"field": "age", "hook": "query_exec"}
        assert second.metadata == {}


class TestOrmError:
    """Test the base error."""

    def test_defaults(self):
        error = OrmError("Something went wrong")
        assert error.category == ErrorCategory.INTERNAL
        assert error.retryable is False
        assert str(error) == "Something went wrong"

    def test_with_context_is_fluent(self):
        error = QueryError("no such table: users").with_context(table="users", sql="SELECT 1")
        assert isinstance(error, QueryError)
        assert error.context.table == "users"
        assert error.context.sql == "SELECT 1"

    def test_unknown_context_keys_go_to_metadata(self):
        error = OrmError("x").with_context(hook="create_exec")
        assert error.context.metadata == {"hook": "create_exec"}

    def test_cause_is_chained(self):
        cause = ValueError("boom")
        error = QueryError("wrapped", cause=cause)
        assert error.__cause__ is cause
        assert error.to_dict()["cause"] == "boom"

    def test_to_dict(self):
        d = MissingWhereError("delete").to_dict()
        assert d["error_type"] == "MissingWhereError"
        assert d["category"] == "PRECONDITION"
        assert d["retryable"] is False
        assert d["context"] == {"operation": "delete"}

    def test_repr(self):
        assert repr(ConfigError("bad")) == "ConfigError('bad', category=CONFIG)"


class TestTaxonomy:
    """Each failure class lands in the right branch of the hierarchy."""

    @pytest.mark.parametrize(
        "error, parent, category",
        [
            (RelationshipConfigError("User", "toy", "bad"), ConfigError, ErrorCategory.CONFIG),
            (UnsupportedFilterError(1.5), ConfigError, ErrorCategory.CONFIG),
            (MissingWhereError("update"), PreconditionError, ErrorCategory.PRECONDITION),
            (UnsettableFieldError("nickname"), PreconditionError, ErrorCategory.PRECONDITION),
            (QueryError("x"), DatabaseError, ErrorCategory.DATABASE),
            (IntegrityError("x"), DatabaseError, ErrorCategory.DATABASE),
            (ScanError("x"), DatabaseError, ErrorCategory.DATABASE),
            (DatabaseConnectionError("x"), TransientError, ErrorCategory.DATABASE),
        ],
    )
    def test_hierarchy(self, error, parent, category):
        assert isinstance(error, parent)
        assert isinstance(error, OrmError)
        assert error.category == category

    def test_config_and_precondition_errors_never_retry(self):
        assert not ConfigError("x").retryable
        assert not MissingWhereError("update").retryable

    def test_connection_errors_retry(self):
        assert DatabaseConnectionError("refused").retryable

    def test_relationship_error_message_and_context(self):
        error = RelationshipConfigError("Cat", "toy", "polymorphic discriminator not found")
        assert str(error) == "Cat.toy: polymorphic discriminator not found"
        assert error.context.model == "Cat"
        assert error.context.field == "toy"

    def test_missing_where_names_operation(self):
        error = MissingWhereError("update")
        assert "update" in str(error)
        assert error.operation == "update"

    def test_unsettable_field_default_message(self):
        error = UnsettableFieldError("nickname")
        assert "nickname" in str(error)
        assert error.context.field == "nickname"

    def test_unsupported_filter_names_type(self):
        assert "float" in str(UnsupportedFilterError(1.5))

    def test_record_not_found(self):
        error = RecordNotFoundError()
        assert error.message == "record not found"
        assert error.category == ErrorCategory.NOT_FOUND


class TestHelpers:
    """Test is_retryable and categorize_error."""

    def test_is_retryable(self):
        assert is_retryable(DatabaseConnectionError("x"))
        assert not is_retryable(QueryError("x"))
        assert is_retryable(ConnectionError())
        assert is_retryable(TimeoutError())
        assert not is_retryable(ValueError())

    @pytest.mark.parametrize(
        "error, expected",
        [
            (MissingWhereError("update"), ErrorCategory.PRECONDITION),
            (ConnectionError(), ErrorCategory.DATABASE),
            (ValueError(), ErrorCategory.VALIDATION),
            (KeyError("x"), ErrorCategory.CONFIG),
            (RuntimeError(), ErrorCategory.UNKNOWN),
        ],
    )
    def test_categorize_error(self, error, expected):
        assert categorize_error(error) == expected
