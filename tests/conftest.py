"""
Shared pytest fixtures and configuration for spine-orm tests.

This module provides:
- An in-memory sqlite executor per test (DB-API, no network)
- A DB handle with an isolated descriptor cache
- A recording executor for asserting which statements reached the store
- A scope factory for testing builders and hooks without the front end

Usage:
    Fixtures are auto-discovered by pytest:

    def test_something(db):
        db.automigrate(User)
"""

import sys
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest

# Ensure spine_orm and the test support package are importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from _support.models import ALL_MODELS
from _support.recording import RecordingExecutor

from spine_orm.core.dialect import SQLiteDialect
from spine_orm.core.executor import DBAPIExecutor, connect_sqlite
from spine_orm.core.logging import clear_context
from spine_orm.core.settings import clear_settings_cache
from spine_orm.db import DB
from spine_orm.model.cache import DescriptorCache
from spine_orm.query.scope import Scope


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Tests touching a sqlite database are integration tests, the rest are unit tests."""
    for item in items:
        fixtures = set(getattr(item, "fixturenames", ()))
        if fixtures & {"sqlite_executor", "db", "migrated_db", "recorder", "spy_db"}:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_state() -> Generator[None, None, None]:
    """Forget cached settings and logging context around every test."""
    clear_settings_cache()
    clear_context()
    yield
    clear_settings_cache()
    clear_context()


# =============================================================================
# Metadata
# =============================================================================


@pytest.fixture
def cache() -> DescriptorCache:
    """A fresh descriptor cache, so no test sees another test's descriptors."""
    return DescriptorCache()


@pytest.fixture
def sqlite() -> SQLiteDialect:
    return SQLiteDialect()


# =============================================================================
# Executors
# =============================================================================


@pytest.fixture
def sqlite_executor() -> Generator[DBAPIExecutor, None, None]:
    """DB-API executor over a private in-memory sqlite database."""
    executor = DBAPIExecutor(connect_sqlite(":memory:"))
    yield executor
    executor.close()


@pytest.fixture
def recorder(sqlite_executor: DBAPIExecutor) -> RecordingExecutor:
    """The sqlite executor, wrapped so every statement is recorded."""
    return RecordingExecutor(sqlite_executor)


# =============================================================================
# Handles
# =============================================================================


@pytest.fixture
def db(sqlite_executor: DBAPIExecutor, cache: DescriptorCache, sqlite: SQLiteDialect) -> DB:
    return DB(sqlite_executor, sqlite, cache=cache)


@pytest.fixture
def migrated_db(db: DB) -> DB:
    """A handle whose database has every test table."""
    db.automigrate(*ALL_MODELS)
    return db


@pytest.fixture
def spy_db(recorder: RecordingExecutor, cache: DescriptorCache, sqlite: SQLiteDialect) -> DB:
    """A migrated handle that records statements; the recorder starts empty."""
    handle = DB(recorder, sqlite, cache=cache)
    handle.automigrate(*ALL_MODELS)
    recorder.reset()
    return handle


@pytest.fixture
def make_scope(
    cache: DescriptorCache, sqlite: SQLiteDialect, sqlite_executor: DBAPIExecutor
) -> Callable[..., Scope]:
    """Factory: ``make_scope(value, model_type=None)`` -> Scope on the test database."""

    def factory(value: Any, *, model_type: type | None = None) -> Scope:
        return Scope(
            value,
            dialect=sqlite,
            cache=cache,
            executor=sqlite_executor,
            model_type=model_type,
        )

    return factory
