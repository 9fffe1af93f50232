"""Environment-driven settings for spine-orm.

``OrmSettings`` collects everything ``open_db`` needs to wire a handle: the
database URL, the SQL dialect, table naming, and logging. Values come from
``SPINE_ORM_*`` environment variables or a ``.env`` file.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.

    - **Pydantic validation:** bad dialect names fail at startup
    - **Environment-driven:** ``SPINE_ORM_DATABASE_URL`` and friends
    - **Sensible defaults:** an in-memory SQLite database works out of the box

Examples:
    >>> from spine_orm.core.settings import OrmSettings
    >>> s = OrmSettings(database_url="postgresql://localhost/app")
    >>> s.resolved_dialect
    'postgresql'

Tags:
    settings, configuration, pydantic, environment, spine-orm

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from typing import Any

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_SCHEME_DIALECTS = {
    "sqlite": "sqlite",
    "postgresql": "postgresql",
    "postgres": "postgresql",
    "mysql": "mysql",
    "mariadb": "mysql",
}

_LOG_FORMATS = ("console", "json")


class OrmSettings(BaseSettings):
    """Settings for opening a spine-orm handle.

    Fields
    ──────
    database_url   : ``sqlite:///path`` or any SQLAlchemy URL
    dialect        : Explicit dialect name (empty: derive from the URL)
    singular_table : Use singular table names (``user`` instead of ``users``)
    echo_sql       : Log every executed statement at debug level
    log_level      : Structlog log level
    log_format     : ``console`` or ``json``
    """

    model_config = SettingsConfigDict(
        env_prefix="SPINE_ORM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Database ─────────────────────────────────────────────────
    database_url: str = Field(
        default="sqlite:///:memory:",
        description="Database URL; sqlite:/// URLs use the sqlite3 driver directly",
    )
    dialect: str = Field(
        default="",
        description="SQL dialect name; derived from the URL scheme when empty",
    )

    # ── Naming ───────────────────────────────────────────────────
    singular_table: bool = Field(
        default=False,
        description="Disable pluralization of default table names",
    )

    # ── Observability ────────────────────────────────────────────
    echo_sql: bool = False
    log_level: str = "INFO"
    log_format: str = "console"

    @model_validator(mode="after")
    def _validate(self) -> OrmSettings:
        if self.dialect and self.dialect.lower() not in set(_SCHEME_DIALECTS.values()):
            raise ValueError(
                f"Unknown dialect '{self.dialect}'. "
                f"Supported: {sorted(set(_SCHEME_DIALECTS.values()))}"
            )
        if self.log_format not in _LOG_FORMATS:
            raise ValueError(f"log_format must be one of {_LOG_FORMATS}, got '{self.log_format}'")
        return self

    @property
    def url_scheme(self) -> str:
        """The URL scheme without a driver suffix (``postgresql+psycopg`` -> ``postgresql``)."""
        scheme = self.database_url.split("://", 1)[0]
        return scheme.split("+", 1)[0].lower()

    @property
    def resolved_dialect(self) -> str:
        """Dialect name to use: the explicit setting, else one derived from the URL."""
        if self.dialect:
            return self.dialect.lower()
        return _SCHEME_DIALECTS.get(self.url_scheme, "sqlite")

    @property
    def sqlite_path(self) -> str | None:
        """Database path for ``sqlite:///`` URLs, ``None`` for anything else."""
        if self.url_scheme != "sqlite" or "+" in self.database_url.split("://", 1)[0]:
            return None
        path = self.database_url.split("://", 1)[1]
        # sqlite:///relative.db and sqlite:////abs/path.db
        path = path[1:] if path.startswith("/") else path
        return path or ":memory:"

    @property
    def json_logs(self) -> bool:
        return self.log_format == "json"


# ── Cached factory ───────────────────────────────────────────────────────

_settings_cache: dict[str, OrmSettings] = {}


def get_settings(*, _force_reload: bool = False, **overrides: Any) -> OrmSettings:
    """Return process-wide settings, built once from the environment.

    Keyword overrides bypass the cache and build a fresh instance.
    """
    if overrides:
        return OrmSettings(**overrides)
    if _force_reload or "default" not in _settings_cache:
        _settings_cache["default"] = OrmSettings()
    return _settings_cache["default"]


def clear_settings_cache() -> None:
    """Forget the cached settings (used by tests)."""
    _settings_cache.clear()


__all__ = [
    "OrmSettings",
    "get_settings",
    "clear_settings_cache",
]
