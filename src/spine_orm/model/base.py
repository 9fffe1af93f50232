"""Base record type with an integer key, timestamps and soft delete.

Subclasses are keyword-only dataclasses; declare them with
``@dataclass(kw_only=True)`` too so fields without defaults may follow the
inherited ones::

    @dataclass(kw_only=True)
    class User(Model):
        name: str = column("size:64")
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from spine_orm.model.tags import column


@dataclass(kw_only=True)
class Model:
    """``id`` primary key plus ``created_at`` / ``updated_at`` / ``deleted_at``."""

    id: int = column("primary_key", default=0)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = column("index", default=None)


__all__ = ["Model"]
