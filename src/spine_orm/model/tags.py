"""Field annotations.

Records are plain dataclasses. Per-field mapping instructions are written as a
``;``-separated annotation string stored in the dataclass field metadata under
the ``orm`` key::

    @dataclass
    class User(Model):
        name: str = column("size:64;not null")
        languages: list[Language] = column("many2many:user_languages", default_factory=list)

Each ``key:value`` pair is parsed into an upper-cased key; a key without a
value maps to itself (``primary_key`` -> ``{"PRIMARY_KEY": "PRIMARY_KEY"}``).
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from typing import Any

TAG_KEY = "orm"


def parse_tag_settings(tag: str) -> dict[str, str]:
    """Parse ``"column:user_name;size:64;primary_key"`` into a settings dict."""
    settings: dict[str, str] = {}
    for part in tag.split(";"):
        if not part.strip():
            continue
        key, *rest = part.split(":")
        key = key.strip().upper()
        settings[key] = ":".join(rest) if rest else key
    return settings


def tag_settings_of(f: dataclasses.Field) -> dict[str, str]:
    """Annotation settings declared on a dataclass field."""
    raw = f.metadata.get(TAG_KEY, "")
    if isinstance(raw, Mapping):
        return {str(k).upper(): str(v) for k, v in raw.items()}
    return parse_tag_settings(str(raw))


def column(
    tag: str = "",
    *,
    default: Any = dataclasses.MISSING,
    default_factory: Any = dataclasses.MISSING,
    **kwargs: Any,
) -> Any:
    """``dataclasses.field`` with an ``orm`` annotation attached."""
    metadata = dict(kwargs.pop("metadata", None) or {})
    metadata[TAG_KEY] = tag
    return dataclasses.field(
        default=default,
        default_factory=default_factory,
        metadata=metadata,
        **kwargs,
    )


__all__ = ["TAG_KEY", "parse_tag_settings", "tag_settings_of", "column"]
