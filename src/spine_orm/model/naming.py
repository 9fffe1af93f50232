"""Naming conventions: in-language names to storage names.

``to_db_name`` turns ``UserLanguage`` into ``user_language`` and
``HTTPServerID`` into ``http_server_id``; ``pluralize`` turns the result into
a default table name (``user_languages``). Both are pure and cached.

Examples:
    >>> to_db_name("CreditCard")
    'credit_card'
    >>> to_db_name("UserID")
    'user_id'
    >>> pluralize("person")
    'people'
"""

from __future__ import annotations

import re
import threading

# Common initialisms are title-cased first so they split as one word.
_INITIALISMS = (
    "API", "ASCII", "CPU", "CSS", "DNS", "EOF", "GUID", "HTML", "HTTP", "HTTPS",
    "ID", "IP", "JSON", "LHS", "QPS", "RAM", "RHS", "RPC", "SLA", "SMTP", "SSH",
    "TLS", "TTL", "UI", "UID", "UUID", "URI", "URL", "UTF8", "VM", "XML", "XSRF",
    "XSS",
)
_INITIALISM_RE = re.compile("|".join(_INITIALISMS))

_db_names: dict[str, str] = {}
_db_names_lock = threading.Lock()


def _is_upper(ch: str) -> bool:
    return "A" <= ch <= "Z"


def to_db_name(name: str) -> str:
    """Convert a CamelCase (or already snake_case) name to snake_case."""
    with _db_names_lock:
        cached = _db_names.get(name)
    if cached is not None:
        return cached
    if not name:
        return ""

    value = _INITIALISM_RE.sub(lambda m: m.group(0).title(), name)
    buf: list[str] = []
    last = curr = False
    for i, ch in enumerate(value[:-1]):
        nxt = _is_upper(value[i + 1])
        if i == 0:
            curr = True
            buf.append(ch)
        elif curr:
            if last and nxt:
                buf.append(ch)
            else:
                if value[i - 1] != "_" and value[i + 1] != "_":
                    buf.append("_")
                buf.append(ch)
        else:
            buf.append(ch)
        last = curr
        curr = nxt
    buf.append(value[-1])

    result = "".join(buf).lower()
    with _db_names_lock:
        _db_names[name] = result
    return result


# -- Pluralization -----------------------------------------------------------

_UNCOUNTABLE = frozenset(
    ["equipment", "information", "rice", "money", "species", "series", "fish", "sheep", "jeans", "police"]
)

_IRREGULAR = (
    ("person", "people"),
    ("man", "men"),
    ("child", "children"),
    ("sex", "sexes"),
    ("move", "moves"),
    ("zombie", "zombies"),
)

# Later rules win; they are tried first.
_PLURAL_RULES = [
    (re.compile(pattern, re.IGNORECASE), replacement)
    for pattern, replacement in reversed(
        [
            (r"$", "s"),
            (r"s$", "s"),
            (r"^(ax|test)is$", r"\1es"),
            (r"(octop|vir)us$", r"\1i"),
            (r"(octop|vir)i$", r"\1i"),
            (r"(alias|status|campus)$", r"\1es"),
            (r"(bu)s$", r"\1ses"),
            (r"(buffal|tomat)o$", r"\1oes"),
            (r"([ti])um$", r"\1a"),
            (r"([ti])a$", r"\1a"),
            (r"sis$", "ses"),
            (r"(?:([^f])fe|([lr])f)$", r"\1\2ves"),
            (r"(hive)$", r"\1s"),
            (r"([^aeiouy]|qu)y$", r"\1ies"),
            (r"(x|ch|ss|sh)$", r"\1es"),
            (r"(matr|vert|ind)(?:ix|ex)$", r"\1ices"),
            (r"^(m|l)ouse$", r"\1ice"),
            (r"^(m|l)ice$", r"\1ice"),
            (r"^(ox)$", r"\1en"),
            (r"^(oxen)$", r"\1"),
            (r"(quiz)$", r"\1zes"),
        ]
    )
]


def pluralize(word: str) -> str:
    """Return the plural form of ``word``; only the last ``_`` segment changes."""
    if not word:
        return word
    head, sep, tail = word.rpartition("_")
    lowered = tail.lower()
    if lowered in _UNCOUNTABLE:
        return word
    for singular, plural in _IRREGULAR:
        if lowered == singular:
            return f"{head}{sep}{plural}"
        if lowered == plural:
            return word
    for pattern, replacement in _PLURAL_RULES:
        if pattern.search(tail):
            return f"{head}{sep}{pattern.sub(replacement, tail, count=1)}"
    return word


__all__ = ["to_db_name", "pluralize"]
