"""URL composition: base URL + path + canonical query string."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any
from urllib.parse import urlencode

_ABSOLUTE_PREFIXES = ("http://", "https://")


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def encode_query(params: Mapping[str, Any] | None) -> str:
    """Encode ``params`` with sorted keys so equal maps give equal strings.

    ``None`` values are skipped; list and tuple values repeat the key.
    """
    if not params:
        return ""
    pairs: list[tuple[str, str]] = []
    for key in sorted(params):
        value = params[key]
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            pairs.extend((key, _query_value(item)) for item in value if item is not None)
        else:
            pairs.append((key, _query_value(value)))
    return urlencode(pairs)


def build_url(base_url: str | None, path: str | None, params: Mapping[str, Any] | None = None) -> str:
    """Join ``base_url`` and ``path`` with one slash and append the query.

    Absolute paths ignore the base. The query is joined with ``&`` when the
    composed URL already carries one, ``?`` otherwise.

    >>> build_url("https://api.example.com/", "/users", {"id": 1, "active": True})
    'https://api.example.com/users?active=true&id=1'
    """
    url = path or ""
    if base_url and not url.startswith(_ABSOLUTE_PREFIXES):
        url = f"{base_url.rstrip('/')}/{url.lstrip('/')}"

    query = encode_query(params)
    if query:
        url += ("&" if "?" in url else "?") + query
    return url
