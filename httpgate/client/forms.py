"""Multipart conversion for the form verbs.

Conversion rules:
  - bytes / file-like values are attached as file parts
  - lists and tuples produce one part per item, named ``key[i]``
  - mappings are JSON-encoded into a single field
  - other scalars are stringified
  - ``None`` values are skipped
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from httpgate.client.types import MultipartBody


def _is_binary(value: Any) -> bool:
    return isinstance(value, (bytes, bytearray)) or hasattr(value, "read")


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def to_multipart(data: Mapping[str, Any] | MultipartBody | None) -> MultipartBody:
    """Convert a mapping into a ``MultipartBody``; existing bodies pass through."""
    if isinstance(data, MultipartBody):
        return data

    fields: list[tuple[str, str]] = []
    files: list[tuple[str, Any]] = []

    def add(name: str, value: Any) -> None:
        if _is_binary(value):
            files.append((name, value))
        else:
            fields.append((name, _scalar(value)))

    for key, value in (data or {}).items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                add(f"{key}[{index}]", item)
        elif isinstance(value, Mapping):
            fields.append((key, json.dumps(value, ensure_ascii=False)))
        else:
            add(key, value)

    return MultipartBody(fields=tuple(fields), files=tuple(files))
