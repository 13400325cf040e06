"""Response Cache: TTL-keyed in-memory store of decoded response bodies.

Entries are pruned lazily: an expired entry is evicted by the lookup that
finds it, there is no background sweep.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import time
from collections.abc import Callable
from typing import Any

from httpgate.client.types import CacheEntry, MultipartBody, RequestSpec, to_jsonable

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 300.0  # seconds


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return {"__bytes__": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, MultipartBody):
        return {"__multipart__": [list(value.fields), [name for name, _ in value.files]]}
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    return to_jsonable(value)


def derive_cache_key(spec: RequestSpec) -> str:
    """Derive a canonical cache key from (path, method, params, body).

    Mapping order never affects the key: the identity is serialized with
    sorted keys before hashing.
    Raises TypeError when the body holds a value with no canonical JSON form.
    """
    method = spec.method_name
    identity = {
        "url": spec.path,
        "method": method,
        "params": dict(spec.params) if spec.params else None,
        "data": spec.body,
    }
    canonical = json.dumps(identity, sort_keys=True, separators=(",", ":"), default=_json_default)
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{method} {spec.path} {digest}"


class ResponseCache:
    """In-memory TTL cache owned by a single client.

    Usage:
        cache = ResponseCache()
        cache.set("users", [{"id": 1}], ttl=60)
        cache.get("users")  # -> [{"id": 1}] for the next 60 seconds
    """

    def __init__(self, default_ttl: float = DEFAULT_CACHE_TTL, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None

        if self._clock() >= entry.expires_at:
            del self._entries[key]
            logger.debug("Cache entry expired: %s", key)
            return None

        return entry.value

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        """Number of stored entries, expired ones not yet pruned included."""
        return len(self._entries)
