"""Core types and DTOs for the request pipeline."""

from __future__ import annotations

import dataclasses
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

if TYPE_CHECKING:
    from httpgate.client.cancellation import CancellationToken
    from httpgate.core.config import Settings


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class HttpMethod(str, Enum):
    """Supported request methods."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"


def merge_headers(base: Mapping[str, str] | None, overrides: Mapping[str, str] | None) -> dict[str, str]:
    """Merge two header maps key-wise, case-insensitively.

    An override replaces any base header with the same name regardless of
    case, and keeps the override's spelling.
    """
    merged: dict[str, str] = dict(base or {})
    for name, value in (overrides or {}).items():
        lowered = name.lower()
        for existing in [k for k in merged if k.lower() == lowered]:
            del merged[existing]
        merged[name] = value
    return merged


def to_jsonable(value: Any) -> Any:
    """``json.dumps`` default for structured request bodies.

    Pydantic models and dataclasses dump to their fields, enums to their
    value, dates to ISO 8601, UUIDs and decimals to strings. Anything else
    raises TypeError, as ``json.dumps`` itself would.
    """
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


# ---------------------------------------------------------------------------
# Request body payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MultipartBody:
    """A multipart/form-data payload, passed to the transport unmodified.

    ``fields`` holds plain form fields, ``files`` holds binary parts as
    ``(name, content)`` pairs where content is bytes or a file-like object.
    """

    fields: tuple[tuple[str, str], ...] = ()
    files: tuple[tuple[str, Any], ...] = ()


# ---------------------------------------------------------------------------
# Request spec: input to the dispatcher
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RequestSpec:
    """Structured description of one logical request.

    Every optional field left as ``None`` is filled from ``ClientDefaults``
    when the request is dispatched. Instances are immutable; use
    :meth:`replace` (or :meth:`with_headers`) to derive a modified copy,
    which is what request interceptors are expected to return.
    """

    path: str = ""
    method: HttpMethod | str | None = None
    base_url: str | None = None
    params: Mapping[str, Any] | None = None
    body: Any = None
    headers: Mapping[str, str] | None = None
    timeout: float | None = None  # seconds per attempt
    retry: int | None = None
    retry_delay: float | None = None  # base backoff delay (seconds)
    cache: bool | None = None
    cache_key: str | None = None
    cache_ttl: float | None = None  # seconds
    cancel_token: CancellationToken | None = None

    def replace(self, **changes: Any) -> RequestSpec:
        return dataclasses.replace(self, **changes)

    def with_headers(self, headers: Mapping[str, str]) -> RequestSpec:
        return self.replace(headers=merge_headers(self.headers, headers))

    @property
    def method_name(self) -> str:
        """Upper-case method name, ``GET`` when unset."""
        if self.method is None:
            return HttpMethod.GET.value
        if isinstance(self.method, HttpMethod):
            return self.method.value
        return str(self.method).upper()


@dataclass(frozen=True)
class ClientDefaults:
    """Request defaults applied to every dispatch, plus the concurrency limit."""

    base_url: str | None = None
    params: Mapping[str, Any] | None = None
    headers: Mapping[str, str] | None = None
    timeout: float | None = None
    retry: int | None = None
    retry_delay: float | None = None
    cache: bool | None = None
    cache_ttl: float | None = None
    concurrency: int = 0  # max in-flight requests; 0 = unbounded

    @classmethod
    def from_settings(cls, settings: Settings) -> ClientDefaults:
        return cls(
            base_url=settings.base_url or None,
            headers=dict(settings.default_headers),
            timeout=settings.timeout,
            retry=settings.retry,
            retry_delay=settings.retry_delay,
            cache_ttl=settings.cache_ttl,
            concurrency=settings.concurrency,
        )

    def merge(self, spec: RequestSpec) -> RequestSpec:
        """Return a new spec where unset request fields take the default value.

        Header maps merge key-wise with the request winning; defaults are
        never mutated.
        """

        def pick(value: Any, default: Any) -> Any:
            return default if value is None else value

        return dataclasses.replace(
            spec,
            method=spec.method_name,
            base_url=pick(spec.base_url, self.base_url),
            params=pick(spec.params, self.params),
            headers=merge_headers(self.headers, spec.headers),
            timeout=pick(spec.timeout, self.timeout),
            retry=pick(spec.retry, self.retry),
            retry_delay=pick(spec.retry_delay, self.retry_delay),
            cache=pick(spec.cache, self.cache),
            cache_ttl=pick(spec.cache_ttl, self.cache_ttl),
        )


# ---------------------------------------------------------------------------
# Response envelope: output of the dispatcher
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ResponseEnvelope:
    """Normalized result of a completed request."""

    data: Any
    status: int
    status_text: str
    headers: Mapping[str, str]
    config: RequestSpec
    raw: Any = None  # transport-specific handle, e.g. httpx.Response

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def replace(self, **changes: Any) -> ResponseEnvelope:
        return dataclasses.replace(self, **changes)


# ---------------------------------------------------------------------------
# Bookkeeping records
# ---------------------------------------------------------------------------


@dataclass
class CacheEntry:
    """A cached value and the monotonic instant it stops being served."""

    value: Any
    expires_at: float


@dataclass
class PendingCall:
    """One in-flight logical request, tracked for cancellation."""

    method: str
    path: str
    token: CancellationToken
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    issued_at: float = field(default_factory=time.monotonic)


# ---------------------------------------------------------------------------
# Transport contract
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TransportRequest:
    """What the transport receives for one attempt."""

    method: str
    headers: Mapping[str, str]
    body: bytes | str | MultipartBody | None = None


@dataclass
class TransportResponse:
    """Status line, headers and a lazily read body returned by a transport.

    ``body`` yields raw chunks; ``close`` releases the underlying connection
    and is safe to call more than once.
    """

    status: int
    status_text: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    body: AsyncIterator[bytes] | None = None
    close: Callable[[], Awaitable[None]] | None = None
    raw: Any = None
    closed: bool = field(default=False, repr=False)
    content: bytes | None = field(default=None, repr=False)

    async def aread(self) -> bytes:
        """Read the whole body and release the response.

        The bytes are kept on ``content``; later calls return them without
        touching the body again.
        """
        if self.content is not None:
            return self.content
        chunks: list[bytes] = []
        try:
            if self.body is not None:
                async for chunk in self.body:
                    chunks.append(chunk)
        finally:
            await self.aclose()
        self.content = b"".join(chunks)
        return self.content

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.close is not None:
            await self.close()
