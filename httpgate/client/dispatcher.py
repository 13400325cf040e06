"""Request Dispatcher: orchestrator integrating all pipeline components.

Dispatch order for one request:
  1. Merge client defaults into the request spec
  2. Serve from the response cache when enabled and fresh
  3. Run request interceptors (a rejection skips straight to step 6's
     failure path)
  4. Acquire a concurrency gate slot
  5. Execute the retrying transport call
  6. Decode the body, write through to the cache, run response interceptors;
     on failure, offer the error to the response failure transforms
  7. Always release the slot and forget the pending call

Usage:
    dispatcher = Dispatcher(ClientDefaults(base_url="https://api.example.com", retry=2))
    envelope = await dispatcher.execute(RequestSpec(path="/users/1"))
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

from httpgate.client.cache import DEFAULT_CACHE_TTL, ResponseCache, derive_cache_key
from httpgate.client.cancellation import CancellationToken
from httpgate.client.concurrency import ConcurrencyGate
from httpgate.client.errors import ConfigError, ParseError
from httpgate.client.interceptors import InterceptorChain
from httpgate.client.retry import RetryingTransportCall, Sleep
from httpgate.client.transport import HttpxTransport, Transport
from httpgate.client.types import (
    ClientDefaults,
    HttpMethod,
    PendingCall,
    RequestSpec,
    ResponseEnvelope,
    TransportResponse,
)
from httpgate.core import metrics
from httpgate.core.config import settings

logger = logging.getLogger(__name__)

CACHED_STATUS_TEXT = "OK (Cached)"

_METHODS = frozenset(m.value for m in HttpMethod)


def _header(headers: Mapping[str, str], name: str) -> str | None:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def decode_body(raw: bytes, headers: Mapping[str, str]) -> Any:
    """Decode a response body according to its declared content type.

    JSON content types are parsed; a malformed JSON body falls back to its
    text. An empty JSON body decodes to ``None``.
    """
    content_type = (_header(headers, "content-type") or "").lower()
    charset = "utf-8"
    for part in content_type.split(";")[1:]:
        key, _, value = part.strip().partition("=")
        if key == "charset" and value:
            charset = value.strip('"')

    try:
        text = raw.decode(charset, errors="replace")
    except LookupError:
        text = raw.decode("utf-8", errors="replace")

    if "json" not in content_type:
        return text
    if not text.strip():
        return None
    try:
        return json.loads(text)
    except ValueError as exc:
        logger.warning("%s", ParseError(f"Malformed JSON body, returning text: {exc}"))
        return text


class Dispatcher:
    """Owns the per-client state: cache, interceptors, gate and pending calls.

    Each instance is independent; nothing here is process-global.
    """

    def __init__(
        self,
        defaults: ClientDefaults | None = None,
        transport: Transport | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            defaults: Request defaults and concurrency limit (from settings if omitted)
            transport: Wire transport (an owned HttpxTransport if omitted)
            sleep: Coroutine used for backoff delays
            clock: Monotonic clock used for cache expiry
        """
        self.defaults = defaults if defaults is not None else ClientDefaults.from_settings(settings)
        self._owns_transport = transport is None
        self.transport: Transport = transport if transport is not None else HttpxTransport()

        self.cache = ResponseCache(default_ttl=self.defaults.cache_ttl or DEFAULT_CACHE_TTL, clock=clock)
        self.interceptors = InterceptorChain()
        self.gate = ConcurrencyGate(self.defaults.concurrency)
        self._call = RetryingTransportCall(self.transport, sleep=sleep)
        self._pending: dict[str, PendingCall] = {}

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def resolve(self, spec: RequestSpec) -> RequestSpec:
        """Merge defaults into ``spec`` and validate the method."""
        config = self.defaults.merge(spec)
        if config.method_name not in _METHODS:
            raise ConfigError(f"Unsupported HTTP method: {config.method_name}", config=config)
        return config

    async def execute(self, spec: RequestSpec) -> ResponseEnvelope:
        """Execute one request through the full pipeline.

        Error statuses come back as envelopes. Raises RequestError subclasses
        (or whatever a response failure transform raises) otherwise.
        """
        config = self.resolve(spec)

        cache_key: str | None = None
        if config.cache:
            cache_key = config.cache_key or derive_cache_key(config)
            cached = self.cache.get(cache_key)
            metrics.observe_cache(cached is not None)
            if cached is not None:
                logger.debug("Cache hit for %s %s", config.method_name, config.path)
                return ResponseEnvelope(
                    data=cached,
                    status=200,
                    status_text=CACHED_STATUS_TEXT,
                    headers={},
                    config=config,
                )

        try:
            config = await self.interceptors.request.run(config)
            if not isinstance(config, RequestSpec):
                raise ConfigError(f"Request interceptor returned {type(config).__name__}, expected RequestSpec")
        except Exception as exc:
            logger.debug("Request interceptors rejected %s %s: %s", spec.method_name, spec.path, exc)
            return await self.interceptors.response.recover(exc)

        return await self._dispatch(config, cache_key)

    async def _dispatch(self, config: RequestSpec, cache_key: str | None) -> ResponseEnvelope:
        method = config.method_name
        token, detach = CancellationToken.linked(config.cancel_token)
        call = PendingCall(method=method, path=config.path, token=token)
        self._pending[call.request_id] = call
        log_extra = {"request_id": call.request_id}

        started = time.perf_counter()
        status: int | str = "error"
        acquired = False
        try:
            try:
                await self.gate.acquire(token)
                acquired = True
                logger.debug("Dispatching %s %s", method, config.path, extra=log_extra)

                response = await self._call.execute(config, token, read_body=True)
                envelope = await self._build_envelope(response, config)
            except Exception as exc:
                logger.debug("Request %s %s failed: %r", method, config.path, exc, extra=log_extra)
                return await self.interceptors.response.recover(exc)

            status = envelope.status
            if cache_key is not None:
                self.cache.set(cache_key, envelope.data, config.cache_ttl)

            return await self.interceptors.response.run(envelope)
        finally:
            if acquired:
                self.gate.release()
            self._pending.pop(call.request_id, None)
            detach()
            metrics.observe_request(method, status, time.perf_counter() - started)

    async def _build_envelope(self, response: TransportResponse, config: RequestSpec) -> ResponseEnvelope:
        raw = await response.aread()
        return ResponseEnvelope(
            data=decode_body(raw, response.headers),
            status=response.status,
            status_text=response.status_text,
            headers=response.headers,
            config=config,
            raw=response.raw,
        )

    # ------------------------------------------------------------------
    # Pending calls
    # ------------------------------------------------------------------

    @property
    def pending(self) -> list[PendingCall]:
        return list(self._pending.values())

    def cancel(self, request_id: str, reason: str | None = None) -> bool:
        """Cancel one outstanding request. Returns False if it is unknown."""
        call = self._pending.get(request_id)
        if call is None:
            return False
        call.token.cancel(reason or "Request cancelled")
        return True

    def cancel_all(self, reason: str | None = None) -> int:
        """Cancel every outstanding request. Returns how many were signalled."""
        calls = list(self._pending.values())
        for call in calls:
            call.token.cancel(reason or "Request cancelled")
        if calls:
            logger.info("Cancelled %d pending request(s)", len(calls))
        return len(calls)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def get_status(self) -> dict:
        """Get a snapshot of the dispatcher's shared state."""
        return {
            "gate": self.gate.get_stats(),
            "pending": len(self._pending),
            "cache_entries": len(self.cache),
            "interceptors": self.interceptors.counts(),
        }

    async def aclose(self) -> None:
        self.cancel_all("Client closed")
        self.cache.clear()
        if self._owns_transport:
            aclose = getattr(self.transport, "aclose", None)
            if aclose is not None:
                await aclose()

    async def __aenter__(self) -> Dispatcher:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
