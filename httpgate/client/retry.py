"""Retrying Transport Call: one logical request with bounded retries.

Retry policy:
  - transport failures (NetworkError, RequestTimeout) are retried
  - responses with status >= 500 are retried while attempts remain; the last
    one is returned as data, not raised
  - responses with status < 500 are returned at once
  - caller cancellation (AbortError) is never retried

Backoff: delay before retry n (1-based) = base_delay * 2^(n-1), no jitter,
no cap. Retries run strictly one after another.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from httpgate.client.cancellation import CancellationToken
from httpgate.client.errors import AbortError, NetworkError, RequestError, RequestTimeout
from httpgate.client.transport import Transport
from httpgate.client.types import (
    MultipartBody,
    RequestSpec,
    TransportRequest,
    TransportResponse,
    merge_headers,
    to_jsonable,
)
from httpgate.client.urls import build_url
from httpgate.core import metrics

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAY = 1.0  # seconds

Sleep = Callable[[float], Awaitable[Any]]


def calculate_backoff(retry_number: int, base_delay: float = DEFAULT_RETRY_DELAY) -> float:
    """Delay before the ``retry_number``-th retry (1-based).

    Formula: base * 2^(retry_number - 1)
    """
    return base_delay * (2 ** (retry_number - 1))


def encode_body(body: Any, headers: dict[str, str]) -> bytes | str | MultipartBody | None:
    """Serialize a request body for the wire.

    Multipart and raw binary payloads pass through unmodified; anything else
    that is not ``None`` is JSON-encoded, and ``Content-Type`` defaults to
    ``application/json`` for it. ``headers`` is updated in place.
    """
    if body is None:
        return None
    if isinstance(body, (MultipartBody, bytes, bytearray)):
        return bytes(body) if isinstance(body, bytearray) else body

    if not any(name.lower() == "content-type" for name in headers):
        headers["Content-Type"] = "application/json"
    return json.dumps(body, ensure_ascii=False, default=to_jsonable)


class RetryingTransportCall:
    """Issues one logical request against a transport, retrying transient failures.

    Usage:
        call = RetryingTransportCall(transport)
        response = await call.execute(spec, token)
    """

    def __init__(self, transport: Transport, sleep: Sleep = asyncio.sleep):
        self.transport = transport
        self._sleep = sleep

    async def execute(
        self,
        spec: RequestSpec,
        token: CancellationToken | None = None,
        *,
        read_body: bool = False,
    ) -> TransportResponse:
        """Run the attempts for ``spec`` and return the final transport response.

        With ``read_body`` the whole body is buffered inside each attempt, so
        the timeout and the cancel token cover the body as well as the
        headers. Without it the body is left for the caller to consume.

        Raises AbortError on cancellation and the last NetworkError once the
        retry budget is exhausted.
        """
        retries = max(spec.retry or 0, 0)
        base_delay = DEFAULT_RETRY_DELAY if spec.retry_delay is None else spec.retry_delay
        method = spec.method_name

        url = build_url(spec.base_url, spec.path, spec.params)
        headers = merge_headers(None, spec.headers)
        body = encode_body(spec.body, headers)
        request = TransportRequest(method=method, headers=headers, body=body)

        attempt = 0
        while True:
            try:
                response = await self._attempt(url, request, spec, token, read_body)
            except AbortError:
                raise
            except NetworkError as exc:
                if exc.config is None:
                    exc.config = spec
                if attempt >= retries:
                    logger.warning(
                        "%s %s failed after %d attempt(s): %s",
                        method,
                        url,
                        attempt + 1,
                        exc,
                    )
                    raise
                reason = "timeout" if isinstance(exc, RequestTimeout) else "network"
            else:
                if response.status < 500 or attempt >= retries:
                    return response
                await response.aclose()
                reason = "server_error"

            attempt += 1
            delay = calculate_backoff(attempt, base_delay)
            metrics.observe_retry(reason)
            logger.info(
                "Retrying %s %s after %s (attempt %d/%d) in %.1fs",
                method,
                url,
                reason,
                attempt,
                retries,
                delay,
            )
            await self._wait(delay, token)

    async def _attempt(
        self,
        url: str,
        request: TransportRequest,
        spec: RequestSpec,
        token: CancellationToken | None,
        read_body: bool,
    ) -> TransportResponse:
        if token is not None:
            token.raise_if_cancelled()

        send = asyncio.ensure_future(self._exchange(url, request, read_body))
        unsubscribe = token.on_cancel(send.cancel) if token is not None else None
        try:
            if spec.timeout:
                return await asyncio.wait_for(send, spec.timeout)
            return await send
        except asyncio.TimeoutError as exc:
            raise RequestTimeout(f"Timeout after {spec.timeout}s", config=spec) from exc
        except asyncio.CancelledError:
            if token is not None and token.cancelled:
                raise AbortError(token.reason or "Request cancelled", config=spec) from None
            raise
        except RequestError:
            raise
        except Exception as exc:
            raise NetworkError(str(exc) or type(exc).__name__, config=spec) from exc
        finally:
            if unsubscribe is not None:
                unsubscribe()
            if not send.done():
                send.cancel()

    async def _exchange(self, url: str, request: TransportRequest, read_body: bool) -> TransportResponse:
        response = await self.transport.send(url, request)
        if read_body:
            # aread releases the response on every exit, cancellation included
            await response.aread()
        return response

    async def _wait(self, delay: float, token: CancellationToken | None) -> None:
        if token is None:
            await self._sleep(delay)
            return

        token.raise_if_cancelled()
        sleeper = asyncio.ensure_future(self._sleep(delay))
        unsubscribe = token.on_cancel(sleeper.cancel)
        try:
            await sleeper
        except asyncio.CancelledError:
            if token.cancelled:
                raise AbortError(token.reason or "Request cancelled") from None
            raise
        finally:
            unsubscribe()
