"""Transport collaborator: the wire exchange behind the pipeline.

The pipeline only needs ``send(url, request) -> TransportResponse``. The
default implementation wraps ``httpx.AsyncClient`` in streaming mode so the
body can be read lazily (whole-body decode or event-stream decode).
Connection pooling, TLS, HTTP/2, cookies and decompression stay with httpx.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any, Protocol, runtime_checkable

import httpx

from httpgate.client.errors import NetworkError, RequestTimeout
from httpgate.client.types import MultipartBody, TransportRequest, TransportResponse

logger = logging.getLogger(__name__)


@runtime_checkable
class Transport(Protocol):
    """Anything that can perform one HTTP exchange.

    Implementations raise NetworkError (or RequestTimeout) when the exchange
    cannot complete. They must not raise for error statuses.
    """

    async def send(self, url: str, request: TransportRequest) -> TransportResponse: ...


async def _iter_body(response: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    except httpx.TimeoutException as exc:
        raise RequestTimeout(f"Timeout while reading body: {exc}") from exc
    except httpx.TransportError as exc:
        raise NetworkError(f"{type(exc).__name__} while reading body: {exc}") from exc


class HttpxTransport:
    """Transport backed by ``httpx.AsyncClient``.

    Timeouts are enforced per attempt by the pipeline, so the owned client
    is created without one unless ``client_kwargs`` says otherwise.
    """

    def __init__(self, client: httpx.AsyncClient | None = None, **client_kwargs: Any):
        self._owns_client = client is None
        if client is None:
            client_kwargs.setdefault("timeout", None)
            client = httpx.AsyncClient(**client_kwargs)
        self._client = client

    async def send(self, url: str, request: TransportRequest) -> TransportResponse:
        kwargs: dict[str, Any] = {}
        body = request.body
        if isinstance(body, MultipartBody):
            kwargs["data"] = dict(body.fields)
            kwargs["files"] = list(body.files)
        elif body is not None:
            kwargs["content"] = body

        http_request = self._client.build_request(request.method, url, headers=dict(request.headers), **kwargs)
        logger.debug("Request: %s %s", request.method, url)

        try:
            response = await self._client.send(http_request, stream=True)
        except httpx.TimeoutException as exc:
            raise RequestTimeout(f"Timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"{type(exc).__name__}: {exc}") from exc

        return TransportResponse(
            status=response.status_code,
            status_text=response.reason_phrase,
            headers=response.headers,
            body=_iter_body(response),
            close=response.aclose,
            raw=response,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
