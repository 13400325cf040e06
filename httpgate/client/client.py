"""HTTP client: verb helpers, form uploads and event streams on top of the dispatcher."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping
from typing import Any

from httpgate.client.cancellation import CancellationToken
from httpgate.client.dispatcher import Dispatcher
from httpgate.client.errors import AbortError, ConfigError, status_error
from httpgate.client.forms import to_multipart
from httpgate.client.stream import decode_stream
from httpgate.client.types import (
    HttpMethod,
    MultipartBody,
    PendingCall,
    RequestSpec,
    ResponseEnvelope,
    merge_headers,
)

logger = logging.getLogger(__name__)


class HttpClient(Dispatcher):
    """Asynchronous HTTP client with interceptors, retries, caching and gating.

    Usage:
        async with HttpClient(ClientDefaults(base_url="https://api.example.com", retry=3)) as client:
            client.interceptors.request.register(
                lambda spec: spec.with_headers({"Authorization": "Bearer token"})
            )
            user = await client.get("/users/123")
            print(user.data)

            async for message in client.stream("/chat/stream", params={"prompt": "Hello"}):
                print(message)

    Keyword options accepted by every verb are the ``RequestSpec`` fields:
    params, headers, body, base_url, timeout, retry, retry_delay, cache,
    cache_key, cache_ttl, cancel_token.
    """

    async def request(self, method: HttpMethod | str, path: str, **options: Any) -> ResponseEnvelope:
        return await self.execute(RequestSpec(path=path, method=method, **options))

    async def get(self, path: str, **options: Any) -> ResponseEnvelope:
        return await self.request(HttpMethod.GET, path, **options)

    async def post(self, path: str, body: Any = None, **options: Any) -> ResponseEnvelope:
        return await self.request(HttpMethod.POST, path, body=body, **options)

    async def put(self, path: str, body: Any = None, **options: Any) -> ResponseEnvelope:
        return await self.request(HttpMethod.PUT, path, body=body, **options)

    async def patch(self, path: str, body: Any = None, **options: Any) -> ResponseEnvelope:
        return await self.request(HttpMethod.PATCH, path, body=body, **options)

    async def delete(self, path: str, **options: Any) -> ResponseEnvelope:
        return await self.request(HttpMethod.DELETE, path, **options)

    async def head(self, path: str, **options: Any) -> ResponseEnvelope:
        return await self.request(HttpMethod.HEAD, path, **options)

    async def options(self, path: str, **options: Any) -> ResponseEnvelope:
        return await self.request(HttpMethod.OPTIONS, path, **options)

    # ------------------------------------------------------------------
    # Form uploads
    # ------------------------------------------------------------------

    async def post_form(
        self, path: str, data: Mapping[str, Any] | MultipartBody | None = None, **options: Any
    ) -> ResponseEnvelope:
        """POST ``data`` as multipart/form-data (see ``to_multipart`` for the rules)."""
        return await self.request(HttpMethod.POST, path, body=to_multipart(data), **options)

    async def put_form(
        self, path: str, data: Mapping[str, Any] | MultipartBody | None = None, **options: Any
    ) -> ResponseEnvelope:
        return await self.request(HttpMethod.PUT, path, body=to_multipart(data), **options)

    async def patch_form(
        self, path: str, data: Mapping[str, Any] | MultipartBody | None = None, **options: Any
    ) -> ResponseEnvelope:
        return await self.request(HttpMethod.PATCH, path, body=to_multipart(data), **options)

    # ------------------------------------------------------------------
    # Event streams
    # ------------------------------------------------------------------

    async def stream(self, path: str, **options: Any) -> AsyncIterator[Any]:
        """Open a streaming GET and yield parsed events (SSE or NDJSON).

        Defaults and request interceptors apply; retries, caching and the
        concurrency gate do not. Raises ClientError/ServerError for error
        statuses and AbortError as soon as the cancel token fires, even while
        the connection is idle.
        """
        spec = RequestSpec(path=path, method=HttpMethod.GET, **options)
        config = self.resolve(spec)
        config = config.replace(headers=merge_headers({"Accept": "text/event-stream"}, config.headers), retry=0)
        config = await self.interceptors.request.run(config)
        if not isinstance(config, RequestSpec):
            raise ConfigError(f"Request interceptor returned {type(config).__name__}, expected RequestSpec")

        token, detach = CancellationToken.linked(config.cancel_token)
        call = PendingCall(method=config.method_name, path=config.path, token=token)
        self._pending[call.request_id] = call
        logger.debug("Opening stream %s", config.path, extra={"request_id": call.request_id})
        try:
            response = await self._call.execute(config, token)
            try:
                if response.status >= 400:
                    raise status_error(
                        response.status,
                        f"Stream request failed with status {response.status} {response.status_text}".rstrip(),
                        config,
                    )
                if response.body is None:
                    return

                async for event in decode_stream(_until_cancelled(response.body, token)):
                    yield event
            finally:
                await response.aclose()
        finally:
            self._pending.pop(call.request_id, None)
            detach()


_EOF = object()


async def _next_chunk(iterator: AsyncIterator[bytes]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _EOF


async def _until_cancelled(chunks: AsyncIterator[bytes], token: CancellationToken) -> AsyncIterator[bytes]:
    """Yield ``chunks`` until exhausted, raising AbortError as soon as ``token`` fires.

    Each read races the token, so an idle connection is abandoned without
    waiting for the server to send again.
    """
    iterator = chunks.__aiter__()
    try:
        while True:
            token.raise_if_cancelled()
            read = asyncio.ensure_future(_next_chunk(iterator))
            unsubscribe = token.on_cancel(read.cancel)
            try:
                chunk = await read
            except asyncio.CancelledError:
                if token.cancelled:
                    raise AbortError(token.reason or "Request cancelled") from None
                raise
            finally:
                unsubscribe()
                if not read.done():
                    read.cancel()
            if chunk is _EOF:
                return
            yield chunk
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
