"""Error taxonomy for the request pipeline.

Only ``NetworkError`` (and its ``RequestTimeout`` subclass) is retried.
``AbortError`` is terminal. Responses with an error status are returned as
envelopes by ``execute``; ``ClientError``/``ServerError`` are raised only
where no envelope can be handed back (streams).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from httpgate.client.types import RequestSpec, ResponseEnvelope


class RequestError(Exception):
    """Base class for every failure surfaced by the client."""

    code = "request_error"

    def __init__(
        self,
        message: str,
        config: RequestSpec | None = None,
        response: ResponseEnvelope | None = None,
    ):
        super().__init__(message)
        self.config = config
        self.response = response


class ConfigError(RequestError):
    """The request description cannot be dispatched."""

    code = "config"


class NetworkError(RequestError):
    """The transport could not complete the exchange."""

    code = "network"


class RequestTimeout(NetworkError):
    """A single attempt exceeded the configured timeout."""

    code = "timeout"


class AbortError(RequestError):
    """The caller cancelled the request."""

    code = "aborted"


class _StatusError(RequestError):
    def __init__(
        self,
        message: str,
        status: int,
        config: RequestSpec | None = None,
        response: ResponseEnvelope | None = None,
    ):
        super().__init__(message, config=config, response=response)
        self.status = status


class ServerError(_StatusError):
    code = "server_error"


class ClientError(_StatusError):
    code = "client_error"


class ParseError(RequestError):
    """A body or stream payload could not be decoded."""

    code = "parse"


def status_error(status: int, message: str, config: RequestSpec | None = None) -> RequestError:
    """Build the status error matching ``status`` (>=500 server, else client)."""
    if status >= 500:
        return ServerError(message, status, config=config)
    return ClientError(message, status, config=config)
