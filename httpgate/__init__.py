"""httpgate: an asynchronous HTTP request client core."""

from httpgate.client.cache import ResponseCache, derive_cache_key
from httpgate.client.cancellation import CancellationToken
from httpgate.client.client import HttpClient
from httpgate.client.concurrency import ConcurrencyGate
from httpgate.client.dispatcher import Dispatcher
from httpgate.client.errors import (
    AbortError,
    ClientError,
    ConfigError,
    NetworkError,
    ParseError,
    RequestError,
    RequestTimeout,
    ServerError,
)
from httpgate.client.interceptors import InterceptorChain, InterceptorManager
from httpgate.client.retry import RetryingTransportCall
from httpgate.client.stream import StreamDecoder, decode_stream
from httpgate.client.transport import HttpxTransport, Transport
from httpgate.client.types import (
    ClientDefaults,
    HttpMethod,
    MultipartBody,
    RequestSpec,
    ResponseEnvelope,
    TransportRequest,
    TransportResponse,
)
from httpgate.core.logging import setup_logging

__all__ = [
    "AbortError",
    "CancellationToken",
    "ClientDefaults",
    "ClientError",
    "ConcurrencyGate",
    "ConfigError",
    "Dispatcher",
    "HttpClient",
    "HttpMethod",
    "HttpxTransport",
    "InterceptorChain",
    "InterceptorManager",
    "MultipartBody",
    "NetworkError",
    "ParseError",
    "RequestError",
    "RequestSpec",
    "RequestTimeout",
    "ResponseCache",
    "ResponseEnvelope",
    "RetryingTransportCall",
    "ServerError",
    "StreamDecoder",
    "Transport",
    "TransportRequest",
    "TransportResponse",
    "decode_stream",
    "derive_cache_key",
    "setup_logging",
]

__version__ = "0.1.0"
