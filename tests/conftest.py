import asyncio
import json
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest

from httpgate.client.types import TransportRequest, TransportResponse


async def _iter_chunks(chunks: list[bytes]) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk


def make_response(
    status: int = 200,
    json_data: Any = None,
    text: str = "",
    headers: dict[str, str] | None = None,
    chunks: list[bytes] | None = None,
    status_text: str = "",
) -> TransportResponse:
    """Build a TransportResponse with a fresh, lazily read body."""
    headers = dict(headers or {})
    if chunks is None:
        if json_data is not None:
            chunks = [json.dumps(json_data).encode()]
            headers.setdefault("content-type", "application/json")
        else:
            chunks = [text.encode()] if text else []
            headers.setdefault("content-type", "text/plain; charset=utf-8")
    return TransportResponse(
        status=status,
        status_text=status_text or ("OK" if status < 400 else "Error"),
        headers=headers,
        body=_iter_chunks(chunks),
    )


class FakeTransport:
    """Scripted transport: each call consumes the next outcome.

    An outcome is a TransportResponse, an exception instance to raise, or a
    callable ``(url, request)`` returning/awaiting one of those.
    """

    def __init__(self, *outcomes: Any):
        self.outcomes = list(outcomes)
        self.calls: list[tuple[str, TransportRequest]] = []
        self.responses: list[TransportResponse] = []

    async def send(self, url: str, request: TransportRequest) -> TransportResponse:
        self.calls.append((url, request))
        if not self.outcomes:
            raise AssertionError(f"Unexpected transport call: {request.method} {url}")
        outcome = self.outcomes.pop(0)
        if callable(outcome):
            outcome = outcome(url, request)
            if asyncio.iscoroutine(outcome):
                outcome = await outcome
        if isinstance(outcome, BaseException):
            raise outcome
        self.responses.append(outcome)
        return outcome

    @property
    def call_count(self) -> int:
        return len(self.calls)


class ManualClock:
    """Monotonic clock under test control."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Backoff sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def transport_factory() -> Callable[..., FakeTransport]:
    return FakeTransport


@pytest.fixture
def response_factory() -> Callable[..., TransportResponse]:
    return make_response
