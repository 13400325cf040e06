"""Interceptor Chain: ordered request/response transforms.

Each manager keeps its records in a slot list addressed by registration
index. Unregistering tombstones the slot (``None``), so handles held by other
callers stay valid and an index is never handed out twice.

Transforms may be plain callables or coroutines.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from httpgate.client.types import RequestSpec, ResponseEnvelope

logger = logging.getLogger(__name__)

V = TypeVar("V")

SuccessTransform = Callable[[Any], Any]
FailureTransform = Callable[[BaseException], Any]


@dataclass(frozen=True)
class InterceptorRecord:
    on_success: SuccessTransform | None = None
    on_failure: FailureTransform | None = None


async def _call(fn: Callable[[Any], Any], arg: Any) -> Any:
    result = fn(arg)
    if inspect.isawaitable(result):
        result = await result
    return result


class InterceptorManager(Generic[V]):
    """One phase of the interceptor chain.

    Usage:
        handle = manager.register(add_auth_header)
        ...
        manager.unregister(handle)
    """

    def __init__(self, name: str = ""):
        self.name = name
        self._slots: list[InterceptorRecord | None] = []

    def register(
        self,
        on_success: SuccessTransform | None = None,
        on_failure: FailureTransform | None = None,
    ) -> int:
        """Append a record and return its handle (the slot index)."""
        self._slots.append(InterceptorRecord(on_success=on_success, on_failure=on_failure))
        return len(self._slots) - 1

    def unregister(self, handle: int) -> None:
        """Tombstone the slot for ``handle``; unknown handles are ignored."""
        if 0 <= handle < len(self._slots):
            self._slots[handle] = None

    def records(self) -> list[InterceptorRecord]:
        """Live records in registration order."""
        return [record for record in self._slots if record is not None]

    def __len__(self) -> int:
        return len(self.records())

    async def run(self, value: V) -> V:
        """Thread ``value`` through every live record, left to right.

        A success transform that raises moves the chain into the failure
        state; the next failure transform may recover by returning a value,
        after which success transforms resume. A missing transform passes the
        current state through unchanged. Raises if the chain ends failed.
        """
        error: BaseException | None = None
        for record in self.records():
            if error is None:
                if record.on_success is None:
                    continue
                try:
                    value = await _call(record.on_success, value)
                except Exception as exc:
                    error = exc
            elif record.on_failure is not None:
                try:
                    value = await _call(record.on_failure, error)
                    error = None
                except Exception as exc:
                    error = exc

        if error is not None:
            raise error
        return value

    async def recover(self, error: BaseException) -> V:
        """Offer ``error`` to the failure transforms, left to right.

        The first transform that returns instead of raising supplies the
        result and the remaining records are skipped. A transform that raises
        replaces the error seen by the next one. Re-raises the last error if
        nothing handles it.
        """
        for record in self.records():
            if record.on_failure is None:
                continue
            try:
                return await _call(record.on_failure, error)
            except Exception as exc:
                error = exc

        raise error


class InterceptorChain:
    """The request-phase and response-phase managers of one client."""

    def __init__(self):
        self.request: InterceptorManager[RequestSpec] = InterceptorManager("request")
        self.response: InterceptorManager[ResponseEnvelope] = InterceptorManager("response")

    def counts(self) -> dict[str, int]:
        return {"request": len(self.request), "response": len(self.response)}
