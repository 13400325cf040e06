"""Concurrency Gate: bounds simultaneously in-flight requests.

Waiters queue strictly FIFO. A release hands the freed slot directly to the
longest-waiting caller in the same synchronous step, so a newly arriving
caller can never overtake the queue.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from httpgate.client.cancellation import CancellationToken
from httpgate.client.errors import AbortError
from httpgate.core import metrics

logger = logging.getLogger(__name__)


class ConcurrencyGate:
    """FIFO counting gate; ``limit`` of 0 or ``None`` means unbounded.

    Usage:
        gate = ConcurrencyGate(limit=4)

        async with gate.slot(cancel_token):
            ...  # at most 4 callers are in here at once
    """

    def __init__(self, limit: int | None = None):
        self.limit = max(limit or 0, 0)
        self.active = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def bounded(self) -> bool:
        return self.limit > 0

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    def _has_capacity(self) -> bool:
        return not self.bounded or self.active < self.limit

    async def acquire(self, token: CancellationToken | None = None) -> None:
        """Take a slot, suspending in FIFO order while the gate is full.

        Raises AbortError if ``token`` is cancelled before a slot is granted.
        """
        if token is not None:
            token.raise_if_cancelled()

        if self._has_capacity() and not self.waiting:
            self.active += 1
            metrics.track_inflight(1)
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        metrics.track_waiting(1)
        logger.debug("Gate full (%d/%d), queued at position %d", self.active, self.limit, len(self._waiters))

        def abort_waiter() -> None:
            if not waiter.done():
                waiter.set_exception(AbortError(token.reason if token and token.reason else "Request cancelled"))

        unsubscribe = token.on_cancel(abort_waiter) if token is not None else None
        try:
            await waiter
        except BaseException:
            if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                # Slot was handed over just as we were cancelled; pass it on.
                self.release()
            raise
        finally:
            if unsubscribe is not None:
                unsubscribe()
            try:
                self._waiters.remove(waiter)
            except ValueError:
                pass
            metrics.track_waiting(-1)

    def release(self) -> None:
        """Free a slot and hand it to the longest waiter, if any."""
        if self.active <= 0:
            logger.warning("Gate released more times than acquired")
            return
        self.active -= 1
        metrics.track_inflight(-1)

        while self._waiters and self._has_capacity():
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self.active += 1
            metrics.track_inflight(1)
            waiter.set_result(None)
            break

    @asynccontextmanager
    async def slot(self, token: CancellationToken | None = None) -> AsyncIterator[None]:
        await self.acquire(token)
        try:
            yield
        finally:
            self.release()

    def get_stats(self) -> dict:
        return {"active": self.active, "waiting": self.waiting, "limit": self.limit}
