"""Caller-facing cancellation handle.

``cancel()`` runs every registered callback synchronously, so an abort
reaches the running transport attempt and any queued gate waiter within the
same step that signalled it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from httpgate.client.errors import AbortError

logger = logging.getLogger(__name__)


class CancellationToken:
    """One-shot cancellation signal with synchronous subscribers.

    Usage:
        token = CancellationToken()
        task = asyncio.create_task(client.get("/slow", cancel_token=token))
        token.cancel("user navigated away")
    """

    def __init__(self):
        self._cancelled = False
        self._reason: str | None = None
        self._callbacks: dict[int, Callable[[], None]] = {}
        self._next_id = 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        callbacks = list(self._callbacks.values())
        self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback failed")

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback`` and return a function that unregisters it.

        If the token is already cancelled the callback runs immediately.
        """
        if self._cancelled:
            callback()
            return lambda: None

        callback_id = self._next_id
        self._next_id += 1
        self._callbacks[callback_id] = callback

        def unsubscribe() -> None:
            self._callbacks.pop(callback_id, None)

        return unsubscribe

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise AbortError(self._reason or "Request cancelled")

    @classmethod
    def linked(cls, parent: CancellationToken | None) -> tuple[CancellationToken, Callable[[], None]]:
        """Create a child token that cancels together with ``parent``.

        Returns the child and a function that detaches it from the parent.
        """
        child = cls()
        if parent is None:
            return child, lambda: None
        detach = parent.on_cancel(lambda: child.cancel(parent.reason))
        return child, detach
