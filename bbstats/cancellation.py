from __future__ import annotations

from typing import Callable, List, Optional

from bbstats.errors import AbortError


class CancelToken:
    """Cooperative cancellation flag passed down through every pipeline layer.

    Callbacks registered with add_callback() run synchronously when the
    token is cancelled. The cache uses them to cancel the asyncio task that
    owns an upstream request, so an in-progress HTTP call stops promptly
    instead of at the next segment boundary.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: Optional[str] = None
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            cb()

    def add_callback(self, cb: Callable[[], None]) -> None:
        if self._cancelled:
            cb()
            return
        self._callbacks.append(cb)

    def remove_callback(self, cb: Callable[[], None]) -> None:
        try:
            self._callbacks.remove(cb)
        except ValueError:
            pass

    def child(self) -> "CancelToken":
        token = CancelToken()
        self.add_callback(lambda: token.cancel(self._reason))
        return token

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise AbortError(self._reason or "Aborted")
