from __future__ import annotations

import asyncio
from typing import Callable, Optional


class DebounceTimer:
    """One re-armable delayed callback on the running loop.

    ``arm`` cancels whatever was pending, so at most one firing is ever
    scheduled. The callback receives the token given to ``arm``, letting the
    receiver ignore firings for an utterance it has already moved past.
    """

    def __init__(self, interval: float, callback: Callable[[object], None]):
        if interval <= 0:
            raise ValueError("debounce interval must be positive")
        self.interval = interval
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self, token: object = None) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.interval, self._fire, token)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self, token: object) -> None:
        self._handle = None
        self._callback(token)
