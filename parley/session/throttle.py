"""Rate limiting for streamed-text flushes into the store."""

from __future__ import annotations

import time
from collections.abc import Callable

from parley.core.constants import FLUSH_INTERVAL_SECONDS


class FlushThrottle:
    """Decides when accumulated stream text should be written to the store.

    A flush is due once `interval` seconds have passed since the previous
    flush (or since start()). Over a stream of duration T this allows at
    most ceil(T / interval) throttled flushes; the caller adds one final
    flush at stream end.

    Args:
        interval: Minimum seconds between flushes.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        interval: float = FLUSH_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._interval = interval
        self._clock = clock
        self._last_flush = clock()
        self._last_text = ""
        self.flush_count = 0

    @property
    def last_text(self) -> str:
        """Text written by the most recent flush."""
        return self._last_text

    def start(self) -> None:
        """Reset the timer; the first flush is due `interval` from now."""
        self._last_flush = self._clock()

    def due(self) -> bool:
        return self._clock() - self._last_flush >= self._interval

    def mark(self, text: str) -> None:
        """Record that `text` was just flushed."""
        self._last_flush = self._clock()
        self._last_text = text
        self.flush_count += 1

    def needs_final(self, text: str) -> bool:
        """True if the final flush would change what the store shows."""
        return text != self._last_text
