"""Cancellation support for turns."""

import asyncio

from parley.core.errors import TurnCancelled


class CancellationToken:
    """Abort signal for cooperative cancellation of a turn.

    The orchestrator checks the token between stream events and before each
    tool starts, and races blocking waits against wait().

    Example:
        token = CancellationToken()

        async def consume(stream):
            async for event in stream:
                token.raise_if_cancelled()
                ...

        # From the UI:
        token.cancel()
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._event: asyncio.Event | None = None

    @property
    def is_cancelled(self) -> bool:
        """Check if cancellation has been requested."""
        return self._cancelled

    def cancel(self) -> None:
        """Request cancellation and wake waiters."""
        if self._cancelled:
            return
        self._cancelled = True
        if self._event is not None:
            self._event.set()

    async def wait(self) -> None:
        """Block until cancel() is called."""
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        """Raise TurnCancelled if cancellation was requested."""
        if self._cancelled:
            raise TurnCancelled()
