"""Per-session cooperative cancellation."""
from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable
from typing import Any


class _Cancelled:
    """Sentinel returned by CancellationToken.race() when the token fired."""

    def __repr__(self) -> str:
        return "CANCELLED"


CANCELLED: Any = _Cancelled()


class CancellationToken:
    """A one-shot stop signal owned by a single generation request.

    The loop checks ``cancelled`` before each unit of work and races its
    suspension points against the token so a stalled provider cannot
    delay a stop.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "stopped by user") -> bool:
        """Signal cancellation. Returns False if already cancelled."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[Any]) -> Any:
        """Await ``awaitable`` unless the token fires first.

        Returns the awaitable's result, or CANCELLED after cancelling the
        pending work. Exceptions raised by the awaitable propagate.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            return CANCELLED
        work = asyncio.ensure_future(awaitable)
        stop = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            stop.cancel()
        if work.done():
            return work.result()
        work.cancel()
        # The abandoned work's own outcome is irrelevant once stopped.
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await work
        return CANCELLED
