"""Run-scoped cancellation signal shared by the orchestrator and every executor."""

import asyncio

from flowengine.graph.errors import CancellationError


class CancellationToken:
    """
    Cooperative cancellation for one run.

    Executors call ``raise_if_cancelled()`` at safe points (between retries,
    between agent iterations); the orchestrator awaits ``wait()`` alongside
    running nodes.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "Run cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError(self.reason or "Run cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep that ends early (raising) when the run is cancelled."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            return
        self.raise_if_cancelled()
