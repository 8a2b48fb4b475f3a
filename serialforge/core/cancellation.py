"""
Cooperative cancellation for SerialForge runs.

One CancellationSignal is owned by each Runner and threaded through every
suspension point (generation calls, retry backoff, inter-installment delays).
Nothing is preempted: an in-flight provider call finishes, and the loop observes
the signal at its next checkpoint.
"""

import asyncio


class CancellationSignal:
    """Stop and pause flags backed by asyncio events."""

    def __init__(self):
        self._stopped = asyncio.Event()
        self._running = asyncio.Event()
        self._running.set()

    @property
    def is_stopped(self) -> bool:
        return self._stopped.is_set()

    @property
    def is_paused(self) -> bool:
        return not self._running.is_set() and not self._stopped.is_set()

    def stop(self) -> None:
        self._stopped.set()
        # Wake anything parked in wait_if_paused
        self._running.set()

    def pause(self) -> None:
        if not self._stopped.is_set():
            self._running.clear()

    def resume(self) -> None:
        self._running.set()

    def reset(self) -> None:
        self._stopped.clear()
        self._running.set()

    async def wait_if_paused(self) -> bool:
        """Block while paused. Returns False when the run was stopped."""
        await self._running.wait()
        return not self.is_stopped

    async def sleep(self, delay: float) -> bool:
        """Sleep up to ``delay`` seconds. Returns False if stopped meanwhile."""
        if self.is_stopped:
            return False
        if delay <= 0:
            return True
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=delay)
            return False
        except asyncio.TimeoutError:
            return True
