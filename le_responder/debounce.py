"""Debounced trigger.

Batches bursts of signals into a single action that runs once no new signal
has arrived for a quiet period.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING = 1000


class DebouncedTrigger:
    """Runs registered callbacks after a quiet period following a signal."""

    def __init__(self, name: str, quiet_period: float,
                 initial_delay: Optional[float] = None,
                 max_pending: int = DEFAULT_MAX_PENDING):
        self.name = name
        self.quiet_period = quiet_period
        self.initial_delay = initial_delay
        self.fire_count = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self._callbacks: List[Callable[[], Awaitable[None]]] = []

    def on_fire(self, callback: Callable[[], Awaitable[None]]) -> None:
        """Register a callback run on every fire."""
        self._callbacks.append(callback)

    def signal(self) -> bool:
        """Request a fire. Never blocks."""
        try:
            self._queue.put_nowait(True)
            return True
        except asyncio.QueueFull:
            # A fire is already pending, it will cover this one
            logger.warning(f"[{self.name}] signal queue full, dropping signal")
            return False

    def pending(self) -> int:
        """Number of signals not yet consumed."""
        return self._queue.qsize()

    async def fire(self) -> None:
        """Run all callbacks now, re-signalling if any of them fails."""
        self.fire_count += 1
        failed = False
        for callback in self._callbacks:
            try:
                await callback()
            except Exception as e:
                logger.error(f"[{self.name}] error running callback, will try again soon: {e}")
                failed = True
        if failed:
            self.signal()

    async def run_forever(self) -> None:
        """Wait for signals and fire after each quiet period."""
        loop = asyncio.get_running_loop()
        deadline = None
        if self.initial_delay is not None:
            deadline = loop.time() + self.initial_delay

        while True:
            timeout = None if deadline is None else max(0.0, deadline - loop.time())
            try:
                await asyncio.wait_for(self._queue.get(), timeout)
            except asyncio.TimeoutError:
                # Disarmed until the next signal
                deadline = None
                logger.info(f"[{self.name}] quiet period elapsed, firing")
                await self.fire()
                continue

            logger.debug(f"[{self.name}] got signal, waiting {self.quiet_period}s before firing")
            deadline = loop.time() + self.quiet_period
