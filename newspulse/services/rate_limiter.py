import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, TypeVar


T = TypeVar('T')


class RateLimiter:
    """
    Bounds the number of concurrently running tasks.

    Excess tasks wait in strict FIFO order. When a task finishes, its slot
    is handed straight to the oldest waiter, whichever task freed it.
    """

    def __init__(self, max_concurrent: int = 4):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._active = 0
        self._waiters: Deque[asyncio.Future] = deque()
        self.logger = logging.getLogger(__name__)

    @property
    def active(self) -> int:
        return self._active

    @property
    def pending(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def run(self, task: Callable[[], Awaitable[T]]) -> T:
        """Run task() once a slot is free and return its result."""
        await self._acquire()
        try:
            return await task()
        finally:
            self._release()

    async def _acquire(self) -> None:
        if self._active < self.max_concurrent and not self.pending:
            self._active += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        self.logger.debug(f"Queued task ({self.pending} waiting, {self._active} active)")
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was already handed over, pass it on
                self._release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def _release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Slot moves to the waiter, active count is unchanged
                waiter.set_result(None)
                return
        self._active -= 1
