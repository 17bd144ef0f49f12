import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class ExecutionSlot:
    """
    A capacity-1 execution token.

    `try_acquire()` takes the slot if it is free and never waits, which is what
    the tick overlap guard needs. `acquire()` queues callers in FIFO order,
    which is what the booking pipeline needs. Ownership passes directly from
    the releasing holder to the next waiter, so no caller can overtake the
    queue between a release and the waiter resuming.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._held = False
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def in_use(self) -> bool:
        return self._held

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    def try_acquire(self) -> bool:
        if self._held or self.waiting:
            return False
        self._held = True
        return True

    async def acquire(self) -> None:
        if self.try_acquire():
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.debug(f"Waiting for {self.name} slot ({self.waiting} queued)")
        try:
            await waiter
        except asyncio.CancelledError:
            # Ownership may have been handed over just before the cancellation.
            if waiter.done() and not waiter.cancelled():
                self.release()
            raise
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    def release(self) -> None:
        if not self._held:
            raise RuntimeError(f"{self.name} slot released while not held")

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._held = False

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()
