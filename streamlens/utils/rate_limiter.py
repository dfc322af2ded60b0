"""
Rate limiting for outbound remote calls
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")


class RateLimiter:
    """
    Bounds concurrent in-flight calls and enforces a minimum spacing
    between call starts.
    Waiting callers are admitted in arrival order.
    """

    def __init__(self, max_concurrent: int = 5, min_spacing: float = 0.2):
        """
        Initialize the limiter.

        :param max_concurrent: Maximum number of operations in flight.
        :param min_spacing: Minimum seconds between consecutive call starts.
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.min_spacing = min_spacing
        self._in_flight = 0
        self._last_start: Optional[float] = None
        # Created lazily so the limiter can be built outside a running loop.
        self._admission: Optional[asyncio.Lock] = None
        self._slots: Optional[asyncio.Semaphore] = None

    @property
    def in_flight(self) -> int:
        """Number of operations currently running."""
        return self._in_flight

    def _init_primitives_if_necessary(self):
        if self._admission is None:
            self._admission = asyncio.Lock()
            self._slots = asyncio.Semaphore(self.max_concurrent)

    async def _admit(self):
        # asyncio.Lock wakes waiters in FIFO order.
        # Only the lock holder waits on the semaphore,
        # so slots are also handed out in arrival order.
        async with self._admission:
            await self._slots.acquire()
            loop = asyncio.get_running_loop()
            if self._last_start is not None:
                remaining = self.min_spacing - (loop.time() - self._last_start)
                if remaining > 0:
                    try:
                        await asyncio.sleep(remaining)
                    except asyncio.CancelledError:
                        self._slots.release()
                        raise
            self._last_start = loop.time()
            self._in_flight += 1

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Execute an operation once a slot is available.

        :param operation: Zero-argument callable returning an awaitable.
        :return: The operation result.
        """
        self._init_primitives_if_necessary()
        await self._admit()
        try:
            return await operation()
        finally:
            self._in_flight -= 1
            self._slots.release()
