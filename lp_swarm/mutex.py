"""
Per-key async mutual exclusion.

Waiters are served strictly in arrival order.
"""

import asyncio
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, TypeVar

T = TypeVar("T")


class Mutex:
    """FIFO mutex for coroutines sharing one event loop."""

    def __init__(self):
        self._locked = False
        self._waiters: Deque[asyncio.Future] = deque()

    def is_locked(self) -> bool:
        return self._locked

    @property
    def waiting_count(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self) -> None:
        if not self._locked and all(w.done() for w in self._waiters):
            self._locked = True
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            # Ownership may already have been handed over
            if waiter.done() and not waiter.cancelled():
                self._release_to_next()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def release(self) -> None:
        if not self._locked:
            raise RuntimeError("release() called on an unlocked Mutex")
        self._release_to_next()

    def _release_to_next(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Lock stays held and passes directly to the next waiter
                waiter.set_result(True)
                return
        self._locked = False

    async def run_exclusive(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run `fn` once every earlier caller has finished."""
        await self.acquire()
        try:
            return await fn()
        finally:
            self.release()

    async def __aenter__(self) -> "Mutex":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class WalletMutexManager:
    """Lazily creates one Mutex per key and keeps it for the process lifetime."""

    def __init__(self):
        self._mutexes: Dict[str, Mutex] = {}

    @staticmethod
    def _normalize(key: str) -> str:
        return key.lower()

    def get_mutex(self, key: str) -> Mutex:
        key = self._normalize(key)
        mutex = self._mutexes.get(key)
        if mutex is None:
            mutex = Mutex()
            self._mutexes[key] = mutex
        return mutex

    async def run_exclusive(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        return await self.get_mutex(key).run_exclusive(fn)

    def stats(self) -> Dict[str, Dict[str, int]]:
        return {
            key: {"locked": int(m.is_locked()), "waiting": m.waiting_count}
            for key, m in self._mutexes.items()
        }
