"""
Nonce Manager

Hands out transaction nonces for one address. Every read-modify-write runs
under the address's mutex so concurrent callers never collide.
"""

from typing import Optional, Set

from .mutex import Mutex
from .utils import logger, format_address


class NonceManager:
    """Tracks the next nonce and the set of issued-but-unsettled nonces."""

    def __init__(self, address: str, initial_nonce: int = 0, mutex: Optional[Mutex] = None):
        self.address = address
        self._current = initial_nonce
        self._pending: Set[int] = set()
        self._mutex = mutex or Mutex()
        self.synced = False

    @property
    def current_nonce(self) -> int:
        return self._current

    @property
    def pending_nonces(self) -> Set[int]:
        return set(self._pending)

    async def get_next_nonce(self) -> int:
        async def issue() -> int:
            nonce = self._current
            self._pending.add(nonce)
            self._current += 1
            return nonce

        return await self._mutex.run_exclusive(issue)

    async def mark_nonce_used(self, nonce: int) -> None:
        async def settle() -> None:
            self._pending.discard(nonce)

        await self._mutex.run_exclusive(settle)

    async def mark_nonce_failed(self, nonce: int) -> None:
        """Release a nonce whose transaction never reached the chain."""
        async def rewind() -> None:
            self._pending.discard(nonce)
            if nonce < self._current:
                self._current = nonce
            logger.debug(f"Nonce {nonce} released for {format_address(self.address)}, next is {self._current}")

        await self._mutex.run_exclusive(rewind)

    async def reset(self, new_nonce: int) -> None:
        """Reinitialize from an authoritative on-chain nonce."""
        async def reinit() -> None:
            self._current = new_nonce
            self._pending.clear()
            self.synced = True

        await self._mutex.run_exclusive(reinit)
        logger.info(f"Nonce for {format_address(self.address)} reset to {new_nonce}")

    async def sync(self, chain_pending_nonce: int) -> int:
        """
        Align with the chain's pending transaction count.

        Never moves backwards past nonces this process still has in flight.
        """
        async def align() -> int:
            if not self._pending:
                self._current = max(self._current, chain_pending_nonce)
            self.synced = True
            return self._current

        return await self._mutex.run_exclusive(align)

    def __repr__(self) -> str:
        return f"NonceManager({format_address(self.address)}, current={self._current}, pending={sorted(self._pending)})"
