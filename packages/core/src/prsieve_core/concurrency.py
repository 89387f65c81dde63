"""Concurrency control for parallel batch execution.

Two independent limits apply to every in-flight batch: a counting semaphore
bounds how many batches run at once, and a token budget bounds how many
estimated tokens those batches may hold between them.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque

logger = logging.getLogger(__name__)


class Semaphore:
    """FIFO counting semaphore for asyncio tasks.

    Tracks permits currently held and the high-water mark so callers can
    verify the concurrency bound after a run.
    """

    def __init__(self, permits: int):
        if permits <= 0:
            raise ValueError("Semaphore permits must be greater than 0")
        self.permits = permits
        self._available = permits
        self._waiters: deque[asyncio.Future] = deque()
        self.in_use = 0
        self.peak_in_use = 0
        logger.debug("Semaphore created with %d permits", permits)

    @property
    def available(self) -> int:
        return self._available

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    def _grant(self):
        self.in_use += 1
        self.peak_in_use = max(self.peak_in_use, self.in_use)

    async def acquire(self) -> None:
        if self._available > 0 and not self._waiters:
            self._available -= 1
            self._grant()
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.debug("Semaphore permit requested, waiting in queue (%d waiting)", self.waiting)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # A permit was handed over just before cancellation: pass it on.
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        if self.in_use <= 0:
            raise ValueError("Semaphore released more times than acquired")
        self.in_use -= 1
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Hand the permit straight to the next waiter.
                self._grant()
                waiter.set_result(None)
                return
        self._available += 1

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.release()


class TokenBudgetManager:
    """Shared ledger of estimated tokens reserved by in-flight batches.

    ``allocate`` and ``release`` may be called from worker threads as well as
    the event loop, so every mutation happens under one lock.
    """

    def __init__(self, total_budget: int):
        if total_budget <= 0:
            raise ValueError("Token budget must be greater than 0")
        self.total_budget = total_budget
        self._lock = threading.Lock()
        self._allocations: dict[int, int] = {}
        self.reserved = 0
        self.peak_reserved = 0
        self.consumed = 0
        logger.debug("TokenBudgetManager created with budget of %d tokens", total_budget)

    @property
    def available(self) -> int:
        with self._lock:
            return self.total_budget - self.reserved

    @property
    def active_batches(self) -> int:
        with self._lock:
            return len(self._allocations)

    def allocate(self, batch_id: int, amount: int) -> bool:
        """Reserve ``amount`` tokens for a batch; False means nothing was reserved."""
        if amount <= 0:
            logger.warning("Invalid token estimate for batch %d: %d", batch_id, amount)
            return False
        with self._lock:
            if batch_id in self._allocations:
                logger.warning("Batch %d already has a token allocation", batch_id)
                return False
            if self.reserved + amount > self.total_budget:
                logger.debug(
                    "Insufficient token budget for batch %d: need %d, available %d",
                    batch_id,
                    amount,
                    self.total_budget - self.reserved,
                )
                return False
            self._allocations[batch_id] = amount
            self.reserved += amount
            self.peak_reserved = max(self.peak_reserved, self.reserved)
            logger.debug(
                "Allocated %d tokens for batch %d (%d remaining)", amount, batch_id, self.total_budget - self.reserved
            )
            return True

    def release(self, batch_id: int) -> None:
        with self._lock:
            amount = self._allocations.pop(batch_id, None)
            if amount is None:
                logger.warning("No token allocation found for batch %d", batch_id)
                return
            self.reserved -= amount
            self.consumed += amount
            logger.debug("Released %d tokens from batch %d", amount, batch_id)

    def status(self) -> dict:
        with self._lock:
            return {
                "total": self.total_budget,
                "reserved": self.reserved,
                "available": self.total_budget - self.reserved,
                "consumed": self.consumed,
                "active_batches": len(self._allocations),
                "utilization_percent": round(self.reserved / self.total_budget * 100, 2),
            }


def optimal_concurrency(
    total_batches: int,
    max_concurrent: int,
    average_tokens_per_batch: float,
    total_token_budget: int,
) -> int:
    """Concurrency such that worst-case simultaneous token draw fits the budget."""
    optimal = min(max_concurrent, total_batches)
    if average_tokens_per_batch > 0:
        token_limit = int(total_token_budget // average_tokens_per_batch)
        optimal = min(optimal, token_limit)
    else:
        token_limit = optimal
    optimal = max(1, optimal)
    logger.debug(
        "Calculated optimal concurrency: %d (max: %d, batches: %d, token-limited: %d)",
        optimal,
        max_concurrent,
        total_batches,
        token_limit,
    )
    return optimal
