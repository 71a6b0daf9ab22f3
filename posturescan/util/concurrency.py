"""Async building blocks for running scans side by side.

Two shapes show up in the engine:
- fan-out/fan-in where every task must settle before anyone decides anything
  (the orchestrator never fails fast on the first analyzer error)
- bounded concurrency with a small delay so batch runs don't hammer targets
"""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Optional


@dataclass
class Settled:
    """Tagged outcome of one task: a value or the exception it raised."""
    name: str
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def gather_settled(tasks: Dict[str, Awaitable[Any]]) -> Dict[str, Settled]:
    """Run named awaitables concurrently and wait for all of them to settle.

    Failures are collected, not propagated - one task failing never cancels
    its siblings.
    """
    names = list(tasks.keys())
    outcomes = await asyncio.gather(*tasks.values(), return_exceptions=True)

    settled = {}
    for name, outcome in zip(names, outcomes):
        if isinstance(outcome, BaseException):
            settled[name] = Settled(name=name, error=outcome)
        else:
            settled[name] = Settled(name=name, value=outcome)
    return settled


class RateLimiter:
    """Spaces consecutive starts at least `delay` seconds apart, across all callers."""

    def __init__(self, delay: float = 0.05):
        self.delay = delay
        self._previous = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self):
        async with self._lock:
            wait = self._previous + self.delay - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            self._previous = time.monotonic()


class ConcurrencyController:
    """Caps how many scans run at once and paces how fast new ones start."""

    def __init__(self, max_workers: int = 4, rate_limit_delay: float = 0.05):
        self.max_workers = max_workers
        self.semaphore = asyncio.Semaphore(max_workers)
        self.rate_limiter = RateLimiter(delay=rate_limit_delay)

    @asynccontextmanager
    async def acquire(self):
        """Hold a worker slot for the duration of the block.

            async with controller.acquire():
                await orchestrate_scan(...)
        """
        async with self.semaphore:
            await self.rate_limiter.acquire()
            yield
