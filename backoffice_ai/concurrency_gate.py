"""
Process-wide concurrency gate for outbound Gemini calls.

A single gate is created at startup and shared by every GeminiGateway
instance, so no more than `capacity` provider requests are in flight at
once no matter how many queries are being served.
"""

import asyncio
import logging
from typing import Optional

from . import config

logger = logging.getLogger(__name__)


class ConcurrencyGate:
    """Counting gate used as `async with gate:`.

    The slot is released on every exit path of the block, including
    exceptions, timeouts and task cancellation.
    """

    def __init__(self, capacity: int = 3):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._semaphore = asyncio.Semaphore(capacity)
        self.in_flight = 0
        self.peak_in_flight = 0

    async def __aenter__(self) -> "ConcurrencyGate":
        await self._semaphore.acquire()
        self.in_flight += 1
        if self.in_flight > self.peak_in_flight:
            self.peak_in_flight = self.in_flight
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.in_flight -= 1
        self._semaphore.release()

    @property
    def available(self) -> int:
        return self.capacity - self.in_flight


_gate: Optional[ConcurrencyGate] = None


def get_gate() -> ConcurrencyGate:
    """Return the process-wide gate, creating it on first use."""
    global _gate
    if _gate is None:
        _gate = ConcurrencyGate(config.GEMINI_MAX_CONCURRENCY)
        logger.info(f"[GATE] Created process-wide Gemini gate (capacity={_gate.capacity})")
    return _gate
