"""Admission control for CPU-heavy encode jobs."""

from __future__ import annotations

import asyncio
import collections
import logging
from contextlib import suppress


log = logging.getLogger(__name__)


class GateSlot:
    """One admitted job. Releasing twice is a no-op."""

    def __init__(self, gate: ConcurrencyGate) -> None:
        self._gate = gate
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._gate._release()


class ConcurrencyGate:
    """Bounded number of running jobs; waiters are admitted in FIFO order.

    All state is touched from the event loop thread only, and never across an
    await, so no lock is needed around the counters.
    """

    def __init__(self, capacity: int = 1) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._active = 0
        self._waiters: collections.deque[asyncio.Future[None]] = collections.deque()

    @property
    def running(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for fut in self._waiters if not fut.done())

    async def acquire(self) -> GateSlot:
        if self._active < self.capacity and not self.waiting:
            self._active += 1
            return GateSlot(self)

        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        log.debug("Gate full (%d running), %d waiting", self._active, len(self._waiters))
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Slot was handed to us just before cancellation, pass it on
                self._release()
            else:
                with suppress(ValueError):
                    self._waiters.remove(fut)
            raise
        return GateSlot(self)

    def _release(self) -> None:
        # Hand the slot straight to the oldest live waiter so a new arrival
        # cannot jump the queue between release and wakeup
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                return
        self._active -= 1

    def stats(self) -> dict[str, int]:
        return {"capacity": self.capacity, "running": self.running, "waiting": self.waiting}
