"""Admission control for venue submissions.

A single global ceiling on concurrently outstanding submissions. When the
ceiling is reached, callers wait in FIFO order per wallet context; free
slots are handed out round-robin across contexts that have waiters.
"""

from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator

from copybot.observability.logger import get_logger
from copybot.observability.metrics import metrics

log = get_logger(__name__)


class AdmissionControl:
    """Bounded-outstanding gate shared by every pipeline."""

    def __init__(self, max_outstanding: int):
        if max_outstanding < 1:
            raise ValueError("max_outstanding must be >= 1")
        self._max = max_outstanding
        self._outstanding = 0
        self._waiters: dict[str, deque[asyncio.Future]] = {}
        self._turns: deque[str] = deque()
        self._total_admitted = 0
        self._total_waits = 0

    @property
    def outstanding(self) -> int:
        return self._outstanding

    @property
    def waiting(self) -> int:
        return sum(
            1 for q in self._waiters.values() for f in q if not f.done()
        )

    async def acquire(self, context: str) -> None:
        """Take a slot for `context`, waiting behind earlier callers."""
        if self._outstanding < self._max and not self._turns:
            self._admit(context)
            return

        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        queue = self._waiters.setdefault(context, deque())
        queue.append(fut)
        if context not in self._turns:
            self._turns.append(context)
        self._total_waits += 1
        self._grant_next()
        log.debug(
            "admission.queued",
            context=context,
            outstanding=self._outstanding,
            position=len(queue),
        )
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Slot was granted just before cancellation; hand it on
                self.release()
            else:
                try:
                    queue.remove(fut)
                except ValueError:
                    pass
                if not queue:
                    self._waiters.pop(context, None)
                    if context in self._turns:
                        self._turns.remove(context)
            raise

    def release(self) -> None:
        if self._outstanding <= 0:
            raise RuntimeError("release() without matching acquire()")
        self._outstanding -= 1
        metrics.gauge("admission.outstanding", self._outstanding)
        self._grant_next()

    def _admit(self, context: str) -> None:
        self._outstanding += 1
        self._total_admitted += 1
        metrics.gauge("admission.outstanding", self._outstanding)
        log.debug("admission.granted", context=context, outstanding=self._outstanding)

    def _grant_next(self) -> None:
        while self._outstanding < self._max and self._turns:
            context = self._turns.popleft()
            queue = self._waiters.get(context)
            while queue and queue[0].done():
                queue.popleft()
            if not queue:
                self._waiters.pop(context, None)
                continue
            fut = queue.popleft()
            self._admit(context)
            fut.set_result(None)
            if queue:
                self._turns.append(context)
            else:
                self._waiters.pop(context, None)

    @asynccontextmanager
    async def slot(self, context: str) -> AsyncIterator[None]:
        await self.acquire(context)
        try:
            yield
        finally:
            self.release()

    @property
    def stats(self) -> dict[str, int]:
        return {
            "max_outstanding": self._max,
            "outstanding": self._outstanding,
            "waiting": self.waiting,
            "total_admitted": self._total_admitted,
            "total_waits": self._total_waits,
        }
