from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .util.asyncio import ensure_task

logger = logging.getLogger(__name__)

QueueTask = Callable[[], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class QueueStats:
    pending: int
    active: int


class MessageQueue:
    """
    FIFO work queue with a fixed number of concurrent slots.

    Tasks start in enqueue order as slots free up. A failing task is logged and
    dropped; there is no retry. Ordering per conversation is not guaranteed
    beyond start order; idempotent writes take care of that.
    """

    def __init__(self, concurrency: int = 10) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.concurrency = concurrency
        self._pending: deque[QueueTask] = deque()
        self._active = 0
        self._running: set[asyncio.Task[None]] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    def enqueue(self, task: QueueTask) -> None:
        self._pending.append(task)
        self._idle.clear()
        self._pump()

    def stats(self) -> QueueStats:
        return QueueStats(pending=len(self._pending), active=self._active)

    async def join(self) -> None:
        """Wait until nothing is pending or running."""

        await self._idle.wait()

    def _pump(self) -> None:
        while self._active < self.concurrency and self._pending:
            task = self._pending.popleft()
            self._active += 1
            t = ensure_task(self._run(task), name="queue.task")
            self._running.add(t)
            t.add_done_callback(self._running.discard)

    async def _run(self, task: QueueTask) -> None:
        try:
            await task()
        except Exception:
            logger.exception("queued task failed")
        finally:
            self._active -= 1
            self._pump()
            if not self._active and not self._pending:
                self._idle.set()
