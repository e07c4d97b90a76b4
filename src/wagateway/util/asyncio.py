from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any, TypeVar

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]

logger = logging.getLogger(__name__)

# Strong references to fire-and-forget tasks; the event loop only keeps weak ones.
_BACKGROUND: set[asyncio.Task[Any]] = set()


async def cancel_suppress(task: asyncio.Task[Any] | None) -> None:
    if not task or task.done():
        return
    # Cancelling the running task from inside itself would raise at the next await.
    if task is asyncio.current_task():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


def ensure_task(coro: Coroutine[Any, Any, T], *, name: str | None = None) -> asyncio.Task[T]:
    t: asyncio.Task[T] = asyncio.create_task(coro, name=name)
    return t


def _log_failure(task: asyncio.Task[Any]) -> None:
    _BACKGROUND.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("background task %s failed", task.get_name(), exc_info=exc)


def fire_and_forget(
    coro: Coroutine[Any, Any, Any], *, name: str | None = None
) -> asyncio.Task[Any]:
    """Schedule `coro` without awaiting it; failures are logged, never raised."""

    t = ensure_task(coro, name=name)
    _BACKGROUND.add(t)
    t.add_done_callback(_log_failure)
    return t


async def wait_background() -> None:
    """Await every pending fire-and-forget task (used on shutdown and in tests)."""

    while True:
        pending = [t for t in _BACKGROUND if not t.done()]
        if not pending:
            return
        await asyncio.gather(*pending, return_exceptions=True)
