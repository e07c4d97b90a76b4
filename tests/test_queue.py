from __future__ import annotations

import asyncio
import logging

import pytest

from wagateway.queue import MessageQueue


@pytest.mark.asyncio
async def test_concurrency_is_capped_and_order_is_fifo() -> None:
    queue = MessageQueue(concurrency=2)
    gate = asyncio.Event()
    started: list[int] = []
    peak = 0

    def job(i: int):
        async def run() -> None:
            nonlocal peak
            started.append(i)
            peak = max(peak, queue.stats().active)
            await gate.wait()

        return run

    for i in range(5):
        queue.enqueue(job(i))
    await asyncio.sleep(0)

    stats = queue.stats()
    assert (stats.active, stats.pending) == (2, 3)
    assert started == [0, 1]

    gate.set()
    await queue.join()

    assert started == [0, 1, 2, 3, 4]
    assert peak == 2
    assert queue.stats().active == 0


@pytest.mark.asyncio
async def test_failing_task_is_logged_and_dropped(caplog) -> None:
    queue = MessageQueue(concurrency=1)
    done: list[str] = []

    async def boom() -> None:
        raise RuntimeError("bad row")

    async def ok() -> None:
        done.append("ok")

    with caplog.at_level(logging.ERROR, logger="wagateway.queue"):
        queue.enqueue(boom)
        queue.enqueue(ok)
        await queue.join()

    assert done == ["ok"]
    assert any("queued task failed" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_join_on_idle_queue_returns() -> None:
    await asyncio.wait_for(MessageQueue().join(), timeout=1)


def test_concurrency_must_be_positive() -> None:
    with pytest.raises(ValueError):
        MessageQueue(concurrency=0)
