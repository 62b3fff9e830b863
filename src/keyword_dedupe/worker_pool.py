"""Bounded asyncio worker pool and blocking-call helpers.

Work items are pulled from a shared cursor by a fixed number of worker tasks
until the list is exhausted. A failing item never cancels its siblings: the
exception is captured in that item's result slot.
"""

import asyncio
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar, Union

T = TypeVar("T")
R = TypeVar("R")


async def run_bounded(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    concurrency: int,
    on_done: Optional[Callable[[int], None]] = None,
) -> List[Union[R, BaseException]]:
    """Run ``worker`` over ``items`` with at most ``concurrency`` in flight.

    Args:
        items: Work items.
        worker: Coroutine function applied to each item.
        concurrency: Maximum number of concurrently running workers.
        on_done: Optional callback receiving the number of completed items.

    Returns:
        Results in input order. Items whose worker raised an Exception hold
        that exception instead of a result.
    """
    results: List[Union[R, BaseException, None]] = [None] * len(items)
    cursor = 0
    completed = 0

    async def _drain() -> None:
        nonlocal cursor, completed
        while True:
            index = cursor
            if index >= len(items):
                return
            cursor += 1
            try:
                results[index] = await worker(items[index])
            except Exception as exc:  # noqa: BLE001 - captured per item
                results[index] = exc
            completed += 1
            if on_done is not None:
                on_done(completed)

    workers = max(1, min(concurrency, len(items)))
    if items:
        await asyncio.gather(*(_drain() for _ in range(workers)))
    return results  # type: ignore[return-value]


async def call_blocking(fn: Callable[..., R], *args, timeout: float, **kwargs) -> R:
    """Run a blocking SDK call in a thread, bounded by ``timeout`` seconds.

    Raises:
        asyncio.TimeoutError: If the call does not finish in time. The thread
            is abandoned, not interrupted.
    """
    return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=timeout)
