"""Bounded worker pool for fan-out over many items."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def run_pooled(
    items: list[T],
    worker: Callable[[int, T], Awaitable[R]],
    concurrency: int,
    on_done: Callable[[int], None] | None = None,
) -> list[R]:
    """
    Run worker over items with at most ``concurrency`` calls in flight.

    A fixed set of workers pulls the next index as each call completes.
    Results come back in input order. Exceptions from worker propagate;
    callers that need degrade-and-continue catch inside worker.

    Args:
        items: Inputs, processed in order of index
        worker: async callable taking (index, item)
        concurrency: Number of workers (clamped to [1, len(items)])
        on_done: Optional callback with the running count of finished items

    Returns:
        Results aligned with items
    """
    if not items:
        return []

    results: list[R | None] = [None] * len(items)
    next_index = 0
    finished = 0

    async def _worker() -> None:
        nonlocal next_index, finished
        while next_index < len(items):
            i = next_index
            next_index += 1
            results[i] = await worker(i, items[i])
            finished += 1
            if on_done is not None:
                on_done(finished)

    workers = max(1, min(concurrency, len(items)))
    await asyncio.gather(*(_worker() for _ in range(workers)))
    return results  # type: ignore[return-value]
