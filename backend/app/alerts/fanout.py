"""
fanout.py — Semaphore-bounded concurrent map over a list of inputs.

Each item runs independently; results come back in input order so
callers aggregate counters from a plain list instead of sharing mutable
state across tasks.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def bounded_map(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    *,
    limit: int,
) -> List[R]:
    """
    Run ``worker`` over ``items`` with at most ``limit`` in flight.

    ``worker`` is expected to contain its own per-item failure handling;
    an exception escaping it propagates and cancels the remaining items.
    """
    if not items:
        return []
    if limit <= 1:
        return [await worker(item) for item in items]

    sem = asyncio.Semaphore(limit)

    async def run(item: T) -> R:
        async with sem:
            return await worker(item)

    return list(await asyncio.gather(*(run(item) for item in items)))
