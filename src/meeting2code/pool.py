"""Bounded-concurrency worker pool for fan-out stages."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class PoolFailure:
    """Marker stored in a result slot whose worker raised."""

    index: int
    item: object
    error: str

    @property
    def success(self) -> bool:
        return False


async def run_pool(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    max_concurrency: int,
    on_error: Optional[Callable[[T, BaseException], R]] = None,
) -> list:
    """Run ``worker`` over ``items`` with at most ``max_concurrency`` in flight.

    Workers pull from a shared queue, so a slow item never blocks a free
    worker. A worker exception is caught and converted by ``on_error`` (or
    into a :class:`PoolFailure`) and stored at that item's slot.

    Args:
        items: Inputs, processed in any order.
        worker: Async callable run once per item.
        max_concurrency: Upper bound on concurrently running workers.
        on_error: Builds the failure result for an item whose worker raised.

    Returns:
        One result per input, in input order. Never raises for worker errors.
    """
    results: list = [None] * len(items)
    if not items:
        return results

    queue: asyncio.Queue[int] = asyncio.Queue()
    for index in range(len(items)):
        queue.put_nowait(index)

    async def consume() -> None:
        while True:
            try:
                index = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            item = items[index]
            try:
                results[index] = await worker(item)
            except Exception as e:
                logger.warning(f"Pool item {index} failed: {type(e).__name__}: {e}")
                results[index] = _failure(index, item, e, on_error)

    workers = max(1, min(max_concurrency, len(items)))
    await asyncio.gather(*(consume() for _ in range(workers)))
    return results


def _failure(index: int, item, error: BaseException, on_error) -> object:
    if on_error is None:
        return PoolFailure(index=index, item=item, error=str(error) or type(error).__name__)
    try:
        return on_error(item, error)
    except Exception as e:
        logger.error(f"on_error handler raised for pool item {index}: {e}")
        return PoolFailure(index=index, item=item, error=str(error) or type(error).__name__)
