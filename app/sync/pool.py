import asyncio
from typing import Awaitable, Callable, Sequence, TypeVar

T = TypeVar("T")


async def run_with_concurrency(
    items: Sequence[T],
    worker: Callable[[T, int], Awaitable[None]],
    limit: int = 4,
) -> None:
    """
    Process every item exactly once with at most ``limit`` in flight.

    ``min(limit, len(items))`` workers pull the next index from a shared
    cursor until the items run out. The pool lives only for this call.
    Worker exceptions propagate; workers are expected to record their own
    failures.
    """
    limit = max(1, limit)
    cursor = iter(range(len(items)))

    async def run_worker():
        # next() on a shared iterator never yields the same index twice
        for index in cursor:
            await worker(items[index], index)

    await asyncio.gather(*(run_worker() for _ in range(min(limit, len(items)))))
