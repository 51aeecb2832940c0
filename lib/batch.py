"""Bounded-concurrency batch execution.

A fixed number of worker tasks drain a queue of items. Each item produces
an ItemResult holding either its value or the exception it raised; one
failing item never stops the others.

Usage:
    async with aclosing(iter_batch(domains, scrape, concurrency=5)) as results:
        async for result in results:
            if result.ok:
                save(result.item, result.value)
"""

import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Iterator, List, Optional, Sequence, TypeVar

from pydantic import BaseModel, ConfigDict

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_CONCURRENCY = 5


class ItemResult(BaseModel):
    """Outcome of one item: value on success, error otherwise."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    index: int
    item: Any
    value: Optional[Any] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Split a sequence into lists of at most `size` items."""
    if size <= 0:
        raise ValueError("size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


async def iter_batch(
    items: Sequence[T],
    fn: Callable[[T], Awaitable[R]],
    concurrency: int = DEFAULT_CONCURRENCY,
) -> AsyncIterator[ItemResult]:
    """Yield one ItemResult per item, in completion order."""
    if not items:
        return

    work: asyncio.Queue = asyncio.Queue()
    for index, item in enumerate(items):
        work.put_nowait((index, item))
    done: asyncio.Queue = asyncio.Queue()

    async def worker() -> None:
        while True:
            try:
                index, item = work.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                value = await fn(item)
                await done.put(ItemResult(index=index, item=item, value=value))
            except Exception as e:
                await done.put(ItemResult(index=index, item=item, error=e))

    workers = [
        asyncio.create_task(worker())
        for _ in range(max(1, min(concurrency, len(items))))
    ]
    try:
        for _ in range(len(items)):
            yield await done.get()
    finally:
        for task in workers:
            if not task.done():
                task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
