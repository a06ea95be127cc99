"""Concurrent utilities - bounded structured fan-out.

Every fleet-wide pass runs its per-host work inside one asyncio.TaskGroup,
gated by a semaphore. Each worker captures its own exception, so a failing
host never cancels its siblings, and the group joins every worker before
returning the full list of outcomes.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

DEFAULT_CONCURRENCY = 10


@dataclass(frozen=True, slots=True)
class Outcome[I, O]:
    """Result of one worker: either a value or the exception it raised."""

    item: I
    value: O | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def run_bounded[I, O](
    fn: Callable[[I], Awaitable[O]],
    items: Iterable[I],
    concurrency: int = DEFAULT_CONCURRENCY,
) -> list[Outcome[I, O]]:
    """Apply an async function to items concurrently, preserving order.

    Args:
        fn: Coroutine function applied to each item.
        items: Items to process.
        concurrency: Maximum number of workers running ``fn`` at once.

    Returns:
        One Outcome per item, in input order.

    Example:
        >>> outcomes = await run_bounded(install_on, hosts, concurrency=10)
        >>> failed = [o for o in outcomes if not o.ok]
    """
    items_list = list(items)
    if not items_list:
        return []
    if concurrency < 1:
        raise ValueError(f"concurrency must be >= 1, got {concurrency}")

    semaphore = asyncio.Semaphore(concurrency)

    async def worker(item: I) -> Outcome[I, O]:
        async with semaphore:
            try:
                return Outcome(item, value=await fn(item))
            except Exception as e:
                return Outcome(item, error=e)

    async with asyncio.TaskGroup() as tg:
        tasks = [tg.create_task(worker(item)) for item in items_list]
    return [task.result() for task in tasks]
