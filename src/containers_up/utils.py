"""Shared utilities for Containers Up."""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from typing import Any, Protocol, TypeVar

T = TypeVar("T")
R = TypeVar("R")


class _InfoLogger(Protocol):
    def info(self, event: str, **fields: Any) -> None: ...


@asynccontextmanager
async def timed_operation(
    name: str,
    log: _InfoLogger | None = None,
    **extra: Any,
) -> AsyncIterator[dict[str, Any]]:
    """Context manager that measures elapsed time for an async operation.

    Usage::

        async with timed_operation("update_scan", log=events) as timing:
            await scan()
        print(timing["elapsed_ms"])

    Args:
        name: A label for the operation (used as the log event).
        log: Optional structlog or event logger; if provided, an info-level
             line is emitted on exit.
        **extra: Additional key-value pairs forwarded to the log call.

    Yields:
        A mutable dict that will contain ``elapsed_ms`` after the block exits.
    """
    start = time.perf_counter()
    result: dict[str, Any] = {}
    try:
        yield result
    finally:
        result["elapsed_ms"] = round((time.perf_counter() - start) * 1000, 2)
        if log is not None:
            log.info(name, duration_ms=result["elapsed_ms"], **extra)


async def gather_limited(
    items: Iterable[T],
    limit: int,
    func: Callable[[T], Awaitable[R]],
) -> list[R]:
    """Apply *func* to every item with at most *limit* calls in flight.

    Results keep the order of *items*.
    """
    if limit <= 0:
        raise ValueError("limit must be > 0")

    semaphore = asyncio.Semaphore(limit)

    async def _run(item: T) -> R:
        async with semaphore:
            return await func(item)

    return list(await asyncio.gather(*(_run(item) for item in items)))
