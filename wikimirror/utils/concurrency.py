"""Bounded-concurrency helpers for pipelining per-page work.

The content and reconciliation stages process pages one at a time by
default, but may pipeline several pages at once up to a configured limit.
The limit is always passed in by the caller -- there is no process-wide
semaphore -- so it can be sized against the upstream's rate budget.

Two patterns are exposed:

1. **throttled_gather** -- A drop-in replacement for ``asyncio.gather`` that
   wraps each awaitable in a semaphore acquire/release.
2. **bounded_map** -- Applies an async worker to every item with at most
   ``limit`` in flight, logging and collecting failures instead of letting
   one page abort the whole batch.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Iterable, TypeVar

import structlog

from wikimirror.utils.logging import get_logger

_T = TypeVar("_T")
_R = TypeVar("_R")

_logger: structlog.BoundLogger = get_logger(__name__)


async def throttled_gather(
    coros: list[Awaitable[_T]],
    semaphore: asyncio.Semaphore,
    return_exceptions: bool = True,
) -> list[_T | BaseException]:
    """Run awaitables concurrently, at most ``semaphore`` slots at a time.

    Parameters
    ----------
    coros:
        Awaitable objects to execute concurrently.
    semaphore:
        Semaphore for concurrency control.
    return_exceptions:
        If ``True``, exceptions are returned in the results list rather
        than being raised.  Mirrors ``asyncio.gather`` semantics.

    Returns
    -------
    list[_T | BaseException]
        Results in the same order as the input coroutines.
    """

    async def _wrapped(coro: Awaitable[_T]) -> _T:
        async with semaphore:
            return await coro

    tasks = [_wrapped(c) for c in coros]
    return await asyncio.gather(*tasks, return_exceptions=return_exceptions)


async def bounded_map(
    worker: Callable[[_T], Awaitable[_R]],
    items: Iterable[_T],
    limit: int = 1,
    logger: structlog.BoundLogger | None = None,
    error_event: str = "bounded_map_item_failed",
) -> tuple[list[_R], list[tuple[_T, BaseException]]]:
    """Apply *worker* to each item with at most *limit* in flight.

    Returns ``(results, failures)`` where ``failures`` pairs each failing
    item with its exception.  A limit of 1 processes items sequentially.
    """
    if logger is None:
        logger = _logger

    item_list = list(items)
    semaphore = asyncio.Semaphore(max(1, limit))
    raw_results = await throttled_gather(
        [worker(item) for item in item_list], semaphore, return_exceptions=True
    )

    results: list[_R] = []
    failures: list[tuple[_T, BaseException]] = []
    for item, result in zip(item_list, raw_results, strict=True):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                # CancelledError / KeyboardInterrupt must propagate.
                raise result
            logger.warning(error_event, item=str(item), error=str(result))
            failures.append((item, result))
        else:
            results.append(result)
    return results, failures
