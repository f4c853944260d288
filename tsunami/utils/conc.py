"""Concurrent utilities - bounded fan-out over asyncio tasks."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
from collections.abc import Awaitable, Callable, Iterable


def _first_leaf(group: BaseExceptionGroup) -> BaseException:
    exc: BaseException = group
    while isinstance(exc, BaseExceptionGroup):
        exc = exc.exceptions[0]
    return exc


async def for_each_async[I](
    fn: Callable[[I], Awaitable[object]],
    items: Iterable[I],
    concurrency: int | None = None,
) -> None:
    """Apply an async function to items concurrently, discarding results.

    Fails fast: the first failure cancels the remaining tasks and is
    re-raised as-is (not wrapped in an ExceptionGroup). Items still
    waiting for a slot when that happens are never started.

    Args:
        fn: Async function to apply (side-effectful).
        items: Items to process.
        concurrency: Max concurrent tasks, at least 1. None = unbounded.

    Example:
        >>> await for_each_async(setup_machine, machines, concurrency=8)
    """
    if concurrency is not None and concurrency < 1:
        raise ValueError(f"concurrency must be at least 1, got {concurrency}")

    sem = asyncio.Semaphore(concurrency) if concurrency is not None else None
    failed = asyncio.Event()

    async def bounded(item: I) -> None:
        async with sem if sem is not None else contextlib.nullcontext():
            # A slot freed by a failing task must not start the next item
            if failed.is_set():
                return
            try:
                await fn(item)
            except BaseException:
                failed.set()
                raise

    try:
        async with asyncio.TaskGroup() as tg:
            for item in items:
                tg.create_task(bounded(item))
    except BaseExceptionGroup as eg:
        error = _first_leaf(eg)
    else:
        return
    raise error


async def maybe_await[T](value: T | Awaitable[T]) -> T:
    """Await ``value`` if it is awaitable, for callables that may be sync or async."""
    if inspect.isawaitable(value):
        return await value
    return value
