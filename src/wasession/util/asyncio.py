from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


async def cancel_suppress(task: asyncio.Task[Any] | None) -> None:
    if not task:
        return
    # Never cancel/await the current task: doing so can deadlock or raise
    # "Task cannot await on itself". Callers typically set a stop flag and then
    # return from the current task naturally.
    if task is asyncio.current_task():
        return
    # A finished task may hold an exception its own awaiter already handled.
    if task.done():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


def ensure_task(coro: Coroutine[Any, Any, T], *, name: str | None = None) -> asyncio.Task[T]:
    t: asyncio.Task[T] = asyncio.create_task(coro)
    if name:
        with contextlib.suppress(Exception):
            t.set_name(name)
    return t


def shielded(cb: Callable[..., Awaitable[object]]) -> Callable[..., Coroutine[Any, Any, None]]:
    async def _wrapped(*args: object, **kwargs: object) -> None:
        try:
            await cb(*args, **kwargs)
        except Exception:
            # Event listeners should not tear down the transport's receive loop.
            logger.exception("%s failed", getattr(cb, "__qualname__", cb))

    return _wrapped


def random_interval(bounds: tuple[float, float]) -> float:
    """Uniform pick inside `(low, high)`; used to keep periodic probes irregular."""

    low, high = bounds
    if high <= low:
        return low
    return random.uniform(low, high)


def is_live(task: asyncio.Task[Any] | None) -> bool:
    return task is not None and not task.done()
