"""Async helpers for the single-loop engine.

This module provides:
- a thread-pool bridge (`run_blocking`) for SDK/HTTP calls that would
  otherwise stall polling and command issuance, and
- `GenerationTimer`, a cancellable delayed callback where every new schedule
  invalidates the previous one.
"""

from __future__ import annotations

import asyncio
import atexit
import logging
from collections.abc import Awaitable, Callable
from concurrent.futures import ThreadPoolExecutor
from contextlib import suppress
from functools import partial
from typing import Any, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)

_IO_EXECUTOR = ThreadPoolExecutor(max_workers=4, thread_name_prefix="loopdeck-io")


@atexit.register
def _shutdown_io_executor() -> None:
    _IO_EXECUTOR.shutdown(wait=False, cancel_futures=True)


async def run_blocking(func: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
    """Run blocking callable on dedicated IO executor and await its result."""
    if not callable(func):
        raise TypeError("func must be callable")
    loop = asyncio.get_running_loop()
    if kwargs:
        future = loop.run_in_executor(_IO_EXECUTOR, partial(func, *args, **kwargs))
    else:
        future = loop.run_in_executor(_IO_EXECUTOR, func, *args)
    # Some environments can miss thread->loop wakeups for executor completion.
    # Polling with a short timeout keeps completion deterministic.
    while True:
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=0.1)
        except asyncio.TimeoutError:
            continue


class GenerationTimer:
    """Single-slot delayed callback keyed by a generation counter.

    `schedule` cancels whatever was pending and bumps the generation, so a
    stale callback can never fire even if its task was already past the sleep
    when it was superseded.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._generation = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(
        self, delay_s: float, callback: Callable[[], Awaitable[None]]
    ) -> int:
        """Replace any pending callback with `callback` after `delay_s` seconds."""
        self.cancel()
        generation = self._generation
        self._task = asyncio.create_task(
            self._fire(generation, max(0.0, delay_s), callback),
            name=f"loopdeck-timer-{self._name}-{generation}",
        )
        return generation

    def cancel(self) -> None:
        """Invalidate the pending callback, if any."""
        self._generation += 1
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()

    async def aclose(self) -> None:
        """Cancel and wait for the pending task to unwind."""
        task = self._task
        self.cancel()
        if task is not None:
            with suppress(asyncio.CancelledError):
                await task

    async def _fire(
        self,
        generation: int,
        delay_s: float,
        callback: Callable[[], Awaitable[None]],
    ) -> None:
        await asyncio.sleep(delay_s)
        if generation != self._generation:
            return
        # Detach before running so the callback may reschedule this timer.
        self._task = None
        logger.debug("Timer %s fired (generation=%d)", self._name, generation)
        await callback()
