"""Deadline-bounded task execution.

``run_with_deadline()`` schedules a coroutine as its own task and joins it
against a deadline. The join returns a tagged outcome:

- Completed(value): the coroutine finished in time
- TimedOut(after): the deadline passed first; the task was cancelled and
  awaited, so it cannot keep running or mutate state after the join

Exceptions raised by the coroutine propagate from the join unchanged.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Generic, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Completed(Generic[T]):
    value: T
    elapsed_s: float = 0.0


@dataclass(frozen=True)
class TimedOut:
    after_s: float
    label: str = ""


Outcome = Union[Completed[Any], TimedOut]


class BoundedTask(Generic[T]):
    """Handle for a coroutine running under a deadline."""

    def __init__(self, coro: Awaitable[T], timeout: float, label: str = ""):
        self.timeout = timeout
        self.label = label
        self._started = time.monotonic()
        self._task: asyncio.Task[T] = asyncio.ensure_future(coro)

    @property
    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        self._task.cancel()

    async def join(self) -> Completed[T] | TimedOut:
        """Wait for completion or the deadline, whichever comes first."""
        remaining = max(0.0, self.timeout - (time.monotonic() - self._started))
        try:
            done, _ = await asyncio.wait({self._task}, timeout=remaining)
        except asyncio.CancelledError:
            await self._reap()
            raise

        if self._task in done:
            # re-raises the coroutine's own exception, if any
            value = self._task.result()
            return Completed(value, elapsed_s=time.monotonic() - self._started)

        await self._reap()
        logger.debug("Task %s cancelled after %.1fs deadline", self.label or "?", self.timeout)
        return TimedOut(after_s=self.timeout, label=self.label)

    async def _reap(self) -> None:
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.debug("Task %s raised while being cancelled", self.label, exc_info=True)


async def run_with_deadline(
    coro: Awaitable[T], timeout: float, label: str = ""
) -> Completed[T] | TimedOut:
    """Run ``coro`` with a deadline of ``timeout`` seconds."""
    return await BoundedTask(coro, timeout, label).join()
