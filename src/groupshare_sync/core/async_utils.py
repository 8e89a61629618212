"""Async helpers shared by the sync orchestrator.

- ``gather_limited`` runs coroutines concurrently under a semaphore (the
  bounded upload worker pool).
- ``CancellationToken`` is the cooperative cancellation handle threaded
  through every step of a sync session.
- ``run_sync`` moves blocking file I/O off the event loop.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Sequence, TypeVar

from ..errors import SyncCancelledError

T = TypeVar("T")
logger = logging.getLogger(__name__)


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a blocking function in a worker thread without blocking the loop.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)
    """
    return await asyncio.to_thread(func, *args, **kwargs)


async def gather_limited(
    coros: Sequence[Coroutine[Any, Any, T]],
    max_parallel: int,
) -> list[T]:
    """Run coroutines concurrently, at most *max_parallel* at a time.

    Returns results in input order.  Exceptions propagate from the first
    failure, so callers that need partial-failure semantics must catch
    inside each coroutine.
    """
    semaphore = asyncio.Semaphore(max(1, max_parallel))

    async def _bounded(coro: Coroutine[Any, Any, T]) -> T:
        async with semaphore:
            return await coro

    return list(await asyncio.gather(*(_bounded(c) for c in coros)))


class CancellationToken:
    """Cooperative cancellation flag for one sync session.

    Cancellation is observed between steps: the orchestrator calls
    ``raise_if_cancelled()`` at every state transition and before starting
    each upload.  Work already in flight is allowed to finish.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            logger.info("Sync cancellation requested: %s", reason)
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self, step: str | None = None) -> None:
        if self._event.is_set():
            raise SyncCancelledError(
                self.reason or "cancelled", operation=step
            )
