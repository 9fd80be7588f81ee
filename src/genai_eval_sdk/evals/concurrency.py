"""Bounded dispatch of per-example work.

The controller hands examples to a worker coroutine, never letting more
than ``max_concurrency`` workers run at once. Cancellation (explicit or
by timeout) is observed between dispatches: nothing new starts after it,
while work already started either finishes or, with
``abandon_on_cancel``, is cancelled. Results are keyed by the example's
position so the caller can restore dataset order regardless of
completion order.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Generic, List, Optional, Sequence, Set, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class DispatchOutcome(Generic[R]):
    """What happened to a dispatched batch.

    Attributes:
        results: Worker results keyed by item index.
        cancelled: True if cancellation was observed.
        reason: "timed out" or "cancelled" when cancelled.
        skipped: Indices that were never dispatched or were abandoned.
    """

    results: Dict[int, R] = field(default_factory=dict)
    cancelled: bool = False
    reason: Optional[str] = None
    skipped: List[int] = field(default_factory=list)

    def ordered(self) -> List[R]:
        return [self.results[i] for i in sorted(self.results)]


class ConcurrencyController:
    """Schedules work items under a concurrency bound.

    One controller drives one batch. ``cancel()`` must be called from the
    event loop thread.

    Args:
        max_concurrency: Maximum workers in flight. None means unbounded.
        timeout: Seconds after dispatch starts at which the batch is
            cancelled.
        abandon_on_cancel: Cancel in-flight workers on cancellation
            instead of awaiting them.
    """

    def __init__(
        self,
        max_concurrency: Optional[int] = None,
        *,
        timeout: Optional[float] = None,
        abandon_on_cancel: bool = False,
    ) -> None:
        if max_concurrency is not None and max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self.max_concurrency = max_concurrency
        self.timeout = timeout
        self.abandon_on_cancel = abandon_on_cancel
        self.in_flight = 0
        self.peak_in_flight = 0
        self._cancel_reason: Optional[str] = None
        self._wakeup: Optional[asyncio.Event] = None

    @property
    def cancelled(self) -> bool:
        return self._cancel_reason is not None

    def cancel(self, reason: str = "cancelled") -> None:
        """Stop dispatching new work. Idempotent."""
        if self._cancel_reason is None:
            self._cancel_reason = reason
            logger.info("Evaluation %s; no further examples will be dispatched", reason)
        if self._wakeup is not None:
            self._wakeup.set()

    async def dispatch(
        self,
        items: Sequence[T],
        worker: Callable[[int, T], Awaitable[R]],
    ) -> DispatchOutcome[R]:
        """Run ``worker(index, item)`` for each item under the bound.

        Returns once every dispatched worker has finished or been
        abandoned. If a worker raises, the first such exception is
        re-raised after the others have settled.
        """
        loop = asyncio.get_running_loop()
        semaphore = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None
        self._wakeup = asyncio.Event()
        if self.cancelled:
            self._wakeup.set()
        timer = loop.call_later(self.timeout, self.cancel, "timed out") if self.timeout else None

        tasks: Dict[int, asyncio.Task] = {}
        try:
            for index, item in enumerate(items):
                if semaphore is not None and not await self._acquire(semaphore):
                    break
                if self.cancelled:
                    if semaphore is not None:
                        semaphore.release()
                    break
                tasks[index] = asyncio.create_task(self._run(semaphore, worker, index, item))
            await self._settle(set(tasks.values()))
        finally:
            if timer is not None:
                timer.cancel()
            for task in tasks.values():
                if not task.done():
                    task.cancel()

        outcome: DispatchOutcome[R] = DispatchOutcome(
            cancelled=self.cancelled, reason=self._cancel_reason
        )
        first_error: Optional[BaseException] = None
        for index, task in tasks.items():
            if task.cancelled():
                continue
            error = task.exception()
            if error is not None:
                first_error = first_error or error
                continue
            outcome.results[index] = task.result()
        outcome.skipped = [i for i in range(len(items)) if i not in outcome.results]

        if first_error is not None:
            raise first_error
        if outcome.skipped:
            logger.info("%d of %d examples were not completed", len(outcome.skipped), len(items))
        return outcome

    async def _acquire(self, semaphore: asyncio.Semaphore) -> bool:
        """Wait for a free slot, or return False if cancelled first."""
        if not semaphore.locked():
            await semaphore.acquire()
            return True

        acquire = asyncio.ensure_future(semaphore.acquire())
        wake = asyncio.ensure_future(self._wakeup.wait())
        done, _ = await asyncio.wait({acquire, wake}, return_when=asyncio.FIRST_COMPLETED)
        if acquire in done:
            wake.cancel()
            return True

        acquire.cancel()
        await asyncio.wait({acquire})
        if not acquire.cancelled():
            semaphore.release()
        return False

    async def _run(
        self,
        semaphore: Optional[asyncio.Semaphore],
        worker: Callable[[int, T], Awaitable[R]],
        index: int,
        item: T,
    ) -> R:
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            return await worker(index, item)
        finally:
            self.in_flight -= 1
            if semaphore is not None:
                semaphore.release()

    async def _settle(self, pending: Set[asyncio.Task]) -> None:
        if not self.abandon_on_cancel:
            if pending:
                await asyncio.wait(pending)
            return

        while pending:
            if self.cancelled:
                for task in pending:
                    task.cancel()
                await asyncio.wait(pending)
                logger.warning("Abandoned %d in-flight examples", len(pending))
                return
            wake = asyncio.ensure_future(self._wakeup.wait())
            done, _ = await asyncio.wait(pending | {wake}, return_when=asyncio.FIRST_COMPLETED)
            wake.cancel()
            pending = pending - done
