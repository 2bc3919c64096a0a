"""Named refresh triggers, the foreground credits timer and post-purchase backoff."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence, Set

from services.credits import CreditReconciliationController, CreditsView, RefreshTrigger

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

DEFAULT_POST_PURCHASE_DELAYS = (1.0, 3.0, 5.0, 8.0)


class RefreshScheduler:
    """Funnels every trigger source into the controller.

    ``sleep`` is injectable so tests can drive time without waiting.
    """

    def __init__(
        self,
        controller: CreditReconciliationController,
        *,
        interval_seconds: float = 30.0,
        post_purchase_delays: Sequence[float] = DEFAULT_POST_PURCHASE_DELAYS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._controller = controller
        self.interval_seconds = interval_seconds
        self.post_purchase_delays: List[float] = sorted(float(d) for d in post_purchase_delays)
        self._sleep = sleep
        self._timer_task: Optional[asyncio.Task] = None
        self._backoff_tasks: Set[asyncio.Task] = set()

    @property
    def timer_running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    @property
    def pending_backoffs(self) -> int:
        return len(self._backoff_tasks)

    async def fire(self, trigger: RefreshTrigger) -> CreditsView:
        logger.debug("Refresh trigger fired: %s", trigger.value)
        return await self._controller.reconcile(trigger)

    async def _safe_fire(self, trigger: RefreshTrigger) -> None:
        try:
            await self.fire(trigger)
        except Exception as exc:
            logger.exception("Refresh tick (%s) failed: %s", trigger.value, exc)

    async def _timer_loop(self) -> None:
        while True:
            await self._sleep(self.interval_seconds)
            await self._safe_fire(RefreshTrigger.TIMER)

    def start_timer(self) -> None:
        if self.interval_seconds <= 0 or self.timer_running:
            return
        self._timer_task = asyncio.create_task(self._timer_loop())
        logger.info("Credits refresh timer started (every %ss)", self.interval_seconds)

    async def stop_timer(self) -> None:
        task, self._timer_task = self._timer_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run_backoff(self, trigger: RefreshTrigger, delays: Sequence[float]) -> None:
        # Delays are offsets from the moment of scheduling, not gaps.
        elapsed = 0.0
        for offset in delays:
            await self._sleep(max(offset - elapsed, 0.0))
            elapsed = offset
            logger.info("Post-purchase credit refresh attempt (+%ss)", offset)
            await self._safe_fire(trigger)

    def schedule_backoff(
        self,
        trigger: RefreshTrigger = RefreshTrigger.POST_PURCHASE,
        delays: Optional[Sequence[float]] = None,
    ) -> asyncio.Task:
        """Refresh several times after a purchase so a lagging webhook still converges."""
        sequence = sorted(delays) if delays is not None else self.post_purchase_delays
        task = asyncio.create_task(self._run_backoff(trigger, sequence))
        self._backoff_tasks.add(task)
        task.add_done_callback(self._backoff_tasks.discard)
        return task

    async def wait_for_backoffs(self) -> None:
        if self._backoff_tasks:
            await asyncio.gather(*list(self._backoff_tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.stop_timer()
        tasks = list(self._backoff_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._backoff_tasks.clear()
