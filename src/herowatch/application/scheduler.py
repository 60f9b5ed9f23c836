import asyncio
from typing import Awaitable, Callable, Optional, Set

from loguru import logger


class DelayedTaskScheduler:
    """
    Runs coroutines after a delay without blocking the caller.

    Tasks are tracked from scheduling until completion. A task is "pending"
    while it is still sleeping and "running" once its coroutine has started.
    """

    def __init__(self, name: str = "scheduler"):
        self.name = name
        self._pending: Set[asyncio.Task] = set()
        self._running: Set[asyncio.Task] = set()
        self._accepting = True

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def running_count(self) -> int:
        return len(self._running)

    def schedule(self, delay: float, factory: Callable[[], Awaitable[None]], label: str = "") -> Optional[asyncio.Task]:
        if not self._accepting:
            logger.debug(f"SCHEDULE_REJECTED | scheduler={self.name} | label={label}")
            return None
        task = asyncio.create_task(self._run(max(0.0, delay), factory, label))
        self._pending.add(task)
        task.add_done_callback(self._forget)
        return task

    def _forget(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        self._running.discard(task)

    async def _run(self, delay: float, factory: Callable[[], Awaitable[None]], label: str) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        task = asyncio.current_task()
        self._pending.discard(task)
        self._running.add(task)
        try:
            await factory()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(f"SCHEDULED_TASK_FAILED | scheduler={self.name} | label={label} | err={exc!r}")

    def cancel_pending(self) -> int:
        """Cancel tasks still waiting for their delay. Returns how many were cancelled."""
        self._accepting = False
        tasks = list(self._pending)
        for task in tasks:
            task.cancel()
        return len(tasks)

    async def drain(self, timeout: float) -> None:
        """Let running tasks finish within `timeout`, then cancel the rest."""
        self.cancel_pending()
        running = list(self._running)
        if running:
            done, still_running = await asyncio.wait(running, timeout=timeout)
            for task in still_running:
                task.cancel()
            if still_running:
                logger.warning(f"SCHEDULER_DRAIN | scheduler={self.name} | cancelled_in_flight={len(still_running)}")
                await asyncio.gather(*still_running, return_exceptions=True)
        pending = list(self._pending)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def join(self) -> None:
        """Wait until nothing is scheduled or running (tasks may schedule more)."""
        while self._pending or self._running:
            await asyncio.gather(*(self._pending | self._running), return_exceptions=True)
