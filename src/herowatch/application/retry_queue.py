import asyncio
from collections import OrderedDict
from typing import Awaitable, Callable, List, Optional, Tuple

from loguru import logger

from ..domain.models.jobs import RetryJob

JobKey = Tuple[int, Optional[str]]


class RetryQueue:
    """Bounded FIFO of retry jobs, at most one per (token_id, owner)."""

    def __init__(self, max_size: int = 1000):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self._jobs: "OrderedDict[JobKey, RetryJob]" = OrderedDict()
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, key: JobKey) -> bool:
        return key in self._jobs

    def enqueue(self, job: RetryJob) -> bool:
        """False when the job was a duplicate or the queue was full."""
        if job.key in self._jobs:
            return False
        if len(self._jobs) >= self.max_size:
            self.dropped += 1
            logger.warning(
                f"RETRY_QUEUE_FULL | token={job.token_id} | owner={job.owner} | attempt={job.attempt_count} | size={len(self._jobs)}"
            )
            return False
        self._jobs[job.key] = job
        return True

    def drain(self) -> List[RetryJob]:
        """Snapshot dequeue: returns every queued job and leaves the queue empty."""
        jobs = list(self._jobs.values())
        self._jobs.clear()
        return jobs


class RetryWorker:
    """Periodically drains a RetryQueue and processes jobs with bounded concurrency."""

    def __init__(
        self,
        queue: RetryQueue,
        handler: Callable[[RetryJob], Awaitable[None]],
        interval_seconds: float = 30.0,
        concurrency: int = 5,
    ):
        self.queue = queue
        self.handler = handler
        self.interval_seconds = interval_seconds
        self.concurrency = concurrency
        self._stopped = asyncio.Event()
        self._current: Optional[asyncio.Task] = None

    async def process_once(self) -> int:
        jobs = self.queue.drain()
        if not jobs:
            return 0
        logger.info(f"RETRY_DRAIN | jobs={len(jobs)} | concurrency={self.concurrency}")
        sem = asyncio.Semaphore(self.concurrency)

        async def _one(job: RetryJob) -> None:
            async with sem:
                try:
                    await self.handler(job)
                except Exception as exc:
                    logger.exception(f"RETRY_JOB_FAILED | token={job.token_id} | owner={job.owner} | err={exc!r}")

        await asyncio.gather(*(_one(j) for j in jobs))
        return len(jobs)

    async def run(self) -> None:
        while not self._stopped.is_set():
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                self._current = asyncio.create_task(self.process_once(), name="retry-drain")
                try:
                    await self._current
                finally:
                    self._current = None

    def stop(self) -> None:
        self._stopped.set()

    async def shutdown(self, grace_seconds: float) -> None:
        """Stop the loop and give an in-flight drain `grace_seconds` to finish."""
        self.stop()
        current = self._current
        if current is None or current.done():
            return
        _, still_running = await asyncio.wait({current}, timeout=grace_seconds)
        if still_running:
            logger.warning(f"RETRY_DRAIN_CANCELLED | grace={grace_seconds}s")
            current.cancel()
            await asyncio.gather(current, return_exceptions=True)
