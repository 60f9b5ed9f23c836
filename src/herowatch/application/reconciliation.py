"""
Generic watch -> delay -> fetch -> resolve-or-retry pipeline.

Subclasses bind it to one chain event: they parse logs into subjects, decide
which subjects need a check, and say what "settled" and "resolved" mean for
their transition. Everything between (settle delay, metadata fetch, error
classification, retry bookkeeping, per-log isolation, the bound on concurrent
fetches) lives here.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Generic, List, Optional, TypeVar

from loguru import logger

from ..domain.errors import RETRYABLE_ERRORS, StoreError
from ..domain.events.chain import DecodedLog
from ..domain.models.jobs import RetryJob
from ..domain.models.token import Metadata
from ..ports.metadata import MetadataFetcher
from .retry_queue import RetryQueue
from .scheduler import DelayedTaskScheduler

S = TypeVar("S")


@dataclass(frozen=True)
class RetryPolicy:
    """Re-enqueue transient failures until `max_attempts` consecutive failures."""

    queue: RetryQueue
    max_attempts: int = 5

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


class CheckOutcome:
    RESOLVED = "resolved"
    PENDING = "pending"
    SETTLED = "settled"
    RETRY = "retry"
    ABANDONED = "abandoned"


class ReconciliationEngine(ABC, Generic[S]):
    name: str = "reconcile"

    def __init__(
        self,
        fetcher: MetadataFetcher,
        scheduler: DelayedTaskScheduler,
        settle_delay: float = 0.0,
        retry: Optional[RetryPolicy] = None,
        max_concurrent_fetches: int = 10,
    ):
        if max_concurrent_fetches < 1:
            raise ValueError("max_concurrent_fetches must be >= 1")
        self.fetcher = fetcher
        self.scheduler = scheduler
        self.settle_delay = settle_delay
        self.retry = retry
        self.max_concurrent_fetches = max_concurrent_fetches
        self._fetch_limit = asyncio.Semaphore(max_concurrent_fetches)

    # ------------------------------------------------------------------ #
    # Subclass hooks
    # ------------------------------------------------------------------ #
    @abstractmethod
    def parse(self, log: DecodedLog) -> S:
        ...

    @abstractmethod
    async def accepts(self, subject: S) -> bool:
        """Whether the subject needs a check at all (dedupe / known-state filter)."""
        ...

    @abstractmethod
    async def is_settled(self, subject: S) -> bool:
        """True when the transition is already recorded and the check can stop."""
        ...

    @abstractmethod
    async def resolve(self, subject: S, metadata: Metadata) -> None:
        ...

    def is_pending(self, subject: S, metadata: Metadata) -> bool:
        return self.fetcher.is_pending(metadata)

    def token_of(self, subject: S) -> int:
        return getattr(subject, "token_id")

    def owner_of(self, subject: S) -> Optional[str]:
        return getattr(subject, "owner", None)

    # ------------------------------------------------------------------ #
    # Log intake
    # ------------------------------------------------------------------ #
    async def handle_logs(self, logs: List[DecodedLog]) -> None:
        """Entry point for subscription batches. One bad log never affects the others."""
        for log in logs:
            try:
                await self.handle_log(log)
            except Exception as exc:
                logger.exception(
                    f"{self.name.upper()}_LOG_FAILED | block={log.block_number} | tx={log.transaction_hash} | err={exc!r}"
                )

    async def handle_log(self, log: DecodedLog) -> None:
        if log.removed:
            logger.info(f"{self.name.upper()}_LOG_REMOVED | block={log.block_number} | tx={log.transaction_hash}")
            return
        subject = self.parse(log)
        try:
            wanted = await self.accepts(subject)
        except StoreError as exc:
            logger.error(f"{self.name.upper()}_STORE_ERROR | token={self.token_of(subject)} | stage=accept | err={exc}")
            return
        if not wanted:
            return
        self.schedule_check(subject, attempt=0)

    def schedule_check(self, subject: S, attempt: int = 0) -> None:
        token_id = self.token_of(subject)
        self.scheduler.schedule(
            self.settle_delay,
            lambda: self.check(subject, attempt),
            label=f"{self.name}:{token_id}",
        )

    # ------------------------------------------------------------------ #
    # Check
    # ------------------------------------------------------------------ #
    async def check(self, subject: S, attempt: int = 0) -> str:
        token_id = self.token_of(subject)
        owner = self.owner_of(subject)
        logger.debug(f"{self.name.upper()}_CHECK | token={token_id} | owner={owner} | attempt={attempt}")
        try:
            if await self.is_settled(subject):
                return CheckOutcome.SETTLED
            try:
                async with self._fetch_limit:
                    metadata = await self.fetcher.fetch(token_id)
            except RETRYABLE_ERRORS as exc:
                return self._on_failure(subject, attempt, exc)

            if self.is_pending(subject, metadata):
                logger.info(f"{self.name.upper()}_PENDING | token={token_id} | owner={owner} | attempt={attempt}")
                return CheckOutcome.PENDING

            await self.resolve(subject, metadata)
            return CheckOutcome.RESOLVED
        except StoreError as exc:
            logger.error(
                f"{self.name.upper()}_STORE_ERROR | token={token_id} | owner={owner} | attempt={attempt} | err={exc}"
            )
            return CheckOutcome.ABANDONED

    def _on_failure(self, subject: S, attempt: int, exc: Exception) -> str:
        token_id = self.token_of(subject)
        owner = self.owner_of(subject)
        if self.retry is None:
            logger.warning(f"{self.name.upper()}_FETCH_FAILED | token={token_id} | owner={owner} | err={exc}")
            return CheckOutcome.ABANDONED

        job = RetryJob(token_id=token_id, owner=owner, attempt_count=attempt).next_attempt()
        if job.attempt_count >= self.retry.max_attempts:
            logger.error(
                f"{self.name.upper()}_ABANDONED | token={token_id} | owner={owner} | attempts={job.attempt_count} | err={exc}"
            )
            return CheckOutcome.ABANDONED

        queued = self.retry.queue.enqueue(job)
        logger.warning(
            f"{self.name.upper()}_RETRY | token={token_id} | owner={owner} | attempt={job.attempt_count} | queued={queued} | err={exc}"
        )
        return CheckOutcome.RETRY

    async def process_retry(self, job: RetryJob) -> str:
        """Run one queued job through the same check, carrying its attempt count."""
        return await self.check(self.subject_from_job(job), attempt=job.attempt_count)

    @abstractmethod
    def subject_from_job(self, job: RetryJob) -> S:
        """Rebuild the subject a retry job was created for."""
        ...
