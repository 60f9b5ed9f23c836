from typing import Optional

from loguru import logger

from ..domain.errors import NotifyError, StoreError
from ..domain.events.chain import DecodedLog, DeathEvent
from ..domain.models.jobs import RetryJob
from ..domain.models.token import Metadata
from ..ports.metadata import MetadataFetcher
from ..ports.notifier import Notifier
from ..ports.state_store import TokenStore
from .reconciliation import ReconciliationEngine
from .reveal_engine import DEFAULT_LEVEL_TRAIT
from .scheduler import DelayedTaskScheduler


class DeathEngine(ReconciliationEngine[DeathEvent]):
    """
    Announces hero deaths. Single fetch, no retry queue.

    With a store the engine skips tokens already flagged `death_recorded`
    and sets the flag on existing records after each announcement attempt.
    Tokens without a record are not created here. Without a store (degraded
    mode) every death event is announced.
    """

    name = "death"

    def __init__(
        self,
        fetcher: MetadataFetcher,
        notifier: Notifier,
        scheduler: DelayedTaskScheduler,
        store: Optional[TokenStore] = None,
        settle_delay: float = 0.0,
        level_trait: str = DEFAULT_LEVEL_TRAIT,
        max_concurrent_fetches: int = 10,
    ):
        super().__init__(
            fetcher, scheduler, settle_delay=settle_delay, retry=None, max_concurrent_fetches=max_concurrent_fetches
        )
        self.store = store
        self.notifier = notifier
        self.level_trait = level_trait

    def parse(self, log: DecodedLog) -> DeathEvent:
        return DeathEvent.from_log(log)

    async def _already_recorded(self, token_id: int) -> bool:
        if self.store is None:
            return False
        try:
            record = await self.store.get(token_id)
        except StoreError as exc:
            logger.warning(f"DEATH_DEDUPE_UNAVAILABLE | token={token_id} | err={exc}")
            return False
        return record is not None and record.death_recorded

    async def accepts(self, subject: DeathEvent) -> bool:
        if await self._already_recorded(subject.token_id):
            logger.info(f"DEATH_SKIP | token={subject.token_id} | reason=already_recorded")
            return False
        return True

    async def is_settled(self, subject: DeathEvent) -> bool:
        return await self._already_recorded(subject.token_id)

    def is_pending(self, subject: DeathEvent, metadata: Metadata) -> bool:
        return False

    async def resolve(self, subject: DeathEvent, metadata: Metadata) -> None:
        token_id = subject.token_id
        attr = metadata.attribute(self.level_trait)
        level = attr.value if attr is not None else None
        logger.info(f"DEATH_RESOLVED | token={token_id} | level={level} | image={metadata.image}")
        try:
            await self.notifier.announce_death(token_id, image=metadata.image, level=level)
        except NotifyError as exc:
            logger.error(f"DEATH_NOTIFY_FAILED | token={token_id} | err={exc}")

        if self.store is None:
            return
        try:
            if await self.store.get(token_id) is None:
                logger.info(f"DEATH_UNTRACKED | token={token_id} | reason=no_record")
                return
            await self.store.upsert(token_id, {"death_recorded": True})
        except StoreError as exc:
            logger.error(f"DEATH_RECORD_FAILED | token={token_id} | err={exc}")

    def subject_from_job(self, job: RetryJob) -> DeathEvent:
        return DeathEvent(token_id=job.token_id)
