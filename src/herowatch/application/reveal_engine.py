from typing import Optional, Set

from loguru import logger

from ..domain.errors import NotifyError
from ..domain.events.chain import DecodedLog, StakedEvent
from ..domain.models.jobs import RetryJob
from ..domain.models.token import Metadata, RevealState, reveal_state_of
from ..ports.metadata import MetadataFetcher
from ..ports.notifier import Notifier
from ..ports.state_store import TokenStore
from .reconciliation import ReconciliationEngine, RetryPolicy
from .scheduler import DelayedTaskScheduler

DEFAULT_LEVEL_TRAIT = "Season 1 Level"


class RevealEngine(ReconciliationEngine[StakedEvent]):
    """
    Announces each hero reveal at most once.

    The Working Set holds the ids believed unrevealed; it is rebuilt from the
    store by `bootstrap()` and the store wins on any disagreement. Only the
    check whose `mark_revealed` call performs the transition may announce.
    """

    name = "reveal"

    def __init__(
        self,
        store: TokenStore,
        fetcher: MetadataFetcher,
        notifier: Notifier,
        scheduler: DelayedTaskScheduler,
        retry: Optional[RetryPolicy] = None,
        settle_delay: float = 15.0,
        level_trait: str = DEFAULT_LEVEL_TRAIT,
        max_concurrent_fetches: int = 10,
    ):
        super().__init__(
            fetcher, scheduler, settle_delay=settle_delay, retry=retry, max_concurrent_fetches=max_concurrent_fetches
        )
        self.store = store
        self.notifier = notifier
        self.level_trait = level_trait
        self.working_set: Set[int] = set()
        self._known_revealed: Set[int] = set()

    async def bootstrap(self) -> int:
        ids = await self.store.list_unrevealed()
        self.working_set = set(ids)
        self._known_revealed -= self.working_set
        logger.info(f"REVEAL_BOOTSTRAP | unrevealed={len(self.working_set)}")
        return len(self.working_set)

    def parse(self, log: DecodedLog) -> StakedEvent:
        return StakedEvent.from_log(log)

    async def accepts(self, subject: StakedEvent) -> bool:
        token_id = subject.token_id
        if token_id in self.working_set:
            return True
        if token_id in self._known_revealed:
            logger.debug(f"REVEAL_SKIP | token={token_id} | reason=known_revealed")
            return False

        state = reveal_state_of(await self.store.get(token_id))
        if state is RevealState.REVEALED:
            self._known_revealed.add(token_id)
            logger.debug(f"REVEAL_SKIP | token={token_id} | reason=store_revealed")
            return False
        if state is RevealState.UNKNOWN:
            await self.store.upsert(token_id, {"revealed": False})
            logger.info(f"REVEAL_NEW_TOKEN | token={token_id} | owner={subject.owner}")
        self.working_set.add(token_id)
        return True

    async def is_settled(self, subject: StakedEvent) -> bool:
        record = await self.store.get(subject.token_id)
        if record is not None and record.revealed:
            self._settle(subject.token_id)
            return True
        return False

    async def resolve(self, subject: StakedEvent, metadata: Metadata) -> None:
        token_id = subject.token_id
        performed = await self.store.mark_revealed(
            token_id,
            image=metadata.image,
            attributes=metadata.attributes,
            name=metadata.name,
            description=metadata.description,
        )
        self._settle(token_id)
        if not performed:
            logger.info(f"REVEAL_ALREADY_RECORDED | token={token_id} | owner={subject.owner}")
            return

        level = metadata.numeric_attribute(self.level_trait)
        if level is not None and level > 1:
            logger.info(f"REVEAL_SUPPRESSED | token={token_id} | owner={subject.owner} | level={level}")
            return

        logger.info(f"REVEAL_RESOLVED | token={token_id} | owner={subject.owner} | image={metadata.image}")
        try:
            await self.notifier.announce_reveal(token_id, subject.owner, metadata.image)
        except NotifyError as exc:
            logger.error(f"REVEAL_NOTIFY_FAILED | token={token_id} | owner={subject.owner} | err={exc}")

    def _settle(self, token_id: int) -> None:
        self.working_set.discard(token_id)
        self._known_revealed.add(token_id)

    def subject_from_job(self, job: RetryJob) -> StakedEvent:
        return StakedEvent(owner=job.owner or "", token_id=job.token_id, timestamp=0)

    async def reprocess(self, token_id: int, owner: str = "") -> str:
        """Immediate check of one token, bypassing the settle delay."""
        subject = StakedEvent(owner=owner, token_id=token_id, timestamp=0)
        await self.accepts(subject)
        outcome = await self.check(subject, attempt=0)
        logger.info(f"REVEAL_REPROCESS | token={token_id} | owner={owner} | outcome={outcome}")
        return outcome
