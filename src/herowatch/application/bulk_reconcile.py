import asyncio
from dataclasses import dataclass, field
from typing import List, Set

from loguru import logger

from ..domain.errors import MetadataError, StoreError
from ..ports.metadata import MetadataFetcher, is_placeholder_image
from ..ports.state_store import TokenStore


@dataclass
class BulkReport:
    targeted: int = 0
    updated: int = 0
    loops: int = 0
    failed: List[int] = field(default_factory=list)


class BulkReconciler:
    """
    One-off repair of the store over a token id range.

    Targets ids missing from the store, records still unrevealed, and records
    flagged revealed whose image is still the placeholder. Posts nothing.
    """

    def __init__(
        self,
        store: TokenStore,
        fetcher: MetadataFetcher,
        start_token_id: int = 1,
        end_token_id: int = 10000,
        concurrency: int = 50,
        max_retries_per_token: int = 5,
        max_full_loops: int = 5,
        retry_delay: float = 0.0,
    ):
        if end_token_id < start_token_id:
            raise ValueError("end_token_id must be >= start_token_id")
        self.store = store
        self.fetcher = fetcher
        self.start_token_id = start_token_id
        self.end_token_id = end_token_id
        self.concurrency = concurrency
        self.max_retries_per_token = max_retries_per_token
        self.max_full_loops = max_full_loops
        self.retry_delay = retry_delay

    async def targets(self) -> List[int]:
        known: Set[int] = set()
        need_fix: Set[int] = set()
        async for record in self.store.iter_records():
            known.add(record.token_id)
            if not record.revealed or is_placeholder_image(record.image, self.fetcher.placeholder_image):
                need_fix.add(record.token_id)
        missing = {tid for tid in range(self.start_token_id, self.end_token_id + 1) if tid not in known}
        return sorted(need_fix | missing)

    async def _reconcile_one(self, token_id: int) -> bool:
        for attempt in range(1, self.max_retries_per_token + 1):
            try:
                metadata = await self.fetcher.fetch(token_id)
                revealed = not self.fetcher.is_pending(metadata)
                await self.store.upsert(
                    token_id,
                    {
                        "revealed": revealed,
                        "image": metadata.image,
                        "attributes": list(metadata.attributes),
                        "name": metadata.name,
                        "description": metadata.description,
                    },
                )
                logger.debug(f"BULK_UPSERT | token={token_id} | revealed={revealed} | attempt={attempt}")
                return True
            except (MetadataError, StoreError) as exc:
                logger.warning(f"BULK_ATTEMPT_FAILED | token={token_id} | attempt={attempt} | err={exc}")
                if self.retry_delay > 0 and attempt < self.max_retries_per_token:
                    await asyncio.sleep(self.retry_delay)
        return False

    async def _process(self, token_ids: List[int]) -> List[int]:
        sem = asyncio.Semaphore(self.concurrency)
        failed: List[int] = []

        async def _one(token_id: int) -> None:
            async with sem:
                if not await self._reconcile_one(token_id):
                    failed.append(token_id)

        await asyncio.gather(*(_one(tid) for tid in token_ids))
        return sorted(failed)

    async def run(self) -> BulkReport:
        pending = await self.targets()
        report = BulkReport(targeted=len(pending))
        logger.info(f"BULK_START | range={self.start_token_id}-{self.end_token_id} | targets={len(pending)}")
        if not pending:
            return report

        while pending and report.loops < self.max_full_loops:
            report.loops += 1
            failed = await self._process(pending)
            report.updated += len(pending) - len(failed)
            logger.info(f"BULK_LOOP | loop={report.loops} | processed={len(pending)} | failed={len(failed)}")
            pending = failed

        report.failed = pending
        if pending:
            logger.error(f"BULK_INCOMPLETE | failed={len(pending)} | ids={pending[:50]}")
        else:
            logger.info(f"BULK_DONE | updated={report.updated} | loops={report.loops}")
        return report


async def find_uniques(store: TokenStore, trait_type: str = "Type", value: str = "Unique") -> List[int]:
    ids = []
    async for record in store.iter_records():
        attr = record.attribute(trait_type)
        if attr is not None and attr.value == value:
            ids.append(record.token_id)
    return sorted(ids)
