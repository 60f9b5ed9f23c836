import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from ..adapters.chain.abi import EventSpec, decode_log
from ..adapters.chain.rpc_http import HttpRpcClient
from ..domain.errors import StoreError, SubscriptionError
from ..domain.events.chain import DecodedLog
from ..ports.state_store import TokenStore

LogsHandler = Callable[[List[DecodedLog]], Awaitable[None]]
LogKey = Callable[[DecodedLog], Any]


def should_checkpoint(block_number: int, write_frequency: int, head: Optional[int] = None) -> bool:
    return block_number % write_frequency == 0 or (head is not None and block_number == head)


class HistoricalSync:
    """
    Best-effort replay of past logs from the persisted block checkpoint.

    Starts `reorg_safety` blocks before the checkpoint (or the fallback start
    block), walks to the current head in fixed-size batches and feeds every
    decoded log to the same handler the live subscription uses. With a
    `dedupe_key`, logs sharing a key within one batch collapse to the latest.
    """

    def __init__(
        self,
        rpc: HttpRpcClient,
        store: TokenStore,
        address: str,
        event: EventSpec,
        handler: LogsHandler,
        fallback_start_block: int = 2273309,
        reorg_safety: int = 6,
        batch_size: int = 5000,
        write_frequency: int = 10,
        dedupe_key: Optional[LogKey] = None,
    ):
        self.rpc = rpc
        self.store = store
        self.address = address
        self.event = event
        self.handler = handler
        self.fallback_start_block = fallback_start_block
        self.reorg_safety = reorg_safety
        self.batch_size = batch_size
        self.write_frequency = write_frequency
        self.dedupe_key = dedupe_key
        self._lock = asyncio.Lock()

    async def start_block(self) -> int:
        checkpoint = await self.store.get_checkpoint()
        base = checkpoint if checkpoint is not None else self.fallback_start_block
        return max(0, base - self.reorg_safety)

    async def run(self) -> int:
        """Returns the number of logs replayed. Never raises on RPC/store errors."""
        if self._lock.locked():
            logger.info("BACKFILL_SKIP | reason=already_running")
            return 0
        async with self._lock:
            try:
                return await self._sync()
            except (SubscriptionError, StoreError) as exc:
                logger.error(f"BACKFILL_FAILED | err={exc}")
                return 0

    async def _sync(self) -> int:
        head = await self.rpc.block_number()
        start = await self.start_block()
        logger.info(f"BACKFILL_START | from={start} | head={head} | batch={self.batch_size}")

        replayed = 0
        from_block = start
        while from_block <= head:
            end = min(from_block + self.batch_size - 1, head)
            raw_logs = await self.rpc.get_logs(self.address, self.event.topic, from_block, end)
            decoded: List[DecodedLog] = []
            for raw in raw_logs:
                try:
                    decoded.append(decode_log(raw, self.event))
                except ValueError as exc:
                    logger.warning(f"BACKFILL_DECODE_FAILED | range={from_block}-{end} | err={exc}")
            decoded = self._collapse(decoded)
            if decoded:
                await self.handler(decoded)
                replayed += len(decoded)
            if should_checkpoint(end, self.write_frequency, head):
                await self.store.set_checkpoint(end)
            from_block = end + 1

        logger.info(f"BACKFILL_DONE | head={head} | replayed={replayed}")
        return replayed

    def _collapse(self, logs: List[DecodedLog]) -> List[DecodedLog]:
        if self.dedupe_key is None or len(logs) < 2:
            return logs
        latest: Dict[Any, DecodedLog] = {}
        for log in logs:
            key = self.dedupe_key(log)
            latest.pop(key, None)
            latest[key] = log
        if len(latest) < len(logs):
            logger.debug(f"BACKFILL_COLLAPSED | logs={len(logs)} | unique={len(latest)}")
        return list(latest.values())

    async def observe(self, logs: List[DecodedLog]) -> None:
        """Advance the checkpoint from live logs on the same frequency rule."""
        for log in logs:
            if log.block_number is None or not should_checkpoint(log.block_number, self.write_frequency):
                continue
            try:
                await self.store.set_checkpoint(log.block_number)
            except StoreError as exc:
                logger.warning(f"CHECKPOINT_WRITE_FAILED | block={log.block_number} | err={exc}")
