import asyncio
from typing import List, Optional, Set

from loguru import logger

from ..adapters.chain.abi import DEATH_EVENT, STAKED_EVENT
from ..adapters.chain.rpc_http import HttpRpcClient
from ..adapters.chain.ws_client import ChainEventClient, backoff_delay
from ..adapters.metadata.http_metadata import HttpMetadataFetcher
from ..adapters.notifier.log_notifier import LogNotifier
from ..adapters.notifier.twitter_notifier import TwitterNotifier
from ..adapters.store.redis_store import RedisTokenStore
from ..config.settings import AppConfig
from ..domain.errors import StoreError
from ..domain.events.chain import DecodedLog
from ..ports.chain import EventFilter
from ..ports.metadata import MetadataFetcher
from ..ports.notifier import Notifier
from ..ports.state_store import TokenStore
from ..utils.shutdown import wait_until_stopped
from .backfill import HistoricalSync
from .death_engine import DeathEngine
from .reconciliation import RetryPolicy
from .retry_queue import RetryQueue, RetryWorker
from .reveal_engine import RevealEngine
from .scheduler import DelayedTaskScheduler


def build_notifier(config: AppConfig) -> Notifier:
    n = config.notifier
    if n.dry_run:
        logger.warning("NOTIFIER | mode=dry_run | posts are logged, not sent")
        return LogNotifier()
    return TwitterNotifier(
        api_key=n.api_key,
        api_secret=n.api_secret,
        access_token=n.access_token,
        access_secret=n.access_secret,
        bearer_token=n.bearer_token,
        download_timeout_seconds=config.metadata.timeout_seconds,
    )


def build_fetcher(config: AppConfig) -> HttpMetadataFetcher:
    return HttpMetadataFetcher(
        base_uri=config.metadata.base_uri,
        placeholder_image=config.metadata.unrevealed_image_url,
        timeout_seconds=config.metadata.timeout_seconds,
    )


def build_store(config: AppConfig) -> RedisTokenStore:
    return RedisTokenStore(config.store.redis_url)


class HeroMonitor:
    """
    Wires the chain client, store, fetcher and notifier into the reveal and
    death engines and owns their lifecycle.

    When the store cannot be reached at startup the monitor runs degraded:
    only the death engine is started, without dedupe.
    """

    def __init__(
        self,
        config: AppConfig,
        store: TokenStore,
        fetcher: MetadataFetcher,
        notifier: Notifier,
        chain: ChainEventClient,
        rpc: Optional[HttpRpcClient] = None,
    ):
        self.config = config
        self.store = store
        self.fetcher = fetcher
        self.notifier = notifier
        self.chain = chain
        self.rpc = rpc

        self.scheduler = DelayedTaskScheduler("checks")
        self.degraded = False
        self.reveal: Optional[RevealEngine] = None
        self.death: Optional[DeathEngine] = None
        self.retry_queue: Optional[RetryQueue] = None
        self.retry_worker: Optional[RetryWorker] = None
        self.backfill: Optional[HistoricalSync] = None
        self._tasks: Set[asyncio.Task] = set()
        self._started = False

    @classmethod
    def from_config(cls, config: AppConfig) -> "HeroMonitor":
        c = config.chain
        chain = ChainEventClient(
            c.ws_rpc_url,
            reconnect_base_delay=c.reconnect_base_delay_seconds,
            reconnect_max_delay=c.reconnect_max_delay_seconds,
            heartbeat_interval=c.heartbeat_interval_seconds,
            request_timeout=c.request_timeout_seconds,
        )
        rpc = HttpRpcClient(c.rpc_url, timeout_seconds=c.request_timeout_seconds) if config.backfill.enabled else None
        return cls(config, build_store(config), build_fetcher(config), build_notifier(config), chain, rpc)

    async def connect_store(self) -> bool:
        attempts = self.config.store.connect_attempts
        base = self.config.store.connect_backoff_seconds
        for attempt in range(1, attempts + 1):
            try:
                await self.store.ping()
                logger.info(f"STORE_CONNECTED | attempt={attempt}")
                return True
            except StoreError as exc:
                logger.warning(f"STORE_CONNECT_FAILED | attempt={attempt}/{attempts} | err={exc}")
                if attempt < attempts:
                    await asyncio.sleep(backoff_delay(attempt, base, self.config.chain.reconnect_max_delay_seconds))
        logger.error("STORE_UNAVAILABLE | running degraded: reveal engine, retry worker and backfill disabled")
        return False

    def _build_engines(self) -> None:
        cfg = self.config
        if not self.degraded:
            self.retry_queue = RetryQueue(cfg.reveal.retry_queue_size)
            self.reveal = RevealEngine(
                self.store,
                self.fetcher,
                self.notifier,
                self.scheduler,
                retry=RetryPolicy(self.retry_queue, cfg.reveal.max_attempts),
                settle_delay=cfg.reveal.settle_delay_seconds,
                level_trait=cfg.metadata.level_trait,
                max_concurrent_fetches=cfg.reveal.max_concurrent_fetches,
            )
            self.retry_worker = RetryWorker(
                self.retry_queue,
                self.reveal.process_retry,
                interval_seconds=cfg.reveal.retry_interval_seconds,
                concurrency=cfg.reveal.retry_concurrency,
            )
            if cfg.backfill.enabled and self.rpc is not None:
                self.backfill = HistoricalSync(
                    self.rpc,
                    self.store,
                    cfg.chain.staking_contract_address,
                    STAKED_EVENT,
                    self.reveal.handle_logs,
                    fallback_start_block=cfg.backfill.fallback_start_block,
                    reorg_safety=cfg.backfill.reorg_safety,
                    batch_size=cfg.backfill.block_batch_size,
                    write_frequency=cfg.backfill.block_write_frequency,
                    dedupe_key=lambda log: log.args.get("tokenId"),
                )
        if cfg.death.enabled:
            self.death = DeathEngine(
                self.fetcher,
                self.notifier,
                self.scheduler,
                store=None if self.degraded else self.store,
                settle_delay=cfg.death.settle_delay_seconds,
                level_trait=cfg.metadata.level_trait,
                max_concurrent_fetches=cfg.reveal.max_concurrent_fetches,
            )

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.degraded = not await self.connect_store()
        self._build_engines()

        await self.chain.start()
        cfg = self.config.chain

        if self.reveal is not None:
            try:
                await self.reveal.bootstrap()
            except StoreError as exc:
                logger.error(f"REVEAL_BOOTSTRAP_FAILED | err={exc}")
            self.chain.register_subscription(self._on_reconnect)
            await self.chain.subscribe(
                EventFilter(cfg.staking_contract_address, STAKED_EVENT),
                self._on_staked_logs,
                self._on_subscription_error,
            )
            self._spawn(self.retry_worker.run(), "retry-worker")
            if self.backfill is not None:
                self._spawn(self.backfill.run(), "backfill")

        if self.death is not None:
            await self.chain.subscribe(
                EventFilter(cfg.endgame_contract_address, DEATH_EVENT),
                self.death.handle_logs,
                self._on_subscription_error,
            )

        logger.info(
            f"MONITOR_STARTED | degraded={self.degraded} | reveal={self.reveal is not None} | "
            f"death={self.death is not None} | backfill={self.backfill is not None}"
        )

    def _spawn(self, coro, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _on_staked_logs(self, logs: List[DecodedLog]) -> None:
        await self.reveal.handle_logs(logs)
        if self.backfill is not None:
            await self.backfill.observe(logs)

    async def _on_subscription_error(self, exc: BaseException) -> None:
        logger.error(f"SUBSCRIPTION_ERROR | err={exc!r}")

    async def _on_reconnect(self) -> None:
        if self.reveal is None:
            return
        try:
            await self.reveal.bootstrap()
        except StoreError as exc:
            logger.error(f"REVEAL_BOOTSTRAP_FAILED | stage=reconnect | err={exc}")
        if self.backfill is not None:
            self._spawn(self.backfill.run(), "backfill")

    async def run(self) -> None:
        await self.start()
        try:
            await wait_until_stopped()
        finally:
            await self.stop()

    async def stop(self) -> None:
        logger.info("MONITOR_STOPPING")
        grace = self.config.runtime.shutdown_grace_seconds
        draining = [self.scheduler.drain(grace)]
        if self.retry_worker is not None:
            draining.append(self.retry_worker.shutdown(grace))
        await asyncio.gather(*draining)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        await self.chain.close()
        await self.fetcher.close()
        await self.notifier.close()
        if self.rpc is not None:
            await self.rpc.close()
        try:
            await self.store.close()
        except StoreError as exc:
            logger.warning(f"STORE_CLOSE_FAILED | err={exc}")
        logger.info("MONITOR_STOPPED")
