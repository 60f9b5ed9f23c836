import asyncio
import json

import httpx
import pytest

from fakes import FakeFetcher, RecordingNotifier, raw_staked_log, staked_log
from herowatch.adapters.chain.abi import STAKED_EVENT
from herowatch.adapters.chain.rpc_http import HttpRpcClient
from herowatch.adapters.store.memory_store import InMemoryTokenStore
from herowatch.application.backfill import HistoricalSync, should_checkpoint
from herowatch.application.reconciliation import RetryPolicy
from herowatch.application.retry_queue import RetryQueue
from herowatch.application.reveal_engine import RevealEngine
from herowatch.application.scheduler import DelayedTaskScheduler
from herowatch.domain.errors import SubscriptionError

STAKING = "0x06d7ee1d50828ca96e11890a1601f6fe61f1e584"


class CheckpointLog(InMemoryTokenStore):
    def __init__(self):
        super().__init__()
        self.checkpoints = []

    async def set_checkpoint(self, block_number: int) -> None:
        self.checkpoints.append(block_number)
        await super().set_checkpoint(block_number)


class FakeNode:
    """eth_blockNumber / eth_getLogs over a fixed set of logs."""

    def __init__(self, head: int, logs_by_block, fail_get_logs: bool = False):
        self.head = head
        self.logs_by_block = logs_by_block
        self.fail_get_logs = fail_get_logs
        self.ranges = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if body["method"] == "eth_blockNumber":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": hex(self.head)})
        if self.fail_get_logs:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32005, "message": "limit"}})
        params = body["params"][0]
        lo, hi = int(params["fromBlock"], 16), int(params["toBlock"], 16)
        self.ranges.append((lo, hi))
        found = [log for block, log in sorted(self.logs_by_block.items()) if lo <= block <= hi]
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": found})


def make_sync(node: FakeNode, store, handled, **kwargs) -> HistoricalSync:
    rpc = HttpRpcClient("https://rpc.example", client=httpx.AsyncClient(transport=httpx.MockTransport(node)))

    async def handler(logs):
        handled.extend(logs)

    params = dict(fallback_start_block=101, reorg_safety=0, batch_size=10, write_frequency=10)
    params.update(kwargs)
    return HistoricalSync(rpc, store, STAKING, STAKED_EVENT, handler, **params)


def test_checkpoint_rule():
    assert should_checkpoint(110, 10)
    assert not should_checkpoint(111, 10)
    assert should_checkpoint(111, 10, head=111)


@pytest.mark.anyio
async def test_replays_batches_and_checkpoints():
    node = FakeNode(125, {103: raw_staked_log(1, block_number=103), 118: raw_staked_log(2, block_number=118)})
    store = CheckpointLog()
    handled = []
    sync = make_sync(node, store, handled)

    assert await sync.run() == 2
    assert node.ranges == [(101, 110), (111, 120), (121, 125)]
    assert [log.args["tokenId"] for log in handled] == [1, 2]
    assert store.checkpoints == [110, 120, 125]


@pytest.mark.anyio
async def test_resumes_from_checkpoint_minus_reorg_window():
    node = FakeNode(130, {})
    store = CheckpointLog()
    await store.set_checkpoint(120)
    sync = make_sync(node, store, [], reorg_safety=6)

    assert await sync.start_block() == 114
    await sync.run()
    assert node.ranges[0] == (114, 123)


@pytest.mark.anyio
async def test_rpc_error_is_logged_not_raised():
    node = FakeNode(125, {}, fail_get_logs=True)
    store = CheckpointLog()
    sync = make_sync(node, store, [])
    assert await sync.run() == 0
    assert store.checkpoints == []


@pytest.mark.anyio
async def test_undecodable_log_is_skipped():
    bad = raw_staked_log(1, block_number=104)
    bad["data"] = "0x00"
    node = FakeNode(110, {104: bad, 105: raw_staked_log(2, block_number=105)})
    handled = []
    sync = make_sync(node, CheckpointLog(), handled)
    assert await sync.run() == 1
    assert handled[0].args["tokenId"] == 2


@pytest.mark.anyio
async def test_live_logs_advance_checkpoint_on_frequency():
    store = CheckpointLog()
    sync = make_sync(FakeNode(0, {}), store, [])
    await sync.observe([staked_log(1, block_number=219), staked_log(2, block_number=220)])
    assert store.checkpoints == [220]


@pytest.mark.anyio
async def test_rpc_client_wraps_http_errors():
    rpc = HttpRpcClient(
        "https://rpc.example", client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(502)))
    )
    with pytest.raises(SubscriptionError):
        await rpc.block_number()
    await rpc.close()


class CountingFetcher(FakeFetcher):
    """Tracks how many fetches are in flight at once."""

    def __init__(self):
        super().__init__()
        self.active = 0
        self.peak = 0

    async def fetch(self, token_id):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(0.005)
            return await super().fetch(token_id)
        finally:
            self.active -= 1


@pytest.mark.anyio
async def test_replayed_checks_respect_fetch_limit():
    logs = {block: raw_staked_log(block - 1000 + 1, block_number=block) for block in range(1000, 1200)}
    node = FakeNode(1199, logs)
    store = InMemoryTokenStore()
    fetcher = CountingFetcher()
    scheduler = DelayedTaskScheduler()
    engine = RevealEngine(
        store, fetcher, RecordingNotifier(), scheduler,
        retry=RetryPolicy(RetryQueue()), settle_delay=0, max_concurrent_fetches=10,
    )
    rpc = HttpRpcClient("https://rpc.example", client=httpx.AsyncClient(transport=httpx.MockTransport(node)))
    sync = HistoricalSync(
        rpc, store, STAKING, STAKED_EVENT, engine.handle_logs,
        fallback_start_block=1000, reorg_safety=0, batch_size=500, write_frequency=10,
    )

    assert await sync.run() == 200
    await scheduler.join()

    assert len(fetcher.calls) == 200
    assert fetcher.peak <= 10


@pytest.mark.anyio
async def test_batch_collapses_repeated_token_to_latest_log():
    node = FakeNode(
        110,
        {
            102: raw_staked_log(5, block_number=102),
            104: raw_staked_log(6, block_number=104),
            107: raw_staked_log(5, block_number=107),
        },
    )
    handled = []
    sync = make_sync(node, CheckpointLog(), handled, dedupe_key=lambda log: log.args["tokenId"])

    assert await sync.run() == 2
    assert [(log.args["tokenId"], log.block_number) for log in handled] == [(6, 104), (5, 107)]
