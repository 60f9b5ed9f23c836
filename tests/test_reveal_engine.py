import asyncio

import pytest

from fakes import FakeFetcher, FlakyStore, RecordingNotifier, make_metadata, placeholder, staked_log
from herowatch.adapters.store.memory_store import InMemoryTokenStore
from herowatch.application.reconciliation import CheckOutcome, RetryPolicy
from herowatch.application.retry_queue import RetryQueue
from herowatch.application.reveal_engine import RevealEngine
from herowatch.application.scheduler import DelayedTaskScheduler
from herowatch.domain.errors import MalformedMetadataError, TransientFetchError
from herowatch.domain.models.jobs import RetryJob


def build(store=None, fetcher=None, notifier=None, max_attempts=5):
    store = store if store is not None else InMemoryTokenStore()
    fetcher = fetcher or FakeFetcher()
    notifier = notifier or RecordingNotifier()
    queue = RetryQueue()
    scheduler = DelayedTaskScheduler()
    engine = RevealEngine(
        store, fetcher, notifier, scheduler, retry=RetryPolicy(queue, max_attempts), settle_delay=0
    )
    return engine, store, fetcher, notifier, queue, scheduler


@pytest.mark.anyio
async def test_unknown_token_gets_record_and_watch():
    engine, store, fetcher, notifier, queue, sched = build()
    await engine.handle_logs([staked_log(7)])
    await sched.join()

    record = await store.get(7)
    assert record is not None and record.revealed is False
    assert 7 in engine.working_set
    assert notifier.reveals == []


@pytest.mark.anyio
async def test_placeholder_is_noop():
    engine, store, fetcher, notifier, queue, sched = build()
    fetcher.script(7, placeholder(7))
    await engine.handle_logs([staked_log(7)])
    await sched.join()

    assert (await store.get(7)).revealed is False
    assert store.mark_calls == 0
    assert 7 in engine.working_set
    assert len(queue) == 0
    assert notifier.reveals == []


@pytest.mark.anyio
async def test_resolved_reveal_announces_once():
    engine, store, fetcher, notifier, queue, sched = build()
    fetcher.script(8, make_metadata(8, "https://cdn.example/8.png", level=1))

    await engine.handle_logs([staked_log(8, owner="0xBB")])
    await sched.join()
    await engine.handle_logs([staked_log(8, owner="0xBB")])
    await sched.join()

    assert notifier.reveals == [(8, "0xBB", "https://cdn.example/8.png")]
    record = await store.get(8)
    assert record.revealed is True
    assert record.image == "https://cdn.example/8.png"
    assert 8 not in engine.working_set
    # second event is filtered before any fetch
    assert fetcher.calls == [8]


@pytest.mark.anyio
async def test_level_above_one_suppresses_announcement():
    engine, store, fetcher, notifier, queue, sched = build()
    fetcher.script(9, make_metadata(9, level=4))
    await engine.handle_logs([staked_log(9)])
    await sched.join()

    assert (await store.get(9)).revealed is True
    assert notifier.reveals == []


@pytest.mark.anyio
async def test_non_numeric_level_does_not_suppress():
    engine, store, fetcher, notifier, queue, sched = build()
    fetcher.script(9, make_metadata(9, level="??"))
    await engine.handle_logs([staked_log(9)])
    await sched.join()
    assert len(notifier.reveals) == 1


@pytest.mark.anyio
async def test_transient_failure_enqueues_retry():
    engine, store, fetcher, notifier, queue, sched = build()
    fetcher.script(10, TransientFetchError("503", 10))
    await engine.handle_logs([staked_log(10, owner="0xCC")])
    await sched.join()

    jobs = queue.drain()
    assert jobs == [RetryJob(10, "0xCC", 1)]
    assert (await store.get(10)).revealed is False


@pytest.mark.anyio
async def test_retry_ceiling_abandons_after_max_failures():
    engine, store, fetcher, notifier, queue, sched = build(max_attempts=5)
    fetcher.script(11, MalformedMetadataError("bad", 11))

    outcome = await engine.check(engine.parse(staked_log(11)), attempt=0)
    failures = 1
    while len(queue):
        (job,) = queue.drain()
        outcome = await engine.process_retry(job)
        failures += 1

    assert failures == 5
    assert outcome == CheckOutcome.ABANDONED
    assert len(fetcher.calls) == 5
    assert notifier.reveals == []


@pytest.mark.anyio
async def test_retry_discarded_when_store_already_revealed():
    engine, store, fetcher, notifier, queue, sched = build()
    await store.mark_revealed(12, "https://x/12.png")
    outcome = await engine.process_retry(RetryJob(12, "0xAA", 2))
    assert outcome == CheckOutcome.SETTLED
    assert fetcher.calls == []


@pytest.mark.anyio
async def test_store_error_abandons_without_retry():
    store = FlakyStore(failing=["mark_revealed"])
    engine, store, fetcher, notifier, queue, sched = build(store=store)
    fetcher.script(13, make_metadata(13))
    await engine.handle_logs([staked_log(13)])
    await sched.join()

    assert len(queue) == 0
    assert notifier.reveals == []


@pytest.mark.anyio
async def test_notify_failure_is_swallowed_and_state_kept():
    engine, store, fetcher, notifier, queue, sched = build(notifier=RecordingNotifier(fail=True))
    fetcher.script(14, make_metadata(14))
    await engine.handle_logs([staked_log(14)])
    await sched.join()

    assert (await store.get(14)).revealed is True
    assert len(queue) == 0


@pytest.mark.anyio
async def test_bad_log_in_batch_does_not_affect_siblings():
    engine, store, fetcher, notifier, queue, sched = build()
    broken = staked_log(15)
    broken.args = {"owner": "0xAA"}  # tokenId missing
    fetcher.script(16, make_metadata(16))

    await engine.handle_logs([broken, staked_log(16)])
    await sched.join()
    assert [r[0] for r in notifier.reveals] == [16]


@pytest.mark.anyio
async def test_removed_log_is_ignored():
    engine, store, fetcher, notifier, queue, sched = build()
    log = staked_log(17)
    log.removed = True
    await engine.handle_logs([log])
    await sched.join()
    assert await store.get(17) is None


@pytest.mark.anyio
async def test_bootstrap_replaces_working_set_from_store():
    engine, store, fetcher, notifier, queue, sched = build()
    engine.working_set = {999}
    await store.upsert(1, {"revealed": False})
    await store.upsert(2, {"revealed": False})
    await store.mark_revealed(3, "https://x/3.png")

    assert await engine.bootstrap() == 2
    assert engine.working_set == {1, 2}


@pytest.mark.anyio
async def test_revealed_in_store_is_cached_and_skipped():
    engine, store, fetcher, notifier, queue, sched = build()
    await store.mark_revealed(20, "https://x/20.png")
    await engine.handle_logs([staked_log(20)])
    await engine.handle_logs([staked_log(20)])
    await sched.join()
    assert fetcher.calls == []


@pytest.mark.anyio
async def test_reprocess_runs_immediate_check():
    engine, store, fetcher, notifier, queue, sched = build()
    fetcher.script(21, make_metadata(21, "https://x/21.png"))
    outcome = await engine.reprocess(21, "0xDD")
    assert outcome == CheckOutcome.RESOLVED
    assert notifier.reveals == [(21, "0xDD", "https://x/21.png")]


def test_fetch_limit_must_be_positive():
    with pytest.raises(ValueError):
        RevealEngine(InMemoryTokenStore(), FakeFetcher(), RecordingNotifier(), DelayedTaskScheduler(), max_concurrent_fetches=0)


@pytest.mark.anyio
async def test_live_and_retry_checks_share_fetch_limit():
    gate = asyncio.Event()
    fetcher = FakeFetcher(gate=gate)
    store = InMemoryTokenStore()
    engine = RevealEngine(
        store, fetcher, RecordingNotifier(), DelayedTaskScheduler(), retry=RetryPolicy(RetryQueue()),
        settle_delay=0, max_concurrent_fetches=2,
    )
    for token_id in (1, 2, 3):
        await store.upsert(token_id, {"revealed": False})

    checks = [
        asyncio.create_task(engine.reprocess(1, "0xAA")),
        asyncio.create_task(engine.process_retry(RetryJob(2, "0xAA", 1))),
        asyncio.create_task(engine.process_retry(RetryJob(3, "0xAA", 1))),
    ]
    for _ in range(20):
        await asyncio.sleep(0)
    assert len(fetcher.calls) == 2

    gate.set()
    await asyncio.gather(*checks)
    assert sorted(fetcher.calls) == [1, 2, 3]
