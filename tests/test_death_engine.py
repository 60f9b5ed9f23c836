import pytest

from fakes import FakeFetcher, FlakyStore, RecordingNotifier, death_log, make_metadata, placeholder
from herowatch.adapters.store.memory_store import InMemoryTokenStore
from herowatch.application.death_engine import DeathEngine
from herowatch.application.scheduler import DelayedTaskScheduler
from herowatch.domain.errors import TransientFetchError
from herowatch.domain.events.chain import DeathEvent
from herowatch.domain.models.jobs import RetryJob


def build(store=None, notifier=None):
    fetcher = FakeFetcher()
    notifier = notifier or RecordingNotifier()
    sched = DelayedTaskScheduler()
    engine = DeathEngine(fetcher, notifier, sched, store=store, settle_delay=0)
    return engine, fetcher, notifier, sched


@pytest.mark.anyio
async def test_death_announced_with_level_and_image():
    store = InMemoryTokenStore()
    await store.upsert(5, {"revealed": True})
    engine, fetcher, notifier, sched = build(store)
    fetcher.script(5, make_metadata(5, "https://x/5.gif", level=7))

    await engine.handle_logs([death_log(5)])
    await sched.join()

    assert notifier.deaths == [(5, "https://x/5.gif", 7)]
    assert (await store.get(5)).death_recorded is True


@pytest.mark.anyio
async def test_placeholder_image_still_announced():
    engine, fetcher, notifier, sched = build()
    fetcher.script(6, placeholder(6))
    await engine.handle_logs([death_log(6)])
    await sched.join()
    assert len(notifier.deaths) == 1


@pytest.mark.anyio
async def test_fetch_failure_drops_event():
    engine, fetcher, notifier, sched = build(InMemoryTokenStore())
    fetcher.script(7, TransientFetchError("down", 7))
    await engine.handle_logs([death_log(7)])
    await sched.join()
    assert notifier.deaths == []
    assert fetcher.calls == [7]


@pytest.mark.anyio
async def test_recorded_death_is_skipped():
    store = InMemoryTokenStore()
    await store.upsert(8, {"revealed": True})
    engine, fetcher, notifier, sched = build(store)
    fetcher.script(8, make_metadata(8))

    await engine.handle_logs([death_log(8)])
    await sched.join()
    await engine.handle_logs([death_log(8)])
    await sched.join()

    assert len(notifier.deaths) == 1
    assert fetcher.calls == [8]


@pytest.mark.anyio
async def test_without_store_every_event_is_announced():
    engine, fetcher, notifier, sched = build(store=None)
    fetcher.script(9, make_metadata(9))
    await engine.handle_logs([death_log(9), death_log(9)])
    await sched.join()
    assert len(notifier.deaths) == 2


@pytest.mark.anyio
async def test_store_errors_never_block_announcement():
    engine, fetcher, notifier, sched = build(FlakyStore(failing=["get", "upsert"]))
    fetcher.script(10, make_metadata(10))
    await engine.handle_logs([death_log(10)])
    await sched.join()
    assert len(notifier.deaths) == 1


@pytest.mark.anyio
async def test_notify_failure_still_records_death():
    store = InMemoryTokenStore()
    await store.upsert(11, {"revealed": True})
    engine, fetcher, notifier, sched = build(store, notifier=RecordingNotifier(fail=True))
    fetcher.script(11, make_metadata(11))
    await engine.handle_logs([death_log(11)])
    await sched.join()
    assert (await store.get(11)).death_recorded is True


@pytest.mark.anyio
async def test_untracked_token_death_creates_no_record():
    store = InMemoryTokenStore()
    engine, fetcher, notifier, sched = build(store)
    fetcher.script(12, make_metadata(12))

    await engine.handle_logs([death_log(12)])
    await sched.join()

    assert len(notifier.deaths) == 1
    assert await store.get(12) is None
    assert await store.list_unrevealed() == []


@pytest.mark.anyio
async def test_death_on_unrevealed_record_keeps_it_unrevealed():
    store = InMemoryTokenStore()
    await store.upsert(13, {"revealed": False})
    engine, fetcher, notifier, sched = build(store)
    fetcher.script(13, make_metadata(13))

    await engine.handle_logs([death_log(13)])
    await sched.join()

    record = await store.get(13)
    assert record.death_recorded is True
    assert await store.list_unrevealed() == [13]


def test_retry_job_rebuilds_death_event():
    engine, _, _, _ = build()
    assert engine.subject_from_job(RetryJob(3)) == DeathEvent(token_id=3)
