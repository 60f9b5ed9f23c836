import asyncio

import pytest

from herowatch.utils.shutdown import request_stop, reset, stopping, wait_until_stopped


@pytest.fixture(autouse=True)
def clear_stop_flag():
    reset()
    yield
    reset()


def test_request_stop_and_reset():
    assert stopping() is False
    request_stop()
    assert stopping() is True
    reset()
    assert stopping() is False


@pytest.mark.anyio
async def test_wait_returns_once_stop_requested():
    waiter = asyncio.create_task(wait_until_stopped(poll_seconds=0.01))
    await asyncio.sleep(0.05)
    assert not waiter.done()

    request_stop()
    await asyncio.wait_for(waiter, timeout=1.0)
