from __future__ import annotations

import asyncio
import signal
import threading

from loguru import logger

_STOP_EVENT = threading.Event()


def request_stop() -> None:
    _STOP_EVENT.set()


def stopping() -> bool:
    return _STOP_EVENT.is_set()


def reset() -> None:
    _STOP_EVENT.clear()


async def wait_until_stopped(poll_seconds: float = 0.5) -> None:
    """Block the running loop's caller until a stop has been requested."""
    while not stopping():
        await asyncio.sleep(poll_seconds)


def install_signal_handlers() -> None:
    def _handler(signum, frame):  # pragma: no cover
        logger.warning(f"SIGNAL | signum={signum} | graceful stop requested")
        request_stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except (ValueError, OSError) as exc:
            # not on the main thread, or unsupported on this platform
            logger.debug(f"SIGNAL_INSTALL_SKIPPED | sig={sig} | err={exc}")
