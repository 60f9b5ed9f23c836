"""
Websocket JSON-RPC client for chain log subscriptions.

One instance owns one socket. It reconnects forever with capped exponential
backoff, re-issues eth_subscribe for every live subscription on the new
socket, then runs the registered reconnect callbacks in registration order.
"""

import asyncio
import inspect
import itertools
import json
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import websockets
from loguru import logger
from websockets.exceptions import ConnectionClosed, WebSocketException

from ...domain.errors import SubscriptionError
from ...ports.chain import (
    ChainSubscriber,
    ErrorHandler,
    EventFilter,
    LogsHandler,
    ReconnectCallback,
    SubscriptionHandle,
)
from .abi import decode_log

ConnectFactory = Callable[[str], Awaitable[Any]]

_CONNECT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException, SubscriptionError)


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """min(base * 2^(attempt-1), cap) for attempt >= 1."""
    if attempt < 1:
        return 0.0
    return min(base * (2 ** (attempt - 1)), cap)


async def _default_connect(url: str):
    return await websockets.connect(url, ping_interval=20, ping_timeout=20, max_size=10 * 1024 * 1024)


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class LogSubscription(SubscriptionHandle):
    def __init__(
        self,
        client: "ChainEventClient",
        event_filter: EventFilter,
        on_logs: LogsHandler,
        on_error: Optional[ErrorHandler],
    ):
        self._client = client
        self.event_filter = event_filter
        self.on_logs = on_logs
        self.on_error = on_error
        self.remote_id: Optional[str] = None
        self.cancelled = False

    @property
    def subscription_id(self) -> Optional[str]:
        return self.remote_id

    async def cancel(self) -> None:
        await self._client._cancel(self)


class ChainEventClient(ChainSubscriber):
    def __init__(
        self,
        ws_url: str,
        connect: Optional[ConnectFactory] = None,
        reconnect_base_delay: float = 1.0,
        reconnect_max_delay: float = 30.0,
        heartbeat_interval: float = 300.0,
        request_timeout: float = 15.0,
    ):
        self.ws_url = ws_url
        self._connect = connect or _default_connect
        self.reconnect_base_delay = reconnect_base_delay
        self.reconnect_max_delay = reconnect_max_delay
        self.heartbeat_interval = heartbeat_interval
        self.request_timeout = request_timeout

        self._ws: Any = None
        self._connected = asyncio.Event()
        self._closing = False
        self._runner: Optional[asyncio.Task] = None
        self._heartbeat: Optional[asyncio.Task] = None
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._subscriptions: List[LogSubscription] = []
        self._by_remote: Dict[str, LogSubscription] = {}
        self._registry: List[ReconnectCallback] = []
        self._handler_tasks: Set[asyncio.Task] = set()

        self.connect_count = 0
        self.reconnect_attempts = 0
        self.last_connected: Optional[datetime] = None

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    async def start(self) -> None:
        if self._runner is not None:
            return
        self._closing = False
        self._runner = asyncio.create_task(self._run(), name="chain-ws-runner")
        if self.heartbeat_interval > 0:
            self._heartbeat = asyncio.create_task(self._heartbeat_loop(), name="chain-ws-heartbeat")
        logger.info(f"CHAIN_CLIENT_START | url={self.ws_url}")

    async def wait_until_connected(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self._connected.wait(), timeout)

    async def wait_idle(self) -> None:
        """Wait for every in-flight log handler to finish."""
        while self._handler_tasks:
            await asyncio.gather(*list(self._handler_tasks), return_exceptions=True)

    async def close(self) -> None:
        self._closing = True
        for task in (self._heartbeat, self._runner):
            if task is not None:
                task.cancel()
        for task in (self._heartbeat, self._runner):
            if task is not None:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._heartbeat = self._runner = None
        await self._drop_connection()
        for task in list(self._handler_tasks):
            task.cancel()
        logger.info("CHAIN_CLIENT_CLOSED")

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def is_connected(self) -> bool:
        return self._connected.is_set()

    def status(self) -> Dict[str, Any]:
        return {
            "connected": self.is_connected(),
            "last_connected": self.last_connected.isoformat() if self.last_connected else None,
            "reconnect_attempts": self.reconnect_attempts,
            "active_subscriptions": sum(1 for s in self._subscriptions if s.remote_id is not None),
        }

    def register_subscription(self, callback: ReconnectCallback) -> None:
        self._registry.append(callback)

    async def request(self, method: str, params: Optional[list] = None) -> Any:
        await self._connected.wait()
        return await self._send_request(self._ws, method, params or [])

    async def subscribe(
        self,
        event_filter: EventFilter,
        on_logs: LogsHandler,
        on_error: Optional[ErrorHandler] = None,
    ) -> LogSubscription:
        sub = LogSubscription(self, event_filter, on_logs, on_error)
        self._subscriptions.append(sub)
        if self.is_connected():
            try:
                await self._activate(self._ws, sub)
            except SubscriptionError as exc:
                # stays registered; the next connection activates it
                logger.warning(f"SUBSCRIBE_DEFERRED | event={event_filter.event.name} | err={exc}")
        logger.info(
            f"SUBSCRIBE | event={event_filter.event.name} | address={event_filter.address} | id={sub.remote_id}"
        )
        return sub

    # ------------------------------------------------------------------ #
    # Connection loop
    # ------------------------------------------------------------------ #
    async def _run(self) -> None:
        attempt = 0
        while not self._closing:
            try:
                ws = await self._connect(self.ws_url)
            except _CONNECT_ERRORS as exc:
                attempt += 1
                await self._backoff(attempt, f"connect failed: {exc!r}")
                continue

            self._ws = ws
            reader = asyncio.create_task(self._read_loop(ws), name="chain-ws-reader")
            try:
                # subscribe() may append while we await; loop until none is left inactive
                while True:
                    inactive = [s for s in self._subscriptions if s.remote_id is None and not s.cancelled]
                    if not inactive:
                        break
                    for sub in inactive:
                        await self._activate(ws, sub)
            except SubscriptionError as exc:
                logger.error(f"RESUBSCRIBE_FAILED | err={exc}")
                reader.cancel()
                await self._drop_connection()
                attempt += 1
                await self._backoff(attempt, "resubscribe failed")
                continue

            reconnected = self.connect_count > 0
            self.connect_count += 1
            self.last_connected = datetime.now(timezone.utc)
            attempt = 0
            self.reconnect_attempts = 0
            self._connected.set()
            logger.info(f"CHAIN_CONNECTED | url={self.ws_url} | connects={self.connect_count} | subs={len(self._subscriptions)}")

            if reconnected:
                await self._replay_registry()

            try:
                await reader
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"CHAIN_READER_ERROR | err={exc!r}")

            await self._drop_connection()
            if self._closing:
                break
            attempt += 1
            await self._backoff(attempt, "connection lost")

    async def _backoff(self, attempt: int, reason: str) -> None:
        self.reconnect_attempts = attempt
        delay = backoff_delay(attempt, self.reconnect_base_delay, self.reconnect_max_delay)
        logger.warning(f"CHAIN_RECONNECT | attempt={attempt} | delay={delay:.1f}s | reason={reason}")
        await asyncio.sleep(delay)

    async def _drop_connection(self) -> None:
        self._connected.clear()
        ws, self._ws = self._ws, None
        self._by_remote.clear()
        for sub in self._subscriptions:
            sub.remote_id = None
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(SubscriptionError("connection closed"))
        self._pending.clear()
        if ws is not None:
            try:
                await ws.close()
            except (OSError, WebSocketException) as exc:
                logger.debug(f"CHAIN_CLOSE_ERROR | err={exc!r}")

    async def _replay_registry(self) -> None:
        for idx, callback in enumerate(list(self._registry)):
            try:
                await _maybe_await(callback())
            except Exception as exc:
                logger.exception(f"RECONNECT_CALLBACK_FAILED | index={idx} | err={exc!r}")

    async def _heartbeat_loop(self) -> None:
        while not self._closing:
            await asyncio.sleep(self.heartbeat_interval)
            s = self.status()
            logger.info(
                f"CHAIN_HEARTBEAT | connected={s['connected']} | last_connected={s['last_connected']} | "
                f"reconnect_attempts={s['reconnect_attempts']} | active_subscriptions={s['active_subscriptions']}"
            )

    # ------------------------------------------------------------------ #
    # Wire protocol
    # ------------------------------------------------------------------ #
    async def _send_request(self, ws: Any, method: str, params: list) -> Any:
        if ws is None:
            raise SubscriptionError(f"{method}: not connected")
        req_id = next(self._ids)
        fut = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut
        try:
            await ws.send(json.dumps({"jsonrpc": "2.0", "id": req_id, "method": method, "params": params}))
            return await asyncio.wait_for(fut, self.request_timeout)
        except asyncio.TimeoutError as exc:
            raise SubscriptionError(f"{method}: timed out after {self.request_timeout}s") from exc
        except (ConnectionClosed, OSError) as exc:
            raise SubscriptionError(f"{method}: {exc!r}") from exc
        finally:
            self._pending.pop(req_id, None)

    async def _activate(self, ws: Any, sub: LogSubscription) -> None:
        if sub.cancelled:
            return
        remote_id = await self._send_request(ws, "eth_subscribe", ["logs", sub.event_filter.to_params()])
        sub.remote_id = str(remote_id)
        self._by_remote[sub.remote_id] = sub

    async def _cancel(self, sub: LogSubscription) -> None:
        sub.cancelled = True
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)
        remote_id, sub.remote_id = sub.remote_id, None
        if remote_id is None:
            return
        self._by_remote.pop(remote_id, None)
        if self.is_connected():
            try:
                await self._send_request(self._ws, "eth_unsubscribe", [remote_id])
            except SubscriptionError as exc:
                logger.warning(f"UNSUBSCRIBE_FAILED | id={remote_id} | err={exc}")

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                try:
                    message = json.loads(raw)
                except (TypeError, ValueError):
                    logger.warning(f"CHAIN_BAD_MESSAGE | raw={str(raw)[:200]}")
                    continue
                self._dispatch(message)
        except ConnectionClosed as exc:
            logger.warning(f"CHAIN_CONNECTION_CLOSED | code={getattr(exc, 'code', None)}")

    def _dispatch(self, message: Dict[str, Any]) -> None:
        if "id" in message and message.get("id") in self._pending:
            fut = self._pending[message["id"]]
            if fut.done():
                return
            if message.get("error"):
                fut.set_exception(SubscriptionError(f"rpc error: {message['error']}"))
            else:
                fut.set_result(message.get("result"))
            return

        if message.get("method") != "eth_subscription":
            return
        params = message.get("params") or {}
        sub = self._by_remote.get(str(params.get("subscription")))
        if sub is None or sub.cancelled:
            return
        task = asyncio.create_task(self._deliver(sub, params.get("result") or {}))
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)

    async def _deliver(self, sub: LogSubscription, raw_log: Dict[str, Any]) -> None:
        try:
            decoded = decode_log(raw_log, sub.event_filter.event)
        except ValueError as exc:
            logger.warning(f"LOG_DECODE_FAILED | event={sub.event_filter.event.name} | err={exc}")
            await self._notify_error(sub, exc)
            return
        try:
            await sub.on_logs([decoded])
        except Exception as exc:
            logger.exception(f"LOG_HANDLER_FAILED | event={decoded.event} | block={decoded.block_number} | err={exc!r}")
            await self._notify_error(sub, exc)

    async def _notify_error(self, sub: LogSubscription, exc: BaseException) -> None:
        if sub.on_error is None:
            return
        try:
            await _maybe_await(sub.on_error(exc))
        except Exception as err:
            logger.exception(f"ERROR_HANDLER_FAILED | event={sub.event_filter.event.name} | err={err!r}")
