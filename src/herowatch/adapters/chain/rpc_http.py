import itertools
from typing import Any, Dict, List, Optional

import httpx

from ...domain.errors import SubscriptionError


class HttpRpcClient:
    """Minimal JSON-RPC over HTTP for block-range log queries."""

    def __init__(self, rpc_url: str, timeout_seconds: float = 15.0, client: Optional[httpx.AsyncClient] = None):
        self.rpc_url = rpc_url
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._ids = itertools.count(1)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def call(self, method: str, params: Optional[list] = None) -> Any:
        client = await self._get_client()
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        try:
            resp = await client.post(self.rpc_url, json=body)
            resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise SubscriptionError(f"{method} failed: {exc!r}") from exc
        if payload.get("error"):
            raise SubscriptionError(f"{method} rpc error: {payload['error']}")
        return payload.get("result")

    async def block_number(self) -> int:
        return int(await self.call("eth_blockNumber"), 16)

    async def get_logs(self, address: str, topic: str, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        params = [{
            "address": address.lower(),
            "topics": [topic],
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
        }]
        return list(await self.call("eth_getLogs", params) or [])

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
