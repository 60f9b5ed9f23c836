"""
Redis-backed token store.

Layout:
    hero:{id}               hash  revealed, death_recorded, image, name, description, attributes (JSON)
    heroes:unrevealed       set   ids with revealed = 0
    heroes:known            set   every id with a record
    checkpoint:last_block   str   last processed block number

The reveal transition is a WATCH/MULTI compare-and-set so two concurrent
checks of the same token cannot both observe the false -> true transition.
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import redis.asyncio as redis
from loguru import logger
from redis.exceptions import RedisError, WatchError

from ...domain.errors import StoreError
from ...domain.models.token import Attribute, TokenRecord
from ...ports.state_store import TokenStore, apply_fields, coerce_attributes

RECORD_PREFIX = "hero:"
UNREVEALED_SET = "heroes:unrevealed"
KNOWN_SET = "heroes:known"
CHECKPOINT_KEY = "checkpoint:last_block"

_CAS_MAX_RETRIES = 20


def record_key(token_id: int) -> str:
    return f"{RECORD_PREFIX}{token_id}"


def _record_to_mapping(record: TokenRecord) -> Dict[str, str]:
    return {
        "token_id": str(record.token_id),
        "revealed": "1" if record.revealed else "0",
        "death_recorded": "1" if record.death_recorded else "0",
        "image": record.image or "",
        "name": record.name or "",
        "description": record.description or "",
        "attributes": json.dumps([a.to_dict() for a in record.attributes]),
    }


def _mapping_to_record(token_id: int, mapping: Dict[str, str]) -> Optional[TokenRecord]:
    if not mapping:
        return None
    try:
        raw_attrs = json.loads(mapping.get("attributes") or "[]")
    except json.JSONDecodeError:
        logger.warning(f"STORE_DECODE | token={token_id} | bad attributes JSON, ignoring")
        raw_attrs = []
    return TokenRecord(
        token_id=token_id,
        revealed=mapping.get("revealed") == "1",
        death_recorded=mapping.get("death_recorded") == "1",
        image=mapping.get("image") or None,
        attributes=coerce_attributes(raw_attrs),
        name=mapping.get("name") or None,
        description=mapping.get("description") or None,
    )


class RedisTokenStore(TokenStore):
    def __init__(self, redis_url: str, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self._redis: Optional[redis.Redis] = client

    def _client(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    async def ping(self) -> None:
        try:
            await self._client().ping()
        except (RedisError, OSError) as exc:
            raise StoreError(f"redis unreachable at {self.redis_url}: {exc}") from exc

    async def get(self, token_id: int) -> Optional[TokenRecord]:
        try:
            mapping = await self._client().hgetall(record_key(token_id))
        except (RedisError, OSError) as exc:
            raise StoreError(f"get failed for token {token_id}: {exc}") from exc
        return _mapping_to_record(token_id, mapping)

    async def upsert(self, token_id: int, fields: Dict[str, Any]) -> TokenRecord:
        key = record_key(token_id)
        try:
            async with self._client().pipeline(transaction=True) as pipe:
                for _ in range(_CAS_MAX_RETRIES):
                    try:
                        await pipe.watch(key)
                        current = _mapping_to_record(token_id, await pipe.hgetall(key))
                        record = apply_fields(current, token_id, fields)
                        pipe.multi()
                        pipe.hset(key, mapping=_record_to_mapping(record))
                        pipe.sadd(KNOWN_SET, token_id)
                        if record.revealed:
                            pipe.srem(UNREVEALED_SET, token_id)
                        else:
                            pipe.sadd(UNREVEALED_SET, token_id)
                        await pipe.execute()
                        return record
                    except WatchError:
                        continue
        except (RedisError, OSError) as exc:
            raise StoreError(f"upsert failed for token {token_id}: {exc}") from exc
        raise StoreError(f"upsert contention for token {token_id}")

    async def list_unrevealed(self) -> List[int]:
        try:
            members = await self._client().smembers(UNREVEALED_SET)
        except (RedisError, OSError) as exc:
            raise StoreError(f"list_unrevealed failed: {exc}") from exc
        return sorted(int(m) for m in members)

    async def mark_revealed(
        self,
        token_id: int,
        image: Optional[str],
        attributes: Sequence[Attribute] = (),
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> bool:
        key = record_key(token_id)
        try:
            async with self._client().pipeline(transaction=True) as pipe:
                for _ in range(_CAS_MAX_RETRIES):
                    try:
                        await pipe.watch(key)
                        if await pipe.hget(key, "revealed") == "1":
                            await pipe.unwatch()
                            return False
                        current = _mapping_to_record(token_id, await pipe.hgetall(key))
                        base = current or TokenRecord(token_id=token_id)
                        record = apply_fields(
                            base,
                            token_id,
                            {
                                "revealed": True,
                                "image": image,
                                "attributes": list(attributes),
                                "name": name if name is not None else base.name,
                                "description": description if description is not None else base.description,
                            },
                        )
                        pipe.multi()
                        pipe.hset(key, mapping=_record_to_mapping(record))
                        pipe.srem(UNREVEALED_SET, token_id)
                        pipe.sadd(KNOWN_SET, token_id)
                        await pipe.execute()
                        return True
                    except WatchError:
                        # someone else touched the record; re-read and decide again
                        continue
        except (RedisError, OSError) as exc:
            raise StoreError(f"mark_revealed failed for token {token_id}: {exc}") from exc
        raise StoreError(f"mark_revealed contention for token {token_id}")

    async def iter_records(self) -> AsyncIterator[TokenRecord]:
        try:
            ids = sorted(int(m) for m in await self._client().smembers(KNOWN_SET))
        except (RedisError, OSError) as exc:
            raise StoreError(f"iter_records failed: {exc}") from exc
        for token_id in ids:
            record = await self.get(token_id)
            if record is not None:
                yield record

    async def get_checkpoint(self) -> Optional[int]:
        try:
            value = await self._client().get(CHECKPOINT_KEY)
        except (RedisError, OSError) as exc:
            raise StoreError(f"get_checkpoint failed: {exc}") from exc
        return int(value) if value else None

    async def set_checkpoint(self, block_number: int) -> None:
        try:
            await self._client().set(CHECKPOINT_KEY, str(int(block_number)))
        except (RedisError, OSError) as exc:
            raise StoreError(f"set_checkpoint failed: {exc}") from exc

    async def close(self) -> None:
        client, self._redis = self._redis, None
        if client is None:
            return
        try:
            await client.aclose()
        except (RedisError, OSError) as exc:
            raise StoreError(f"close failed: {exc}") from exc
