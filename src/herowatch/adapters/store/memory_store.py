import asyncio
from dataclasses import replace
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from ...domain.models.token import Attribute, TokenRecord
from ...ports.state_store import TokenStore, apply_fields, coerce_attributes


class InMemoryTokenStore(TokenStore):
    """Process-local store. Used by tests and offline tooling."""

    def __init__(self, records: Optional[Dict[int, TokenRecord]] = None):
        self._records: Dict[int, TokenRecord] = dict(records or {})
        self._checkpoint: Optional[int] = None
        self._lock = asyncio.Lock()
        self.upsert_calls = 0
        self.mark_calls = 0

    async def ping(self) -> None:
        return None

    async def get(self, token_id: int) -> Optional[TokenRecord]:
        record = self._records.get(token_id)
        return replace(record, attributes=list(record.attributes)) if record else None

    async def upsert(self, token_id: int, fields: Dict[str, Any]) -> TokenRecord:
        async with self._lock:
            self.upsert_calls += 1
            record = apply_fields(self._records.get(token_id), token_id, fields)
            self._records[token_id] = record
            return record

    async def list_unrevealed(self) -> List[int]:
        return sorted(tid for tid, rec in self._records.items() if not rec.revealed)

    async def mark_revealed(
        self,
        token_id: int,
        image: Optional[str],
        attributes: Sequence[Attribute] = (),
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> bool:
        async with self._lock:
            self.mark_calls += 1
            current = self._records.get(token_id)
            if current is not None and current.revealed:
                return False
            base = current or TokenRecord(token_id=token_id)
            self._records[token_id] = replace(
                base,
                revealed=True,
                image=image,
                attributes=coerce_attributes(attributes),
                name=name if name is not None else base.name,
                description=description if description is not None else base.description,
            )
            return True

    async def iter_records(self) -> AsyncIterator[TokenRecord]:
        for token_id in sorted(self._records):
            yield self._records[token_id]

    async def get_checkpoint(self) -> Optional[int]:
        return self._checkpoint

    async def set_checkpoint(self, block_number: int) -> None:
        self._checkpoint = int(block_number)
