from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from ..domain.models.token import Attribute, TokenRecord

UPSERT_FIELDS = frozenset({"revealed", "death_recorded", "image", "attributes", "name", "description"})


def coerce_attributes(raw: Optional[Sequence[Any]]) -> List[Attribute]:
    """Accept Attribute objects or {trait_type, value} dicts."""
    attrs: List[Attribute] = []
    for item in raw or []:
        if isinstance(item, Attribute):
            attrs.append(item)
        elif isinstance(item, dict) and "trait_type" in item:
            attrs.append(Attribute(trait_type=str(item["trait_type"]), value=item.get("value")))
        else:
            raise ValueError(f"Unsupported attribute entry: {item!r}")
    return attrs


def apply_fields(current: Optional[TokenRecord], token_id: int, fields: Dict[str, Any]) -> TokenRecord:
    """
    Merge upsert fields into a record (create-or-update).

    `revealed` only moves false -> true: a revealed=False field is ignored
    when the current record is already revealed.
    """
    unknown = set(fields) - UPSERT_FIELDS
    if unknown:
        raise ValueError(f"Unknown token fields: {sorted(unknown)}")

    record = current if current is not None else TokenRecord(token_id=token_id)
    updates = dict(fields)
    if "attributes" in updates:
        updates["attributes"] = coerce_attributes(updates["attributes"])
    if record.revealed and updates.get("revealed") is False:
        updates.pop("revealed")
    if record.death_recorded and updates.get("death_recorded") is False:
        updates.pop("death_recorded")
    return replace(record, **updates)


class TokenStore(ABC):
    """Durable token state (reveal / death) plus the chain block checkpoint."""

    @abstractmethod
    async def ping(self) -> None:
        """Raise StoreError when the backend is unreachable."""
        ...

    @abstractmethod
    async def get(self, token_id: int) -> Optional[TokenRecord]:
        ...

    @abstractmethod
    async def upsert(self, token_id: int, fields: Dict[str, Any]) -> TokenRecord:
        ...

    @abstractmethod
    async def list_unrevealed(self) -> List[int]:
        ...

    @abstractmethod
    async def mark_revealed(
        self,
        token_id: int,
        image: Optional[str],
        attributes: Sequence[Attribute] = (),
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> bool:
        """
        Atomic compare-and-set of revealed false -> true.

        Returns True only for the call that performed the transition; any call
        that finds the token already revealed returns False and writes nothing.
        """
        ...

    @abstractmethod
    def iter_records(self) -> AsyncIterator[TokenRecord]:
        """Async iteration over every stored record, in token id order."""
        ...

    @abstractmethod
    async def get_checkpoint(self) -> Optional[int]:
        ...

    @abstractmethod
    async def set_checkpoint(self, block_number: int) -> None:
        ...

    async def close(self) -> None:
        return None
