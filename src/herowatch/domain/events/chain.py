from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class DecodedLog:
    """Contract log as delivered by the chain client, with decoded event args."""

    address: str
    topics: List[str]
    data: str
    block_number: Optional[int]
    event: str = ""
    args: Dict[str, Any] = field(default_factory=dict)
    transaction_hash: Optional[str] = None
    log_index: Optional[int] = None
    removed: bool = False


@dataclass(frozen=True)
class StakedEvent:
    owner: str
    token_id: int
    timestamp: int
    block_number: Optional[int] = None

    @classmethod
    def from_log(cls, log: DecodedLog) -> "StakedEvent":
        return cls(
            owner=str(log.args["owner"]),
            token_id=int(log.args["tokenId"]),
            timestamp=int(log.args.get("timestamp", 0)),
            block_number=log.block_number,
        )


@dataclass(frozen=True)
class DeathEvent:
    token_id: int
    block_number: Optional[int] = None

    @classmethod
    def from_log(cls, log: DecodedLog) -> "DeathEvent":
        return cls(token_id=int(log.args["id"]), block_number=log.block_number)
