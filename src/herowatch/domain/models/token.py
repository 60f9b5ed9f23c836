from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Tuple


class RevealState(Enum):
    """What the store knows about a token's reveal."""

    UNKNOWN = "UNKNOWN"  # no record yet
    UNREVEALED = "UNREVEALED"
    REVEALED = "REVEALED"


TokenId = int


@dataclass(frozen=True)
class Attribute:
    trait_type: str
    value: Any

    def to_dict(self) -> dict:
        return {"trait_type": self.trait_type, "value": self.value}


@dataclass
class TokenRecord:
    """Persisted per-token state."""

    token_id: TokenId
    revealed: bool = False
    death_recorded: bool = False
    image: Optional[str] = None
    attributes: List[Attribute] = field(default_factory=list)
    name: Optional[str] = None
    description: Optional[str] = None

    def __post_init__(self):
        if self.token_id < 0:
            raise ValueError("token_id cannot be negative")

    @property
    def state(self) -> RevealState:
        return RevealState.REVEALED if self.revealed else RevealState.UNREVEALED

    def attribute(self, trait_type: str) -> Optional[Attribute]:
        return next((a for a in self.attributes if a.trait_type == trait_type), None)


def reveal_state_of(record: Optional[TokenRecord]) -> RevealState:
    """Tri-state view of an optional record."""
    if record is None:
        return RevealState.UNKNOWN
    return record.state


@dataclass(frozen=True)
class Metadata:
    """Descriptive metadata served by the collection API."""

    token_id: TokenId
    image: str
    name: Optional[str] = None
    description: Optional[str] = None
    attributes: Tuple[Attribute, ...] = ()

    def attribute(self, trait_type: str) -> Optional[Attribute]:
        return next((a for a in self.attributes if a.trait_type == trait_type), None)

    def numeric_attribute(self, trait_type: str) -> Optional[float]:
        """Attribute value as a number, or None when absent or not numeric."""
        attr = self.attribute(trait_type)
        if attr is None or isinstance(attr.value, bool):
            return None
        try:
            return float(attr.value)
        except (TypeError, ValueError):
            return None
