from dataclasses import dataclass, replace
from typing import Optional, Tuple


@dataclass(frozen=True)
class RetryJob:
    """Deferred re-check of a token whose metadata fetch failed transiently."""

    token_id: int
    owner: Optional[str] = None
    attempt_count: int = 0

    def __post_init__(self):
        if self.attempt_count < 0:
            raise ValueError("attempt_count cannot be negative")

    @property
    def key(self) -> Tuple[int, Optional[str]]:
        owner = self.owner.lower() if self.owner else None
        return (self.token_id, owner)

    def next_attempt(self) -> "RetryJob":
        return replace(self, attempt_count=self.attempt_count + 1)
