from .token import Attribute, Metadata, RevealState, TokenId, TokenRecord, reveal_state_of
from .jobs import RetryJob

__all__ = [
    "Attribute",
    "Metadata",
    "RevealState",
    "TokenId",
    "TokenRecord",
    "reveal_state_of",
    "RetryJob",
]
