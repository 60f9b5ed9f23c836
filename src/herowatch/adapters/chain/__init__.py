from .abi import DEATH_EVENT, STAKED_EVENT, EventInput, EventSpec, decode_log
from .rpc_http import HttpRpcClient
from .ws_client import ChainEventClient, LogSubscription, backoff_delay

__all__ = [
    "DEATH_EVENT",
    "STAKED_EVENT",
    "EventInput",
    "EventSpec",
    "decode_log",
    "HttpRpcClient",
    "ChainEventClient",
    "LogSubscription",
    "backoff_delay",
]
