from .memory_store import InMemoryTokenStore
from .redis_store import RedisTokenStore

__all__ = ["InMemoryTokenStore", "RedisTokenStore"]
