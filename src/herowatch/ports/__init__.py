from .state_store import TokenStore, apply_fields
from .metadata import MetadataFetcher, is_placeholder_image
from .notifier import Notifier
from .chain import ChainSubscriber, EventFilter, SubscriptionHandle

__all__ = [
    "TokenStore",
    "apply_fields",
    "MetadataFetcher",
    "is_placeholder_image",
    "Notifier",
    "ChainSubscriber",
    "EventFilter",
    "SubscriptionHandle",
]
