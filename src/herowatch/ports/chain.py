from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..domain.events.chain import DecodedLog

LogsHandler = Callable[[List[DecodedLog]], Awaitable[None]]
ErrorHandler = Callable[[BaseException], Union[None, Awaitable[None]]]
ReconnectCallback = Callable[[], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class EventFilter:
    """Contract address plus the event whose logs should be delivered."""

    address: str
    event: "EventSpec"  # herowatch.adapters.chain.abi.EventSpec

    def to_params(self) -> Dict[str, Any]:
        return {"address": self.address.lower(), "topics": [self.event.topic]}


class SubscriptionHandle(ABC):
    @property
    @abstractmethod
    def subscription_id(self) -> Optional[str]:
        ...

    @abstractmethod
    async def cancel(self) -> None:
        ...


class ChainSubscriber(ABC):
    """Long-lived chain log subscription source."""

    @abstractmethod
    async def subscribe(
        self,
        event_filter: EventFilter,
        on_logs: LogsHandler,
        on_error: Optional[ErrorHandler] = None,
    ) -> SubscriptionHandle:
        ...

    @abstractmethod
    def register_subscription(self, callback: ReconnectCallback) -> None:
        """Run `callback` once after every successful reconnection."""
        ...

    @abstractmethod
    def status(self) -> Dict[str, Any]:
        ...
