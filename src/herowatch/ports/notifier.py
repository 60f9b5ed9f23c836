from abc import ABC, abstractmethod
from typing import Optional, Union

Level = Union[int, float, str]


def format_reveal_text(token_id: int, owner: str) -> str:
    return f"Hero #{token_id} has been revealed!\nOwner: {owner}"


def format_death_text(token_id: int, level: Optional[Level] = None, with_image: bool = False) -> str:
    text = f"Hero #{token_id} has met an untimely end. Rest in peace."
    if level is not None:
        text += f"\nLevel: {level}"
    if with_image:
        text += "\n\nGone but not forgotten."
    return text


class Notifier(ABC):
    """Outbound announcements. Each call corresponds to at most one post."""

    @abstractmethod
    async def announce_reveal(self, token_id: int, owner: str, image: str) -> None:
        """Raises NotifyError on failure."""
        ...

    @abstractmethod
    async def announce_death(self, token_id: int, image: Optional[str] = None, level: Optional[Level] = None) -> None:
        """Raises NotifyError on failure."""
        ...

    async def close(self) -> None:
        return None
