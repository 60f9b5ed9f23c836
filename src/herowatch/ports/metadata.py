from abc import ABC, abstractmethod
from typing import Optional

from ..domain.models.token import Metadata

DEFAULT_UNREVEALED_IMAGE = "https://storage.onchainheroes.xyz/unrevealed/hero.gif"


def is_placeholder_image(image: Optional[str], sentinel: str = DEFAULT_UNREVEALED_IMAGE) -> bool:
    """Exact sentinel match, or the API's /unrevealed/ asset path."""
    if not image:
        return False
    return image == sentinel or "/unrevealed/" in image


class MetadataFetcher(ABC):
    """Per-token metadata source."""

    placeholder_image: str = DEFAULT_UNREVEALED_IMAGE

    @abstractmethod
    async def fetch(self, token_id: int) -> Metadata:
        """Raises TransientFetchError or MalformedMetadataError."""
        ...

    def is_pending(self, metadata: Metadata) -> bool:
        """True while the source still serves the unrevealed placeholder."""
        return is_placeholder_image(metadata.image, self.placeholder_image)

    async def close(self) -> None:
        return None
