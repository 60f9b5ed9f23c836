from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from ...domain.errors import MalformedMetadataError, TransientFetchError
from ...domain.models.token import Attribute, Metadata
from ...ports.metadata import DEFAULT_UNREVEALED_IMAGE, MetadataFetcher


def metadata_url(base_uri: str, token_id: int) -> str:
    return f"{base_uri.rstrip('/')}/{token_id}"


def parse_metadata(token_id: int, payload: Any) -> Metadata:
    """Validate a decoded JSON document and build Metadata from it."""
    if not isinstance(payload, dict):
        raise MalformedMetadataError(f"metadata for token {token_id} is not an object", token_id)

    image = payload.get("image")
    if not isinstance(image, str) or not image.strip():
        raise MalformedMetadataError(f"metadata for token {token_id} has no image", token_id)

    raw_attrs = payload.get("attributes", [])
    if raw_attrs is None:
        raw_attrs = []
    if not isinstance(raw_attrs, list):
        raise MalformedMetadataError(f"attributes for token {token_id} is not a list", token_id)

    attrs: List[Attribute] = []
    for entry in raw_attrs:
        if not isinstance(entry, dict) or "trait_type" not in entry:
            raise MalformedMetadataError(f"bad attribute entry for token {token_id}: {entry!r}", token_id)
        attrs.append(Attribute(trait_type=str(entry["trait_type"]), value=entry.get("value")))

    name = payload.get("name")
    description = payload.get("description")
    return Metadata(
        token_id=token_id,
        image=image.strip(),
        name=str(name) if name is not None else None,
        description=str(description) if description is not None else None,
        attributes=tuple(attrs),
    )


class HttpMetadataFetcher(MetadataFetcher):
    """
    Collection API client: GET <base_uri>/<token_id>.

    Network errors, timeouts and non-2xx responses raise TransientFetchError;
    bodies that are not a metadata document raise MalformedMetadataError.
    """

    def __init__(
        self,
        base_uri: str,
        placeholder_image: str = DEFAULT_UNREVEALED_IMAGE,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_uri = base_uri
        self.placeholder_image = placeholder_image
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout_seconds,
                headers={"Accept": "application/json"},
                follow_redirects=True,
            )
        return self._client

    async def fetch(self, token_id: int) -> Metadata:
        url = metadata_url(self.base_uri, token_id)
        client = await self._get_client()
        try:
            resp = await client.get(url)
        except httpx.HTTPError as exc:
            raise TransientFetchError(f"GET {url} failed: {exc!r}", token_id) from exc

        if resp.status_code < 200 or resp.status_code >= 300:
            raise TransientFetchError(f"GET {url} returned {resp.status_code}", token_id, status_code=resp.status_code)

        try:
            payload: Dict[str, Any] = resp.json()
        except ValueError as exc:
            raise MalformedMetadataError(f"GET {url} returned non-JSON body", token_id) from exc

        metadata = parse_metadata(token_id, payload)
        logger.debug(f"METADATA_FETCH | token={token_id} | image={metadata.image} | attrs={len(metadata.attributes)}")
        return metadata

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
