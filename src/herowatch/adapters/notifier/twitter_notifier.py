import asyncio
import io
from typing import Any, Callable, Optional

import httpx
import tweepy
from loguru import logger

from ...domain.errors import NotifyError
from ...ports.notifier import Level, Notifier, format_death_text, format_reveal_text


def media_mime_type(image_url: str) -> str:
    path = image_url.split("?", 1)[0].lower()
    return "image/gif" if path.endswith(".gif") else "image/png"


class TwitterNotifier(Notifier):
    """
    Posts announcements to X/Twitter.

    Tweets go through the v2 `Client.create_tweet`; media uploads still need
    the v1.1 `API.media_upload`. tweepy is synchronous, so every call runs in
    the default executor.
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        access_token: str,
        access_secret: str,
        bearer_token: str = "",
        client: Optional[Any] = None,
        api: Optional[Any] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        download_timeout_seconds: float = 10.0,
    ):
        self._client = client or tweepy.Client(
            bearer_token=bearer_token or None,
            consumer_key=api_key,
            consumer_secret=api_secret,
            access_token=access_token,
            access_token_secret=access_secret,
        )
        self._api = api or tweepy.API(tweepy.OAuth1UserHandler(api_key, api_secret, access_token, access_secret))
        self._http = http_client
        self._download_timeout = download_timeout_seconds

    async def _get_http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._download_timeout, follow_redirects=True)
        return self._http

    async def _run(self, fn: Callable[[], Any]) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)

    async def _upload_image(self, token_id: int, image_url: str) -> str:
        http = await self._get_http()
        resp = await http.get(image_url)
        resp.raise_for_status()

        mime = media_mime_type(image_url)
        ext = "gif" if mime == "image/gif" else "png"
        filename = f"hero_{token_id}.{ext}"
        payload = resp.content

        def upload():
            if mime == "image/gif":
                return self._api.media_upload(
                    filename, file=io.BytesIO(payload), chunked=True, media_category="tweet_gif"
                )
            return self._api.media_upload(filename, file=io.BytesIO(payload))

        media = await self._run(upload)
        return str(media.media_id)

    async def _post(self, token_id: int, text: str, image_url: Optional[str]) -> None:
        try:
            media_ids = None
            if image_url:
                media_ids = [await self._upload_image(token_id, image_url)]
            response = await self._run(lambda: self._client.create_tweet(text=text, media_ids=media_ids))
        except (tweepy.TweepyException, httpx.HTTPError, OSError) as exc:
            raise NotifyError(f"tweet for hero {token_id} failed: {exc}") from exc

        data = getattr(response, "data", None) or {}
        logger.info(f"TWEET_POSTED | token={token_id} | id={data.get('id', 'unknown')} | media={bool(image_url)}")

    async def announce_reveal(self, token_id: int, owner: str, image: str) -> None:
        await self._post(token_id, format_reveal_text(token_id, owner), image)

    async def announce_death(self, token_id: int, image: Optional[str] = None, level: Optional[Level] = None) -> None:
        await self._post(token_id, format_death_text(token_id, level, with_image=bool(image)), image)

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None
