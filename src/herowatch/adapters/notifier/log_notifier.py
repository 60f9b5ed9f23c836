from typing import List, Optional, Tuple

from loguru import logger

from ...ports.notifier import Level, Notifier, format_death_text, format_reveal_text


class LogNotifier(Notifier):
    """Dry-run sink: logs the text that would have been posted."""

    def __init__(self):
        self.posts: List[Tuple[int, str, Optional[str]]] = []

    async def announce_reveal(self, token_id: int, owner: str, image: str) -> None:
        text = format_reveal_text(token_id, owner)
        self.posts.append((token_id, text, image))
        logger.info(f"DRY_RUN_POST | kind=reveal | token={token_id} | image={image} | text={text!r}")

    async def announce_death(self, token_id: int, image: Optional[str] = None, level: Optional[Level] = None) -> None:
        text = format_death_text(token_id, level, with_image=bool(image))
        self.posts.append((token_id, text, image))
        logger.info(f"DRY_RUN_POST | kind=death | token={token_id} | image={image} | text={text!r}")
