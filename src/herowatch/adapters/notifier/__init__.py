from .log_notifier import LogNotifier
from .twitter_notifier import TwitterNotifier, media_mime_type

__all__ = ["LogNotifier", "TwitterNotifier", "media_mime_type"]
