from .base import ChangeFeed, ChangePage
from .clickup import ClickUpClient, ClickUpInboxFeed, entries_from_webhook
from .dropbox import DropboxChangeFeed

__all__ = [
    "ChangeFeed",
    "ChangePage",
    "ClickUpClient",
    "ClickUpInboxFeed",
    "DropboxChangeFeed",
    "entries_from_webhook",
]
