from .sqlite_store import InboxItem, SqliteCursorStore, SqliteStateStore
from .store import CursorStore, DispatchFailureLog

__all__ = [
    "CursorStore",
    "DispatchFailureLog",
    "InboxItem",
    "SqliteCursorStore",
    "SqliteStateStore",
]
