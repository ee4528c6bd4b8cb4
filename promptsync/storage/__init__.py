"""Local storage for promptsync."""

from promptsync.storage.sqlite import LocalStore
from promptsync.storage.tags import TagResolver

__all__ = ["LocalStore", "TagResolver"]
