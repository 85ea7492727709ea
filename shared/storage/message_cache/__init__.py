"""Local message cache for the currently viewed channel."""

from shared.storage.message_cache.store import MessageCacheStore, Snapshot

__all__ = ["MessageCacheStore", "Snapshot"]
