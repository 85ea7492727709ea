"""Per-channel local message cache: the single source of truth for rendering."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from shared.chat.messages import CacheEntry, Message, SyncStatus
from shared.logging.logger import get_logger

log = get_logger("shared.message_cache.store")

Snapshot = Tuple[CacheEntry, ...]
Listener = Callable[[Snapshot], None]


class MessageCacheStore:
    """
    Ordered cache entries for one channel, ascending by creation time.

    Every operation is synchronous and builds a new immutable sequence that
    replaces the previous one in a single assignment, so readers only ever
    see whole operations. All writers (feed routing, mutation coordinator,
    reconciliation) run on the same event loop and go through these methods.

    Conflicts follow last-writer-by-timestamp: an authoritative record older
    than the entry's last authoritative copy is ignored, and between a local
    pending edit and a remote record the later timestamp is shown.
    """

    def __init__(self, channel_id: str, *, tombstone_limit: int = 1000) -> None:
        self.channel_id = channel_id
        self._entries: Snapshot = ()
        self._visible: Snapshot = ()
        self._tombstones: "OrderedDict[str, None]" = OrderedDict()
        self._tombstone_limit = tombstone_limit
        self._version = 0
        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def snapshot(self) -> Snapshot:
        """Current visible entries; pending deletes are hidden."""
        return self._visible

    def get(self, message_id: str) -> Optional[CacheEntry]:
        idx = self._index_of(message_id)
        return self._entries[idx] if idx is not None else None

    def is_removed(self, message_id: str) -> bool:
        return message_id in self._tombstones

    def __len__(self) -> int:
        return len(self._visible)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    def next_version(self) -> int:
        self._version += 1
        return self._version

    def upsert(self, entry: CacheEntry) -> bool:
        """
        Insert the entry if absent, else replace it in place.

        A confirmed entry carrying the correlation token of a pending create
        promotes that pending entry instead of adding a duplicate. Returns
        True when the cache changed.
        """
        if entry.status == SyncStatus.CONFIRMED and entry.correlation_token:
            pending_idx = self._index_of_token(entry.correlation_token)
            if pending_idx is not None:
                return self._promote(pending_idx, entry)

        idx = self._index_of(entry.message_id)

        if idx is None:
            if entry.status == SyncStatus.CONFIRMED:
                if entry.message_id in self._tombstones:
                    log.debug(
                        f"[{self.channel_id}] Ignoring record for removed message "
                        f"{entry.message_id}"
                    )
                    return False
                entry = replace(entry, base=entry.base or entry.message)
            self._commit(self._inserted(self._entries, entry))
            return True

        current = self._entries[idx]

        if entry.status == SyncStatus.CONFIRMED:
            merged = self._merge_authoritative(current, entry.message)
            if merged is None or merged == current:
                return False
            self._commit(self._replaced(idx, merged))
            return True

        # Local optimistic change: replaces the entry wholesale.
        if entry.base is None and current.base is not None:
            entry = replace(entry, base=current.base)
        self._commit(self._replaced(idx, entry))
        return True

    def remove(self, message_id: str) -> bool:
        """Delete the entry; no-op when absent. The id is remembered as removed."""
        self._remember_removed(message_id)

        idx = self._index_of(message_id)
        if idx is None:
            return False

        entries = self._entries[:idx] + self._entries[idx + 1:]
        self._commit(entries)
        return True

    def resolve(self, message_id: str, message: Message, version: int) -> bool:
        """
        Confirm a local mutation with the server's copy of the message.

        The result is applied only if no newer local mutation superseded the
        one identified by version; otherwise the server copy is absorbed as
        an ordinary authoritative record. Returns True when confirmed.
        """
        idx = self._index_of(message_id)
        if idx is None:
            log.debug(
                f"[{self.channel_id}] Result for {message_id} arrived after removal; ignored"
            )
            return False

        current = self._entries[idx]

        if current.version != version:
            log.debug(
                f"[{self.channel_id}] Stale result for {message_id} "
                f"(version {version}, current {current.version})"
            )
            # The newer mutation keeps what is shown; only the server copy moves.
            if current.base is None or message.stamp >= current.base.stamp:
                self._commit(self._replaced(idx, replace(current, base=message)))
            return False

        base = current.base
        if base is not None and message.stamp < base.stamp:
            # A newer remote change is already known.
            shown = base
        else:
            shown = base = message

        confirmed = replace(current, message=shown, base=base, status=SyncStatus.CONFIRMED)
        self._commit(self._replaced(idx, confirmed))
        return True

    def rollback(self, message_id: str, version: Optional[int] = None) -> bool:
        """
        Drop the optimistic state of an entry.

        Restores the last authoritative copy and marks it confirmed; an entry
        the server never confirmed is removed. With version given, nothing
        happens if a newer local mutation owns the entry.
        """
        idx = self._index_of(message_id)
        if idx is None:
            return False

        current = self._entries[idx]
        if version is not None and current.version != version:
            return False

        if current.base is None:
            entries = self._entries[:idx] + self._entries[idx + 1:]
            self._commit(entries)
            return True

        restored = replace(current, message=current.base, status=SyncStatus.CONFIRMED)
        self._commit(self._replaced(idx, restored))
        return True

    def reconcile(self, messages: Iterable[Message], *, release: Iterable[str] = ()) -> None:
        """
        Rebuild the cache from a fresh authoritative pull.

        Entries with an in-flight mutation keep their optimistic state unless
        their id is listed in release; released ids take exactly the server
        state (or disappear when the server no longer has them).
        """
        released: Set[str] = set(release)
        current_by_id: Dict[str, CacheEntry] = {e.message_id: e for e in self._entries}

        rebuilt: List[CacheEntry] = []
        seen: Set[str] = set()

        for message in messages:
            message_id = message.message_id
            if message_id in seen or message_id in self._tombstones:
                continue
            seen.add(message_id)

            existing = current_by_id.get(message_id)
            if existing is not None and existing.pending and message_id not in released:
                rebuilt.append(self._merge_authoritative(existing, message) or existing)
                continue

            rebuilt.append(
                CacheEntry(
                    message=message,
                    status=SyncStatus.CONFIRMED,
                    base=message,
                    version=existing.version if existing else 0,
                )
            )

        for entry in self._entries:
            if entry.message_id in seen or entry.message_id in released:
                continue
            if entry.pending:
                rebuilt.append(entry)

        rebuilt.sort(key=lambda e: e.message.created_at)
        self._commit(tuple(rebuilt))

    def clear(self) -> None:
        self._tombstones.clear()
        self._commit(())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _merge_authoritative(
        self, current: CacheEntry, incoming: Message
    ) -> Optional[CacheEntry]:
        base = current.base
        if base is not None and incoming.stamp < base.stamp:
            log.debug(
                f"[{self.channel_id}] Dropping stale record for {incoming.message_id} "
                f"({incoming.stamp.isoformat()} < {base.stamp.isoformat()})"
            )
            return None

        if current.status == SyncStatus.CONFIRMED:
            return replace(current, message=incoming, base=incoming)

        if current.status == SyncStatus.PENDING_EDIT:
            if incoming.stamp >= current.message.stamp:
                shown = incoming
            else:
                shown = current.message
            return replace(current, message=shown, base=incoming)

        # Pending delete stays hidden; only the authoritative copy moves.
        return replace(current, base=incoming)

    def _promote(self, pending_idx: int, entry: CacheEntry) -> bool:
        pending = self._entries[pending_idx]
        server_message = entry.message

        existing_idx = self._index_of(server_message.message_id)
        if existing_idx is not None and existing_idx != pending_idx:
            # The feed delivered the insert before the create response.
            existing = self._entries[existing_idx]
            merged = self._merge_authoritative(existing, server_message) or existing
            entries = tuple(
                e for i, e in enumerate(self._entries) if i not in (pending_idx, existing_idx)
            )
            self._commit(self._inserted(entries, merged))
            return True

        if server_message.message_id in self._tombstones:
            # Deleted remotely before our create response arrived.
            entries = self._entries[:pending_idx] + self._entries[pending_idx + 1:]
            self._commit(entries)
            return True

        promoted = CacheEntry(
            message=server_message,
            status=SyncStatus.CONFIRMED,
            correlation_token=pending.correlation_token,
            base=server_message,
            version=pending.version,
        )
        # The pending slot was placed by the local clock; re-place by the server's.
        entries = self._entries[:pending_idx] + self._entries[pending_idx + 1:]
        self._commit(self._inserted(entries, promoted))
        return True

    def _index_of(self, message_id: str) -> Optional[int]:
        for idx in range(len(self._entries) - 1, -1, -1):
            if self._entries[idx].message_id == message_id:
                return idx
        return None

    def _index_of_token(self, token: str) -> Optional[int]:
        for idx in range(len(self._entries) - 1, -1, -1):
            entry = self._entries[idx]
            if entry.status == SyncStatus.PENDING_CREATE and entry.correlation_token == token:
                return idx
        return None

    def _replaced(self, idx: int, entry: CacheEntry) -> Snapshot:
        return self._entries[:idx] + (entry,) + self._entries[idx + 1:]

    @staticmethod
    def _inserted(entries: Snapshot, entry: CacheEntry) -> Snapshot:
        # Append-biased: new messages almost always belong at the tail. A
        # pending create carries the local clock, so under clock skew it can
        # sit out of server order until its confirmation re-places it.
        pos = len(entries)
        created_at = entry.message.created_at
        while pos > 0 and entries[pos - 1].message.created_at > created_at:
            pos -= 1
        return entries[:pos] + (entry,) + entries[pos:]

    def _remember_removed(self, message_id: str) -> None:
        self._tombstones[message_id] = None
        self._tombstones.move_to_end(message_id)
        while len(self._tombstones) > self._tombstone_limit:
            self._tombstones.popitem(last=False)

    def _commit(self, entries: Snapshot) -> None:
        self._entries = entries
        self._visible = tuple(e for e in entries if e.visible)

        snapshot = self._visible
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                log.warning(f"[{self.channel_id}] Cache listener error ignored: {e}")


__all__ = ["MessageCacheStore", "Snapshot"]
