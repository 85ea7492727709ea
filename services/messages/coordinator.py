from dataclasses import replace
from typing import Callable, Optional
from uuid import uuid4

from services.messages.api import MessagesAPIClient
from shared.chat.errors import ChatSyncError, NotFoundError, ValidationError
from shared.chat.intents import MutationFailure
from shared.chat.messages import (
    CacheEntry,
    CurrentUser,
    Message,
    SyncStatus,
    utc_now,
    validate_content,
)
from shared.logging.logger import get_logger
from shared.storage.message_cache.store import MessageCacheStore

log = get_logger("messages.coordinator")

FailureCallback = Callable[[MutationFailure], None]


class MutationCoordinator:
    """
    Optimistic create/edit/delete for one channel.

    Each mutation changes the cache immediately, issues exactly one request,
    then either confirms the entry or resolves it to a terminal state:
    - create failure: the pending entry is removed
    - edit/delete failure: rollback to the last server copy, then a full
      reconciliation pull for the channel
    - 404: the message is treated as already gone and removed locally

    Local validation errors are raised before anything is touched. Failures
    that happen after the request was issued are raised to the caller and
    also passed to on_failure.

    After detach() (channel closed) late results are ignored: the store is
    no longer touched and on_failure is not called, but the awaiting caller
    still gets its result or exception.
    """

    def __init__(
        self,
        store: MessageCacheStore,
        api: MessagesAPIClient,
        *,
        user: CurrentUser,
        on_failure: Optional[FailureCallback] = None,
    ):
        self._store = store
        self._api = api
        self._user = user
        self._on_failure = on_failure
        self._active = True

    @property
    def channel_id(self) -> str:
        return self._store.channel_id

    @property
    def active(self) -> bool:
        return self._active

    def detach(self) -> None:
        self._active = False

    # ------------------------------------------------------------
    # CREATE
    # ------------------------------------------------------------

    async def create(self, content: str) -> Message:
        text = validate_content(content)

        token = uuid4().hex
        pending = Message(
            message_id=token,
            channel_id=self.channel_id,
            sender_id=self._user.user_id,
            sender_name=self._user.name,
            content=text,
            created_at=utc_now(),
        )
        self._store.upsert(
            CacheEntry(
                message=pending,
                status=SyncStatus.PENDING_CREATE,
                correlation_token=token,
                version=self._store.next_version(),
            )
        )
        log.debug(f"[{self.channel_id}] Create pending (token={token})")

        try:
            created = await self._api.create_message(self.channel_id, text)
        except ChatSyncError as e:
            log.warning(f"[{self.channel_id}] Create failed: {e}")
            if self._active:
                self._store.remove(token)
            self._report("create", e, None)
            raise
        except BaseException:
            # Cancelled or failed unexpectedly: never leave the entry pending.
            if self._active:
                self._store.remove(token)
            raise

        if self._active:
            self._store.upsert(
                CacheEntry(
                    message=created,
                    status=SyncStatus.CONFIRMED,
                    correlation_token=token,
                )
            )
        log.info(f"[{self.channel_id}] Message {created.message_id} created")
        return created

    # ------------------------------------------------------------
    # EDIT
    # ------------------------------------------------------------

    async def edit(self, message_id: str, content: str) -> Message:
        text = validate_content(content)

        entry = self._store.get(message_id)
        if entry is None:
            raise ValidationError("Message is not in this channel")
        if entry.status == SyncStatus.PENDING_CREATE:
            raise ValidationError("Message is still being sent")
        if entry.status == SyncStatus.PENDING_DELETE:
            raise ValidationError("Message is being deleted")

        # A newer version supersedes any edit still in flight for this id.
        version = self._store.next_version()
        optimistic = replace(entry.message, content=text, updated_at=utc_now())
        self._store.upsert(
            replace(entry, message=optimistic, status=SyncStatus.PENDING_EDIT, version=version)
        )
        log.debug(f"[{self.channel_id}] Edit pending for {message_id} (version={version})")

        try:
            updated = await self._api.update_message(self.channel_id, message_id, text)
        except ChatSyncError as e:
            log.warning(f"[{self.channel_id}] Edit of {message_id} failed: {e}")
            await self._recover("edit", message_id, version, e)
            raise
        except BaseException:
            self._abandon("Edit", message_id, version)
            raise

        if self._active:
            if not self._store.resolve(message_id, updated, version):
                log.debug(f"[{self.channel_id}] Edit result for {message_id} superseded")
        log.info(f"[{self.channel_id}] Message {message_id} edited")
        return updated

    # ------------------------------------------------------------
    # DELETE
    # ------------------------------------------------------------

    async def delete(self, message_id: str, *, confirmed: bool) -> None:
        if confirmed is not True:
            raise ValidationError("Deleting a message requires explicit confirmation")

        entry = self._store.get(message_id)
        if entry is None or entry.status == SyncStatus.PENDING_DELETE:
            log.debug(f"[{self.channel_id}] Delete of {message_id} is a no-op")
            return
        if entry.status == SyncStatus.PENDING_CREATE:
            raise ValidationError("Message is still being sent")

        version = self._store.next_version()
        self._store.upsert(replace(entry, status=SyncStatus.PENDING_DELETE, version=version))
        log.debug(f"[{self.channel_id}] Delete pending for {message_id}")

        try:
            await self._api.delete_message(self.channel_id, message_id)
        except ChatSyncError as e:
            log.warning(f"[{self.channel_id}] Delete of {message_id} failed: {e}")
            await self._recover("delete", message_id, version, e)
            raise
        except BaseException:
            self._abandon("Delete", message_id, version)
            raise

        if self._active:
            self._store.remove(message_id)
        log.info(f"[{self.channel_id}] Message {message_id} deleted")

    # ------------------------------------------------------------
    # RECONCILIATION
    # ------------------------------------------------------------

    async def reconcile(self, release: Optional[str] = None, version: Optional[int] = None) -> bool:
        """
        Pull the channel from the server and rebuild the cache from it.

        release names a message whose optimistic state must be discarded;
        it is only released if no newer mutation took it over during the
        pull. Returns False when the pull failed or the channel closed.
        """
        try:
            messages = await self._api.list_messages(self.channel_id)
        except ChatSyncError as e:
            log.warning(f"[{self.channel_id}] Reconciliation pull failed: {e}")
            return False

        if not self._active:
            return False

        released = []
        if release is not None:
            current = self._store.get(release)
            if current is None or version is None or current.version == version:
                released.append(release)

        self._store.reconcile(messages, release=released)
        log.info(f"[{self.channel_id}] Reconciled {len(messages)} message(s)")
        return True

    async def _recover(
        self,
        action: str,
        message_id: str,
        version: int,
        error: ChatSyncError,
    ) -> None:
        if self._active:
            if isinstance(error, NotFoundError):
                self._store.remove(message_id)
            elif self._store.rollback(message_id, version):
                # Rolled back to the last server copy; the pull replaces it
                # with the current truth when it succeeds.
                await self.reconcile(release=message_id, version=version)
            else:
                log.debug(
                    f"[{self.channel_id}] {action} of {message_id} superseded; "
                    "skipping reconciliation"
                )

        self._report(action, error, message_id)

    def _abandon(self, action: str, message_id: str, version: int) -> None:
        if self._active and self._store.rollback(message_id, version):
            log.warning(
                f"[{self.channel_id}] {action} of {message_id} abandoned; "
                "restored last server copy"
            )

    def _report(self, action: str, error: ChatSyncError, message_id: Optional[str]) -> None:
        if not self._active or self._on_failure is None:
            return

        failure = MutationFailure(
            channel_id=self.channel_id,
            action=action,
            error=error,
            message_id=message_id,
        )
        try:
            self._on_failure(failure)
        except Exception as e:
            log.warning(f"[{self.channel_id}] Failure callback error ignored: {e}")


__all__ = ["MutationCoordinator"]
