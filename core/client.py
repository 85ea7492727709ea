"""
ChatSyncClient: the surface the rendering layer talks to.

Wires configuration, the REST client, the change feed, the notification
presenter and the subscription manager together. Rendering code reads
snapshot(), sends intents through dispatch() and registers callbacks for
snapshot changes and errors.
"""

from __future__ import annotations

from typing import Callable, List, Optional, Union

from services.messages.api import MessagesAPIClient
from services.messages.feed import ChangeFeed, SSEChangeFeed
from services.messages.subscriptions import SubscriptionManager, SubscriptionState
from services.notifications.presenters import NotificationPresenter, build_presenter
from shared.chat.errors import AuthenticationError, ValidationError
from shared.chat.intents import (
    CreateMessage,
    DeleteMessage,
    EditMessage,
    Intent,
    MutationFailure,
)
from shared.chat.messages import Channel, CurrentUser, Message
from shared.config.sync import SyncConfig, load_sync_config
from shared.logging.logger import get_logger
from shared.storage.message_cache.store import Snapshot

log = get_logger("core.client")

ChangeCallback = Callable[[Snapshot], None]
ErrorCallback = Callable[[MutationFailure], None]


class ChatSyncClient:
    """
    One signed-in viewer, at most one open channel.

    Rules:
    - start() resolves the session; without one nothing can be opened
    - opening a channel closes the previous one first
    - snapshot() is empty while no channel is open
    - callbacks run synchronously on the event loop; exceptions in them are
      logged and swallowed
    """

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        *,
        api: Optional[MessagesAPIClient] = None,
        feed: Optional[ChangeFeed] = None,
        presenter: Optional[NotificationPresenter] = None,
    ):
        self.config = config or load_sync_config()

        self._api = api or MessagesAPIClient(self.config.api)
        self._api_owned = api is None
        self._feed = feed or SSEChangeFeed(self.config.api, self.config.feed)
        self._feed_owned = feed is None

        if presenter is None and self.config.notifications.enabled:
            presenter = build_presenter(self.config.notifications.presenter)
        self._presenter = presenter

        self._user: Optional[CurrentUser] = None
        self._manager: Optional[SubscriptionManager] = None

        self._change_callbacks: List[ChangeCallback] = []
        self._error_callbacks: List[ErrorCallback] = []

    # ------------------------------------------------------------
    # Session
    # ------------------------------------------------------------

    @property
    def current_user(self) -> Optional[CurrentUser]:
        return self._user

    async def start(self) -> CurrentUser:
        user = await self._api.get_current_user()
        if user is None:
            raise AuthenticationError("No active session")

        if self._manager is not None:
            await self._manager.close()

        self._user = user
        self._manager = SubscriptionManager(
            self._api,
            self._feed,
            user=user,
            presenter=self._presenter,
            notifications=self.config.notifications,
            ready_timeout=self.config.feed.ready_timeout_seconds,
            on_change=self._emit_change,
            on_failure=self._emit_error,
        )
        log.info(f"Signed in as {user.name or user.user_id}")
        return user

    # ------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------

    @property
    def channel(self) -> Optional[Channel]:
        return self._manager.channel if self._manager else None

    @property
    def state(self) -> SubscriptionState:
        return self._manager.state if self._manager else SubscriptionState.CLOSED

    async def open_channel(self, channel: Union[Channel, str]) -> Snapshot:
        if self._manager is None:
            raise AuthenticationError("Client not started; call start() first")

        if isinstance(channel, str):
            channel = Channel(channel_id=channel, name="")

        store = await self._manager.open(channel)
        return store.snapshot()

    async def close_channel(self) -> None:
        if self._manager is not None:
            await self._manager.close()

    def snapshot(self) -> Snapshot:
        store = self._manager.store if self._manager else None
        return store.snapshot() if store is not None else ()

    # ------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------

    async def dispatch(self, intent: Intent) -> Optional[Message]:
        """
        Apply one user intent to the open channel.

        Returns the server's message for create and edit, None for delete.
        Failures are raised; those that happen after the request was sent
        are also delivered to the error callbacks.
        """
        coordinator = self._manager.coordinator if self._manager else None
        if coordinator is None:
            raise ValidationError("No channel is open")

        if isinstance(intent, CreateMessage):
            return await coordinator.create(intent.content)
        if isinstance(intent, EditMessage):
            return await coordinator.edit(intent.message_id, intent.content)
        if isinstance(intent, DeleteMessage):
            await coordinator.delete(intent.message_id, confirmed=intent.confirmed)
            return None

        raise ValidationError(f"Unsupported intent: {type(intent).__name__}")

    # ------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------

    def on_change(self, callback: ChangeCallback) -> None:
        self._change_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        self._error_callbacks.append(callback)

    def _emit_change(self, channel_id: str, snapshot: Snapshot) -> None:
        for callback in list(self._change_callbacks):
            try:
                callback(snapshot)
            except Exception as e:
                log.warning(f"[{channel_id}] Change callback error ignored: {e}")

    def _emit_error(self, failure: MutationFailure) -> None:
        log.error(
            f"[{failure.channel_id}] {failure.action} failed: "
            f"{failure.user_message} ({failure.error})"
        )
        for callback in list(self._error_callbacks):
            try:
                callback(failure)
            except Exception as e:
                log.warning(f"[{failure.channel_id}] Error callback error ignored: {e}")

    # ------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------

    async def aclose(self) -> None:
        try:
            await self.close_channel()
        except Exception as e:
            log.warning(f"Channel close error ignored: {e}")

        if self._feed_owned:
            await self._feed.aclose()
        if self._api_owned:
            await self._api.aclose()

        log.info("Client closed")


__all__ = ["ChatSyncClient"]
