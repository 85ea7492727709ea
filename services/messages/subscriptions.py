import asyncio
from enum import Enum
from typing import Callable, List, Optional

from services.messages.api import MessagesAPIClient
from services.messages.coordinator import FailureCallback, MutationCoordinator
from services.messages.feed import ChangeFeed, FeedEvent, FeedEventType, FeedSubscription
from services.notifications.dispatcher import NotificationDispatcher
from services.notifications.presenters import NotificationPresenter
from shared.chat.errors import ChatSyncError, TransientError
from shared.chat.intents import MutationFailure
from shared.chat.messages import CacheEntry, Channel, CurrentUser, SyncStatus
from shared.config.sync import NotificationConfig
from shared.logging.logger import get_logger
from shared.storage.message_cache.store import MessageCacheStore, Snapshot

log = get_logger("messages.subscriptions")

ChangeCallback = Callable[[str, Snapshot], None]


class SubscriptionState(str, Enum):
    CLOSED = "closed"
    OPENING = "opening"
    OPEN = "open"


class SubscriptionManager:
    """
    Owns the feed subscription, cache store and coordinator of the one
    channel being viewed.

    Lifecycle: closed -> opening -> open -> closed.

    Opening subscribes first and buffers whatever the feed delivers until
    the initial snapshot is loaded, then replays the buffer against it, so
    nothing emitted between the pull and the subscription is lost. Insert
    events go to the notification dispatcher as soon as they arrive.
    """

    def __init__(
        self,
        api: MessagesAPIClient,
        feed: ChangeFeed,
        *,
        user: CurrentUser,
        presenter: Optional[NotificationPresenter] = None,
        notifications: Optional[NotificationConfig] = None,
        ready_timeout: float = 5.0,
        on_change: Optional[ChangeCallback] = None,
        on_failure: Optional[FailureCallback] = None,
    ):
        self._api = api
        self._feed = feed
        self._user = user
        self._presenter = presenter
        self._notifications = notifications or NotificationConfig()
        self._ready_timeout = ready_timeout
        self._on_change = on_change
        self._on_failure = on_failure

        self.state = SubscriptionState.CLOSED
        self._channel: Optional[Channel] = None
        self._store: Optional[MessageCacheStore] = None
        self._coordinator: Optional[MutationCoordinator] = None
        self._dispatcher: Optional[NotificationDispatcher] = None
        self._subscription: Optional[FeedSubscription] = None
        self._consumer: Optional[asyncio.Task] = None
        self._resync_task: Optional[asyncio.Task] = None
        self._closing: Optional[asyncio.Task] = None

        self._buffer: List[FeedEvent] = []
        self._feed_error: Optional[ChatSyncError] = None
        # Bumped on every open/close; stale tasks compare against it.
        self._generation = 0

    # ------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------

    @property
    def channel(self) -> Optional[Channel]:
        return self._channel

    @property
    def store(self) -> Optional[MessageCacheStore]:
        return self._store

    @property
    def coordinator(self) -> Optional[MutationCoordinator]:
        return self._coordinator

    @property
    def dispatcher(self) -> Optional[NotificationDispatcher]:
        return self._dispatcher

    # ------------------------------------------------------------
    # OPEN
    # ------------------------------------------------------------

    async def open(self, channel: Channel) -> MessageCacheStore:
        if self.state != SubscriptionState.CLOSED:
            await self.close()

        self._generation += 1
        generation = self._generation
        channel_id = channel.channel_id

        log.info(f"[{channel_id}] Opening channel")
        self.state = SubscriptionState.OPENING
        self._channel = channel
        self._buffer = []
        self._feed_error = None

        store = MessageCacheStore(channel_id)
        if self._on_change is not None:
            store.add_listener(lambda snapshot: self._emit_change(channel_id, snapshot))
        self._store = store

        self._coordinator = MutationCoordinator(
            store,
            self._api,
            user=self._user,
            on_failure=self._on_failure,
        )

        if self._presenter is not None and self._notifications.enabled:
            self._dispatcher = NotificationDispatcher(
                self._presenter,
                viewer_id=self._user.user_id,
                channel_name=channel.name or None,
                body_limit=self._notifications.body_limit,
            )

        # Subscribe first; events are buffered until the snapshot is in.
        subscription = self._feed.subscribe(channel_id)
        self._subscription = subscription
        consumer = asyncio.create_task(self._consume(subscription, generation))
        self._consumer = consumer

        await self._wait_established(subscription, consumer)

        if generation != self._generation:
            raise TransientError(f"Channel {channel_id} was closed while opening")
        await self._raise_feed_error()

        try:
            messages = await self._api.list_messages(channel_id)
        except ChatSyncError as e:
            log.error(f"[{channel_id}] Initial snapshot failed: {e}")
            if generation == self._generation:
                await self.close()
            raise

        if generation != self._generation:
            raise TransientError(f"Channel {channel_id} was closed while opening")
        await self._raise_feed_error()

        store.reconcile(messages)

        buffered, self._buffer = self._buffer, []
        for event in buffered:
            self._apply(event)

        self.state = SubscriptionState.OPEN
        log.info(
            f"[{channel_id}] Channel open ({len(messages)} message(s), "
            f"{len(buffered)} buffered event(s) replayed)"
        )
        return store

    async def _wait_established(
        self, subscription: FeedSubscription, consumer: asyncio.Task
    ) -> None:
        ready = asyncio.ensure_future(subscription.wait_ready(self._ready_timeout))
        try:
            await asyncio.wait({ready, consumer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not ready.done():
                ready.cancel()

        if ready.done() and not ready.cancelled() and ready.result() is False:
            log.warning(
                f"[{subscription.channel_id}] Feed not established within "
                f"{self._ready_timeout:.1f}s; loading snapshot anyway"
            )

    async def _raise_feed_error(self) -> None:
        if self._feed_error is None:
            return
        error = self._feed_error
        await self.close()
        raise error

    # ------------------------------------------------------------
    # CLOSE
    # ------------------------------------------------------------

    async def close(self) -> None:
        if self.state == SubscriptionState.CLOSED and self._store is None:
            return

        channel_id = self._channel.channel_id if self._channel else "?"
        self._generation += 1
        self.state = SubscriptionState.CLOSED

        if self._coordinator is not None:
            self._coordinator.detach()

        tasks = []
        current = asyncio.current_task()
        for task in (self._consumer, self._resync_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                tasks.append(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._subscription is not None:
            await self._subscription.aclose()

        if self._dispatcher is not None:
            await self._dispatcher.aclose()

        if self._store is not None:
            self._store.clear()

        self._channel = None
        self._store = None
        self._coordinator = None
        self._dispatcher = None
        self._subscription = None
        self._consumer = None
        self._resync_task = None
        self._buffer = []

        log.info(f"[{channel_id}] Channel closed")

    # ------------------------------------------------------------
    # Feed routing
    # ------------------------------------------------------------

    async def _consume(self, subscription: FeedSubscription, generation: int) -> None:
        try:
            async for event in subscription.events():
                if generation != self._generation:
                    return
                self._on_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._handle_feed_failure(e, generation)

    def _on_event(self, event: FeedEvent) -> None:
        if self._dispatcher is not None and event.type == FeedEventType.INSERT:
            self._dispatcher.handle(event)

        if event.type == FeedEventType.RESYNC:
            # While opening, the initial pull already covers the gap.
            if self.state == SubscriptionState.OPEN:
                self._schedule_resync()
            return

        if self.state == SubscriptionState.OPENING:
            self._buffer.append(event)
            return

        self._apply(event)

    def _apply(self, event: FeedEvent) -> None:
        store = self._store
        if store is None:
            return

        if event.type in (FeedEventType.INSERT, FeedEventType.UPDATE) and event.message:
            store.upsert(CacheEntry(message=event.message, status=SyncStatus.CONFIRMED))
        elif event.type == FeedEventType.DELETE and event.message_id:
            store.remove(event.message_id)

        log.debug(f"[{store.channel_id}] Applied {event.type.value} for {event.message_id}")

    def _schedule_resync(self) -> None:
        if self._resync_task is not None and not self._resync_task.done():
            return
        if self._coordinator is None:
            return

        log.info(f"[{self._coordinator.channel_id}] Feed reconnected; reconciling")
        self._resync_task = asyncio.ensure_future(self._coordinator.reconcile())
        self._resync_task.add_done_callback(self._resync_done)

    def _resync_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log.error(f"Reconciliation after feed reconnect failed: {error!r}")

    def _handle_feed_failure(self, error: Exception, generation: int) -> None:
        if generation != self._generation or self._channel is None:
            return

        channel_id = self._channel.channel_id
        log.error(f"[{channel_id}] Change feed failed: {error}")
        failure = TransientError(f"Change feed unavailable: {error}")

        if self.state == SubscriptionState.OPENING:
            # open() raises it once the wait returns.
            self._feed_error = failure
            return

        if self._on_failure is not None:
            try:
                self._on_failure(
                    MutationFailure(channel_id=channel_id, action="subscribe", error=failure)
                )
            except Exception as e:
                log.warning(f"[{channel_id}] Failure callback error ignored: {e}")

        self._closing = asyncio.ensure_future(self.close())

    def _emit_change(self, channel_id: str, snapshot: Snapshot) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(channel_id, snapshot)
        except Exception as e:
            log.warning(f"[{channel_id}] Change callback error ignored: {e}")


__all__ = ["SubscriptionManager", "SubscriptionState"]
