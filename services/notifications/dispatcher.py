import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional, Set

from services.messages.feed import FeedEvent, FeedEventType
from services.notifications.presenters import NotificationPresenter, PermissionState
from shared.chat.messages import Message
from shared.logging.logger import get_logger

log = get_logger("notifications.dispatcher")

DEFAULT_BODY_LIMIT = 120
ELLIPSIS = "..."


@dataclass(frozen=True)
class Notification:
    title: str
    body: str
    tag: str


def notification_tag(message_id: str) -> str:
    return f"msg-{message_id}"


def build_title(message: Message, channel_name: Optional[str] = None) -> str:
    sender = message.display_sender
    if channel_name:
        return f"#{channel_name} - {sender}"
    return sender


def truncate_body(content: str, limit: int = DEFAULT_BODY_LIMIT) -> str:
    if len(content) <= limit:
        return content
    return content[: max(limit - len(ELLIPSIS), 0)] + ELLIPSIS


class NotificationDispatcher:
    """
    Turns insert events into desktop notifications.

    Rules:
    - Permission is requested lazily on the first insert, without blocking
      event processing; a refusal or a failing request disables the feature
    - The viewer's own messages never notify
    - A tag (msg-<id>) is presented at most once, so feed redelivery does
      not produce duplicate alerts
    """

    def __init__(
        self,
        presenter: NotificationPresenter,
        *,
        viewer_id: str,
        channel_name: Optional[str] = None,
        body_limit: int = DEFAULT_BODY_LIMIT,
        enabled: bool = True,
        tag_limit: int = 500,
    ):
        self._presenter = presenter
        self._viewer_id = viewer_id
        self._channel_name = channel_name
        self._body_limit = body_limit
        self._enabled = enabled

        self._seen_tags: "OrderedDict[str, None]" = OrderedDict()
        self._tag_limit = tag_limit

        self._permission_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------

    def handle(self, event: FeedEvent) -> Optional[Notification]:
        """
        Process one feed event. Returns the notification scheduled for
        presentation, or None when the event does not warrant one.
        """
        if not self._enabled:
            return None
        if event.type != FeedEventType.INSERT or event.message is None:
            return None

        self._ensure_permission_requested()

        message = event.message
        if message.sender_id == self._viewer_id:
            return None

        tag = notification_tag(message.message_id)
        if tag in self._seen_tags:
            log.debug(f"Duplicate notification suppressed ({tag})")
            return None
        self._remember(tag)

        notification = Notification(
            title=build_title(message, self._channel_name),
            body=truncate_body(message.content, self._body_limit),
            tag=tag,
        )
        self._spawn(self._present(notification))
        return notification

    async def drain(self) -> None:
        """Wait for scheduled presentations (and the permission request)."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------

    def _ensure_permission_requested(self) -> None:
        if self._permission_task is not None:
            return
        if self._presenter.permission != PermissionState.DEFAULT:
            return

        self._permission_task = self._spawn(self._request_permission())

    async def _request_permission(self) -> None:
        try:
            granted = await self._presenter.request_permission()
        except Exception as e:
            log.debug(f"Notification permission request failed: {e}")
            self._presenter.permission = PermissionState.DENIED
            return

        log.info(f"Notification permission {'granted' if granted else 'denied'}")

    async def _present(self, notification: Notification) -> None:
        if self._permission_task is not None and not self._permission_task.done():
            await asyncio.shield(self._permission_task)

        if self._presenter.permission != PermissionState.GRANTED:
            return

        try:
            await self._presenter.show(
                notification.title, notification.body, tag=notification.tag
            )
        except Exception as e:
            log.warning(f"[{notification.tag}] Showing notification failed: {e}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _remember(self, tag: str) -> None:
        self._seen_tags[tag] = None
        while len(self._seen_tags) > self._tag_limit:
            self._seen_tags.popitem(last=False)


__all__ = [
    "Notification",
    "NotificationDispatcher",
    "build_title",
    "notification_tag",
    "truncate_body",
]
