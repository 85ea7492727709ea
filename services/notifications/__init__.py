from services.notifications.dispatcher import Notification, NotificationDispatcher
from services.notifications.presenters import (
    LogPresenter,
    NotificationPresenter,
    NotifySendPresenter,
    PermissionState,
    build_presenter,
)

__all__ = [
    "LogPresenter",
    "Notification",
    "NotificationDispatcher",
    "NotificationPresenter",
    "NotifySendPresenter",
    "PermissionState",
    "build_presenter",
]
