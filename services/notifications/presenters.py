"""
Notification presenters.

A presenter only knows how to ask for permission and how to show one
notification. Whether a notification is warranted is decided by
NotificationDispatcher.
"""

from __future__ import annotations

import asyncio
import shutil
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from shared.logging.logger import get_logger

log = get_logger("notifications.presenters")


class PermissionState(str, Enum):
    DEFAULT = "default"
    GRANTED = "granted"
    DENIED = "denied"


class NotificationPresenter(ABC):
    def __init__(self) -> None:
        self.permission: PermissionState = PermissionState.DEFAULT

    @abstractmethod
    async def request_permission(self) -> bool:
        """
        Ask for permission to show notifications.

        Must set self.permission to GRANTED or DENIED and return whether it
        was granted.
        """
        raise NotImplementedError

    @abstractmethod
    async def show(self, title: str, body: str, *, tag: str) -> None:
        raise NotImplementedError


class LogPresenter(NotificationPresenter):
    """Writes notifications to the log. Always granted."""

    async def request_permission(self) -> bool:
        self.permission = PermissionState.GRANTED
        return True

    async def show(self, title: str, body: str, *, tag: str) -> None:
        log.info(f"[{tag}] {title}: {body}")


class NotifySendPresenter(NotificationPresenter):
    """
    Desktop notifications through the freedesktop notify-send tool.

    Permission is granted when the binary is on PATH.
    """

    def __init__(
        self,
        binary: str = "notify-send",
        *,
        app_name: str = "ChannelSync",
        expire_ms: int = 5000,
    ) -> None:
        super().__init__()
        self._binary = binary
        self._app_name = app_name
        self._expire_ms = expire_ms
        self._path: Optional[str] = None

    async def request_permission(self) -> bool:
        self._path = shutil.which(self._binary)
        if self._path:
            self.permission = PermissionState.GRANTED
            return True

        log.info(f"{self._binary} not found on PATH; desktop notifications disabled")
        self.permission = PermissionState.DENIED
        return False

    async def show(self, title: str, body: str, *, tag: str) -> None:
        if not self._path:
            return

        cmd = [
            self._path,
            "--app-name",
            self._app_name,
            "--expire-time",
            str(self._expire_ms),
            "--hint",
            f"string:x-canonical-private-synchronous:{tag}",
            title,
            body,
        ]

        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await process.communicate()

        if process.returncode != 0:
            log.warning(
                f"[{tag}] notify-send failed (code={process.returncode}): "
                f"{stderr.decode('utf-8', errors='ignore').strip()}"
            )


def build_presenter(kind: str) -> NotificationPresenter:
    """Presenter for a configured kind: auto | notify-send | log."""
    if kind == "log":
        return LogPresenter()
    if kind == "notify-send":
        return NotifySendPresenter()
    if shutil.which("notify-send"):
        return NotifySendPresenter()
    return LogPresenter()


__all__ = [
    "LogPresenter",
    "NotificationPresenter",
    "NotifySendPresenter",
    "PermissionState",
    "build_presenter",
]
