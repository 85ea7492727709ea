"""Error taxonomy for message synchronization.

Every failure raised by the sync layer derives from ChatSyncError and carries
a short user_message so the rendering layer can tell "could not save" apart
from "not allowed" and "not found" without inspecting types.
"""

from __future__ import annotations

from typing import Optional


class ChatSyncError(Exception):
    user_message = "Something went wrong"

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ValidationError(ChatSyncError):
    """
    Rejected before any request was made (or by a server-side 400).

    The user_message is the validation reason itself.
    """

    @property
    def user_message(self) -> str:  # type: ignore[override]
        return str(self)


class AuthenticationError(ChatSyncError):
    user_message = "Sign-in required"


class AuthorizationError(ChatSyncError):
    user_message = "Not allowed"


class NotFoundError(ChatSyncError):
    user_message = "Not found"


class TransientError(ChatSyncError):
    """Network failure, timeout or server error. Never retried automatically."""

    user_message = "Could not save"


def error_for_status(status_code: int, detail: str = "") -> ChatSyncError:
    """Map an HTTP failure status to the matching error type."""
    message = detail or f"HTTP {status_code}"

    if status_code == 400:
        return ValidationError(message, status_code=status_code)
    if status_code == 401:
        return AuthenticationError(message, status_code=status_code)
    if status_code == 403:
        return AuthorizationError(message, status_code=status_code)
    if status_code == 404:
        return NotFoundError(message, status_code=status_code)
    return TransientError(message, status_code=status_code)


__all__ = [
    "ChatSyncError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "TransientError",
    "error_for_status",
]
