"""User intents accepted by ChatSyncClient.dispatch and the failure record."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from shared.chat.errors import ChatSyncError


@dataclass(frozen=True)
class CreateMessage:
    content: str


@dataclass(frozen=True)
class EditMessage:
    message_id: str
    content: str


@dataclass(frozen=True)
class DeleteMessage:
    message_id: str
    # Explicit affirmative intent; a delete is never issued without it.
    confirmed: bool = False


Intent = Union[CreateMessage, EditMessage, DeleteMessage]


@dataclass(frozen=True)
class MutationFailure:
    """Passed to error callbacks whenever a mutation or the feed fails."""

    channel_id: str
    action: str
    error: ChatSyncError
    message_id: Optional[str] = None

    @property
    def user_message(self) -> str:
        return self.error.user_message


__all__ = [
    "CreateMessage",
    "EditMessage",
    "DeleteMessage",
    "Intent",
    "MutationFailure",
]
