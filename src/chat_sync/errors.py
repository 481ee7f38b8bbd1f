"""Error taxonomy for the sync engine.

TransientIOError   store/network hiccup, logged and survived
ValidationError    rejected before any I/O, surfaced to the caller
BackendFailure     AI round-trip failed; the user message stays persisted
StaleReference     cached pointer no longer exists remotely; recovered silently
"""
from __future__ import annotations

from typing import Optional


class ChatSyncError(Exception):
    """Base class for every error raised by chat_sync."""


class TransientIOError(ChatSyncError):
    pass


class ValidationError(ChatSyncError):
    pass


class SendInProgress(ValidationError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"a message is already being sent in conversation {conversation_id}")
        self.conversation_id = conversation_id


class ConversationNotEmptyRequired(ValidationError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(
            f"conversation {conversation_id} has no messages yet; send one before starting another"
        )
        self.conversation_id = conversation_id


class BackendFailure(ChatSyncError):
    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StaleReference(ChatSyncError):
    def __init__(self, profile_id: str, conversation_id: str) -> None:
        super().__init__(f"cached conversation {conversation_id} for {profile_id} no longer exists")
        self.profile_id = profile_id
        self.conversation_id = conversation_id


__all__ = [
    "BackendFailure",
    "ChatSyncError",
    "ConversationNotEmptyRequired",
    "SendInProgress",
    "StaleReference",
    "TransientIOError",
    "ValidationError",
]
