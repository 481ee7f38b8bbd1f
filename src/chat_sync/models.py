"""Conversation and message types shared by every layer of the sync engine."""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

TEMP_ID_PREFIX = "tmp:"


# -----------------------------
# Helpers
# -----------------------------
def now_ms() -> int:
    """Wall-clock time in integer milliseconds (the engine's timestamp unit)."""
    return int(time.time() * 1000)


def new_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


def is_temp_id(message_id: str) -> bool:
    return message_id.startswith(TEMP_ID_PREFIX)


def coerce_timestamp(value: Any) -> Optional[int]:
    """Normalise a store/backend timestamp into epoch milliseconds.

    Numbers are taken as milliseconds, strings as ISO-8601, datetimes as-is.
    Returns None for anything that cannot be interpreted.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.lstrip("-").isdigit():
            return int(text)
        try:
            # fromisoformat() only learned the trailing "Z" in 3.11
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return coerce_timestamp(dt)
    return None


# -----------------------------
# Sender
# -----------------------------
class Sender(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"

    @classmethod
    def parse(cls, value: Any) -> "Sender":
        raw = value.value if isinstance(value, Sender) else str(value or "").strip().lower()
        if raw == "user":
            return cls.USER
        # older documents were written with "bot"
        if raw in {"assistant", "bot"}:
            return cls.ASSISTANT
        raise ValueError(f"unknown sender: {value!r}")

    @property
    def rank(self) -> int:
        # user sorts before assistant on equal timestamps
        if self is Sender.USER:
            return 0
        if self is Sender.ASSISTANT:
            return 1
        raise AssertionError(f"unhandled sender {self!r}")


# -----------------------------
# Message
# -----------------------------
@dataclass(frozen=True)
class Message:
    """A single chat message, either authoritative or optimistic.

    ``id`` is assigned by the remote store once persisted; optimistic
    messages carry a ``tmp:`` id that never leaves the process.
    """

    id: str
    conversation_id: str
    sender: Sender
    text: str
    timestamp: int
    personality_id: str = ""
    is_optimistic: bool = False

    def sort_key(self) -> Tuple[int, int]:
        return (self.timestamp, self.sender.rank)

    def signature(self) -> Tuple[Sender, str, str]:
        """Identity used to match an optimistic entry against its confirmed copy."""
        return (self.sender, self.text, self.conversation_id)

    def with_id(self, message_id: str) -> "Message":
        return replace(self, id=message_id)

    def confirmed(self, message_id: str) -> "Message":
        return replace(self, id=message_id, is_optimistic=False)

    def to_dict(self) -> Dict[str, Any]:
        """Store-friendly document (optimistic flag and temp ids are not persisted)."""
        return {
            "conversationId": self.conversation_id,
            "sender": self.sender.value,
            "text": self.text,
            "timestamp": self.timestamp,
            "personalityId": self.personality_id,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, message_id: Optional[str] = None,
                  conversation_id: Optional[str] = None) -> "Message":
        ts = coerce_timestamp(payload.get("timestamp"))
        return cls(
            id=str(message_id or payload.get("id") or ""),
            conversation_id=str(conversation_id or payload.get("conversationId") or ""),
            sender=Sender.parse(payload.get("sender") or "user"),
            text=str(payload.get("text") or ""),
            timestamp=ts if ts is not None else now_ms(),
            personality_id=str(payload.get("personalityId") or ""),
            is_optimistic=False,
        )


# -----------------------------
# Conversation
# -----------------------------
@dataclass(frozen=True)
class Conversation:
    id: str
    profile_id: str
    title: str
    personality_id: str
    last_message_text: str = ""
    last_message_at: Optional[int] = None
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    @property
    def has_exchange(self) -> bool:
        return self.last_message_at is not None

    def patched(self, patch: Mapping[str, Any]) -> "Conversation":
        """Return a copy with a store-style patch (camelCase keys) applied."""
        merged = self.to_dict()
        merged.update(patch)
        return Conversation.from_dict(merged, conversation_id=self.id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "profileId": self.profile_id,
            "title": self.title,
            "personalityId": self.personality_id,
            "lastMessageText": self.last_message_text,
            "lastMessageAt": self.last_message_at,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, conversation_id: Optional[str] = None) -> "Conversation":
        created = coerce_timestamp(payload.get("createdAt"))
        updated = coerce_timestamp(payload.get("updatedAt"))
        return cls(
            id=str(conversation_id or payload.get("id") or ""),
            profile_id=str(payload.get("profileId") or ""),
            title=str(payload.get("title") or ""),
            personality_id=str(payload.get("personalityId") or ""),
            last_message_text=str(payload.get("lastMessageText") or ""),
            last_message_at=coerce_timestamp(payload.get("lastMessageAt")),
            created_at=created if created is not None else now_ms(),
            updated_at=updated if updated is not None else (created if created is not None else now_ms()),
        )


__all__ = [
    "Conversation",
    "Message",
    "Sender",
    "TEMP_ID_PREFIX",
    "coerce_timestamp",
    "is_temp_id",
    "new_temp_id",
    "now_ms",
]
