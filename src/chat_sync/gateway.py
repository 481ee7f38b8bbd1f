"""Remote store gateway: the interface the engine consumes, plus an in-process store.

The real deployment talks to a document store (one conversation collection per
profile, one append-only message collection per conversation). The engine only
needs the operations on :class:`RemoteStoreGateway`; :class:`InMemoryGateway`
implements them in memory for tests, demos and the loopback dev server.
"""
from __future__ import annotations

import itertools
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Tuple,
    runtime_checkable,
)

from .errors import TransientIOError
from .models import Conversation, Message, now_ms

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[List[Message]], None]
ErrorCallback = Callable[[Exception], None]
Unsubscribe = Callable[[], None]


@runtime_checkable
class RemoteStoreGateway(Protocol):
    """Operations consumed from the authoritative store. All data is keyed by profile."""

    async def query(self, profile_id: str, conversation_id: str) -> List[Message]: ...

    def subscribe(
        self,
        profile_id: str,
        conversation_id: str,
        on_change: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Unsubscribe: ...

    async def insert(self, profile_id: str, conversation_id: str, message: Message) -> str: ...

    async def update_message(
        self, profile_id: str, conversation_id: str, message_id: str, patch: Mapping[str, Any]
    ) -> None: ...

    async def get_conversation(self, profile_id: str, conversation_id: str) -> Optional[Conversation]: ...

    async def create_conversation(self, profile_id: str, data: Mapping[str, Any]) -> str: ...

    async def update_conversation(self, profile_id: str, conversation_id: str, patch: Mapping[str, Any]) -> None: ...

    async def list_conversations(self, profile_id: str) -> List[Conversation]: ...

    async def delete_conversation(self, profile_id: str, conversation_id: str) -> None: ...


# -----------------------------
# In-memory implementation
# -----------------------------
@dataclass
class _Listener:
    on_change: SnapshotCallback
    on_error: Optional[ErrorCallback]
    active: bool = True


@dataclass
class _Failure:
    exc: Exception
    remaining: int


class InMemoryGateway:
    """Process-local store with push subscriptions.

    Listeners receive the full ordered snapshot synchronously: once on
    subscribe and again after every write to that conversation. Failures can
    be scheduled per operation with :meth:`inject_failure` to exercise the
    engine's error paths.
    """

    def __init__(self) -> None:
        self._conversations: Dict[Tuple[str, str], Conversation] = {}
        self._messages: Dict[Tuple[str, str], List[Message]] = defaultdict(list)
        self._listeners: Dict[Tuple[str, str], List[_Listener]] = defaultdict(list)
        self._failures: Dict[str, _Failure] = {}
        self._ids = itertools.count(1)

    # --------- test hooks ----------
    def inject_failure(self, operation: str, exc: Optional[Exception] = None, *, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``exc``."""
        self._failures[operation] = _Failure(exc or TransientIOError(f"{operation} unavailable"), times)

    def emit_error(self, profile_id: str, conversation_id: str, exc: Exception) -> None:
        """Deliver a subscription error to every listener of a conversation."""
        for listener in list(self._listeners.get((profile_id, conversation_id), [])):
            if listener.active and listener.on_error is not None:
                listener.on_error(exc)

    def listener_count(self, profile_id: str, conversation_id: str) -> int:
        return sum(1 for lsn in self._listeners.get((profile_id, conversation_id), []) if lsn.active)

    def _maybe_fail(self, operation: str) -> None:
        failure = self._failures.get(operation)
        if failure is None:
            return
        failure.remaining -= 1
        if failure.remaining <= 0:
            del self._failures[operation]
        raise failure.exc

    def _next_id(self, kind: str) -> str:
        return f"{kind}{next(self._ids)}"

    # --------- messages ----------
    def _snapshot(self, key: Tuple[str, str]) -> List[Message]:
        return sorted(self._messages.get(key, []), key=Message.sort_key)

    def _deliver(self, listener: _Listener, snapshot: List[Message]) -> None:
        if listener.active:
            listener.on_change(list(snapshot))

    def _notify(self, key: Tuple[str, str]) -> None:
        snapshot = self._snapshot(key)
        for listener in list(self._listeners.get(key, [])):
            self._deliver(listener, snapshot)

    async def query(self, profile_id: str, conversation_id: str) -> List[Message]:
        self._maybe_fail("query")
        return self._snapshot((profile_id, conversation_id))

    def subscribe(
        self,
        profile_id: str,
        conversation_id: str,
        on_change: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Unsubscribe:
        key = (profile_id, conversation_id)
        listener = _Listener(on_change, on_error)
        self._listeners[key].append(listener)
        self._deliver(listener, self._snapshot(key))

        def unsubscribe() -> None:
            listener.active = False
            try:
                self._listeners[key].remove(listener)
            except ValueError:
                pass

        return unsubscribe

    async def insert(self, profile_id: str, conversation_id: str, message: Message) -> str:
        self._maybe_fail("insert")
        key = (profile_id, conversation_id)
        message_id = message.id if message.id and not message.is_optimistic else self._next_id("m")
        stored = Message.from_dict(message.to_dict(), message_id=message_id, conversation_id=conversation_id)
        # ids are unique; a re-insert replaces the document
        self._messages[key] = [m for m in self._messages[key] if m.id != message_id]
        self._messages[key].append(stored)
        logger.debug("stored %s %s in %s/%s", stored.sender.value, message_id, profile_id, conversation_id)
        self._notify(key)
        return message_id

    async def update_message(
        self, profile_id: str, conversation_id: str, message_id: str, patch: Mapping[str, Any]
    ) -> None:
        self._maybe_fail("update_message")
        key = (profile_id, conversation_id)
        for i, current in enumerate(self._messages.get(key, [])):
            if current.id == message_id:
                doc = {**current.to_dict(), **dict(patch)}
                self._messages[key][i] = Message.from_dict(doc, message_id=message_id, conversation_id=conversation_id)
                self._notify(key)
                return
        raise TransientIOError(f"message {message_id} not found in {conversation_id}")

    # --------- conversations ----------
    async def get_conversation(self, profile_id: str, conversation_id: str) -> Optional[Conversation]:
        self._maybe_fail("get_conversation")
        return self._conversations.get((profile_id, conversation_id))

    async def create_conversation(self, profile_id: str, data: Mapping[str, Any]) -> str:
        self._maybe_fail("create_conversation")
        conversation_id = self._next_id("c")
        now = now_ms()
        payload = {"createdAt": now, "updatedAt": now, **dict(data), "profileId": profile_id}
        self._conversations[(profile_id, conversation_id)] = Conversation.from_dict(
            payload, conversation_id=conversation_id
        )
        return conversation_id

    async def update_conversation(self, profile_id: str, conversation_id: str, patch: Mapping[str, Any]) -> None:
        self._maybe_fail("update_conversation")
        key = (profile_id, conversation_id)
        current = self._conversations.get(key)
        if current is None:
            raise TransientIOError(f"conversation {conversation_id} not found")
        self._conversations[key] = current.patched({**dict(patch), "updatedAt": now_ms()})

    async def list_conversations(self, profile_id: str) -> List[Conversation]:
        self._maybe_fail("list_conversations")
        owned = [c for (pid, _), c in self._conversations.items() if pid == profile_id]
        return sorted(owned, key=lambda c: c.updated_at, reverse=True)

    async def delete_conversation(self, profile_id: str, conversation_id: str) -> None:
        self._maybe_fail("delete_conversation")
        key = (profile_id, conversation_id)
        self._conversations.pop(key, None)
        self._messages.pop(key, None)
        self._notify(key)

    # --------- direct seeding ----------
    def seed_conversation(self, conversation: Conversation) -> None:
        self._conversations[(conversation.profile_id, conversation.id)] = conversation

    def seed_messages(self, profile_id: str, messages: List[Message]) -> None:
        for message in messages:
            key = (profile_id, message.conversation_id)
            self._messages[key] = [m for m in self._messages[key] if m.id != message.id]
            self._messages[key].append(message)
            self._notify(key)


__all__ = [
    "ErrorCallback",
    "InMemoryGateway",
    "RemoteStoreGateway",
    "SnapshotCallback",
    "Unsubscribe",
]
