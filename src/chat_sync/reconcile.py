"""Merge authoritative snapshots with optimistic pending messages.

The pending set is the only mutable state shared between the outbound
pipeline and the stream listener. Every method here is synchronous, so a
mutation plus the reconciliation pass that follows it always run within a
single event-loop tick.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .models import Message, is_temp_id

logger = logging.getLogger(__name__)

EmitCallback = Callable[[List[Message]], None]


class PendingSet:
    """Optimistic messages keyed by conversation id, then message id.

    An entry leaves the set when the authoritative stream confirms it (same
    id, or same sender/text/conversation within ``window_ms`` of its
    timestamp) or when the pipeline removes it after a failed send.
    """

    def __init__(self, window_ms: int = 30_000) -> None:
        self.window_ms = window_ms
        self._by_conversation: Dict[str, Dict[str, Message]] = {}

    def add(self, message: Message) -> None:
        self._by_conversation.setdefault(message.conversation_id, {})[message.id] = message

    def get(self, conversation_id: str, message_id: str) -> Optional[Message]:
        return self._by_conversation.get(conversation_id, {}).get(message_id)

    def remove(self, conversation_id: str, message_id: str) -> bool:
        bucket = self._by_conversation.get(conversation_id)
        if not bucket or message_id not in bucket:
            return False
        del bucket[message_id]
        if not bucket:
            del self._by_conversation[conversation_id]
        return True

    def rekey(self, conversation_id: str, old_id: str, new_id: str) -> bool:
        """Swap a temporary id for the store-assigned one, keeping the entry pending."""
        message = self.get(conversation_id, old_id)
        if message is None:
            return False
        self.remove(conversation_id, old_id)
        self.add(message.with_id(new_id))
        return True

    def move(self, old_conversation_id: str, new_conversation_id: str) -> int:
        """Re-home not-yet-stored entries of one conversation onto another.

        Entries that already carry a store id were written to the old
        conversation and can never be confirmed by the new one's stream, so
        they are dropped. Returns the number of entries moved.
        """
        bucket = self._by_conversation.pop(old_conversation_id, {})
        moved = 0
        for message in bucket.values():
            if is_temp_id(message.id):
                self.add(replace(message, conversation_id=new_conversation_id))
                moved += 1
        return moved

    def for_conversation(self, conversation_id: str) -> List[Message]:
        return list(self._by_conversation.get(conversation_id, {}).values())

    def size(self, conversation_id: Optional[str] = None) -> int:
        if conversation_id is not None:
            return len(self._by_conversation.get(conversation_id, {}))
        return sum(len(bucket) for bucket in self._by_conversation.values())

    def clear(self, conversation_id: Optional[str] = None) -> None:
        if conversation_id is None:
            self._by_conversation.clear()
        else:
            self._by_conversation.pop(conversation_id, None)

    def confirm(
        self,
        conversation_id: str,
        remote: Iterable[Message],
        fresh_ids: Optional[Set[str]] = None,
    ) -> List[Message]:
        """Drop pending entries that ``remote`` confirms; return the dropped entries.

        Each remote message confirms at most one pending entry. Id matches
        are resolved first so a signature match never steals an entry that
        the store has already acknowledged by id. When ``fresh_ids`` is given,
        only those newly delivered messages may confirm by signature, so an
        older identical message cannot swallow a new send.
        """
        bucket = self._by_conversation.get(conversation_id)
        if not bucket:
            return []
        remote = list(remote)
        confirmed: List[Message] = []
        used: Set[str] = set()

        for message in remote:
            if message.id in bucket:
                confirmed.append(bucket.pop(message.id))
                used.add(message.id)

        for message in remote:
            if message.id in used or not bucket:
                continue
            if fresh_ids is not None and message.id not in fresh_ids:
                continue
            for pending_id, pending in list(bucket.items()):
                if (pending.signature() == message.signature()
                        and abs(message.timestamp - pending.timestamp) <= self.window_ms):
                    confirmed.append(bucket.pop(pending_id))
                    break

        if not bucket:
            del self._by_conversation[conversation_id]
        return confirmed


def merge_messages(remote: Sequence[Message], pending: Sequence[Message], conversation_id: str) -> List[Message]:
    """Return remote + still-unconfirmed pending messages, ordered and de-duplicated."""
    index: Dict[str, Message] = {}
    for message in remote:
        # the store is authoritative: a later copy of an id always wins
        index[message.id] = message
    unconfirmed = [
        m for m in pending
        if m.conversation_id == conversation_id and m.id not in index
    ]
    merged = list(index.values()) + unconfirmed
    merged.sort(key=Message.sort_key)
    return merged


Fingerprint = Tuple[Tuple[str, int, str, bool], ...]


def _fingerprint(messages: Sequence[Message]) -> Fingerprint:
    return tuple((m.id, m.timestamp, m.text, m.is_optimistic) for m in messages)


class ReconciliationEngine:
    """Keeps one ordered, duplicate-free message list for the active conversation."""

    def __init__(self, pending: PendingSet, on_emit: Optional[EmitCallback] = None) -> None:
        self.pending = pending
        self.on_emit = on_emit
        self._conversation_id: Optional[str] = None
        self._remote: List[Message] = []
        self._seen_ids: Set[str] = set()
        self._emitted: List[Message] = []
        self._fingerprint: Fingerprint = ()

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    @property
    def messages(self) -> List[Message]:
        return list(self._emitted)

    def is_confirmed(self, conversation_id: str, message_id: str) -> bool:
        """True if the current snapshot of ``conversation_id`` already holds ``message_id``."""
        return conversation_id == self._conversation_id and message_id in self._seen_ids

    def last_timestamp(self, conversation_id: str) -> Optional[int]:
        """Newest timestamp on screen for ``conversation_id``, or None if it is not shown."""
        if conversation_id != self._conversation_id or not self._emitted:
            return None
        return self._emitted[-1].timestamp

    def bind(self, conversation_id: Optional[str]) -> None:
        """Point the engine at another conversation, forgetting the old snapshot."""
        if conversation_id == self._conversation_id:
            return
        self._conversation_id = conversation_id
        self._remote = []
        self._seen_ids = set()
        self.reconcile(force=True)

    def clear(self) -> None:
        self._conversation_id = None
        self._remote = []
        self._seen_ids = set()
        self.reconcile(force=True)

    def on_remote_snapshot(self, conversation_id: str, messages: Sequence[Message]) -> List[Message]:
        if conversation_id != self._conversation_id:
            # a late snapshot from a stream we already left
            logger.debug("Ignoring snapshot for inactive conversation %s", conversation_id)
            return self.messages
        self._remote = list(messages)
        ids = {m.id for m in self._remote}
        confirmed = self.pending.confirm(conversation_id, self._remote, fresh_ids=ids - self._seen_ids)
        self._seen_ids = ids
        if confirmed:
            logger.debug("Confirmed %d pending message(s) in %s", len(confirmed), conversation_id)
        return self.reconcile()

    def on_remote_error(self, exc: Exception) -> None:
        # last good list stays on screen
        logger.warning("Message stream error for %s: %s", self._conversation_id, exc)

    def reconcile(self, *, force: bool = False) -> List[Message]:
        if self._conversation_id is None:
            merged: List[Message] = []
        else:
            merged = merge_messages(
                self._remote,
                self.pending.for_conversation(self._conversation_id),
                self._conversation_id,
            )
        fingerprint = _fingerprint(merged)
        self._emitted = merged
        if not force and fingerprint == self._fingerprint:
            return self.messages
        self._fingerprint = fingerprint
        logger.debug("Emitting %d message(s) for %s", len(merged), self._conversation_id)
        if self.on_emit is not None:
            self.on_emit(list(merged))
        return self.messages


__all__ = ["EmitCallback", "PendingSet", "ReconciliationEngine", "merge_messages"]
