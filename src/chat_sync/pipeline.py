"""Outbound message pipeline: optimistic insert, persist, AI round-trip, reply insert.

Sends are serialised per conversation. The assistant reply's timestamp is
derived from the exact user timestamp of the same send, and an interleaved
second send would make that ambiguous.
"""
from __future__ import annotations

import logging
from typing import Callable, List, Optional, Set

from .auth import AuthSession
from .backend import AIBackendClient, ChatReply, ChatRequest
from .errors import BackendFailure, SendInProgress, TransientIOError, ValidationError
from .gateway import RemoteStoreGateway
from .lifecycle import ConversationLifecycle
from .models import Message, Sender, new_temp_id, now_ms
from .personalities import title_from_text
from .reconcile import PendingSet, ReconciliationEngine

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def reply_timestamp(reply_ts: Optional[int], user_ts: int, clock: Clock = now_ms) -> int:
    """Timestamp for the assistant message: never at or before the user's."""
    ts = reply_ts if reply_ts is not None else clock()
    if ts <= user_ts:
        ts = user_ts + 1
    return ts


class OutboundPipeline:
    def __init__(
        self,
        gateway: RemoteStoreGateway,
        backend: AIBackendClient,
        lifecycle: ConversationLifecycle,
        engine: ReconciliationEngine,
        *,
        clock: Clock = now_ms,
    ) -> None:
        self.gateway = gateway
        self.backend = backend
        self.lifecycle = lifecycle
        self.engine = engine
        self.clock = clock
        self._in_flight: Set[str] = set()

    @property
    def pending(self) -> PendingSet:
        return self.engine.pending

    def is_sending(self, conversation_id: Optional[str] = None) -> bool:
        if conversation_id is None:
            return bool(self._in_flight)
        return conversation_id in self._in_flight

    async def send(
        self,
        text: str,
        personality_id: str,
        auth: Optional[AuthSession],
        conversation_id: Optional[str] = None,
    ) -> Message:
        """Run one exchange and return the assistant message.

        Raises ValidationError before any I/O, TransientIOError when the user
        message could not be stored, BackendFailure when the AI call failed.
        """
        text = (text or "").strip()
        if not text:
            raise ValidationError("message text is empty")
        if auth is None or not auth.profile_id:
            raise ValidationError("no profile is signed in")
        if auth.profile_id != self.lifecycle.profile_id:
            raise ValidationError("auth session does not match the bound profile")

        if conversation_id is None:
            conversation = await self.lifecycle.ensure_conversation(text, personality_id)
            conversation_id = conversation.id

        # check and claim with no await in between
        if conversation_id in self._in_flight:
            raise SendInProgress(conversation_id)
        claimed = [conversation_id]
        self._in_flight.add(conversation_id)
        try:
            return await self._exchange(text, personality_id, auth, conversation_id, claimed)
        finally:
            for claimed_id in claimed:
                self._in_flight.discard(claimed_id)

    def _user_timestamp(self, conversation_id: str) -> int:
        ts = self.clock()
        # a bumped or server-ahead reply on screen must not sort after the new message
        last = self.engine.last_timestamp(conversation_id)
        if last is not None and ts <= last:
            ts = last + 1
        return ts

    async def _exchange(
        self, text: str, personality_id: str, auth: AuthSession, conversation_id: str, claimed: List[str]
    ) -> Message:
        profile_id = auth.profile_id
        conversation = self.lifecycle.conversation
        first_exchange = (
            conversation is not None
            and conversation.id == conversation_id
            and not conversation.has_exchange
        )

        # 1. optimistic insert, visible before any network I/O
        user_msg = Message(
            id=new_temp_id(),
            conversation_id=conversation_id,
            sender=Sender.USER,
            text=text,
            timestamp=self._user_timestamp(conversation_id),
            personality_id=personality_id,
            is_optimistic=True,
        )
        self.pending.add(user_msg)
        self.engine.reconcile()

        # 2. persist the user message
        try:
            stored_id = await self.gateway.insert(profile_id, conversation_id, user_msg)
        except Exception as exc:
            self.pending.remove(conversation_id, user_msg.id)
            self.engine.reconcile()
            logger.warning("Could not store message in %s: %s", conversation_id, exc)
            raise TransientIOError(f"failed to send: {exc}") from exc
        self._settle(conversation_id, user_msg.id, stored_id)
        user_msg = user_msg.confirmed(stored_id)

        # 3. AI round-trip
        try:
            reply = await self._ask_backend(text, personality_id, auth, conversation_id)
        except BackendFailure:
            # the user message is stored; only its pending entry goes
            self.pending.remove(conversation_id, user_msg.id)
            self.engine.reconcile()
            raise

        # 4. the backend may have moved the exchange to another conversation
        target_id = reply.conversation_id or conversation_id
        if target_id != conversation_id:
            if target_id not in self._in_flight:
                self._in_flight.add(target_id)
                claimed.append(target_id)
            await self.lifecycle.adopt(conversation_id, target_id)

        # 5. the reply always sorts strictly after the message it answers
        reply_ts = reply_timestamp(reply.timestamp, user_msg.timestamp, self.clock)

        # 6. optimistic reply, then persist unless the backend already did
        assistant = Message(
            id=reply.message_id or new_temp_id(),
            conversation_id=target_id,
            sender=Sender.ASSISTANT,
            text=reply.message,
            timestamp=reply_ts,
            personality_id=reply.personality or personality_id,
            is_optimistic=True,
        )
        if self.engine.is_confirmed(target_id, assistant.id):
            assistant = assistant.confirmed(assistant.id)
        else:
            self.pending.add(assistant)
            self.engine.reconcile()
        if reply.message_id is None:
            assistant = await self._persist_reply(profile_id, assistant)
        elif reply.timestamp != reply_ts:
            await self._correct_reply_timestamp(profile_id, assistant)

        # 7. conversation summary
        title = title_from_text(text, self.lifecycle.title_max_chars) if first_exchange else None
        await self.lifecycle.record_exchange(target_id, assistant.text, assistant.timestamp, title=title)
        return assistant

    async def _ask_backend(
        self, text: str, personality_id: str, auth: AuthSession, conversation_id: str
    ) -> ChatReply:
        try:
            token = await auth.get_token()
        except Exception as exc:
            raise BackendFailure(f"could not obtain a bearer token: {exc}") from exc
        request = ChatRequest(
            message=text,
            personality=personality_id,
            conversation_id=conversation_id,
            user_id=auth.user_id,
            profile_id=auth.profile_id,
        )
        return await self.backend.chat(request, token)

    async def _persist_reply(self, profile_id: str, assistant: Message) -> Message:
        try:
            stored_id = await self.gateway.insert(profile_id, assistant.conversation_id, assistant)
        except Exception as exc:
            # stays pending so the reply is still shown
            logger.warning("Could not store reply in %s: %s", assistant.conversation_id, exc)
            return assistant
        self._settle(assistant.conversation_id, assistant.id, stored_id)
        return assistant.confirmed(stored_id)

    async def _correct_reply_timestamp(self, profile_id: str, assistant: Message) -> None:
        """Rewrite a backend-stored reply so the stored copy also sorts after its user message."""
        try:
            await self.gateway.update_message(
                profile_id, assistant.conversation_id, assistant.id, {"timestamp": assistant.timestamp}
            )
        except Exception as exc:
            logger.warning("Could not correct timestamp of %s in %s: %s",
                           assistant.id, assistant.conversation_id, exc)

    def _settle(self, conversation_id: str, temp_id: str, stored_id: str) -> None:
        """Give a pending entry its store id, or drop it if the stream already delivered it."""
        if not self.pending.rekey(conversation_id, temp_id, stored_id):
            return
        if self.engine.is_confirmed(conversation_id, stored_id):
            self.pending.remove(conversation_id, stored_id)
        self.engine.reconcile()


__all__ = ["OutboundPipeline", "reply_timestamp"]
