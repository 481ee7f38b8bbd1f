"""The surface the UI layer binds to.

``ChatSession`` wires the pending set, reconciliation engine, lifecycle
manager and outbound pipeline together and converts their failures into
state (``last_error``, ``is_sending``) instead of exceptions. Only
``ValidationError`` and its subclasses are raised to the caller, before any
I/O happens.
"""
from __future__ import annotations

import logging
from typing import Callable, List, Optional

from .auth import AuthSession
from .backend import AIBackendClient
from .config import Settings, load_settings
from .errors import ChatSyncError, ValidationError
from .gateway import RemoteStoreGateway
from .lifecycle import ConversationLifecycle, LifecycleState
from .models import Conversation, Message, now_ms
from .pipeline import Clock, OutboundPipeline
from .pointer_cache import ActivePointerCache, DiskKeyValueStore
from .reconcile import PendingSet, ReconciliationEngine

logger = logging.getLogger(__name__)

MessagesCallback = Callable[[List[Message]], None]
ErrorCallback = Callable[[ChatSyncError], None]


class ChatSession:
    def __init__(
        self,
        gateway: RemoteStoreGateway,
        backend: AIBackendClient,
        cache: ActivePointerCache,
        *,
        settings: Optional[Settings] = None,
        on_messages: Optional[MessagesCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        clock: Clock = now_ms,
    ) -> None:
        self.settings = settings or Settings()
        self.on_messages = on_messages
        self.on_error = on_error
        self.backend = backend
        self.pending = PendingSet(window_ms=self.settings.pending_window_ms)
        self.engine = ReconciliationEngine(self.pending, on_emit=self._emit)
        self.lifecycle = ConversationLifecycle(
            gateway,
            cache,
            self.engine,
            personalities=self.settings.personalities,
            default_personality=self.settings.default_personality,
            title_max_chars=self.settings.title_max_chars,
        )
        self.pipeline = OutboundPipeline(gateway, backend, self.lifecycle, self.engine, clock=clock)
        self.auth: Optional[AuthSession] = None
        self.personality_id = self.settings.default_personality
        self.last_error: Optional[ChatSyncError] = None

    @classmethod
    def from_settings(
        cls,
        gateway: RemoteStoreGateway,
        settings: Optional[Settings] = None,
        **kwargs,
    ) -> "ChatSession":
        """Build a session whose backend client and pointer cache come from config."""
        settings = settings or load_settings()
        backend = AIBackendClient(
            settings.backend_url,
            timeout=settings.backend_timeout,
            chat_path=settings.chat_path,
        )
        cache = ActivePointerCache(DiskKeyValueStore(settings.cache_dir), key_prefix=settings.cache_key_prefix)
        return cls(gateway, backend, cache, settings=settings, **kwargs)

    # --------- state exposed to the UI ----------
    @property
    def messages(self) -> List[Message]:
        return self.engine.messages

    @property
    def is_sending(self) -> bool:
        conversation_id = self.lifecycle.conversation_id
        if conversation_id is None:
            return self.pipeline.is_sending()
        return self.pipeline.is_sending(conversation_id)

    @property
    def is_loading(self) -> bool:
        return self.lifecycle.is_loading

    @property
    def state(self) -> LifecycleState:
        return self.lifecycle.state

    @property
    def conversation(self) -> Optional[Conversation]:
        return self.lifecycle.conversation

    def _emit(self, messages: List[Message]) -> None:
        if self.on_messages is not None:
            self.on_messages(messages)

    def _fail(self, exc: ChatSyncError) -> None:
        self.last_error = exc
        logger.warning("%s: %s", type(exc).__name__, exc)
        if self.on_error is not None:
            self.on_error(exc)

    # --------- auth ----------
    async def sign_in(self, auth: AuthSession) -> Optional[Conversation]:
        self.auth = auth
        self.last_error = None
        try:
            return await self.lifecycle.bind_profile(auth.profile_id, self.personality_id)
        except ValidationError:
            raise
        except ChatSyncError as exc:
            self._fail(exc)
            return None

    def sign_out(self) -> None:
        self.auth = None
        self.last_error = None
        self.lifecycle.unbind()

    # --------- actions ----------
    def select_personality(self, personality_id: str) -> None:
        if personality_id not in self.settings.personalities:
            raise ValidationError(f"unknown personality: {personality_id}")
        self.personality_id = personality_id

    async def send_message(self, text: str) -> Optional[Message]:
        """Send ``text`` in the active conversation; returns the reply or None on failure."""
        if not (text or "").strip():
            raise ValidationError("message text is empty")
        if self.auth is None:
            raise ValidationError("no profile is signed in")
        self.last_error = None
        try:
            return await self.pipeline.send(
                text, self.personality_id, self.auth, self.lifecycle.conversation_id
            )
        except ValidationError:
            raise
        except ChatSyncError as exc:
            self._fail(exc)
            return None

    def select_conversation(self, conversation: Conversation) -> Conversation:
        return self.lifecycle.select(conversation)

    async def create_new_conversation(self) -> Optional[Conversation]:
        try:
            return await self.lifecycle.create_new(self.personality_id)
        except ValidationError:
            raise
        except ChatSyncError as exc:
            self._fail(exc)
            return None

    async def list_conversations(self) -> List[Conversation]:
        try:
            return await self.lifecycle.list_conversations()
        except ValidationError:
            raise
        except ChatSyncError as exc:
            self._fail(exc)
            return []

    async def rename_conversation(self, conversation_id: str, title: str) -> bool:
        try:
            await self.lifecycle.rename(conversation_id, title)
        except ValidationError:
            raise
        except ChatSyncError as exc:
            self._fail(exc)
            return False
        return True

    async def delete_conversation(self, conversation_id: str) -> bool:
        try:
            await self.lifecycle.delete(conversation_id)
        except ValidationError:
            raise
        except ChatSyncError as exc:
            self._fail(exc)
            return False
        return True

    async def aclose(self) -> None:
        await self.lifecycle.flush()
        self.lifecycle.unbind()
        await self.backend.aclose()


__all__ = ["ChatSession"]
