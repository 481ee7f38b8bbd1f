"""Which conversation is active for the signed-in profile, and how that changes.

States::

    UNBOUND --bind_profile--> RESTORING --(pointer valid)--> READY(id)
                                   |                             |
                                   +--(stale/absent)--> CREATING -+--> READY(new id)

Signing out (``bind_profile(None)`` / ``unbind``) returns to UNBOUND from any
state and synchronously drops every message and pending entry. Each entry
into READY swaps the message stream subscription and writes the pointer
cache in the background.
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, List, Mapping, Optional, Set

from .errors import ConversationNotEmptyRequired, StaleReference, TransientIOError, ValidationError
from .gateway import RemoteStoreGateway, Unsubscribe
from .models import Conversation, now_ms
from .personalities import (
    DEFAULT_PERSONALITY_ID,
    Personality,
    fallback_title,
    get_personality,
    load_personalities,
    title_from_text,
)
from .pointer_cache import ActivePointerCache
from .reconcile import ReconciliationEngine

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    UNBOUND = "unbound"
    RESTORING = "restoring"
    CREATING = "creating"
    READY = "ready"


class ConversationLifecycle:
    def __init__(
        self,
        gateway: RemoteStoreGateway,
        cache: ActivePointerCache,
        engine: ReconciliationEngine,
        *,
        personalities: Optional[Mapping[str, Personality]] = None,
        default_personality: str = DEFAULT_PERSONALITY_ID,
        title_max_chars: int = 30,
    ) -> None:
        self.gateway = gateway
        self.cache = cache
        self.engine = engine
        self.personalities = dict(personalities or load_personalities())
        self.default_personality = default_personality
        self.title_max_chars = title_max_chars

        self._state = LifecycleState.UNBOUND
        self._profile_id: Optional[str] = None
        self._conversation: Optional[Conversation] = None
        self._unsubscribe: Optional[Unsubscribe] = None
        # bumped on every bind/unbind; stale awaits compare against it
        self._generation = 0
        self._loading = 0
        self._create_lock = asyncio.Lock()
        self._background: Set[asyncio.Task] = set()

    # --------- read-only view ----------
    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def profile_id(self) -> Optional[str]:
        return self._profile_id

    @property
    def conversation(self) -> Optional[Conversation]:
        return self._conversation

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation.id if self._conversation is not None else None

    @property
    def is_loading(self) -> bool:
        return self._loading > 0

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _require_profile(self) -> str:
        if not self._profile_id:
            raise ValidationError("no profile is signed in")
        return self._profile_id

    # --------- profile binding ----------
    async def bind_profile(self, profile_id: Optional[str], personality_id: Optional[str] = None) -> Optional[Conversation]:
        """Restore (or create) the active conversation for ``profile_id``; ``None`` signs out."""
        if not profile_id:
            self.unbind()
            return None
        if profile_id == self._profile_id and self._conversation is not None:
            return self._conversation
        if self._profile_id is not None:
            self.unbind()

        self._generation += 1
        generation = self._generation
        self._profile_id = profile_id
        self._state = LifecycleState.RESTORING
        logger.info("Restoring active conversation for %s", profile_id)

        self._loading += 1
        try:
            conversation = await self._restore(profile_id, generation)
        finally:
            self._loading -= 1
        if not self._is_current(generation):
            return None
        if conversation is not None:
            self._enter_ready(conversation)
            return conversation

        async with self._create_lock:
            if not self._is_current(generation):
                return None
            if self._conversation is not None:
                return self._conversation
            try:
                return await self._create(profile_id, generation, personality_id=personality_id)
            except TransientIOError:
                if not self._is_current(generation):
                    return None
                raise

    async def _restore(self, profile_id: str, generation: int) -> Optional[Conversation]:
        cached = await self.cache.load(profile_id)
        if cached is None or not self._is_current(generation):
            return None
        try:
            return await self._validate(profile_id, cached.id)
        except StaleReference as exc:
            logger.info("%s; starting a new one", exc)
            await self.cache.evict(profile_id)
        except TransientIOError as exc:
            # could not confirm, so do not trust it; keep it cached for next start
            logger.warning("Could not validate cached conversation %s: %s", cached.id, exc)
        return None

    async def _validate(self, profile_id: str, conversation_id: str) -> Conversation:
        try:
            remote = await self.gateway.get_conversation(profile_id, conversation_id)
        except Exception as exc:
            raise TransientIOError(f"get_conversation failed: {exc}") from exc
        if remote is None:
            raise StaleReference(profile_id, conversation_id)
        return remote

    def unbind(self) -> None:
        """Sign-out: drop the stream, the messages and every pending entry, synchronously."""
        self._generation += 1
        self._drop_subscription()
        self.engine.clear()
        self.engine.pending.clear()
        if self._profile_id is not None:
            logger.info("Unbound profile %s", self._profile_id)
        self._conversation = None
        self._profile_id = None
        self._state = LifecycleState.UNBOUND

    # --------- explicit transitions ----------
    def select(self, conversation: Conversation) -> Conversation:
        """Make ``conversation`` active; the caller already holds the authoritative copy."""
        profile_id = self._require_profile()
        if conversation.profile_id and conversation.profile_id != profile_id:
            raise ValidationError(f"conversation {conversation.id} belongs to another profile")
        self._enter_ready(conversation)
        return conversation

    async def ensure_conversation(
        self, first_message_text: Optional[str] = None, personality_id: Optional[str] = None
    ) -> Conversation:
        """Return the active conversation, creating one titled after the first message if needed."""
        profile_id = self._require_profile()
        async with self._create_lock:
            if self._conversation is not None:
                return self._conversation
            return await self._create(
                profile_id, self._generation, title_source=first_message_text, personality_id=personality_id
            )

    async def create_new(self, personality_id: Optional[str] = None) -> Conversation:
        """Start a fresh conversation; refused while the active one is still empty."""
        profile_id = self._require_profile()
        current = self._conversation
        if current is not None and not self._has_messages(current):
            raise ConversationNotEmptyRequired(current.id)
        async with self._create_lock:
            return await self._create(profile_id, self._generation, personality_id=personality_id)

    def _has_messages(self, conversation: Conversation) -> bool:
        if conversation.has_exchange:
            return True
        return self.engine.conversation_id == conversation.id and bool(self.engine.messages)

    async def _create(
        self,
        profile_id: str,
        generation: int,
        *,
        title_source: Optional[str] = None,
        personality_id: Optional[str] = None,
    ) -> Conversation:
        personality = get_personality(personality_id, self.personalities, self.default_personality)
        if title_source and title_source.strip():
            title = title_from_text(title_source, self.title_max_chars)
        else:
            title = fallback_title(personality)
        now = now_ms()
        data = {
            "title": title,
            "personalityId": personality.id,
            "lastMessageText": "",
            "lastMessageAt": None,
            "createdAt": now,
            "updatedAt": now,
        }

        previous = self._state
        self._state = LifecycleState.CREATING
        self._loading += 1
        try:
            conversation_id = await self.gateway.create_conversation(profile_id, data)
        except Exception as exc:
            if self._is_current(generation):
                self._state = previous
            raise TransientIOError(f"could not create conversation: {exc}") from exc
        finally:
            self._loading -= 1

        if not self._is_current(generation):
            raise TransientIOError("profile changed while the conversation was being created")
        conversation = Conversation.from_dict({**data, "profileId": profile_id}, conversation_id=conversation_id)
        logger.info("Created conversation %s (%r) for %s", conversation_id, title, profile_id)
        self._enter_ready(conversation)
        return conversation

    async def adopt(self, from_id: str, to_id: str) -> Optional[Conversation]:
        """Follow a backend redirect from ``from_id`` to ``to_id``.

        Pending entries of the old conversation move with it. The active
        pointer only follows if the user is still looking at ``from_id``.
        """
        if from_id == to_id:
            return self._conversation
        profile_id = self._require_profile()
        generation = self._generation
        moved = self.engine.pending.move(from_id, to_id)
        logger.info("Backend moved conversation %s -> %s (%d pending)", from_id, to_id, moved)

        try:
            conversation = await self.gateway.get_conversation(profile_id, to_id)
        except Exception as exc:
            logger.warning("Could not load redirected conversation %s: %s", to_id, exc)
            conversation = None
        if not self._is_current(generation):
            return None
        if conversation is None:
            personality = self._conversation.personality_id if self._conversation else self.default_personality
            conversation = Conversation(
                id=to_id, profile_id=profile_id, title=f"Chat ({to_id[:5]})", personality_id=personality
            )
        if self.conversation_id == from_id:
            self._enter_ready(conversation)
        return conversation

    async def record_exchange(
        self, conversation_id: str, last_text: str, last_at: int, title: Optional[str] = None
    ) -> None:
        """Write lastMessage* (and the title on a first exchange); failures are logged only."""
        profile_id = self._require_profile()
        patch = {"lastMessageText": last_text, "lastMessageAt": last_at}
        if title:
            patch["title"] = title
        try:
            await self.gateway.update_conversation(profile_id, conversation_id, patch)
        except Exception as exc:
            logger.warning("Could not update conversation %s: %s", conversation_id, exc)
        if self._conversation is not None and self._conversation.id == conversation_id:
            self._conversation = self._conversation.patched(patch)

    # --------- housekeeping ----------
    async def rename(self, conversation_id: str, title: str) -> None:
        profile_id = self._require_profile()
        title = title.strip()
        if not title:
            raise ValidationError("title must not be empty")
        try:
            await self.gateway.update_conversation(profile_id, conversation_id, {"title": title})
        except Exception as exc:
            raise TransientIOError(f"could not rename conversation: {exc}") from exc
        if self._conversation is not None and self._conversation.id == conversation_id:
            self._conversation = self._conversation.patched({"title": title})

    async def delete(self, conversation_id: str) -> Optional[Conversation]:
        """Delete a conversation; deleting the active one opens a fresh conversation."""
        profile_id = self._require_profile()
        try:
            await self.gateway.delete_conversation(profile_id, conversation_id)
        except Exception as exc:
            raise TransientIOError(f"could not delete conversation: {exc}") from exc
        self.engine.pending.clear(conversation_id)
        if self.conversation_id != conversation_id:
            return None
        self._drop_subscription()
        self.engine.bind(None)
        self._conversation = None
        await self.cache.evict(profile_id)
        async with self._create_lock:
            if self._conversation is not None:
                return self._conversation
            return await self._create(profile_id, self._generation)

    async def list_conversations(self) -> List[Conversation]:
        profile_id = self._require_profile()
        try:
            return await self.gateway.list_conversations(profile_id)
        except Exception as exc:
            raise TransientIOError(f"could not list conversations: {exc}") from exc

    async def flush(self) -> None:
        """Wait for background pointer writes (used on shutdown and in tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # --------- internals ----------
    def _drop_subscription(self) -> None:
        if self._unsubscribe is not None:
            unsubscribe, self._unsubscribe = self._unsubscribe, None
            unsubscribe()

    def _subscribe(self, profile_id: str, conversation_id: str) -> None:
        def on_change(messages):
            self.engine.on_remote_snapshot(conversation_id, messages)

        try:
            self._unsubscribe = self.gateway.subscribe(
                profile_id, conversation_id, on_change, self.engine.on_remote_error
            )
        except Exception as exc:
            logger.warning("Could not subscribe to %s: %s", conversation_id, exc)

    def _enter_ready(self, conversation: Conversation) -> None:
        profile_id = self._require_profile()
        if conversation.id != self.engine.conversation_id or self._unsubscribe is None:
            # old stream must be gone before the new one can deliver
            self._drop_subscription()
            self.engine.bind(conversation.id)
            self._subscribe(profile_id, conversation.id)
        self._conversation = conversation
        self._state = LifecycleState.READY
        logger.info("Active conversation for %s is %s", profile_id, conversation.id)
        self._spawn(self.cache.save(profile_id, conversation))

    def _spawn(self, coro: Awaitable[None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; pointer not saved")
            coro.close()  # type: ignore[attr-defined]
            return
        task = loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


__all__ = ["ConversationLifecycle", "LifecycleState"]
