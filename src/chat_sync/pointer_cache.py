"""Local pointer cache: remembers the active conversation per profile across restarts.

The cache only speeds up cold start. Whatever it returns must be validated
against the remote store before use (see ``ConversationLifecycle``).
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Dict, Optional, Protocol, runtime_checkable

from .models import Conversation

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "currentConversation_"


@runtime_checkable
class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...


# -----------------------------
# Stores
# -----------------------------
class MemoryKeyValueStore:
    """Dict-backed store; handy for tests and ephemeral sessions."""

    def __init__(self) -> None:
        self.data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def remove(self, key: str) -> None:
        self.data.pop(key, None)


def _safe_key(name: str) -> str:
    # Keep it readable but filesystem-safe.
    s = re.sub(r"[^\w.\-@]+", "_", name.strip() or "default")
    return s[:128]


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


class DiskKeyValueStore:
    """One file per key under ``root``; writes are atomic (temp file + replace).

    File I/O runs in a worker thread so the event loop never blocks.
    """

    def __init__(self, root: str) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.root / f"{_safe_key(key)}.json"

    def _read(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def _remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    async def get(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(_atomic_write_text, self._path(key), value)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._remove, key)


# -----------------------------
# ActivePointerCache
# -----------------------------
class ActivePointerCache:
    """save/load the active conversation for a profile.

    Storage errors are logged and swallowed: a broken cache only costs a
    slower start, never a failed one.
    """

    def __init__(self, store: KeyValueStore, *, key_prefix: str = DEFAULT_KEY_PREFIX) -> None:
        self.store = store
        self.key_prefix = key_prefix

    def key_for(self, profile_id: str) -> str:
        return f"{self.key_prefix}{profile_id}"

    async def save(self, profile_id: str, conversation: Optional[Conversation]) -> None:
        if not profile_id:
            return
        key = self.key_for(profile_id)
        try:
            if conversation is not None and conversation.id:
                payload = {"id": conversation.id, **conversation.to_dict()}
                await self.store.set(key, json.dumps(payload, ensure_ascii=False))
                logger.debug("Saved active conversation %s for %s", conversation.id, profile_id)
            else:
                await self.store.remove(key)
                logger.debug("Cleared active conversation for %s", profile_id)
        except Exception:
            logger.exception("Failed to save active conversation for %s", profile_id)

    async def load(self, profile_id: str) -> Optional[Conversation]:
        if not profile_id:
            return None
        key = self.key_for(profile_id)
        try:
            raw = await self.store.get(key)
        except Exception:
            logger.exception("Failed to read active conversation for %s", profile_id)
            return None
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding corrupt pointer for %s", profile_id)
            await self.evict(profile_id)
            return None
        if not isinstance(payload, dict) or not payload.get("id"):
            logger.warning("Discarding pointer without an id for %s", profile_id)
            await self.evict(profile_id)
            return None
        return Conversation.from_dict(payload)

    async def evict(self, profile_id: str) -> None:
        await self.save(profile_id, None)


__all__ = [
    "ActivePointerCache",
    "DEFAULT_KEY_PREFIX",
    "DiskKeyValueStore",
    "KeyValueStore",
    "MemoryKeyValueStore",
]
