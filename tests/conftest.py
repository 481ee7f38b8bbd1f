"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Callable, List, Optional

import httpx
import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from chat_sync.auth import AuthSession, static_token  # noqa: E402
from chat_sync.backend import AIBackendClient  # noqa: E402
from chat_sync.gateway import InMemoryGateway  # noqa: E402
from chat_sync.models import Message  # noqa: E402
from chat_sync.pointer_cache import ActivePointerCache, MemoryKeyValueStore  # noqa: E402
from chat_sync.session import ChatSession  # noqa: E402

PROFILE = "u1_password"


class FakeClock:
    """Deterministic millisecond clock; each read advances by ``step``."""

    def __init__(self, start: int = 1_000_000, step: int = 0) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> int:
        value = self.now
        self.now += self.step
        return value


class DeferredGateway(InMemoryGateway):
    """Delivers every snapshot ``delay`` seconds later, like a real push stream.

    Snapshots can then land after ``insert`` has returned or after the
    backend has answered, in the middle of a send.
    """

    def __init__(self, delay: float = 0.01) -> None:
        super().__init__()
        self.delay = delay

    def _deliver(self, listener, snapshot: List[Message]) -> None:
        asyncio.get_running_loop().call_later(self.delay, super()._deliver, listener, list(snapshot))

    async def drain(self) -> None:
        """Wait until every scheduled snapshot has been delivered."""
        await asyncio.sleep(self.delay * 10)


def reply_handler(
    text: str = "hello from bhai",
    *,
    status: int = 200,
    conversation_id: Optional[str] = None,
    timestamp: Optional[int] = None,
    message_id: Optional[str] = None,
    seen: Optional[List[httpx.Request]] = None,
) -> Callable[[httpx.Request], httpx.Response]:
    """Build an httpx.MockTransport handler that answers every /chat call."""

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if status >= 400:
            return httpx.Response(status, json={"detail": "boom"})
        payload = json.loads(request.content)
        return httpx.Response(200, json={
            "message": text,
            "conversation_id": conversation_id or payload["conversation_id"],
            "message_id": message_id,
            "timestamp": timestamp,
            "personality": payload["personality"],
        })

    return handler


@pytest.fixture(scope="function")
def gateway() -> InMemoryGateway:
    return InMemoryGateway()


@pytest.fixture(scope="function")
def deferred_gateway() -> DeferredGateway:
    return DeferredGateway()


@pytest.fixture(scope="function")
def kv_store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture(scope="function")
def pointer_cache(kv_store: MemoryKeyValueStore) -> ActivePointerCache:
    return ActivePointerCache(kv_store)


@pytest.fixture(scope="function")
def auth() -> AuthSession:
    return AuthSession.for_user("u1", static_token("tok-123"), provider="password")


@pytest.fixture(scope="function")
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope="function")
def make_session(gateway: InMemoryGateway, pointer_cache: ActivePointerCache, clock: FakeClock):
    """Factory: a ChatSession whose backend is answered by ``handler``."""
    def factory(handler: Callable[[httpx.Request], httpx.Response], **kwargs) -> ChatSession:
        backend = AIBackendClient("http://backend.test", transport=httpx.MockTransport(handler), timeout=5)
        store = kwargs.pop("gateway", gateway)
        return ChatSession(store, backend, pointer_cache, clock=kwargs.pop("clock", clock), **kwargs)

    return factory


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in list(os.environ):
        if var == "CHAT_SYNC_CONFIG" or var.startswith("CHAT_SYNC__"):
            monkeypatch.delenv(var, raising=False)
    yield
