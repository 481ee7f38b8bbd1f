"""Conversation/message sync engine for a personality-selectable AI chat client.

Typical usage
-------------
from chat_sync import ChatSession, load_settings
session = ChatSession.from_settings(gateway, load_settings())
await session.sign_in(auth)
await session.send_message("hi")
"""

from __future__ import annotations

from .auth import AuthSession, make_profile_id, static_token
from .backend import AIBackendClient, ChatReply, ChatRequest
from .config import Settings, load_config, load_settings
from .errors import (
    BackendFailure,
    ChatSyncError,
    ConversationNotEmptyRequired,
    SendInProgress,
    StaleReference,
    TransientIOError,
    ValidationError,
)
from .gateway import InMemoryGateway, RemoteStoreGateway
from .lifecycle import ConversationLifecycle, LifecycleState
from .models import Conversation, Message, Sender
from .pipeline import OutboundPipeline
from .pointer_cache import ActivePointerCache, DiskKeyValueStore, MemoryKeyValueStore
from .reconcile import PendingSet, ReconciliationEngine
from .session import ChatSession

__all__ = [
    "AIBackendClient",
    "ActivePointerCache",
    "AuthSession",
    "BackendFailure",
    "ChatReply",
    "ChatRequest",
    "ChatSession",
    "ChatSyncError",
    "Conversation",
    "ConversationLifecycle",
    "ConversationNotEmptyRequired",
    "DiskKeyValueStore",
    "InMemoryGateway",
    "LifecycleState",
    "MemoryKeyValueStore",
    "Message",
    "OutboundPipeline",
    "PendingSet",
    "ReconciliationEngine",
    "RemoteStoreGateway",
    "SendInProgress",
    "Sender",
    "Settings",
    "StaleReference",
    "TransientIOError",
    "ValidationError",
    "__version__",
    "get_version",
    "load_config",
    "load_settings",
    "make_profile_id",
    "static_token",
]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__
