"""Loopback AI backend for local development.

Implements the ``POST /chat`` contract the client consumes, answering with a
canned personality-flavoured reply and writing it into the same store the
client reads, the way the production backend does.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from .backend import ChatReply, ChatRequest
from .gateway import InMemoryGateway, RemoteStoreGateway
from .models import Message, Sender, now_ms
from .personalities import Personality, fallback_title, get_personality, load_personalities, title_from_text

Responder = Callable[[str, Personality], str]


def echo_responder(text: str, personality: Personality) -> str:
    return f"{personality.emoji} {personality.name} here. You said: {text}".strip()


def _bearer(authorization: Optional[str]) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Missing bearer token.")
    return token.strip()


def create_app(
    gateway: Optional[RemoteStoreGateway] = None,
    responder: Optional[Responder] = None,
    *,
    expected_token: Optional[str] = None,
    cors_origins: Optional[list] = None,
) -> FastAPI:
    store = gateway if gateway is not None else InMemoryGateway()
    respond = responder or echo_responder
    personalities = load_personalities()

    app = FastAPI(title="Chat Sync Dev Backend", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.gateway = store

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"ok": True, "personalities": sorted(personalities)}

    @app.post("/chat", response_model=ChatReply)
    async def chat(req: ChatRequest, authorization: Optional[str] = Header(default=None)) -> ChatReply:
        token = _bearer(authorization)
        if expected_token is not None and token != expected_token:
            raise HTTPException(status_code=403, detail="Invalid token.")
        msg = req.message.strip()
        if not msg:
            raise HTTPException(status_code=400, detail="Message cannot be empty.")

        personality = get_personality(req.personality, personalities)
        conversation_id = req.conversation_id
        if conversation_id is None or await store.get_conversation(req.profile_id, conversation_id) is None:
            now = now_ms()
            conversation_id = await store.create_conversation(req.profile_id, {
                "title": title_from_text(msg) or fallback_title(personality),
                "personalityId": personality.id,
                "createdAt": now,
                "updatedAt": now,
            })

        # the reply must sort after everything already in the conversation
        history = await store.query(req.profile_id, conversation_id)
        last_ts = max((m.timestamp for m in history), default=0)
        reply = Message(
            id="",
            conversation_id=conversation_id,
            sender=Sender.ASSISTANT,
            text=respond(msg, personality),
            timestamp=max(now_ms(), last_ts + 1),
            personality_id=personality.id,
        )
        message_id = await store.insert(req.profile_id, conversation_id, reply)
        return ChatReply(
            message=reply.text,
            conversation_id=conversation_id,
            message_id=message_id,
            timestamp=reply.timestamp,
            personality=personality.id,
        )

    return app


__all__ = ["create_app", "echo_responder"]
