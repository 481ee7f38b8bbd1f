from __future__ import annotations

import asyncio

from fastapi.testclient import TestClient

from chat_sync.devserver import create_app, echo_responder
from chat_sync.gateway import InMemoryGateway
from chat_sync.models import Sender
from chat_sync.personalities import DEFAULT_PERSONALITIES

BODY = {"message": "Hello", "personality": "roast_bhai", "conversation_id": None,
        "user_id": "u1", "profile_id": "u1_password"}


def test_health_lists_personalities():
    client = TestClient(create_app())
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert "swag_bhai" in r.json()["personalities"]


def test_chat_requires_bearer_token():
    client = TestClient(create_app(expected_token="secret"))
    assert client.post("/chat", json=BODY).status_code == 401
    assert client.post("/chat", json=BODY, headers={"Authorization": "Bearer nope"}).status_code == 403


def test_chat_creates_conversation_and_stores_reply():
    """No conversation id: the server opens one and writes the reply into it."""
    gateway = InMemoryGateway()
    client = TestClient(create_app(gateway=gateway, responder=lambda text, p: f"{p.name}: {text[::-1]}"))

    r = client.post("/chat", json=BODY, headers={"Authorization": "Bearer any"})
    assert r.status_code == 200
    data = r.json()
    assert data["message"] == "Roast Bhai: olleH"
    assert data["personality"] == "roast_bhai"
    assert data["message_id"]

    conv = asyncio.run(gateway.get_conversation("u1_password", data["conversation_id"]))
    assert conv.title == "Hello"
    stored = asyncio.run(gateway.query("u1_password", data["conversation_id"]))
    assert [(m.id, m.sender) for m in stored] == [(data["message_id"], Sender.ASSISTANT)]
    assert stored[0].timestamp == data["timestamp"]


def test_echo_responder_uses_persona():
    text = echo_responder("yo", DEFAULT_PERSONALITIES["ceo_bhai"])
    assert text.startswith("💼 CEO Bhai")
    assert text.endswith("You said: yo")
