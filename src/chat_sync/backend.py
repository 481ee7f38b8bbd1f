"""Async client for the AI backend's ``POST /chat`` endpoint."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import BackendFailure
from .models import coerce_timestamp

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


# -----------------------------
# Pydantic request/response
# -----------------------------
class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)
    personality: str
    conversation_id: Optional[str] = Field(default=None, description="None asks the backend to open a conversation.")
    user_id: str
    profile_id: str


class ChatReply(BaseModel):
    message: str
    conversation_id: str
    message_id: Optional[str] = None
    timestamp: Optional[int] = Field(default=None, description="Epoch milliseconds.")
    personality: Optional[str] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _normalise_timestamp(cls, value: Any) -> Optional[int]:
        # ms numbers and ISO strings are both seen in the wild
        return coerce_timestamp(value)


# -----------------------------
# Client
# -----------------------------
class AIBackendClient:
    """Thin wrapper around :class:`httpx.AsyncClient`.

    Every failure mode (transport error, timeout, non-2xx, unreadable body)
    is raised as :class:`BackendFailure`; callers never see httpx errors.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        chat_path: str = "/chat",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self.chat_path = chat_path if chat_path.startswith("/") else "/" + chat_path
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=transport)

    async def __aenter__(self) -> "AIBackendClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def chat(self, request: ChatRequest, token: str) -> ChatReply:
        headers = {"Authorization": f"Bearer {token}"}
        try:
            # httpx timeouts are per phase; wait_for bounds the whole exchange
            response = await asyncio.wait_for(
                self._client.post(self.chat_path, json=request.model_dump(), headers=headers),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise BackendFailure(f"backend timed out after {self.timeout:g}s") from exc
        except httpx.HTTPError as exc:
            raise BackendFailure(f"backend unreachable: {exc}") from exc

        if not response.is_success:
            logger.warning("Backend returned %s for conversation %s", response.status_code, request.conversation_id)
            raise BackendFailure(f"Backend error: {response.status_code}", status_code=response.status_code)

        try:
            return ChatReply.model_validate(response.json())
        except (ValueError, PydanticValidationError) as exc:
            raise BackendFailure("backend returned an unreadable reply", status_code=response.status_code) from exc


__all__ = ["AIBackendClient", "ChatReply", "ChatRequest"]
