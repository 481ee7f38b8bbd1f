"""Auth collaborator surface: who is signed in and how to get a bearer token."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

TokenProvider = Callable[[], Awaitable[str]]


def make_profile_id(user_id: str, provider: Optional[str] = None) -> str:
    """``<uid>_<provider>``: one partition per account per sign-in provider."""
    return f"{user_id}_{provider or 'default'}"


def static_token(token: str) -> TokenProvider:
    async def provider() -> str:
        return token

    return provider


@dataclass(frozen=True)
class AuthSession:
    user_id: str
    profile_id: str
    token_provider: TokenProvider

    @classmethod
    def for_user(cls, user_id: str, token_provider: TokenProvider, *, provider: Optional[str] = None) -> "AuthSession":
        return cls(user_id=user_id, profile_id=make_profile_id(user_id, provider), token_provider=token_provider)

    async def get_token(self) -> str:
        return await self.token_provider()


__all__ = ["AuthSession", "TokenProvider", "make_profile_id", "static_token"]
