from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

DEFAULT_PERSONALITY_ID = "swag_bhai"


@dataclass(frozen=True)
class Personality:
    """An assistant persona the backend can answer as."""

    id: str
    name: str
    description: str = ""
    emoji: str = ""

    @classmethod
    def from_dict(cls, personality_id: str, payload: Mapping[str, Any]) -> "Personality":
        return cls(
            id=personality_id,
            name=str(payload.get("name") or personality_id),
            description=str(payload.get("description") or ""),
            emoji=str(payload.get("emoji") or ""),
        )


DEFAULT_PERSONALITIES: Dict[str, Personality] = {
    p.id: p
    for p in (
        Personality("swag_bhai", "Swag Bhai", "Cool and trendy with a dash of attitude", "😎"),
        Personality("ceo_bhai", "CEO Bhai", "Professional and business-minded advice", "💼"),
        Personality("roast_bhai", "Roast Bhai", "Witty and humorous with a touch of sarcasm", "🔥"),
        Personality("vidhyarthi_bhai", "Vidhyarthi Bhai", "Educational and informative responses", "📚"),
        Personality("jugadu_bhai", "Jugadu Bhai", "Creative problem-solver with resourceful hacks", "🔧"),
    )
}


def load_personalities(overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, Personality]:
    """Built-in catalogue, extended/overridden by a ``personalities:`` config section."""
    catalog = dict(DEFAULT_PERSONALITIES)
    for pid, payload in (overrides or {}).items():
        if isinstance(payload, Mapping):
            catalog[str(pid)] = Personality.from_dict(str(pid), payload)
    return catalog


def get_personality(
    personality_id: Optional[str],
    catalog: Optional[Mapping[str, Personality]] = None,
    default_id: str = DEFAULT_PERSONALITY_ID,
) -> Personality:
    catalog = catalog or DEFAULT_PERSONALITIES
    if personality_id and personality_id in catalog:
        return catalog[personality_id]
    if default_id in catalog:
        return catalog[default_id]
    return DEFAULT_PERSONALITIES[DEFAULT_PERSONALITY_ID]


def fallback_title(personality: Personality) -> str:
    return f"New {personality.name} Chat"


def title_from_text(text: str, max_chars: int = 30) -> str:
    return text.strip()[:max_chars]


__all__ = [
    "DEFAULT_PERSONALITIES",
    "DEFAULT_PERSONALITY_ID",
    "Personality",
    "fallback_title",
    "get_personality",
    "load_personalities",
    "title_from_text",
]
