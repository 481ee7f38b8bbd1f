"""Configuration loading utilities for the chat sync engine.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable CHAT_SYNC_CONFIG
3. Fallback to "config/default.yaml"

It also supports optional overrides from environment variables with prefix
``CHAT_SYNC__`` (e.g., CHAT_SYNC__BACKEND__TIMEOUT=5).
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

from .personalities import DEFAULT_PERSONALITY_ID, Personality, load_personalities

logger = logging.getLogger(__name__)

ENV_CONFIG_PATH = "CHAT_SYNC_CONFIG"
ENV_PREFIX = "CHAT_SYNC__"

DEFAULTS: Dict[str, Any] = {
    "backend": {"base_url": "http://127.0.0.1:8000", "chat_path": "/chat", "timeout": 30.0},
    "cache": {"data_dir": "data/pointer_cache", "key_prefix": "currentConversation_"},
    "chat": {"title_max_chars": 30, "default_personality": DEFAULT_PERSONALITY_ID, "pending_window_seconds": 30},
}


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix CHAT_SYNC__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., CHAT_SYNC__BACKEND__BASE_URL -> cfg["backend"]["base_url"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        leaf = parts[-1]
        # Attempt to parse simple types (bool, int, float)
        if value.lower() in {"true", "false"}:
            sub[leaf] = value.lower() == "true"
        else:
            try:
                if "." in value:
                    sub[leaf] = float(value)
                else:
                    sub[leaf] = int(value)
            except ValueError:
                sub[leaf] = value
    return cfg


def _merge(base: Dict[str, Any], extra: Mapping[str, Any]) -> Dict[str, Any]:
    for key, value in extra.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration layered over the built-in defaults.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``CHAT_SYNC_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Parsed configuration dictionary with environment overrides applied.
    """
    if path is None:
        path = os.environ.get(ENV_CONFIG_PATH, "config/default.yaml")

    cfg = copy.deepcopy(DEFAULTS)
    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(cfg)

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(loaded, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(cfg, loaded))


@dataclass(frozen=True)
class Settings:
    """Typed view over the config sections the engine reads."""

    backend_url: str = DEFAULTS["backend"]["base_url"]
    chat_path: str = DEFAULTS["backend"]["chat_path"]
    backend_timeout: float = DEFAULTS["backend"]["timeout"]
    cache_dir: str = DEFAULTS["cache"]["data_dir"]
    cache_key_prefix: str = DEFAULTS["cache"]["key_prefix"]
    title_max_chars: int = DEFAULTS["chat"]["title_max_chars"]
    default_personality: str = DEFAULT_PERSONALITY_ID
    pending_window_ms: int = DEFAULTS["chat"]["pending_window_seconds"] * 1000
    personalities: Dict[str, Personality] = field(default_factory=load_personalities)


def load_settings(cfg: Mapping[str, Any] | None = None) -> Settings:
    cfg = cfg if cfg is not None else load_config()
    backend = cfg.get("backend", {}) or {}
    cache = cfg.get("cache", {}) or {}
    chat = cfg.get("chat", {}) or {}
    personalities = load_personalities(cfg.get("personalities"))
    default_personality = str(chat.get("default_personality") or DEFAULT_PERSONALITY_ID)
    if default_personality not in personalities:
        logger.warning("Unknown default personality %r; using %s", default_personality, DEFAULT_PERSONALITY_ID)
        default_personality = DEFAULT_PERSONALITY_ID
    return Settings(
        backend_url=str(backend.get("base_url") or DEFAULTS["backend"]["base_url"]).rstrip("/"),
        chat_path=str(backend.get("chat_path") or DEFAULTS["backend"]["chat_path"]),
        backend_timeout=float(backend.get("timeout", DEFAULTS["backend"]["timeout"])),
        cache_dir=str(cache.get("data_dir") or DEFAULTS["cache"]["data_dir"]),
        cache_key_prefix=str(cache.get("key_prefix") or DEFAULTS["cache"]["key_prefix"]),
        title_max_chars=int(chat.get("title_max_chars", DEFAULTS["chat"]["title_max_chars"])),
        default_personality=default_personality,
        pending_window_ms=int(float(chat.get("pending_window_seconds", 30)) * 1000),
        personalities=personalities,
    )


__all__ = ["DEFAULTS", "Settings", "load_config", "load_settings"]
