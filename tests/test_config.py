from __future__ import annotations

from pathlib import Path

import pytest

from chat_sync.config import load_config, load_settings


def test_missing_file_falls_back_to_defaults(tmp_path: Path, clean_env):
    cfg = load_config(str(tmp_path / "nope.yaml"))
    assert cfg["backend"]["timeout"] == 30.0
    assert cfg["cache"]["key_prefix"] == "currentConversation_"


def test_yaml_layers_over_defaults(tmp_path: Path, clean_env):
    path = tmp_path / "cfg.yaml"
    path.write_text(
        "backend:\n"
        "  base_url: https://api.example.com/\n"
        "chat:\n"
        "  default_personality: desi_bhai\n"
        "personalities:\n"
        "  desi_bhai:\n"
        "    name: Desi Bhai\n"
        "    emoji: '🪔'\n",
        encoding="utf-8",
    )
    settings = load_settings(load_config(str(path)))
    assert settings.backend_url == "https://api.example.com"
    assert settings.backend_timeout == 30.0
    assert settings.default_personality == "desi_bhai"
    assert settings.personalities["desi_bhai"].name == "Desi Bhai"
    assert "swag_bhai" in settings.personalities


def test_env_overrides(tmp_path: Path, clean_env, monkeypatch: pytest.MonkeyPatch):
    path = tmp_path / "cfg.yaml"
    path.write_text("backend:\n  timeout: 10\n", encoding="utf-8")
    monkeypatch.setenv("CHAT_SYNC_CONFIG", str(path))
    monkeypatch.setenv("CHAT_SYNC__BACKEND__TIMEOUT", "2.5")
    monkeypatch.setenv("CHAT_SYNC__CHAT__PENDING_WINDOW_SECONDS", "5")

    settings = load_settings()
    assert settings.backend_timeout == 2.5
    assert settings.pending_window_ms == 5000


def test_unknown_default_personality_falls_back(clean_env):
    settings = load_settings({"chat": {"default_personality": "ghost"}})
    assert settings.default_personality == "swag_bhai"


def test_bad_yaml_raises(tmp_path: Path, clean_env):
    path = tmp_path / "bad.yaml"
    path.write_text("backend: [unclosed\n", encoding="utf-8")
    with pytest.raises(RuntimeError):
        load_config(str(path))

    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(RuntimeError):
        load_config(str(path))
