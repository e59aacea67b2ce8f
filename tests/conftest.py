"""Shared pytest fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from colloquy.services.settings import Settings


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("COLLOQUY_LOG_DIR", str(tmp_path / "logs"))
    for name in (
        "COLLOQUY_HTTP_CLIENT",
        "COLLOQUY_QUERY_DIR",
        "COLLOQUY_CHAT_DIR",
        "COLLOQUY_DEFAULT_AGENT",
        "COLLOQUY_DEBUG",
        "COLLOQUY_DEBUG_LOGGING",
        "COLLOQUY_MAX_FULL_EXCHANGES",
        "COLLOQUY_SETTINGS_PATH",
        "OPENAI_API_KEY",
        "ANTHROPIC_API_KEY",
        "GOOGLEAI_API_KEY",
        "GITHUB_TOKEN",
        "AZURE_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        query_dir=str(tmp_path / "queries"),
        chat_dir=str(tmp_path / "chats"),
        api_keys={"anthropic": "sk-ant-test", "openai": "sk-openai-test"},
        default_agent="Claude-Sonnet",
    )
