"""Tests covering the command line entry point."""

from __future__ import annotations

import io
import json
from datetime import datetime
from pathlib import Path

import pytest

from helpers import anthropic_stream, make_fake_client

from colloquy import app
from colloquy.services.settings import MemorySettings, Settings, SettingsStore


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(app.logging_utils, "setup_logging", lambda *args, **kwargs: tmp_path / "colloquy.log")


def test_coerce_cli_overrides_uses_field_types() -> None:
    overrides = app._coerce_cli_overrides(
        [
            "web_search=yes",
            "query_history_limit=4",
            "query_history_age=12.5",
            "default_agent=none",
            'curl_params=["--max-time", "60"]',
            'memory={"max_full_exchanges": 2}',
        ]
    )

    assert overrides == {
        "web_search": True,
        "query_history_limit": 4,
        "query_history_age": 12.5,
        "default_agent": None,
        "curl_params": ["--max-time", "60"],
        "memory": MemorySettings(max_full_exchanges=2),
    }


@pytest.mark.parametrize("entry", ["nonsense", "=1", "unknown_field=1", "web_search=maybe", "curl_params={}"])
def test_coerce_cli_overrides_rejects_bad_entries(entry: str) -> None:
    with pytest.raises(ValueError):
        app._coerce_cli_overrides([entry])


def test_invalid_override_exits_with_usage_code(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = app.main(["--settings-path", str(tmp_path / "settings.json"), "--set", "bogus=1", "validate"])

    assert code == 2
    assert "Invalid --set override" in capsys.readouterr().err


def test_dump_settings_redacts_api_keys(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-secret-value")

    code = app.main(["--settings-path", str(tmp_path / "settings.json"), "--set", "web_search=true", "--dump-settings"])

    output = capsys.readouterr().out
    payload = json.loads(output)
    assert code == 0
    assert "sk-ant-secret-value" not in output
    assert payload["settings"]["api_keys"]["anthropic"].startswith("sk-")
    assert payload["settings"]["web_search"] is True
    assert payload["meta"]["cli_overrides"] == ["web_search"]
    assert payload["meta"]["path"] == str(tmp_path / "settings.json")


def test_dump_settings_to_stream(tmp_path: Path) -> None:
    stream = io.StringIO()
    store = SettingsStore(tmp_path / "settings.json")

    app._dump_settings(Settings(api_keys={"openai": "sk-1234567890"}), store, overrides={}, stream=stream)

    payload = json.loads(stream.getvalue())
    assert payload["settings"]["api_keys"]["openai"] == "sk-*******890"
    assert payload["meta"]["secret_backend"] == "fernet"


def test_create_chat_renders_template(tmp_path: Path) -> None:
    path = app.create_chat(
        Settings(),
        topic="Rust",
        directory=tmp_path,
        now=datetime(2025, 1, 2, 3, 4, 5, 678000),
    )

    assert path == tmp_path / "2025-01-02.03-04-05.678.md"
    assert path.read_text(encoding="utf-8") == "# topic: Rust\n- file: 2025-01-02.03-04-05.678.md\n---\n\n💬: \n"


def test_new_command_uses_chat_dir(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("COLLOQUY_CHAT_DIR", str(tmp_path / "chats"))

    code = app.main(["--settings-path", str(tmp_path / "settings.json"), "new"])

    created = Path(capsys.readouterr().out.strip())
    assert code == 0
    assert created.parent == tmp_path / "chats"
    assert created.read_text(encoding="utf-8").startswith("# topic: ?\n")


def test_validate_reports_schema_errors(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    settings_path = tmp_path / "settings.json"
    settings_path.write_text(
        json.dumps(
            {
                "agents": [
                    {"name": "Good", "provider": "openai", "model": {"model": "gpt-4o"}},
                    {
                        "name": "Bad",
                        "provider": "anthropic",
                        "model": {"model": "claude-sonnet-4-6", "temperature": 1, "top_p": 1},
                    },
                ]
            }
        ),
        encoding="utf-8",
    )

    code = app.main(["--settings-path", str(settings_path), "validate"])

    output = capsys.readouterr().out
    assert code == 1
    assert "Good (openai): ok" in output
    assert "Bad (anthropic): invalid" in output
    assert "at most one of {temperature, top_p}" in output


def test_validate_default_agents_pass(tmp_path: Path) -> None:
    assert app.main(["--settings-path", str(tmp_path / "settings.json"), "validate"]) == 0
    assert app.main(["--settings-path", str(tmp_path / "settings.json"), "validate", "--agent", "Nobody"]) == 1


def test_respond_writes_answer_into_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client = make_fake_client(tmp_path / "client", [("How are you", anthropic_stream("Fine, thanks."))])
    monkeypatch.setenv("COLLOQUY_HTTP_CLIENT", str(client.path))
    monkeypatch.setenv("COLLOQUY_QUERY_DIR", str(tmp_path / "queries"))
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
    chat = tmp_path / "chat.md"
    chat.write_text("# topic: Greetings\n- file: chat.md\n---\n\n💬: How are you?\n", encoding="utf-8")

    code = app.main(
        ["--settings-path", str(tmp_path / "settings.json"), "respond", str(chat), "--agent", "Claude-Sonnet"]
    )

    assert code == 0
    assert chat.read_text(encoding="utf-8") == (
        "# topic: Greetings\n- file: chat.md\n---\n\n💬: How are you?\n\n🤖:[Claude-Sonnet]\n\nFine, thanks.\n\n\n💬:\n"
    )
    assert len(client.calls()) == 1


def test_respond_rejects_missing_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = app.main(["--settings-path", str(tmp_path / "settings.json"), "respond", str(tmp_path / "absent.md")])

    assert code == 1
    assert "Chat file not found" in capsys.readouterr().err


def test_respond_rejects_non_chat_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    notes = tmp_path / "notes.md"
    notes.write_text("plain notes\n", encoding="utf-8")

    code = app.main(["--settings-path", str(tmp_path / "settings.json"), "respond", str(notes)])

    assert code == 1
    assert "Unable to answer" in capsys.readouterr().err
    assert notes.read_text(encoding="utf-8") == "plain notes\n"
