"""Tests for the dispatch service against a scripted HTTP client."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import pytest

from helpers import anthropic_stream, make_fake_client, openai_stream

from colloquy.dispatch.service import DispatchService
from colloquy.errors import ConfigurationError, ErrorCode
from colloquy.services import telemetry
from colloquy.services.settings import ProviderSettings, Settings

MESSAGES = [{"role": "system", "content": "be brief"}, {"role": "user", "content": "ping"}]


@pytest.mark.asyncio
async def test_dispatch_streams_tokens_and_reports_usage(settings: Settings, tmp_path: Path) -> None:
    client = make_fake_client(tmp_path / "client", [("ping", anthropic_stream("pong pong", input_tokens=30, cache_read=10))])
    service = DispatchService(settings, command=str(client.path))
    tokens: list[str] = []
    exits: list[str] = []
    results: list[str] = []
    usage_events: list[dict] = []
    telemetry.register_event_listener(telemetry.USAGE_UPDATED, usage_events.append)
    try:
        payload = service.prepare_payload(MESSAGES, {"model": "claude-3-5-haiku-latest"}, "anthropic")
        result = await service.dispatch(
            "chat",
            "anthropic",
            payload,
            on_token=lambda qid, text: tokens.append(text),
            on_exit=exits.append,
            on_result=results.append,
        )
        await service.wait_idle()
    finally:
        telemetry.unregister_event_listener(telemetry.USAGE_UPDATED, usage_events.append)

    assert result.started and result.qid
    assert "".join(tokens) == "pong pong"
    assert exits == [result.qid]
    assert results == ["pong pong"]
    assert service.last_usage.as_dict() == {"input": 30, "cache_read": 10, "cache_creation": 0}
    assert usage_events[0]["qid"] == result.qid

    query = service.get_query(result.qid)
    assert query is not None and query.finished
    assert query.prompt_tokens_estimate and query.prompt_tokens_estimate > 0
    assert usage_events[0]["prompt_tokens_estimate"] == query.prompt_tokens_estimate

    call = client.calls()[0]
    assert "x-api-key: sk-ant-test" in call["argv"]
    assert call["payload"]["system"] == [{"type": "text", "text": "be brief"}]
    cached = list(service.query_dir.glob("*.json"))
    assert len(cached) == 1
    assert json.loads(cached[0].read_text(encoding="utf-8")) == call["payload"]


@pytest.mark.asyncio
async def test_busy_owner_gets_busy_status(settings: Settings, tmp_path: Path) -> None:
    client = make_fake_client(tmp_path / "client", [("ping", openai_stream("slow"), 5.0)])
    service = DispatchService(settings, command=str(client.path))
    payload = service.prepare_payload(MESSAGES, {"model": "gpt-4o"}, "openai")

    first = await service.dispatch("chat", "openai", payload)
    second = await service.dispatch("chat", "openai", payload)
    other = await service.dispatch("other-chat", "openai", payload)
    forced = await service.dispatch("chat", "openai", payload, force=True)

    assert first.started
    assert second.status == "busy"
    assert other.started
    assert forced.started
    assert service.is_busy("chat")

    assert service.stop() == 3
    assert not service.is_busy("chat")
    await service.wait_idle()


@pytest.mark.asyncio
async def test_missing_secret_fails_without_spawning(settings: Settings, tmp_path: Path) -> None:
    client = make_fake_client(tmp_path / "client", [("ping", openai_stream("x"))])
    settings.api_keys = {}
    service = DispatchService(settings, command=str(client.path))

    result = await service.dispatch("chat", "anthropic", {"model": "claude", "messages": []})

    assert result.status == "failed"
    assert client.calls() == []
    assert len(service.queries) == 0


@pytest.mark.asyncio
async def test_spawn_failure_fails_and_drops_query(settings: Settings) -> None:
    service = DispatchService(settings, command="/nonexistent/colloquy-client")

    result = await service.dispatch("chat", "openai", {"model": "gpt-4o", "messages": []})

    assert result.status == "failed"
    assert result.qid is None
    assert len(service.queries) == 0
    assert not service.is_busy("chat")
    assert list(service.query_dir.glob("*.json")) == []


@pytest.mark.asyncio
async def test_concurrent_dispatches_for_one_owner_start_once(settings: Settings, tmp_path: Path) -> None:
    client = make_fake_client(tmp_path / "client", [("ping", openai_stream("slow"), 5.0)])
    service = DispatchService(settings, command=str(client.path))
    payload = service.prepare_payload(MESSAGES, {"model": "gpt-4o"}, "openai")

    results = await asyncio.gather(
        service.dispatch("chat", "openai", payload),
        service.dispatch("chat", "openai", payload),
    )

    assert sorted(result.status for result in results) == ["busy", "started"]
    assert len(service.supervisor.handles) == 1
    assert service.is_busy("chat", warn=False)
    service.stop()
    await service.wait_idle()
    assert not service.is_busy("chat", warn=False)


@pytest.mark.asyncio
async def test_provider_secret_is_moved_into_the_vault(settings: Settings, tmp_path: Path) -> None:
    client = make_fake_client(tmp_path / "client", [("ping", anthropic_stream("pong"))])
    settings.providers = {
        "anthropic": ProviderSettings(endpoint="https://api.anthropic.com/v1/messages", secret="sk-ant-provider")
    }
    service = DispatchService(settings, command=str(client.path))
    payload = service.prepare_payload(MESSAGES, {"model": "claude-3-5-haiku-latest"}, "anthropic")

    result = await service.dispatch("chat", "anthropic", payload)
    await service.wait_idle()

    assert result.started
    assert "x-api-key: sk-ant-provider" in client.calls()[0]["argv"]
    assert service.registry.get("anthropic").secret is None
    assert service.secrets.get_secret("anthropic") == "sk-ant-provider"


@pytest.mark.asyncio
async def test_provider_secret_command_is_resolved(settings: Settings, tmp_path: Path) -> None:
    client = make_fake_client(tmp_path / "client", [("ping", anthropic_stream("pong"))])
    settings.api_keys = {}
    settings.providers = {
        "anthropic": ProviderSettings(
            endpoint="https://api.anthropic.com/v1/messages",
            secret=[sys.executable, "-c", "print('sk-ant-command')"],
        )
    }
    service = DispatchService(settings, command=str(client.path))
    payload = service.prepare_payload(MESSAGES, {"model": "claude-3-5-haiku-latest"}, "anthropic")

    result = await service.dispatch("chat", "anthropic", payload)
    await service.wait_idle()

    assert result.started
    assert "x-api-key: sk-ant-command" in client.calls()[0]["argv"]


@pytest.mark.asyncio
async def test_configuration_errors_raise_before_dispatch(settings: Settings) -> None:
    service = DispatchService(settings, command="/nonexistent/colloquy-client")

    with pytest.raises(ConfigurationError) as unknown:
        await service.dispatch("chat", "nope", {})
    with pytest.raises(ConfigurationError):
        await service.dispatch("chat", "ollama", {})

    assert unknown.value.code == ErrorCode.UNKNOWN_PROVIDER


def test_validate_raises_on_schema_errors(settings: Settings) -> None:
    service = DispatchService(settings)

    with pytest.raises(ConfigurationError) as excinfo:
        service.validate({"provider": "anthropic", "model": {"model": "claude-sonnet-4-6", "temperature": 1, "top_p": 1}})

    assert excinfo.value.code == ErrorCode.INVALID_PARAMETERS
    assert service.validate({"provider": "openai", "model": {"model": "gpt-4o"}}).ok


def test_setup_prunes_payload_cache(settings: Settings) -> None:
    settings.query_cache_limit = 3
    settings.query_cache_keep = 2
    query_dir = Path(settings.query_dir)
    query_dir.mkdir(parents=True)
    for index in range(5):
        (query_dir / f"2025-01-0{index + 1}.00-00-00.abcd.json").write_text("{}", encoding="utf-8")
    service = DispatchService(settings, command="/nonexistent/colloquy-client")

    service.setup()

    assert sorted(path.name for path in query_dir.glob("*.json")) == [
        "2025-01-04.00-00-00.abcd.json",
        "2025-01-05.00-00-00.abcd.json",
    ]
    assert service.secrets.get_secret("openai_api_key") == "sk-openai-test"


def test_http_client_can_come_from_environment(settings: Settings, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("COLLOQUY_HTTP_CLIENT", "/opt/bin/curl")

    assert DispatchService(settings).command == "/opt/bin/curl"
