"""Tests for agent resolution and the sliding memory window."""

from __future__ import annotations

import pytest

from colloquy.chat.memory import (
    DISABLED_OMIT_TEXT,
    UNLIMITED_EXCHANGES,
    AgentInfo,
    MemoryPolicy,
    build_messages,
    build_window,
    resolve_agent_info,
)
from colloquy.chat.transcript import parse_transcript
from colloquy.services.settings import AgentSettings, MemorySettings


def _chat(count: int, *, file_reference_at: int | None = None, answered: bool = True) -> str:
    lines = ["# topic: t", "- file: a.md", "---", ""]
    for index in range(count):
        lines.append(f"💬: question {index}")
        if index == file_reference_at:
            lines.append("@@ ref.txt")
        lines.append("")
        if answered and index < count - 1:
            lines.extend(["🤖:[Agent]", f"answer {index}", f"📝: summary {index}", ""])
    return "\n".join(lines) + "\n"


def _agent(provider: str = "openai", system_prompt: str = "be helpful") -> AgentInfo:
    return AgentInfo(
        name="Agent",
        provider=provider,
        model={"model": "gpt-4o"},
        system_prompt=system_prompt,
        display_name="Agent",
    )


def _loader(references) -> str:
    return "FILES:" + ",".join(reference.path for reference in references)


def test_window_keeps_last_exchanges_verbatim() -> None:
    parsed = parse_transcript(_chat(5))
    policy = MemoryPolicy(max_full_exchanges=2)

    window = build_window(parsed, 4, _agent(), policy, file_loader=_loader)

    assert window.preserved == [3, 4]
    assert window.messages == [
        {"role": "system", "content": "be helpful"},
        {"role": "user", "content": "Summarize our chat"},
        {"role": "assistant", "content": "summary 0"},
        {"role": "user", "content": "Summarize our chat"},
        {"role": "assistant", "content": "summary 1"},
        {"role": "user", "content": "Summarize our chat"},
        {"role": "assistant", "content": "summary 2"},
        {"role": "user", "content": "question 3"},
        {"role": "assistant", "content": "answer 3"},
        {"role": "user", "content": "question 4"},
    ]


def test_file_reference_pins_old_exchange() -> None:
    parsed = parse_transcript(_chat(13, file_reference_at=0))
    policy = MemoryPolicy(max_full_exchanges=2)

    window = build_window(parsed, 12, _agent(), policy, file_loader=_loader)

    assert window.preserved == [0, 11, 12]
    assert window.messages[1] == {
        "role": "system",
        "content": "FILES:ref.txt",
        "cache_control": {"type": "ephemeral"},
    }
    assert window.messages[2] == {"role": "user", "content": "question 0\n@@ ref.txt"}
    assert window.messages[3] == {"role": "assistant", "content": "summary 0"}


def test_answers_are_only_included_before_target() -> None:
    parsed = parse_transcript(_chat(3))
    policy = MemoryPolicy(max_full_exchanges=5)

    messages = build_messages(parsed, 1, _agent(), policy)

    assert [message["role"] for message in messages] == ["system", "user", "assistant", "user"]
    assert messages[-1]["content"] == "question 1"


def test_empty_system_prompt_is_omitted() -> None:
    parsed = parse_transcript(_chat(1))

    messages = build_messages(parsed, 0, _agent(system_prompt="   "), MemoryPolicy())

    assert messages == [{"role": "user", "content": "question 0"}]


def test_anthropic_system_prompt_is_cached() -> None:
    parsed = parse_transcript(_chat(1))

    messages = build_messages(parsed, 0, _agent(provider="anthropic"), MemoryPolicy())

    assert messages[0]["cache_control"] == {"type": "ephemeral"}


def test_start_line_skips_earlier_exchanges() -> None:
    parsed = parse_transcript(_chat(3))
    start = parsed.exchanges[1].question.line_start

    messages = build_messages(parsed, 2, _agent(system_prompt=""), MemoryPolicy(), start_line=start)

    assert messages[0] == {"role": "user", "content": "question 1"}


def test_policy_from_settings_and_headers() -> None:
    memory = MemorySettings(max_full_exchanges=5)

    assert MemoryPolicy.from_settings(memory).max_full_exchanges == 5
    assert MemoryPolicy.from_settings(memory, {"config_max_full_exchanges": 2}).max_full_exchanges == 2
    assert MemoryPolicy.from_settings(memory, {"config_max_full_exchanges": "x"}).max_full_exchanges == 5

    disabled = MemoryPolicy.from_settings(MemorySettings(enable=False))
    assert disabled.max_full_exchanges == UNLIMITED_EXCHANGES
    assert disabled.omit_user_text == DISABLED_OMIT_TEXT


def test_header_overrides_agent() -> None:
    agent = AgentSettings(name="Claude-Sonnet", provider="anthropic", model={"model": "claude-sonnet-4-6"})

    info = resolve_agent_info(
        {"model": '{"model": "gpt-4o", "temperature": 0.3}', "role": "pirate\\nalways"},
        agent,
    )

    assert info.provider == "anthropic"
    assert info.model == {"model": "gpt-4o", "temperature": 0.3}
    assert info.system_prompt == "pirate\nalways"
    assert info.display_name == "gpt-4o & custom role"


@pytest.mark.parametrize(
    ("headers", "provider", "model", "display"),
    [
        ({}, "anthropic", {"model": "claude-sonnet-4-6"}, "Claude-Sonnet"),
        ({"model": "gpt-4o-mini", "provider": "openai"}, "openai", {"model": "gpt-4o-mini"}, "gpt-4o-mini"),
        ({"model": "{broken"}, "anthropic", {"model": "{broken"}, "{broken"),
    ],
)
def test_resolve_agent_info_variants(headers, provider, model, display) -> None:
    agent = AgentSettings(name="Claude-Sonnet", provider="anthropic", model={"model": "claude-sonnet-4-6"})

    info = resolve_agent_info(headers, agent)

    assert info.provider == provider
    assert info.model == model
    assert info.display_name == display
    assert info.model_name == model["model"]
