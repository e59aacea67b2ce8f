"""Agent resolution and the sliding-window message builder."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping

from ..services.settings import AgentSettings, MemorySettings
from .files import inline_references
from .transcript import FileReference, ParsedChat

LOGGER = logging.getLogger(__name__)

UNLIMITED_EXCHANGES = 999999
DISABLED_OMIT_TEXT = "[Previous messages omitted]"
EPHEMERAL_CACHE = {"type": "ephemeral"}
_ANTHROPIC_PROVIDERS = frozenset({"anthropic", "claude"})

FileLoader = Callable[[Iterable[FileReference]], str]


@dataclass(slots=True)
class AgentInfo:
    """Effective agent for one transcript after header overrides."""

    name: str
    provider: str
    model: Dict[str, Any]
    system_prompt: str
    display_name: str

    @property
    def model_name(self) -> str:
        return str(self.model.get("model", ""))


def resolve_agent_info(headers: Mapping[str, Any], agent: AgentSettings) -> AgentInfo:
    """Apply transcript header ``provider``/``model``/``role`` overrides to ``agent``."""

    model: Any = agent.model
    provider = agent.provider
    system_prompt = agent.system_prompt
    display_name = agent.name

    if headers.get("provider"):
        provider = headers["provider"]

    header_model = headers.get("model")
    if header_model:
        model = header_model
        if isinstance(header_model, str) and header_model.strip().startswith("{"):
            try:
                model = json.loads(header_model)
            except ValueError:
                LOGGER.warning("Failed to parse model JSON: %s", header_model)

    role = headers.get("role")
    has_role = isinstance(role, str) and bool(role.strip())
    if has_role:
        system_prompt = role.replace("\\n", "\n")

    if header_model:
        display_name = str(model.get("model")) if isinstance(model, Mapping) and model.get("model") else str(model)
        if has_role:
            display_name += " & custom role"
        provider = provider or "openai"

    if not isinstance(model, Mapping):
        model = {"model": str(model)}
    return AgentInfo(
        name=agent.name,
        provider=provider,
        model=dict(model),
        system_prompt=system_prompt,
        display_name=display_name,
    )


@dataclass(slots=True)
class MemoryPolicy:
    enabled: bool = True
    max_full_exchanges: int = 5
    omit_user_text: str = "Summarize our chat"

    @classmethod
    def from_settings(cls, memory: MemorySettings, headers: Mapping[str, Any] | None = None) -> "MemoryPolicy":
        """Build the policy, letting a ``max_full_exchanges`` header override the settings."""

        if not memory.enable:
            return cls(enabled=False, max_full_exchanges=UNLIMITED_EXCHANGES, omit_user_text=DISABLED_OMIT_TEXT)
        limit: Any = (headers or {}).get("config_max_full_exchanges")
        if not isinstance(limit, (int, float)) or isinstance(limit, bool):
            limit = memory.max_full_exchanges
        return cls(enabled=True, max_full_exchanges=int(limit), omit_user_text=memory.omit_user_text)


@dataclass(slots=True)
class MessageWindow:
    """Messages built for a target exchange plus which exchanges were kept verbatim."""

    messages: List[Dict[str, Any]] = field(default_factory=list)
    preserved: List[int] = field(default_factory=list)


def build_window(
    parsed: ParsedChat,
    target: int,
    agent: AgentInfo,
    policy: MemoryPolicy,
    *,
    start_line: int = 0,
    end_line: int | None = None,
    base_dir: Path | None = None,
    file_loader: FileLoader | None = None,
) -> MessageWindow:
    """Build the outbound messages for exchanges ``0..target`` (0-based).

    An exchange is kept verbatim when it is the target, one of the last
    ``max_full_exchanges`` exchanges of the transcript, or when its question
    references files. Other questions become the omit placeholder and their
    answers collapse to the recorded summary (or the full answer without one).
    Answers are only included for exchanges before the target.
    """

    loader = file_loader or (lambda references: inline_references(references, base_dir=base_dir))
    total = len(parsed.exchanges)
    window = MessageWindow()
    end = end_line if end_line is not None else float("inf")
    messages = window.messages

    for index, exchange in enumerate(parsed.exchanges):
        if index > target:
            break
        question = exchange.question
        if question.line_start < start_line:
            continue

        preserve = (
            index == target
            or index >= total - policy.max_full_exchanges
            or exchange.has_file_references
        )
        if preserve:
            window.preserved.append(index)
            if exchange.has_file_references:
                messages.append(
                    {
                        "role": "system",
                        "content": loader(question.file_references) + "\n",
                        "cache_control": dict(EPHEMERAL_CACHE),
                    }
                )
            messages.append({"role": "user", "content": question.content})
        else:
            messages.append({"role": "user", "content": policy.omit_user_text})

        answer = exchange.answer
        if answer is None or answer.line_start > end or index >= target:
            continue
        if preserve and not exchange.has_file_references:
            messages.append({"role": "assistant", "content": answer.content})
        elif exchange.summary is not None:
            messages.append({"role": "assistant", "content": exchange.summary.content})
        else:
            messages.append({"role": "assistant", "content": answer.content})

    if agent.system_prompt and agent.system_prompt.strip():
        system: Dict[str, Any] = {"role": "system", "content": agent.system_prompt}
        if agent.provider in _ANTHROPIC_PROVIDERS:
            system["cache_control"] = dict(EPHEMERAL_CACHE)
        messages.insert(0, system)

    for message in messages:
        message["content"] = message["content"].strip()
    return window


def build_messages(
    parsed: ParsedChat,
    target: int,
    agent: AgentInfo,
    policy: MemoryPolicy,
    **kwargs: Any,
) -> List[Dict[str, Any]]:
    return build_window(parsed, target, agent, policy, **kwargs).messages


__all__ = [
    "AgentInfo",
    "MemoryPolicy",
    "MessageWindow",
    "resolve_agent_info",
    "build_window",
    "build_messages",
    "UNLIMITED_EXCHANGES",
]
