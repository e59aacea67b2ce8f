"""Provider-agnostic messages → provider wire payloads, one encoder per dialect."""

from __future__ import annotations

import copy
import logging
import re
from typing import Any, Dict, List, Mapping, Protocol

from .params import model_name_of, resolve_params
from .providers import Dialect, dialect_for

LOGGER = logging.getLogger(__name__)

Message = Dict[str, Any]

REASONING_MODEL_PATTERN = re.compile(r"^(o\d|gpt-4o-search-preview$|gpt-5)")
_SYSTEMLESS_PROVIDERS = frozenset({"openai", "copilot", "azure"})
_COPILOT_MODEL_ALIASES = {"gpt-4o": "gpt-4o-2024-05-13"}

GOOGLEAI_SAFETY_SETTINGS: tuple[Mapping[str, str], ...] = (
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_NONE"},
)

ANTHROPIC_WEB_TOOLS: tuple[Mapping[str, Any], ...] = (
    {"type": "web_search_20250305", "name": "web_search", "max_uses": 5},
    {"type": "web_fetch_20250910", "name": "web_fetch", "max_uses": 5},
)


class PayloadEncoder(Protocol):
    dialect: Dialect

    def encode(
        self,
        messages: List[Message],
        model: Mapping[str, Any],
        *,
        provider: str,
        web_search: bool = False,
    ) -> Dict[str, Any]:
        ...


def is_reasoning_model(model_name: str) -> bool:
    return REASONING_MODEL_PATTERN.match(model_name) is not None


class OpenAICompatibleEncoder:
    dialect = Dialect.OPENAI

    def encode(self, messages, model, *, provider, web_search=False):
        name = model_name_of(model)
        if provider == "copilot":
            name = _COPILOT_MODEL_ALIASES.get(name, name)
        if provider in _SYSTEMLESS_PROVIDERS and is_reasoning_model(name):
            messages = [message for message in messages if message.get("role") != "system"]
        payload: Dict[str, Any] = {
            "model": name,
            "stream": True,
            "messages": [_plain_message(message) for message in messages],
            "stream_options": {"include_usage": True},
        }
        payload.update(resolve_params(provider, model))
        return payload


class AnthropicEncoder:
    """Moves system turns into the top-level ``system`` block array."""

    dialect = Dialect.ANTHROPIC

    def encode(self, messages, model, *, provider, web_search=False):
        system: list[Dict[str, Any]] = []
        turns: list[Message] = []
        for message in messages:
            if message.get("role") == "system":
                block: Dict[str, Any] = {"type": "text", "text": message.get("content", "")}
                if message.get("cache_control"):
                    block["cache_control"] = copy.deepcopy(message["cache_control"])
                system.append(block)
            else:
                turns.append(_plain_message(message))

        payload: Dict[str, Any] = {
            "model": model_name_of(model),
            "stream": True,
            "messages": turns,
        }
        if system:
            payload["system"] = system
        if web_search:
            payload["tools"] = [dict(tool) for tool in ANTHROPIC_WEB_TOOLS]
        payload.update(resolve_params(provider, model))
        return payload


class GoogleAIEncoder:
    dialect = Dialect.GOOGLEAI

    _ROLES = {"system": "user", "assistant": "model", "user": "user", "model": "model"}

    def encode(self, messages, model, *, provider, web_search=False):
        contents: list[Dict[str, Any]] = []
        for message in messages:
            role = self._ROLES.get(message.get("role", "user"), "user")
            text = message.get("content", "")
            if contents and contents[-1]["role"] == role:
                contents[-1]["parts"].append({"text": text})
            else:
                contents.append({"role": role, "parts": [{"text": text}]})
        return {
            "contents": contents,
            "safetySettings": [dict(item) for item in GOOGLEAI_SAFETY_SETTINGS],
            "generationConfig": resolve_params(provider, model),
            "model": model_name_of(model),
        }


class GenericEncoder:
    dialect = Dialect.GENERIC

    def encode(self, messages, model, *, provider, web_search=False):
        return {
            "model": model_name_of(model),
            "stream": True,
            "messages": [_plain_message(message) for message in messages],
        }


ENCODERS: Mapping[Dialect, PayloadEncoder] = {
    Dialect.OPENAI: OpenAICompatibleEncoder(),
    Dialect.ANTHROPIC: AnthropicEncoder(),
    Dialect.GOOGLEAI: GoogleAIEncoder(),
    Dialect.GENERIC: GenericEncoder(),
}


def prepare_payload(
    messages: List[Message],
    model: str | Mapping[str, Any],
    provider: str,
    *,
    dialect: Dialect | str | None = None,
    web_search: bool = False,
) -> Dict[str, Any]:
    """Build the request body for ``provider``.

    A bare string ``model`` skips parameter resolution entirely and yields the
    generic ``{model, stream, messages}`` body regardless of dialect.
    """

    messages = copy.deepcopy(list(messages))
    if isinstance(model, str):
        return ENCODERS[Dialect.GENERIC].encode(messages, {"model": model}, provider=provider)
    selected = dialect_for(provider, dialect)
    LOGGER.debug("Encoding %s message(s) for %s (%s)", len(messages), provider, selected.value)
    return ENCODERS[selected].encode(messages, model, provider=provider, web_search=web_search)


def _plain_message(message: Mapping[str, Any]) -> Message:
    return {"role": message.get("role", "user"), "content": message.get("content", "")}


__all__ = [
    "Message",
    "PayloadEncoder",
    "OpenAICompatibleEncoder",
    "AnthropicEncoder",
    "GoogleAIEncoder",
    "GenericEncoder",
    "ENCODERS",
    "GOOGLEAI_SAFETY_SETTINGS",
    "ANTHROPIC_WEB_TOOLS",
    "is_reasoning_model",
    "prepare_payload",
]
