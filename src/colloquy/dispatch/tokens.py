"""Prompt token estimation used for the pre-dispatch usage preview."""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, Iterable, Mapping, Protocol

import tiktoken

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4
_FALLBACK_ENCODING = "cl100k_base"


class TokenCounter(Protocol):
    model_name: str | None

    def count(self, text: str) -> int:
        ...

    def estimate(self, text: str) -> int:
        ...


class ApproxByteCounter:
    """Deterministic counter that estimates tokens via UTF-8 byte length."""

    def __init__(self, *, model_name: str | None = None, bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self.model_name = model_name
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode("utf-8", errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


class TiktokenCounter:
    """Counter backed by tiktoken; models tiktoken does not know use ``cl100k_base``."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        self._encoding = self._load_encoding(model_name, encoding_name)
        self._fallback = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        try:
            return len(self._encoding.encode(text, disallowed_special=()))
        except ValueError:
            LOGGER.debug("tiktoken encode failed; falling back to approximation", exc_info=True)
            return self._fallback.estimate(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    @staticmethod
    def _load_encoding(model_name: str, encoding_name: str | None) -> Any:
        if encoding_name:
            return tiktoken.get_encoding(encoding_name)
        try:
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            LOGGER.debug("Falling back to %s encoding for model %s", _FALLBACK_ENCODING, model_name)
            return tiktoken.get_encoding(_FALLBACK_ENCODING)


class TokenCounterRegistry:
    """Registry maintaining tokenizer implementations per model."""

    def __init__(self, *, fallback: TokenCounter | None = None, precise: bool = False) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._counters: Dict[str, TokenCounter] = {}
        self._precise = precise

    def register(self, model_name: str, counter: TokenCounter) -> None:
        key = self._normalize_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def has(self, model_name: str | None) -> bool:
        key = self._normalize_key(model_name)
        return bool(key and key in self._counters)

    def get(self, model_name: str | None = None) -> TokenCounter:
        key = self._normalize_key(model_name)
        if key and key in self._counters:
            return self._counters[key]
        if key and self._precise:
            counter = self._build_counter(model_name or key)
            self._counters[key] = counter
            return counter
        return self._fallback

    def count(self, model_name: str | None, text: str) -> int:
        counter = self.get(model_name)
        try:
            return counter.count(text)
        except Exception:
            LOGGER.debug("Token counter failed; falling back to estimate", exc_info=True)
            return counter.estimate(text)

    def count_messages(self, model_name: str | None, messages: Iterable[Mapping[str, Any]]) -> int:
        """Sum token counts over every textual ``content`` field of ``messages``."""

        total = 0
        for message in messages:
            content = message.get("content")
            if isinstance(content, str):
                total += self.count(model_name, content)
            elif isinstance(content, list):
                for block in content:
                    if isinstance(block, Mapping) and isinstance(block.get("text"), str):
                        total += self.count(model_name, block["text"])
        return total

    def _build_counter(self, model_name: str) -> TokenCounter:
        try:
            return TiktokenCounter(model_name)
        except Exception as exc:
            # Encodings are fetched lazily and may be unavailable offline.
            LOGGER.debug("Failed to initialize tiktoken counter for %s: %s", model_name, exc)
            return ApproxByteCounter(model_name=model_name)

    @staticmethod
    def _normalize_key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()


__all__ = ["TokenCounter", "ApproxByteCounter", "TiktokenCounter", "TokenCounterRegistry"]
