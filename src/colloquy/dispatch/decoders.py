"""Incremental decoding of streamed provider output.

Chunks from the HTTP client are reassembled into complete lines (everything up
to the *last* newline is processed, the trailing partial line waits for the
next chunk), each line is decoded independently by a dialect decoder, and
usage telemetry is extracted from the raw output once the stream ends.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Iterable, Mapping, Protocol

from .providers import Dialect
from .queries import Query, UsageTelemetry

LOGGER = logging.getLogger(__name__)

_SSE_PREFIX = re.compile(r"^data:\s?")
_EMPTY_CHOICES = re.compile(r'"choices"\s*:\s*\[\s*\]')
_OPENAI_PROMPT_TOKENS = re.compile(r'"prompt_tokens"\s*:\s*(\d+)')
_OPENAI_CACHED_TOKENS = re.compile(r'"cached_tokens"\s*:\s*(\d+)')
_ANTHROPIC_FLAT_USAGE = re.compile(r'"usage"\s*:\s*(\{[^{}]*\})')
_GOOGLE_USAGE = (
    re.compile(r'"usageMetadata"\s*:\s*\{([^{}]*)'),
    re.compile(r'\\"usageMetadata\\"\s*:\s*\{([^{}]*)'),
)
_GOOGLE_FIELD = r'\\?"%s\\?"\s*:\s*(\d+)'


class LineBuffer:
    """Accumulates chunks and releases only newline-terminated lines."""

    def __init__(self) -> None:
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: str) -> list[str]:
        self._pending += chunk
        cut = self._pending.rfind("\n")
        if cut < 0:
            return []
        complete, self._pending = self._pending[:cut], self._pending[cut + 1 :]
        return [line.rstrip("\r") for line in complete.split("\n")]

    def flush(self) -> list[str]:
        remaining, self._pending = self._pending, ""
        return [remaining.rstrip("\r")] if remaining else []


def strip_sse_prefix(line: str) -> str:
    return _SSE_PREFIX.sub("", line.strip(), count=1)


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return None


def _path(data: Any, *keys: Any) -> Any:
    for key in keys:
        if isinstance(key, int):
            if not isinstance(data, list) or len(data) <= key:
                return None
        elif not isinstance(data, Mapping):
            return None
        data = data[key] if isinstance(key, int) else data.get(key)
    return data


def _as_int(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


class StreamDecoder(Protocol):
    dialect: Dialect

    def decode_line(self, line: str) -> str:
        ...

    def extract_usage(self, raw: str) -> UsageTelemetry | None:
        ...

    def fallback_content(self, raw: str) -> str:
        ...


class OpenAIStreamDecoder:
    dialect = Dialect.OPENAI

    def decode_line(self, line: str) -> str:
        line = strip_sse_prefix(line)
        if not line or line == "[DONE]" or not line.startswith("{"):
            return ""
        content = _path(_loads(line), "choices", 0, "delta", "content")
        return content if isinstance(content, str) else ""

    def extract_usage(self, raw: str) -> UsageTelemetry | None:
        """Read the terminal ``usage`` frame, the one whose ``choices`` array is empty."""

        for line in reversed(raw.splitlines()):
            if '"usage"' not in line or not _EMPTY_CHOICES.search(line):
                continue
            usage = _path(_loads(strip_sse_prefix(line)), "usage")
            if isinstance(usage, Mapping):
                return UsageTelemetry(
                    input=_as_int(usage.get("prompt_tokens")),
                    cache_read=_as_int(_path(usage, "prompt_tokens_details", "cached_tokens")),
                    cache_creation=0,
                )
            prompt = _OPENAI_PROMPT_TOKENS.search(line)
            if prompt:
                cached = _OPENAI_CACHED_TOKENS.search(line)
                return UsageTelemetry(
                    input=int(prompt.group(1)),
                    cache_read=int(cached.group(1)) if cached else 0,
                    cache_creation=0,
                )
        return None

    def fallback_content(self, raw: str) -> str:
        document = _loads(raw.strip())
        _log_error_document(document)
        content = _path(document, "choices", 0, "message", "content")
        return content if isinstance(content, str) else ""


class AnthropicStreamDecoder:
    dialect = Dialect.ANTHROPIC

    def decode_line(self, line: str) -> str:
        if '"text":' not in line or ("content_block_start" not in line and "content_block_delta" not in line):
            return ""
        data = _loads(strip_sse_prefix(line))
        text = _path(data, "delta", "text")
        block_text = _path(data, "content_block", "text")
        if isinstance(block_text, str):
            text = block_text
        return text if isinstance(text, str) else ""

    def extract_usage(self, raw: str) -> UsageTelemetry | None:
        """Merge ``message_start`` usage with the closing ``message_delta`` usage."""

        merged: dict[str, Any] = {}
        found = False
        for line in raw.splitlines():
            if '"usage"' not in line:
                continue
            data = _loads(strip_sse_prefix(line))
            kind = _path(data, "type")
            if kind == "message_start":
                usage = _path(data, "message", "usage")
            elif kind == "message_delta":
                usage = _path(data, "usage")
            else:
                continue
            if isinstance(usage, Mapping):
                merged.update({key: value for key, value in usage.items() if value is not None})
                found = True
        if not found:
            candidates = _ANTHROPIC_FLAT_USAGE.findall(raw)
            usage = _loads(candidates[-1]) if candidates else None
            if not isinstance(usage, Mapping):
                return None
            merged = dict(usage)
        return UsageTelemetry(
            input=_as_int(merged.get("input_tokens")),
            cache_read=_as_int(merged.get("cache_read_input_tokens")),
            cache_creation=_as_int(merged.get("cache_creation_input_tokens")),
        )

    def fallback_content(self, raw: str) -> str:
        document = _loads(raw.strip())
        _log_error_document(document)
        blocks = _path(document, "content")
        if not isinstance(blocks, list):
            return ""
        return "".join(block.get("text", "") for block in blocks if isinstance(block, Mapping))


class GoogleAIStreamDecoder:
    """Handles both the pretty-printed JSON array stream and ``alt=sse`` frames."""

    dialect = Dialect.GOOGLEAI

    def decode_line(self, line: str) -> str:
        stripped = strip_sse_prefix(line)
        if stripped.startswith("{") and stripped.endswith("}"):
            return _google_text(_loads(stripped))
        if '"text":' not in stripped:
            return ""
        text = _path(_loads("{" + stripped.rstrip(",") + "}"), "text")
        return text if isinstance(text, str) else ""

    def extract_usage(self, raw: str) -> UsageTelemetry | None:
        body = None
        for pattern in _GOOGLE_USAGE:
            for match in pattern.finditer(raw):
                body = match.group(1)
        if body is None:
            return None
        prompt = re.search(_GOOGLE_FIELD % "promptTokenCount", body)
        if prompt is None:
            return None
        cached = re.search(_GOOGLE_FIELD % "cachedContentTokenCount", body)
        return UsageTelemetry(
            input=int(prompt.group(1)),
            cache_read=int(cached.group(1)) if cached else 0,
            cache_creation=0,
        )

    def fallback_content(self, raw: str) -> str:
        document = _loads(raw.strip())
        if isinstance(document, list):
            return "".join(_google_text(item) for item in document)
        _log_error_document(document)
        return _google_text(document)


def _google_text(data: Any) -> str:
    parts = _path(data, "candidates", 0, "content", "parts")
    if not isinstance(parts, list):
        return ""
    return "".join(part.get("text", "") for part in parts if isinstance(part, Mapping))


def _log_error_document(document: Any) -> None:
    error = _path(document, "error")
    if error:
        message = _path(error, "message") if isinstance(error, Mapping) else error
        LOGGER.error("Provider returned an error: %s", message)


DECODERS: Mapping[Dialect, StreamDecoder] = {
    Dialect.OPENAI: OpenAIStreamDecoder(),
    Dialect.ANTHROPIC: AnthropicStreamDecoder(),
    Dialect.GOOGLEAI: GoogleAIStreamDecoder(),
    Dialect.GENERIC: OpenAIStreamDecoder(),
}


def decoder_for(dialect: Dialect) -> StreamDecoder:
    return DECODERS[dialect]


def decode_lines(decoder: StreamDecoder, lines: Iterable[str]) -> str:
    """Decode a batch of complete lines; undecodable lines contribute nothing."""

    return "".join(decoder.decode_line(line) for line in lines)


TokenHandler = Callable[[str, str], Any]
CompletionHandler = Callable[[Query], Any]

_RAW_OPEN = "```json\n"
_RAW_CLOSE = "\n```\n"


class StreamSession:
    """Reader callback feeding one query's subprocess output through a decoder.

    Instances are used directly as the supervisor's ``on_stdout`` reader: a
    ``None`` chunk marks end of stream and finalizes the query.
    """

    def __init__(
        self,
        query: Query,
        decoder: StreamDecoder,
        *,
        on_token: TokenHandler | None = None,
        on_complete: CompletionHandler | None = None,
        raw_mode: bool = False,
    ) -> None:
        self.query = query
        self.decoder = decoder
        self._on_token = on_token
        self._on_complete = on_complete
        self._raw_mode = raw_mode
        self._buffer = LineBuffer()
        self._raw_opened = False

    def __call__(self, error: str | None, chunk: str | None) -> Any:
        if error:
            LOGGER.error("Query %s stream error: %s", self.query.qid, error)
        if chunk is None:
            return self.finish()
        self.feed(chunk)
        return None

    def feed(self, chunk: str) -> str:
        self.query.raw_response += chunk
        if self._raw_mode:
            text = chunk if self._raw_opened else _RAW_OPEN + chunk
            self._raw_opened = True
        else:
            text = decode_lines(self.decoder, self._buffer.feed(chunk))
        self._emit(text)
        return text

    def finish(self) -> Any:
        query = self.query
        if query.finished:
            return None
        if self._raw_mode:
            if self._raw_opened:
                self._emit(_RAW_CLOSE)
        else:
            self._emit(decode_lines(self.decoder, self._buffer.flush()))
            if not query.response.strip() and query.raw_response.strip():
                recovered = self.decoder.fallback_content(query.raw_response)
                if recovered:
                    self._emit(recovered)
        query.usage = self.decoder.extract_usage(query.raw_response)
        if not query.response.strip():
            LOGGER.error("Query %s finished with an empty response; raw output: %r", query.qid, query.raw_response[:500])
        query.finished = True
        if self._on_complete is not None:
            return self._on_complete(query)
        return None

    def _emit(self, text: str) -> None:
        if not text:
            return
        self.query.response += text
        if self._on_token is not None:
            self._on_token(self.query.qid, text)


__all__ = [
    "LineBuffer",
    "StreamDecoder",
    "OpenAIStreamDecoder",
    "AnthropicStreamDecoder",
    "GoogleAIStreamDecoder",
    "DECODERS",
    "StreamSession",
    "decoder_for",
    "decode_lines",
    "strip_sse_prefix",
]
