"""Chat transcript grammar: header parsing, exchange segmentation and rendering.

A transcript looks like::

    # topic: Rust lifetimes
    - file: 2025-01-01.10-00-00.md
    - max_full_exchanges: 3
    ---

    💬: What is a lifetime?

    🤖:[Claude-Sonnet]
    🧠: the user wants a short definition
    A lifetime is ...
    📝: you asked about lifetimes, I answered with a definition

Line numbers stored on parsed objects are 1-based, matching editor lines.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from ..errors import ErrorCode, TranscriptError
from ..services.settings import ChatMarkers

LOGGER = logging.getLogger(__name__)

HEADER_SEPARATOR = "---"
RESERVED_HEADER_KEYS = frozenset({"file", "model", "provider", "role"})

_HEADER_LINE = re.compile(r"^[-#] ([A-Za-z0-9]+): (.*)")
_CONFIG_LINE = re.compile(r"^- ([A-Za-z0-9_]+): (.*)")
_INT = re.compile(r"^[+-]?\d+$")
_MIN_CHAT_LINES = 5
_FILE_HEADER_SCAN = 10


@dataclass(slots=True)
class FileReference:
    line: str
    path: str
    line_index: int


@dataclass(slots=True)
class Question:
    line_start: int
    line_end: int = -1
    content: str = ""
    file_references: List[FileReference] = field(default_factory=list)


@dataclass(slots=True)
class Answer:
    line_start: int
    line_end: int = -1
    content: str = ""


@dataclass(slots=True)
class MetaLine:
    """A one-line summary or reasoning record inside an answer."""

    line: int
    content: str


@dataclass(slots=True)
class Exchange:
    question: Question
    answer: Answer | None = None
    summary: MetaLine | None = None
    reasoning: MetaLine | None = None

    @property
    def has_file_references(self) -> bool:
        return bool(self.question.file_references)


@dataclass(slots=True)
class ParsedChat:
    headers: Dict[str, Any] = field(default_factory=dict)
    exchanges: List[Exchange] = field(default_factory=list)
    header_end: int = 0

    @property
    def topic(self) -> str | None:
        topic = self.headers.get("topic")
        return topic if isinstance(topic, str) else None


def find_header_end(lines: Sequence[str]) -> int | None:
    """Return the 1-based line number of the ``---`` separator, if any."""

    for number, line in enumerate(lines, start=1):
        if line.rstrip() == HEADER_SEPARATOR:
            return number
    return None


def not_chat(lines: Sequence[str]) -> str | None:
    """Return why ``lines`` do not look like a chat transcript, or ``None``."""

    if len(lines) < _MIN_CHAT_LINES:
        return "file too short"
    if not lines[0].startswith("# "):
        return "missing topic header"
    if not any(line.startswith("- file: ") for line in lines[:_FILE_HEADER_SCAN]):
        return "missing file header"
    if find_header_end(lines) is None:
        return "missing header separator"
    return None


def _coerce_number(value: str) -> Any:
    text = value.strip()
    if _INT.match(text):
        return int(text)
    try:
        return float(text)
    except ValueError:
        return value


def parse_headers(lines: Sequence[str], header_end: int) -> Dict[str, Any]:
    headers: Dict[str, Any] = {}
    for line in lines[:header_end]:
        match = _HEADER_LINE.match(line)
        if match:
            key, value = match.groups()
            headers[key] = value.split() if key == "tags" else value
        config = _CONFIG_LINE.match(line)
        if config and config.group(1) not in RESERVED_HEADER_KEYS:
            headers["config_" + config.group(1)] = _coerce_number(config.group(2))
    return headers


def parse_chat(
    lines: Sequence[str],
    header_end: int | None = None,
    markers: ChatMarkers | None = None,
) -> ParsedChat:
    """Parse transcript ``lines`` into headers and exchanges."""

    markers = markers or ChatMarkers()
    if header_end is None:
        header_end = find_header_end(lines)
        if header_end is None:
            raise TranscriptError(
                "Error while parsing headers: --- not found", code=ErrorCode.MISSING_HEADER
            )

    parsed = ParsedChat(headers=parse_headers(lines, header_end), header_end=header_end)
    user_prefixes = tuple(prefix for prefix in (markers.user, markers.legacy_user) if prefix)

    exchange: Exchange | None = None
    component: Question | Answer | None = None
    local_start: int | None = None

    def _close(boundary: int) -> None:
        if component is not None:
            component.line_end = boundary - 1
            component.content = component.content.strip()

    for number in range(header_end + 1, len(lines) + 1):
        line = lines[number - 1]

        if local_start is None and markers.local and line.startswith(markers.local):
            local_start = number
        elif line.startswith(user_prefixes):
            _close(local_start or number)
            prefix = markers.user if line.startswith(markers.user) else markers.legacy_user
            component = Question(line_start=number, content=line[len(prefix) :])
            exchange = Exchange(question=component)
            parsed.exchanges.append(exchange)
            local_start = None
        elif line.startswith(markers.assistant):
            boundary = local_start or number
            _close(boundary)
            if exchange is None:
                exchange = Exchange(question=Question(line_start=header_end + 1, line_end=boundary - 1))
                parsed.exchanges.append(exchange)
            component = Answer(line_start=number)
            exchange.answer = component
            local_start = None
        elif isinstance(component, Answer) and exchange is not None and line.startswith(markers.summary):
            exchange.summary = MetaLine(line=number, content=line[len(markers.summary) :].strip())
        elif isinstance(component, Answer) and exchange is not None and line.startswith(markers.reasoning):
            exchange.reasoning = MetaLine(line=number, content=line[len(markers.reasoning) :].strip())
        elif local_start is None and component is not None:
            component.content += "\n" + line
            if isinstance(component, Question) and line.startswith(markers.file_reference):
                reference = _file_reference(line, markers.file_reference, number)
                if reference is not None:
                    component.file_references.append(reference)

    if component is not None:
        component.line_end = len(lines)
        component.content = component.content.strip()
    return parsed


def _file_reference(line: str, marker: str, number: int) -> FileReference | None:
    path = line[len(marker) :].lstrip().split(":", 1)[0].strip()
    if not path:
        return None
    LOGGER.debug("Found file reference at line %s: %s", number, path)
    return FileReference(line=line, path=path, line_index=number)


def parse_transcript(text: str, markers: ChatMarkers | None = None) -> ParsedChat:
    return parse_chat(text.split("\n"), markers=markers)


def find_exchange_at_line(parsed: ParsedChat, line: int) -> tuple[int | None, str | None]:
    """Return the 0-based exchange index and component covering 1-based ``line``."""

    for index, exchange in enumerate(parsed.exchanges):
        question = exchange.question
        if question.line_start <= line <= question.line_end:
            return index, "question"
        answer = exchange.answer
        if answer is not None and answer.line_start <= line <= answer.line_end:
            return index, "answer"
    return None, None


def _format_header_value(value: Any) -> str:
    if isinstance(value, list):
        return " ".join(str(item) for item in value)
    return str(value)


def render_headers(headers: Dict[str, Any]) -> List[str]:
    lines: List[str] = []
    rendered_config: set[str] = set()
    if "topic" in headers:
        lines.append(f"# topic: {_format_header_value(headers['topic'])}")
    for key, value in headers.items():
        if key == "topic" or key.startswith("config_"):
            continue
        if key in RESERVED_HEADER_KEYS or f"config_{key}" in headers:
            lines.append(f"- {key}: {_format_header_value(value)}")
            rendered_config.add(f"config_{key}")
        else:
            lines.append(f"# {key}: {_format_header_value(value)}")
    for key, value in headers.items():
        if key.startswith("config_") and key not in rendered_config:
            lines.append(f"- {key[len('config_'):]}: {_format_header_value(value)}")
    return lines


def render_chat(parsed: ParsedChat, markers: ChatMarkers | None = None, *, agent: str = "") -> str:
    """Render ``parsed`` back into transcript text.

    ``agent`` fills the assistant suffix template (``[{{agent}}]`` by default).
    """

    markers = markers or ChatMarkers()
    suffix = markers.assistant_suffix.replace("{{agent}}", agent) if agent else ""
    lines = render_headers(parsed.headers)
    lines.append(HEADER_SEPARATOR)
    for exchange in parsed.exchanges:
        lines.append("")
        content = exchange.question.content
        if content.startswith(markers.file_reference):
            lines.append(markers.user)
            lines.append(content)
        else:
            lines.append(f"{markers.user} {content}".rstrip())
        if exchange.answer is None:
            continue
        lines.append("")
        lines.append(f"{markers.assistant}{suffix}")
        if exchange.reasoning is not None:
            lines.append(f"{markers.reasoning} {exchange.reasoning.content}")
            lines.append("")
        if exchange.answer.content:
            lines.append(exchange.answer.content)
        if exchange.summary is not None:
            lines.append("")
            lines.append(f"{markers.summary} {exchange.summary.content}")
    lines.append("")
    return "\n".join(lines)


__all__ = [
    "HEADER_SEPARATOR",
    "RESERVED_HEADER_KEYS",
    "FileReference",
    "Question",
    "Answer",
    "MetaLine",
    "Exchange",
    "ParsedChat",
    "find_header_end",
    "not_chat",
    "parse_headers",
    "parse_chat",
    "parse_transcript",
    "find_exchange_at_line",
    "render_headers",
    "render_chat",
]
