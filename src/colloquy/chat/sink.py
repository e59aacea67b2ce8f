"""Transcript sinks: the editable line buffer a response is streamed into."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, List, Protocol, Sequence

from ..dispatch.queries import Query
from ..utils.file_io import read_text, write_text

LOGGER = logging.getLogger(__name__)


class TranscriptSink(Protocol):
    """Minimal editing surface; ranges are 0-based and end-exclusive."""

    def is_valid(self) -> bool:
        ...

    def line_count(self) -> int:
        ...

    def get_lines(self, start: int = 0, end: int | None = None) -> List[str]:
        ...

    def set_lines(self, start: int, end: int, lines: Sequence[str]) -> None:
        ...

    def move_cursor(self, line: int) -> None:
        ...


class MemoryTranscript:
    """In-memory line buffer; also serves as the disposable topic sink."""

    def __init__(self, lines: Sequence[str] | None = None, *, name: str = "") -> None:
        self.name = name
        self._lines: List[str] = list(lines or [""])
        self._valid = True
        self.cursor = 0

    @classmethod
    def from_text(cls, text: str, *, name: str = "") -> "MemoryTranscript":
        return cls(text.split("\n"), name=name)

    def text(self) -> str:
        return "\n".join(self._lines)

    def invalidate(self) -> None:
        self._valid = False

    def is_valid(self) -> bool:
        return self._valid

    def line_count(self) -> int:
        return len(self._lines)

    def get_lines(self, start: int = 0, end: int | None = None) -> List[str]:
        return list(self._lines[start:end])

    def set_lines(self, start: int, end: int, lines: Sequence[str]) -> None:
        if not self._valid:
            raise RuntimeError(f"transcript {self.name or id(self)} is no longer valid")
        count = len(self._lines)
        start = max(0, min(start, count))
        end = max(start, min(end, count))
        self._lines[start:end] = list(lines)
        if not self._lines:
            self._lines = [""]

    def append_lines(self, lines: Sequence[str]) -> None:
        self.set_lines(self.line_count(), self.line_count(), lines)

    def move_cursor(self, line: int) -> None:
        self.cursor = max(0, min(line, self.line_count() - 1))


class FileTranscript(MemoryTranscript):
    """Transcript backed by a chat file on disk, written back with :meth:`save`."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        super().__init__(read_text(self.path).split("\n"), name=str(self.path))

    def save(self) -> Path:
        return write_text(self.path, self.text())


class StreamWriter:
    """Token handler rendering a query's streamed response into a sink.

    The response occupies the lines starting at ``first_line`` (0-based); each
    chunk rewrites the previously written block. Once the sink becomes invalid
    the writer stops touching it silently.
    """

    def __init__(
        self,
        sink: TranscriptSink,
        first_line: int,
        *,
        prefix: str = "",
        follow_cursor: bool = False,
        query_lookup: Callable[[str], Query | None] | None = None,
    ) -> None:
        self.sink = sink
        self.first_line = first_line
        self.prefix = prefix
        self.follow_cursor = follow_cursor
        self._lookup = query_lookup
        self._response = ""
        self._written = 0
        self.aborted = False

    @property
    def response(self) -> str:
        return self._response

    def __call__(self, qid: str, chunk: str) -> None:
        if self.aborted:
            return
        if not self.sink.is_valid():
            LOGGER.debug("Transcript for query %s is gone; dropping further output", qid)
            self.aborted = True
            return
        self._response += chunk
        lines = [self.prefix + line for line in self._response.split("\n")]
        self.sink.set_lines(self.first_line, self.first_line + self._written, lines)
        self._written = len(lines)
        last_line = self.first_line + self._written - 1
        query = self._lookup(qid) if self._lookup else None
        if query is not None:
            query.first_line = self.first_line
            query.last_line = last_line
        if self.follow_cursor:
            self.sink.move_cursor(last_line)


__all__ = ["TranscriptSink", "MemoryTranscript", "FileTranscript", "StreamWriter"]
