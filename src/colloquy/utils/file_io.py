"""File IO helpers used by the transcript, payload cache and file inlining."""

from __future__ import annotations

import codecs
import json
import locale
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Mapping

__all__ = [
    "read_text",
    "write_text",
    "write_json",
    "prune_directory",
    "language_for_path",
]

LOGGER = logging.getLogger(__name__)

_BOM_MAP: dict[bytes, str] = {
    codecs.BOM_UTF8: "utf-8-sig",
    codecs.BOM_UTF16_LE: "utf-16-le",
    codecs.BOM_UTF16_BE: "utf-16-be",
    codecs.BOM_UTF32_LE: "utf-32-le",
    codecs.BOM_UTF32_BE: "utf-32-be",
}
_LANGUAGE_BY_SUFFIX: dict[str, str] = {
    ".py": "python",
    ".lua": "lua",
    ".js": "javascript",
    ".ts": "typescript",
    ".tsx": "typescriptreact",
    ".jsx": "javascriptreact",
    ".rs": "rust",
    ".go": "go",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".java": "java",
    ".rb": "ruby",
    ".sh": "sh",
    ".bash": "bash",
    ".zsh": "zsh",
    ".md": "markdown",
    ".markdown": "markdown",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".html": "html",
    ".css": "css",
    ".sql": "sql",
    ".vim": "vim",
    ".txt": "text",
}


def read_text(
    path: Path | str,
    *,
    encoding: str | None = None,
    errors: str = "strict",
    normalize_newlines: bool = True,
) -> str:
    """Read a text file with encoding detection and optional newline normalization."""

    target = Path(path)
    raw = target.read_bytes()
    detected_encoding = encoding or _detect_encoding(raw)
    text = raw.decode(detected_encoding, errors=errors)
    text = _strip_bom(text)
    return _normalize_newlines(text) if normalize_newlines else text


def write_text(
    path: Path | str,
    content: str,
    *,
    encoding: str = "utf-8",
    atomic: bool = True,
) -> Path:
    """Write text to disk, replacing the target atomically by default."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    normalized = _normalize_newlines(content)
    if not atomic:
        with target.open("w", encoding=encoding, newline="") as handle:
            handle.write(normalized)
            handle.flush()
            os.fsync(handle.fileno())
        return target

    descriptor, tmp_name = tempfile.mkstemp(
        dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(descriptor, "w", encoding=encoding, newline="") as handle:
            handle.write(normalized)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, target)
    finally:
        if os.path.exists(tmp_name):  # pragma: no cover - cleanup path
            try:
                os.unlink(tmp_name)
            except OSError as exc:
                LOGGER.debug("Unable to remove temp file %s: %s", tmp_name, exc)
    return target


def write_json(path: Path | str, payload: Mapping[str, Any]) -> Path:
    """Serialize ``payload`` as UTF-8 JSON at ``path``."""

    body = json.dumps(payload, ensure_ascii=False)
    return write_text(path, body, atomic=True)


def prune_directory(directory: Path | str, *, pattern: str = "*.json", limit: int = 200, keep: int = 100) -> int:
    """Delete the oldest files matching ``pattern`` once more than ``limit`` exist.

    File names are expected to sort chronologically (timestamp prefixes), so the
    newest ``keep`` entries by name survive. Returns the number of removed files.
    """

    root = Path(directory)
    if not root.is_dir():
        return 0
    files = sorted(root.glob(pattern), key=lambda item: item.name, reverse=True)
    if len(files) <= limit:
        return 0
    removed = 0
    for stale in files[max(0, keep):]:
        try:
            stale.unlink()
            removed += 1
        except OSError as exc:
            LOGGER.debug("Unable to delete cached file %s: %s", stale, exc)
    LOGGER.debug("Pruned %s cached file(s) from %s", removed, root)
    return removed


def language_for_path(path: Path | str) -> str:
    """Return a markdown code fence language tag for ``path`` ("" when unknown)."""

    return _LANGUAGE_BY_SUFFIX.get(Path(path).suffix.lower(), "")


def _detect_encoding(raw: bytes) -> str:
    for bom, encoding in _BOM_MAP.items():
        if raw.startswith(bom):
            return encoding

    preferred = locale.getpreferredencoding(False) or "utf-8"
    seen: set[str] = set()
    for candidate in ("utf-8", preferred, "latin-1"):
        if not candidate or candidate in seen:
            continue
        seen.add(candidate)
        try:
            raw.decode(candidate)
            return candidate
        except UnicodeDecodeError:
            continue
    return "utf-8"


def _normalize_newlines(text: str) -> str:
    if "\r" not in text:
        return text
    text = text.replace("\r\n", "\n")
    return text.replace("\r", "\n")


def _strip_bom(text: str) -> str:
    return text[1:] if text.startswith("\ufeff") else text
