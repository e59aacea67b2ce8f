"""Inline file and directory content for questions carrying file references."""

from __future__ import annotations

import glob
import logging
import os
import re
from pathlib import Path
from typing import Iterable, List

from ..utils.file_io import language_for_path, read_text
from .transcript import FileReference

LOGGER = logging.getLogger(__name__)

_GLOB_CHARS = re.compile(r"[*?\[]")


def _expand(path: str, base_dir: Path | None) -> Path:
    expanded = Path(os.path.expandvars(os.path.expanduser(path)))
    if not expanded.is_absolute() and base_dir is not None:
        expanded = base_dir / expanded
    return expanded


def format_file_content(path: str, *, base_dir: Path | None = None) -> str:
    """Return ``path`` as a fenced, line-numbered block headed by ``File: <path>``."""

    try:
        content = read_text(_expand(path, base_dir))
    except (OSError, UnicodeDecodeError) as exc:
        LOGGER.warning("Could not read file %s: %s", path, exc)
        return f"Error: Could not read file {path}"
    numbered = "\n".join(f"{number}: {line}" for number, line in enumerate(content.splitlines(), start=1))
    return f"File: {path}\n```{language_for_path(path)}\n{numbered}\n```\n\n"


def is_directory_pattern(path: str, *, base_dir: Path | None = None) -> bool:
    return path.endswith("/") or bool(_GLOB_CHARS.search(path)) or _expand(path, base_dir).is_dir()


def find_files(spec: str, *, base_dir: Path | None = None) -> List[str]:
    """Expand a directory or glob ``spec`` into sorted file paths (directories skipped)."""

    cleaned = spec.rstrip("/") or spec
    target = _expand(cleaned, base_dir)
    if not _GLOB_CHARS.search(cleaned):
        if not target.is_dir():
            LOGGER.warning("Directory not found: %s", target)
            return []
        target = target / "*"
    matches = glob.glob(str(target), recursive=True)
    return sorted(match for match in matches if os.path.isfile(match))


def process_directory_pattern(spec: str, *, base_dir: Path | None = None) -> str:
    files = find_files(spec, base_dir=base_dir)
    if not files:
        return f"No files found matching pattern: {spec}"
    parts = [f"Directory listing for {spec} ({len(files)} files):\n"]
    parts.extend(format_file_content(file) for file in files)
    return "\n".join(parts)


def inline_reference(path: str, *, base_dir: Path | None = None) -> str:
    if is_directory_pattern(path, base_dir=base_dir):
        return process_directory_pattern(path, base_dir=base_dir)
    return format_file_content(path, base_dir=base_dir)


def inline_references(references: Iterable[FileReference], *, base_dir: Path | None = None) -> str:
    """Concatenate the inlined content of every reference, in order."""

    return "".join(inline_reference(reference.path, base_dir=base_dir) for reference in references)


__all__ = [
    "format_file_content",
    "is_directory_pattern",
    "find_files",
    "process_directory_pattern",
    "inline_reference",
    "inline_references",
]
