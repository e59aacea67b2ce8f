"""Shared test helpers: canned provider streams and a scriptable HTTP client.

The fake client stands in for ``curl``: it reads the request body from the
``@path`` argument, records the call, and prints the first canned response whose
marker occurs in the request body.
"""

from __future__ import annotations

import json
import os
import stat
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

_FAKE_CLIENT = """#!{python}
import json
import sys
import time

body_path = next(arg[1:] for arg in sys.argv[1:] if arg.startswith("@"))
with open(body_path, encoding="utf-8") as handle:
    payload = json.load(handle)
with open({log!r}, "a", encoding="utf-8") as log:
    log.write(json.dumps({{"argv": sys.argv[1:], "payload": payload}}) + "\\n")
with open({responses!r}, encoding="utf-8") as handle:
    responses = json.load(handle)
request = json.dumps(payload, ensure_ascii=False)
for marker, output, delay in responses:
    if marker in request:
        time.sleep(delay)
        sys.stdout.write(output)
        sys.stdout.flush()
        break
"""


def openai_stream(text: str, *, prompt_tokens: int | None = None, cached: int = 0) -> str:
    frames = [{"choices": [{"delta": {"content": piece}}]} for piece in _pieces(text)]
    if prompt_tokens is not None:
        frames.append(
            {
                "choices": [],
                "usage": {"prompt_tokens": prompt_tokens, "prompt_tokens_details": {"cached_tokens": cached}},
            }
        )
    body = "".join(f"data: {json.dumps(frame)}\n\n" for frame in frames)
    return body + "data: [DONE]\n\n"


def anthropic_stream(text: str, *, input_tokens: int | None = None, cache_read: int = 0) -> str:
    events: list[dict[str, Any]] = []
    if input_tokens is not None:
        events.append(
            {
                "type": "message_start",
                "message": {
                    "usage": {
                        "input_tokens": input_tokens,
                        "cache_read_input_tokens": cache_read,
                        "cache_creation_input_tokens": 0,
                    }
                },
            }
        )
    events.append({"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}})
    for piece in _pieces(text):
        events.append({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": piece}})
    events.append({"type": "message_stop"})
    return "".join(f"event: {event['type']}\ndata: {json.dumps(event)}\n\n" for event in events)


def _pieces(text: str, size: int = 5) -> list[str]:
    return [text[start : start + size] for start in range(0, len(text), size)] or [""]


@dataclass
class FakeClient:
    path: Path
    log_path: Path

    def calls(self) -> list[dict[str, Any]]:
        if not self.log_path.exists():
            return []
        return [json.loads(line) for line in self.log_path.read_text(encoding="utf-8").splitlines() if line]


def make_fake_client(directory: Path, responses: Sequence[tuple[str, str] | tuple[str, str, float]]) -> FakeClient:
    """Write an executable fake HTTP client into ``directory``."""

    directory.mkdir(parents=True, exist_ok=True)
    responses_path = directory / "responses.json"
    log_path = directory / "calls.jsonl"
    normalized = [[item[0], item[1], item[2] if len(item) > 2 else 0.0] for item in responses]
    responses_path.write_text(json.dumps(normalized), encoding="utf-8")
    script = directory / "fake-client"
    script.write_text(
        _FAKE_CLIENT.format(python=sys.executable, log=str(log_path), responses=str(responses_path)),
        encoding="utf-8",
    )
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    assert os.access(script, os.X_OK)
    return FakeClient(path=script, log_path=log_path)
