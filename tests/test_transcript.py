"""Tests for transcript parsing, lookup and rendering."""

from __future__ import annotations

import pytest

from colloquy.chat.transcript import (
    find_exchange_at_line,
    find_header_end,
    not_chat,
    parse_chat,
    parse_transcript,
    render_chat,
)
from colloquy.errors import ErrorCode, TranscriptError

CHAT = """# topic: Lifetimes
- file: 2025-01-01.10-00-00.md
- max_full_exchanges: 3
# tags: rust memory
---

💬: What is a lifetime?

🤖:[Claude-Sonnet]
🧠: short definition wanted
A lifetime is a scope.
📝: you asked about lifetimes, I answered with a definition

💬: And borrowing?
@@ src/lib.rs
"""


def test_headers_and_config_values() -> None:
    parsed = parse_transcript(CHAT)

    assert parsed.header_end == 5
    assert parsed.topic == "Lifetimes"
    assert parsed.headers["file"] == "2025-01-01.10-00-00.md"
    assert parsed.headers["tags"] == ["rust", "memory"]
    assert parsed.headers["config_max_full_exchanges"] == 3
    assert "config_file" not in parsed.headers


def test_exchanges_are_segmented_with_one_based_lines() -> None:
    parsed = parse_transcript(CHAT)

    assert len(parsed.exchanges) == 2
    first, second = parsed.exchanges
    assert first.question.line_start == 7
    assert first.question.line_end == 8
    assert first.question.content == "What is a lifetime?"
    assert first.answer is not None
    assert first.answer.line_start == 9
    assert first.answer.content == "A lifetime is a scope."
    assert first.reasoning is not None and first.reasoning.content == "short definition wanted"
    assert first.summary is not None and first.summary.line == 12
    assert second.answer is None
    assert second.question.content == "And borrowing?\n@@ src/lib.rs"
    assert [reference.path for reference in second.question.file_references] == ["src/lib.rs"]
    assert second.question.file_references[0].line_index == 15


def test_find_exchange_at_line() -> None:
    parsed = parse_transcript(CHAT)

    assert find_exchange_at_line(parsed, 7) == (0, "question")
    assert find_exchange_at_line(parsed, 11) == (0, "answer")
    assert find_exchange_at_line(parsed, 15) == (1, "question")
    assert find_exchange_at_line(parsed, 2) == (None, None)


def test_local_region_is_excluded_from_content() -> None:
    text = "# topic: x\n- file: a.md\n---\n💬: visible\n🔒: private\nstill private\n🤖:\nanswer\n"

    parsed = parse_transcript(text)
    question = parsed.exchanges[0].question

    assert question.content == "visible"
    assert question.line_end == 4
    assert parsed.exchanges[0].answer is not None
    assert parsed.exchanges[0].answer.content == "answer"


def test_legacy_user_prefix_is_recognized() -> None:
    parsed = parse_transcript("# topic: x\n- file: a.md\n---\n🗨: old style question\n")

    assert parsed.exchanges[0].question.content == "old style question"


def test_answer_without_question_gets_placeholder_question() -> None:
    parsed = parse_transcript("# topic: x\n- file: a.md\n---\n\n🤖:\norphan answer\n")

    exchange = parsed.exchanges[0]
    assert exchange.question.content == ""
    assert exchange.question.line_start == 4
    assert exchange.answer is not None and exchange.answer.content == "orphan answer"


def test_summary_marker_outside_answer_is_plain_text() -> None:
    parsed = parse_transcript("# topic: x\n- file: a.md\n---\n💬: hi\n📝: not a summary\n")

    exchange = parsed.exchanges[0]
    assert exchange.summary is None
    assert exchange.question.content == "hi\n📝: not a summary"


def test_missing_separator_raises() -> None:
    with pytest.raises(TranscriptError) as excinfo:
        parse_transcript("# topic: x\n💬: hi\n")

    assert excinfo.value.code == ErrorCode.MISSING_HEADER


def test_not_chat_reasons() -> None:
    assert not_chat(["a"]) == "file too short"
    assert not_chat(["x", "- file: a", "---", "", ""]) == "missing topic header"
    assert not_chat(["# topic: t", "", "---", "", ""]) == "missing file header"
    assert not_chat(["# topic: t", "- file: a", "", "", ""]) == "missing header separator"
    assert not_chat(CHAT.split("\n")) is None
    assert find_header_end(["# a", "---  "]) == 2


def test_render_then_parse_round_trip() -> None:
    parsed = parse_transcript(CHAT)

    rendered = render_chat(parsed, agent="Claude-Sonnet")
    reparsed = parse_transcript(rendered)

    assert reparsed.headers == parsed.headers
    assert len(reparsed.exchanges) == len(parsed.exchanges)
    for before, after in zip(parsed.exchanges, reparsed.exchanges):
        assert after.question.content == before.question.content
        assert [ref.path for ref in after.question.file_references] == [
            ref.path for ref in before.question.file_references
        ]
        assert (after.answer is None) == (before.answer is None)
        if before.answer is not None:
            assert after.answer.content == before.answer.content
        assert (after.summary and after.summary.content) == (before.summary and before.summary.content)
        assert (after.reasoning and after.reasoning.content) == (before.reasoning and before.reasoning.content)
    assert "🤖:[Claude-Sonnet]" in rendered


def test_round_trip_keeps_leading_file_reference() -> None:
    text = "# topic: x\n- file: a.md\n---\n\n💬:\n@@ notes.txt\nwhat is in here?\n"
    parsed = parse_transcript(text)

    reparsed = parse_transcript(render_chat(parsed))

    assert [ref.path for ref in reparsed.exchanges[0].question.file_references] == ["notes.txt"]
    assert reparsed.exchanges[0].question.content == "@@ notes.txt\nwhat is in here?"
