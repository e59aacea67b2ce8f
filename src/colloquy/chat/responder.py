"""Answer the question under the cursor of a chat transcript."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import re
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, List

from .. import defaults
from ..dispatch.queries import Query
from ..dispatch.service import DispatchResult, DispatchService
from ..errors import ColloquyError, ErrorCode, TranscriptError
from ..services.settings import Settings
from .memory import AgentInfo, MemoryPolicy, build_messages, resolve_agent_info
from .sink import MemoryTranscript, StreamWriter, TranscriptSink
from .transcript import ParsedChat, find_exchange_at_line, find_header_end, not_chat, parse_chat

LOGGER = logging.getLogger(__name__)

_RAW_REQUEST = re.compile(r"```json\s*(.*?)\n```", re.DOTALL)

DoneCallback = Callable[[Query | None], Any]


def _last_content_line(lines: List[str]) -> int:
    """0-based index of the last non-blank line (-1 when every line is blank)."""

    for index in range(len(lines) - 1, -1, -1):
        if lines[index].strip():
            return index
    return -1


class ChatResponder:
    """Turns a transcript into a dispatch and streams the answer back into it."""

    def __init__(
        self,
        service: DispatchService,
        settings: Settings | None = None,
        *,
        agent_name: str | None = None,
        base_dir: Path | None = None,
    ) -> None:
        self.service = service
        self.settings = settings or service.settings
        self.agent_name = agent_name
        self.base_dir = base_dir

    async def respond(
        self,
        sink: TranscriptSink,
        *,
        owner: Hashable | None = None,
        cursor_line: int | None = None,
        force: bool = False,
        on_done: DoneCallback | None = None,
    ) -> DispatchResult:
        """Answer the exchange at 1-based ``cursor_line`` (default: the last one).

        Re-answering an exchange that already has an answer replaces it.
        """

        owner = sink if owner is None else owner
        if not force and self.service.is_busy(owner, warn=False):
            LOGGER.warning("A query is already running for this chat. Stop it or force to override.")
            return DispatchResult(status="busy", reason="chat is busy")

        markers = self.settings.markers
        lines = sink.get_lines()
        reason = not_chat(lines)
        if reason:
            raise TranscriptError(f"Transcript does not look like a chat file: {reason}", code=ErrorCode.NOT_A_CHAT)
        header_end = find_header_end(lines)
        parsed = parse_chat(lines, header_end, markers)
        if not parsed.exchanges:
            raise TranscriptError("Transcript has no question to answer", code=ErrorCode.NOT_A_CHAT)

        index, component = (None, None) if cursor_line is None else find_exchange_at_line(parsed, cursor_line)
        target = index if index is not None else len(parsed.exchanges) - 1
        exchange = parsed.exchanges[target]
        end_line = len(lines)
        if component == "question" and exchange.answer is not None:
            end_line = exchange.answer.line_end

        info = resolve_agent_info(parsed.headers, self.settings.get_agent(self.agent_name))
        self.service.validate(info)
        self.service.check_provider(info.provider)
        policy = MemoryPolicy.from_settings(self.settings.memory, parsed.headers)
        messages = build_messages(
            parsed,
            target,
            info,
            policy,
            start_line=(header_end or 0) + 1,
            end_line=end_line,
            base_dir=self.base_dir,
        )
        LOGGER.debug("Messages to send: %s", messages)
        payload = self._raw_payload(exchange.question.content) or self.service.prepare_payload(
            messages, info.model, info.provider
        )

        if exchange.answer is not None:
            insert_at = exchange.answer.line_start - 1
            sink.set_lines(insert_at, exchange.answer.line_end, [])
        else:
            insert_at = exchange.question.line_end
            while insert_at > exchange.question.line_start and not lines[insert_at - 1].strip():
                insert_at -= 1
        suffix = markers.assistant_suffix.replace("{{agent}}", info.display_name)
        block = ["", markers.assistant + suffix, ""]
        if insert_at < sink.line_count():
            block.append("")
        sink.set_lines(insert_at, insert_at, block)

        writer = StreamWriter(sink, insert_at + 3, query_lookup=self.service.get_query)
        is_last = target == len(parsed.exchanges) - 1

        async def _on_exit(qid: str) -> None:
            await self._finish(
                sink,
                qid,
                parsed=parsed,
                messages=messages,
                info=info,
                is_last=is_last,
                header_line=insert_at + 1,
                on_done=on_done,
            )

        try:
            result = await self.service.dispatch(owner, info.provider, payload, writer, _on_exit, force=force)
        except ColloquyError:
            self._restore(sink, lines)
            raise
        if not result.started:
            LOGGER.warning("Dispatch did not start (%s): %s", result.status, result.reason)
            self._restore(sink, lines)
        return result

    @staticmethod
    def _restore(sink: TranscriptSink, lines: List[str]) -> None:
        if sink.is_valid():
            sink.set_lines(0, sink.line_count(), lines)

    async def respond_all(
        self,
        sink: TranscriptSink,
        *,
        owner: Hashable | None = None,
        cursor_line: int | None = None,
    ) -> int:
        """Re-answer every exchange up to the one at ``cursor_line``, one at a time."""

        parsed = parse_chat(sink.get_lines(), markers=self.settings.markers)
        last, _ = (None, None) if cursor_line is None else find_exchange_at_line(parsed, cursor_line)
        if last is None:
            candidates = [
                number
                for number, exchange in enumerate(parsed.exchanges)
                if cursor_line is None or exchange.question.line_start < cursor_line
            ]
            if not candidates:
                LOGGER.warning("No questions found before cursor position")
                return 0
            last = candidates[-1]

        answered = 0
        for number in range(last + 1):
            parsed = parse_chat(sink.get_lines(), markers=self.settings.markers)
            done: asyncio.Future[Query | None] = asyncio.get_running_loop().create_future()
            result = await self.respond(
                sink,
                owner=owner,
                cursor_line=parsed.exchanges[number].question.line_start,
                on_done=lambda query: done.done() or done.set_result(query),
            )
            if not result.started:
                break
            await done
            await self.service.wait_idle()
            answered += 1
        LOGGER.info("Resubmitted %s question(s)", answered)
        return answered

    async def _finish(
        self,
        sink: TranscriptSink,
        qid: str,
        *,
        parsed: ParsedChat,
        messages: List[Dict[str, Any]],
        info: AgentInfo,
        is_last: bool,
        header_line: int,
        on_done: DoneCallback | None,
    ) -> None:
        query = self.service.get_query(qid)
        try:
            if query is None or not sink.is_valid():
                return
            if is_last:
                lines = sink.get_lines()
                last = _last_content_line(lines)
                sink.set_lines(last + 1, len(lines), ["", "", self.settings.markers.user, ""])
                sink.move_cursor(sink.line_count() - 1)
            else:
                sink.move_cursor(header_line)
            if parsed.topic == defaults.TOPIC_PLACEHOLDER:
                await self.generate_topic(sink, messages, query.response, info)
        finally:
            if on_done is not None:
                result = on_done(query)
                if inspect.isawaitable(result):
                    await result

    async def generate_topic(
        self,
        sink: TranscriptSink,
        messages: List[Dict[str, Any]],
        response: str,
        info: AgentInfo,
    ) -> DispatchResult:
        """Ask for a short title in a headless query and write it to the first line."""

        topic_messages = [dict(message) for message in messages]
        topic_messages.append({"role": "assistant", "content": response})
        topic_messages.append({"role": "user", "content": self.settings.topic_prompt})
        payload = self.service.prepare_payload(topic_messages, info.model, info.provider)
        scratch = MemoryTranscript(name="topic")
        writer = StreamWriter(scratch, 0)

        def _apply(_qid: str) -> None:
            topic = scratch.get_lines(0, 1)[0].strip()
            scratch.invalidate()
            if topic.endswith("."):
                topic = topic[:-1]
            if not topic:
                return
            if not sink.is_valid():
                LOGGER.debug("Transcript closed before topic %r arrived", topic)
                return
            sink.set_lines(0, 1, [f"# topic: {topic}"])

        return await self.service.dispatch(None, info.provider, payload, writer, _apply)

    def _raw_payload(self, question: str) -> Dict[str, Any] | None:
        if not self.settings.raw_mode.parse_raw_request:
            return None
        match = _RAW_REQUEST.search(question)
        if match is None:
            return None
        try:
            payload = json.loads(match.group(1))
        except ValueError as exc:
            LOGGER.warning("Failed to parse JSON in raw request mode: %s", exc)
            return None
        if not isinstance(payload, dict):
            LOGGER.warning("Raw request must be a JSON object")
            return None
        LOGGER.debug("Using raw payload for request: %s", payload)
        return payload


__all__ = ["ChatResponder"]
