"""Chat transcript grammar, memory window and the responder that fills in answers."""

from .memory import AgentInfo, MemoryPolicy, build_messages, build_window, resolve_agent_info
from .responder import ChatResponder
from .sink import FileTranscript, MemoryTranscript, StreamWriter, TranscriptSink
from .transcript import ParsedChat, find_exchange_at_line, parse_chat, parse_transcript, render_chat

__all__ = [
    "AgentInfo",
    "ChatResponder",
    "FileTranscript",
    "MemoryPolicy",
    "MemoryTranscript",
    "ParsedChat",
    "StreamWriter",
    "TranscriptSink",
    "build_messages",
    "build_window",
    "find_exchange_at_line",
    "parse_chat",
    "parse_transcript",
    "render_chat",
    "resolve_agent_info",
]
