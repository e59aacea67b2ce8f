"""Exception hierarchy shared by the dispatch and conversation layers."""

from __future__ import annotations

from typing import Any


class ErrorCode:
    """Machine-readable identifiers attached to raised errors."""

    UNKNOWN_PROVIDER = "unknown_provider"
    MISSING_ENDPOINT = "missing_endpoint"
    INVALID_PROVIDER_CONFIG = "invalid_provider_config"
    INVALID_PARAMETERS = "invalid_parameters"
    MISSING_SECRET = "missing_secret"
    SPAWN_FAILED = "spawn_failed"
    MISSING_HEADER = "missing_header"
    NOT_A_CHAT = "not_a_chat"


class ColloquyError(Exception):
    """Base class for all errors raised by colloquy."""

    code = "colloquy_error"

    def __init__(self, message: str, *, code: str | None = None, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details: dict[str, Any] = {"code": self.code, **details}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ConfigurationError(ColloquyError, ValueError):
    """Raised before dispatch when provider, endpoint or parameter config is invalid."""

    code = ErrorCode.INVALID_PROVIDER_CONFIG


class TransportError(ColloquyError):
    """Raised when the streaming client process cannot be started or authorized."""

    code = ErrorCode.SPAWN_FAILED


class TranscriptError(ColloquyError, ValueError):
    """Raised when transcript text does not follow the chat grammar."""

    code = ErrorCode.NOT_A_CHAT


__all__ = [
    "ErrorCode",
    "ColloquyError",
    "ConfigurationError",
    "TransportError",
    "TranscriptError",
]
