"""Structured logging helpers for colloquy."""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path

__all__ = [
    "SecretRedactionFilter",
    "setup_logging",
    "get_log_path",
    "redact_secret",
    "register_secret",
    "set_redaction",
]

_DEFAULT_LOG_DIR = Path.home() / ".colloquy" / "logs"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "urllib3")
_CONFIGURED = False
_LOG_PATH: Path | None = None
_MIN_SECRET_LENGTH = 8
_SECRETS: set[str] = set()


class SecretRedactionFilter(logging.Filter):
    """Masks every registered secret in a record before a handler formats it."""

    def __init__(self) -> None:
        super().__init__()
        self.enabled = True

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.enabled or not _SECRETS:
            return True
        message = record.getMessage()
        masked = message
        for secret in _SECRETS:
            if secret in masked:
                masked = masked.replace(secret, redact_secret(secret))
        if masked != message:
            record.msg = masked
            record.args = None
        return True


_REDACTION = SecretRedactionFilter()


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Configure root logging with rotating file + optional console handlers."""

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / "colloquy.log"

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handlers: list[logging.Handler] = []
    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(_REDACTION)
    handlers.append(file_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        console_handler.addFilter(_REDACTION)
        handlers.append(console_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _tune_external_loggers(level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    """Return the currently configured log file if available."""

    return _LOG_PATH


def redact_secret(value: str | None, *, visible: int = 3) -> str:
    """Return ``value`` with everything but the outer ``visible`` characters masked."""

    if not value:
        return ""
    if len(value) <= visible * 2:
        return "*" * len(value)
    return f"{value[:visible]}{'*' * (len(value) - visible * 2)}{value[-visible:]}"


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("COLLOQUY_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _tune_external_loggers(root_level: int) -> None:
    quiet_level = logging.WARNING if root_level < logging.WARNING else root_level
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)


def register_secret(value: str | None) -> None:
    """Mask ``value`` in every log line written through :func:`setup_logging` handlers."""

    if value and len(value) >= _MIN_SECRET_LENGTH:
        _SECRETS.add(value)


def set_redaction(enabled: bool) -> None:
    """Turn secret masking off for ``log_sensitive`` debugging sessions."""

    _REDACTION.enabled = enabled
