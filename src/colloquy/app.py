"""Command line entry point for answering chat transcripts."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict, is_dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from . import defaults
from .chat.responder import ChatResponder
from .chat.sink import FileTranscript
from .dispatch.params import validate_agent
from .dispatch.service import DispatchService
from .errors import ColloquyError
from .services.settings import Settings, SettingsStore
from .utils import logging as logging_utils
from .utils.file_io import write_text

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure structured logging for the command line tool."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except (OSError, ValueError, TypeError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_cli_args(argv)

    debug = args.debug or _env_flag("COLLOQUY_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("COLLOQUY_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return 0

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)
    logging_utils.set_redaction(not settings.log_sensitive)

    if args.command == "respond":
        return asyncio.run(_respond(settings, args))
    if args.command == "validate":
        return _validate(settings, args.agent)
    if args.command == "new":
        path = create_chat(settings, topic=args.topic, directory=args.directory)
        print(path)
        return 0
    print("No command given; see --help.", file=sys.stderr)
    return 2


async def _respond(settings: Settings, args: argparse.Namespace) -> int:
    path = Path(args.chat).expanduser()
    if not path.is_file():
        print(f"Chat file not found: {path}", file=sys.stderr)
        return 1

    service = DispatchService(settings)
    responder = ChatResponder(service, settings, agent_name=args.agent, base_dir=path.parent)
    transcript = FileTranscript(path)
    try:
        if args.all:
            answered = await responder.respond_all(transcript, cursor_line=args.line)
            result_ok = answered > 0
        else:
            result = await responder.respond(transcript, cursor_line=args.line, force=args.force)
            result_ok = result.started
            if not result_ok:
                print(f"Query not started ({result.status}): {result.reason}", file=sys.stderr)
        await service.wait_idle()
    except (ColloquyError, LookupError) as exc:
        print(f"Unable to answer {path}: {exc}", file=sys.stderr)
        return 1
    except asyncio.CancelledError:
        service.stop()
        raise

    transcript.save()
    _LOGGER.info("Transcript written to %s (last usage: %s)", path, service.last_usage.as_dict())
    return 0 if result_ok else 1


def _validate(settings: Settings, agent_name: str | None) -> int:
    agents = [agent for agent in settings.agents if not agent.disable]
    if agent_name:
        agents = [agent for agent in agents if agent.name == agent_name]
        if not agents:
            print(f"Agent {agent_name} not found", file=sys.stderr)
            return 1

    failed = False
    for agent in agents:
        report = validate_agent(agent)
        status = "ok" if report.ok else "invalid"
        print(f"{agent.name} ({agent.provider}): {status}")
        for error in report.errors:
            print(f"  error: {error}")
        for warning in report.warnings:
            print(f"  warning: {warning}")
        failed = failed or not report.ok
    return 1 if failed else 0


def create_chat(
    settings: Settings,
    *,
    topic: str | None = None,
    directory: Path | str | None = None,
    now: datetime | None = None,
) -> Path:
    """Write a fresh transcript from the chat template and return its path."""

    target_dir = Path(directory or settings.chat_dir).expanduser()
    stamp = (now or datetime.now()).strftime("%Y-%m-%d.%H-%M-%S.%f")[:-3]
    filename = f"{stamp}.md"
    content = defaults.render_template(
        defaults.CHAT_TEMPLATE,
        {
            "{{topic}}": topic or defaults.TOPIC_PLACEHOLDER,
            "{{filename}}": filename,
            "{{optional_headers}}": "",
            "{{user_prefix}}": settings.markers.user + " ",
        },
    )
    return write_text(target_dir / filename, content)


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="colloquy",
        description="Answer markdown chat transcripts with a configured LLM agent.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.colloquy/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")

    commands = parser.add_subparsers(dest="command")

    respond = commands.add_parser("respond", help="Answer the question under a line of a chat file.")
    respond.add_argument("chat", help="Path to the chat transcript.")
    respond.add_argument("--line", type=int, help="1-based line inside the exchange to answer (default: last).")
    respond.add_argument("--agent", help="Agent name to use instead of the default.")
    respond.add_argument("--force", action="store_true", help="Dispatch even if a query is already running.")
    respond.add_argument(
        "--all",
        action="store_true",
        help="Re-answer every exchange up to --line (or the end) one after another.",
    )

    validate = commands.add_parser("validate", help="Check agent model parameters against provider schemas.")
    validate.add_argument("--agent", help="Only validate this agent.")

    new = commands.add_parser("new", help="Create a new chat file from the template.")
    new.add_argument("--topic", help="Topic header (default: generated after the first answer).")
    new.add_argument("--directory", help="Directory for the new chat (default: settings chat_dir).")

    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = type_hints.get(key, fields[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if _is_optional(annotation) and normalized.lower() in {"none", "null"}:
        return None
    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if normalized.lower() in {"none", "null"}:
        return None
    if is_dataclass(target) and isinstance(target, type):
        try:
            payload = json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dataclass overrides must be valid JSON") from exc
        return target(**payload)
    if target in (list, dict):
        try:
            value = json.loads(normalized or ("[]" if target is list else "{}"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"{target.__name__} overrides must be valid JSON") from exc
        if not isinstance(value, target):
            raise ValueError(f"Expected a JSON {target.__name__}")
        return value
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in {list, dict}:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return _resolve_annotation(args[0])


def _is_optional(annotation: Any) -> bool:
    return type(None) in get_args(annotation)


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_keys"] = {
        provider: logging_utils.redact_secret(secret) if isinstance(secret, str) else secret
        for provider, secret in payload.get("api_keys", {}).items()
    }
    for entry in payload.get("providers", {}).values():
        if isinstance(entry.get("secret"), str):
            entry["secret"] = logging_utils.redact_secret(entry["secret"])
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "log_path": str(logging_utils.get_log_path() or ""),
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2, ensure_ascii=False)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("COLLOQUY_"))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
