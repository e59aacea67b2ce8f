"""In-process lifecycle notifications for observability collaborators."""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

LOGGER = logging.getLogger(__name__)

QUERY_STARTED = "query.started"
QUERY_FINISHED = "query.finished"
QUERY_STOPPED = "query.stopped"
USAGE_UPDATED = "usage.updated"

EventListener = Callable[[dict[str, Any]], None]

_EVENT_LISTENERS: dict[str, list[EventListener]] = {}


def register_event_listener(event_name: str, callback: EventListener) -> None:
    """Subscribe ``callback`` to ``event_name`` broadcasts."""

    if not event_name or not callable(callback):
        return
    listeners = _EVENT_LISTENERS.setdefault(event_name, [])
    if callback not in listeners:
        listeners.append(callback)


def unregister_event_listener(event_name: str, callback: EventListener) -> None:
    """Remove a previously registered listener, ignoring unknown callbacks."""

    listeners = _EVENT_LISTENERS.get(event_name)
    if not listeners:
        return
    try:
        listeners.remove(callback)
    except ValueError:
        return
    if not listeners:
        _EVENT_LISTENERS.pop(event_name, None)


def emit(event_name: str, payload: Mapping[str, Any] | None = None) -> None:
    """Broadcast a structured telemetry event to in-process listeners."""

    if not event_name:
        return
    event_payload: dict[str, Any] = {"event": event_name}
    if payload:
        event_payload.update(payload)
    listeners = list(_EVENT_LISTENERS.get(event_name, ()))
    for callback in listeners:
        try:
            callback(dict(event_payload))
        except Exception:  # pragma: no cover - listeners must not break emitters
            LOGGER.debug("Telemetry listener %s failed", callback, exc_info=True)
    LOGGER.debug("Telemetry emit %s: %s", event_name, event_payload)


__all__ = [
    "QUERY_STARTED",
    "QUERY_FINISHED",
    "QUERY_STOPPED",
    "USAGE_UPDATED",
    "register_event_listener",
    "unregister_event_listener",
    "emit",
]
