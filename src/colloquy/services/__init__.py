"""Service layer helpers (settings, telemetry)."""

from .settings import ChatMarkers, MemorySettings, Settings, SettingsStore
from .telemetry import emit, register_event_listener, unregister_event_listener

__all__ = [
    "ChatMarkers",
    "MemorySettings",
    "Settings",
    "SettingsStore",
    "emit",
    "register_event_listener",
    "unregister_event_listener",
]
