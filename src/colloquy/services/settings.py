"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

from .. import defaults
from ..utils.file_io import write_text

__all__ = [
    "ChatMarkers",
    "MemorySettings",
    "RawModeSettings",
    "ProviderSettings",
    "AgentSettings",
    "Settings",
    "SettingsStore",
    "SecretVault",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".colloquy"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_DEFAULT_QUERY_DIR = Path.home() / ".cache" / "colloquy" / "query"
_DEFAULT_CHAT_DIR = Path.home() / ".local" / "share" / "colloquy" / "chats"
_SETTINGS_VERSION = 1
_API_KEYS_FIELD = "api_keys_ciphertext"
_ENV_OVERRIDES: Mapping[str, str] = {
    "COLLOQUY_QUERY_DIR": "query_dir",
    "COLLOQUY_CHAT_DIR": "chat_dir",
    "COLLOQUY_DEFAULT_AGENT": "default_agent",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "COLLOQUY_DEBUG_LOGGING": "debug_logging",
    "COLLOQUY_LOG_SENSITIVE": "log_sensitive",
    "COLLOQUY_WEB_SEARCH": "web_search",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


@dataclass(slots=True)
class ChatMarkers:
    """Line prefixes that structure a chat transcript."""

    user: str = "💬:"
    assistant: str = "🤖:"
    assistant_suffix: str = "[{{agent}}]"
    local: str = "🔒:"
    summary: str = "📝:"
    reasoning: str = "🧠:"
    file_reference: str = "@@"
    legacy_user: str = "🗨:"


@dataclass(slots=True)
class MemorySettings:
    """Sliding-window retention policy for older exchanges."""

    enable: bool = True
    max_full_exchanges: int = 5
    omit_user_text: str = "Summarize our chat"


@dataclass(slots=True)
class RawModeSettings:
    """Debug switches exposing the raw wire traffic inside the transcript."""

    show_raw_response: bool = False
    parse_raw_request: bool = False


@dataclass(slots=True)
class ProviderSettings:
    """User-facing provider entry (endpoint template plus optional dialect and secret).

    ``secret`` is either a literal key or a command (argv list) printing it.
    """

    endpoint: str | None = None
    dialect: str | None = None
    disable: bool = False
    secret: str | list[str] | None = None


@dataclass(slots=True)
class AgentSettings:
    """A named model + persona combination."""

    name: str
    provider: str
    model: str | dict[str, Any]
    system_prompt: str = defaults.CHAT_SYSTEM_PROMPT
    disable: bool = False


def _default_providers() -> dict[str, ProviderSettings]:
    return {name: ProviderSettings(**spec) for name, spec in defaults.DEFAULT_PROVIDERS.items()}


def _default_agents() -> list[AgentSettings]:
    return [AgentSettings(**spec) for spec in defaults.DEFAULT_AGENTS]


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    providers: dict[str, ProviderSettings] = field(default_factory=_default_providers)
    agents: list[AgentSettings] = field(default_factory=_default_agents)
    default_agent: str | None = None
    api_keys: dict[str, Any] = field(default_factory=dict)
    curl_params: list[str] = field(default_factory=list)
    chat_dir: str = str(_DEFAULT_CHAT_DIR)
    query_dir: str = str(_DEFAULT_QUERY_DIR)
    query_cache_limit: int = 200
    query_cache_keep: int = 100
    query_history_limit: int = 10
    query_history_age: float = 60.0
    topic_prompt: str = defaults.TOPIC_GEN_PROMPT
    web_search: bool = False
    log_sensitive: bool = False
    precise_token_counts: bool = False
    debug_logging: bool = False
    markers: ChatMarkers = field(default_factory=ChatMarkers)
    memory: MemorySettings = field(default_factory=MemorySettings)
    raw_mode: RawModeSettings = field(default_factory=RawModeSettings)

    def get_agent(self, name: str | None = None) -> AgentSettings:
        """Return the agent called ``name`` (or the default/first enabled agent)."""

        enabled = [agent for agent in self.agents if not agent.disable]
        if not enabled:
            raise LookupError("No enabled agents are configured")
        wanted = name or self.default_agent
        if wanted:
            for agent in enabled:
                if agent.name == wanted:
                    return agent
            LOGGER.warning("Agent %s not found; using %s", wanted, enabled[0].name)
        return enabled[0]


class SecretVault:
    """Encrypts and decrypts api keys for settings persistence with a Fernet key on disk."""

    name = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    @property
    def strategy(self) -> str:
        return self.name

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._get_fernet().encrypt(secret.encode("utf-8"))
        return f"{self.name}:{token.decode('ascii')}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, _, payload = token.partition(":")
        if prefix != self.name or not payload:
            LOGGER.warning("Unknown secret token prefix %s; returning ciphertext.", prefix)
            return token
        try:
            return self._get_fernet().decrypt(payload.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:  # pragma: no cover - indicates tampering
            raise ValueError("Invalid Fernet token") from exc

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            encrypted_keys = payload.pop(_API_KEYS_FIELD, None) or {}
            try:
                settings = _settings_from_payload(payload)
            except (TypeError, ValueError) as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            api_keys = dict(settings.api_keys)
            for provider, token in encrypted_keys.items():
                try:
                    api_keys[provider] = self._vault.decrypt(token)
                except ValueError as exc:
                    LOGGER.warning("Unable to decrypt api key for %s: %s", provider, exc)
            settings = replace(settings, api_keys=api_keys, providers=self._decrypt_providers(settings.providers))

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")
        settings = self._apply_env_overrides(settings)
        return settings

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        payload = self._serialize(settings)
        write_text(self._path, json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False))
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        plain_keys: dict[str, Any] = {}
        encrypted: dict[str, str] = {}
        for provider, secret in (data.pop("api_keys", None) or {}).items():
            # Command secrets (argv lists) are stored as-is; literal keys are encrypted.
            if isinstance(secret, str):
                encrypted[provider] = self._vault.encrypt(secret)
            else:
                plain_keys[provider] = secret
        data["api_keys"] = plain_keys
        for entry in (data.get("providers") or {}).values():
            secret = entry.get("secret")
            if isinstance(secret, str) and secret:
                entry["secret"] = self._vault.encrypt(secret)
        if encrypted:
            data[_API_KEYS_FIELD] = encrypted
        data["version"] = _SETTINGS_VERSION
        data["secret_backend"] = self._vault.strategy
        return data

    def _decrypt_providers(self, providers: Mapping[str, ProviderSettings]) -> dict[str, ProviderSettings]:
        decrypted: dict[str, ProviderSettings] = {}
        for name, entry in providers.items():
            secret = entry.secret
            if isinstance(secret, str) and secret.startswith(f"{self._vault.name}:"):
                try:
                    entry = replace(entry, secret=self._vault.decrypt(secret))
                except ValueError as exc:
                    LOGGER.warning("Unable to decrypt secret for provider %s: %s", name, exc)
                    entry = replace(entry, secret=None)
            decrypted[name] = entry
        return decrypted

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            return json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {item.name for item in fields(Settings)}
        filtered = {key: value for key, value in overrides.items() if key in allowed and value is not None}
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        max_exchanges = os.environ.get("COLLOQUY_MAX_FULL_EXCHANGES")
        if max_exchanges is not None:
            try:
                overrides["memory"] = replace(settings.memory, max_full_exchanges=int(max_exchanges, 10))
            except ValueError:
                LOGGER.warning(
                    "Environment override COLLOQUY_MAX_FULL_EXCHANGES=%s is not a valid integer",
                    max_exchanges,
                )
        api_keys = dict(settings.api_keys)
        for provider, env_name in defaults.DEFAULT_API_KEY_ENV.items():
            value = os.environ.get(env_name)
            if value and provider not in api_keys:
                api_keys[provider] = value
        if api_keys != settings.api_keys:
            overrides["api_keys"] = api_keys
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _settings_from_payload(payload: Mapping[str, Any]) -> Settings:
    allowed = {item.name for item in fields(Settings)}
    data: Dict[str, Any] = {key: value for key, value in payload.items() if key in allowed}
    if isinstance(data.get("markers"), Mapping):
        data["markers"] = ChatMarkers(**data["markers"])
    if isinstance(data.get("memory"), Mapping):
        data["memory"] = MemorySettings(**data["memory"])
    if isinstance(data.get("raw_mode"), Mapping):
        data["raw_mode"] = RawModeSettings(**data["raw_mode"])
    if isinstance(data.get("providers"), Mapping):
        data["providers"] = {
            name: ProviderSettings(**spec) if spec else ProviderSettings(disable=True)
            for name, spec in data["providers"].items()
            if isinstance(spec, Mapping)
        }
    if isinstance(data.get("agents"), list):
        data["agents"] = [AgentSettings(**spec) for spec in data["agents"] if isinstance(spec, Mapping)]
    return Settings(**data)
