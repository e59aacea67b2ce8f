"""Provider registry, wire dialects and request (endpoint/header) building."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, is_dataclass, replace
from enum import Enum
from typing import Any, Dict, Iterable, Mapping

import jsonschema

from .. import defaults
from ..errors import ConfigurationError, ErrorCode

LOGGER = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_BETA = "messages-2023-12-15"
ANTHROPIC_WEB_BETA = "web-fetch-2025-09-10"
COPILOT_EDITOR_VERSION = "vscode/1.85.1"
MAX_SCHEMA_ERRORS = 20


class Dialect(str, Enum):
    OPENAI = "openai-compatible"
    ANTHROPIC = "anthropic"
    GOOGLEAI = "googleai"
    GENERIC = "generic"


_DIALECT_BY_PROVIDER: Mapping[str, Dialect] = {
    "openai": Dialect.OPENAI,
    "copilot": Dialect.OPENAI,
    "azure": Dialect.OPENAI,
    "ollama": Dialect.OPENAI,
    "anthropic": Dialect.ANTHROPIC,
    "claude": Dialect.ANTHROPIC,
    "googleai": Dialect.GOOGLEAI,
}

PROVIDER_CONFIG_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": {
        "type": "object",
        "properties": {
            "endpoint": {"type": ["string", "null"], "minLength": 1},
            "dialect": {"enum": [item.value for item in Dialect] + [None]},
            "disable": {"type": "boolean"},
            "secret": {"type": ["string", "array", "null"], "items": {"type": "string"}},
        },
        "additionalProperties": False,
    },
}


def dialect_for(provider: str, explicit: str | Dialect | None = None) -> Dialect:
    """Return the wire dialect for ``provider``; unknown names speak openai-compatible."""

    if explicit:
        return Dialect(explicit)
    return _DIALECT_BY_PROVIDER.get(provider, Dialect.OPENAI)


@dataclass(frozen=True, slots=True)
class ProviderSpec:
    """Static provider configuration, immutable once the registry is set up."""

    name: str
    endpoint: str
    dialect: Dialect = Dialect.OPENAI
    disabled: bool = False
    secret_ref: str | None = None
    secret: str | tuple[str, ...] | None = field(default=None, repr=False)


@dataclass(slots=True)
class RequestPlan:
    """Resolved endpoint, headers and body for one outbound request."""

    endpoint: str
    headers: list[str] = field(default_factory=list)
    payload: Dict[str, Any] = field(default_factory=dict)


def _as_mapping(entry: Any) -> Dict[str, Any]:
    if entry is None:
        return {}
    if is_dataclass(entry) and not isinstance(entry, type):
        return {key: value for key, value in asdict(entry).items() if value is not None}
    if isinstance(entry, Mapping):
        return dict(entry)
    raise ConfigurationError(
        f"Provider entry must be a mapping, got {type(entry).__name__}",
        code=ErrorCode.INVALID_PROVIDER_CONFIG,
    )


def _freeze_secret(secret: Any) -> str | tuple[str, ...] | None:
    if secret is None or isinstance(secret, str):
        return secret or None
    return tuple(secret) or None


def validate_provider_config(config: Mapping[str, Any]) -> list[str]:
    """Return human readable schema violations for a provider mapping."""

    validator = jsonschema.Draft7Validator(PROVIDER_CONFIG_SCHEMA)
    problems: list[str] = []
    for issue in validator.iter_errors(config):
        path = "/".join(str(part) for part in issue.absolute_path)
        problems.append(f"{path}: {issue.message}" if path else issue.message)
        if len(problems) >= MAX_SCHEMA_ERRORS:
            break
    return problems


class ProviderRegistry:
    """Name → :class:`ProviderSpec` lookup built from defaults plus user overrides."""

    def __init__(self, specs: Iterable[ProviderSpec] = ()) -> None:
        self._specs: Dict[str, ProviderSpec] = {spec.name: spec for spec in specs}

    @classmethod
    def from_config(
        cls,
        overrides: Mapping[str, Any] | None = None,
        *,
        base: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> "ProviderRegistry":
        """Merge ``overrides`` over ``base`` (the built-in providers) and validate.

        An empty override entry disables that provider entirely; providers left
        without an endpoint are dropped with a warning.
        """

        merged: Dict[str, Dict[str, Any]] = {
            name: dict(entry) for name, entry in (defaults.DEFAULT_PROVIDERS if base is None else base).items()
        }
        for name, entry in (overrides or {}).items():
            data = _as_mapping(entry)
            if not data:
                LOGGER.debug("Provider %s disabled by empty configuration", name)
                merged.pop(name, None)
                continue
            merged[name] = {**merged.get(name, {}), **data}

        problems = validate_provider_config(merged)
        if problems:
            raise ConfigurationError(
                "Invalid provider configuration: " + "; ".join(problems),
                code=ErrorCode.INVALID_PROVIDER_CONFIG,
                problems=problems,
            )

        specs: list[ProviderSpec] = []
        for name, data in merged.items():
            endpoint = data.get("endpoint")
            if not endpoint:
                LOGGER.warning("Provider %s is missing endpoint", name)
                continue
            specs.append(
                ProviderSpec(
                    name=name,
                    endpoint=endpoint,
                    dialect=dialect_for(name, data.get("dialect")),
                    disabled=bool(data.get("disable", False)),
                    secret_ref=name,
                    secret=_freeze_secret(data.get("secret")),
                )
            )
        return cls(specs)

    def get(self, name: str) -> ProviderSpec:
        spec = self._specs.get(name)
        if spec is None:
            raise ConfigurationError(f"Unknown provider: {name}", code=ErrorCode.UNKNOWN_PROVIDER, provider=name)
        if not spec.endpoint:
            raise ConfigurationError(
                f"Provider {name} has no endpoint", code=ErrorCode.MISSING_ENDPOINT, provider=name
            )
        return spec

    def take_secrets(self) -> Dict[str, str | tuple[str, ...]]:
        """Hand over provider-level secrets and forget them here (they belong in the vault)."""

        taken: Dict[str, str | tuple[str, ...]] = {}
        for name, spec in self._specs.items():
            if spec.secret is None:
                continue
            taken[name] = spec.secret
            self._specs[name] = replace(spec, secret=None)
        return taken

    def names(self, *, include_disabled: bool = False) -> list[str]:
        return [name for name, spec in self._specs.items() if include_disabled or not spec.disabled]

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __len__(self) -> int:
        return len(self._specs)


def build_request(
    spec: ProviderSpec,
    payload: Mapping[str, Any],
    secret: str | None,
    *,
    web_search: bool = False,
) -> RequestPlan:
    """Resolve endpoint placeholders and auth headers for ``spec``."""

    body = dict(payload)
    endpoint = spec.endpoint
    model = body.get("model")
    headers: list[str]

    if spec.dialect is Dialect.GOOGLEAI:
        endpoint = endpoint.replace("{{secret}}", secret or "")
        endpoint = endpoint.replace("{{model}}", str(model or ""))
        body.pop("model", None)
        headers = []
    elif spec.dialect is Dialect.ANTHROPIC:
        headers = [
            "-H",
            f"x-api-key: {secret or ''}",
            "-H",
            f"anthropic-version: {ANTHROPIC_VERSION}",
            "-H",
            f"anthropic-beta: {ANTHROPIC_WEB_BETA if web_search else ANTHROPIC_BETA}",
        ]
    elif spec.name == "azure":
        endpoint = endpoint.replace("{{model}}", str(model or ""))
        headers = ["-H", f"api-key: {secret or ''}"]
    elif spec.name == "copilot":
        headers = [
            "-H",
            f"Authorization: Bearer {secret or ''}",
            "-H",
            "Copilot-Integration-Id: vscode-chat",
            "-H",
            f"editor-version: {COPILOT_EDITOR_VERSION}",
        ]
    elif spec.name == "openai":
        headers = ["-H", f"Authorization: Bearer {secret or ''}", "-H", f"api-key: {secret or ''}"]
    else:
        headers = ["-H", f"Authorization: Bearer {secret or ''}"] if secret else []

    return RequestPlan(endpoint=endpoint, headers=headers, payload=body)


def curl_arguments(plan: RequestPlan, body_path: str, curl_params: Iterable[str] = ()) -> list[str]:
    """Arguments for the streaming HTTP client reading the body from ``body_path``."""

    args = list(curl_params)
    args.extend(
        [
            "--no-buffer",
            "-s",
            plan.endpoint,
            "-H",
            "Content-Type: application/json",
            "-d",
            f"@{body_path}",
        ]
    )
    args.extend(plan.headers)
    return args


__all__ = [
    "Dialect",
    "ProviderSpec",
    "ProviderRegistry",
    "RequestPlan",
    "PROVIDER_CONFIG_SCHEMA",
    "dialect_for",
    "validate_provider_config",
    "build_request",
    "curl_arguments",
]
