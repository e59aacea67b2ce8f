"""Per-provider parameter schemas, model overrides, resolution and validation.

Every provider has a base schema describing the sampling parameters it accepts.
Model-name overrides (regular expressions, all matches applied in order) can drop
parameters, add new ones, or declare exclusive groups.  :func:`resolve_params`
turns a model config into the wire-named parameters for a request and
:func:`validate_agent` reports problems before anything is dispatched.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

LOGGER = logging.getLogger(__name__)

META_KEYS = frozenset({"model"})


@dataclass(frozen=True, slots=True)
class ParamSpec:
    """One accepted parameter: optional clamp bounds, default and wire name."""

    bounds: tuple[float, float] | None = None
    default: Any = None
    wire_name: str | None = None


@dataclass(frozen=True, slots=True)
class ExclusiveGroup:
    params: tuple[str, ...]
    at_most_one: bool = False
    require_one: bool = False


@dataclass(frozen=True, slots=True)
class ModelOverride:
    """Adjustments applied when a model name matches ``pattern``."""

    pattern: str
    unsupported: tuple[str, ...] = ()
    params: Mapping[str, ParamSpec] = field(default_factory=dict)
    exclusive_groups: tuple[ExclusiveGroup, ...] = ()

    def matches(self, model_name: str) -> bool:
        return re.search(self.pattern, model_name) is not None


@dataclass(slots=True)
class ParamSchema:
    params: Dict[str, ParamSpec] = field(default_factory=dict)
    exclusive_groups: list[ExclusiveGroup] = field(default_factory=list)


@dataclass(slots=True)
class ValidationReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


_OPENAI_STYLE: Mapping[str, ParamSpec] = {
    "temperature": ParamSpec(bounds=(0, 2)),
    "top_p": ParamSpec(bounds=(0, 1)),
    "max_tokens": ParamSpec(default=4096),
}

PROVIDER_SCHEMAS: Mapping[str, Mapping[str, ParamSpec]] = {
    "openai": _OPENAI_STYLE,
    "azure": _OPENAI_STYLE,
    "copilot": _OPENAI_STYLE,
    "anthropic": _OPENAI_STYLE,
    "googleai": {
        "temperature": ParamSpec(bounds=(0, 2)),
        "top_p": ParamSpec(bounds=(0, 1), wire_name="topP"),
        "top_k": ParamSpec(default=100, wire_name="topK"),
        "max_tokens": ParamSpec(default=8192, wire_name="maxOutputTokens"),
    },
    "ollama": {
        "temperature": ParamSpec(bounds=(0, 2)),
        "top_p": ParamSpec(bounds=(0, 1)),
        "min_p": ParamSpec(bounds=(0, 1)),
        "max_tokens": ParamSpec(default=4096),
    },
}

MODEL_OVERRIDES: tuple[ModelOverride, ...] = (
    ModelOverride(
        pattern=r"^o[13]",
        unsupported=("temperature", "top_p", "max_tokens"),
        params={"reasoning_effort": ParamSpec(default="minimal")},
    ),
    ModelOverride(
        pattern=r"^gpt-4o-search-preview$",
        unsupported=("temperature", "top_p", "max_tokens"),
    ),
    ModelOverride(
        pattern=r"^gpt-5",
        unsupported=("temperature", "top_p"),
        params={
            "max_tokens": ParamSpec(default=4096, wire_name="max_completion_tokens"),
            "reasoning_effort": ParamSpec(default="minimal"),
        },
    ),
    ModelOverride(
        pattern=r"^claude-sonnet-4-6",
        exclusive_groups=(ExclusiveGroup(params=("temperature", "top_p"), at_most_one=True),),
    ),
)


def model_name_of(model: str | Mapping[str, Any] | None) -> str:
    if isinstance(model, Mapping):
        return str(model.get("model") or "")
    return str(model or "")


def get_schema(provider: str, model_name: str | None) -> ParamSchema:
    """Return the effective schema for ``provider`` and ``model_name``."""

    schema = ParamSchema(params=dict(PROVIDER_SCHEMAS.get(provider, {})))
    name = model_name or ""
    for override in MODEL_OVERRIDES:
        if not override.matches(name):
            continue
        for param in override.unsupported:
            schema.params.pop(param, None)
        schema.params.update(override.params)
        schema.exclusive_groups.extend(override.exclusive_groups)
    return schema


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _clamp(value: Any, spec: ParamSpec) -> Any:
    if spec.bounds is None or not _is_number(value):
        return value
    low, high = spec.bounds
    return max(low, min(high, value))


def resolve_params(provider: str, model: str | Mapping[str, Any] | None) -> Dict[str, Any]:
    """Map a model config to wire-named request parameters.

    Unknown keys and meta keys are dropped; declared defaults fill the gaps and
    numeric values are clamped into range.
    """

    config: Mapping[str, Any] = model if isinstance(model, Mapping) else {}
    schema = get_schema(provider, model_name_of(model))
    resolved: Dict[str, Any] = {}
    for name, spec in schema.params.items():
        value = config.get(name)
        if value is None:
            value = spec.default
        if value is None:
            continue
        resolved[spec.wire_name or name] = _clamp(value, spec)
    return resolved


def validate_model(provider: str | None, model: str | Mapping[str, Any] | None) -> ValidationReport:
    """Check a model config against the schema for ``provider``."""

    report = ValidationReport()
    if not provider:
        report.errors.append("agent is missing 'provider' field")
        return report
    if not isinstance(model, Mapping):
        return report

    model_name = model_name_of(model)
    schema = get_schema(provider, model_name)

    for key, value in model.items():
        if key in META_KEYS:
            continue
        spec = schema.params.get(key)
        if spec is None:
            report.warnings.append(
                "unknown parameter '%s' for provider '%s' model '%s'" % (key, provider, model_name)
            )
            continue
        if spec.bounds is not None and _is_number(value):
            low, high = spec.bounds
            if value < low or value > high:
                report.warnings.append(
                    "parameter '%s' value %s is outside range [%s, %s] (will be clamped)" % (key, value, low, high)
                )

    for group in schema.exclusive_groups:
        present = [name for name in group.params if model.get(name) is not None]
        listed = ", ".join(group.params)
        if group.at_most_one and len(present) > 1:
            report.errors.append(
                "at most one of {%s} can be set for model '%s', but found: %s"
                % (listed, model_name, ", ".join(present))
            )
        if group.require_one and not present:
            report.errors.append("at least one of {%s} must be set for model '%s'" % (listed, model_name))
    return report


def validate_agent(agent: Any) -> ValidationReport:
    """Validate an agent (mapping or object with ``provider``/``model`` attributes)."""

    if isinstance(agent, Mapping):
        provider = agent.get("provider")
        model = agent.get("model")
    else:
        provider = getattr(agent, "provider", None)
        model = getattr(agent, "model", None)
    report = validate_model(provider, model)
    for warning in report.warnings:
        LOGGER.warning("Agent %s: %s", getattr(agent, "name", None) or model_name_of(model), warning)
    return report


__all__ = [
    "META_KEYS",
    "ParamSpec",
    "ExclusiveGroup",
    "ModelOverride",
    "ParamSchema",
    "ValidationReport",
    "PROVIDER_SCHEMAS",
    "MODEL_OVERRIDES",
    "get_schema",
    "resolve_params",
    "validate_model",
    "validate_agent",
    "model_name_of",
]
