"""Dispatch engine: payload building, subprocess supervision and stream decoding."""

from .decoders import LineBuffer, StreamSession, decoder_for
from .encoders import prepare_payload
from .params import get_schema, resolve_params, validate_agent, validate_model
from .providers import Dialect, ProviderRegistry, ProviderSpec
from .queries import Query, QueryTable, UsageTelemetry
from .service import DispatchResult, DispatchService
from .supervisor import ProcessHandle, ProcessSupervisor
from .vault import ProviderSecrets

__all__ = [
    "Dialect",
    "DispatchResult",
    "DispatchService",
    "LineBuffer",
    "ProcessHandle",
    "ProcessSupervisor",
    "ProviderRegistry",
    "ProviderSecrets",
    "ProviderSpec",
    "Query",
    "QueryTable",
    "StreamSession",
    "UsageTelemetry",
    "decoder_for",
    "get_schema",
    "prepare_payload",
    "resolve_params",
    "validate_agent",
    "validate_model",
]
