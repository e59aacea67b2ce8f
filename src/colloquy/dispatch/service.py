"""Dispatch service: turns a payload into a supervised streaming subprocess."""

from __future__ import annotations

import inspect
import logging
import os
import secrets as _secrets
import shutil
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, List, Literal, Mapping

from ..errors import ConfigurationError, ErrorCode
from ..services import telemetry
from ..services.settings import Settings
from ..utils.file_io import prune_directory, write_json
from ..utils.logging import redact_secret
from . import encoders
from .decoders import StreamSession, decoder_for
from .params import ValidationReport, model_name_of, validate_agent
from .providers import ProviderRegistry, ProviderSpec, build_request, curl_arguments
from .queries import Query, QueryTable, UsageTelemetry
from .supervisor import SPAWN_FAILURE_CODE, ProcessSupervisor
from .tokens import TokenCounterRegistry
from .vault import ProviderSecrets

LOGGER = logging.getLogger(__name__)

DEFAULT_COMMAND = "curl"
_KEYLESS_PROVIDERS = frozenset({"ollama"})

TokenHandler = Callable[[str, str], Any]
ExitHandler = Callable[[str], Any]
ResultHandler = Callable[[str], Any]


@dataclass(slots=True)
class DispatchResult:
    """Outcome of :meth:`DispatchService.dispatch`; ``busy`` is a rejection, not a failure."""

    status: Literal["started", "busy", "failed"]
    qid: str | None = None
    reason: str | None = None

    @property
    def started(self) -> bool:
        return self.status == "started"


class DispatchService:
    """Holds the query table, supervisor and secrets for one dispatch context."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        registry: ProviderRegistry | None = None,
        supervisor: ProcessSupervisor | None = None,
        secrets: ProviderSecrets | None = None,
        token_registry: TokenCounterRegistry | None = None,
        command: str | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.registry = registry or ProviderRegistry.from_config(self.settings.providers)
        self.supervisor = supervisor or ProcessSupervisor()
        self.secrets = secrets or ProviderSecrets(self.supervisor)
        self.token_registry = token_registry or TokenCounterRegistry(precise=self.settings.precise_token_counts)
        self.command = command or os.environ.get("COLLOQUY_HTTP_CLIENT") or DEFAULT_COMMAND
        self.queries = QueryTable(
            limit=self.settings.query_history_limit,
            max_age=self.settings.query_history_age,
        )
        self.last_usage = UsageTelemetry()
        self._query_dir = Path(self.settings.query_dir).expanduser()
        self._ready = False

    @property
    def query_dir(self) -> Path:
        return self._query_dir

    def setup(self) -> None:
        """Prepare the payload cache directory and register configured secrets."""

        if self._ready:
            return
        self._query_dir.mkdir(parents=True, exist_ok=True)
        removed = prune_directory(
            self._query_dir,
            pattern="*.json",
            limit=self.settings.query_cache_limit,
            keep=self.settings.query_cache_keep,
        )
        if removed:
            LOGGER.info("Pruned %s cached payload file(s) from %s", removed, self._query_dir)
        # Provider-level secrets register first and win over api_keys entries.
        self.secrets.add_secrets(self.registry.take_secrets())
        self.secrets.add_secrets(self.settings.api_keys)
        if shutil.which(self.command) is None:
            LOGGER.warning("HTTP client %s was not found on PATH", self.command)
        self._ready = True

    def prepare_payload(
        self,
        messages: List[Dict[str, Any]],
        model: str | Mapping[str, Any],
        provider: str,
    ) -> Dict[str, Any]:
        spec = self.check_provider(provider)
        return encoders.prepare_payload(
            messages,
            model,
            provider,
            dialect=spec.dialect,
            web_search=self.settings.web_search,
        )

    def check_provider(self, provider: str) -> ProviderSpec:
        """Return the spec for ``provider``; unknown or disabled providers raise."""

        spec = self.registry.get(provider)
        if spec.disabled:
            raise ConfigurationError(
                f"Provider {provider} is disabled", code=ErrorCode.UNKNOWN_PROVIDER, provider=provider
            )
        return spec

    def validate(self, agent: Any) -> ValidationReport:
        """Validate an agent and raise :class:`ConfigurationError` on hard errors."""

        report = validate_agent(agent)
        if report.errors:
            raise ConfigurationError(
                "; ".join(report.errors),
                code=ErrorCode.INVALID_PARAMETERS,
                errors=list(report.errors),
            )
        return report

    def is_busy(self, owner: Hashable | None, *, warn: bool = True) -> bool:
        return self.supervisor.is_busy(owner, warn=warn)

    def stop(self, signal: int | None = None) -> int:
        stopped = self.supervisor.stop(signal)
        if stopped:
            LOGGER.info("Stopped %s running query process(es)", stopped)
        return stopped

    def get_query(self, qid: str) -> Query | None:
        return self.queries.get(qid)

    async def wait_idle(self) -> None:
        await self.supervisor.wait_idle()

    async def dispatch(
        self,
        owner: Hashable | None,
        provider: str,
        payload: Mapping[str, Any],
        on_token: TokenHandler | None = None,
        on_exit: ExitHandler | None = None,
        on_result: ResultHandler | None = None,
        *,
        force: bool = False,
    ) -> DispatchResult:
        """Spawn the streaming client for ``payload``.

        Configuration problems raise before anything is spawned; a busy owner
        yields ``status="busy"`` and transport problems ``status="failed"``.
        """

        self.setup()
        spec = self.check_provider(provider)
        if not self.supervisor.reserve(owner, force=force):
            return DispatchResult(status="busy", reason=f"owner {owner!r} already has a running query")
        try:
            return await self._start(
                owner, spec, payload, on_token=on_token, on_exit=on_exit, on_result=on_result
            )
        finally:
            self.supervisor.release(owner)

    async def _start(
        self,
        owner: Hashable | None,
        spec: ProviderSpec,
        payload: Mapping[str, Any],
        *,
        on_token: TokenHandler | None,
        on_exit: ExitHandler | None,
        on_result: ResultHandler | None,
    ) -> DispatchResult:
        provider = spec.name
        secret = await self.secrets.resolve_secret(spec.secret_ref or provider)
        if not secret and provider not in _KEYLESS_PROVIDERS:
            LOGGER.warning("Missing API key for %s, dispatch aborted", provider)
            return DispatchResult(status="failed", reason=f"missing secret for {provider}")

        plan = build_request(spec, payload, secret, web_search=self.settings.web_search)
        qid = uuid.uuid4().hex
        query = Query(qid=qid, owner=owner, provider=provider, payload=plan.payload)
        query.prompt_tokens_estimate = self._estimate_prompt_tokens(payload)
        self.queries.add(query)

        body_path = self._write_payload(plan.payload)
        args = curl_arguments(plan, str(body_path), self.settings.curl_params)
        self._log_command(args, secret)

        session = StreamSession(
            query,
            decoder_for(spec.dialect),
            on_token=on_token,
            on_complete=lambda finished: self._complete(finished, on_exit, on_result),
            raw_mode=self.settings.raw_mode.show_raw_response,
        )

        def _on_process_exit(code: int, stdout: str, stderr: str) -> None:
            if code == SPAWN_FAILURE_CODE:
                return
            if code != 0:
                LOGGER.error("Query %s client exited with code %s: %s", qid, code, stderr.strip())

        handle = await self.supervisor.run(
            owner,
            self.command,
            args,
            on_exit=_on_process_exit,
            on_stdout=session,
            on_stderr=self._log_stderr,
            reserved=True,
            qid=qid,
        )
        if handle is None:
            self.queries.remove(qid)
            body_path.unlink(missing_ok=True)
            return DispatchResult(status="failed", qid=None, reason=f"could not start {self.command}")
        LOGGER.debug(
            "Query %s started for %s (pid %s, ~%s prompt tokens)",
            qid,
            provider,
            handle.pid,
            query.prompt_tokens_estimate,
        )
        return DispatchResult(status="started", qid=qid)

    async def _complete(
        self,
        query: Query,
        on_exit: ExitHandler | None,
        on_result: ResultHandler | None,
    ) -> None:
        self.last_usage = query.usage or UsageTelemetry()
        if query.usage is not None:
            telemetry.emit(
                telemetry.USAGE_UPDATED,
                {
                    "qid": query.qid,
                    "provider": query.provider,
                    "prompt_tokens_estimate": query.prompt_tokens_estimate,
                    **query.usage.as_dict(),
                },
            )
        for callback, argument in ((on_exit, query.qid), (on_result, query.response)):
            if callback is None:
                continue
            result = callback(argument)
            if inspect.isawaitable(result):
                await result

    def _estimate_prompt_tokens(self, payload: Mapping[str, Any]) -> int:
        model = model_name_of(payload.get("model"))
        messages = list(payload.get("messages") or [])
        system = payload.get("system")
        if isinstance(system, list):
            messages.append({"content": system})
        for turn in payload.get("contents") or []:
            messages.append({"content": turn.get("parts", [])})
        return self.token_registry.count_messages(model, messages)

    def _write_payload(self, payload: Mapping[str, Any]) -> Path:
        name = f"{time.strftime('%Y-%m-%d.%H-%M-%S')}.{_secrets.token_hex(4)}.json"
        path = self._query_dir / name
        write_json(path, payload)
        return path

    def _log_command(self, args: List[str], secret: str | None) -> None:
        if not LOGGER.isEnabledFor(logging.DEBUG):
            return
        line = " ".join([self.command, *args])
        if secret and not self.settings.log_sensitive:
            line = line.replace(secret, redact_secret(secret))
        LOGGER.debug("Dispatching: %s", line)

    @staticmethod
    def _log_stderr(error: str | None, chunk: str | None) -> None:
        if error:
            LOGGER.error("Client stderr read error: %s", error)
        if chunk:
            LOGGER.error("Client stderr: %s", chunk.strip())


__all__ = ["DispatchService", "DispatchResult", "DEFAULT_COMMAND"]
