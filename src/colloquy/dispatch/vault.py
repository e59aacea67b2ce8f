"""Provider secrets: literal keys or commands resolved lazily through the supervisor."""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Awaitable, Callable, Dict, Mapping, Sequence, TypeVar

from ..errors import ErrorCode, TransportError
from ..utils.logging import redact_secret, register_secret
from .supervisor import ProcessSupervisor

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

Secret = str | Sequence[str]

ALIASES: Mapping[str, str] = {
    "openai": "openai_api_key",
}


class ProviderSecrets:
    """Name → secret store, never embedded in request state beyond a single dispatch."""

    def __init__(self, supervisor: ProcessSupervisor | None = None) -> None:
        self._supervisor = supervisor or ProcessSupervisor()
        self._secrets: Dict[str, Secret] = {}
        self._resolved: Dict[str, str] = {}

    def add_secret(self, name: str, secret: Secret | None) -> None:
        """Register ``secret`` under ``name``; repeat registrations are ignored."""

        if secret is None or name in self._secrets:
            return
        if not isinstance(secret, str):
            secret = list(copy.deepcopy(secret))
        self._secrets[name] = secret
        if isinstance(secret, str) and secret:
            self._resolved[name] = secret
            register_secret(secret)
        alias = ALIASES.get(name)
        if alias:
            self.add_secret(alias, secret)

    def add_secrets(self, secrets: Mapping[str, Secret | None]) -> None:
        for name, secret in secrets.items():
            self.add_secret(name, secret)

    def has(self, name: str) -> bool:
        return name in self._secrets

    def get_secret(self, name: str) -> str | None:
        """Return an already-resolved secret, or ``None`` when missing or still a command."""

        secret = self._resolved.get(name)
        if secret is None:
            LOGGER.debug("Secret %s is not resolved", name)
        return secret

    async def resolve_secret(self, name: str) -> str | None:
        if name in self._resolved:
            return self._resolved[name]
        secret = self._secrets.get(name)
        if secret is None:
            LOGGER.warning("Secret %s is not configured", name)
            return None
        if isinstance(secret, str):
            return secret or None

        command = list(secret)
        if not command:
            return None
        done: asyncio.Future[tuple[int, str, str]] = asyncio.get_running_loop().create_future()

        def _on_exit(code: int, stdout: str, stderr: str) -> None:
            if not done.done():
                done.set_result((code, stdout, stderr))

        await self._supervisor.run(None, command[0], command[1:], on_exit=_on_exit)
        code, stdout, stderr = await done
        if code != 0:
            LOGGER.error("Secret command for %s exited with %s: %s", name, code, stderr.strip())
            return None
        value = stdout.strip()
        if not value:
            LOGGER.error("Secret command for %s returned an empty value", name)
            return None
        self._resolved[name] = value
        register_secret(value)
        return value

    async def run_with_secret(self, name: str, callback: Callable[[str], T | Awaitable[T]]) -> T:
        """Resolve ``name`` then invoke ``callback`` with the secret value."""

        secret = await self.resolve_secret(name)
        if secret is None:
            raise TransportError(f"Missing secret for {name}", code=ErrorCode.MISSING_SECRET, secret=name)
        result = callback(secret)
        if asyncio.iscoroutine(result):
            return await result
        return result  # type: ignore[return-value]

    def obfuscate(self, name: str) -> str:
        secret = self._secrets.get(name)
        if secret is None:
            return "<missing>"
        if not isinstance(secret, str):
            return "<command: " + " ".join(secret) + ">"
        return redact_secret(self._resolved.get(name, secret), visible=3)

    def obfuscated(self) -> Dict[str, str]:
        return {name: self.obfuscate(name) for name in sorted(self._secrets)}


__all__ = ["ProviderSecrets", "ALIASES", "Secret"]
