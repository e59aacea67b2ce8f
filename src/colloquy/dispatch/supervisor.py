"""Subprocess supervision: spawn, stream, track busy owners and stop."""

from __future__ import annotations

import asyncio
import codecs
import inspect
import logging
import os
import signal as signal_module
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Hashable, Sequence

from ..services import telemetry

LOGGER = logging.getLogger(__name__)

SPAWN_FAILURE_CODE = -1
_READ_CHUNK = 4096
_WARNING_INTERVAL = 1.0

ExitCallback = Callable[[int, str, str], Any]
ChunkReader = Callable[[str | None, str | None], Any]
LivenessCheck = Callable[["ProcessHandle"], bool]


@dataclass(slots=True)
class ProcessHandle:
    """Ties a spawned process to its owner and the query it serves."""

    pid: int
    owner: Hashable | None
    process: asyncio.subprocess.Process | None = None
    qid: str | None = None
    started_at: float = field(default_factory=time.time)

    @property
    def returncode(self) -> int | None:
        return None if self.process is None else self.process.returncode


@dataclass(slots=True)
class SupervisorStats:
    """Counters surfaced for debugging busy checks."""

    is_busy_calls: int = 0
    warnings_suppressed: int = 0
    last_warning_time: float = 0.0


def process_alive(handle: ProcessHandle) -> bool:
    """Check whether ``handle`` still refers to a running process."""

    if handle.returncode is not None:
        return False
    if handle.pid <= 0:
        return False
    try:
        os.kill(handle.pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


async def _invoke(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class ProcessSupervisor:
    """Owns external process handles, at most one live handle per owner key.

    Handles whose owner is ``None`` (headless work) never count as busy.
    """

    def __init__(self, *, liveness_check: LivenessCheck | None = None) -> None:
        self._handles: list[ProcessHandle] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._is_alive = liveness_check or process_alive
        self._pending: dict[Hashable, int] = {}
        self.stats = SupervisorStats()

    @property
    def handles(self) -> tuple[ProcessHandle, ...]:
        return tuple(self._handles)

    def reserve(self, owner: Hashable | None, *, force: bool = False) -> bool:
        """Claim ``owner`` until :meth:`release`; ``False`` when it is already busy.

        The claim is taken synchronously, so a second caller on the same loop
        sees the owner as busy while the first one is still awaiting its spawn.
        """

        if owner is None:
            return True
        if not force and self.is_busy(owner):
            return False
        self._pending[owner] = self._pending.get(owner, 0) + 1
        return True

    def release(self, owner: Hashable | None) -> None:
        if owner is None:
            return
        remaining = self._pending.get(owner, 0) - 1
        if remaining > 0:
            self._pending[owner] = remaining
        else:
            self._pending.pop(owner, None)

    def add_handle(self, handle: ProcessHandle) -> bool:
        for existing in self._handles:
            if existing.pid == handle.pid:
                LOGGER.debug("Process %s is already tracked, not adding duplicate", handle.pid)
                return False
        self._handles.append(handle)
        LOGGER.debug("Added handle for PID %s, total handles: %s", handle.pid, len(self._handles))
        return True

    def remove_handle(self, pid: int) -> bool:
        for index, handle in enumerate(self._handles):
            if handle.pid == pid:
                del self._handles[index]
                LOGGER.debug("Removed handle for PID %s, remaining handles: %s", pid, len(self._handles))
                return True
        LOGGER.debug("Attempted to remove nonexistent handle for PID %s", pid)
        return False

    def is_busy(self, owner: Hashable | None, *, warn: bool = True) -> bool:
        """Return ``True`` when ``owner`` has a live process; stale handles are purged."""

        self.stats.is_busy_calls += 1
        if owner is None:
            return False
        active: list[ProcessHandle] = []
        for handle in list(self._handles):
            if handle.owner != owner:
                continue
            if self._is_alive(handle):
                active.append(handle)
            else:
                LOGGER.debug("Removing stale process handle %s", handle.pid)
                self.remove_handle(handle.pid)
        pending = self._pending.get(owner, 0)
        if not active and not pending:
            return False
        if warn:
            now = time.monotonic()
            if now - self.stats.last_warning_time >= _WARNING_INTERVAL:
                LOGGER.warning(
                    "Another process [%s] is already running for %r (found %s active, %s starting)",
                    active[0].pid if active else "pending",
                    owner,
                    len(active),
                    pending,
                )
                self.stats.last_warning_time = now
            else:
                self.stats.warnings_suppressed += 1
        return True

    def cleanup_stale_handles(self) -> int:
        removed = 0
        for handle in list(self._handles):
            if not self._is_alive(handle):
                LOGGER.debug("Cleanup: removing stale process handle [%s]", handle.pid)
                self.remove_handle(handle.pid)
                removed += 1
        LOGGER.debug(
            "Cleanup completed: %s active processes, %s stale processes removed",
            len(self._handles),
            removed,
        )
        return removed

    async def run(
        self,
        owner: Hashable | None,
        command: str,
        args: Sequence[str],
        *,
        on_exit: ExitCallback | None = None,
        on_stdout: ChunkReader | None = None,
        on_stderr: ChunkReader | None = None,
        force: bool = False,
        reserved: bool = False,
        qid: str | None = None,
    ) -> ProcessHandle | None:
        """Spawn ``command`` and stream its output; returns ``None`` when busy or on spawn failure.

        ``reserved`` means the caller already holds :meth:`reserve` for ``owner``
        and releases it itself.
        """

        LOGGER.debug("run command: %s %s", command, " ".join(args))
        self.cleanup_stale_handles()
        if not reserved and not self.reserve(owner, force=force):
            return None

        error: OSError | None = None
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            error = exc
        else:
            handle = ProcessHandle(pid=process.pid, owner=owner, process=process, qid=qid)
            self.add_handle(handle)
        finally:
            if not reserved:
                self.release(owner)

        if error is not None:
            LOGGER.error("Failed to start %s: %s", command, error)
            await _invoke(on_exit, SPAWN_FAILURE_CODE, "", str(error))
            return None

        LOGGER.debug("%s command started with pid: %s", command, process.pid)
        telemetry.emit(telemetry.QUERY_STARTED, {"pid": process.pid, "qid": qid, "owner": repr(owner)})

        task = asyncio.get_running_loop().create_task(
            self._supervise(handle, on_exit=on_exit, on_stdout=on_stdout, on_stderr=on_stderr)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return handle

    def stop(self, signal: int | None = None) -> int:
        """Send ``signal`` (default SIGTERM) to every tracked process and forget them all."""

        if not self._handles:
            return 0
        sent = 0
        for handle in self._handles:
            if handle.returncode is not None or handle.pid <= 0:
                continue
            try:
                if handle.process is not None:
                    handle.process.send_signal(signal or signal_module.SIGTERM)
                else:
                    os.kill(handle.pid, signal or signal_module.SIGTERM)
                sent += 1
            except ProcessLookupError:
                LOGGER.debug("Process %s already exited before stop", handle.pid)
        self._handles = []
        telemetry.emit(telemetry.QUERY_STOPPED, {"signalled": sent})
        return sent

    async def wait_idle(self) -> None:
        """Wait until every supervised process (including ones spawned meanwhile) has exited."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _supervise(
        self,
        handle: ProcessHandle,
        *,
        on_exit: ExitCallback | None,
        on_stdout: ChunkReader | None,
        on_stderr: ChunkReader | None,
    ) -> None:
        process = handle.process
        assert process is not None
        stdout_parts: list[str] = []
        stderr_parts: list[str] = []
        try:
            await asyncio.gather(
                self._pump(process.stdout, on_stdout, stdout_parts, "stdout"),
                self._pump(process.stderr, on_stderr, stderr_parts, "stderr"),
            )
            code = await process.wait()
            await _invoke(on_exit, code, "".join(stdout_parts), "".join(stderr_parts))
        except Exception:
            LOGGER.exception("Supervision of process %s failed", handle.pid)
        finally:
            self.remove_handle(handle.pid)
            telemetry.emit(
                telemetry.QUERY_FINISHED,
                {"pid": handle.pid, "qid": handle.qid, "returncode": process.returncode},
            )

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        reader: ChunkReader | None,
        sink: list[str],
        label: str,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            try:
                data = await stream.read(_READ_CHUNK)
            except (OSError, ValueError) as exc:
                LOGGER.error("Error reading %s: %s", label, exc)
                await _invoke(reader, str(exc), None)
                break
            if not data:
                break
            text = decoder.decode(data)
            if text:
                sink.append(text)
                await _invoke(reader, None, text)
        tail = decoder.decode(b"", final=True)
        if tail:
            sink.append(tail)
            await _invoke(reader, None, tail)
        await _invoke(reader, None, None)


__all__ = [
    "SPAWN_FAILURE_CODE",
    "ProcessHandle",
    "ProcessSupervisor",
    "SupervisorStats",
    "process_alive",
    "ExitCallback",
    "ChunkReader",
]
