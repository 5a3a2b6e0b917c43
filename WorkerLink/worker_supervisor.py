"""Supervision of the long-running worker process.

:class:`WorkerSupervisor` owns the one :class:`asyncio.subprocess.Process` of
the session.  It spawns the worker from a resolved
:class:`~WorkerLink.launch_config.LaunchConfig`, pipes the worker's stdout and
stderr into the ``worker`` logger (INFO and ERROR respectively), records the
final exit state and can terminate the process.

A crashed worker is *not* restarted – the session stays backend-unavailable
until the application itself is restarted.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from WorkerLink.errors import SpawnError
from WorkerLink.launch_config import LaunchConfig

__all__ = [
    "WorkerStatus",
    "WorkerState",
    "WorkerSupervisor",
]

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024
_FLUSH_TIMEOUT = 1.0


class WorkerStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class WorkerState:
    status: WorkerStatus
    exit_code: int | None = None
    reason: str | None = None

    @classmethod
    def starting(cls) -> "WorkerState":
        return cls(WorkerStatus.STARTING)

    @classmethod
    def running(cls) -> "WorkerState":
        return cls(WorkerStatus.RUNNING)

    @classmethod
    def exited(cls, code: int | None) -> "WorkerState":
        return cls(WorkerStatus.EXITED, exit_code=code)

    @classmethod
    def failed(cls, reason: str) -> "WorkerState":
        return cls(WorkerStatus.FAILED, reason=reason)

    @property
    def is_live(self) -> bool:
        return self.status in (WorkerStatus.STARTING, WorkerStatus.RUNNING)


class WorkerSupervisor:
    """Spawn, observe and terminate the worker process."""

    def __init__(
        self,
        *,
        terminate_grace_sec: float = 5.0,
        on_exit: Optional[Callable[[WorkerState], None]] = None,
        output_logger: logging.Logger | None = None,
    ) -> None:
        self._grace = terminate_grace_sec
        self._on_exit = on_exit
        self._output_log = output_logger or logging.getLogger("worker")

        self._proc: asyncio.subprocess.Process | None = None
        self._state: WorkerState | None = None
        self._readers: List[asyncio.Task] = []
        self._watcher: asyncio.Task | None = None
        self._terminating = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def state(self) -> WorkerState | None:
        """``None`` until :meth:`start` has been called."""
        return self._state

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def is_running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self, launch: LaunchConfig) -> WorkerState:
        """Spawn the worker described by *launch*.

        Raises :class:`SpawnError` (after recording ``Failed(reason)``) when the
        executable cannot be launched at all.  Calling ``start`` while a worker
        is alive is a no-op.
        """
        if self._state is not None and self._state.is_live:
            logger.debug("Worker already running – start() ignored")
            return self._state

        self._state = WorkerState.starting()
        self._terminating = False
        logger.info("Launching worker (%s): %s", launch.mode.value, " ".join(launch.argv))

        try:
            self._proc = await asyncio.create_subprocess_exec(
                *launch.argv,
                cwd=str(launch.cwd) if launch.cwd else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            self._state = WorkerState.failed(str(exc))
            self._proc = None
            logger.error("Failed to start worker process: %s", exc)
            raise SpawnError(f"Failed to launch worker {launch.executable!r}: {exc}") from exc

        self._state = WorkerState.running()
        logger.info("Worker process started (pid=%d)", self._proc.pid)

        assert self._proc.stdout is not None and self._proc.stderr is not None
        self._readers = [
            asyncio.create_task(self._pump(self._proc.stdout, logging.INFO), name="worker-stdout"),
            asyncio.create_task(self._pump(self._proc.stderr, logging.ERROR), name="worker-stderr"),
        ]
        self._watcher = asyncio.create_task(self._watch_exit(self._proc), name="worker-exit")
        return self._state

    async def terminate(self) -> None:
        """Send a termination signal and wait for the worker to exit.

        Escalates to a kill after the grace period.  Idempotent: a no-op when
        the worker never started or has already exited.
        """
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return

        self._terminating = True
        logger.info("Terminating worker process (pid=%d)", proc.pid)
        try:
            proc.terminate()
        except ProcessLookupError:
            pass
        else:
            try:
                await asyncio.wait_for(proc.wait(), self._grace)
            except asyncio.TimeoutError:
                logger.warning("Worker did not exit within %.1f s – killing", self._grace)
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()

        if self._watcher is not None:
            await self._watcher

    async def wait(self) -> WorkerState | None:
        """Wait until the exit observer has recorded the final state."""
        if self._watcher is not None:
            await self._watcher
        return self._state

    # ------------------------------------------------------------------
    # Implementation details
    # ------------------------------------------------------------------
    async def _pump(self, stream: asyncio.StreamReader, level: int) -> None:
        """Forward every line the worker writes on *stream* to the log sink."""
        pending = b""
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            pending += chunk
            *lines, pending = pending.split(b"\n")
            for line in lines:
                self._emit(level, line)
            # Output without newlines is logged in chunk-sized pieces.
            if len(pending) > _READ_CHUNK:
                self._emit(level, pending)
                pending = b""
        if pending:
            self._emit(level, pending)

    def _emit(self, level: int, raw: bytes) -> None:
        text = raw.decode("utf-8", errors="replace").rstrip()
        if text:
            self._output_log.log(level, "%s", text)

    async def _watch_exit(self, proc: asyncio.subprocess.Process) -> None:
        code = await proc.wait()
        # Let the readers flush whatever the worker wrote last.  A grandchild
        # may keep the pipes open, so the flush is bounded.
        if self._readers:
            done, pending = await asyncio.wait(self._readers, timeout=_FLUSH_TIMEOUT)
            for reader in pending:
                reader.cancel()
            for reader in done:
                if not reader.cancelled() and reader.exception() is not None:
                    logger.error("Worker output reader failed: %s", reader.exception())

        self._state = WorkerState.exited(code)
        if self._terminating:
            logger.info("Worker process exited with code %s", code)
        else:
            logger.warning("Worker process exited unexpectedly with code %s", code)

        if self._on_exit is not None:
            try:
                self._on_exit(self._state)
            except Exception:  # pylint: disable=broad-except
                logger.exception("Worker exit callback failed")
