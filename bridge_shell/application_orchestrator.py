# Session orchestrator tying the worker bridge components together.
#
# One BridgeOrchestrator is one application session:
#   * spawn the worker (development script or packaged binary)
#   * connect the command and update channels and start the update loop
#   * expose the UIGateway to the UI layer
#   * on shutdown close both channels, terminate the worker, destroy the context
#
# A worker that dies while the session is connected is not restarted.  The
# session moves to DISCONNECTED and every command from then on fails with a
# transport error until the application is restarted.

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from enum import Enum
from typing import Callable, List, Optional, Sequence

import zmq
import zmq.asyncio

from bridge_shell import crash_reporter
from bridge_shell.logging_config import setup_logging
from ipc.messages import ErrorValue
from WorkerLink.command_channel import CommandChannel
from WorkerLink.config_manager import ConfigManager
from WorkerLink.errors import ChildExitError, SpawnError
from WorkerLink.forwarder import Forwarder
from WorkerLink.launch_config import LaunchConfig, resolve_launch_config
from WorkerLink.ui_gateway import UIGateway
from WorkerLink.update_channel import UpdateChannel
from WorkerLink.worker_supervisor import WorkerState, WorkerSupervisor

__all__ = [
    "SessionState",
    "BridgeOrchestrator",
    "main",
]


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    CONNECTED = "connected"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"
    DISCONNECTED = "disconnected"


_ENDED = (SessionState.DISCONNECTED, SessionState.SHUTTING_DOWN, SessionState.CLOSED)

StateListener = Callable[[SessionState, SessionState], None]


class BridgeOrchestrator:  # pylint: disable=too-many-instance-attributes
    """Owns the worker handle and both channel handles for one session."""

    def __init__(
        self,
        config: ConfigManager | None = None,
        *,
        packaged: bool | None = None,
        launch: LaunchConfig | None = None,
    ) -> None:
        self._log = logging.getLogger(self.__class__.__name__)
        self.config = config or ConfigManager()
        self._packaged = packaged
        self._launch = launch

        self._state = SessionState.IDLE
        self._listeners: List[StateListener] = []

        self.gateway = UIGateway()
        self.forwarder = Forwarder(
            self.gateway,
            allowed_topics=self.config.get("topics"),
            payload_format=self.config.get("payload_format", "text"),
        )
        self.supervisor = WorkerSupervisor(
            terminate_grace_sec=float(self.config.get("terminate_grace_sec", 5.0)),
            on_exit=self._on_worker_exit,
        )

        self.command_channel: CommandChannel | None = None
        self.update_channel: UpdateChannel | None = None
        self._ctx: zmq.asyncio.Context | None = None

        self._ended: asyncio.Event | None = None
        self._disconnect_task: asyncio.Task | None = None
        self._shutdown_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def state(self) -> SessionState:
        return self._state

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        """Call *listener(old, new)* on every transition.  Returns a remover."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _set_state(self, new: SessionState) -> None:
        old, self._state = self._state, new
        if old is new:
            return
        self._log.info("Session state %s → %s", old.value, new.value)
        if new in _ENDED and self._ended is not None:
            self._ended.set()
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception:  # pylint: disable=broad-except
                self._log.exception("State listener failed")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> SessionState:
        """Spawn the worker and connect both channels.

        Ends in CONNECTED, or in DISCONNECTED when the worker cannot be
        launched.  Only valid from IDLE.
        """
        if self._state is not SessionState.IDLE:
            self._log.warning("start() ignored in state %s", self._state.value)
            return self._state

        self._ended = asyncio.Event()
        self._set_state(SessionState.STARTING)

        launch = self._launch or resolve_launch_config(self.config, packaged=self._packaged)
        try:
            await self.supervisor.start(launch)
        except SpawnError as exc:
            self._log.error("Backend unavailable: %s", exc)
            self._set_state(SessionState.DISCONNECTED)
            return self._state

        self._ctx = zmq.asyncio.Context()
        timeout = self.config.get("command_timeout_sec")
        self.command_channel = CommandChannel(
            self.config.get("command_endpoint"),
            context=self._ctx,
            timeout=float(timeout) if timeout is not None else None,
        )
        self.command_channel.connect()
        self.gateway.bind_channel(self.command_channel)

        self.update_channel = UpdateChannel(
            self.config.get("update_endpoint"),
            self.config.get("topics"),
            self.forwarder.forward,
            context=self._ctx,
            retry_attempts=int(self.config.get("update_retry_attempts", 3)),
            backoff_sec=float(self.config.get("update_retry_backoff_sec", 0.5)),
            backoff_max_sec=float(self.config.get("update_retry_backoff_max_sec", 5.0)),
            rcvhwm=int(self.config.get("update_rcvhwm", 1000)),
            on_stopped=self._on_updates_stopped,
        )
        self.update_channel.start()

        self._set_state(SessionState.CONNECTED)
        return self._state

    async def shutdown(self) -> None:
        """Close both channels, terminate the worker and release the context.

        Idempotent; concurrent callers all wait for the same shutdown.
        """
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._shutdown())
        await asyncio.shield(self._shutdown_task)

    async def _shutdown(self) -> None:
        if self._state is SessionState.CLOSED:
            return
        self._set_state(SessionState.SHUTTING_DOWN)
        self.gateway.bind_channel(None)

        await self._close_channels()
        if self._disconnect_task is not None:
            await self._disconnect_task
        await self.supervisor.terminate()

        if self._ctx is not None:
            self._ctx.destroy(linger=0)
            self._ctx = None
        self._set_state(SessionState.CLOSED)

    async def _close_channels(self) -> None:
        if self.command_channel is not None:
            await self.command_channel.close()
        if self.update_channel is not None:
            await self.update_channel.close()

    async def wait_ended(self) -> SessionState:
        """Block until the session leaves CONNECTED."""
        if self._ended is not None:
            await self._ended.wait()
        return self._state

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------
    def _on_worker_exit(self, state: WorkerState) -> None:
        if self._state is not SessionState.CONNECTED:
            return
        self._log.error("%s", ChildExitError(state.exit_code))
        # Commands fail fast from here on; the sockets close in the background.
        self.gateway.bind_channel(None)
        self._set_state(SessionState.DISCONNECTED)
        self._disconnect_task = asyncio.ensure_future(self._close_channels())

    def _on_updates_stopped(self, reason: str) -> None:
        if self._state is SessionState.CONNECTED:
            self._log.error("Update stream ended (%s) – no further updates this session", reason)

    # ------------------------------------------------------------------
    # Runner
    # ------------------------------------------------------------------
    async def run(self, commands: Sequence[str] = (), *, echo_updates: bool = False) -> SessionState:
        """Run one full session.

        Sends *commands* in order once connected, then waits for SIGINT/SIGTERM
        or for the worker to go away.  Returns the state the session reached
        before shutdown began.
        """
        loop = asyncio.get_running_loop()
        crash_reporter.install_loop_handler(loop)
        stop = asyncio.Event()
        installed = self._install_signal_handlers(loop, stop)

        if echo_updates:
            self.gateway.subscribe(lambda topic, payload: self._log.info("[%s] %s", topic, payload))

        try:
            await self.start()
            for command in commands:
                if self._state is not SessionState.CONNECTED:
                    break
                reply = await self.gateway.send_command(command)
                if isinstance(reply, ErrorValue):
                    self._log.error("Command %r failed: %s", command, reply.to_json())
                else:
                    self._log.info("Reply to %r: %s", command, reply)

            if self._state is SessionState.CONNECTED:
                waiters = [
                    asyncio.ensure_future(stop.wait()),
                    asyncio.ensure_future(self.wait_ended()),
                ]
                _done, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
                for waiter in pending:
                    waiter.cancel()
            final = self._state
        finally:
            await self.shutdown()
            self._remove_signal_handlers(loop, installed)
        return final

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop, stop: asyncio.Event) -> List[int]:
        def request_stop(signum: int) -> None:
            self._log.info("Signal %s received – initiating shutdown.", signum)
            stop.set()

        installed: List[int] = []
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, request_stop, signum)
            except (NotImplementedError, RuntimeError):
                # Windows event loops lack add_signal_handler.
                try:
                    signal.signal(signum, lambda s, _f: loop.call_soon_threadsafe(request_stop, s))
                except ValueError:  # not the main thread
                    continue
            installed.append(signum)
        return installed

    @staticmethod
    def _remove_signal_handlers(loop: asyncio.AbstractEventLoop, installed: List[int]) -> None:
        for signum in installed:
            try:
                loop.remove_signal_handler(signum)
            except (NotImplementedError, RuntimeError):
                signal.signal(signum, signal.SIG_DFL)


# ---------------------------------------------------------------------------
# *console-script* entry-point
# ---------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:  # noqa: D401 – script entry
    """Console entry-point – parses CLI flags then runs one session."""

    import argparse  # local import to avoid startup cost when imported as lib

    parser = argparse.ArgumentParser(description="Worker Bridge launcher")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--packaged", dest="packaged", action="store_true", default=None,
                      help="Launch the standalone worker binary.")
    mode.add_argument("--dev", dest="packaged", action="store_false",
                      help="Launch the worker script with the interpreter.")
    parser.add_argument("--command", action="append", default=[],
                        help="Command to send once connected (repeatable).")
    parser.add_argument("--echo-updates", action="store_true",
                        help="Log every update received from the worker.")
    parser.add_argument("--log-level", default=None, help="Override the configured log level.")

    args = parser.parse_args(argv)

    config = ConfigManager()
    setup_logging(level=args.log_level or config.get("log_level", "INFO"))
    crash_reporter.install()

    orchestrator = BridgeOrchestrator(config, packaged=args.packaged)
    final = asyncio.run(orchestrator.run(args.command, echo_updates=args.echo_updates))
    return 1 if final is SessionState.DISCONNECTED else 0


if __name__ == "__main__":  # pragma: no cover – manual execution helper
    sys.exit(main())
