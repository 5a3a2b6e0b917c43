"""Request/reply command channel to the worker.

:class:`CommandChannel` wraps one ZeroMQ ``REQ`` socket.  A ``REQ`` socket
tolerates exactly one outstanding request, so every :meth:`CommandChannel.send`
is appended to an internal FIFO and a single drain task performs the round
trips one after another.  Concurrent callers therefore never interleave on the
wire; each one simply waits for its own reply.

Failures never raise into the caller – they come back as a
:class:`~ipc.messages.CommandReply` carrying an :class:`~ipc.messages.ErrorValue`.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Optional, Tuple

import zmq
import zmq.asyncio

from ipc.messages import TIMEOUT, TRANSPORT, Command, CommandReply
from ipc.queue_wrapper import IPCQueue
from WorkerLink.errors import TransportError

__all__ = ["CommandChannel"]

logger = logging.getLogger(__name__)

_Request = Tuple[Command, "asyncio.Future[CommandReply]"]


class CommandChannel:
    """Serialised ``send(command) -> reply`` over a ``REQ`` socket.

    Parameters
    ----------
    endpoint:
        ZeroMQ endpoint the worker's ``REP`` socket is bound to.
    context:
        Shared :class:`zmq.asyncio.Context`; defaults to the process-wide instance.
    timeout:
        Seconds to wait for a reply.  ``None`` waits forever.  After a timeout
        the socket is discarded and recreated so the next request starts from
        a clean ``REQ`` state.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        context: Optional[zmq.asyncio.Context] = None,
        timeout: float | None = None,
    ) -> None:
        self.endpoint = endpoint
        self._ctx = context or zmq.asyncio.Context.instance()
        self._timeout = timeout

        self._socket: zmq.asyncio.Socket | None = None
        self._requests: IPCQueue[_Request] | None = None
        self._drain_task: asyncio.Task | None = None
        self._inflight: asyncio.Future | None = None
        self._closed = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def connected(self) -> bool:
        return self._requests is not None and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """Number of requests queued or in flight."""
        queued = len(self._requests) if self._requests is not None else 0
        return queued + (1 if self._inflight is not None else 0)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def connect(self) -> None:
        """Open the socket and start the drain task.  Must run inside the loop.

        An endpoint that cannot be connected is logged; every later
        :meth:`send` then retries the connect and reports a transport error.
        """
        if self._closed:
            raise RuntimeError("CommandChannel is closed")
        if self._requests is not None:
            return

        self._requests = IPCQueue()
        try:
            self._ensure_socket()
        except zmq.ZMQError as exc:
            logger.error("Could not connect command channel to %s: %s", self.endpoint, exc)
        else:
            logger.info("Command channel connected to %s", self.endpoint)
        self._drain_task = asyncio.get_running_loop().create_task(self._drain(), name="command-channel")

    async def close(self) -> None:
        """Abort pending and queued requests with a transport error and close the socket."""
        if self._closed:
            return
        self._closed = True

        aborted = 0
        if self._inflight is not None and not self._inflight.done():
            self._inflight.set_result(CommandReply.failure(TRANSPORT, "command channel closed"))
            aborted += 1
        if self._requests is not None:
            for _command, future in self._requests.drain():
                if not future.done():
                    future.set_result(CommandReply.failure(TRANSPORT, "command channel closed"))
                    aborted += 1
        if aborted:
            logger.warning("Command channel closed with %d request(s) outstanding", aborted)

        task, self._drain_task = self._drain_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._discard_socket()
        logger.info("Command channel to %s closed", self.endpoint)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def send(self, command: str) -> CommandReply:
        """Send *command* and wait for its reply (FIFO behind earlier sends)."""
        if self._closed:
            return CommandReply.failure(TRANSPORT, "command channel closed")
        if self._requests is None:
            return CommandReply.failure(TRANSPORT, "command channel not connected")

        future: asyncio.Future[CommandReply] = asyncio.get_running_loop().create_future()
        self._requests.put_nowait((Command(command), future))
        logger.debug("Queued command %r (%d pending)", command, self.pending)
        return await future

    # ------------------------------------------------------------------
    # Implementation details
    # ------------------------------------------------------------------
    async def _drain(self) -> None:
        assert self._requests is not None
        while True:
            command, future = await self._requests.get()
            if future.done():  # caller gave up while queued
                continue
            self._inflight = future
            try:
                reply = await self._round_trip(command)
            except Exception as exc:  # pylint: disable=broad-except
                # The drain task is the only consumer; it must outlive any request.
                logger.exception("Command %r could not be processed", command.text)
                reply = CommandReply.failure(TRANSPORT, str(exc) or "command failed")
            finally:
                self._inflight = None
            if not future.done():
                future.set_result(reply)

    async def _round_trip(self, command: Command) -> CommandReply:
        try:
            if self._timeout is None:
                frames = await self._exchange(command)
            else:
                frames = await asyncio.wait_for(self._exchange(command), self._timeout)
        except asyncio.TimeoutError:
            logger.warning("No reply to %r within %.1f s – resetting command socket", command.text, self._timeout)
            self._discard_socket()
            return CommandReply.failure(TIMEOUT, f"no reply within {self._timeout} s")
        except TransportError as exc:
            logger.error("Command round trip for %r failed: %s", command.text, exc)
            self._discard_socket()
            return CommandReply.failure(TRANSPORT, exc.message)
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Unexpected failure sending %r", command.text)
            self._discard_socket()
            return CommandReply.failure(TRANSPORT, str(exc) or "transport failure")

        text = b"".join(frames).decode("utf-8", errors="replace")
        logger.debug("Reply to %r: %s", command.text, text)
        return CommandReply.success(text)

    async def _exchange(self, command: Command) -> list:
        """One send/receive on the REQ socket; transport faults become :class:`TransportError`."""
        try:
            payload = command.text.encode("utf-8")
        except UnicodeEncodeError as exc:
            raise TransportError(f"command cannot be encoded as UTF-8: {exc}") from exc
        try:
            sock = self._ensure_socket()
            await sock.send(payload)
            return await sock.recv_multipart()
        except (zmq.ZMQError, OSError) as exc:
            raise TransportError(str(exc) or "transport failure") from exc

    def _ensure_socket(self) -> zmq.asyncio.Socket:
        if self._socket is None:
            sock = self._ctx.socket(zmq.REQ)
            sock.setsockopt(zmq.LINGER, 0)
            try:
                sock.connect(self.endpoint)
            except zmq.ZMQError:
                sock.close(linger=0)
                raise
            self._socket = sock
        return self._socket

    def _discard_socket(self) -> None:
        sock, self._socket = self._socket, None
        if sock is not None and not sock.closed:
            sock.close(linger=0)
