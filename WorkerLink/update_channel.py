"""Topic-filtered update stream from the worker.

:class:`UpdateChannel` owns a ZeroMQ ``SUB`` socket subscribed to a fixed set
of topic prefixes and runs one receive loop as a cancellable
:class:`asyncio.Task`.  Every received frame is handed synchronously to the
frame handler (normally :meth:`WorkerLink.forwarder.Forwarder.forward`)
before the next receive, so frames reach the UI in the order the worker sent
them.

A transport error does not end the stream straight away: the socket is
recreated after an exponential backoff, up to ``retry_attempts`` consecutive
failures.  Only then does the loop give up and report through ``on_stopped``.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Callable, Iterable, Optional

import zmq
import zmq.asyncio

__all__ = ["UpdateChannel", "FrameHandler"]

logger = logging.getLogger(__name__)

FrameHandler = Callable[[bytes], object]


class UpdateChannel:
    """Receive loop over a ``SUB`` socket with bounded reconnect."""

    def __init__(
        self,
        endpoint: str,
        topics: Iterable[str],
        handler: FrameHandler,
        *,
        context: Optional[zmq.asyncio.Context] = None,
        retry_attempts: int = 3,
        backoff_sec: float = 0.5,
        backoff_max_sec: float = 5.0,
        rcvhwm: int = 1000,
        on_stopped: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.endpoint = endpoint
        self.topics: tuple[str, ...] = tuple(topics)
        if not self.topics:
            raise ValueError("UpdateChannel needs at least one topic")

        self._handler = handler
        self._ctx = context or zmq.asyncio.Context.instance()
        self._retry_attempts = max(0, int(retry_attempts))
        self._backoff = max(0.0, float(backoff_sec))
        self._backoff_max = max(self._backoff, float(backoff_max_sec))
        self._rcvhwm = rcvhwm
        self._on_stopped = on_stopped

        self._socket: zmq.asyncio.Socket | None = None
        self._task: asyncio.Task | None = None
        self._closing = False
        self.frames_received = 0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> asyncio.Task:
        """Start the receive loop.  Calling again while it runs returns the same task."""
        if self._closing:
            raise RuntimeError("UpdateChannel is closed")
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run(), name="update-channel")
        return self._task

    async def close(self) -> None:
        """Stop the loop and close the socket.  Idempotent."""
        self._closing = True
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._close_socket()

    # ------------------------------------------------------------------
    # Implementation details
    # ------------------------------------------------------------------
    async def _run(self) -> None:
        failures = 0
        reason = "closed"
        try:
            while not self._closing:
                try:
                    sock = self._open_socket()
                    while True:
                        frames = await sock.recv_multipart()
                        failures = 0
                        self._dispatch(frames)
                except zmq.ZMQError as exc:
                    self._close_socket()
                    if self._closing:
                        break
                    if exc.errno == zmq.ETERM:
                        reason = "context terminated"
                        logger.info("Update channel context terminated – stopping")
                        break
                    failures += 1
                    if failures > self._retry_attempts:
                        reason = f"transport error: {exc}"
                        logger.error(
                            "Update channel gave up after %d failed attempt(s): %s", failures, exc
                        )
                        break
                    delay = min(self._backoff * (2 ** (failures - 1)), self._backoff_max)
                    logger.warning(
                        "Update channel error (%s) – reconnecting in %.2f s (attempt %d/%d)",
                        exc,
                        delay,
                        failures,
                        self._retry_attempts,
                    )
                    await asyncio.sleep(delay)
        except asyncio.CancelledError:
            reason = "closed" if self._closing else "cancelled"
            raise
        finally:
            self._close_socket()
            logger.info("Update loop stopped (%s) after %d frame(s)", reason, self.frames_received)
            if self._on_stopped is not None:
                try:
                    self._on_stopped(reason)
                except Exception:  # pylint: disable=broad-except
                    logger.exception("on_stopped callback failed")

    def _dispatch(self, frames: list) -> None:
        self.frames_received += 1
        # The worker sends single-part frames; join defensively if it splits.
        frame = frames[0] if len(frames) == 1 else b" ".join(frames)
        try:
            self._handler(frame)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Update handler raised – frame skipped")

    def _open_socket(self) -> zmq.asyncio.Socket:
        sock = self._ctx.socket(zmq.SUB)
        try:
            sock.setsockopt(zmq.LINGER, 0)
            sock.setsockopt(zmq.RCVHWM, self._rcvhwm)
            sock.connect(self.endpoint)
            for topic in self.topics:
                sock.setsockopt_string(zmq.SUBSCRIBE, topic)
        except zmq.ZMQError:
            sock.close(linger=0)
            raise
        self._socket = sock
        logger.info("Update channel subscribed to %s on %s", ", ".join(self.topics), self.endpoint)
        return sock

    def _close_socket(self) -> None:
        sock, self._socket = self._socket, None
        if sock is not None and not sock.closed:
            sock.close(linger=0)
