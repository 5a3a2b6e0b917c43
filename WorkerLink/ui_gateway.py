"""The surface the UI layer talks to.

Two calls, nothing more: :meth:`UIGateway.send_command` for a request/reply
round trip and :meth:`UIGateway.subscribe` for the live update stream.  The
gateway is also the Forwarder's delivery target.
"""
from __future__ import annotations

import itertools
import logging
from typing import Callable, Dict, Optional

from ipc.messages import TRANSPORT, ErrorValue, UpdateMessage
from WorkerLink.command_channel import CommandChannel

__all__ = ["UIGateway", "UpdateCallback"]

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[str, str], None]


class UIGateway:
    def __init__(self, channel: Optional[CommandChannel] = None) -> None:
        self._channel = channel
        self._subscribers: Dict[int, UpdateCallback] = {}
        self._tokens = itertools.count(1)

    def bind_channel(self, channel: Optional[CommandChannel]) -> None:
        self._channel = channel

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------
    async def send_command(self, command: str) -> str | ErrorValue:
        """Return the worker's reply text, or an :class:`ErrorValue` on failure."""
        if self._channel is None:
            return ErrorValue(kind=TRANSPORT, message="backend unavailable")
        reply = await self._channel.send(command)
        if not reply.ok:
            logger.warning("Command %r failed: %s", command, reply.payload)
        return reply.payload

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------
    def subscribe(self, callback: UpdateCallback) -> Callable[[], None]:
        """Register *callback* for every update from now on.

        Returns an unsubscribe function; calling it more than once is harmless.
        """
        token = next(self._tokens)
        self._subscribers[token] = callback

        def unsubscribe() -> None:
            self._subscribers.pop(token, None)

        return unsubscribe

    def deliver(self, message: UpdateMessage) -> None:
        # Iterate a snapshot; a callback may unsubscribe itself or others.
        for token, callback in list(self._subscribers.items()):
            if token not in self._subscribers:
                continue
            try:
                callback(message.topic, message.payload)
            except Exception:  # pylint: disable=broad-except
                logger.exception("Update subscriber raised on %r", message.topic)
