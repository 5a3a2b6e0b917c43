"""Decode raw update frames and relay them to the UI delivery target.

Frames arrive as UTF-8 text shaped ``<topic> <payload>``.  Only the *first*
whitespace character separates the two, so the payload itself may contain
anything, including further spaces.  A frame without whitespace is a bare
topic with an empty payload.
"""
from __future__ import annotations

import json
import logging
import re
import threading
from typing import Iterable, Optional, Protocol

from ipc.messages import UpdateMessage
from WorkerLink.errors import ParseError

__all__ = [
    "DeliveryTarget",
    "Forwarder",
    "decode_frame",
    "PAYLOAD_TEXT",
    "PAYLOAD_JSON",
]

logger = logging.getLogger(__name__)

PAYLOAD_TEXT = "text"
PAYLOAD_JSON = "json"
_PAYLOAD_FORMATS = {PAYLOAD_TEXT, PAYLOAD_JSON}

_SEPARATOR = re.compile(r"\s")


class DeliveryTarget(Protocol):
    def deliver(self, message: UpdateMessage) -> None: ...


def decode_frame(frame: bytes, *, payload_format: str = PAYLOAD_TEXT) -> UpdateMessage:
    """Split *frame* into an :class:`UpdateMessage` or raise :class:`ParseError`."""
    try:
        text = frame.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ParseError(f"frame is not valid UTF-8: {exc}") from exc

    parts = _SEPARATOR.split(text, maxsplit=1)
    topic = parts[0]
    payload = parts[1] if len(parts) > 1 else ""
    if not topic:
        raise ParseError("frame has no topic")

    if payload_format == PAYLOAD_JSON and payload:
        try:
            json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ParseError(f"payload on topic {topic!r} is not valid JSON: {exc}") from exc

    return UpdateMessage(topic=topic, payload=payload)


class Forwarder:
    """Decode frames and hand them to the current delivery target.

    The target is injected at construction.  A host that recreates its UI
    swaps it through :meth:`set_target`; the swap and every delivery share one
    lock so a frame is never delivered to a half-replaced target.
    """

    def __init__(
        self,
        target: Optional[DeliveryTarget] = None,
        *,
        allowed_topics: Iterable[str] | None = None,
        payload_format: str = PAYLOAD_TEXT,
    ) -> None:
        if payload_format not in _PAYLOAD_FORMATS:
            raise ValueError(f"Unknown payload format {payload_format!r}")
        self._target = target
        self._allowed = frozenset(allowed_topics) if allowed_topics is not None else None
        self._payload_format = payload_format
        self._lock = threading.RLock()
        self.dropped = 0

    @property
    def target(self) -> Optional[DeliveryTarget]:
        return self._target

    def set_target(self, target: Optional[DeliveryTarget]) -> None:
        with self._lock:
            self._target = target

    def decode(self, frame: bytes) -> UpdateMessage:
        return decode_frame(frame, payload_format=self._payload_format)

    def forward(self, frame: bytes) -> UpdateMessage | None:
        """Decode *frame* and deliver it.  Never raises for a bad frame.

        Returns the delivered message, or ``None`` when it was dropped.
        """
        try:
            message = self.decode(frame)
        except ParseError as exc:
            self.dropped += 1
            logger.warning("Dropping malformed update frame: %s", exc)
            return None

        # Prefix subscriptions also match e.g. "progressive"; keep the exact set.
        if self._allowed is not None and message.topic not in self._allowed:
            self.dropped += 1
            logger.debug("Dropping update on unexpected topic %r", message.topic)
            return None

        with self._lock:
            target = self._target
            if target is None:
                self.dropped += 1
                logger.debug("No delivery target – dropping %r update", message.topic)
                return None
            target.deliver(message)
        return message
