"""Typed dataclass messages exchanged between the UI shell and the worker bridge.

Every value that crosses the UI boundary is one of these small dataclasses so
the rest of the application never handles raw socket frames directly.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict

__all__ = [
    "Message",
    "Command",
    "UpdateMessage",
    "ErrorValue",
    "CommandReply",
    "TRANSPORT",
    "TIMEOUT",
]

#: Error kinds carried by :class:`ErrorValue`.
TRANSPORT = "transport"
TIMEOUT = "timeout"


@dataclass(slots=True)
class Message:
    """Base-class for all bridge messages."""


@dataclass(slots=True)
class Command(Message):
    """Opaque text command submitted by the UI for one round trip."""

    text: str


@dataclass(slots=True)
class UpdateMessage(Message):
    """One decoded update frame: ``<topic> <payload>``."""

    topic: str
    payload: str


@dataclass(slots=True)
class ErrorValue(Message):
    """Structured failure handed back to the UI instead of a raised exception."""

    kind: str
    """``transport`` or ``timeout``."""

    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "kind": self.kind}

    def to_json(self) -> str:
        """Serialise the same way the worker formats its replies."""
        return json.dumps(self.to_dict())


@dataclass(slots=True)
class CommandReply(Message):
    """Outcome of a single command round trip."""

    ok: bool
    """True when the worker replied; False on any transport failure."""

    payload: str | ErrorValue
    """Reply text on success, otherwise the :class:`ErrorValue`."""

    @classmethod
    def success(cls, text: str) -> "CommandReply":
        return cls(ok=True, payload=text)

    @classmethod
    def failure(cls, kind: str, message: str) -> "CommandReply":
        return cls(ok=False, payload=ErrorValue(kind=kind, message=message))
