"""Exception hierarchy for the worker bridge."""
from __future__ import annotations


class BridgeError(Exception):
    """Base class for all bridge errors.

    ``code`` is a short machine-readable tag so callers can branch without
    string matching on the message.
    """

    code = "bridge"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SpawnError(BridgeError):  # executable missing / not launchable
    code = "spawn_failed"


class TransportError(BridgeError):
    code = "transport"


class ParseError(BridgeError):
    code = "parse"


class ChildExitError(BridgeError):
    code = "child_exit"

    def __init__(self, exit_code: int | None):
        super().__init__(f"Worker exited unexpectedly (code={exit_code})")
        self.exit_code = exit_code


__all__ = [
    "BridgeError",
    "SpawnError",
    "TransportError",
    "ParseError",
    "ChildExitError",
]
