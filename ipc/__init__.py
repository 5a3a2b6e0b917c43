"""Inter-process communication helpers for the worker bridge.

This package provides the typed messages that cross the UI boundary and the
FIFO queue used to serialise command round trips.  Keeping it in a dedicated
top-level package lets the UI shell import the message types without pulling
in the socket layer.
"""

from __future__ import annotations

# Export public symbols so ``from ipc import *`` exposes them.
from .messages import (  # noqa: F401
    TIMEOUT,
    TRANSPORT,
    Command,
    CommandReply,
    ErrorValue,
    Message,
    UpdateMessage,
)
from .queue_wrapper import IPCQueue  # noqa: F401
