"""Worker Bridge core package.

Process supervision plus the two ZeroMQ channels that connect a UI shell to
its long-running worker.  Commonly used classes are exposed at the package
root for convenience.
"""

from .command_channel import CommandChannel  # noqa: F401
from .config_manager import ConfigManager  # noqa: F401
from .errors import (  # noqa: F401
    BridgeError,
    ChildExitError,
    ParseError,
    SpawnError,
    TransportError,
)
from .forwarder import Forwarder, decode_frame  # noqa: F401
from .launch_config import DeploymentMode, LaunchConfig, resolve_launch_config  # noqa: F401
from .resource_manager import is_packaged, resource_path  # noqa: F401
from .ui_gateway import UIGateway  # noqa: F401
from .update_channel import UpdateChannel  # noqa: F401
from .worker_supervisor import WorkerState, WorkerStatus, WorkerSupervisor  # noqa: F401
