"""Deployment-mode resolution for the worker process.

The launch parameters are computed exactly once at startup from a single
boolean (frozen bundle or not) and then handed around as an immutable
:class:`LaunchConfig`.  Nothing downstream re-derives the mode.
"""
from __future__ import annotations

import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Tuple

from WorkerLink.config_manager import ConfigManager
from WorkerLink.resource_manager import is_packaged, resource_path

__all__ = [
    "DeploymentMode",
    "LaunchConfig",
    "packaged_binary_name",
    "resolve_launch_config",
]


class DeploymentMode(str, Enum):
    DEVELOPMENT = "development"
    PACKAGED = "packaged"


@dataclass(frozen=True, slots=True)
class LaunchConfig:
    """Precomputed command line used to spawn the worker."""

    mode: DeploymentMode
    executable: str
    args: Tuple[str, ...] = ()
    cwd: Path | None = None

    @property
    def argv(self) -> List[str]:
        return [self.executable, *self.args]


def packaged_binary_name(base: str = "backend", platform: str | None = None) -> str:
    """Return the platform-specific file name of the standalone worker binary."""
    platform = platform or sys.platform
    if platform.startswith("win") and not base.lower().endswith(".exe"):
        return f"{base}.exe"
    return base


def resolve_launch_config(config: ConfigManager, *, packaged: bool | None = None) -> LaunchConfig:
    """Build the :class:`LaunchConfig` for this session.

    *packaged* overrides frozen-bundle detection (command-line ``--packaged`` /
    ``--dev``).
    """
    if packaged is None:
        packaged = is_packaged()

    extra_args = tuple(str(arg) for arg in (config.get("worker_args") or []))

    if packaged:
        binary = resource_path(packaged_binary_name(config.get("packaged_binary_name", "backend")))
        return LaunchConfig(
            mode=DeploymentMode.PACKAGED,
            executable=str(binary),
            args=extra_args,
            cwd=binary.parent,
        )

    interpreter = config.get("dev_interpreter") or sys.executable
    script = resource_path(config.get("dev_script"))
    return LaunchConfig(
        mode=DeploymentMode.DEVELOPMENT,
        executable=str(interpreter),
        args=(str(script), *extra_args),
        cwd=script.parent,
    )
