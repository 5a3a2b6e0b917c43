"""Resource helper utilities.

This module centralises the logic for locating files that ship next to the
bridge – most importantly the worker script (development) or the standalone
worker binary (packaged).  When running from a source checkout resources live
relative to the repository root.  Once the shell is frozen (PyInstaller,
cx_Freeze, …) they are unpacked into the bundle directory exposed via
:pydataattr:`sys._MEIPASS`.

>>> resource_path("WorkerLink/reference_worker.py")
PosixPath('/abs/path/to/WorkerLink/reference_worker.py')

``resource_path("")`` returns the bundle / repo root itself.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Union

__all__ = ["resource_path", "is_packaged"]

_PathLike = Union[str, "os.PathLike[str]"]


def is_packaged() -> bool:
    """Return *True* when running from a frozen bundle.

    This is the single boolean that selects the deployment mode at startup.
    """
    return bool(getattr(sys, "frozen", False))


def _determine_base_path() -> Path:
    """Return the directory that forms the root for bundled data files.

    * In **frozen** mode we rely on :pydataattr:`sys._MEIPASS` when the
      bootloader provides it, otherwise on the executable's directory.
    * Otherwise the parent of this package, i.e. the repository root.
    """
    if is_packaged():
        meipass = getattr(sys, "_MEIPASS", None)
        if meipass:
            return Path(meipass)
        return Path(sys.executable).resolve().parent

    return Path(__file__).resolve().parent.parent


def resource_path(relative_path: _PathLike) -> Path:
    """Resolve *relative_path* against the application bundle root.

    The returned :class:`~pathlib.Path` is always absolute.  Absolute inputs
    are returned unchanged (normalised).
    """

    base_path = _determine_base_path()
    return (base_path / Path(relative_path)).resolve()
