import sys
from pathlib import Path

import pytest

# Ensure repo root is on sys.path when running via `python -m pytest` from subdir
import inspect
ROOT_DIR = Path(inspect.getfile(inspect.currentframe())).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from WorkerLink.resource_manager import _determine_base_path, is_packaged, resource_path  # noqa: E402


def test_dev_mode_path_resolution():
    """When *not* frozen, ``resource_path`` should resolve inside repo root."""
    assert not getattr(sys, "frozen", False), "Test assumes interpreter is not frozen!"
    assert is_packaged() is False

    base = _determine_base_path()
    assert (base / "WorkerLink").is_dir(), "Expected package folder under repo root"
    assert resource_path("") == base
    assert resource_path("WorkerLink/reference_worker.py").is_file()


def test_frozen_mode_uses_meipass(monkeypatch, tmp_path):
    monkeypatch.setattr(sys, "frozen", True, raising=False)
    monkeypatch.setattr(sys, "_MEIPASS", str(tmp_path), raising=False)

    assert is_packaged() is True
    assert resource_path("backend") == (tmp_path / "backend").resolve()


def test_frozen_mode_without_meipass_uses_executable_dir(monkeypatch, tmp_path):
    exe = tmp_path / "bridge.exe"
    exe.write_text("", encoding="utf-8")
    monkeypatch.setattr(sys, "frozen", True, raising=False)
    monkeypatch.delattr(sys, "_MEIPASS", raising=False)
    monkeypatch.setattr(sys, "executable", str(exe))

    assert resource_path("backend") == (tmp_path / "backend").resolve()
