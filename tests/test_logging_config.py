import inspect
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

ROOT_DIR = Path(inspect.getfile(inspect.currentframe())).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from bridge_shell import logging_config  # noqa: E402


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.getLogger()
    level = root.level
    yield
    logging_config.reset_logging()
    root.setLevel(level)


def test_setup_installs_rotating_file_and_console(tmp_path):
    log_file = tmp_path / "nested" / "app.log"
    logging_config.setup_logging(log_file=log_file, level="debug")

    root = logging.getLogger()
    rotating = [h for h in root.handlers if isinstance(h, RotatingFileHandler)]
    assert any(Path(h.baseFilename) == log_file for h in rotating)
    assert root.level == logging.DEBUG

    logging.getLogger("worker").info("line from worker")
    for h in rotating:
        h.flush()
    text = log_file.read_text(encoding="utf-8")
    assert "| INFO     | worker | line from worker" in text


def test_setup_is_idempotent(tmp_path):
    logging_config.setup_logging(log_file=tmp_path / "a.log")
    count = len(logging.getLogger().handlers)
    logging_config.setup_logging(log_file=tmp_path / "b.log")
    assert len(logging.getLogger().handlers) == count
    assert not (tmp_path / "b.log").exists()


def test_reset_removes_installed_handlers(tmp_path):
    before = list(logging.getLogger().handlers)
    logging_config.setup_logging(log_file=tmp_path / "app.log")
    logging_config.reset_logging()
    assert logging.getLogger().handlers == before
