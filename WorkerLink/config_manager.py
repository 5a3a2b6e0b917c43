import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional


class ConfigManager:
    """Simple JSON-backed configuration loader / saver.

    The config file is stored in the user-specific application data directory.
    On Windows we honour the %APPDATA% convention. On *nix platforms we fall
    back to $XDG_CONFIG_HOME or ~/.config.
    """

    _FILENAME = "config.json"

    #: Default configuration values shipped with the bridge.
    DEFAULTS: Dict[str, Any] = {
        # Fixed localhost endpoints – must match the worker's bind addresses
        "command_endpoint": "tcp://127.0.0.1:5555",
        "update_endpoint": "tcp://127.0.0.1:5556",
        "topics": ["progress", "result"],
        # None disables the round-trip timeout (caller may block forever)
        "command_timeout_sec": 30.0,
        # Update loop reconnect policy: attempts × exponential backoff
        "update_retry_attempts": 3,
        "update_retry_backoff_sec": 0.5,
        "update_retry_backoff_max_sec": 5.0,
        "update_rcvhwm": 1000,
        # "text" forwards payloads untouched, "json" drops non-JSON payloads
        "payload_format": "text",
        # Development mode launch: interpreter (None = current) + script
        "dev_interpreter": None,
        "dev_script": "WorkerLink/reference_worker.py",
        # Packaged mode launch: binary name without platform extension
        "packaged_binary_name": "backend",
        "worker_args": [],
        "terminate_grace_sec": 5.0,
        "log_level": "INFO",
    }

    def __init__(self, app_name: str = "Worker Bridge") -> None:
        self.app_name = app_name
        self._config_path: Path = self._resolve_config_path()
        self.settings: Dict[str, Any] = {}
        self._load()

    # ---------------------------------------------------------------------
    # Public helpers
    # ---------------------------------------------------------------------
    def get(self, key: str, default: Optional[Any] = None) -> Any:
        """Return the configuration value for *key*.

        Keys missing from an older config file fall back to :attr:`DEFAULTS`
        before *default* is used.
        """
        if key in self.settings:
            return self.settings[key]
        return self.DEFAULTS.get(key, default)

    def set(self, key: str, value: Any, *, auto_save: bool = True) -> None:
        """Set *key* to *value*. Optionally persist immediately."""
        self.settings[key] = value
        if auto_save:
            self._save()

    @property
    def path(self) -> Path:
        return self._config_path

    # ------------------------------------------------------------------
    # Implementation details
    # ------------------------------------------------------------------
    def _resolve_config_path(self) -> Path:
        """Compute platform-appropriate path for the JSON config."""
        # APPDATA wins whenever it is set so tests can redirect it on any OS.
        if "APPDATA" in os.environ and os.environ["APPDATA"]:
            base_dir = Path(os.environ["APPDATA"])
        elif os.name == "nt":
            base_dir = Path(Path.home())
        else:
            base_dir = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))

        return base_dir / self.app_name.replace(" ", "_") / self._FILENAME

    def _load(self) -> None:
        """Load settings from disk, creating the file with defaults if absent."""
        try:
            if self._config_path.exists():
                with self._config_path.open("r", encoding="utf-8") as fh:
                    data = json.load(fh)
                if not isinstance(data, dict):
                    raise ValueError("config root must be a JSON object")
                self.settings = data
            else:
                self.settings = copy.deepcopy(self.DEFAULTS)
                self._write_to_disk(self.settings)
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logging.warning("Failed to load config – using defaults: %s", exc)
            self.settings = copy.deepcopy(self.DEFAULTS)
            # Attempt to overwrite the corrupted file with defaults.
            try:
                self._write_to_disk(self.settings)
            except OSError as write_exc:
                logging.error("Unable to write default config: %s", write_exc)

    def _save(self) -> None:
        """Persist current *settings* to disk."""
        self._write_to_disk(self.settings)

    def _write_to_disk(self, data: Dict[str, Any]) -> None:
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        with self._config_path.open("w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=4)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<ConfigManager path={self._config_path!s} keys={list(self.settings.keys())}>"
